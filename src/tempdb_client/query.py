"""Structured query builder for the ``PIPELINE`` command.

A second query surface, independent of :class:`~tempdb_client.pipeline.Pipeline`:
conditions plus optional sort, paging and time range, rendered as one
compact JSON document.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import date, datetime
from typing import Any

from tempdb_client.pipeline import Operator, SortDirection
from tempdb_client.protocol import to_json


@dataclass(frozen=True, slots=True)
class Condition:
    field: str
    op: Operator
    value: Any = None

    def to_dict(self) -> dict[str, Any]:
        return {"field": self.field, "op": self.op.value, "value": _plain(self.value)}


def _plain(value: Any) -> Any:
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, (list, tuple)):
        return [_plain(v) for v in value]
    return value


@dataclass(frozen=True, slots=True)
class StructuredQuery:
    """Immutable structured query; each method returns a new one."""

    conditions: tuple[Condition, ...] = ()
    sort_field: str | None = None
    sort_direction: SortDirection = SortDirection.ASC
    limit_n: int | None = None
    offset_n: int | None = None
    time_range: tuple[Any, Any] | None = None

    def where(self, field: str, op: Operator | str, value: Any = None) -> StructuredQuery:
        condition = Condition(field, Operator.parse(op), value)
        return replace(self, conditions=self.conditions + (condition,))

    def order_by(
        self, field: str, direction: SortDirection | str = SortDirection.ASC
    ) -> StructuredQuery:
        return replace(
            self, sort_field=field, sort_direction=SortDirection.normalize(direction)
        )

    def limit(self, n: int) -> StructuredQuery:
        if n < 0:
            raise ValueError("limit must be >= 0")
        return replace(self, limit_n=n)

    def offset(self, n: int) -> StructuredQuery:
        if n < 0:
            raise ValueError("offset must be >= 0")
        return replace(self, offset_n=n)

    def between_times(self, start: Any, end: Any) -> StructuredQuery:
        return replace(self, time_range=(start, end))

    def to_dict(self) -> dict[str, Any]:
        body: dict[str, Any] = {"conditions": [c.to_dict() for c in self.conditions]}
        if self.sort_field is not None:
            body["sort"] = {"field": self.sort_field, "direction": self.sort_direction.value}
        if self.limit_n is not None:
            body["limit"] = self.limit_n
        if self.offset_n is not None:
            body["offset"] = self.offset_n
        if self.time_range is not None:
            start, end = self.time_range
            body["time_range"] = {"start": _plain(start), "end": _plain(end)}
        return body

    def build(self) -> str:
        return to_json(self.to_dict())

    def __str__(self) -> str:
        return self.build()
