"""Aggregation pipeline builder.

A ``Pipeline`` is an immutable, ordered tuple of stages. Every builder method
returns a new pipeline with one stage appended; ``build()`` renders the
stages space-separated in the order they were added, which is the text the
server's ``QUERY`` command interprets.

Example::

    pipeline = (
        Pipeline()
        .filter("gender", "eq", "Female")
        .group_by("age_group")
        .average("net_amount")
    )
    pipeline.build()
    # 'FILTER /gender eq Female GROUPBY /age_group AVG /net_amount'
"""

from __future__ import annotations

import json
from collections.abc import Iterable
from dataclasses import dataclass
from enum import Enum
from typing import Any, Union


class Operator(str, Enum):
    """Filter operators understood by the server."""

    EQ = "eq"
    NEQ = "neq"
    GT = "gt"
    LT = "lt"
    BETWEEN = "between"
    STARTSWITH = "startswith"
    ENDSWITH = "endswith"
    CONTAINS = "contains"
    IN = "in"
    NOTIN = "notin"
    EXISTS = "exists"
    NOTEXISTS = "notexists"
    REGEX = "regex"
    LIKE = "like"
    ISNULL = "isnull"

    @classmethod
    def parse(cls, op: Operator | str) -> Operator:
        if isinstance(op, Operator):
            return op
        try:
            return cls(op.lower())
        except ValueError:
            raise ValueError(f"Unknown filter operator: {op!r}") from None


# operands rendered as a JSON array
MULTI_VALUE_OPERATORS = frozenset({Operator.IN, Operator.NOTIN, Operator.BETWEEN})
# operators that take no operand; rendered with a literal ``true``
UNARY_OPERATORS = frozenset({Operator.EXISTS, Operator.NOTEXISTS, Operator.ISNULL})


class AggregateKind(str, Enum):
    COUNT = "COUNT"
    SUM = "SUM"
    AVG = "AVG"
    MIN = "MIN"
    MAX = "MAX"
    MEDIAN = "MEDIAN"
    STDDEV = "STDDEV"
    DISTINCT = "DISTINCT"
    TOPN = "TOPN"
    BOTTOMN = "BOTTOMN"


class SortDirection(str, Enum):
    ASC = "asc"
    DESC = "desc"

    @classmethod
    def normalize(cls, direction: SortDirection | str | None) -> SortDirection:
        """Anything other than ``desc`` sorts ascending."""
        if isinstance(direction, SortDirection):
            return direction
        if isinstance(direction, str) and direction.strip().lower() == "desc":
            return cls.DESC
        return cls.ASC


def render_value(value: Any) -> str:
    """Render a scalar filter operand."""
    if isinstance(value, str):
        return value
    if isinstance(value, bool):
        return "true" if value else "false"
    if value is None:
        return "null"
    if isinstance(value, (int, float)):
        return str(value)
    return json.dumps(value, separators=(",", ":"))


def render_array(values: Any) -> str:
    if isinstance(values, (str, bytes)) or not isinstance(values, Iterable):
        values = [values]
    return json.dumps(list(values), separators=(",", ":"))


# ---------------------------------------------------------------------------
# Stages
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class Filter:
    field: str
    op: Operator
    value: Any = None

    def render(self) -> str:
        if self.op in MULTI_VALUE_OPERATORS and isinstance(self.value, str):
            # already rendered by the caller, e.g. '["a","b"]'
            operand = self.value
        elif self.op in MULTI_VALUE_OPERATORS:
            operand = render_array(self.value)
        elif self.op in UNARY_OPERATORS and self.value is None:
            operand = "true"
        else:
            operand = render_value(self.value)
        return f"FILTER /{self.field} {self.op.value} {operand}"


@dataclass(frozen=True, slots=True)
class GroupBy:
    field: str

    def render(self) -> str:
        return f"GROUPBY /{self.field}"


@dataclass(frozen=True, slots=True)
class Aggregate:
    kind: AggregateKind
    field: str | None = None
    n: int | None = None

    def render(self) -> str:
        if self.kind is AggregateKind.COUNT:
            return "COUNT"
        if self.kind in (AggregateKind.TOPN, AggregateKind.BOTTOMN):
            return f"{self.kind.value} {self.n} /{self.field}"
        return f"{self.kind.value} /{self.field}"


@dataclass(frozen=True, slots=True)
class Sort:
    field: str
    direction: SortDirection = SortDirection.ASC

    def render(self) -> str:
        return f"SORT /{self.field} {self.direction.value}"


@dataclass(frozen=True, slots=True)
class Join:
    source_key: str
    source_field: str
    target_field: str

    def render(self) -> str:
        return f"JOIN {self.source_key} /{self.source_field} /{self.target_field}"


@dataclass(frozen=True, slots=True)
class Limit:
    n: int

    def render(self) -> str:
        return f"LIMIT {self.n}"


Stage = Union[Filter, GroupBy, Aggregate, Sort, Join, Limit]


# ---------------------------------------------------------------------------
# Builder
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class Pipeline:
    """Immutable pipeline; each method returns a new one."""

    stages: tuple[Stage, ...] = ()

    def then(self, stage: Stage) -> Pipeline:
        """Append an already-built stage."""
        return Pipeline(self.stages + (stage,))

    def build(self) -> str:
        return " ".join(stage.render() for stage in self.stages)

    def __str__(self) -> str:
        return self.build()

    def __len__(self) -> int:
        return len(self.stages)

    # ----- filters -----

    def filter(self, field: str, op: Operator | str, value: Any = None) -> Pipeline:
        return self.then(Filter(field, Operator.parse(op), value))

    def filter_equals(self, field: str, value: Any) -> Pipeline:
        return self.filter(field, Operator.EQ, value)

    def filter_not_equals(self, field: str, value: Any) -> Pipeline:
        return self.filter(field, Operator.NEQ, value)

    def filter_greater_than(self, field: str, value: Any) -> Pipeline:
        return self.filter(field, Operator.GT, value)

    def filter_less_than(self, field: str, value: Any) -> Pipeline:
        return self.filter(field, Operator.LT, value)

    def filter_between(self, field: str, low: Any, high: Any) -> Pipeline:
        return self.filter(field, Operator.BETWEEN, [low, high])

    def filter_starts_with(self, field: str, prefix: str) -> Pipeline:
        return self.filter(field, Operator.STARTSWITH, prefix)

    def filter_ends_with(self, field: str, suffix: str) -> Pipeline:
        return self.filter(field, Operator.ENDSWITH, suffix)

    def filter_contains(self, field: str, value: str) -> Pipeline:
        return self.filter(field, Operator.CONTAINS, value)

    def filter_in(self, field: str, values: Iterable[Any]) -> Pipeline:
        return self.filter(field, Operator.IN, list(values))

    def filter_not_in(self, field: str, values: Iterable[Any]) -> Pipeline:
        return self.filter(field, Operator.NOTIN, list(values))

    def filter_exists(self, field: str) -> Pipeline:
        return self.filter(field, Operator.EXISTS)

    def filter_not_exists(self, field: str) -> Pipeline:
        return self.filter(field, Operator.NOTEXISTS)

    def filter_is_null(self, field: str) -> Pipeline:
        return self.filter(field, Operator.ISNULL)

    def filter_regex(self, field: str, pattern: str) -> Pipeline:
        return self.filter(field, Operator.REGEX, pattern)

    def filter_like(self, field: str, pattern: str) -> Pipeline:
        return self.filter(field, Operator.LIKE, pattern)

    # ----- grouping and aggregates -----

    def group_by(self, field: str) -> Pipeline:
        return self.then(GroupBy(field))

    def count(self) -> Pipeline:
        return self.then(Aggregate(AggregateKind.COUNT))

    def sum(self, field: str) -> Pipeline:
        return self.then(Aggregate(AggregateKind.SUM, field))

    def average(self, field: str) -> Pipeline:
        return self.then(Aggregate(AggregateKind.AVG, field))

    avg = average

    def min(self, field: str) -> Pipeline:
        return self.then(Aggregate(AggregateKind.MIN, field))

    def max(self, field: str) -> Pipeline:
        return self.then(Aggregate(AggregateKind.MAX, field))

    def median(self, field: str) -> Pipeline:
        return self.then(Aggregate(AggregateKind.MEDIAN, field))

    def stddev(self, field: str) -> Pipeline:
        return self.then(Aggregate(AggregateKind.STDDEV, field))

    def distinct(self, field: str) -> Pipeline:
        return self.then(Aggregate(AggregateKind.DISTINCT, field))

    def top_n(self, n: int, field: str) -> Pipeline:
        return self.then(Aggregate(AggregateKind.TOPN, field, int(n)))

    def bottom_n(self, n: int, field: str) -> Pipeline:
        return self.then(Aggregate(AggregateKind.BOTTOMN, field, int(n)))

    # ----- ordering, joins, paging -----

    def sort(self, field: str, direction: SortDirection | str = SortDirection.ASC) -> Pipeline:
        return self.then(Sort(field, SortDirection.normalize(direction)))

    def join(self, source_key: str, source_field: str, target_field: str) -> Pipeline:
        return self.then(Join(source_key, source_field, target_field))

    def limit(self, n: int) -> Pipeline:
        if n < 0:
            raise ValueError("limit must be >= 0")
        return self.then(Limit(int(n)))
