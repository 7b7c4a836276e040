"""Tests for push delivery on subscribed connections."""

import asyncio

import pytest

from tempdb_client.client import DatabaseClient
from tempdb_client.connection import ConnectionState, connect
from tempdb_client.errors import ConnectionError
from tempdb_client.pubsub import Subscription


async def wait_until(predicate, timeout: float = 2.0) -> None:
    async def poll():
        while not predicate():
            await asyncio.sleep(0.01)

    await asyncio.wait_for(poll(), timeout)


@pytest.fixture
async def db(server, config):
    async with DatabaseClient(config) as client:
        yield client


class TestDelivery:
    """Test that push frames reach handlers in order."""

    async def test_ordered_delivery(self, server, db):
        received = []
        await db.subscribe("orders", received.append)

        for n in range(5):
            assert await db.publish("orders", f"created #{n}") == 1

        await wait_until(lambda: len(received) == 5)
        assert received == [f"orders created #{n}" for n in range(5)]

    async def test_async_handler(self, server, db):
        received = []

        async def on_message(text):
            await asyncio.sleep(0)
            received.append(text)

        await db.subscribe("news", on_message)
        await db.publish("news", "hello")
        await wait_until(lambda: received)
        assert received == ["news hello"]

    async def test_handler_error_does_not_stop_delivery(self, server, db):
        received = []

        def on_message(text):
            received.append(text)
            if text.endswith("boom"):
                raise RuntimeError("handler failed")

        sub = await db.subscribe("jobs", on_message)
        await db.publish("jobs", "boom")
        await db.publish("jobs", "after")
        await wait_until(lambda: len(received) == 2)
        assert received == ["jobs boom", "jobs after"]
        assert sub.active

    async def test_publish_counts_receivers(self, server, db):
        assert await db.publish("empty-channel", "nobody") == 0
        await db.subscribe("busy", lambda text: None)
        await db.subscribe("busy", lambda text: None)
        assert await db.publish("busy", "x") == 2


class TestRouting:
    async def test_channels_routed_separately(self, server, db):
        a, b = [], []
        sub = await db.subscribe("a", a.append)
        await sub.subscribe("b", b.append)
        assert sub.channels == frozenset({"a", "b"})

        await db.publish("b", "one")
        await db.publish("a", "two")
        await wait_until(lambda: a and b)
        assert a == ["a two"]
        assert b == ["b one"]

    async def test_single_channel_fallback(self, server, db):
        received = []
        await db.subscribe("news", received.append)
        for writer in server.subscribers["news"]:
            writer.write(b"MSG untagged payload\n")
        await wait_until(lambda: received)
        assert received == ["untagged payload"]

    async def test_unsubscribe_stops_routing(self, server, db):
        a, b = [], []
        sub = await db.subscribe("a", a.append)
        await sub.subscribe("b", b.append)

        reply = await sub.unsubscribe("a")
        assert reply.value == "UNSUBSCRIBED"
        assert sub.channels == frozenset({"b"})
        assert await db.publish("a", "ignored") == 0

        # a frame for the dropped channel already in flight is discarded
        for writer in server.subscribers["b"]:
            writer.write(b"MSG a late\n")
        await db.publish("b", "done")
        await wait_until(lambda: b)
        assert a == []
        assert b == ["b done"]


class TestIsolation:
    """Push frames never leak into replies of other commands."""

    async def test_control_reply_after_push_frames(self, server, db):
        received = []
        sub = await db.subscribe("a", received.append)
        for n in range(3):
            await db.publish("a", str(n))

        reply = await sub.subscribe("b", received.append)
        assert reply.value == "SUBSCRIBED"
        await wait_until(lambda: len(received) == 3)
        assert received == ["a 0", "a 1", "a 2"]

    async def test_other_connection_unaffected(self, server, db):
        await db.subscribe("a", lambda text: None)
        await db.publish("a", "x")
        await db.set("k", "v")
        reply = await db.get("k")
        assert reply.value == "v"

    async def test_subscribed_connection_leaves_pool(self, server, config):
        conn = await connect(config)
        sub = Subscription.start(conn)
        try:
            assert conn.state is ConnectionState.SUBSCRIBED
            with pytest.raises(ConnectionError):
                await conn.execute("PING")
        finally:
            await sub.close()


class TestLifecycle:
    async def test_close(self, server, db):
        sub = await db.subscribe("a", lambda text: None)
        await sub.close()
        assert not sub.active
        with pytest.raises(ConnectionError, match="closed"):
            await sub.subscribe("b", lambda text: None)
        await sub.close()

    async def test_server_drop_stops_reader(self, server, db):
        sub = await db.subscribe("a", lambda text: None)
        server.drop_clients()
        await wait_until(lambda: not sub.active)
        assert isinstance(sub.exception, ConnectionError)
        with pytest.raises(ConnectionError, match="stopped"):
            await sub.subscribe("b", lambda text: None)

    async def test_handler_must_be_callable(self, server, db):
        sub = await db.subscribe("a", lambda text: None)
        with pytest.raises(TypeError):
            await sub.subscribe("b", "not callable")

    async def test_closed_subscriptions_are_dropped(self, server, db):
        first = await db.subscribe("a", lambda text: None)
        await first.close()
        assert first.closed
        assert db.subscriptions == []

        second = await db.subscribe("b", lambda text: None)
        assert db.subscriptions == [second]
        assert len(db._subscriptions) == 1

    async def test_client_close_closes_subscriptions(self, server, config):
        client = DatabaseClient(config)
        sub = await client.subscribe("a", lambda text: None)
        await client.close()
        assert not sub.active
