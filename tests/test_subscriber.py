"""Tests for the Redis subscribe loop (fakeredis)."""

import asyncio

import fakeredis
import fakeredis.aioredis
import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from core.errors import RelayError
from worker.subscriber import RedisSubscriber

CHANNEL = "relay:discord:agent:claude"


@pytest.fixture(autouse=True)
def _fast_poll(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr("worker.subscriber.POLL_TIMEOUT", 0.05)


@pytest.fixture()
def server() -> fakeredis.FakeServer:
    return fakeredis.FakeServer()


@pytest.fixture()
async def publisher(server: fakeredis.FakeServer):
    client = fakeredis.aioredis.FakeRedis(server=server, decode_responses=True)
    yield client
    await client.aclose()


def _subscriber(server: fakeredis.FakeServer) -> RedisSubscriber:
    client = fakeredis.aioredis.FakeRedis(server=server, decode_responses=True)
    return RedisSubscriber(client, CHANNEL)


def _dropping_after(client, polls: int):
    """Make the client's pubsub lose its connection after ``polls`` reads."""
    make_pubsub = client.pubsub

    def pubsub(*args, **kwargs):
        ps = make_pubsub(*args, **kwargs)
        read = ps.get_message
        count = 0

        async def get_message(**kw):
            nonlocal count
            count += 1
            if count > polls:
                raise RedisConnectionError("Connection closed by server.")
            return await read(**kw)

        ps.get_message = get_message
        return ps

    client.pubsub = pubsub
    return client


async def _wait_subscribed(client, count: int = 1) -> None:
    for _ in range(200):
        numsub = dict(await client.pubsub_numsub(CHANNEL))
        if numsub.get(CHANNEL, 0) >= count:
            return
        await asyncio.sleep(0.01)
    raise AssertionError("subscriber never subscribed")


async def _wait_unsubscribed(client) -> None:
    for _ in range(200):
        numsub = dict(await client.pubsub_numsub(CHANNEL))
        if numsub.get(CHANNEL, 0) == 0:
            return
        await asyncio.sleep(0.01)
    raise AssertionError("subscription was not released")


class TestRedisSubscriber:
    """Delivery order and every exit path."""

    async def test_delivers_messages_in_order_until_stopped(
        self, server: fakeredis.FakeServer, publisher
    ) -> None:
        sub = _subscriber(server)
        received: list[str] = []
        stop = asyncio.Event()

        async def handler(payload: str) -> None:
            received.append(payload)
            if len(received) == 3:
                stop.set()

        task = asyncio.create_task(sub.subscribe(handler, stop))
        await _wait_subscribed(publisher)
        for n in range(3):
            await publisher.publish(CHANNEL, f"msg-{n}")

        assert await asyncio.wait_for(task, timeout=5) is None
        assert received == ["msg-0", "msg-1", "msg-2"]
        await _wait_unsubscribed(publisher)
        await sub.close()

    async def test_ignores_other_channels(
        self, server: fakeredis.FakeServer, publisher
    ) -> None:
        sub = _subscriber(server)
        received: list[str] = []
        stop = asyncio.Event()

        async def handler(payload: str) -> None:
            received.append(payload)
            stop.set()

        task = asyncio.create_task(sub.subscribe(handler, stop))
        await _wait_subscribed(publisher)
        await publisher.publish("relay:discord:agent:codex", "not-mine")
        await publisher.publish(CHANNEL, "mine")

        await asyncio.wait_for(task, timeout=5)
        assert received == ["mine"]
        await sub.close()

    async def test_handler_error_propagates_and_unsubscribes(
        self, server: fakeredis.FakeServer, publisher
    ) -> None:
        sub = _subscriber(server)

        async def handler(payload: str) -> None:
            raise RuntimeError(f"cannot handle {payload}")

        task = asyncio.create_task(sub.subscribe(handler))
        await _wait_subscribed(publisher)
        await publisher.publish(CHANNEL, "boom")

        with pytest.raises(RuntimeError, match="cannot handle boom"):
            await asyncio.wait_for(task, timeout=5)
        await _wait_unsubscribed(publisher)
        await sub.close()

    async def test_cancellation_propagates(
        self, server: fakeredis.FakeServer, publisher
    ) -> None:
        sub = _subscriber(server)

        async def handler(payload: str) -> None:
            pass

        task = asyncio.create_task(sub.subscribe(handler))
        await _wait_subscribed(publisher)
        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task
        await sub.close()

    async def test_preset_stop_returns_immediately(
        self, server: fakeredis.FakeServer
    ) -> None:
        sub = _subscriber(server)
        stop = asyncio.Event()
        stop.set()

        async def handler(payload: str) -> None:
            raise AssertionError("should not be called")

        assert await asyncio.wait_for(sub.subscribe(handler, stop), timeout=5) is None
        await sub.close()

    async def test_close_ends_subscription_cleanly(
        self, server: fakeredis.FakeServer, publisher
    ) -> None:
        sub = _subscriber(server)

        async def handler(payload: str) -> None:
            pass

        task = asyncio.create_task(sub.subscribe(handler))
        await _wait_subscribed(publisher)
        await sub.close()

        assert await asyncio.wait_for(task, timeout=5) is None

    async def test_connection_drop_is_wrapped(
        self, server: fakeredis.FakeServer
    ) -> None:
        client = _dropping_after(
            fakeredis.aioredis.FakeRedis(server=server, decode_responses=True), polls=2
        )
        sub = RedisSubscriber(client, CHANNEL)

        async def handler(payload: str) -> None:
            pass

        with pytest.raises(RelayError, match=f"receive from redis channel {CHANNEL}") as exc_info:
            await asyncio.wait_for(sub.subscribe(handler), timeout=5)
        assert isinstance(exc_info.value.__cause__, RedisConnectionError)
        await sub.close()
