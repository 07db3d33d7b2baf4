"""Tests for the agent listen service (fakeredis end to end)."""

import asyncio
import logging
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import fakeredis
import fakeredis.aioredis
import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from core.envelope import Envelope, agent_channel, registry_key
from core.errors import ConfigError, RelayError, format_error_chain
from core.settings import Settings
from worker.service import default_log_file, listen, setup_logging

PREFIX = "relay:discord"
CHANNEL = agent_channel(PREFIX, "claude")
REG_KEY = registry_key(PREFIX, "claude")


@pytest.fixture(autouse=True)
def _fast_poll(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr("worker.subscriber.POLL_TIMEOUT", 0.05)


@pytest.fixture()
def server() -> fakeredis.FakeServer:
    return fakeredis.FakeServer()


@pytest.fixture()
async def observer(server: fakeredis.FakeServer):
    client = fakeredis.aioredis.FakeRedis(server=server, decode_responses=True)
    yield client
    await client.aclose()


def _factory(server: fakeredis.FakeServer):
    return lambda cfg: fakeredis.aioredis.FakeRedis(server=server, decode_responses=True)


def _settings() -> Settings:
    return Settings(
        discord={"application_id": "app-1"},
        interactions={"handlers": {"commands": {"help": {"agent": "claude"}}}},
    )


def _envelope(agent: str = "claude") -> str:
    interaction = {"type": 2, "token": "tok-1", "data": {"name": "help"}}
    return Envelope.from_interaction(agent, "command", "help", interaction, 900).to_json()


async def _until(predicate, timeout: float = 3.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while loop.time() < deadline:
        if await predicate():
            return
        await asyncio.sleep(0.01)
    raise AssertionError("condition not met in time")


async def _subscribed(observer) -> bool:
    return dict(await observer.pubsub_numsub(CHANNEL)).get(CHANNEL, 0) > 0


# ---------------------------------------------------------------------------
# listen
# ---------------------------------------------------------------------------


class TestListen:
    """Subscribe, register, answer, clean up."""

    async def test_answers_and_cleans_up(self, server, observer) -> None:
        responder = AsyncMock()
        stop = asyncio.Event()
        task = asyncio.create_task(
            listen(_settings(), "claude", stop, responder=responder, redis_factory=_factory(server))
        )
        await _until(lambda: _subscribed(observer))

        raw = await observer.get(REG_KEY)
        assert raw is not None
        assert "command:help" in raw

        await observer.publish(CHANNEL, _envelope())

        async def answered() -> bool:
            return responder.create_followup_message.await_count == 1

        await _until(answered)
        responder.edit_original_response.assert_awaited_once()

        stop.set()
        await asyncio.wait_for(task, timeout=3)
        assert await observer.get(REG_KEY) is None

    async def test_listener_error_stops_service(self, server, observer) -> None:
        responder = AsyncMock()
        responder.edit_original_response.side_effect = RuntimeError("401 Unauthorized")
        task = asyncio.create_task(
            listen(_settings(), "claude", responder=responder, redis_factory=_factory(server))
        )
        await _until(lambda: _subscribed(observer))
        await observer.publish(CHANNEL, _envelope())

        with pytest.raises(RelayError, match="listener exited with error"):
            await asyncio.wait_for(task, timeout=3)
        assert await observer.get(REG_KEY) is None

    async def test_cancellation_unregisters(self, server, observer) -> None:
        task = asyncio.create_task(
            listen(_settings(), "claude", responder=AsyncMock(), redis_factory=_factory(server))
        )
        await _until(lambda: _subscribed(observer))

        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        assert await observer.get(REG_KEY) is None

    async def test_redis_drop_surfaces_as_relay_error(self, server, observer) -> None:
        clients: list = []

        def factory(cfg):
            client = fakeredis.aioredis.FakeRedis(server=server, decode_responses=True)
            if not clients:
                make_pubsub = client.pubsub

                def pubsub(*args, **kwargs):
                    ps = make_pubsub(*args, **kwargs)
                    ps.get_message = AsyncMock(side_effect=RedisConnectionError("Connection reset by peer"))
                    return ps

                client.pubsub = pubsub
            clients.append(client)
            return client

        with pytest.raises(RelayError, match="listener exited with error") as exc_info:
            await asyncio.wait_for(
                listen(_settings(), "claude", responder=AsyncMock(), redis_factory=factory),
                timeout=3,
            )
        chain = format_error_chain(exc_info.value)
        assert chain[1] == f"receive from redis channel {CHANNEL}"
        assert await observer.get(REG_KEY) is None


    async def test_requires_agent_id(self, server) -> None:
        with pytest.raises(ConfigError, match="agent id"):
            await listen(_settings(), "  ", redis_factory=_factory(server))

    async def test_requires_application_id(self, server) -> None:
        with pytest.raises(ConfigError, match="application_id"):
            await listen(Settings(), "claude", redis_factory=_factory(server))

    async def test_unreachable_redis(self) -> None:
        client = MagicMock()
        client.ping = AsyncMock(side_effect=RedisConnectionError("refused"))
        client.aclose = AsyncMock()

        with pytest.raises(RelayError, match="failed to connect to redis"):
            await listen(_settings(), "claude", responder=AsyncMock(), redis_factory=lambda cfg: client)
        client.aclose.assert_awaited()


# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------


class TestSetupLogging:
    @pytest.fixture(autouse=True)
    def _restore_root(self):
        root = logging.getLogger()
        relay = logging.getLogger("relay")
        saved = (root.level, list(root.handlers), relay.propagate)
        relay.propagate = True
        yield
        for handler in root.handlers:
            if handler not in saved[1]:
                handler.close()
        root.setLevel(saved[0])
        root.handlers[:] = saved[1]
        relay.propagate = saved[2]

    def test_file_and_console_handlers(self, tmp_path: Path) -> None:
        log_file = tmp_path / "logs" / "agent-claude.log"
        logger = setup_logging(verbose=True, log_file=log_file)

        logger.info("hello from the agent")

        assert logger.name == "relay"
        assert log_file.exists()
        assert "hello from the agent" in log_file.read_text()

    def test_default_log_file(self) -> None:
        assert default_log_file("Claude").name == "agent-claude.log"
