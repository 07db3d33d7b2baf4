"""Tests for the agent registry and capability resolution."""

import asyncio
from unittest.mock import AsyncMock

import fakeredis.aioredis
import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from core.errors import RelayError
from core.settings import HandlerMappings
from worker.registry import (
    REGISTRY_TTL,
    AgentInfo,
    AgentRegistry,
    agent_info,
    resolve_agent_capabilities,
)


@pytest.fixture()
async def client():
    c = fakeredis.aioredis.FakeRedis(decode_responses=True)
    yield c
    await c.aclose()


def _mappings() -> HandlerMappings:
    return HandlerMappings.model_validate({
        "commands": {"Help": {"agent": "claude"}, "deploy": {"agent": "ops"}},
        "components": {"approve:deploy": {"agent": "Claude"}},
        "modals": {"feedback_form": {"agent": "claude"}},
        "autocomplete": {"environment": {"agent": "claude", "choices": [{"name": "P", "value": "p"}]}},
    })


# ---------------------------------------------------------------------------
# Capabilities
# ---------------------------------------------------------------------------


class TestCapabilities:
    def test_sorted_kind_key_pairs(self) -> None:
        assert resolve_agent_capabilities("claude", _mappings()) == [
            "autocomplete:environment",
            "command:help",
            "component:approve:deploy",
            "modal:feedback_form",
        ]

    def test_agent_match_ignores_case(self) -> None:
        assert resolve_agent_capabilities("OPS", _mappings()) == ["command:deploy"]

    def test_unknown_agent_has_none(self) -> None:
        assert resolve_agent_capabilities("nobody", _mappings()) == []

    def test_agent_info_fields(self) -> None:
        info = agent_info("ops", _mappings(), "relay:discord:agent:ops")
        assert info.agent == "ops"
        assert info.channels == ["relay:discord:agent:ops"]
        assert info.hostname
        assert info.process_id > 0


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------


class TestAgentRegistry:
    """Entries are JSON with a TTL under {prefix}:registry:{agent}."""

    async def test_register_sets_ttl(self, client) -> None:
        registry = AgentRegistry(client, "relay:discord")
        await registry.register(AgentInfo(agent="Claude", capabilities=["command:help"]))

        key = "relay:discord:registry:claude"
        assert registry.key("Claude") == key
        ttl = await client.ttl(key)
        assert 0 < ttl <= REGISTRY_TTL

        stored = await registry.get("claude")
        assert stored is not None
        assert stored.capabilities == ["command:help"]
        assert stored.updated_at.endswith("Z")

    async def test_blank_agent_rejected(self, client) -> None:
        with pytest.raises(RelayError):
            await AgentRegistry(client, "p").register(AgentInfo(agent="  "))

    async def test_unregister_deletes(self, client) -> None:
        registry = AgentRegistry(client, "p")
        await registry.register(AgentInfo(agent="claude"))
        await registry.unregister("claude")
        assert await registry.get("claude") is None

    async def test_unregister_twice_is_noop(self, client) -> None:
        registry = AgentRegistry(client, "p")
        await registry.register(AgentInfo(agent="claude"))

        await registry.unregister("claude")
        await registry.unregister("claude")

        assert await registry.get("claude") is None

    async def test_unregister_missing_key(self) -> None:
        stub = AsyncMock()
        stub.delete.return_value = 0
        registry = AgentRegistry(stub, "p")

        await registry.unregister("ghost")

        stub.delete.assert_awaited_once_with("p:registry:ghost")

    async def test_unregister_redis_failure_wrapped(self) -> None:
        broken = AsyncMock()
        broken.delete.side_effect = RedisConnectionError("down")
        with pytest.raises(RelayError, match="remove registry entry"):
            await AgentRegistry(broken, "p").unregister("claude")

    async def test_unregister_blank_is_noop(self, client) -> None:
        await AgentRegistry(client, "p").unregister("")

    async def test_nonpositive_ttl_uses_default(self, client) -> None:
        assert AgentRegistry(client, "p", ttl=0).ttl == REGISTRY_TTL

    async def test_redis_failure_wrapped(self) -> None:
        broken = AsyncMock()
        broken.set.side_effect = RedisConnectionError("down")
        with pytest.raises(RelayError, match="store registry info"):
            await AgentRegistry(broken, "p").register(AgentInfo(agent="claude"))


class TestHeartbeat:
    async def test_refreshes_until_stopped(self, client) -> None:
        registry = AgentRegistry(client, "p")
        info = AgentInfo(agent="claude")
        stop = asyncio.Event()

        task = asyncio.create_task(registry.heartbeat(info, interval=0.02, stop=stop))
        for _ in range(100):
            if await registry.get("claude") is not None:
                break
            await asyncio.sleep(0.01)
        stop.set()
        await asyncio.wait_for(task, timeout=1)

        assert await registry.get("claude") is not None

    async def test_failures_do_not_stop_heartbeat(self) -> None:
        broken = AsyncMock()
        broken.set.side_effect = RedisConnectionError("down")
        registry = AgentRegistry(broken, "p")
        stop = asyncio.Event()

        task = asyncio.create_task(
            registry.heartbeat(AgentInfo(agent="claude"), interval=0.01, stop=stop)
        )
        for _ in range(100):
            if broken.set.await_count >= 2:
                break
            await asyncio.sleep(0.01)
        stop.set()
        await asyncio.wait_for(task, timeout=1)

        assert broken.set.await_count >= 2

    async def test_cancellation(self, client) -> None:
        registry = AgentRegistry(client, "p")
        task = asyncio.create_task(registry.heartbeat(AgentInfo(agent="claude"), interval=10))
        await asyncio.sleep(0)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
