"""Agent registry: one expiring Redis key per running listener.

Entries live at ``{prefix}:registry:{agent}`` and expire after the TTL
unless the owning listener refreshes them.
"""

import asyncio
import json
import logging
import os
import socket
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from core.config import normalize_channel_prefix
from core.envelope import registry_key
from core.errors import RelayError
from core.settings import HandlerMappings

logger = logging.getLogger("relay.registry")

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

REGISTRY_TTL = 120  # seconds
HEARTBEAT_INTERVAL = 30  # seconds


@dataclass
class AgentInfo:
    agent: str
    capabilities: list[str] = field(default_factory=list)
    channels: list[str] = field(default_factory=list)
    hostname: str = ""
    process_id: int = 0
    updated_at: str = ""

    def to_json(self) -> str:
        return json.dumps(asdict(self))

    @classmethod
    def from_json(cls, raw: str | bytes) -> "AgentInfo":
        return cls(**json.loads(raw))


def hostname_or_unknown() -> str:
    try:
        host = socket.gethostname()
    except OSError:
        return "unknown"
    return host if host.strip() else "unknown"


def resolve_agent_capabilities(agent: str, mappings: HandlerMappings) -> list[str]:
    """Sorted ``kind:key`` strings for every route owned by ``agent``."""
    wanted = agent.lower()
    caps: list[str] = []
    for kind, table in (
        ("command", mappings.commands),
        ("component", mappings.components),
        ("modal", mappings.modals),
        ("autocomplete", mappings.autocomplete),
    ):
        caps.extend(f"{kind}:{key}" for key, route in table.items() if route.agent.lower() == wanted)
    return sorted(caps)


def agent_info(agent: str, mappings: HandlerMappings, channel: str) -> AgentInfo:
    return AgentInfo(
        agent=agent,
        capabilities=resolve_agent_capabilities(agent, mappings),
        channels=[channel],
        hostname=hostname_or_unknown(),
        process_id=os.getpid(),
    )


class AgentRegistry:
    """Registers listeners so operators can see which agents are online."""

    def __init__(
        self,
        client: aioredis.Redis,
        prefix: str = "",
        ttl: int = REGISTRY_TTL,
    ) -> None:
        self._client = client
        self.prefix = normalize_channel_prefix(prefix)
        self.ttl = ttl if ttl > 0 else REGISTRY_TTL

    def key(self, agent: str) -> str:
        return registry_key(self.prefix, agent)

    async def register(self, info: AgentInfo) -> None:
        """Write the entry with a fresh timestamp and TTL."""
        if not info.agent.strip():
            raise RelayError("agent is required for registry entry")
        info.updated_at = datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")
        try:
            await self._client.set(self.key(info.agent), info.to_json(), ex=self.ttl)
        except (RedisError, OSError) as e:
            raise RelayError("store registry info") from e

    async def heartbeat(
        self,
        info: AgentInfo,
        interval: float = HEARTBEAT_INTERVAL,
        stop: asyncio.Event | None = None,
    ) -> None:
        """Refresh the entry every ``interval`` seconds until stopped or cancelled."""
        if interval <= 0:
            interval = HEARTBEAT_INTERVAL
        stop = stop or asyncio.Event()
        while not stop.is_set():
            try:
                await asyncio.wait_for(stop.wait(), timeout=interval)
                return
            except TimeoutError:
                pass
            try:
                await self.register(info)
            except RelayError as e:
                logger.warning("Heartbeat failed: %s", e.__cause__ or e)

    async def unregister(self, agent: str) -> None:
        """Delete the entry. Blank agents and missing keys are no-ops."""
        if not agent.strip():
            return
        try:
            await self._client.delete(self.key(agent))
        except (RedisError, OSError) as e:
            raise RelayError("remove registry entry") from e

    async def get(self, agent: str) -> AgentInfo | None:
        raw = await self._client.get(self.key(agent))
        if raw is None:
            return None
        return AgentInfo.from_json(raw)

    async def close(self) -> None:
        await self._client.aclose()
