"""Envelope publishing over Redis pub/sub."""

import asyncio
import logging

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from core.broker import create_redis_client
from core.config import normalize_channel_prefix
from core.envelope import Envelope, agent_channel
from core.errors import ConfigError, PublishError
from core.settings import RedisConfig

logger = logging.getLogger("relay.publisher")

PUBLISH_TIMEOUT = 5.0  # seconds


class RedisPublisher:
    """Publishes envelopes on ``{prefix}:agent:{agent}`` channels.

    The client is owned by the publisher and closed by ``close()``.
    """

    def __init__(
        self,
        client: aioredis.Redis,
        prefix: str = "",
        timeout: float = PUBLISH_TIMEOUT,
    ) -> None:
        self._client = client
        self.prefix = normalize_channel_prefix(prefix)
        self.timeout = timeout

    @classmethod
    async def connect(cls, cfg: RedisConfig, timeout: float = PUBLISH_TIMEOUT) -> "RedisPublisher":
        """Create a publisher and verify the server answers PING."""
        client = create_redis_client(cfg)
        try:
            await asyncio.wait_for(client.ping(), timeout=timeout)
        except (RedisError, OSError, TimeoutError) as e:
            await client.aclose()
            raise ConfigError(
                f"redis ping {cfg.addr} failed",
                hint="Start Redis or point redis.addr at a running server.",
            ) from e
        return cls(client, cfg.channel_prefix, timeout)

    def channel_for(self, agent: str) -> str:
        return agent_channel(self.prefix, agent)

    async def publish(self, envelope: Envelope) -> int:
        """Publish one envelope. Returns the number of receiving subscribers."""
        if not envelope.agent.strip():
            raise PublishError("envelope agent is required")
        channel = self.channel_for(envelope.agent)
        try:
            receivers = await asyncio.wait_for(
                self._client.publish(channel, envelope.to_json()),
                timeout=self.timeout,
            )
        except (RedisError, OSError, TimeoutError) as e:
            raise PublishError(f"publish redis channel {channel}: {str(e) or type(e).__name__}") from e
        if not receivers:
            logger.warning(
                "No subscriber on %s", channel,
                extra={"channel": channel, "agent": envelope.agent},
            )
        return receivers

    async def close(self) -> None:
        await self._client.aclose()
