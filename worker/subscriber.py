"""Blocking subscribe loop over one agent's Redis channel."""

import asyncio
import logging
from collections.abc import Awaitable, Callable

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from core.errors import RelayError

logger = logging.getLogger("relay.subscriber")

MessageHandler = Callable[[str], Awaitable[None]]

POLL_TIMEOUT = 1.0  # seconds between stop checks


class RedisSubscriber:
    """Delivers each message published on ``channel`` to a handler, in order.

    Lifecycle:
        1. Created with a client the subscriber owns
        2. subscribe() blocks until stopped, closed or cancelled
        3. close() ends a running subscribe() and closes the client
    """

    def __init__(self, client: aioredis.Redis, channel: str) -> None:
        self._client = client
        self.channel = channel
        self._closed = asyncio.Event()

    async def subscribe(
        self,
        handler: MessageHandler,
        stop: asyncio.Event | None = None,
    ) -> None:
        """Await ``handler`` once per message until stopped.

        Returns None when ``stop`` is set or the subscriber is closed.
        An exception from ``handler`` aborts the loop and propagates, as
        does task cancellation.

        Raises:
            RelayError: The subscription failed or the connection dropped
                while not stopping.
        """
        pubsub = self._client.pubsub()
        try:
            try:
                await pubsub.subscribe(self.channel)
            except (RedisError, OSError) as e:
                raise RelayError(f"subscribe redis channel {self.channel}") from e
            logger.info("Subscribed to %s", self.channel)
            while not self._stopping(stop):
                try:
                    message = await pubsub.get_message(
                        ignore_subscribe_messages=True, timeout=POLL_TIMEOUT
                    )
                except (RedisError, OSError) as e:
                    if self._stopping(stop):
                        return None
                    raise RelayError(f"receive from redis channel {self.channel}") from e
                if message is None or message.get("type") != "message":
                    continue
                await handler(message["data"])
            return None
        finally:
            try:
                await pubsub.unsubscribe(self.channel)
            except (RedisError, OSError):
                logger.debug("Unsubscribe from %s failed; connection already closed", self.channel)
            await pubsub.aclose()

    def _stopping(self, stop: asyncio.Event | None) -> bool:
        return self._closed.is_set() or (stop is not None and stop.is_set())

    async def close(self) -> None:
        self._closed.set()
        await self._client.aclose()
