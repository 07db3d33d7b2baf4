"""Agent listen service: wires subscriber, registry and listener together."""

import asyncio
import logging
import signal
from collections.abc import Callable
from logging.handlers import RotatingFileHandler
from pathlib import Path

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from core.broker import create_redis_client
from core.config import LOG_DIR
from core.envelope import agent_channel
from core.errors import ConfigError, RelayError
from core.settings import RedisConfig, Settings
from worker.interaction_client import InteractionClient
from worker.listener import AgentListener, InteractionResponder
from worker.registry import HEARTBEAT_INTERVAL, REGISTRY_TTL, AgentRegistry, agent_info
from worker.subscriber import RedisSubscriber

logger = logging.getLogger("relay.worker")

CONNECT_TIMEOUT = 5.0  # seconds


# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

def setup_logging(verbose: bool = False, log_file: Path | None = None) -> logging.Logger:
    formatter = logging.Formatter(
        "%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S"
    )

    root = logging.getLogger()
    root.setLevel(logging.DEBUG)

    if log_file is not None:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        # File handler with rotation (10MB, keep 5)
        file_handler = RotatingFileHandler(
            log_file,
            maxBytes=10 * 1024 * 1024,
            backupCount=5
        )
        file_handler.setFormatter(formatter)
        file_handler.setLevel(logging.DEBUG)
        root.addHandler(file_handler)

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(formatter)
    console_handler.setLevel(logging.DEBUG if verbose else logging.INFO)
    root.addHandler(console_handler)

    return logging.getLogger("relay")


def default_log_file(agent_id: str) -> Path:
    return LOG_DIR / f"agent-{agent_id.lower()}.log"


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------

async def _connect(client: aioredis.Redis, cfg: RedisConfig) -> None:
    try:
        await asyncio.wait_for(client.ping(), timeout=CONNECT_TIMEOUT)
    except (RedisError, OSError, TimeoutError) as e:
        await client.aclose()
        raise RelayError(
            "failed to connect to redis",
            hint=f"Check that Redis is reachable at {cfg.addr}.",
        ) from e


async def listen(
    settings: Settings,
    agent_id: str,
    stop: asyncio.Event | None = None,
    *,
    responder: InteractionResponder | None = None,
    redis_factory: Callable[[RedisConfig], aioredis.Redis] = create_redis_client,
    heartbeat_interval: float = HEARTBEAT_INTERVAL,
    registry_ttl: int = REGISTRY_TTL,
) -> None:
    """Run one agent listener until ``stop`` is set or the task is cancelled.

    On every exit path the heartbeat is cancelled, the registry entry is
    removed and all clients are closed.

    Raises:
        ConfigError: No agent id or application id.
        RelayError: Redis is unreachable, registration failed, or the
            listener could not answer an interaction.
    """
    agent_id = agent_id.strip()
    if not agent_id:
        raise ConfigError("agent id required", hint="Set --agent or RELAY_AGENT_ID.")
    if not settings.discord.application_id:
        raise ConfigError(
            "discord.application_id is required to edit responses",
            hint="Set discord.application_id or RELAY_DISCORD__APPLICATION_ID.",
        )

    stop = stop or asyncio.Event()
    prefix = settings.redis.channel_prefix
    channel = agent_channel(prefix, agent_id)

    sub_client = redis_factory(settings.redis)
    await _connect(sub_client, settings.redis)
    subscriber = RedisSubscriber(sub_client, channel)

    owned_client: InteractionClient | None = None
    if responder is None:
        owned_client = InteractionClient.from_config(settings.discord)
        responder = owned_client

    registry: AgentRegistry | None = None
    heartbeat: asyncio.Task[None] | None = None
    try:
        reg_client = redis_factory(settings.redis)
        await _connect(reg_client, settings.redis)
        registry = AgentRegistry(reg_client, prefix, registry_ttl)

        info = agent_info(agent_id, settings.interactions.handlers, channel)
        try:
            await registry.register(info)
        except RelayError as e:
            raise RelayError("failed to register agent") from e
        heartbeat = asyncio.create_task(registry.heartbeat(info, heartbeat_interval, stop))

        listener = AgentListener(agent_id, settings.discord.application_id, responder)
        logger.info("Listening for interactions as agent %s (channel prefix %s)", agent_id, prefix)
        try:
            await subscriber.subscribe(listener.handle_payload, stop)
        except RelayError as e:
            raise RelayError("listener exited with error") from e
    finally:
        if heartbeat is not None:
            heartbeat.cancel()
            try:
                await heartbeat
            except asyncio.CancelledError:
                pass
        if registry is not None:
            try:
                await registry.unregister(agent_id)
            except RelayError as e:
                logger.warning("Unregister failed: %s", e.__cause__ or e)
            await registry.close()
        await subscriber.close()
        if owned_client is not None:
            await owned_client.aclose()
        logger.info("Agent %s stopped", agent_id)


def install_signal_handlers(stop: asyncio.Event) -> None:
    """Set ``stop`` on SIGINT or SIGTERM."""
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop.set)


async def run(settings: Settings, agent_id: str) -> None:
    """Entry point used by ``relay agent listen``."""
    stop = asyncio.Event()
    install_signal_handlers(stop)
    await listen(settings, agent_id, stop)
