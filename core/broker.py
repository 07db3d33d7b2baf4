"""Redis client construction shared by the server, the worker and the CLI."""

import redis.asyncio as aioredis

from core.config import DEFAULT_REDIS_ADDR, split_host_port
from core.settings import RedisConfig


def create_redis_client(cfg: RedisConfig) -> aioredis.Redis:
    """Create an async Redis client. No connection is made until first use."""
    addr = cfg.addr or DEFAULT_REDIS_ADDR
    if addr.startswith(("redis://", "rediss://", "unix://")):
        return aioredis.from_url(
            addr, db=cfg.db, password=cfg.password or None, decode_responses=True
        )
    host, port = split_host_port(addr, 6379)
    return aioredis.Redis(
        host=host or "127.0.0.1",
        port=port,
        db=cfg.db,
        password=cfg.password or None,
        decode_responses=True,
    )
