"""Discord Relay Interaction Server - FastAPI application.

Receives signed interaction callbacks from Discord, acknowledges them
within the platform deadline and hands routed interactions to agents
over Redis pub/sub. Agents answer Discord directly; replies never pass
through this server.
"""

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI

from core.envelope import Envelope
from core.errors import ConfigError, PublishError
from core.settings import Settings
from server.app.interactions.crypto import SignatureVerifier
from server.app.interactions.dispatcher import Dispatcher
from server.app.interactions.server import InteractionServer, Publisher
from server.app.logging import RequestLoggingMiddleware, setup_logging
from server.app.redis import RedisPublisher

logger = logging.getLogger("relay.server")


def load_routes(
    settings: Settings, dry_run: bool = False
) -> tuple[Dispatcher, SignatureVerifier | None]:
    """Compile routes and load the verification key.

    Raises:
        ConfigError: No routes are configured, or the public key is
            missing or malformed outside dry run.
    """
    dispatcher = Dispatcher.from_config(settings.interactions)
    if dry_run:
        return dispatcher, None
    if not settings.discord.public_key:
        raise ConfigError(
            "discord public key is required",
            hint="Set discord.public_key or RELAY_DISCORD__PUBLIC_KEY.",
        )
    return dispatcher, SignatureVerifier(settings.discord.public_key)


def build_interaction_server(
    settings: Settings, publisher: Publisher, dry_run: bool = False
) -> InteractionServer:
    dispatcher, verifier = load_routes(settings, dry_run)
    if verifier is None:
        logger.warning("Dry run: interaction signatures are NOT verified")
    return InteractionServer(
        verifier=verifier,
        dispatcher=dispatcher,
        publisher=publisher,
        timeout_seconds=settings.interactions.timeout,
    )


def create_app(
    settings: Settings,
    publisher: Publisher | None = None,
    dry_run: bool = False,
    debug: bool = False,
) -> FastAPI:
    """Create and configure the FastAPI application.

    When ``publisher`` is None a Redis publisher is connected during
    startup and closed on shutdown; an injected publisher is left open.
    """
    setup_logging(debug=debug)

    # Validate routes and key before the app exists.
    interaction_server = build_interaction_server(settings, publisher or _Pending(), dry_run)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        """Application startup and shutdown."""
        owned: RedisPublisher | None = None
        if publisher is None:
            owned = await RedisPublisher.connect(settings.redis)
            interaction_server.publisher = owned
        app.state.interaction_server = interaction_server
        logger.info(
            "Serving %d interaction handlers", len(interaction_server.dispatcher),
            extra={"channel": f"{settings.redis.channel_prefix}:agent:*"},
        )
        try:
            yield
        finally:
            if owned is not None:
                await owned.close()

    app = FastAPI(
        title="Discord Relay",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.interaction_server = interaction_server

    app.add_middleware(RequestLoggingMiddleware)

    # Health check
    @app.get("/health")
    async def health() -> dict:
        """Health check endpoint."""
        return {"status": "ok", "service": "discord-relay-server"}

    from server.app.interactions.router import router as interactions_router

    app.include_router(interactions_router, prefix="/interactions", tags=["interactions"])

    return app


class _Pending:
    """Stands in for the Redis publisher until the lifespan connects it."""

    async def publish(self, envelope: Envelope) -> int:
        raise PublishError("publisher not connected")

    def channel_for(self, agent: str) -> str:
        return agent
