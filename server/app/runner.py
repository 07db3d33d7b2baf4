"""Foreground server process: optional tunnel plus uvicorn.

Used by ``relay server start``. Configuration problems surface as
ConfigError before Redis, the tunnel or the listener are touched.
"""

import asyncio
import contextlib
import logging
import shutil
import signal
import threading
from collections.abc import Callable, Iterator

import uvicorn

from cli.tunnel import TunnelOptions, TunnelProvider, TunnelSession, resolve_tunnel_provider, start_tunnel
from core.config import split_host_port
from core.errors import ConfigError, RelayError
from core.settings import Settings
from server.app.interactions.server import Publisher
from server.app.logging import setup_logging
from server.app.main import create_app, load_routes
from server.app.redis import RedisPublisher

logger = logging.getLogger("relay.server")

SHUTDOWN_TIMEOUT = 5  # seconds
HANDLED_SIGNALS = (signal.SIGINT, signal.SIGTERM)


class RelayServer(uvicorn.Server):
    """uvicorn server that ends serve() on SIGINT or SIGTERM.

    uvicorn re-raises a captured signal once it has shut down, which would
    kill the process before the tunnel is closed. Here the signal only
    requests shutdown and serve() returns normally.
    """

    @contextlib.contextmanager
    def capture_signals(self) -> Iterator[None]:
        if threading.current_thread() is not threading.main_thread():
            yield
            return
        loop = asyncio.get_running_loop()
        for sig in HANDLED_SIGNALS:
            loop.add_signal_handler(sig, self.handle_exit, sig, None)
        try:
            yield
        finally:
            for sig in HANDLED_SIGNALS:
                loop.remove_signal_handler(sig)


async def open_tunnel(
    settings: Settings,
    providers: dict[str, TunnelProvider] | None = None,
    which: Callable[[str], str | None] = shutil.which,
) -> TunnelSession | None:
    """Start the configured tunnel; its URL becomes discord.public_url."""
    try:
        provider = resolve_tunnel_provider(settings.tunnel.provider, which)
    except RelayError as e:
        raise RelayError("unable to determine tunnel provider", hint=e.hint) from e
    if not provider:
        return None

    try:
        session = await start_tunnel(
            TunnelOptions(
                provider=provider,
                listen_addr=settings.server.listen_addr,
                ngrok_auth_token=settings.tunnel.ngrok_auth_token,
            ),
            providers,
        )
    except RelayError as e:
        raise RelayError(f"failed to start {provider} tunnel", hint=e.hint) from e
    if session is not None:
        settings.tunnel.provider = session.provider
        settings.discord.public_url = session.url
    return session


async def serve(
    settings: Settings,
    dry_run: bool = False,
    debug: bool = False,
    *,
    publisher: Publisher | None = None,
    providers: dict[str, TunnelProvider] | None = None,
) -> None:
    """Run the interaction server until interrupted."""
    setup_logging(debug=debug)

    # Fail on routes and key before connecting anything.
    load_routes(settings, dry_run)

    try:
        host, port = split_host_port(settings.server.listen_addr, 8080)
    except ValueError as e:
        raise ConfigError(f"invalid listen address {settings.server.listen_addr!r}") from e

    owned: RedisPublisher | None = None
    if publisher is None:
        try:
            owned = await RedisPublisher.connect(settings.redis)
        except ConfigError as e:
            raise RelayError("failed to connect to redis", hint=e.hint) from e
        publisher = owned

    session: TunnelSession | None = None
    try:
        session = await open_tunnel(settings, providers)
        app = create_app(settings, publisher=publisher, dry_run=dry_run, debug=debug)

        logger.info("Discord interaction server listening on %s", settings.server.listen_addr)
        if settings.discord.public_url:
            logger.info("Public URL: %s", settings.discord.public_url)
            logger.info(
                "Interactions endpoint: %s/interactions",
                settings.discord.public_url.rstrip("/"),
            )

        config = uvicorn.Config(
            app,
            host=host or "0.0.0.0",
            port=port,
            log_config=None,
            timeout_graceful_shutdown=SHUTDOWN_TIMEOUT,
        )
        server = RelayServer(config)
        await server.serve()
        if not server.started:
            raise RelayError("interaction server exited with error")
        logger.info("Discord interaction server stopped")
    finally:
        if session is not None:
            await session.close()
        if owned is not None:
            await owned.close()
