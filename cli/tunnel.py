"""Development tunnels: ngrok or localtunnel as a supervised subprocess.

A tunnel exposes the local interaction server at a public HTTPS URL so
Discord can reach it. The subprocess is owned by a TunnelSession, which
always leaves it stopped after close().
"""

import asyncio
import logging
import os
import shutil
import signal
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Protocol

import httpx

from core.config import split_host_port
from core.errors import TunnelError

logger = logging.getLogger("relay.tunnel")

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

NGROK_API_URL = "http://127.0.0.1:4040/api/tunnels"
NGROK_API_TIMEOUT = 2.0  # per request
POLL_INTERVAL = 0.5
READY_TIMEOUT = 15.0
STOP_TIMEOUT = 2.0

SUPPORTED_PROVIDERS = ("ngrok", "localtunnel", "auto")
_WILDCARD_HOSTS = ("", "0.0.0.0", "::")


# ---------------------------------------------------------------------------
# Processes
# ---------------------------------------------------------------------------


class ManagedProcess(Protocol):
    """The subset of ``asyncio.subprocess.Process`` a session relies on."""

    returncode: int | None
    stdout: asyncio.StreamReader | None

    def send_signal(self, sig: int) -> None: ...

    def kill(self) -> None: ...

    async def wait(self) -> int: ...


ProcessFactory = Callable[[list[str], dict[str, str] | None, bool], Awaitable[ManagedProcess]]


async def spawn_process(
    argv: list[str], env: dict[str, str] | None = None, capture_stdout: bool = False
) -> ManagedProcess:
    """Start ``argv`` with stdin and stderr detached."""
    return await asyncio.create_subprocess_exec(
        *argv,
        stdin=asyncio.subprocess.DEVNULL,
        stdout=asyncio.subprocess.PIPE if capture_stdout else asyncio.subprocess.DEVNULL,
        stderr=asyncio.subprocess.DEVNULL,
        env=env,
    )


def _kill(process: ManagedProcess) -> None:
    if process.returncode is not None:
        return
    try:
        process.kill()
    except ProcessLookupError:
        pass


async def _abandon(process: ManagedProcess) -> None:
    """Kill a process that never became ready and reap it."""
    _kill(process)
    try:
        await asyncio.wait_for(process.wait(), timeout=STOP_TIMEOUT)
    except TimeoutError:
        logger.warning("Tunnel process did not exit within %.0fs of kill", STOP_TIMEOUT)


# ---------------------------------------------------------------------------
# Session
# ---------------------------------------------------------------------------


class TunnelState(str, Enum):
    IDLE = "idle"
    LAUNCHING = "launching"
    WAITING_FOR_URL = "waiting-for-url"
    READY = "ready"
    CLOSING = "closing"
    CLOSED = "closed"


@dataclass
class TunnelOptions:
    provider: str
    listen_addr: str
    ngrok_auth_token: str = ""


@dataclass
class TunnelSession:
    """A ready tunnel and the subprocess behind it."""

    provider: str
    url: str
    process: ManagedProcess
    state: TunnelState = TunnelState.READY
    _tasks: list[asyncio.Task[Any]] = field(default_factory=list, repr=False)

    async def close(self, timeout: float = STOP_TIMEOUT) -> None:
        """Interrupt the subprocess, then kill it if it outlives ``timeout``.

        Safe to call more than once. Cancellation of the caller ends the
        wait early; the process is killed either way.
        """
        if self.state in (TunnelState.CLOSING, TunnelState.CLOSED):
            return
        self.state = TunnelState.CLOSING
        try:
            if self.process.returncode is None:
                try:
                    self.process.send_signal(signal.SIGINT)
                except ProcessLookupError:
                    pass
                try:
                    await asyncio.wait_for(self.process.wait(), timeout=timeout)
                except TimeoutError:
                    logger.warning("%s did not exit after SIGINT; killing", self.provider)
                    _kill(self.process)
                    await self.process.wait()
        finally:
            _kill(self.process)
            for task in self._tasks:
                task.cancel()
            self.state = TunnelState.CLOSED
            logger.info("Tunnel (%s) closed", self.provider)


# ---------------------------------------------------------------------------
# Providers
# ---------------------------------------------------------------------------


class TunnelProvider:
    """Launches one kind of tunnel and waits for its public URL."""

    name = ""
    binary = ""

    def __init__(
        self,
        process_factory: ProcessFactory = spawn_process,
        ready_timeout: float = READY_TIMEOUT,
    ) -> None:
        self.process_factory = process_factory
        self.ready_timeout = ready_timeout
        self.state = TunnelState.IDLE

    def available(self, which: Callable[[str], str | None] = shutil.which) -> bool:
        return which(self.binary) is not None

    async def start(self, options: TunnelOptions) -> TunnelSession:
        raise NotImplementedError

    async def _launch(
        self, argv: list[str], env: dict[str, str] | None = None, capture_stdout: bool = False
    ) -> ManagedProcess:
        self.state = TunnelState.LAUNCHING
        try:
            process = await self.process_factory(argv, env, capture_stdout)
        except OSError as e:
            self.state = TunnelState.CLOSED
            raise TunnelError(
                f"start {self.name}: {e}",
                hint=f"Install {self.binary} or choose another tunnel provider.",
            ) from e
        self.state = TunnelState.WAITING_FOR_URL
        return process


class NgrokProvider(TunnelProvider):
    """``ngrok http``; the URL is read from ngrok's local API."""

    name = "ngrok"
    binary = "ngrok"

    def __init__(
        self,
        process_factory: ProcessFactory = spawn_process,
        http_client: httpx.AsyncClient | None = None,
        api_url: str = NGROK_API_URL,
        poll_interval: float = POLL_INTERVAL,
        ready_timeout: float = READY_TIMEOUT,
    ) -> None:
        super().__init__(process_factory, ready_timeout)
        self.http_client = http_client
        self.api_url = api_url
        self.poll_interval = poll_interval

    async def start(self, options: TunnelOptions) -> TunnelSession:
        if not options.listen_addr:
            raise TunnelError("listen address required for tunnel")
        argv = [self.binary, "http", options.listen_addr, "--log=stdout", "--log-format=json"]
        env = None
        if options.ngrok_auth_token:
            env = {**os.environ, "NGROK_AUTHTOKEN": options.ngrok_auth_token}

        process = await self._launch(argv, env)
        try:
            url = await self.wait_for_url(process)
        except (TunnelError, asyncio.CancelledError):
            await _abandon(process)
            self.state = TunnelState.CLOSED
            raise
        self.state = TunnelState.READY
        logger.info("Tunnel (ngrok) ready: %s", url)
        return TunnelSession(provider=self.name, url=url, process=process)

    async def wait_for_url(self, process: ManagedProcess) -> str:
        client = self.http_client or httpx.AsyncClient(timeout=NGROK_API_TIMEOUT)
        try:
            async with asyncio.timeout(self.ready_timeout):
                while True:
                    if process.returncode is not None:
                        raise TunnelError(
                            f"ngrok tunnel not ready: ngrok exited with status {process.returncode}"
                        )
                    url = await self.fetch_url(client)
                    if url:
                        return url
                    await asyncio.sleep(self.poll_interval)
        except TimeoutError as e:
            raise TunnelError(
                "ngrok tunnel not ready: timed out waiting for ngrok public url",
                hint="Check the ngrok auth token (tunnel.ngrok_auth_token).",
            ) from e
        finally:
            if self.http_client is None:
                await client.aclose()

    async def fetch_url(self, client: httpx.AsyncClient) -> str:
        """Return the public URL, preferring https, or "" when none is up yet."""
        try:
            resp = await client.get(self.api_url)
        except httpx.HTTPError as e:
            logger.debug("ngrok api not ready: %s", e)
            return ""
        if resp.status_code >= 400:
            return ""
        try:
            tunnels = resp.json().get("tunnels") or []
        except (ValueError, AttributeError):
            return ""
        urls = [str(t.get("public_url") or "") for t in tunnels if isinstance(t, dict)]
        for url in urls:
            if url.startswith("https://"):
                return url
        return urls[0] if urls else ""


class LocaltunnelProvider(TunnelProvider):
    """``lt``; the URL is scanned from its stdout."""

    name = "localtunnel"
    binary = "lt"

    async def start(self, options: TunnelOptions) -> TunnelSession:
        if not options.listen_addr:
            raise TunnelError("listen address required for localtunnel")
        try:
            host, port = split_host_port(options.listen_addr)
        except ValueError as e:
            raise TunnelError(f"invalid listen addr {options.listen_addr!r}") from e
        if not port:
            raise TunnelError(f"invalid listen addr {options.listen_addr!r}: missing port")
        if host in _WILDCARD_HOSTS:
            host = "127.0.0.1"

        argv = [self.binary, "--port", str(port), "--print-requests", "false", "--local-host", host]
        process = await self._launch(argv, capture_stdout=True)
        try:
            url = await self.read_url(process)
        except (TunnelError, asyncio.CancelledError):
            await _abandon(process)
            self.state = TunnelState.CLOSED
            raise
        self.state = TunnelState.READY
        logger.info("Tunnel (localtunnel) ready: %s", url)
        session = TunnelSession(provider=self.name, url=url, process=process)
        if process.stdout is not None:
            session._tasks.append(asyncio.create_task(_drain(process.stdout)))
        return session

    async def read_url(self, process: ManagedProcess) -> str:
        if process.stdout is None:
            raise TunnelError("localtunnel stdout is not captured")
        try:
            async with asyncio.timeout(self.ready_timeout):
                while True:
                    line = await process.stdout.readline()
                    if not line:
                        raise TunnelError("localtunnel exited before providing url")
                    text = line.decode(errors="replace")
                    idx = text.find("https://")
                    if idx >= 0:
                        return text[idx:].strip()
        except TimeoutError as e:
            raise TunnelError("timed out waiting for localtunnel url") from e


async def _drain(stream: asyncio.StreamReader) -> None:
    """Discard remaining output so the pipe never fills."""
    while await stream.readline():
        pass


_PROVIDERS: dict[str, type[TunnelProvider]] = {
    "ngrok": NgrokProvider,
    "localtunnel": LocaltunnelProvider,
}


def _unsupported(provider: str) -> TunnelError:
    return TunnelError(
        f"unsupported tunnel provider {provider!r} (expected ngrok, localtunnel, auto)"
    )


def get_tunnel_provider(name: str) -> TunnelProvider:
    """Return a provider instance for ``ngrok`` or ``localtunnel``."""
    cls = _PROVIDERS.get(name.strip().lower())
    if cls is None:
        raise _unsupported(name)
    return cls()


def resolve_tunnel_provider(
    provider: str, which: Callable[[str], str | None] = shutil.which
) -> str:
    """Normalize a configured provider name.

    Returns "" when no tunnel is wanted. ``auto`` picks the first
    installed binary, ngrok before localtunnel.
    """
    name = provider.strip().lower()
    if name in ("", "none"):
        return ""
    if name in _PROVIDERS:
        return name
    if name == "auto":
        if which("ngrok"):
            return "ngrok"
        if which("lt"):
            return "localtunnel"
        raise TunnelError(
            "no supported tunnel binary found (install ngrok or localtunnel)",
            hint="Install ngrok (https://ngrok.com) or run `npm install -g localtunnel`.",
        )
    raise _unsupported(provider)


async def start_tunnel(
    options: TunnelOptions,
    providers: dict[str, TunnelProvider] | None = None,
) -> TunnelSession | None:
    """Start the configured tunnel, or return None when tunnels are off.

    ``auto`` tries ngrok first and falls back to localtunnel on any failure.
    """
    providers = providers or {}

    def provider_for(name: str) -> TunnelProvider:
        return providers.get(name) or get_tunnel_provider(name)

    name = options.provider.strip().lower()
    if name in ("", "none"):
        return None
    if name == "auto":
        try:
            return await provider_for("ngrok").start(options)
        except TunnelError as e:
            logger.warning("ngrok tunnel failed (%s); trying localtunnel", e)
        return await provider_for("localtunnel").start(options)
    return await provider_for(name).start(options)
