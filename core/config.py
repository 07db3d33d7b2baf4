"""
Relay configuration - paths, defaults, and shared config helpers.

All modules import path constants from here. The ~/.cache/relay/ directory
is the single location for the daemon PID file and logs.
"""

from pathlib import Path

# ---------------------------------------------------------------------------
# Paths - the ~/.cache/relay/ directory tree
# ---------------------------------------------------------------------------

RELAY_DIR = Path.home() / ".cache" / "relay"
LOG_DIR = RELAY_DIR / "logs"
PID_FILE = RELAY_DIR / "discord-server.pid"

CONFIG_SEARCH_PATHS = (
    Path.home() / ".config" / "relay" / "discord.yaml",
    Path.home() / ".relay" / "discord.yaml",
    Path("discord-config.yaml"),
    Path("config") / "discord.yaml",
)

# ---------------------------------------------------------------------------
# Defaults
# ---------------------------------------------------------------------------

DEFAULT_LISTEN_ADDR = "127.0.0.1:8080"
DEFAULT_REDIS_ADDR = "127.0.0.1:6379"
DEFAULT_REDIS_PREFIX = "relay:discord"
DEFAULT_INTERACTION_TIMEOUT = 15 * 60  # seconds
DEFAULT_API_BASE_URL = "https://discord.com/api/v10"

ENVELOPE_SOURCE = "discord-relay.server"

# ---------------------------------------------------------------------------
# Environment variables
# ---------------------------------------------------------------------------

ENV_PREFIX = "RELAY_"
ENV_CONFIG_PATH = "RELAY_CONFIG"
ENV_AGENT_ID = "RELAY_AGENT_ID"
ENV_DAEMON_CHILD = "RELAY_DAEMON_CHILD"

# ---------------------------------------------------------------------------
# Shared config helpers
# ---------------------------------------------------------------------------


def normalize_channel_prefix(prefix: str | None) -> str:
    """Return the channel prefix, falling back to the default when blank."""
    if not prefix or not prefix.strip():
        return DEFAULT_REDIS_PREFIX
    return prefix


def read_env_file(path: Path | str | None) -> dict[str, str]:
    """Parse KEY=value pairs from a shell-style env file.

    Blank lines and comments are skipped, as are lines without '='.
    Surrounding quotes on values are stripped. A missing or unreadable
    file yields an empty mapping.
    """
    if not path:
        return {}
    env: dict[str, str] = {}
    try:
        with open(path) as f:
            for line in f:
                line = line.strip()
                if not line or line.startswith("#"):
                    continue
                if "=" not in line:
                    continue
                key, _, value = line.partition("=")
                key = key.strip()
                if not key:
                    continue
                env[key] = value.strip().strip('"').strip("'")
    except OSError:
        return {}
    return env


def split_host_port(addr: str, default_port: int = 0) -> tuple[str, int]:
    """Split ``host:port`` (IPv6 hosts in brackets) into its parts."""
    addr = addr.strip()
    if addr.startswith("["):
        host, _, rest = addr[1:].partition("]")
        port = rest.lstrip(":")
    elif addr.count(":") == 1:
        host, _, port = addr.partition(":")
    else:
        host, port = addr, ""
    if not port:
        return host, default_port
    try:
        return host, int(port)
    except ValueError:
        raise ValueError(f"invalid port in address {addr!r}") from None
