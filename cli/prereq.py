"""Pre-flight checks for ``relay server start`` and the example config.

Each check reports a status plus operator guidance. ``--check-prereqs``
prints the full report; a normal start aborts with a short summary
of the failing required checks (``format_quick_fix``).
"""

import asyncio
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from core.broker import create_redis_client
from core.config import CONFIG_SEARCH_PATHS, split_host_port
from core.settings import InteractionsConfig, RedisConfig, Settings, TunnelConfig
from server.app.interactions.crypto import PUBLIC_KEY_HEX_LENGTH

REDIS_PING_TIMEOUT = 3.0


class PrereqStatus(str, Enum):
    OK = "OK"
    MISSING = "MISSING"
    INVALID = "INVALID"
    UNREACHABLE = "UNREACHABLE"


@dataclass
class PrereqCheck:
    name: str
    description: str
    required: bool = True
    status: PrereqStatus = PrereqStatus.OK
    value: str = ""
    how_to_fix: str = ""
    config_key: str = ""
    env_var: str = ""
    example: str = ""

    @property
    def ok(self) -> bool:
        return self.status is PrereqStatus.OK


@dataclass
class PrereqReport:
    config_path: Path | None = None
    checks: list[PrereqCheck] = field(default_factory=list)

    @property
    def all_passed(self) -> bool:
        return all(c.ok for c in self.checks if c.required)

    @property
    def failed(self) -> list[PrereqCheck]:
        return [c for c in self.checks if not c.ok]

    def format_report(self) -> str:
        lines = ["Discord Server Prerequisites", "=" * 50, ""]
        if self.config_path:
            lines += [f"Config: {self.config_path}", ""]

        passed = [c for c in self.checks if c.ok]
        if passed:
            lines.append("Passed:")
            for check in passed:
                suffix = f": {check.value}" if check.value else ""
                lines.append(f"  [OK] {check.name}{suffix}")
            lines.append("")

        failed = self.failed
        if failed:
            lines += ["Issues Found:", "-" * 50, ""]
            for i, check in enumerate(failed, 1):
                label = " (REQUIRED)" if check.required else ""
                lines.append(f"Step {i}: {check.name}{label}")
                lines.append(f"Status: {check.status.value}")
                if check.value:
                    lines.append(f"Current: {check.value}")
                lines += ["", check.description]
                if check.how_to_fix:
                    lines += ["", "How to fix:", check.how_to_fix]
                if check.config_key or check.env_var:
                    lines += ["", "Configuration:"]
                    if check.config_key:
                        lines.append(f"  Config key: {check.config_key}")
                    if check.env_var:
                        lines.append(f"  Env var:    {check.env_var}")
                if check.example:
                    lines += ["", "Example:"]
                    lines += [f"  {line}" for line in check.example.splitlines()]
                lines += ["", "-" * 50, ""]

        if self.all_passed:
            lines.append("All prerequisites passed. Ready to start server.")
        else:
            lines.append(f"Found {len(failed)} issue(s) that need to be resolved.")
            lines.append("Fix the issues above and try again.")
        return "\n".join(lines) + "\n"

    def format_quick_fix(self) -> str:
        issues = [f"- {c.name}: {c.how_to_fix}" for c in self.checks if c.required and not c.ok]
        if not issues:
            return ""
        return (
            "Prerequisites not met:\n\n"
            + "\n".join(issues)
            + "\n\nRun with --check-prereqs for detailed setup instructions.\n"
        )


# ---------------------------------------------------------------------------
# Individual checks
# ---------------------------------------------------------------------------


def check_config_file(path: Path | None, load_error: Exception | None) -> PrereqCheck:
    check = PrereqCheck(
        name="Configuration File",
        description="Discord configuration file with server settings",
        config_key=str(CONFIG_SEARCH_PATHS[0]),
        env_var="RELAY_CONFIG",
    )
    if load_error is not None:
        cause = load_error.__cause__ or load_error
        check.status = PrereqStatus.INVALID
        check.value = f"Error: {cause}"
        check.how_to_fix = "Fix the syntax error in your configuration file"
        return check
    if path is None:
        check.status = PrereqStatus.MISSING
        check.how_to_fix = "Create a Discord configuration file"
        check.example = f"# Create {CONFIG_SEARCH_PATHS[0]} with:\n\n" + MINIMAL_CONFIG
        return check
    check.value = str(path)
    return check


def check_public_key(public_key: str, dry_run: bool) -> PrereqCheck:
    check = PrereqCheck(
        name="Discord Public Key",
        description="Used to verify Discord interaction signatures",
        required=not dry_run,
        config_key="discord.public_key",
        env_var="RELAY_DISCORD__PUBLIC_KEY",
    )
    if dry_run:
        check.value = "(skipped - dry-run mode)"
        return check
    if not public_key:
        check.status = PrereqStatus.MISSING
        check.how_to_fix = "Add your Discord application's public key"
        check.example = (
            "discord:\n"
            '  public_key: "YOUR_PUBLIC_KEY_HERE"\n\n'
            "# Find it under General Information -> PUBLIC KEY at\n"
            "# https://discord.com/developers/applications"
        )
        return check
    if len(public_key) != PUBLIC_KEY_HEX_LENGTH:
        check.status = PrereqStatus.INVALID
        check.value = f"{len(public_key)} characters (expected {PUBLIC_KEY_HEX_LENGTH})"
        check.how_to_fix = "The public key should be exactly 64 hexadecimal characters"
        return check
    check.value = f"{public_key[:8]}...{public_key[-8:]}"
    return check


async def check_redis(
    cfg: RedisConfig,
    redis_factory: Callable[[RedisConfig], aioredis.Redis] = create_redis_client,
) -> PrereqCheck:
    check = PrereqCheck(
        name="Redis Connection",
        description="Message broker for routing interactions to agents",
        config_key="redis.addr",
        env_var="RELAY_REDIS__ADDR",
        value=cfg.addr,
    )
    client = redis_factory(cfg)
    try:
        await asyncio.wait_for(client.ping(), timeout=REDIS_PING_TIMEOUT)
    except (RedisError, OSError, TimeoutError, ValueError):
        host = cfg.addr
        try:
            host = split_host_port(cfg.addr)[0] or cfg.addr
        except ValueError:
            pass
        check.status = PrereqStatus.UNREACHABLE
        check.how_to_fix = f"Cannot connect to Redis at {cfg.addr}"
        check.example = (
            f"# Check if Redis is running:\nredis-cli -h {host} ping\n\n"
            "# Start Redis:\n"
            "# Docker:  docker run -d -p 6379:6379 redis:alpine"
        )
    finally:
        await client.aclose()
    return check


def check_interactions(cfg: InteractionsConfig) -> PrereqCheck:
    check = PrereqCheck(
        name="Interaction Handlers",
        description="Defines which slash commands route to which agents",
        config_key="interactions.handlers",
    )
    if not cfg.enabled:
        check.status = PrereqStatus.INVALID
        check.value = "disabled"
        check.how_to_fix = "Enable interactions in your configuration"
        return check
    handlers = cfg.handlers
    if handlers.total() == 0:
        check.status = PrereqStatus.MISSING
        check.how_to_fix = "Define at least one interaction handler"
        check.example = (
            "interactions:\n"
            "  enabled: true\n"
            "  handlers:\n"
            "    commands:\n"
            "      ping:\n"
            '        agent: "default"'
        )
        return check

    parts = []
    for count, label in (
        (len(handlers.commands), "command(s)"),
        (len(handlers.components), "component(s)"),
        (len(handlers.modals), "modal(s)"),
        (len(handlers.autocomplete), "autocomplete"),
    ):
        if count:
            parts.append(f"{count} {label}")
    check.value = ", ".join(parts)
    return check


def check_tunnel(cfg: TunnelConfig, public_url: str) -> PrereqCheck:
    check = PrereqCheck(
        name="Public URL / Tunnel",
        description="How Discord reaches your server (required for production)",
        required=False,
        config_key="tunnel.provider or discord.public_url",
        env_var="RELAY_TUNNEL__PROVIDER",
    )
    if public_url:
        check.value = public_url
        return check
    provider = cfg.provider.strip().lower()
    if provider and provider != "none":
        if provider == "ngrok" and not cfg.ngrok_auth_token:
            check.status = PrereqStatus.INVALID
            check.value = "ngrok (missing auth token)"
            check.how_to_fix = "Provide ngrok authentication token"
            check.env_var = "RELAY_TUNNEL__NGROK_AUTH_TOKEN"
            return check
        check.value = f"{provider} tunnel"
        return check
    check.status = PrereqStatus.MISSING
    check.value = "(not configured)"
    check.how_to_fix = "Configure a tunnel for development or set a public URL for production"
    check.example = (
        "relay server start --tunnel auto\n\n"
        "# For production:\n"
        "discord:\n"
        '  public_url: "https://your-domain.com/interactions"'
    )
    return check


def check_application_id(app_id: str) -> PrereqCheck:
    check = PrereqCheck(
        name="Application ID",
        description="Your Discord application ID (for responding to interactions)",
        config_key="discord.application_id",
        env_var="RELAY_DISCORD__APPLICATION_ID",
    )
    if not app_id:
        check.status = PrereqStatus.MISSING
        check.how_to_fix = "Add your Discord application ID"
        return check
    check.value = app_id
    return check


async def run_prereq_checks(
    settings: Settings | None,
    config_path: Path | None,
    load_error: Exception | None = None,
    dry_run: bool = False,
    redis_factory: Callable[[RedisConfig], aioredis.Redis] = create_redis_client,
) -> PrereqReport:
    """Run every check. Stops after the config check if loading failed."""
    report = PrereqReport(config_path=config_path)
    report.checks.append(check_config_file(config_path, load_error))
    if settings is None or load_error is not None:
        return report

    report.checks.append(check_public_key(settings.discord.public_key, dry_run))
    report.checks.append(await check_redis(settings.redis, redis_factory))
    report.checks.append(check_interactions(settings.interactions))
    report.checks.append(check_tunnel(settings.tunnel, settings.discord.public_url))
    report.checks.append(check_application_id(settings.discord.application_id))
    return report


# ---------------------------------------------------------------------------
# Example configuration
# ---------------------------------------------------------------------------

MINIMAL_CONFIG = """\
discord:
  application_id: "YOUR_APP_ID"
  public_key: "YOUR_PUBLIC_KEY"

server:
  listen_addr: "127.0.0.1:8080"

redis:
  addr: "127.0.0.1:6379"

interactions:
  enabled: true
  handlers:
    commands:
      ping:
        agent: "default"
        description: "Ping the bot"
"""


def generate_example_config() -> str:
    return f"""\
# Discord Relay configuration
# Save as {CONFIG_SEARCH_PATHS[0]}
# Any value can be overridden with RELAY_<SECTION>__<KEY>,
# e.g. RELAY_DISCORD__PUBLIC_KEY.

discord:
  application_id: "YOUR_APPLICATION_ID"
  # 64 hex characters from the developer portal
  public_key: "YOUR_PUBLIC_KEY"
  # Used by agent listeners for follow-up messages
  bot_token: "YOUR_BOT_TOKEN"
  # Set in production; a tunnel sets it automatically in development
  public_url: ""

server:
  listen_addr: "127.0.0.1:8080"

redis:
  addr: "127.0.0.1:6379"
  db: 0
  password: ""
  channel_prefix: "relay:discord"

tunnel:
  # ngrok | localtunnel | auto | none
  provider: ""
  ngrok_auth_token: ""

interactions:
  enabled: true
  # How long agents may keep answering an interaction
  timeout: 15m
  handlers:
    commands:
      help:
        agent: "claude"
        description: "Ask for help"
    components:
      "approve:deploy":
        agent: "deploy"
    modals:
      feedback_form:
        agent: "feedback"
    autocomplete:
      environment:
        choices:
          - name: "Production"
            value: "prod"
          - name: "Staging"
            value: "staging"
"""
