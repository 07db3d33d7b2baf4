#!/usr/bin/env python3
"""
Relay CLI - run the Discord interaction server and agent listeners.

Usage:
    relay server start                       - serve /interactions in the foreground
    relay server start --tunnel auto         - expose it through ngrok or localtunnel
    relay server start --daemon              - run in the background (PID file)
    relay server start --check-prereqs       - report what is missing
    relay server start --example             - print an example config
    relay server stop
    relay server status
    RELAY_AGENT_ID=claude relay agent listen - answer interactions routed to "claude"

Config: discord.yaml from --config, $RELAY_CONFIG or ~/.config/relay/discord.yaml.
        Any value can be overridden with RELAY_<SECTION>__<KEY>.
"""

import argparse
import asyncio
import os
import sys
from pathlib import Path

from cli.daemon_mgr import DaemonManager, filter_daemon_argv
from cli.prereq import generate_example_config, run_prereq_checks
from core.config import ENV_AGENT_ID, ENV_DAEMON_CHILD
from core.errors import ConfigError, RelayError, format_error_chain
from core.settings import Settings, load_settings

# ---------------------------------------------------------------------------
# Output helpers
# ---------------------------------------------------------------------------


def _print_status(msg):
    print(f"\033[36m[relay]\033[0m {msg}")


def _print_error(err: BaseException) -> None:
    lines = format_error_chain(err)
    print(f"ERROR: {lines[0]}", file=sys.stderr)
    for cause in lines[1:]:
        print(f"  caused by: {cause}", file=sys.stderr)
    hint = getattr(err, "hint", "")
    if hint:
        print(f"  hint: {hint}", file=sys.stderr)


# ---------------------------------------------------------------------------
# Overrides
# ---------------------------------------------------------------------------


def _apply_redis_overrides(settings: Settings, args: argparse.Namespace) -> None:
    if args.redis_addr:
        settings.redis.addr = args.redis_addr
    if args.redis_password:
        settings.redis.password = args.redis_password
    if args.redis_db:
        settings.redis.db = args.redis_db
    if args.redis_prefix:
        settings.redis.channel_prefix = args.redis_prefix


def _apply_server_overrides(settings: Settings, args: argparse.Namespace) -> None:
    _apply_redis_overrides(settings, args)
    if args.listen:
        settings.server.listen_addr = args.listen
    if args.public_url:
        settings.discord.public_url = args.public_url
    if args.tunnel:
        settings.tunnel.provider = args.tunnel
    if args.ngrok_auth_token:
        settings.tunnel.ngrok_auth_token = args.ngrok_auth_token


def _daemon_manager(args: argparse.Namespace) -> DaemonManager:
    return DaemonManager(
        pid_file=getattr(args, "pid_file", None),
        log_file=getattr(args, "log_file", None),
        workdir=getattr(args, "workdir", None),
        env_file=getattr(args, "env_file", None),
    )


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


def _do_server_start(args: argparse.Namespace, argv: list[str]) -> int:
    if args.example:
        print(generate_example_config())
        return 0

    settings: Settings | None = None
    config_path: Path | None = None
    load_error: ConfigError | None = None
    try:
        settings, config_path = load_settings(args.config)
        _apply_server_overrides(settings, args)
    except ConfigError as e:
        load_error = e

    report = asyncio.run(
        run_prereq_checks(settings, config_path, load_error, dry_run=args.dry_run)
    )
    if args.check_prereqs:
        print(report.format_report())
        if not report.all_passed:
            raise ConfigError("Prerequisites check failed", hint="Fix the issues above and try again")
        return 0
    if not report.all_passed:
        print(report.format_quick_fix(), end="")
        raise ConfigError(
            "Cannot start server: prerequisites not met",
            hint="Fix the issues above and try again, or run with --check-prereqs for more details",
        )
    assert settings is not None

    if args.daemon and not os.environ.get(ENV_DAEMON_CHILD):
        mgr = _daemon_manager(args)
        child_argv = [sys.executable, "-m", "cli.main", *filter_daemon_argv(argv)]
        pid = mgr.start(child_argv)
        _print_status(f"daemon started (pid {pid}, pid file {mgr.pid_path})")
        return 0

    from server.app.runner import serve

    if config_path:
        _print_status(f"Config: {config_path}")
    try:
        asyncio.run(serve(settings, dry_run=args.dry_run, debug=args.verbose))
    except KeyboardInterrupt:
        pass
    return 0


def _do_server_stop(args: argparse.Namespace) -> int:
    _daemon_manager(args).stop()
    _print_status("daemon stopped")
    return 0


def _do_server_status(args: argparse.Namespace) -> int:
    print(_daemon_manager(args).status())
    return 0


def _do_agent_listen(args: argparse.Namespace) -> int:
    from worker.service import default_log_file, run, setup_logging

    agent_id = (args.agent or os.environ.get(ENV_AGENT_ID, "")).strip()
    if not agent_id:
        raise ConfigError("agent id required", hint=f"Set --agent or {ENV_AGENT_ID}.")

    settings, config_path = load_settings(args.config)
    _apply_redis_overrides(settings, args)
    setup_logging(verbose=args.verbose, log_file=default_log_file(agent_id))

    _print_status(
        f"Listening for interactions as agent {agent_id} "
        f"(channel prefix {settings.redis.channel_prefix})"
    )
    try:
        asyncio.run(run(settings, agent_id))
    except KeyboardInterrupt:
        pass
    return 0


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------


def _add_redis_flags(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--redis-addr", default="", help="Redis address (host:port or redis:// URL)")
    parser.add_argument("--redis-db", type=int, default=0, help="Redis database index")
    parser.add_argument("--redis-password", default="", help="Redis password")
    parser.add_argument("--redis-prefix", default="", help="Redis channel prefix (default relay:discord)")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="relay",
        description="Relay Discord interactions to agents over Redis",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    # relay server
    p_server = sub.add_parser("server", help="Run the Discord interactions HTTP server")
    server_sub = p_server.add_subparsers(dest="action", required=True)

    p_start = server_sub.add_parser("start", help="Start the HTTP server that receives interactions")
    p_start.add_argument("--config", help="Path to discord.yaml")
    p_start.add_argument("--listen", default="", help="Listen address (default 127.0.0.1:8080)")
    p_start.add_argument("--public-url", default="", help="Public URL Discord posts to")
    _add_redis_flags(p_start)
    p_start.add_argument("--tunnel", default="", help="Enable a development tunnel: ngrok|localtunnel|auto")
    p_start.add_argument("--ngrok-auth-token", default="", help="Ngrok auth token (overrides tunnel.ngrok_auth_token)")
    p_start.add_argument("--dry-run", action="store_true", help="Skip signature verification (local testing only)")
    p_start.add_argument("--daemon", action="store_true", help="Run the server in the background")
    p_start.add_argument("--pid-file", help="PID file for daemon mode (default ~/.cache/relay/discord-server.pid)")
    p_start.add_argument("--log-file", help="Log file for daemon stdout/stderr")
    p_start.add_argument("--workdir", help="Working directory for the daemonized server")
    p_start.add_argument("--env-file", help="Env file (KEY=value per line) for daemon mode")
    p_start.add_argument("--check-prereqs", action="store_true", help="Check prerequisites and exit")
    p_start.add_argument("--example", action="store_true", help="Print an example configuration and exit")
    p_start.add_argument("--verbose", "-v", action="store_true", help="Verbose logging")

    p_stop = server_sub.add_parser("stop", help="Stop the server daemon")
    p_stop.add_argument("--pid-file", help="PID file path")

    p_status = server_sub.add_parser("status", help="Show server daemon status")
    p_status.add_argument("--pid-file", help="PID file path")

    # relay agent
    p_agent = sub.add_parser("agent", help="Manage agent listeners")
    agent_sub = p_agent.add_subparsers(dest="action", required=True)

    p_listen = agent_sub.add_parser("listen", help="Subscribe to interactions and respond via the Discord API")
    p_listen.add_argument("--agent", default="", help=f"Agent identifier (default ${ENV_AGENT_ID})")
    p_listen.add_argument("--config", help="Path to discord.yaml")
    _add_redis_flags(p_listen)
    p_listen.add_argument("--verbose", "-v", action="store_true", help="Verbose logging")

    return parser


def main(argv: list[str] | None = None) -> int:
    argv = list(sys.argv[1:] if argv is None else argv)
    args = build_parser().parse_args(argv)

    handlers = {
        ("server", "start"): lambda: _do_server_start(args, argv),
        ("server", "stop"): lambda: _do_server_stop(args),
        ("server", "status"): lambda: _do_server_status(args),
        ("agent", "listen"): lambda: _do_agent_listen(args),
    }
    try:
        return handlers[(args.command, args.action)]()
    except RelayError as e:
        _print_error(e)
        return 1


if __name__ == "__main__":
    sys.exit(main())
