"""Tests for core.config module."""

from pathlib import Path

import pytest

from core.config import (
    DEFAULT_REDIS_PREFIX,
    LOG_DIR,
    PID_FILE,
    RELAY_DIR,
    normalize_channel_prefix,
    read_env_file,
    split_host_port,
)


def test_relay_dir_is_under_home_cache():
    assert RELAY_DIR == Path.home() / ".cache" / "relay"


def test_log_dir_and_pid_file_live_in_relay_dir():
    assert LOG_DIR.parent == RELAY_DIR
    assert PID_FILE.parent == RELAY_DIR
    assert PID_FILE.name == "discord-server.pid"


# ---------------------------------------------------------------------------
# normalize_channel_prefix
# ---------------------------------------------------------------------------


@pytest.mark.parametrize("prefix", ["", "   ", None])
def test_blank_prefix_falls_back_to_default(prefix):
    assert normalize_channel_prefix(prefix) == DEFAULT_REDIS_PREFIX


def test_custom_prefix_is_kept():
    assert normalize_channel_prefix("team:bots") == "team:bots"


# ---------------------------------------------------------------------------
# read_env_file
# ---------------------------------------------------------------------------


class TestReadEnvFile:
    """KEY=value env file parsing for the daemon child."""

    def test_parses_pairs_and_skips_comments(self, tmp_path: Path) -> None:
        env_file = tmp_path / "relay.env"
        env_file.write_text(
            "# comment\n"
            "\n"
            "RELAY_DISCORD__PUBLIC_KEY=abc123\n"
            'QUOTED="hello world"\n'
            "no_equals_line\n"
            "  SPACED = value  \n"
        )
        env = read_env_file(env_file)
        assert env == {
            "RELAY_DISCORD__PUBLIC_KEY": "abc123",
            "QUOTED": "hello world",
            "SPACED": "value",
        }

    def test_value_may_contain_equals(self, tmp_path: Path) -> None:
        env_file = tmp_path / "relay.env"
        env_file.write_text("URL=redis://h:6379/0?a=b\n")
        assert read_env_file(env_file) == {"URL": "redis://h:6379/0?a=b"}

    def test_missing_file_is_empty(self, tmp_path: Path) -> None:
        assert read_env_file(tmp_path / "nope.env") == {}

    def test_none_is_empty(self) -> None:
        assert read_env_file(None) == {}


# ---------------------------------------------------------------------------
# split_host_port
# ---------------------------------------------------------------------------


class TestSplitHostPort:
    """Listen and Redis address parsing."""

    def test_host_and_port(self) -> None:
        assert split_host_port("127.0.0.1:8080") == ("127.0.0.1", 8080)

    def test_empty_host(self) -> None:
        assert split_host_port(":8080") == ("", 8080)

    def test_bracketed_ipv6(self) -> None:
        assert split_host_port("[::]:9000") == ("::", 9000)

    def test_missing_port_uses_default(self) -> None:
        assert split_host_port("redis.local", 6379) == ("redis.local", 6379)

    def test_bad_port_raises(self) -> None:
        with pytest.raises(ValueError):
            split_host_port("host:http")
