"""Relay settings loaded from a YAML file and environment variables.

The YAML file supplies the base values; ``RELAY_``-prefixed environment
variables (nested with ``__``, e.g. ``RELAY_DISCORD__PUBLIC_KEY``) override
them. CLI flags are applied on top by the caller.
"""

import os
import re
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator
from pydantic_settings import BaseSettings, PydanticBaseSettingsSource, SettingsConfigDict

from core.config import (
    CONFIG_SEARCH_PATHS,
    DEFAULT_API_BASE_URL,
    DEFAULT_INTERACTION_TIMEOUT,
    DEFAULT_LISTEN_ADDR,
    DEFAULT_REDIS_ADDR,
    DEFAULT_REDIS_PREFIX,
    ENV_CONFIG_PATH,
    ENV_PREFIX,
)
from core.errors import ConfigError

_DURATION_RE = re.compile(r"(\d+(?:\.\d+)?)(ms|s|m|h)")
_DURATION_UNITS = {"ms": 0.001, "s": 1.0, "m": 60.0, "h": 3600.0}


def parse_duration(value: Any) -> float:
    """Convert ``30``, ``"30s"``, ``"15m"`` or ``"1h30m"`` to seconds."""
    if isinstance(value, bool):
        raise ValueError("duration must be a number or a string like '30s'")
    if isinstance(value, (int, float)):
        return float(value)
    text = str(value).strip().lower()
    if not text:
        return 0.0
    try:
        return float(text)
    except ValueError:
        pass
    pos = 0
    total = 0.0
    for match in _DURATION_RE.finditer(text):
        if match.start() != pos:
            break
        total += float(match.group(1)) * _DURATION_UNITS[match.group(2)]
        pos = match.end()
    if pos != len(text):
        raise ValueError(f"invalid duration {value!r}")
    return total


# ---------------------------------------------------------------------------
# Sections
# ---------------------------------------------------------------------------


class AutocompleteChoice(BaseModel):
    name: str = ""
    description: str = ""
    value: Any = None


class HandlerRoute(BaseModel):
    agent: str = ""
    channel: str = ""
    description: str = ""
    choices: list[AutocompleteChoice] = []


class HandlerMappings(BaseModel):
    commands: dict[str, HandlerRoute] = {}
    components: dict[str, HandlerRoute] = {}
    modals: dict[str, HandlerRoute] = {}
    autocomplete: dict[str, HandlerRoute] = {}

    @field_validator("commands", "autocomplete", mode="after")
    @classmethod
    def lowercase_names(cls, value: dict[str, HandlerRoute]) -> dict[str, HandlerRoute]:
        """Command names are case-insensitive; custom ids are not."""
        return {key.lower(): route for key, route in value.items()}

    def total(self) -> int:
        return (
            len(self.commands) + len(self.components)
            + len(self.modals) + len(self.autocomplete)
        )


class InteractionsConfig(BaseModel):
    enabled: bool = True
    timeout: float = DEFAULT_INTERACTION_TIMEOUT
    handlers: HandlerMappings = Field(default_factory=HandlerMappings)

    @field_validator("timeout", mode="before")
    @classmethod
    def parse_timeout(cls, value: Any) -> float:
        seconds = parse_duration(value)
        return seconds if seconds > 0 else DEFAULT_INTERACTION_TIMEOUT


class DiscordConfig(BaseModel):
    public_key: str = ""
    public_url: str = ""
    application_id: str = ""
    bot_token: str = ""
    api_base_url: str = DEFAULT_API_BASE_URL

    @field_validator("public_key", "public_url", "application_id", mode="after")
    @classmethod
    def strip_whitespace(cls, value: str) -> str:
        return value.strip()


class ServerConfig(BaseModel):
    listen_addr: str = DEFAULT_LISTEN_ADDR


class RedisConfig(BaseModel):
    addr: str = DEFAULT_REDIS_ADDR
    db: int = 0
    password: str = ""
    channel_prefix: str = DEFAULT_REDIS_PREFIX

    @field_validator("channel_prefix", mode="after")
    @classmethod
    def default_prefix(cls, value: str) -> str:
        return value if value.strip() else DEFAULT_REDIS_PREFIX

    @field_validator("addr", mode="after")
    @classmethod
    def default_addr(cls, value: str) -> str:
        return value.strip() or DEFAULT_REDIS_ADDR


class TunnelConfig(BaseModel):
    provider: str = ""
    ngrok_auth_token: str = ""


# ---------------------------------------------------------------------------
# Root settings
# ---------------------------------------------------------------------------


class Settings(BaseSettings):
    """Relay configuration for the server, the agent listeners and the CLI."""

    model_config = SettingsConfigDict(
        env_prefix=ENV_PREFIX,
        env_nested_delimiter="__",
        case_sensitive=False,
        extra="ignore",
    )

    discord: DiscordConfig = Field(default_factory=DiscordConfig)
    server: ServerConfig = Field(default_factory=ServerConfig)
    redis: RedisConfig = Field(default_factory=RedisConfig)
    tunnel: TunnelConfig = Field(default_factory=TunnelConfig)
    interactions: InteractionsConfig = Field(default_factory=InteractionsConfig)

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        # File values arrive as init kwargs; the environment wins over them.
        return env_settings, init_settings


def find_config_file(explicit: str | Path | None = None) -> Path | None:
    """Return the first existing config file in search order."""
    candidates: list[Path] = []
    if explicit:
        candidates.append(Path(explicit).expanduser())
    env_path = os.environ.get(ENV_CONFIG_PATH, "").strip()
    if env_path:
        candidates.append(Path(env_path).expanduser())
    candidates.extend(CONFIG_SEARCH_PATHS)

    for candidate in candidates:
        if candidate.is_file():
            return candidate
    return None


def load_settings(path: str | Path | None = None) -> tuple[Settings, Path | None]:
    """Load settings from the discovered YAML file plus the environment.

    Returns the settings and the file they were read from (None when no
    file was found and only defaults and environment apply).
    """
    if path and not Path(path).expanduser().is_file():
        raise ConfigError(f"config file {path} not found")
    config_path = find_config_file(path)
    data: dict[str, Any] = {}
    if config_path is not None:
        try:
            loaded = yaml.safe_load(config_path.read_text()) or {}
        except (OSError, yaml.YAMLError) as e:
            raise ConfigError(f"failed to load config {config_path}") from e
        if not isinstance(loaded, dict):
            raise ConfigError(f"config {config_path} must be a YAML mapping")
        data = loaded

    try:
        settings = Settings(**data)
    except ValidationError as e:
        where = config_path or "environment"
        raise ConfigError(f"invalid configuration in {where}") from e
    return settings, config_path
