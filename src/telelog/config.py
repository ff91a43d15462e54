"""Configuration loading for telelog.

The config file is TOML (``/etc/telelog.toml`` by default) or YAML, picked by
file suffix. Environment variables fill in values the file leaves out.
"""

from __future__ import annotations

import os
import tomllib
from pathlib import Path
from typing import Literal

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

DEFAULT_CONFIG_PATH = Path("/etc/telelog.toml")

API_KEY_ENV = "TELEGRAM_API_KEY"
CHAT_ID_ENV = "TELEGRAM_CHAT_ID"
LOG_LEVEL_ENV = "TELELOG_LOG_LEVEL"


class ConfigLoadError(Exception):
    """Raised when the config file is missing, malformed or invalid."""

    pass


class MissingCredentialsError(ConfigLoadError):
    """Raised when no bot token is configured in the file or environment."""

    pass


class RuleConfig(BaseModel):
    """One field match inside a rule group.

    Example:
        { field = "identifier", value = ["sshd", "sudo"], logic = "any" }
    """

    model_config = ConfigDict(extra="forbid")

    field: str
    value: str | list[str]
    logic: Literal["any", "all"] = "any"

    @field_validator("field")
    @classmethod
    def field_not_blank(cls, v: str) -> str:
        """Reject empty field names."""
        if not v.strip():
            raise ValueError("field must not be empty")
        return v.strip()

    @field_validator("value")
    @classmethod
    def values_not_empty(cls, v: str | list[str]) -> str | list[str]:
        """A list value needs at least one entry."""
        if isinstance(v, list) and not v:
            raise ValueError("value list must not be empty")
        return v


RuleGroups = dict[int, list[RuleConfig]]


class FiltersConfig(BaseModel):
    """Rule groups keyed by priority (lower runs first)."""

    model_config = ConfigDict(extra="forbid")

    match: RuleGroups = Field(default_factory=dict)  # pushed down into the journal
    deny: RuleGroups = Field(default_factory=dict)
    allow: RuleGroups = Field(default_factory=dict)

    @field_validator("match", "deny", "allow")
    @classmethod
    def priorities_non_negative(cls, v: RuleGroups) -> RuleGroups:
        """Priorities are non-negative integers."""
        for priority in v:
            if priority < 0:
                raise ValueError(f"rule group priority must be >= 0, got {priority}")
        return v


class TelegramConfig(BaseModel):
    """Delivery target and dispatcher tuning."""

    model_config = ConfigDict(extra="forbid")

    chat_id: str | None = None
    api_key: str | None = None
    api_url: str = "https://api.telegram.org"
    flush_seconds: float = Field(5.0, gt=0)
    send_interval: float = Field(1.0, ge=0)  # send lock held this long after each call
    max_attempts: int = Field(5, ge=0)  # non-429 rejections before a block is dropped; 0 = never
    max_pending_blocks: int = Field(1000, ge=0)  # 0 = unbounded
    max_backoff_seconds: float = Field(3600.0, ge=0)  # 0 = unbounded
    shutdown_timeout: float = Field(10.0, gt=0)

    @field_validator("chat_id", mode="before")
    @classmethod
    def chat_id_as_string(cls, v: object) -> object:
        """Chat ids are often written as bare integers."""
        if isinstance(v, int):
            return str(v)
        return v


class Config(BaseModel):
    """Application configuration."""

    model_config = ConfigDict(extra="forbid")

    telegram: TelegramConfig = Field(default_factory=TelegramConfig)
    filters: FiltersConfig = Field(default_factory=FiltersConfig)
    log_level: str = "INFO"
    metrics_port: int | None = None

    @property
    def api_key(self) -> str:
        """Bot token; raises MissingCredentialsError when unset."""
        if not self.telegram.api_key:
            raise MissingCredentialsError(
                f"Telegram bot token required (set telegram.api_key or {API_KEY_ENV})"
            )
        return self.telegram.api_key

    @property
    def chat_id(self) -> str:
        """Destination chat; raises MissingCredentialsError when unset."""
        if not self.telegram.chat_id:
            raise MissingCredentialsError(
                f"Telegram chat id required (set telegram.chat_id or {CHAT_ID_ENV})"
            )
        return self.telegram.chat_id

    def require_credentials(self) -> tuple[str, str]:
        """Return (api_key, chat_id), raising MissingCredentialsError if unset."""
        return self.api_key, self.chat_id

    def apply_env(self) -> "Config":
        """Fill unset values from environment variables."""
        if not self.telegram.api_key:
            self.telegram.api_key = os.environ.get(API_KEY_ENV) or None
        if not self.telegram.chat_id:
            self.telegram.chat_id = os.environ.get(CHAT_ID_ENV) or None
        level = os.environ.get(LOG_LEVEL_ENV)
        if level:
            self.log_level = level
        return self

    @classmethod
    def from_dict(cls, data: dict) -> "Config":
        """Validate a parsed config mapping, with env var fallbacks."""
        try:
            config = cls.model_validate(data)
        except ValidationError as e:
            raise ConfigLoadError(f"Invalid config: {e}") from e
        return config.apply_env()

    @classmethod
    def from_file(cls, path: Path) -> "Config":
        """Load configuration from a TOML or YAML file, with env var fallbacks."""
        try:
            raw = path.read_text()
        except OSError as e:
            raise ConfigLoadError(f"Cannot read config file {path}: {e}") from e

        if path.suffix in (".yaml", ".yml"):
            try:
                data = yaml.safe_load(raw) or {}
            except yaml.YAMLError as e:
                raise ConfigLoadError(f"Invalid YAML in {path}: {e}") from e
        else:
            try:
                data = tomllib.loads(raw)
            except tomllib.TOMLDecodeError as e:
                raise ConfigLoadError(f"Invalid TOML in {path}: {e}") from e

        if not isinstance(data, dict):
            raise ConfigLoadError(f"Config root must be a mapping, got {type(data).__name__}")

        return cls.from_dict(data)
