"""Configuration loading and validation.

Reads ``commitments.toml``, resolves ``${VAR_NAME}`` environment references,
and returns a validated ``CommitmentsConfig``.  Every section is optional and
falls back to defaults, so an empty file is a valid configuration.
"""

from __future__ import annotations

import os
import re
import tomllib
from pathlib import Path
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from commitments.adjudicator import DEFAULT_SIMILARITY_THRESHOLD
from commitments.calendar_sync import (
    DEFAULT_EMAIL_LEAD_MINUTES,
    DEFAULT_EVENT_DURATION_MINUTES,
    DEFAULT_POPUP_LEAD_MINUTES,
)
from commitments.errors import ConfigError
from commitments.extractor import DEFAULT_OLLAMA_BASE_URL, DEFAULT_OLLAMA_MODEL
from commitments.history import DEFAULT_JOURNAL_LIMIT, DEFAULT_REMINDER_LIMIT
from commitments.resolver import coerce_zone

DEFAULT_CONFIG_FILENAME = "commitments.toml"

# ${VAR_NAME} references; names are letters, digits and underscores.
_ENV_VAR_PATTERN = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")


class ResolverConfig(BaseModel):
    """The single fixed reference timezone used for all calendar arithmetic."""

    model_config = ConfigDict(extra="forbid")

    timezone: str = "UTC"

    @field_validator("timezone")
    @classmethod
    def _validate_timezone(cls, value: str) -> str:
        normalized = value.strip() or "UTC"
        coerce_zone(normalized)
        return normalized


class AdjudicatorConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    similarity_threshold: float = Field(default=DEFAULT_SIMILARITY_THRESHOLD, gt=0.0, le=1.0)


class ExtractorConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    base_url: str = DEFAULT_OLLAMA_BASE_URL
    model: str = Field(default=DEFAULT_OLLAMA_MODEL, min_length=1)
    timeout_seconds: float = Field(default=60.0, gt=0)


class HistoryConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    journal_limit: int = Field(default=DEFAULT_JOURNAL_LIMIT, ge=0)
    reminder_limit: int = Field(default=DEFAULT_REMINDER_LIMIT, ge=1)
    timeout_seconds: float = Field(default=10.0, gt=0)


class CalendarConfig(BaseModel):
    """External calendar mirroring.  Disabled unless credentials are configured."""

    model_config = ConfigDict(extra="forbid")

    enabled: bool = False
    auto_sync: bool = True
    provider: Literal["google"] = "google"
    calendar_id: str = Field(default="primary", min_length=1)
    credentials_json: str | None = None
    event_duration_minutes: int = Field(default=DEFAULT_EVENT_DURATION_MINUTES, ge=1)
    popup_minutes: int = Field(default=DEFAULT_POPUP_LEAD_MINUTES, ge=0)
    email_minutes: int = Field(default=DEFAULT_EMAIL_LEAD_MINUTES, ge=0)
    timeout_seconds: float = Field(default=30.0, gt=0)


class DatabaseConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    dsn: str | None = None


class LoggingConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    level: str = "INFO"
    format: Literal["text", "json"] = "text"
    log_file: str | None = None

    @field_validator("level")
    @classmethod
    def _normalize_level(cls, value: str) -> str:
        return value.strip().upper() or "INFO"


class CommitmentsConfig(BaseModel):
    """Top-level configuration."""

    model_config = ConfigDict(extra="forbid")

    resolver: ResolverConfig = Field(default_factory=ResolverConfig)
    adjudicator: AdjudicatorConfig = Field(default_factory=AdjudicatorConfig)
    extractor: ExtractorConfig = Field(default_factory=ExtractorConfig)
    history: HistoryConfig = Field(default_factory=HistoryConfig)
    calendar: CalendarConfig = Field(default_factory=CalendarConfig)
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)


def resolve_env_vars(value: Any) -> Any:
    """Recursively resolve ``${VAR_NAME}`` references in config values.

    Walks dicts, lists, and strings.  Non-string leaf values are returned
    unchanged.

    Raises
    ------
    ConfigError
        If a referenced environment variable is not set.
    """
    if isinstance(value, dict):
        return {k: resolve_env_vars(v) for k, v in value.items()}

    if isinstance(value, list):
        return [resolve_env_vars(item) for item in value]

    if isinstance(value, str):
        return _resolve_string(value)

    return value


def _resolve_string(s: str) -> str:
    """Replace all ``${VAR_NAME}`` occurrences in *s* with env var values.

    Collects all missing variable names and reports them in a single error.
    """
    missing: list[str] = []

    def _replace(match: re.Match) -> str:
        var_name = match.group(1)
        env_value = os.environ.get(var_name)
        if env_value is None:
            missing.append(var_name)
            return match.group(0)
        return env_value

    result = _ENV_VAR_PATTERN.sub(_replace, s)

    if missing:
        vars_str = ", ".join(missing)
        raise ConfigError(
            f"Unresolved environment variable(s) in config value: {vars_str} (original: {s!r})"
        )

    return result


def parse_config(raw: dict[str, Any]) -> CommitmentsConfig:
    """Validate an already-parsed TOML mapping."""
    try:
        return CommitmentsConfig.model_validate(resolve_env_vars(raw))
    except ValidationError as exc:
        problems = "; ".join(
            f"{'.'.join(str(part) for part in error['loc'])}: {error['msg']}"
            for error in exc.errors()
        )
        raise ConfigError(f"Invalid configuration: {problems}") from exc


def load_config(path: Path | None = None) -> CommitmentsConfig:
    """Load configuration from *path* (default: ``./commitments.toml``).

    A missing default file yields the default configuration; a missing
    explicit path is an error.
    """
    explicit = path is not None
    config_path = Path(path) if path is not None else Path(DEFAULT_CONFIG_FILENAME)

    if not config_path.is_file():
        if explicit:
            raise ConfigError(f"Config file not found: {config_path}")
        return CommitmentsConfig()

    try:
        with config_path.open("rb") as fh:
            raw = tomllib.load(fh)
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"Invalid TOML in {config_path}: {exc}") from exc

    return parse_config(raw)
