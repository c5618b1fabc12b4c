"""cardsync configuration loading and validation.

Reads a TOML file (or the process environment), resolves ``${VAR_NAME}``
references and returns a validated :class:`AppConfig`.

Example ``cardsync.toml``::

    [google]
    enabled = true
    client_id = "${GOOGLE_CLIENT_ID}"
    client_secret = "${GOOGLE_CLIENT_SECRET}"
    refresh_token = "${GOOGLE_REFRESH_TOKEN}"
    calendar_name = "Service Appointments"
    shared_with = ["office@example.com"]

    [sync]
    eligible_status = "Scheduled"

    [automation]
    daily_resync_enabled = true
"""

from __future__ import annotations

import os
import re
import tomllib
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

# Pattern matching ${VAR_NAME}: alphanumeric + underscore variable names.
_ENV_VAR_PATTERN = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")

SHARE_ROLES = ("owner", "writer", "reader", "freeBusyReader")
_TRUE_FLAGS = {"1", "true", "yes", "on"}


class ConfigError(Exception):
    """Raised when configuration is missing, malformed, or invalid."""


def _clamp_int(value: Any, lower: int, upper: int, default: int) -> int:
    try:
        parsed = int(float(value))
    except (TypeError, ValueError):
        return default
    return max(lower, min(upper, parsed))


def parse_flag(value: Any, default: bool = False) -> bool:
    """Interpret ``1/true/yes/on`` (any case) as true; ``None`` yields *default*."""
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in _TRUE_FLAGS


def parse_email_list(value: Any) -> list[str]:
    """Accept a list or a ``,``/``;`` separated string of addresses."""
    if value is None:
        return []
    if isinstance(value, list | tuple):
        entries = [str(entry) for entry in value]
    else:
        entries = re.split(r"[;,]", str(value))
    return [entry.strip() for entry in entries if entry.strip()]


class GoogleSettings(BaseModel):
    """``[google]``: credentials and calendar defaults."""

    model_config = ConfigDict(extra="forbid")

    enabled: bool = False
    client_id: str = ""
    client_secret: str = ""
    refresh_token: str = ""
    calendar_id: str = ""
    calendar_name: str = "Service Appointments"
    timezone: str = "Europe/Vienna"
    event_duration_min: int = 90
    slot_window_days: int = 14
    share_role: str = "writer"
    shared_with: list[str] = Field(default_factory=list)

    @field_validator("enabled", mode="before")
    @classmethod
    def _parse_enabled(cls, value: Any) -> bool:
        return parse_flag(value)

    @field_validator(
        "client_id", "client_secret", "refresh_token", "calendar_id", "calendar_name", "timezone",
        mode="before",
    )
    @classmethod
    def _strip(cls, value: Any) -> str:
        return "" if value is None else str(value).strip()

    @field_validator("event_duration_min", mode="before")
    @classmethod
    def _clamp_duration(cls, value: Any) -> int:
        return _clamp_int(value, 15, 480, 90)

    @field_validator("slot_window_days", mode="before")
    @classmethod
    def _clamp_window(cls, value: Any) -> int:
        return _clamp_int(value, 3, 31, 14)

    @field_validator("share_role", mode="before")
    @classmethod
    def _known_role(cls, value: Any) -> str:
        role = "" if value is None else str(value).strip()
        return role if role in SHARE_ROLES else "writer"

    @field_validator("shared_with", mode="before")
    @classmethod
    def _split_emails(cls, value: Any) -> list[str]:
        return parse_email_list(value)

    @property
    def is_configured(self) -> bool:
        return bool(self.enabled and self.client_id and self.client_secret and self.refresh_token)


class SyncSettings(BaseModel):
    """``[sync]``: reconciliation behavior."""

    model_config = ConfigDict(extra="forbid")

    eligible_status: str = "Scheduled"
    default_start_time: str = "09:00"
    verify_interval_hours: float = Field(default=6.0, ge=0)
    lookup_max_results: int = 10
    default_record_title: str = "New appointment"

    @field_validator("lookup_max_results", mode="before")
    @classmethod
    def _clamp_lookup(cls, value: Any) -> int:
        return _clamp_int(value, 1, 20, 10)


class AutomationSettings(BaseModel):
    """``[automation]``: scheduled and post-import sync triggers."""

    model_config = ConfigDict(extra="forbid")

    daily_resync_enabled: bool = False
    daily_resync_interval_hours: float = Field(default=24.0, gt=0)
    check_interval_minutes: float = Field(default=10.0, gt=0)
    sync_on_import: bool = False

    @field_validator("daily_resync_enabled", "sync_on_import", mode="before")
    @classmethod
    def _parse_flags(cls, value: Any) -> bool:
        return parse_flag(value)


@dataclass
class LoggingConfig:
    """Logging configuration from the ``[logging]`` section."""

    level: str = "INFO"
    format: str = "text"  # "text" or "json"
    log_root: str | None = None


@dataclass
class ApiConfig:
    """HTTP API bind address from the ``[api]`` section."""

    host: str = "127.0.0.1"
    port: int = 8787


@dataclass
class StateConfig:
    """Run-history storage from the ``[state]`` section; in-memory without a DSN."""

    dsn: str | None = None
    records_path: str | None = None


@dataclass
class AppConfig:
    google: GoogleSettings = field(default_factory=GoogleSettings)
    sync: SyncSettings = field(default_factory=SyncSettings)
    automation: AutomationSettings = field(default_factory=AutomationSettings)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    api: ApiConfig = field(default_factory=ApiConfig)
    state: StateConfig = field(default_factory=StateConfig)


def resolve_env_vars(value: Any) -> Any:
    """Recursively resolve ``${VAR_NAME}`` references in config values.

    Walks dicts, lists, and strings. Non-string leaf values are returned
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


def _section(data: Mapping[str, Any], name: str) -> dict[str, Any]:
    section = data.get(name, {})
    if not isinstance(section, dict):
        raise ConfigError(f"[{name}] must be a table")
    return section


def build_config(data: Mapping[str, Any]) -> AppConfig:
    """Validate an already-parsed (and env-resolved) config mapping."""
    try:
        google = GoogleSettings.model_validate(_section(data, "google"))
        sync = SyncSettings.model_validate(_section(data, "sync"))
        automation = AutomationSettings.model_validate(_section(data, "automation"))
    except ValidationError as exc:
        raise ConfigError(f"Invalid configuration: {exc}") from exc

    logging_section = _section(data, "logging")
    log_format = str(logging_section.get("format", "text")).lower()
    if log_format not in ("text", "json"):
        raise ConfigError(f"Invalid logging.format: {log_format!r}. Expected 'text' or 'json'.")
    log_root = logging_section.get("log_root")
    logging_config = LoggingConfig(
        level=str(logging_section.get("level", "INFO")).upper(),
        format=log_format,
        log_root=str(log_root) if log_root else None,
    )

    api_section = _section(data, "api")
    try:
        port = int(api_section.get("port", ApiConfig.port))
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"api.port must be an integer: {api_section.get('port')!r}") from exc
    api_config = ApiConfig(host=str(api_section.get("host", ApiConfig.host)), port=port)

    state_section = _section(data, "state")
    dsn = str(state_section.get("dsn") or "").strip()
    records_path = str(state_section.get("records_path") or "").strip()
    state_config = StateConfig(dsn=dsn or None, records_path=records_path or None)

    return AppConfig(
        google=google,
        sync=sync,
        automation=automation,
        logging=logging_config,
        api=api_config,
        state=state_config,
    )


def load_config(path: Path | str) -> AppConfig:
    """Load and validate a cardsync TOML config file.

    Raises
    ------
    ConfigError
        If the file is missing, contains invalid TOML, references unset
        environment variables, or fails validation.
    """
    toml_path = Path(path)
    if not toml_path.exists():
        raise ConfigError(f"Config file not found: {toml_path}")

    raw_bytes = toml_path.read_bytes()
    try:
        data = tomllib.loads(raw_bytes.decode())
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"Invalid TOML in {toml_path}: {exc}") from exc

    return build_config(resolve_env_vars(data))


# Environment variable -> (section, key)
_ENV_MAPPING: dict[str, tuple[str, str]] = {
    "GOOGLE_ENABLED": ("google", "enabled"),
    "GOOGLE_CLIENT_ID": ("google", "client_id"),
    "GOOGLE_CLIENT_SECRET": ("google", "client_secret"),
    "GOOGLE_REFRESH_TOKEN": ("google", "refresh_token"),
    "GOOGLE_CALENDAR_ID": ("google", "calendar_id"),
    "GOOGLE_CALENDAR_NAME": ("google", "calendar_name"),
    "GOOGLE_TIMEZONE": ("google", "timezone"),
    "GOOGLE_EVENT_DURATION_MIN": ("google", "event_duration_min"),
    "GOOGLE_SLOT_WINDOW_DAYS": ("google", "slot_window_days"),
    "GOOGLE_SHARE_ROLE": ("google", "share_role"),
    "GOOGLE_SHARED_WITH": ("google", "shared_with"),
    "GOOGLE_DAILY_RESYNC_ENABLED": ("automation", "daily_resync_enabled"),
    "CARDSYNC_SYNC_ON_IMPORT": ("automation", "sync_on_import"),
    "CARDSYNC_ELIGIBLE_STATUS": ("sync", "eligible_status"),
    "CARDSYNC_VERIFY_INTERVAL_HOURS": ("sync", "verify_interval_hours"),
    "CARDSYNC_LOG_LEVEL": ("logging", "level"),
    "CARDSYNC_LOG_FORMAT": ("logging", "format"),
    "CARDSYNC_LOG_ROOT": ("logging", "log_root"),
    "CARDSYNC_API_HOST": ("api", "host"),
    "CARDSYNC_API_PORT": ("api", "port"),
    "CARDSYNC_STATE_DSN": ("state", "dsn"),
    "CARDSYNC_RECORDS_PATH": ("state", "records_path"),
}


def load_config_from_env(environ: Mapping[str, str] | None = None) -> AppConfig:
    """Build an :class:`AppConfig` from ``GOOGLE_*`` / ``CARDSYNC_*`` variables."""
    env = os.environ if environ is None else environ
    data: dict[str, dict[str, Any]] = {}
    for var_name, (section, key) in _ENV_MAPPING.items():
        value = env.get(var_name)
        if value is None or value == "":
            continue
        data.setdefault(section, {})[key] = value
    return build_config(data)
