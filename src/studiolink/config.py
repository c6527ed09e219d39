"""Studio configuration loading and validation.

Reads ``studio.toml``, resolves ``${VAR_NAME}`` references from the
environment, and returns a validated :class:`StudioConfig` dataclass.
"""

from __future__ import annotations

import math
import os
import re
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

# Pattern matching ${VAR_NAME}; supports alphanumeric + underscore variable names.
_ENV_VAR_PATTERN = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")
_FEED_NAME_PATTERN = re.compile(r"^[A-Za-z0-9_.-]+$")

CONFIG_ENV_VAR = "STUDIOLINK_CONFIG"
DEFAULT_CONFIG_FILENAME = "studio.toml"

DEFAULT_TIMEZONE = "Europe/London"
DEFAULT_REDIRECT_URI = "http://localhost:40300/api/oauth/google/callback"
DEFAULT_STATE_TTL_SECONDS = 600
DEFAULT_LOOKAHEAD_DAYS = 60
DEFAULT_REFRESH_MARGIN_SECONDS = 60
DEFAULT_REQUEST_TIMEOUT_SECONDS = 10.0
DEFAULT_SOURCE_TIMEOUT_SECONDS = 20.0


class ConfigError(Exception):
    """Raised when studio configuration is missing, malformed, or invalid."""


@dataclass
class LoggingConfig:
    """Logging configuration from [studio.logging] section."""

    level: str = "INFO"
    format: str = "text"  # "text" or "json"
    log_root: str | None = None


@dataclass
class AdminConfig:
    """Admin bearer-token verification settings from [studio.admin]."""

    jwt_secret: str | None = None
    static_token: str | None = None

    def __repr__(self) -> str:
        return (
            f"AdminConfig(jwt_secret={'<REDACTED>' if self.jwt_secret else None}, "
            f"static_token={'<REDACTED>' if self.static_token else None})"
        )


@dataclass
class OAuthConfig:
    """Google OAuth client settings from the [oauth] section."""

    client_id: str
    client_secret: str
    state_secret: str
    redirect_uri: str = DEFAULT_REDIRECT_URI
    confirm_url: str | None = None
    state_ttl_seconds: int = DEFAULT_STATE_TTL_SECONDS

    def __repr__(self) -> str:
        return (
            f"OAuthConfig(client_id={self.client_id!r}, client_secret=<REDACTED>, "
            f"state_secret=<REDACTED>, redirect_uri={self.redirect_uri!r}, "
            f"confirm_url={self.confirm_url!r}, state_ttl_seconds={self.state_ttl_seconds!r})"
        )


@dataclass
class CalendarConfig:
    """Busy-time and token freshness settings from the [calendar] section."""

    lookahead_days: int = DEFAULT_LOOKAHEAD_DAYS
    refresh_margin_seconds: int = DEFAULT_REFRESH_MARGIN_SECONDS
    request_timeout_seconds: float = DEFAULT_REQUEST_TIMEOUT_SECONDS
    source_timeout_seconds: float = DEFAULT_SOURCE_TIMEOUT_SECONDS


@dataclass(frozen=True)
class FeedConfig:
    """A single public calendar feed from [[feeds]].

    ``artist_id`` of ``None`` marks a studio-wide feed that applies to every
    artist.
    """

    name: str
    url: str
    artist_id: str | None = None

    def applies_to(self, artist_id: str) -> bool:
        return self.artist_id is None or self.artist_id == artist_id


@dataclass
class StudioConfig:
    """Fully parsed studio configuration."""

    name: str
    oauth: OAuthConfig
    timezone: str = DEFAULT_TIMEZONE
    port: int = 40300
    db_name: str = "studiolink"
    admin: AdminConfig = field(default_factory=AdminConfig)
    calendar: CalendarConfig = field(default_factory=CalendarConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    feeds: list[FeedConfig] = field(default_factory=list)

    @property
    def zoneinfo(self) -> ZoneInfo:
        return ZoneInfo(self.timezone)

    def feeds_for(self, artist_id: str) -> list[FeedConfig]:
        """Return the feeds that contribute busy time for *artist_id*."""
        return [feed for feed in self.feeds if feed.applies_to(artist_id)]


# ---------------------------------------------------------------------------
# Environment variable resolution
# ---------------------------------------------------------------------------


def resolve_env_vars(value: Any) -> Any:
    """Substitute ``${VAR_NAME}`` references anywhere inside a parsed TOML value.

    Raises
    ------
    ConfigError
        If a referenced environment variable is not set.
    """
    match value:
        case dict():
            return {key: resolve_env_vars(item) for key, item in value.items()}
        case list():
            return [resolve_env_vars(item) for item in value]
        case str():
            return _resolve_string(value)
        case _:
            return value


def _resolve_string(raw: str) -> str:
    # Every missing name is reported at once; *raw* itself is never echoed
    # because it may sit next to a secret.
    missing = [
        name for name in _ENV_VAR_PATTERN.findall(raw) if os.environ.get(name) is None
    ]
    if missing:
        names = ", ".join(dict.fromkeys(missing))
        raise ConfigError(f"Unresolved environment variable(s) in config value: {names}")
    return _ENV_VAR_PATTERN.sub(lambda m: os.environ[m.group(1)], raw)


# ---------------------------------------------------------------------------
# Section parsers
# ---------------------------------------------------------------------------


def _require_str(section: dict[str, Any], key: str, path: str) -> str:
    value = section.get(key)
    if not isinstance(value, str) or not value.strip():
        raise ConfigError(f"Missing required field: {path}.{key}")
    return value.strip()


def _optional_str(section: dict[str, Any], key: str) -> str | None:
    value = section.get(key)
    if value is None:
        return None
    normalized = str(value).strip()
    return normalized or None


def _positive_int(section: dict[str, Any], key: str, default: int, path: str) -> int:
    raw = section.get(key, default)
    try:
        value = int(raw)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"Invalid {path}.{key}: {raw!r}. Must be a positive integer.") from exc
    if value <= 0:
        raise ConfigError(f"Invalid {path}.{key}: {value!r}. Must be a positive integer.")
    return value


def _positive_float(section: dict[str, Any], key: str, default: float, path: str) -> float:
    raw = section.get(key, default)
    try:
        value = float(raw)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"Invalid {path}.{key}: {raw!r}. Must be a number.") from exc
    if not math.isfinite(value) or value <= 0:
        raise ConfigError(f"Invalid {path}.{key}: {value!r}. Must be positive.")
    return value


def _parse_oauth(data: dict[str, Any]) -> OAuthConfig:
    section = data.get("oauth")
    if not isinstance(section, dict):
        raise ConfigError("Missing [oauth] section in config")
    return OAuthConfig(
        client_id=_require_str(section, "client_id", "oauth"),
        client_secret=_require_str(section, "client_secret", "oauth"),
        state_secret=_require_str(section, "state_secret", "oauth"),
        redirect_uri=_optional_str(section, "redirect_uri") or DEFAULT_REDIRECT_URI,
        confirm_url=_optional_str(section, "confirm_url"),
        state_ttl_seconds=_positive_int(
            section, "state_ttl_seconds", DEFAULT_STATE_TTL_SECONDS, "oauth"
        ),
    )


def _parse_calendar(data: dict[str, Any]) -> CalendarConfig:
    section = data.get("calendar", {})
    if not isinstance(section, dict):
        raise ConfigError("[calendar] must be a table")

    timeout = _positive_float(
        section, "request_timeout_seconds", DEFAULT_REQUEST_TIMEOUT_SECONDS, "calendar"
    )
    source_timeout = _positive_float(
        section, "source_timeout_seconds", DEFAULT_SOURCE_TIMEOUT_SECONDS, "calendar"
    )

    return CalendarConfig(
        lookahead_days=_positive_int(
            section, "lookahead_days", DEFAULT_LOOKAHEAD_DAYS, "calendar"
        ),
        refresh_margin_seconds=_positive_int(
            section, "refresh_margin_seconds", DEFAULT_REFRESH_MARGIN_SECONDS, "calendar"
        ),
        request_timeout_seconds=timeout,
        source_timeout_seconds=source_timeout,
    )


def _parse_feeds(data: dict[str, Any]) -> list[FeedConfig]:
    raw_feeds = data.get("feeds", [])
    if not isinstance(raw_feeds, list):
        raise ConfigError("[[feeds]] must be an array of tables")

    feeds: list[FeedConfig] = []
    seen: set[str] = set()
    for index, entry in enumerate(raw_feeds):
        if not isinstance(entry, dict):
            raise ConfigError(f"feeds[{index}] must be a table")
        name = _require_str(entry, "name", f"feeds[{index}]")
        if _FEED_NAME_PATTERN.fullmatch(name) is None:
            raise ConfigError(
                f"Invalid feeds[{index}].name: {name!r}. "
                "Use letters, digits, '.', '_' or '-'."
            )
        if name in seen:
            raise ConfigError(f"Duplicate feed name: {name!r}")
        seen.add(name)
        url = _require_str(entry, "url", f"feeds[{index}]")
        if not url.startswith(("http://", "https://")):
            raise ConfigError(f"Invalid feeds[{index}].url: must be an http(s) URL")
        feeds.append(FeedConfig(name=name, url=url, artist_id=_optional_str(entry, "artist_id")))
    return feeds


def parse_config(data: dict[str, Any]) -> StudioConfig:
    """Validate an already-decoded TOML document and build a StudioConfig."""
    data = resolve_env_vars(data)

    studio_section = data.get("studio")
    if not isinstance(studio_section, dict):
        raise ConfigError("Missing [studio] section in config")

    name = _require_str(studio_section, "name", "studio")

    timezone = _optional_str(studio_section, "timezone") or DEFAULT_TIMEZONE
    try:
        ZoneInfo(timezone)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise ConfigError(f"Invalid studio.timezone: {timezone!r}") from exc

    port = _positive_int(studio_section, "port", 40300, "studio")

    db_section = studio_section.get("db", {})
    db_name = _optional_str(db_section, "name") or "studiolink"

    logging_section = studio_section.get("logging", {})
    log_level = str(logging_section.get("level", "INFO")).upper()
    log_format = str(logging_section.get("format", "text")).lower()
    if log_format not in ("text", "json"):
        raise ConfigError(
            f"Invalid studio.logging.format: {log_format!r}. Expected 'text' or 'json'."
        )

    admin_section = studio_section.get("admin", {})
    admin = AdminConfig(
        jwt_secret=_optional_str(admin_section, "jwt_secret"),
        static_token=_optional_str(admin_section, "static_token"),
    )

    return StudioConfig(
        name=name,
        oauth=_parse_oauth(data),
        timezone=timezone,
        port=port,
        db_name=db_name,
        admin=admin,
        calendar=_parse_calendar(data),
        logging=LoggingConfig(
            level=log_level,
            format=log_format,
            log_root=logging_section.get("log_root"),
        ),
        feeds=_parse_feeds(data),
    )


def load_config(config_path: Path | None = None) -> StudioConfig:
    """Load and validate a ``studio.toml``.

    Parameters
    ----------
    config_path:
        Path to the TOML file, or to a directory containing ``studio.toml``.
        Falls back to ``$STUDIOLINK_CONFIG`` and then ``./studio.toml``.

    Raises
    ------
    ConfigError
        If the file is missing, contains invalid TOML, or lacks required fields.
    """
    if config_path is None:
        config_path = Path(os.environ.get(CONFIG_ENV_VAR, DEFAULT_CONFIG_FILENAME))
    if config_path.is_dir():
        config_path = config_path / DEFAULT_CONFIG_FILENAME

    if not config_path.exists():
        raise ConfigError(f"Config file not found: {config_path}")

    try:
        data = tomllib.loads(config_path.read_bytes().decode())
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"Invalid TOML in {config_path}: {exc}") from exc

    return parse_config(data)
