"""Single source of truth for all configuration and secrets.

Configuration is read once at startup into a frozen ``AppConfig`` and passed
explicitly into each component. Nothing else reads ``os.environ``.

Values come from ``secrets/internal.env`` (or its SOPS-encrypted twin when
``ROOMWATCH_USE_SOPS=true``); process environment variables override them.
"""

import logging
import os
from pathlib import Path
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from roomwatch.errors import ConfigError
from roomwatch.schemas.access import AccessMode, DelegatedAuthConfig
from roomwatch.schemas.filtering import FilterConfig
from roomwatch.schemas.messages import UrgencyConfig
from roomwatch.secrets import load_dotenv_fallback, load_secrets

logger = logging.getLogger(__name__)

PROJECT_ROOT = Path(__file__).resolve().parent.parent

DEFAULT_API_BASE_URL = "https://webexapis.com/v1"

# Every key load_config() understands. Only these are taken from os.environ.
KNOWN_KEYS = (
    "CHAT_API_BASE_URL",
    "CHAT_BOT_TOKEN",
    "OAUTH_CLIENT_ID",
    "OAUTH_CLIENT_SECRET",
    "OAUTH_REDIRECT_URI",
    "OAUTH_ACCESS_TOKEN",
    "OAUTH_REFRESH_TOKEN",
    "PUSH_WEBHOOK_URL",
    "PUSH_WEBHOOK_SECRET",
    "PUSH_RETENTION_MINUTES",
    "URGENCY_KEYWORDS",
    "HIGH_PRIORITY_SENDERS",
    "HIGH_PRIORITY_DOMAINS",
    "MONITOR_PERSON_ID",
    "BUSINESS_HOURS_START",
    "BUSINESS_HOURS_END",
    "BUSINESS_TIMEZONE",
    "PRIORITY_ROOMS",
    "INCLUDE_PATTERNS",
    "EXCLUDE_PATTERNS",
    "MAX_MONITORED_ROOMS",
    "MIN_ACTIVITY_MESSAGES",
    "MIN_ACTIVITY_DAYS",
    "SKIP_DIRECT_MESSAGES",
    "CACHE_ROOM_LIST_MINUTES",
    "REQUEST_TIMEOUT_SECONDS",
    "ROOM_TIMEOUT_SECONDS",
    "MAX_CONCURRENCY",
    "PREFERRED_MODE",
)


class PushConfig(BaseModel):
    """Push-notification delivery settings."""

    model_config = ConfigDict(frozen=True)

    webhook_url: str | None = None
    webhook_secret: str | None = None
    retention_minutes: int = Field(default=60, ge=1)


class AppConfig(BaseModel):
    """Immutable application configuration."""

    model_config = ConfigDict(frozen=True)

    api_base_url: str = DEFAULT_API_BASE_URL
    bot_token: str | None = None
    delegated: DelegatedAuthConfig | None = None
    push: PushConfig = Field(default_factory=PushConfig)
    urgency: UrgencyConfig = Field(default_factory=UrgencyConfig)
    filtering: FilterConfig = Field(default_factory=FilterConfig)
    request_timeout: float = Field(default=30.0, gt=0)
    room_timeout: float = Field(default=15.0, gt=0)
    max_concurrency: int = Field(default=5, ge=1)
    preferred_mode: AccessMode | None = None

    def require_credentials(self) -> None:
        """Fail loudly if the service-account credential is missing."""
        if not self.bot_token or self.bot_token == "placeholder":
            raise ConfigError(
                "Missing required config: CHAT_BOT_TOKEN "
                "(set it in secrets/internal.env, via SOPS, or in the environment)"
            )


def _use_sops() -> bool:
    return os.environ.get("ROOMWATCH_USE_SOPS", "false").lower() == "true"


def _load_raw(env_path: str | Path | None) -> dict[str, str | None]:
    """Merge file-based values with overriding environment variables."""
    if env_path is not None:
        raw = load_dotenv_fallback(env_path)
    elif _use_sops():
        raw = load_secrets(PROJECT_ROOT / "secrets/internal.env.enc")
    else:
        raw = load_dotenv_fallback(PROJECT_ROOT / "secrets/internal.env")

    for key in KNOWN_KEYS:
        if key in os.environ:
            raw[key] = os.environ[key]
    return raw


def _parse_list(value: str | None) -> tuple[str, ...]:
    if not value:
        return ()
    return tuple(item.strip() for item in value.split(",") if item.strip())


def _parse_int(raw: dict[str, str | None], key: str, default: int) -> int:
    value = raw.get(key)
    if value is None or value.strip() == "":
        return default
    try:
        return int(value)
    except ValueError as exc:
        raise ConfigError(f"{key} must be an integer, got {value!r}") from exc


def _parse_float(raw: dict[str, str | None], key: str, default: float) -> float:
    value = raw.get(key)
    if value is None or value.strip() == "":
        return default
    try:
        return float(value)
    except ValueError as exc:
        raise ConfigError(f"{key} must be a number, got {value!r}") from exc


def _parse_bool(raw: dict[str, str | None], key: str, default: bool) -> bool:
    value = raw.get(key)
    if value is None or value.strip() == "":
        return default
    return value.strip().lower() not in ("false", "0", "no", "off")


def _build_delegated(raw: dict[str, str | None]) -> DelegatedAuthConfig | None:
    client_id = raw.get("OAUTH_CLIENT_ID")
    if not client_id:
        return None
    return DelegatedAuthConfig(
        client_id=client_id,
        client_secret=raw.get("OAUTH_CLIENT_SECRET") or "",
        redirect_uri=raw.get("OAUTH_REDIRECT_URI") or "http://localhost:3000/callback",
        access_token=raw.get("OAUTH_ACCESS_TOKEN") or None,
        refresh_token=raw.get("OAUTH_REFRESH_TOKEN") or None,
    )


def _build_urgency(raw: dict[str, str | None]) -> UrgencyConfig:
    overrides: dict = {
        "priority_senders": _parse_list(raw.get("HIGH_PRIORITY_SENDERS")),
        "priority_domains": _parse_list(raw.get("HIGH_PRIORITY_DOMAINS")),
        "monitor_person_id": raw.get("MONITOR_PERSON_ID") or None,
        "business_hours_start": _parse_int(raw, "BUSINESS_HOURS_START", 9),
        "business_hours_end": _parse_int(raw, "BUSINESS_HOURS_END", 17),
    }
    keywords = _parse_list(raw.get("URGENCY_KEYWORDS"))
    if keywords:
        overrides["keywords"] = keywords

    timezone = raw.get("BUSINESS_TIMEZONE") or "UTC"
    try:
        ZoneInfo(timezone)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise ConfigError(f"BUSINESS_TIMEZONE {timezone!r} is not a known time zone") from exc
    overrides["business_timezone"] = timezone
    return UrgencyConfig(**overrides)


def _build_filtering(raw: dict[str, str | None]) -> FilterConfig:
    return FilterConfig(
        priority_rooms=_parse_list(raw.get("PRIORITY_ROOMS")),
        include_patterns=_parse_list(raw.get("INCLUDE_PATTERNS")),
        exclude_patterns=_parse_list(raw.get("EXCLUDE_PATTERNS")),
        max_monitored_rooms=_parse_int(raw, "MAX_MONITORED_ROOMS", 25),
        min_activity_messages=_parse_int(raw, "MIN_ACTIVITY_MESSAGES", 5),
        min_activity_days=_parse_int(raw, "MIN_ACTIVITY_DAYS", 7),
        skip_direct_messages=_parse_bool(raw, "SKIP_DIRECT_MESSAGES", True),
        cache_ttl_minutes=_parse_float(raw, "CACHE_ROOM_LIST_MINUTES", 30.0),
    )


def load_config(env_path: str | Path | None = None) -> AppConfig:
    """Build the application config once.

    Args:
        env_path: Optional plain .env file to read instead of the default
            ``secrets/internal.env`` (SOPS is not used when this is given).

    Raises:
        ConfigError: If any value is malformed.
    """
    raw = _load_raw(env_path)

    preferred = raw.get("PREFERRED_MODE") or None
    try:
        config = AppConfig(
            api_base_url=(raw.get("CHAT_API_BASE_URL") or DEFAULT_API_BASE_URL).rstrip("/"),
            bot_token=raw.get("CHAT_BOT_TOKEN") or None,
            delegated=_build_delegated(raw),
            push=PushConfig(
                webhook_url=raw.get("PUSH_WEBHOOK_URL") or None,
                webhook_secret=raw.get("PUSH_WEBHOOK_SECRET") or None,
                retention_minutes=_parse_int(raw, "PUSH_RETENTION_MINUTES", 60),
            ),
            urgency=_build_urgency(raw),
            filtering=_build_filtering(raw),
            request_timeout=_parse_float(raw, "REQUEST_TIMEOUT_SECONDS", 30.0),
            room_timeout=_parse_float(raw, "ROOM_TIMEOUT_SECONDS", 15.0),
            max_concurrency=_parse_int(raw, "MAX_CONCURRENCY", 5),
            preferred_mode=AccessMode(preferred) if preferred else None,
        )
    except (ValidationError, ValueError) as exc:
        raise ConfigError(f"Invalid configuration: {exc}") from exc

    logger.debug(
        "Loaded config: %d keyword(s), %d priority room(s), max %d monitored",
        len(config.urgency.keywords),
        len(config.filtering.priority_rooms),
        config.filtering.max_monitored_rooms,
    )
    return config
