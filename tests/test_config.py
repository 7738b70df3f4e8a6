"""Tests for roomwatch.config and roomwatch.secrets."""

from pathlib import Path

import pytest

from roomwatch.config import DEFAULT_API_BASE_URL, AppConfig, load_config
from roomwatch.errors import ConfigError
from roomwatch.schemas.access import AccessMode
from roomwatch.secrets import load_dotenv_fallback, load_secrets


def _write_env(tmp_path: Path, body: str) -> Path:
    path = tmp_path / "internal.env"
    path.write_text(body)
    return path


def test_defaults_from_empty_file(tmp_path):
    config = load_config(_write_env(tmp_path, ""))

    assert config.api_base_url == DEFAULT_API_BASE_URL
    assert config.bot_token is None
    assert config.delegated is None
    assert config.filtering.max_monitored_rooms == 25
    assert config.filtering.skip_direct_messages
    assert config.urgency.business_timezone == "UTC"
    assert config.preferred_mode is None


def test_values_parsed_from_file(tmp_path):
    env = _write_env(
        tmp_path,
        "CHAT_API_BASE_URL=https://chat.example.com/v1/\n"
        "CHAT_BOT_TOKEN=tok\n"
        "PRIORITY_ROOMS=Ops, On-call\n"
        "EXCLUDE_PATTERNS=*social*\n"
        "MAX_MONITORED_ROOMS=10\n"
        "SKIP_DIRECT_MESSAGES=false\n"
        "CACHE_ROOM_LIST_MINUTES=5.5\n"
        "URGENCY_KEYWORDS=sev1,pager\n"
        "BUSINESS_TIMEZONE=Europe/Berlin\n"
        "OAUTH_CLIENT_ID=cid\n"
        "OAUTH_REFRESH_TOKEN=refresh\n"
        "PREFERRED_MODE=hybrid\n",
    )
    config = load_config(env)

    assert config.api_base_url == "https://chat.example.com/v1"
    assert config.filtering.priority_rooms == ("Ops", "On-call")
    assert config.filtering.exclude_patterns == ("*social*",)
    assert config.filtering.max_monitored_rooms == 10
    assert not config.filtering.skip_direct_messages
    assert config.filtering.cache_ttl_minutes == 5.5
    assert config.urgency.keywords == ("sev1", "pager")
    assert config.urgency.business_timezone == "Europe/Berlin"
    assert config.delegated.client_id == "cid"
    assert config.delegated.refresh_token == "refresh"
    assert config.preferred_mode == AccessMode.HYBRID


def test_environment_overrides_file(tmp_path, monkeypatch):
    env = _write_env(tmp_path, "CHAT_BOT_TOKEN=from-file\nMAX_MONITORED_ROOMS=10\n")
    monkeypatch.setenv("CHAT_BOT_TOKEN", "from-env")

    config = load_config(env)

    assert config.bot_token == "from-env"
    assert config.filtering.max_monitored_rooms == 10


def test_missing_file_uses_environment_only(tmp_path, monkeypatch):
    monkeypatch.setenv("CHAT_BOT_TOKEN", "env-only")
    config = load_config(tmp_path / "absent.env")
    assert config.bot_token == "env-only"


@pytest.mark.parametrize(
    "body",
    [
        "MAX_MONITORED_ROOMS=lots\n",
        "CACHE_ROOM_LIST_MINUTES=soon\n",
        "BUSINESS_TIMEZONE=Mars/Olympus\n",
        "BUSINESS_HOURS_START=30\n",
        "PREFERRED_MODE=carrier-pigeon\n",
        "PRIORITY_ROOMS=a,b,c\nMAX_MONITORED_ROOMS=2\n",
    ],
)
def test_malformed_values_raise_config_error(tmp_path, body):
    with pytest.raises(ConfigError):
        load_config(_write_env(tmp_path, body))


def test_require_credentials():
    with pytest.raises(ConfigError, match="CHAT_BOT_TOKEN"):
        AppConfig().require_credentials()
    with pytest.raises(ConfigError):
        AppConfig(bot_token="placeholder").require_credentials()
    AppConfig(bot_token="real").require_credentials()


def test_config_is_frozen():
    config = AppConfig()
    with pytest.raises(Exception):
        config.bot_token = "x"


def test_dotenv_fallback_missing_file(tmp_path):
    assert load_dotenv_fallback(tmp_path / "nope.env") == {}


def test_load_secrets_missing_file(tmp_path):
    with pytest.raises(ConfigError, match="not found"):
        load_secrets(tmp_path / "internal.env.enc")
