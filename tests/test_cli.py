"""Tests for the roomwatch CLI entry point."""

from datetime import UTC, datetime
from unittest.mock import AsyncMock, MagicMock, patch

import click.testing
import pytest

from roomwatch.cli import cli
from roomwatch.config import AppConfig, PushConfig
from roomwatch.errors import ConfigError, RetrievalError
from roomwatch.schemas.access import (
    AccessMode,
    AuthFlowResult,
    AuthSetupResult,
    DelegatedAuthConfig,
    MessagesViaModeResult,
    ModeAnalysis,
    ModeDetection,
    PushSubscription,
)
from roomwatch.schemas.filtering import FilterConfig, FilterStatsReport
from roomwatch.schemas.summaries import PrioritizedSummary, UrgentMessage

NOW = datetime(2024, 6, 5, 12, 0, tzinfo=UTC)

# ------------------------------------------------------------------
# Helpers
# ------------------------------------------------------------------


def _make_service() -> MagicMock:
    service = MagicMock()
    service.__aenter__ = AsyncMock(return_value=service)
    service.__aexit__ = AsyncMock(return_value=False)
    return service


def _invoke(args: list[str], service: MagicMock, config: AppConfig | None = None):
    config = config or AppConfig(bot_token="tok")
    runner = click.testing.CliRunner()
    with (
        patch("roomwatch.cli.load_config", return_value=config),
        patch("roomwatch.orchestrator.service.TriageService", return_value=service),
    ):
        return runner.invoke(cli, args)


def _urgent(text: str, immediate: bool = False) -> UrgentMessage:
    return UrgentMessage(
        id="m1",
        room_id="r1",
        room_title="Ops",
        sender="pat@example.com",
        text=text,
        created=NOW,
        urgency_reasons=["outage"],
        requires_immediate=immediate,
        urgency_score=0.8,
    )


# ------------------------------------------------------------------
# Config errors
# ------------------------------------------------------------------


def test_missing_credential_exits_nonzero():
    result = _invoke(["summary"], _make_service(), config=AppConfig())
    assert result.exit_code == 1
    assert "CHAT_BOT_TOKEN" in result.output


def test_malformed_config_exits_nonzero():
    runner = click.testing.CliRunner()
    with patch("roomwatch.cli.load_config", side_effect=ConfigError("MAX_MONITORED_ROOMS must be an integer")):
        result = runner.invoke(cli, ["rooms"])
    assert result.exit_code == 1
    assert "MAX_MONITORED_ROOMS" in result.output


# ------------------------------------------------------------------
# Triage commands
# ------------------------------------------------------------------


def test_summary_prints_json():
    service = _make_service()
    service.get_prioritized_summary = AsyncMock(return_value=PrioritizedSummary())

    result = _invoke(["summary", "--hours", "8"], service)

    assert result.exit_code == 0, result.output
    assert '"urgent_messages": []' in result.output
    service.get_prioritized_summary.assert_awaited_once_with(since_hours=8.0, max_per_room=50)


def test_urgent_lists_messages():
    service = _make_service()
    service.get_urgent_only = AsyncMock(return_value=[_urgent("db outage", immediate=True), _urgent("ping")])

    result = _invoke(["urgent", "-n", "5"], service)

    assert result.exit_code == 0
    assert "!! [Ops] pat@example.com: db outage" in result.output
    assert " ! [Ops] pat@example.com: ping" in result.output
    service.get_urgent_only.assert_awaited_once_with(limit=5, since_hours=24.0)


def test_urgent_with_nothing_to_report():
    service = _make_service()
    service.get_urgent_only = AsyncMock(return_value=[])
    result = _invoke(["urgent"], service)
    assert "No urgent messages." in result.output


def test_retrieval_error_exits_nonzero():
    service = _make_service()
    service.get_rooms_info = AsyncMock(side_effect=RetrievalError("no room readable"))

    result = _invoke(["rooms"], service)

    assert result.exit_code == 1
    assert "no room readable" in result.output


# ------------------------------------------------------------------
# Access mode commands
# ------------------------------------------------------------------


def test_detect_mode_needs_no_credential():
    service = _make_service()
    service.detect_best_mode = AsyncMock(
        return_value=ModeDetection(
            recommended_mode=AccessMode.HYBRID,
            analysis={AccessMode.DIRECT: ModeAnalysis(mode=AccessMode.DIRECT)},
        )
    )

    result = _invoke(["detect-mode"], service, config=AppConfig())

    assert result.exit_code == 0
    assert '"recommended_mode": "hybrid"' in result.output


def test_messages_with_explicit_mode_skips_detection():
    service = _make_service()
    service.detect_best_mode = AsyncMock()
    service.get_messages_via_best_mode = AsyncMock(return_value=MessagesViaModeResult(mode=AccessMode.DIRECT))

    result = _invoke(["messages", "--mode", "direct", "--hours", "2"], service)

    assert result.exit_code == 0
    service.detect_best_mode.assert_not_awaited()
    service.get_messages_via_best_mode.assert_awaited_once_with(since_hours=2.0, mode=AccessMode.DIRECT)


def test_auth_url_requires_client_details():
    result = _invoke(["auth-url"], _make_service(), config=AppConfig())
    assert result.exit_code == 1


def test_auth_url_falls_back_to_config():
    service = _make_service()
    service.configure_delegated_auth = MagicMock(
        return_value=AuthSetupResult(authorization_url="https://auth?x=1", redirect_uri="http://localhost:3000/callback")
    )
    config = AppConfig(delegated=DelegatedAuthConfig(client_id="cid", client_secret="cs"))

    result = _invoke(["auth-url"], service, config=config)

    assert result.exit_code == 0
    service.configure_delegated_auth.assert_called_once_with("cid", "cs", None)


def test_complete_auth_failure_exits_nonzero():
    service = _make_service()
    service.complete_auth_flow = AsyncMock(return_value=AuthFlowResult(success=False, error="invalid code"))
    config = AppConfig(delegated=DelegatedAuthConfig(client_id="cid", client_secret="cs"))

    result = _invoke(["complete-auth", "bad"], service, config=config)

    assert result.exit_code == 1
    assert "invalid code" in result.output


def test_push_setup_uses_configured_url_and_secret():
    service = _make_service()
    service.configure_push_notifications = AsyncMock(
        return_value=PushSubscription(id="w1", target_url="https://hook")
    )
    config = AppConfig(bot_token="tok", push=PushConfig(webhook_url="https://hook", webhook_secret="s"))

    result = _invoke(["push-setup"], service, config=config)

    assert result.exit_code == 0
    service.configure_push_notifications.assert_awaited_once_with("https://hook", "s")


# ------------------------------------------------------------------
# Filter commands
# ------------------------------------------------------------------


@pytest.mark.parametrize(("args", "refreshed"), [(["filter-stats"], False), (["filter-stats", "--refresh"], True)])
def test_filter_stats(args, refreshed):
    service = _make_service()
    service.refresh_filter_cache = AsyncMock()
    service.get_filter_stats = MagicMock(return_value=FilterStatsReport(configuration=FilterConfig()))

    result = _invoke(args, service)

    assert result.exit_code == 0
    assert '"max_monitored_rooms": 25' in result.output
    assert service.refresh_filter_cache.await_count == (1 if refreshed else 0)
