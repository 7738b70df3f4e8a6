"""Tests for roomwatch.orchestrator.service.TriageService."""

import hashlib
import hmac
import json
from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest

from roomwatch.config import AppConfig, PushConfig
from roomwatch.errors import AccessDeniedError, AuthError, ConfigError, NotFoundError
from roomwatch.integrations.chat_api import ChatApiClient
from roomwatch.orchestrator.service import TriageService
from roomwatch.schemas.access import AccessMode, PushSubscription
from roomwatch.schemas.filtering import FilterConfig
from roomwatch.schemas.messages import ChatMessage, Person, Room, RoomKind, UrgencyConfig

NOW = datetime.now(UTC)


# --- Helpers ---


def _room(room_id: str, hours_ago: float = 1, kind: RoomKind = RoomKind.GROUP) -> Room:
    return Room(id=room_id, title=f"Room {room_id}", type=kind, last_activity=NOW - timedelta(hours=hours_ago))


def _message(room_id: str, text: str, minutes_ago: float = 30, person: str = "p1") -> ChatMessage:
    return ChatMessage(
        id=f"{room_id}-{text}",
        room_id=room_id,
        text=text,
        person_id=person,
        person_email=f"{person}@example.com",
        created=NOW - timedelta(minutes=minutes_ago),
    )


def _make_client(rooms: list[Room], messages_by_room: dict) -> MagicMock:
    client = MagicMock()
    client.has_token = True
    client.close = AsyncMock()
    client.list_rooms = AsyncMock(return_value=rooms)
    client.count_members = AsyncMock(return_value=4)

    async def list_messages(room_id, **kwargs):
        outcome = messages_by_room[room_id]
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    client.list_messages = AsyncMock(side_effect=list_messages)
    return client


def _make_service(client, **config_overrides) -> TriageService:
    delegated_client = MagicMock()
    delegated_client.has_token = False
    delegated_client.close = AsyncMock()
    config = AppConfig(
        bot_token="tok",
        urgency=UrgencyConfig(keywords=("urgent", "outage")),
        filtering=FilterConfig(min_activity_messages=1),
        **config_overrides,
    )
    return TriageService(config, client=client, delegated_client=delegated_client)


# ------------------------------------------------------------------
# Summaries
# ------------------------------------------------------------------


async def test_prioritized_summary_splits_urgent_and_routine():
    client = _make_client(
        [_room("r1"), _room("r2", hours_ago=3)],
        {
            "r1": [
                _message("r1", "urgent: review pls", minutes_ago=5),
                _message("r1", "outage in eu", minutes_ago=50),
                _message("r1", "lunch?", minutes_ago=10),
            ],
            "r2": [_message("r2", "deploy notes", minutes_ago=20, person="p2")],
        },
    )
    summary = await _make_service(client).get_prioritized_summary(since_hours=2)

    # Immediate first even though older.
    assert [m.text for m in summary.urgent_messages] == ["outage in eu", "urgent: review pls"]
    assert [s.id for s in summary.room_summaries] == ["r1", "r2"]
    assert summary.room_summaries[0].unread_count == 1
    assert summary.stats.total_messages == 4
    assert summary.stats.total_urgent == 2
    assert summary.stats.accessible_rooms == 2


async def test_urgent_only_respects_limit_and_order():
    client = _make_client(
        [_room("r1")],
        {
            "r1": [
                _message("r1", "urgent one", minutes_ago=40),
                _message("r1", "urgent two", minutes_ago=5),
                _message("r1", "outage", minutes_ago=60),
                _message("r1", "chatter"),
            ]
        },
    )
    urgent = await _make_service(client).get_urgent_only(limit=2, since_hours=2)

    assert len(urgent) == 2
    assert urgent[0].text == "outage"
    assert urgent[0].requires_immediate


async def test_mark_handled_is_idempotent_and_flags_messages():
    client = _make_client([_room("r1")], {"r1": [_message("r1", "urgent: x")]})
    service = _make_service(client)

    assert service.mark_handled("r1-urgent: x")
    assert not service.mark_handled("r1-urgent: x")

    urgent = await service.get_urgent_only(since_hours=2)
    assert urgent[0].handled


# ------------------------------------------------------------------
# Rooms
# ------------------------------------------------------------------


async def test_rooms_info_separates_inaccessible_rooms():
    client = _make_client(
        [_room("r1", hours_ago=5), _room("r2"), _room("dm", kind=RoomKind.DIRECT)],
        {
            "r1": [_message("r1", "urgent: help")],
            "r2": AccessDeniedError("forbidden", status_code=403),
            "dm": [],
        },
    )
    info = await _make_service(client).get_rooms_info()

    assert info.total_rooms == 3
    assert [r.id for r in info.accessible_rooms] == ["dm", "r1"]
    assert info.inaccessible_rooms[0].id == "r2"
    assert "forbidden" in info.inaccessible_rooms[0].error
    assert info.stats.direct_rooms == 1
    assert info.stats.rooms_with_urgent_content == 1


async def test_room_context_collects_distinct_participants():
    room = _room("r1")
    client = _make_client(
        [room],
        {"r1": [_message("r1", "a", person="p1"), _message("r1", "b", person="p1"), _message("r1", "c", person="p2")]},
    )
    client.get_room = AsyncMock(return_value=room)

    async def get_person(person_id):
        if person_id == "p2":
            raise NotFoundError("gone", status_code=404)
        return Person(id=person_id, display_name="Pat")

    client.get_person = AsyncMock(side_effect=get_person)

    context = await _make_service(client).get_room_context("r1", count=5)

    assert len(context.messages) == 3
    assert [p.id for p in context.participants] == ["p1"]
    assert client.get_person.await_count == 2


# ------------------------------------------------------------------
# Credentials and modes
# ------------------------------------------------------------------


async def test_complete_auth_flow_without_configuration():
    result = await _make_service(_make_client([], {})).complete_auth_flow("code")
    assert not result.success
    assert "not configured" in result.error


async def test_configure_delegated_auth_returns_consent_url():
    service = _make_service(_make_client([], {}))
    setup = service.configure_delegated_auth("cid", "secret", redirect_uri="https://app/cb")

    assert "client_id=cid" in setup.authorization_url
    assert setup.redirect_uri == "https://app/cb"
    assert service.coordinator.delegated_auth is not None
    await service.close()


async def test_reconfiguring_delegated_auth_reuses_holder():
    service = _make_service(_make_client([], {}))
    service.configure_delegated_auth("cid", "secret")
    holder = service.coordinator.delegated_auth

    setup = service.configure_delegated_auth("cid2", "secret2")

    assert service.coordinator.delegated_auth is holder
    assert "client_id=cid2" in setup.authorization_url
    await service.close()


async def test_push_setup_requires_service_credential():
    client = _make_client([], {})
    client.has_token = False
    with pytest.raises(ConfigError):
        await _make_service(client).configure_push_notifications("https://hook", "s")


async def test_push_setup_arms_queue():
    client = _make_client([], {})
    client.create_webhook = AsyncMock(return_value=PushSubscription(id="w1", target_url="https://hook"))
    service = _make_service(client)

    subscription = await service.configure_push_notifications("https://hook", "s")

    assert subscription.id == "w1"
    assert service.push_queue.armed


async def test_receive_push_rejects_bad_signature():
    service = _make_service(_make_client([], {}), push=PushConfig(webhook_secret="s"))
    with pytest.raises(AuthError):
        await service.receive_push(b"{}", "deadbeef")


async def test_receive_push_buffers_valid_delivery():
    client = _make_client([], {})
    client.get_message = AsyncMock(return_value=_message("r1", "outage now", minutes_ago=1))
    service = _make_service(client, push=PushConfig(webhook_secret="s"))
    body = json.dumps(
        {"resource": "messages", "event": "created", "data": {"id": "m1", "roomId": "r1"}}
    ).encode()
    signature = hmac.new(b"s", body, hashlib.sha1).hexdigest()

    message = await service.receive_push(body, signature)

    assert message.is_urgent
    assert len(service.push_queue) == 1


async def test_detect_best_mode_tolerates_rooms_without_last_activity():
    base_url = "https://chat.example.com/v1"
    rooms = [
        {"id": "r1", "title": "A", "type": "group", "lastActivity": NOW.isoformat()},
        {"id": "r2", "title": "B", "type": "group"},
    ]

    async def request(method, path, params=None, **kwargs):
        req = httpx.Request(method, f"{base_url}{path}")
        payloads = {
            "/people/me": {"id": "me", "displayName": "Bot"},
            "/rooms": {"items": rooms},
            "/memberships": {"items": [{"id": "x", "roomId": "r1", "personId": "me"}]},
            "/messages": {"items": []},
            "/webhooks": {"items": []},
        }
        return httpx.Response(200, json=payloads[path], request=req)

    client = ChatApiClient(base_url, "tok")
    service = TriageService(AppConfig(api_base_url=base_url, bot_token="tok"), client=client)
    async with service:
        with patch.object(client._client, "request", new=AsyncMock(side_effect=request)):
            detection = await service.detect_best_mode()

    direct = detection.analysis[AccessMode.DIRECT]
    assert direct.available
    assert direct.can_read_messages
    assert detection.recommended_mode == AccessMode.DIRECT


async def test_messages_via_explicit_direct_mode():
    client = _make_client([_room("r1")], {"r1": [_message("r1", "urgent: x"), _message("r1", "fine")]})
    result = await _make_service(client).get_messages_via_best_mode(since_hours=2, mode=AccessMode.DIRECT)

    assert result.mode == AccessMode.DIRECT
    assert result.total_messages == 2
    assert result.total_urgent == 1
    assert result.rooms_accessed == 1


# ------------------------------------------------------------------
# Room filter
# ------------------------------------------------------------------


async def test_filter_stats_before_and_after_refresh():
    client = _make_client([_room("r1"), _room("r2")], {"r1": [_message("r1", "hi")], "r2": []})
    service = _make_service(client)

    before = service.get_filter_stats()
    assert before.statistics is None
    assert before.monitored_rooms == []

    stats = await service.refresh_filter_cache()
    assert stats.total_rooms == 2
    assert stats.monitored_count == 1
    assert stats.cache_expires_in_minutes == 30

    after = service.get_filter_stats()
    assert [r.title for r in after.monitored_rooms] == ["Room r1"]
    assert after.excluded_rooms[0].title == "Room r2"


async def test_close_closes_transports():
    client = _make_client([], {})
    async with _make_service(client):
        pass
    client.close.assert_awaited_once()
