"""Tests for roomwatch.digest.rooms."""

from datetime import UTC, datetime

from roomwatch.digest.rooms import build_room_summary, extract_topics
from roomwatch.schemas.messages import ChatMessage, Room

NOW = datetime(2024, 6, 5, 12, 0, tzinfo=UTC)


def _message(text: str, sender: str = "pat@example.com", idx: int = 0) -> ChatMessage:
    return ChatMessage(id=f"m{idx}", room_id="r1", text=text, person_email=sender, created=NOW)


def test_topics_in_reporting_order_and_capped():
    messages = [
        _message("Can we move the meeting?"),
        _message("bug in the release notes"),
        _message("please review"),
    ]
    assert extract_topics(messages) == ["questions", "meeting", "review"]


def test_urgent_topic_needs_whole_word():
    assert extract_topics([_message("asapish")]) == []
    assert extract_topics([_message("need this ASAP")]) == ["urgent"]


def test_summary_names_three_senders():
    room = Room(id="r1", title="Ops", last_activity=NOW)
    routine = [_message(f"note {i}", sender=f"user{i}@example.com", idx=i) for i in range(5)]

    summary = build_room_summary(room, routine)

    assert summary.unread_count == 5
    assert summary.summary.startswith("5 non-urgent messages from user0@example.com, user1@example.com")
    assert "and 2 others" in summary.summary
    assert [m.id for m in summary.latest_messages] == ["m0", "m1", "m2"]


def test_single_message_summary():
    room = Room(id="r1", title="Ops", last_activity=NOW)
    summary = build_room_summary(room, [_message("deploy done")])
    assert summary.summary == "1 non-urgent message from pat@example.com. Topics: deployment"


def test_empty_batch_has_no_summary():
    assert build_room_summary(Room(id="r1", last_activity=NOW), []) is None
