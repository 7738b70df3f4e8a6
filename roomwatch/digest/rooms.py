"""Per-room digest of routine (non-urgent) activity.

Builds the short text summaries shown next to the urgent list: who has been
talking, a few coarse topics, and the latest messages.
"""

from collections.abc import Sequence

from roomwatch.schemas.messages import ChatMessage, Room
from roomwatch.schemas.summaries import RoomSummary
from roomwatch.triage.urgency import matcher_for

MAX_TOPICS = 3
MAX_NAMED_SENDERS = 3
LATEST_MESSAGES = 3

# Topic label -> words that suggest it. Order is reporting order.
_TOPIC_WORDS: dict[str, tuple[str, ...]] = {
    "urgent": ("urgent", "asap", "critical", "important", "emergency"),
    "meeting": ("meeting", "call"),
    "review": ("review", "feedback"),
    "issues": ("issue", "problem", "bug"),
    "deployment": ("deploy", "release"),
}


def extract_topics(messages: Sequence[ChatMessage]) -> list[str]:
    """Coarse topic labels for a batch of messages, at most three."""
    text = " ".join(m.text for m in messages if m.text)
    topics: list[str] = []
    if "?" in text:
        topics.append("questions")
    lowered = text.lower()
    for label, words in _TOPIC_WORDS.items():
        if label == "urgent":
            if matcher_for(words).has_match(text):
                topics.append(label)
        elif any(word in lowered for word in words):
            topics.append(label)
    return topics[:MAX_TOPICS]


def _senders(messages: Sequence[ChatMessage]) -> list[str]:
    seen: list[str] = []
    for message in messages:
        name = message.sender
        if name and name not in seen:
            seen.append(name)
    return seen


def build_room_summary(room: Room, routine: Sequence[ChatMessage]) -> RoomSummary | None:
    """Summarize a room's routine messages. Returns None for an empty batch.

    ``routine`` is expected newest first, as the transport returns it.
    """
    if not routine:
        return None

    senders = _senders(routine)
    count = len(routine)
    text = f"{count} non-urgent message{'s' if count != 1 else ''}"
    if senders:
        text += f" from {', '.join(senders[:MAX_NAMED_SENDERS])}"
        if len(senders) > MAX_NAMED_SENDERS:
            text += f" and {len(senders) - MAX_NAMED_SENDERS} others"
    topics = extract_topics(routine)
    if topics:
        text += f". Topics: {', '.join(topics)}"

    return RoomSummary(
        id=room.id,
        title=room.display_title,
        type=room.type,
        unread_count=count,
        last_activity=room.last_activity,
        latest_messages=list(routine[:LATEST_MESSAGES]),
        summary=text,
    )
