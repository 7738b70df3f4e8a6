"""Urgency classifier: the single place keyword matching lives.

Two outputs per message:

* a hard decision (``is_urgent``) evaluated as ordered rules: keyword,
  priority sender, off-hours mention. This alone decides urgent vs routine.
* a soft score in [0, 1] used only for ranking and display.

Classification depends only on the message, the config and the message
timestamp. No I/O, no clock reads, no randomness.
"""

import re
from collections.abc import Iterable
from datetime import UTC, datetime
from functools import lru_cache
from zoneinfo import ZoneInfo

from roomwatch.schemas.messages import ChatMessage, UrgencyConfig, UrgencyResult

# Matched keywords in this set mark a message as needing immediate attention.
EMERGENCY_KEYWORDS = frozenset(
    {
        "production down",
        "production",
        "down",
        "outage",
        "sev1",
        "p1",
        "critical",
        "critical incident",
        "emergency",
    }
)

# Phrases that earn the soft-score emergency bonus regardless of config.
_EMERGENCY_PHRASES = ("production down", "outage", "sev1", "p1", "critical incident", "emergency")

_STATUS_WORDS = ("when", "status", "update")
SHORT_MESSAGE_CHARS = 30

_RESPONSE_TEMPLATES = {
    "emergency": "I'm addressing this emergency situation immediately. Will provide updates shortly.",
    "priority-sender": "Thanks for reaching out. I'm reviewing this high-priority request now.",
    "status-request": "Let me get you that status update. I'll respond within 10 minutes.",
    "direct-mention": "Thanks for the mention. I'm looking into this now.",
}
_DEFAULT_RESPONSE = (
    "I've received your message and will respond shortly. "
    "Currently focused on a high-priority task."
)


class UrgencyMatcher:
    """Case-insensitive whole-word keyword matcher.

    Keywords are escaped before compilation, so user-supplied values can
    never form an arbitrary regex.
    """

    def __init__(self, keywords: Iterable[str]) -> None:
        seen: set[str] = set()
        self._patterns: list[tuple[str, re.Pattern]] = []
        for keyword in keywords:
            normalized = keyword.strip().lower()
            if not normalized or normalized in seen:
                continue
            seen.add(normalized)
            pattern = re.compile(rf"\b{re.escape(normalized)}\b", re.IGNORECASE)
            self._patterns.append((normalized, pattern))

    @property
    def keywords(self) -> list[str]:
        return [keyword for keyword, _ in self._patterns]

    def matches(self, text: str | None) -> list[str]:
        """Return every keyword found in ``text``, in configured order."""
        if not text:
            return []
        return [keyword for keyword, pattern in self._patterns if pattern.search(text)]

    def has_match(self, text: str | None) -> bool:
        if not text:
            return False
        return any(pattern.search(text) for _, pattern in self._patterns)


@lru_cache(maxsize=32)
def matcher_for(keywords: tuple[str, ...]) -> UrgencyMatcher:
    """Shared compiled matcher per keyword tuple."""
    return UrgencyMatcher(keywords)


_emergency_matcher = UrgencyMatcher(_EMERGENCY_PHRASES)


def _local_time(created: datetime, timezone: str) -> datetime:
    if created.tzinfo is None:
        created = created.replace(tzinfo=UTC)
    return created.astimezone(ZoneInfo(timezone))


def _is_off_hours(local: datetime, config: UrgencyConfig) -> bool:
    return local.hour < config.business_hours_start or local.hour > config.business_hours_end


def _is_weekend(local: datetime) -> bool:
    return local.weekday() >= 5


def _mentions_monitor(message: ChatMessage, config: UrgencyConfig) -> bool:
    if not message.mentioned_people:
        return False
    # Without a configured identity, any mention counts.
    if config.monitor_person_id is None:
        return True
    return config.monitor_person_id in message.mentioned_people


def _sender_domain(address: str) -> str:
    return address.rsplit("@", 1)[1].lower() if "@" in address else ""


def urgency_score(message: ChatMessage, config: UrgencyConfig) -> tuple[float, list[str]]:
    """Soft urgency score and the categories that contributed to it.

    For ranking and display only; never used to include or exclude.
    """
    text = message.text or ""
    score = 0.0
    categories: list[str] = []

    if _emergency_matcher.has_match(text):
        score += 0.4
        categories.append("emergency")

    keyword_matches = len(matcher_for(config.keywords).matches(text))
    if keyword_matches:
        score += min(keyword_matches * 0.15, 0.3)
        categories.append("keyword-urgent")

    domains = {d.lower() for d in config.priority_domains}
    if _sender_domain(message.person_email) in domains:
        score += 0.2
        categories.append("priority-sender")

    if message.mentioned_people:
        score += 0.15
        categories.append("direct-mention")

    local = _local_time(message.created, config.business_timezone)
    if _is_off_hours(local, config) and score > 0.2:
        score += 0.1
        categories.append("off-hours")
    if _is_weekend(local) and score > 0.2:
        score += 0.1
        categories.append("weekend")

    lowered = text.lower()
    if "?" in lowered and any(word in lowered for word in _STATUS_WORDS):
        score += 0.1
        categories.append("status-request")

    if len(text) < SHORT_MESSAGE_CHARS and score > 0.2:
        score += 0.05
        categories.append("short-urgent")

    return min(score, 1.0), categories


def classify(message: ChatMessage, config: UrgencyConfig) -> UrgencyResult:
    """Classify one message with the hard urgency filter.

    Rules, first match wins:
    1. Any configured keyword as a whole word -> urgent. Emergency-class
       keywords also set ``requires_immediate``.
    2. Sender address in the priority-sender list -> urgent.
    3. Mention of the monitoring user outside business hours -> urgent.
    """
    score, categories = urgency_score(message, config)

    matched = matcher_for(config.keywords).matches(message.text)
    if matched:
        return UrgencyResult(
            is_urgent=True,
            reasons=list(matched),
            requires_immediate=any(k in EMERGENCY_KEYWORDS for k in matched),
            matched_keywords=matched,
            categories=categories,
            score=score,
        )

    senders = {s.lower() for s in config.priority_senders}
    if message.person_email and message.person_email.lower() in senders:
        return UrgencyResult(
            is_urgent=True,
            reasons=[f"priority sender: {message.person_email}"],
            categories=categories,
            score=score,
        )

    if _mentions_monitor(message, config):
        local = _local_time(message.created, config.business_timezone)
        reasons: list[str] = []
        if _is_off_hours(local, config):
            reasons.append("mention outside business hours")
        if _is_weekend(local):
            reasons.append("mention during weekend")
        if reasons:
            return UrgencyResult(is_urgent=True, reasons=reasons, categories=categories, score=score)

    return UrgencyResult(is_urgent=False, categories=categories, score=score)


def apply_urgency(
    message: ChatMessage,
    config: UrgencyConfig,
    *,
    handled: set[str] | frozenset[str] = frozenset(),
) -> ChatMessage:
    """Return a classified copy of ``message``."""
    result = classify(message, config)
    return message.model_copy(
        update={
            "is_urgent": result.is_urgent,
            "urgency_reasons": result.reasons,
            "requires_immediate": result.requires_immediate,
            "urgency_score": result.score,
            "handled": message.id in handled,
        }
    )


def partition(messages: Iterable[ChatMessage]) -> tuple[list[ChatMessage], list[ChatMessage]]:
    """Split classified messages into (urgent, routine)."""
    urgent: list[ChatMessage] = []
    routine: list[ChatMessage] = []
    for message in messages:
        (urgent if message.is_urgent else routine).append(message)
    return urgent, routine


def suggest_response(result: UrgencyResult) -> str:
    """Pick a canned acknowledgement matching the strongest category."""
    for category in result.categories:
        if category in _RESPONSE_TEMPLATES:
            return _RESPONSE_TEMPLATES[category]
    if result.requires_immediate:
        return _RESPONSE_TEMPLATES["emergency"]
    return _DEFAULT_RESPONSE
