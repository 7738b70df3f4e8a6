"""In-memory queue of messages delivered by push (webhook) events.

The chat service posts a small event for each new message; the queue fetches
the full message, classifies it and keeps it until it falls out of the
retention window. Nothing is persisted.
"""

import hashlib
import hmac
import logging
from collections.abc import Callable
from datetime import UTC, datetime, timedelta

from roomwatch.errors import ChatServiceError
from roomwatch.integrations.chat_api import ChatApiClient
from roomwatch.schemas.access import BufferedMessage, PushEvent
from roomwatch.schemas.messages import ChatMessage, UrgencyConfig
from roomwatch.triage.urgency import apply_urgency

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _aware(moment: datetime) -> datetime:
    return moment if moment.tzinfo is not None else moment.replace(tzinfo=UTC)


class PushMessageQueue:
    """Buffer of pushed messages bounded by a retention window.

    Usage::

        queue = PushMessageQueue(client, config.urgency, secret="s3cret")
        if queue.verify_signature(raw_body, request.headers["X-Spark-Signature"]):
            await queue.handle_event(PushEvent.model_validate_json(raw_body))
        urgent = queue.urgent()
    """

    def __init__(
        self,
        client: ChatApiClient,
        urgency: UrgencyConfig,
        *,
        secret: str | None = None,
        retention_minutes: int = 60,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._client = client
        self._urgency = urgency
        self._secret = secret
        self._retention = timedelta(minutes=retention_minutes)
        self._clock = clock
        self._buffer: list[BufferedMessage] = []

    @property
    def armed(self) -> bool:
        """True once a delivery secret is set and events can be accepted."""
        return bool(self._secret)

    def set_secret(self, secret: str) -> None:
        self._secret = secret

    def __len__(self) -> int:
        return len(self._buffer)

    def verify_signature(self, body: bytes, signature: str | None) -> bool:
        """Check the HMAC-SHA1 signature the service sends with each event."""
        if not self._secret or not signature:
            return False
        expected = hmac.new(self._secret.encode(), body, hashlib.sha1).hexdigest()
        return hmac.compare_digest(expected, signature.strip().lower())

    async def handle_event(self, event: PushEvent) -> ChatMessage | None:
        """Fetch, classify and buffer the message an event refers to.

        Events other than new messages are ignored. Returns the buffered
        message, or None when nothing was added.
        """
        if event.resource != "messages" or event.event != "created":
            logger.debug("Ignoring push event %s/%s", event.resource, event.event)
            return None
        if any(item.message.id == event.data.id for item in self._buffer):
            return None

        try:
            message = await self._client.get_message(event.data.id)
        except ChatServiceError as exc:
            logger.warning("Could not fetch pushed message %s: %s", event.data.id, exc)
            return None

        message = apply_urgency(message, self._urgency)
        self._buffer.append(BufferedMessage(message=message, received_at=self._clock()))
        if message.is_urgent:
            logger.info("Urgent message pushed in room %s: %s", message.room_id, message.text[:100])
        self.prune()
        return message

    def prune(self, now: datetime | None = None) -> int:
        """Drop messages older than the retention window. Returns the count dropped."""
        cutoff = (now or self._clock()) - self._retention
        before = len(self._buffer)
        self._buffer = [item for item in self._buffer if _aware(item.message.created) > cutoff]
        dropped = before - len(self._buffer)
        if dropped:
            logger.debug("Pruned %d pushed message(s)", dropped)
        return dropped

    def recent(self, since: datetime | None = None) -> list[ChatMessage]:
        """Buffered messages created after ``since``, oldest first."""
        self.prune()
        messages = [item.message for item in self._buffer]
        if since is not None:
            since = _aware(since)
            messages = [m for m in messages if _aware(m.created) > since]
        return messages

    def urgent(self, since: datetime | None = None) -> list[ChatMessage]:
        return [m for m in self.recent(since) if m.is_urgent]
