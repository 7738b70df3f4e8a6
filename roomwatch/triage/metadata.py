"""Room metadata collector.

Builds one RoomMetadata per room from a bounded sample of recent messages
and the room's membership count. A failing or slow room never aborts the
batch: it is recorded as a degraded "access error" snapshot instead.
"""

import asyncio
import logging
from collections.abc import Sequence
from datetime import UTC, datetime, timedelta

import httpx

from roomwatch.errors import ChatServiceError, describe_error
from roomwatch.integrations.chat_api import ChatApiClient
from roomwatch.schemas.filtering import REASON_ACCESS_ERROR, RoomMetadata
from roomwatch.schemas.messages import Room, UrgencyConfig
from roomwatch.triage.urgency import matcher_for

logger = logging.getLogger(__name__)

# Messages sampled per room for activity and keyword analysis.
SAMPLE_SIZE = 20


def degraded_metadata(room: Room, error: str | None = None) -> RoomMetadata:
    """Snapshot for a room that could not be read."""
    return RoomMetadata(
        room_id=room.id,
        title=room.display_title,
        kind=room.type,
        last_activity=room.last_activity,
        member_count=None,
        recent_message_count=0,
        archived=True,
        has_urgent_keywords=False,
        urgent_message_count=0,
        filter_reason=REASON_ACCESS_ERROR,
        error=error,
    )


class RoomMetadataCollector:
    """Collects RoomMetadata for a batch of rooms with bounded concurrency.

    Usage::

        collector = RoomMetadataCollector(client, config.urgency, lookback_days=7)
        metadata = await collector.collect(rooms)
    """

    def __init__(
        self,
        client: ChatApiClient,
        urgency: UrgencyConfig,
        *,
        lookback_days: int = 7,
        sample_size: int = SAMPLE_SIZE,
        room_timeout: float = 15.0,
        max_concurrency: int = 5,
    ) -> None:
        self._client = client
        self._matcher = matcher_for(urgency.keywords)
        self._lookback = timedelta(days=lookback_days)
        self._sample_size = sample_size
        self._room_timeout = room_timeout
        self._max_concurrency = max_concurrency

    async def collect(
        self, rooms: Sequence[Room], *, now: datetime | None = None
    ) -> dict[str, RoomMetadata]:
        """Collect metadata for every room.

        The returned dict preserves the enumeration order of ``rooms``; the
        filter pipeline relies on it for tie-breaking.
        """
        now = now or datetime.now(UTC)
        semaphore = asyncio.Semaphore(self._max_concurrency)

        async def _bounded(room: Room) -> RoomMetadata:
            async with semaphore:
                return await self.collect_one(room, now=now)

        snapshots = await asyncio.gather(*(_bounded(room) for room in rooms))
        degraded = sum(1 for s in snapshots if s.filter_reason == REASON_ACCESS_ERROR)
        if degraded:
            logger.warning("Metadata degraded for %d/%d room(s)", degraded, len(rooms))
        return {snapshot.room_id: snapshot for snapshot in snapshots}

    async def collect_one(self, room: Room, *, now: datetime) -> RoomMetadata:
        """Collect one room, downgrading any failure to a degraded record."""
        try:
            return await asyncio.wait_for(self._collect(room, now), timeout=self._room_timeout)
        except (ChatServiceError, httpx.HTTPError, TimeoutError) as exc:
            error = describe_error(exc)
            logger.warning("Could not collect metadata for room %s: %s", room.display_title, error)
            return degraded_metadata(room, error)

    async def _collect(self, room: Room, now: datetime) -> RoomMetadata:
        messages = await self._client.list_messages(room.id, max_messages=self._sample_size)
        since = now - self._lookback
        recent = [m for m in messages if m.created > since]
        urgent_count = sum(1 for m in recent if self._matcher.has_match(m.text))

        member_count: int | None
        try:
            member_count = await self._client.count_members(room.id)
        except ChatServiceError as exc:
            logger.debug("Member count unknown for %s: %s", room.display_title, exc)
            member_count = None

        return RoomMetadata(
            room_id=room.id,
            title=room.display_title,
            kind=room.type,
            last_activity=room.last_activity,
            member_count=member_count,
            recent_message_count=len(recent),
            archived=room.archived,
            has_urgent_keywords=urgent_count > 0,
            urgent_message_count=urgent_count,
        )
