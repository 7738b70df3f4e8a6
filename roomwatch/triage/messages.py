"""Per-room recent-message fetch with classification.

Used by the summary operations and the direct retrieval strategy. Each room
is read independently; a room that fails is reported as inaccessible and the
rest of the batch carries on.
"""

import asyncio
import logging
from collections.abc import Sequence
from datetime import UTC, datetime

import httpx
from pydantic import BaseModel, Field

from roomwatch.errors import ChatServiceError, PartialAccessError, describe_error
from roomwatch.integrations.chat_api import ChatApiClient
from roomwatch.schemas.messages import ChatMessage, Room, UrgencyConfig
from roomwatch.schemas.summaries import InaccessibleRoom
from roomwatch.triage.urgency import apply_urgency

logger = logging.getLogger(__name__)


class RoomFetchReport(BaseModel):
    """Messages read per room, plus the rooms that could not be read."""

    messages_by_room: dict[str, list[ChatMessage]] = Field(default_factory=dict)
    accessible: list[Room] = Field(default_factory=list)
    inaccessible: list[InaccessibleRoom] = Field(default_factory=list)

    @property
    def messages(self) -> list[ChatMessage]:
        return [m for room in self.accessible for m in self.messages_by_room.get(room.id, [])]

    @property
    def partial_access(self) -> PartialAccessError | None:
        """Non-raised error describing a partially readable batch."""
        if not self.inaccessible or not self.accessible:
            return None
        return PartialAccessError(
            {room.id: room.error for room in self.inaccessible},
            accessible_count=len(self.accessible),
        )


def _aware(moment: datetime) -> datetime:
    return moment if moment.tzinfo is not None else moment.replace(tzinfo=UTC)


async def fetch_recent_messages(
    client: ChatApiClient,
    rooms: Sequence[Room],
    *,
    since: datetime,
    urgency: UrgencyConfig,
    max_per_room: int = 50,
    handled: set[str] | frozenset[str] = frozenset(),
    max_concurrency: int = 5,
    room_timeout: float = 15.0,
) -> RoomFetchReport:
    """Read and classify messages newer than ``since`` from each room.

    Room order is preserved in the report.
    """
    since = _aware(since)
    semaphore = asyncio.Semaphore(max_concurrency)

    async def _one(room: Room) -> list[ChatMessage] | str:
        async with semaphore:
            try:
                fetched = await asyncio.wait_for(
                    client.list_messages(room.id, max_messages=max_per_room, room=room),
                    timeout=room_timeout,
                )
            except (ChatServiceError, httpx.HTTPError, TimeoutError) as exc:
                logger.warning("Cannot read room %s: %s", room.display_title, describe_error(exc))
                return describe_error(exc)
        recent = [m for m in fetched if _aware(m.created) > since]
        return [apply_urgency(m, urgency, handled=handled) for m in recent]

    outcomes = await asyncio.gather(*(_one(room) for room in rooms))

    report = RoomFetchReport()
    for room, outcome in zip(rooms, outcomes):
        if isinstance(outcome, str):
            report.inaccessible.append(
                InaccessibleRoom(id=room.id, title=room.display_title, type=room.type, error=outcome)
            )
            continue
        report.accessible.append(room)
        report.messages_by_room[room.id] = outcome

    partial = report.partial_access
    if partial is not None:
        logger.warning("%s", partial)
    return report
