"""Result schemas for the upward-facing service operations."""

from datetime import datetime

from pydantic import BaseModel, Field

from roomwatch.schemas.messages import ChatMessage, Person, Room, RoomKind


class UrgentMessage(BaseModel):
    """An urgent message as presented in summaries."""

    id: str
    room_id: str
    room_title: str
    sender: str
    text: str
    created: datetime
    urgency_reasons: list[str] = Field(default_factory=list)
    requires_immediate: bool = False
    urgency_score: float = 0.0
    handled: bool = False


class RoomSummary(BaseModel):
    """Routine (non-urgent) activity in one room."""

    id: str
    title: str
    type: RoomKind
    unread_count: int
    last_activity: datetime
    latest_messages: list[ChatMessage] = Field(default_factory=list)
    summary: str = ""


class SummaryStats(BaseModel):
    total_urgent: int = 0
    total_rooms_summary: int = 0
    total_messages: int = 0
    accessible_rooms: int = 0
    inaccessible_rooms: int = 0


class PrioritizedSummary(BaseModel):
    """Result of get_prioritized_summary()."""

    urgent_messages: list[UrgentMessage] = Field(default_factory=list)
    room_summaries: list[RoomSummary] = Field(default_factory=list)
    stats: SummaryStats = Field(default_factory=SummaryStats)


class SentMessage(BaseModel):
    id: str
    room_id: str
    parent_id: str | None = None


class RoomContext(BaseModel):
    """Result of get_room_context()."""

    room: Room
    messages: list[ChatMessage] = Field(default_factory=list)
    participants: list[Person] = Field(default_factory=list)


class AccessibleRoom(BaseModel):
    id: str
    title: str
    type: RoomKind
    archived: bool = False
    last_activity: datetime
    created: datetime | None = None
    member_count: int | None = None
    recent_message_count: int = 0
    has_urgent_keywords: bool = False


class InaccessibleRoom(BaseModel):
    id: str
    title: str
    type: RoomKind
    error: str


class RoomsInfoStats(BaseModel):
    accessible_count: int = 0
    inaccessible_count: int = 0
    group_rooms: int = 0
    direct_rooms: int = 0
    rooms_with_recent_activity: int = 0
    rooms_with_urgent_content: int = 0


class RoomsInfo(BaseModel):
    """Result of get_rooms_info()."""

    total_rooms: int = 0
    accessible_rooms: list[AccessibleRoom] = Field(default_factory=list)
    inaccessible_rooms: list[InaccessibleRoom] = Field(default_factory=list)
    stats: RoomsInfoStats = Field(default_factory=RoomsInfoStats)
