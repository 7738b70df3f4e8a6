"""Schemas for rooms, messages and urgency classification.

Upstream payloads use camelCase keys; models parse them through field
aliases and can also be built by field name.
"""

from datetime import UTC, datetime
from enum import StrEnum

from pydantic import BaseModel, ConfigDict, Field, model_validator

# --- Config ---


class UrgencyConfig(BaseModel):
    """Inputs of the urgency classifier. Immutable once loaded."""

    model_config = ConfigDict(frozen=True)

    keywords: tuple[str, ...] = (
        "urgent",
        "asap",
        "critical",
        "production",
        "down",
        "incident",
        "emergency",
        "help",
        "broken",
        "failed",
        "error",
        "outage",
        "sev1",
        "p1",
    )
    priority_senders: tuple[str, ...] = ()
    priority_domains: tuple[str, ...] = ()
    monitor_person_id: str | None = None
    business_hours_start: int = Field(default=9, ge=0, le=23)
    business_hours_end: int = Field(default=17, ge=1, le=24)
    business_timezone: str = "UTC"


# --- Chat data ---


class RoomKind(StrEnum):
    """Room type as reported by the chat service."""

    GROUP = "group"
    DIRECT = "direct"


class Room(BaseModel):
    """A conversation space. Read-only, sourced from the room listing."""

    model_config = ConfigDict(populate_by_name=True)

    id: str
    title: str = ""
    type: RoomKind = RoomKind.GROUP
    last_activity: datetime = Field(alias="lastActivity")
    archived: bool = Field(default=False, alias="isLocked")
    created: datetime | None = None

    @model_validator(mode="before")
    @classmethod
    def _default_last_activity(cls, data):
        # Some listings omit lastActivity; fall back to creation, then fetch time.
        if isinstance(data, dict) and data.get("lastActivity") is None and data.get("last_activity") is None:
            data = {**data, "lastActivity": data.get("created") or datetime.now(UTC)}
        return data

    @property
    def display_title(self) -> str:
        if self.title:
            return self.title
        return "Direct Message" if self.type == RoomKind.DIRECT else "Unnamed Room"


class ChatMessage(BaseModel):
    """A single chat message plus its derived urgency fields."""

    model_config = ConfigDict(populate_by_name=True)

    id: str
    room_id: str = Field(alias="roomId")
    room_type: RoomKind | None = Field(default=None, alias="roomType")
    room_title: str | None = None
    text: str = ""
    person_id: str = Field(default="", alias="personId")
    person_email: str = Field(default="", alias="personEmail")
    person_display_name: str = Field(default="", alias="personDisplayName")
    created: datetime
    parent_id: str | None = Field(default=None, alias="parentId")
    mentioned_people: list[str] = Field(default_factory=list, alias="mentionedPeople")

    # Derived by the classifier; never sent upstream.
    is_urgent: bool = False
    urgency_reasons: list[str] = Field(default_factory=list)
    requires_immediate: bool = False
    urgency_score: float = Field(default=0.0, ge=0.0, le=1.0)
    handled: bool = False

    @property
    def sender(self) -> str:
        return self.person_display_name or self.person_email


class Person(BaseModel):
    """A chat service user."""

    model_config = ConfigDict(populate_by_name=True)

    id: str
    display_name: str = Field(default="", alias="displayName")
    emails: list[str] = Field(default_factory=list)
    type: str = "person"
    status: str | None = None
    org_id: str | None = Field(default=None, alias="orgId")

    @property
    def primary_email(self) -> str | None:
        return self.emails[0] if self.emails else None


class Membership(BaseModel):
    """Membership of a person in a room."""

    model_config = ConfigDict(populate_by_name=True)

    id: str
    room_id: str = Field(alias="roomId")
    person_id: str = Field(alias="personId")
    person_email: str = Field(default="", alias="personEmail")
    person_display_name: str = Field(default="", alias="personDisplayName")


# --- Classification ---


class UrgencyResult(BaseModel):
    """Output of the urgency classifier for one message."""

    is_urgent: bool
    reasons: list[str] = Field(default_factory=list)
    requires_immediate: bool = False
    matched_keywords: list[str] = Field(default_factory=list)
    categories: list[str] = Field(default_factory=list)
    score: float = Field(default=0.0, ge=0.0, le=1.0)
