"""Schemas for the room filter pipeline.

FilterConfig is loaded once and never changes for the lifetime of a
RoomFilterService. RoomMetadata records are frozen: the pipeline produces
scored copies instead of updating them.
"""

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field, model_validator

from roomwatch.schemas.messages import RoomKind

# Disposition reasons, one per tier outcome.
REASON_PRIORITY = "priority room"
REASON_DIRECT_SKIPPED = "direct message skipped"
REASON_EXCLUDE_PATTERN = "matches exclude pattern"
REASON_NO_INCLUDE_MATCH = "no include pattern match"
REASON_LOW_ACTIVITY = "low activity"
REASON_PASSED = "passed filters"
REASON_LIMIT_EXCEEDED = "limit exceeded"
REASON_ACCESS_ERROR = "access error"


class FilterConfig(BaseModel):
    """Room selection settings."""

    model_config = ConfigDict(frozen=True)

    priority_rooms: tuple[str, ...] = ()
    include_patterns: tuple[str, ...] = ()
    exclude_patterns: tuple[str, ...] = ()
    max_monitored_rooms: int = Field(default=25, ge=0)
    min_activity_messages: int = Field(default=5, ge=0)
    min_activity_days: int = Field(default=7, ge=0)
    skip_direct_messages: bool = True
    cache_ttl_minutes: float = Field(default=30.0, ge=0.0)

    @model_validator(mode="after")
    def _priority_fits_limit(self) -> "FilterConfig":
        # Each priority entry claims at most one room, so this keeps
        # the monitored set within max_monitored_rooms.
        if len(self.priority_rooms) > self.max_monitored_rooms:
            raise ValueError(
                f"{len(self.priority_rooms)} priority room(s) configured but "
                f"max_monitored_rooms is {self.max_monitored_rooms}"
            )
        return self


class RoomMetadata(BaseModel):
    """Per-room snapshot used for filtering and scoring."""

    model_config = ConfigDict(frozen=True)

    room_id: str
    title: str = ""
    kind: RoomKind = RoomKind.GROUP
    last_activity: datetime
    member_count: int | None = None  # None = unknown, 0 = empty room
    recent_message_count: int = 0
    archived: bool = False
    has_urgent_keywords: bool = False
    urgent_message_count: int = 0
    score: float = 0.0
    filter_reason: str = ""
    error: str | None = None  # set on degraded records


class FilterStats(BaseModel):
    """Aggregate counts derived from a filter run."""

    total_rooms: int = 0
    monitored_count: int = 0
    priority_count: int = 0
    pattern_matched_count: int = 0
    dropped_due_to_limit: int = 0


class FilterResult(BaseModel):
    """Partition of the input rooms into monitored and excluded."""

    monitored_rooms: list[RoomMetadata] = Field(default_factory=list)
    excluded_rooms: list[RoomMetadata] = Field(default_factory=list)
    stats: FilterStats = Field(default_factory=FilterStats)
    last_refresh: datetime

    @property
    def monitored_ids(self) -> list[str]:
        return [m.room_id for m in self.monitored_rooms]


class FilterStatsSnapshot(FilterStats):
    """Cached stats plus cache freshness, for reporting."""

    last_refresh: datetime
    cache_expires_in_minutes: int = 0


class MonitoredRoomSummary(BaseModel):
    """Compact view of one room's filter disposition."""

    title: str
    score: float
    reason: str
    has_urgent_content: bool = False
    recent_messages: int = 0


class FilterStatsReport(BaseModel):
    """Everything get_filter_stats() reports."""

    configuration: FilterConfig
    statistics: FilterStatsSnapshot | None = None
    monitored_rooms: list[MonitoredRoomSummary] = Field(default_factory=list)
    excluded_rooms: list[MonitoredRoomSummary] = Field(default_factory=list)
