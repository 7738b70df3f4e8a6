"""Five-tier room filter pipeline and its TTL-cached service.

``apply_filters`` is pure: given the room listing, per-room metadata and a
FilterConfig it assigns every room exactly one disposition. Tiers run in
order and the first one that claims a room decides it:

1. priority rooms (always monitored)
2. direct-message skip
3. exclude / include wildcard patterns
4. activity threshold
5. score, stable sort, and the monitored-room limit

``RoomFilterService`` wraps it with a single cache slot.
"""

import asyncio
import logging
import re
from collections.abc import Awaitable, Callable, Mapping, Sequence
from datetime import UTC, datetime, timedelta

from roomwatch.schemas.filtering import (
    REASON_ACCESS_ERROR,
    REASON_DIRECT_SKIPPED,
    REASON_EXCLUDE_PATTERN,
    REASON_LIMIT_EXCEEDED,
    REASON_LOW_ACTIVITY,
    REASON_NO_INCLUDE_MATCH,
    REASON_PASSED,
    REASON_PRIORITY,
    FilterConfig,
    FilterResult,
    FilterStats,
    FilterStatsSnapshot,
    RoomMetadata,
)
from roomwatch.schemas.messages import Room, RoomKind
from roomwatch.triage.metadata import degraded_metadata

logger = logging.getLogger(__name__)

RoomLoader = Callable[[], Awaitable[tuple[list[Room], dict[str, RoomMetadata]]]]


def wildcard_to_regex(pattern: str) -> re.Pattern:
    """Compile a ``*`` wildcard into an anchored, case-insensitive regex.

    Every other character is literal, so a title pattern like ``Ops (EU)*``
    cannot produce a malformed or runaway expression.
    """
    escaped = re.escape(pattern.strip()).replace(r"\*", ".*")
    return re.compile(rf"^{escaped}$", re.IGNORECASE | re.DOTALL)


def matches_patterns(title: str, patterns: Sequence[str]) -> bool:
    return any(wildcard_to_regex(p).match(title) for p in patterns)


def _days_since(moment: datetime, now: datetime) -> float:
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=UTC)
    return (now - moment).total_seconds() / 86400


def passes_activity(metadata: RoomMetadata, config: FilterConfig, now: datetime) -> bool:
    recent_enough = _days_since(metadata.last_activity, now) < config.min_activity_days
    return recent_enough and metadata.recent_message_count >= config.min_activity_messages


def score_room(metadata: RoomMetadata, now: datetime) -> float:
    """Ranking score for a candidate room. Higher is more worth watching."""
    score = 1000.0 if metadata.has_urgent_keywords else 0.0
    score += metadata.recent_message_count * 10
    score += (metadata.member_count or 0) * 2
    score += max(0.0, 50 - _days_since(metadata.last_activity, now))
    return score


def _find_priority_room(identifier: str, rooms: Sequence[Room], claimed: set[str]) -> Room | None:
    wanted = identifier.strip().lower()
    for room in rooms:
        if room.id in claimed:
            continue
        if room.id == identifier or (room.title and room.title.lower() == wanted):
            return room
    return None


def apply_filters(
    rooms: Sequence[Room],
    metadata: Mapping[str, RoomMetadata],
    config: FilterConfig,
    *,
    now: datetime | None = None,
) -> FilterResult:
    """Partition ``rooms`` into monitored and excluded.

    Every input room lands in exactly one list. Rooms with no metadata are
    treated as unreadable and excluded with reason "access error" unless
    they are priority rooms.
    """
    now = now or datetime.now(UTC)
    stats = FilterStats(total_rooms=len(rooms))
    monitored: list[RoomMetadata] = []
    excluded: list[RoomMetadata] = []

    def snapshot(room: Room) -> RoomMetadata:
        return metadata.get(room.id) or degraded_metadata(room)

    # Tier 1: priority
    priority_ids: set[str] = set()
    for identifier in config.priority_rooms:
        room = _find_priority_room(identifier, rooms, priority_ids)
        if room is None:
            logger.debug("Priority room %r not found in listing", identifier)
            continue
        priority_ids.add(room.id)
        monitored.append(snapshot(room).model_copy(update={"filter_reason": REASON_PRIORITY}))
    stats.priority_count = len(monitored)

    candidates: list[RoomMetadata] = []
    for room in rooms:
        if room.id in priority_ids:
            continue
        meta = snapshot(room)
        title = room.title or ""

        if meta.filter_reason == REASON_ACCESS_ERROR:
            reason = REASON_ACCESS_ERROR
        # Tier 2: direct messages
        elif config.skip_direct_messages and room.type == RoomKind.DIRECT:
            reason = REASON_DIRECT_SKIPPED
        # Tier 3: patterns, exclude wins over include
        elif matches_patterns(title, config.exclude_patterns):
            reason = REASON_EXCLUDE_PATTERN
        elif config.include_patterns and not matches_patterns(title, config.include_patterns):
            reason = REASON_NO_INCLUDE_MATCH
        # Tier 4: activity
        elif not passes_activity(meta, config, now):
            reason = REASON_LOW_ACTIVITY
        else:
            candidates.append(meta.model_copy(update={"score": score_room(meta, now)}))
            continue
        excluded.append(meta.model_copy(update={"filter_reason": reason}))

    # Tier 5: sorted() is stable, so equal scores keep listing order.
    ranked = sorted(candidates, key=lambda m: m.score, reverse=True)
    slots = max(0, config.max_monitored_rooms - stats.priority_count)
    for index, meta in enumerate(ranked):
        if index < slots:
            monitored.append(meta.model_copy(update={"filter_reason": REASON_PASSED}))
            stats.pattern_matched_count += 1
        else:
            excluded.append(meta.model_copy(update={"filter_reason": REASON_LIMIT_EXCEEDED}))
            stats.dropped_due_to_limit += 1

    stats.monitored_count = len(monitored)
    logger.info(
        "Room filtering: %d/%d rooms monitored (%d priority, %d dropped by limit)",
        stats.monitored_count,
        stats.total_rooms,
        stats.priority_count,
        stats.dropped_due_to_limit,
    )
    return FilterResult(
        monitored_rooms=monitored,
        excluded_rooms=excluded,
        stats=stats,
        last_refresh=now,
    )


def _utcnow() -> datetime:
    return datetime.now(UTC)


class RoomFilterService:
    """Owns the filter config and one cached FilterResult.

    A result is reused until ``cache_ttl_minutes`` have passed since it was
    computed, or until ``invalidate()`` is called. ``get_result`` allows at
    most one recompute in flight; callers arriving meanwhile wait and get
    the same result.
    """

    def __init__(self, config: FilterConfig, *, clock: Callable[[], datetime] = _utcnow) -> None:
        self._config = config
        self._clock = clock
        self._cached: FilterResult | None = None
        self._expires_at: datetime | None = None
        self._lock = asyncio.Lock()

    @property
    def config(self) -> FilterConfig:
        return self._config

    def _fresh(self) -> FilterResult | None:
        if self._cached is None or self._expires_at is None:
            return None
        if self._clock() >= self._expires_at:
            return None
        return self._cached

    def _commit(self, result: FilterResult) -> FilterResult:
        self._cached = result
        self._expires_at = result.last_refresh + timedelta(minutes=self._config.cache_ttl_minutes)
        return result

    def filter_rooms(
        self, rooms: Sequence[Room], metadata: Mapping[str, RoomMetadata]
    ) -> FilterResult:
        """Filter already-collected rooms, reusing the cache when fresh."""
        cached = self._fresh()
        if cached is not None:
            return cached
        return self._commit(apply_filters(rooms, metadata, self._config, now=self._clock()))

    async def get_result(self, loader: RoomLoader) -> FilterResult:
        """Return the cached result, or load rooms and recompute it.

        ``loader`` is awaited only on a recompute. If the caller is
        cancelled mid-load nothing is cached.
        """
        cached = self._fresh()
        if cached is not None:
            return cached
        async with self._lock:
            cached = self._fresh()
            if cached is not None:
                return cached
            rooms, metadata = await loader()
            return self._commit(apply_filters(rooms, metadata, self._config, now=self._clock()))

    def invalidate(self) -> None:
        self._cached = None
        self._expires_at = None
        logger.info("Room filter cache cleared")

    def cached_result(self) -> FilterResult | None:
        return self._fresh()

    def stats(self) -> FilterStatsSnapshot | None:
        """Stats of the last computed result plus cache freshness."""
        if self._cached is None or self._expires_at is None:
            return None
        remaining = (self._expires_at - self._clock()).total_seconds() / 60
        return FilterStatsSnapshot(
            **self._cached.stats.model_dump(),
            last_refresh=self._cached.last_refresh,
            cache_expires_in_minutes=max(0, round(remaining)),
        )
