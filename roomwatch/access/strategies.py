"""Retrieval strategies, one per access mode.

Each strategy exposes the same three members:

* ``configured`` - whether it has what it needs to be tried at all
* ``probe()`` - a ModeAnalysis describing what the credential can do
* ``fetch(since)`` - a RetrievalResult of classified messages

``fetch`` raises RetrievalError (or a ChatServiceError) only when nothing
could be read; an empty but successful read returns an empty result.
"""

import logging
from datetime import datetime

from roomwatch.access.diagnostics import diagnose_credential
from roomwatch.access.push import PushMessageQueue
from roomwatch.errors import AuthError, ChatServiceError, RetrievalError
from roomwatch.integrations.chat_api import ChatApiClient
from roomwatch.integrations.oauth import DelegatedAuthClient
from roomwatch.schemas.access import AccessMode, ModeAnalysis, RetrievalResult
from roomwatch.schemas.diagnostics import CredentialIssue
from roomwatch.schemas.filtering import REASON_ACCESS_ERROR, FilterResult, RoomMetadata
from roomwatch.schemas.messages import Room, UrgencyConfig
from roomwatch.triage.messages import RoomFetchReport, fetch_recent_messages
from roomwatch.triage.metadata import RoomMetadataCollector
from roomwatch.triage.room_filter import RoomFilterService

logger = logging.getLogger(__name__)


def room_from_metadata(meta: RoomMetadata) -> Room:
    return Room(
        id=meta.room_id,
        title=meta.title,
        type=meta.kind,
        last_activity=meta.last_activity,
        archived=meta.archived,
    )


def _result_from_report(mode: AccessMode, report: RoomFetchReport, attempted: int) -> RetrievalResult:
    if attempted and not report.accessible:
        reasons = "; ".join(f"{r.title}: {r.error}" for r in report.inaccessible[:3])
        raise RetrievalError(f"No room readable in {mode} mode ({reasons})")
    return RetrievalResult(
        mode=mode,
        messages=report.messages,
        rooms_accessed=len(report.accessible),
    )


# ----------------------------------------------------------------------
# Direct (service-account credential)
# ----------------------------------------------------------------------


class DirectStrategy:
    """Reads the filtered set of monitored rooms with the service credential."""

    mode = AccessMode.DIRECT

    def __init__(
        self,
        client: ChatApiClient,
        filter_service: RoomFilterService,
        collector: RoomMetadataCollector,
        urgency: UrgencyConfig,
        *,
        max_per_room: int = 10,
        max_concurrency: int = 5,
        room_timeout: float = 15.0,
        handled: set[str] | None = None,
    ) -> None:
        self._client = client
        self._filter = filter_service
        self._collector = collector
        self._urgency = urgency
        self._max_per_room = max_per_room
        self._max_concurrency = max_concurrency
        self._room_timeout = room_timeout
        self._handled = handled if handled is not None else set()

    @property
    def configured(self) -> bool:
        return self._client.has_token

    async def _load(self) -> tuple[list[Room], dict[str, RoomMetadata]]:
        rooms = await self._client.list_rooms()
        metadata = await self._collector.collect(rooms)
        return rooms, metadata

    async def filter_result(self) -> FilterResult:
        """Current (possibly cached) room filter result."""
        return await self._filter.get_result(self._load)

    async def monitored_rooms(self) -> list[Room]:
        result = await self.filter_result()
        return [room_from_metadata(meta) for meta in result.monitored_rooms]

    async def _readable_rooms(self) -> list[Room]:
        result = await self.filter_result()
        unreadable = [m for m in result.excluded_rooms if m.filter_reason == REASON_ACCESS_ERROR]
        if not result.monitored_rooms and unreadable and len(unreadable) == len(result.excluded_rooms):
            raise RetrievalError(f"None of {len(unreadable)} room(s) readable in direct mode")
        return [room_from_metadata(meta) for meta in result.monitored_rooms]

    async def probe(self) -> ModeAnalysis:
        analysis = ModeAnalysis(mode=self.mode, configured=self.configured)
        if not self.configured:
            analysis.errors.append("No service credential configured")
            return analysis
        diagnosis = await diagnose_credential(self._client)
        analysis.available = diagnosis.evidence.authenticated
        analysis.can_read_messages = diagnosis.evidence.can_read_messages
        if diagnosis.issue == CredentialIssue.POLICY_RESTRICTED:
            analysis.errors.append("Organization policy blocks message reading for this credential")
        elif diagnosis.issue is not None:
            analysis.errors.append(f"Cannot read messages: {diagnosis.issue.value}")
        return analysis

    async def fetch(self, since: datetime, *, max_per_room: int | None = None) -> RetrievalResult:
        if not self.configured:
            raise RetrievalError("Direct mode has no service credential")
        rooms = await self._readable_rooms()
        report = await fetch_recent_messages(
            self._client,
            rooms,
            since=since,
            urgency=self._urgency,
            max_per_room=max_per_room or self._max_per_room,
            handled=self._handled,
            max_concurrency=self._max_concurrency,
            room_timeout=self._room_timeout,
        )
        return _result_from_report(self.mode, report, len(rooms))


# ----------------------------------------------------------------------
# Delegated (user-consented OAuth credential)
# ----------------------------------------------------------------------


class DelegatedStrategy:
    """Reads the user's most recently active rooms with a delegated credential.

    An expired access token is refreshed once and the call retried.
    """

    mode = AccessMode.DELEGATED_AUTH

    def __init__(
        self,
        client: ChatApiClient,
        auth: DelegatedAuthClient | None,
        urgency: UrgencyConfig,
        *,
        max_rooms: int = 25,
        max_per_room: int = 50,
        max_concurrency: int = 5,
        room_timeout: float = 15.0,
        handled: set[str] | None = None,
    ) -> None:
        self._client = client
        self._auth = auth
        self._urgency = urgency
        self._max_rooms = max_rooms
        self._max_per_room = max_per_room
        self._max_concurrency = max_concurrency
        self._room_timeout = room_timeout
        self._handled = handled if handled is not None else set()

    @property
    def configured(self) -> bool:
        return self._auth is not None and bool(self._auth.access_token)

    def attach(self, auth: DelegatedAuthClient) -> None:
        self._auth = auth

    async def _with_refresh(self, call, *args, **kwargs):
        try:
            return await call(*args, **kwargs)
        except AuthError:
            if self._auth is None or not self._auth.refresh_token:
                raise
            logger.info("Delegated credential rejected, refreshing once")
            await self._auth.refresh()
            return await call(*args, **kwargs)

    async def probe(self) -> ModeAnalysis:
        analysis = ModeAnalysis(mode=self.mode, configured=self.configured)
        if not self.configured:
            analysis.errors.append("No delegated credential; complete the authorization flow first")
            return analysis
        rooms = await self._with_refresh(self._client.list_rooms)
        analysis.available = True
        if not rooms:
            analysis.errors.append("Credential lists no rooms; message access untested")
            return analysis
        try:
            await self._with_refresh(self._client.list_messages, rooms[0].id, max_messages=1)
            analysis.can_read_messages = True
        except ChatServiceError as exc:
            analysis.errors.append(f"Message reading failed: {exc}")
        return analysis

    async def fetch(self, since: datetime, *, max_per_room: int | None = None) -> RetrievalResult:
        if not self.configured:
            raise RetrievalError("Delegated mode has no credential")
        rooms = await self._with_refresh(self._client.list_rooms)
        rooms = sorted(rooms, key=lambda r: r.last_activity, reverse=True)[: self._max_rooms]
        report = await fetch_recent_messages(
            self._client,
            rooms,
            since=since,
            urgency=self._urgency,
            max_per_room=max_per_room or self._max_per_room,
            handled=self._handled,
            max_concurrency=self._max_concurrency,
            room_timeout=self._room_timeout,
        )
        return _result_from_report(self.mode, report, len(rooms))


# ----------------------------------------------------------------------
# Push (webhook-delivered events)
# ----------------------------------------------------------------------


class PushStrategy:
    """Serves messages from the push queue; never polls rooms."""

    mode = AccessMode.PUSH_NOTIFICATION

    def __init__(self, client: ChatApiClient, queue: PushMessageQueue) -> None:
        self._client = client
        self._queue = queue

    @property
    def configured(self) -> bool:
        return self._queue.armed and self._client.has_token

    @property
    def queue(self) -> PushMessageQueue:
        return self._queue

    async def probe(self) -> ModeAnalysis:
        analysis = ModeAnalysis(mode=self.mode, configured=self.configured)
        if not self.configured:
            analysis.errors.append("Push delivery is not configured (credential and secret required)")
            return analysis
        # Listing subscriptions is the cheapest proof we may manage them.
        await self._client.list_webhooks()
        analysis.available = True
        analysis.can_create_subscription = True
        return analysis

    async def fetch(self, since: datetime, **_: object) -> RetrievalResult:
        if not self._queue.armed:
            raise RetrievalError("Push mode is not configured")
        messages = self._queue.recent(since)
        return RetrievalResult(
            mode=self.mode,
            messages=messages,
            rooms_accessed=len({m.room_id for m in messages}),
        )
