"""Triage service: the operations exposed to callers (CLI, agents).

Wires the transports, the room filter, the metadata collector, the push
queue and the access mode coordinator together from one AppConfig, and
turns their outputs into the summary schemas.
"""

import logging
from datetime import UTC, datetime, timedelta

from roomwatch.access.coordinator import AccessModeCoordinator
from roomwatch.access.diagnostics import diagnose_credential
from roomwatch.access.push import PushMessageQueue
from roomwatch.access.strategies import DelegatedStrategy, DirectStrategy, PushStrategy
from roomwatch.config import AppConfig
from roomwatch.digest.rooms import build_room_summary
from roomwatch.errors import AuthError, ChatServiceError, ConfigError, RetrievalError
from roomwatch.integrations.chat_api import ChatApiClient
from roomwatch.integrations.oauth import DelegatedAuthClient
from roomwatch.schemas.access import (
    AccessMode,
    AuthFlowResult,
    AuthSetupResult,
    DelegatedAuthConfig,
    MessagesViaModeResult,
    ModeDetection,
    PushEvent,
    PushSubscription,
)
from roomwatch.schemas.diagnostics import CredentialDiagnosis
from roomwatch.schemas.filtering import (
    REASON_ACCESS_ERROR,
    FilterStatsReport,
    FilterStatsSnapshot,
    MonitoredRoomSummary,
    RoomMetadata,
)
from roomwatch.schemas.messages import ChatMessage, Person
from roomwatch.schemas.summaries import (
    AccessibleRoom,
    InaccessibleRoom,
    PrioritizedSummary,
    RoomContext,
    RoomsInfo,
    RoomsInfoStats,
    SentMessage,
    SummaryStats,
    UrgentMessage,
)
from roomwatch.triage.messages import fetch_recent_messages
from roomwatch.triage.metadata import RoomMetadataCollector
from roomwatch.triage.room_filter import RoomFilterService
from roomwatch.triage.urgency import apply_urgency, partition

logger = logging.getLogger(__name__)

MAX_PARTICIPANTS = 10
EXCLUDED_IN_REPORT = 10


def _to_urgent(message: ChatMessage) -> UrgentMessage:
    return UrgentMessage(
        id=message.id,
        room_id=message.room_id,
        room_title=message.room_title or "Unknown Room",
        sender=message.sender,
        text=message.text,
        created=message.created,
        urgency_reasons=message.urgency_reasons,
        requires_immediate=message.requires_immediate,
        urgency_score=message.urgency_score,
        handled=message.handled,
    )


def _summarize(meta: RoomMetadata) -> MonitoredRoomSummary:
    return MonitoredRoomSummary(
        title=meta.title,
        score=meta.score,
        reason=meta.filter_reason,
        has_urgent_content=meta.has_urgent_keywords,
        recent_messages=meta.recent_message_count,
    )


class TriageService:
    """Facade over triage, filtering and access modes.

    Usage::

        async with TriageService(load_config()) as service:
            summary = await service.get_prioritized_summary(since_hours=8)
    """

    def __init__(
        self,
        config: AppConfig,
        *,
        client: ChatApiClient | None = None,
        delegated_client: ChatApiClient | None = None,
    ) -> None:
        self._config = config
        self._client = client or ChatApiClient(
            config.api_base_url, config.bot_token, timeout=config.request_timeout
        )
        self._delegated_client = delegated_client or ChatApiClient(
            config.api_base_url, None, timeout=config.request_timeout
        )
        self._handled: set[str] = set()

        self.filter_service = RoomFilterService(config.filtering)
        self.collector = RoomMetadataCollector(
            self._client,
            config.urgency,
            lookback_days=config.filtering.min_activity_days,
            room_timeout=config.room_timeout,
            max_concurrency=config.max_concurrency,
        )
        self.push_queue = PushMessageQueue(
            self._client,
            config.urgency,
            secret=config.push.webhook_secret,
            retention_minutes=config.push.retention_minutes,
        )
        self.direct = DirectStrategy(
            self._client,
            self.filter_service,
            self.collector,
            config.urgency,
            max_concurrency=config.max_concurrency,
            room_timeout=config.room_timeout,
            handled=self._handled,
        )
        delegated = DelegatedStrategy(
            self._delegated_client,
            None,
            config.urgency,
            max_rooms=config.filtering.max_monitored_rooms,
            max_concurrency=config.max_concurrency,
            room_timeout=config.room_timeout,
            handled=self._handled,
        )
        self.coordinator = AccessModeCoordinator(
            self.direct,
            delegated,
            PushStrategy(self._client, self.push_queue),
            direct_client=self._client,
            delegated_client=self._delegated_client,
            preferred_mode=config.preferred_mode,
        )
        if config.delegated is not None:
            self._attach_auth(config.delegated)

    async def __aenter__(self) -> "TriageService":
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.close()

    async def close(self) -> None:
        await self._client.close()
        await self._delegated_client.close()
        if self.coordinator.delegated_auth is not None:
            await self.coordinator.delegated_auth.close()

    def _attach_auth(self, auth_config: DelegatedAuthConfig) -> DelegatedAuthClient:
        auth = self.coordinator.delegated_auth
        if auth is not None:
            logger.debug("Reconfiguring existing delegated credential holder")
            auth.reconfigure(auth_config)
        else:
            auth = DelegatedAuthClient(
                self._config.api_base_url, auth_config, timeout=self._config.request_timeout
            )
        self.coordinator.attach_delegated_auth(auth)
        return auth

    @staticmethod
    def _since(hours: float) -> datetime:
        return datetime.now(UTC) - timedelta(hours=hours)

    # ------------------------------------------------------------------
    # Summaries
    # ------------------------------------------------------------------

    async def _fetch_monitored(self, since_hours: float, max_per_room: int):
        rooms = await self.direct.monitored_rooms()
        report = await fetch_recent_messages(
            self._client,
            rooms,
            since=self._since(since_hours),
            urgency=self._config.urgency,
            max_per_room=max_per_room,
            handled=self._handled,
            max_concurrency=self._config.max_concurrency,
            room_timeout=self._config.room_timeout,
        )
        return report

    async def get_prioritized_summary(
        self, since_hours: float = 24, max_per_room: int = 50
    ) -> PrioritizedSummary:
        """Urgent messages plus per-room digests of everything else."""
        report = await self._fetch_monitored(since_hours, max_per_room)

        urgent_messages: list[ChatMessage] = []
        summaries = []
        total = 0
        for room in report.accessible:
            messages = report.messages_by_room[room.id]
            total += len(messages)
            urgent, routine = partition(messages)
            urgent_messages.extend(urgent)
            summary = build_room_summary(room, routine)
            if summary is not None:
                summaries.append(summary)

        urgent_messages.sort(key=lambda m: m.created, reverse=True)
        urgent_messages.sort(key=lambda m: not m.requires_immediate)
        summaries.sort(key=lambda s: s.last_activity, reverse=True)

        return PrioritizedSummary(
            urgent_messages=[_to_urgent(m) for m in urgent_messages],
            room_summaries=summaries,
            stats=SummaryStats(
                total_urgent=len(urgent_messages),
                total_rooms_summary=len(summaries),
                total_messages=total,
                accessible_rooms=len(report.accessible),
                inaccessible_rooms=len(report.inaccessible),
            ),
        )

    async def get_urgent_only(self, limit: int = 10, since_hours: float = 24) -> list[UrgentMessage]:
        """Most pressing urgent messages: immediate first, then score, then newest."""
        report = await self._fetch_monitored(since_hours, 50)
        urgent, _ = partition(report.messages)
        urgent.sort(key=lambda m: (m.requires_immediate, m.urgency_score, m.created), reverse=True)
        return [_to_urgent(m) for m in urgent[:limit]]

    # ------------------------------------------------------------------
    # Messages and rooms
    # ------------------------------------------------------------------

    async def send_reply(
        self, room_id: str, text: str, parent_message_id: str | None = None
    ) -> SentMessage:
        sent, mode = await self.coordinator.send_message(room_id, text, parent_id=parent_message_id)
        logger.info("Reply sent to %s via %s mode", room_id, mode.value)
        return SentMessage(id=sent.id, room_id=sent.room_id, parent_id=sent.parent_id)

    async def get_room_context(self, room_id: str, count: int = 20) -> RoomContext:
        """A room, its latest messages (classified) and who is talking."""
        room = await self._client.get_room(room_id)
        messages = await self._client.list_messages(room_id, max_messages=count, room=room)
        messages = [apply_urgency(m, self._config.urgency, handled=self._handled) for m in messages]

        participants: list[Person] = []
        seen: set[str] = set()
        for message in messages:
            if len(participants) >= MAX_PARTICIPANTS:
                break
            if not message.person_id or message.person_id in seen:
                continue
            seen.add(message.person_id)
            try:
                participants.append(await self._client.get_person(message.person_id))
            except ChatServiceError as exc:
                logger.warning("Could not look up person %s: %s", message.person_id, exc)

        return RoomContext(room=room, messages=messages, participants=participants)

    def mark_handled(self, message_id: str) -> bool:
        """Mark a message handled for this process. Returns False if it already was."""
        if message_id in self._handled:
            return False
        self._handled.add(message_id)
        return True

    async def get_rooms_info(self) -> RoomsInfo:
        """Inventory of rooms the service credential can and cannot read."""
        rooms = await self._client.list_rooms()
        metadata = await self.collector.collect(rooms)

        accessible: list[AccessibleRoom] = []
        inaccessible: list[InaccessibleRoom] = []
        for room in rooms:
            meta = metadata[room.id]
            if meta.filter_reason == REASON_ACCESS_ERROR:
                inaccessible.append(
                    InaccessibleRoom(
                        id=room.id,
                        title=room.display_title,
                        type=room.type,
                        error=meta.error or "unknown error",
                    )
                )
                continue
            accessible.append(
                AccessibleRoom(
                    id=room.id,
                    title=room.display_title,
                    type=room.type,
                    archived=room.archived,
                    last_activity=room.last_activity,
                    created=room.created,
                    member_count=meta.member_count,
                    recent_message_count=meta.recent_message_count,
                    has_urgent_keywords=meta.has_urgent_keywords,
                )
            )
        accessible.sort(key=lambda r: r.last_activity, reverse=True)

        return RoomsInfo(
            total_rooms=len(rooms),
            accessible_rooms=accessible,
            inaccessible_rooms=inaccessible,
            stats=RoomsInfoStats(
                accessible_count=len(accessible),
                inaccessible_count=len(inaccessible),
                group_rooms=sum(1 for r in accessible if r.type == "group"),
                direct_rooms=sum(1 for r in accessible if r.type == "direct"),
                rooms_with_recent_activity=sum(1 for r in accessible if r.recent_message_count > 0),
                rooms_with_urgent_content=sum(1 for r in accessible if r.has_urgent_keywords),
            ),
        )

    # ------------------------------------------------------------------
    # Credentials and access modes
    # ------------------------------------------------------------------

    async def diagnose_credential(self) -> CredentialDiagnosis:
        return await diagnose_credential(self._client)

    async def detect_best_mode(self) -> ModeDetection:
        return await self.coordinator.detect_best_mode()

    def configure_delegated_auth(
        self, client_id: str, client_secret: str, redirect_uri: str | None = None
    ) -> AuthSetupResult:
        """Register OAuth client details and return the consent URL."""
        auth_config = DelegatedAuthConfig(client_id=client_id, client_secret=client_secret)
        if redirect_uri:
            auth_config = auth_config.model_copy(update={"redirect_uri": redirect_uri})
        auth = self._attach_auth(auth_config)
        return AuthSetupResult(authorization_url=auth.authorization_url(), redirect_uri=auth.redirect_uri)

    async def complete_auth_flow(self, code: str) -> AuthFlowResult:
        """Exchange the authorization code; the delegated transport adopts the result."""
        auth = self.coordinator.delegated_auth
        if auth is None:
            return AuthFlowResult(success=False, error="Delegated auth is not configured")
        try:
            tokens = await auth.exchange_code(code)
        except ChatServiceError as exc:
            logger.warning("Authorization code exchange failed: %s", exc)
            return AuthFlowResult(success=False, error=str(exc))
        return AuthFlowResult(
            success=True, access_token=tokens.access_token, refresh_token=tokens.refresh_token
        )

    async def configure_push_notifications(self, url: str, secret: str) -> PushSubscription:
        """Register a message webhook and arm the push queue with its secret."""
        if not self._client.has_token:
            raise ConfigError("Push delivery needs CHAT_BOT_TOKEN to register the webhook")
        subscription = await self._client.create_webhook(url, secret=secret)
        self.push_queue.set_secret(secret)
        logger.info("Push subscription %s registered for %s", subscription.id, url)
        return subscription

    async def receive_push(self, body: bytes, signature: str | None) -> ChatMessage | None:
        """Verify and enqueue one raw webhook delivery."""
        if not self.push_queue.verify_signature(body, signature):
            raise AuthError("Push delivery signature mismatch")
        return await self.push_queue.handle_event(PushEvent.model_validate_json(body))

    async def get_messages_via_best_mode(
        self, since_hours: float = 24, mode: AccessMode | None = None
    ) -> MessagesViaModeResult:
        result = await self.coordinator.get_messages(mode, since=self._since(since_hours))
        urgent = result.urgent_messages
        return MessagesViaModeResult(
            mode=result.mode,
            messages=result.messages,
            urgent_messages=urgent,
            total_messages=len(result.messages),
            total_urgent=len(urgent),
            rooms_accessed=result.rooms_accessed,
            attempts=result.attempts,
        )

    # ------------------------------------------------------------------
    # Room filter
    # ------------------------------------------------------------------

    def get_filter_stats(self) -> FilterStatsReport:
        """Filter configuration and the last computed result, if any."""
        result = self.filter_service.cached_result()
        report = FilterStatsReport(
            configuration=self.filter_service.config,
            statistics=self.filter_service.stats(),
        )
        if result is not None:
            report.monitored_rooms = [_summarize(m) for m in result.monitored_rooms]
            report.excluded_rooms = [_summarize(m) for m in result.excluded_rooms[:EXCLUDED_IN_REPORT]]
        return report

    async def refresh_filter_cache(self) -> FilterStatsSnapshot:
        """Drop the cached filter result and recompute it now."""
        self.filter_service.invalidate()
        await self.direct.filter_result()
        stats = self.filter_service.stats()
        if stats is None:
            raise RetrievalError("Room filter produced no result")
        return stats
