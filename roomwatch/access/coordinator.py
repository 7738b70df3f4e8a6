"""Access mode coordinator.

Probes the available access modes, recommends one, and routes message
retrieval and sending through it. ``hybrid`` walks the modes in fallback
order and records what happened at each step.

The only state kept between calls is the active mode, the delegated
credential and the set of modes whose most recent probe failed.
"""

import asyncio
import logging
from datetime import datetime

import httpx

from roomwatch.access.strategies import DelegatedStrategy, DirectStrategy, PushStrategy
from roomwatch.errors import RetrievalError, RoomwatchError, describe_error
from roomwatch.integrations.chat_api import ChatApiClient
from roomwatch.integrations.oauth import DelegatedAuthClient
from roomwatch.schemas.access import (
    AccessMode,
    AttemptStatus,
    ModeAnalysis,
    ModeDetection,
    RetrievalResult,
    StrategyAttempt,
    TokenPair,
)
from roomwatch.schemas.messages import ChatMessage

logger = logging.getLogger(__name__)


def recommend_mode(analysis: dict[AccessMode, ModeAnalysis]) -> tuple[AccessMode, str]:
    """Pick a mode from probe results. First matching rule wins."""
    delegated = analysis[AccessMode.DELEGATED_AUTH]
    push = analysis[AccessMode.PUSH_NOTIFICATION]
    direct = analysis[AccessMode.DIRECT]

    if delegated.can_read_messages:
        return AccessMode.DELEGATED_AUTH, "Delegated credential can read messages"
    if push.can_create_subscription and not direct.can_read_messages:
        return AccessMode.PUSH_NOTIFICATION, "Direct reads are blocked; push delivery is available"
    if direct.can_read_messages:
        return AccessMode.DIRECT, "Service credential can read messages"
    return AccessMode.HYBRID, "No single mode can read messages; combining what is available"


class AccessModeCoordinator:
    """Chooses and drives a retrieval strategy.

    Usage::

        coordinator = AccessModeCoordinator(direct, delegated, push,
                                            direct_client=bot, delegated_client=user)
        detection = await coordinator.detect_best_mode()
        result = await coordinator.get_messages(since=since)
    """

    def __init__(
        self,
        direct: DirectStrategy,
        delegated: DelegatedStrategy,
        push: PushStrategy,
        *,
        direct_client: ChatApiClient,
        delegated_client: ChatApiClient,
        preferred_mode: AccessMode | None = None,
    ) -> None:
        self._strategies = {
            AccessMode.DIRECT: direct,
            AccessMode.DELEGATED_AUTH: delegated,
            AccessMode.PUSH_NOTIFICATION: push,
        }
        self._direct_client = direct_client
        self._delegated_client = delegated_client
        self._active_mode = preferred_mode or AccessMode.DIRECT
        self._failed_probes: set[AccessMode] = set()
        self._auth: DelegatedAuthClient | None = None

    @property
    def active_mode(self) -> AccessMode:
        return self._active_mode

    @property
    def failed_probes(self) -> frozenset[AccessMode]:
        return frozenset(self._failed_probes)

    @property
    def delegated_auth(self) -> DelegatedAuthClient | None:
        return self._auth

    def set_mode(self, mode: AccessMode) -> None:
        logger.info("Access mode set to %s", mode.value)
        self._active_mode = mode

    # ------------------------------------------------------------------
    # Delegated credential
    # ------------------------------------------------------------------

    def attach_delegated_auth(self, auth: DelegatedAuthClient) -> None:
        """Adopt a delegated credential holder and follow its token updates.

        Re-attaching the current holder (after it was reconfigured) only
        resyncs the delegated transport's token.
        """
        if auth is not self._auth:
            self._auth = auth
            auth.on_token(self._on_token)
            self._strategies[AccessMode.DELEGATED_AUTH].attach(auth)
        self._delegated_client.set_token(auth.access_token)

    def _on_token(self, tokens: TokenPair) -> None:
        self._delegated_client.set_token(tokens.access_token)
        logger.debug("Delegated transport now uses the refreshed credential")

    # ------------------------------------------------------------------
    # Detection
    # ------------------------------------------------------------------

    async def _probe(self, mode: AccessMode) -> ModeAnalysis:
        strategy = self._strategies[mode]
        try:
            return await strategy.probe()
        except (RoomwatchError, httpx.HTTPError, TimeoutError) as exc:
            logger.warning("Probe for %s mode failed: %s", mode.value, describe_error(exc))
            return ModeAnalysis(
                mode=mode,
                configured=strategy.configured,
                errors=[describe_error(exc)],
            )

    async def detect_best_mode(self) -> ModeDetection:
        """Probe every mode concurrently and activate the recommendation."""
        modes = list(self._strategies)
        results = await asyncio.gather(*(self._probe(mode) for mode in modes))
        analysis = dict(zip(modes, results))

        self._failed_probes = {
            mode
            for mode, result in analysis.items()
            if not (result.can_read_messages or result.can_create_subscription)
        }

        reasoning = []
        for mode, result in analysis.items():
            if result.can_read_messages:
                reasoning.append(f"{mode.value}: can read messages")
            elif result.can_create_subscription:
                reasoning.append(f"{mode.value}: can receive push deliveries")
            else:
                reasoning.append(f"{mode.value}: unavailable ({'; '.join(result.errors) or 'no capability'})")

        recommended, why = recommend_mode(analysis)
        reasoning.append(f"Recommended {recommended.value}: {why}")
        self.set_mode(recommended)
        return ModeDetection(recommended_mode=recommended, analysis=analysis, reasoning=reasoning)

    # ------------------------------------------------------------------
    # Retrieval
    # ------------------------------------------------------------------

    async def get_messages(
        self,
        mode: AccessMode | None = None,
        *,
        since: datetime,
        max_per_room: int | None = None,
    ) -> RetrievalResult:
        """Retrieve classified messages through ``mode`` (default: the active mode).

        Raises:
            RetrievalError: A single mode could not read anything.
            ChatServiceError: The single mode's room listing failed.
        """
        mode = mode or self._active_mode
        if mode == AccessMode.HYBRID:
            return await self._hybrid(since, max_per_room)

        result = await self._strategies[mode].fetch(since, max_per_room=max_per_room)
        status = AttemptStatus.EMPTY if result.is_empty else AttemptStatus.SUCCEEDED
        result.attempts.append(
            StrategyAttempt(mode=mode, status=status, message_count=len(result.messages))
        )
        return result

    async def _hybrid(self, since: datetime, max_per_room: int | None) -> RetrievalResult:
        attempts: list[StrategyAttempt] = []
        order = (AccessMode.DELEGATED_AUTH, AccessMode.PUSH_NOTIFICATION, AccessMode.DIRECT)

        for mode in order:
            strategy = self._strategies[mode]
            if not strategy.configured:
                attempts.append(StrategyAttempt(mode=mode, status=AttemptStatus.SKIPPED, error="not configured"))
                continue
            if mode == AccessMode.DIRECT and mode in self._failed_probes:
                attempts.append(
                    StrategyAttempt(
                        mode=mode,
                        status=AttemptStatus.SKIPPED,
                        error="failed its probe earlier in this session",
                    )
                )
                continue

            try:
                result = await strategy.fetch(since, max_per_room=max_per_room)
            except (RoomwatchError, httpx.HTTPError, TimeoutError) as exc:
                logger.info("Hybrid: %s attempt failed: %s", mode.value, describe_error(exc))
                attempts.append(
                    StrategyAttempt(mode=mode, status=AttemptStatus.FAILED, error=describe_error(exc))
                )
                continue

            if result.is_empty:
                attempts.append(StrategyAttempt(mode=mode, status=AttemptStatus.EMPTY))
                continue

            attempts.append(
                StrategyAttempt(
                    mode=mode,
                    status=AttemptStatus.SUCCEEDED,
                    message_count=len(result.messages),
                )
            )
            return RetrievalResult(
                mode=AccessMode.HYBRID,
                messages=result.messages,
                rooms_accessed=result.rooms_accessed,
                attempts=attempts,
            )

        logger.info("Hybrid: no mode produced messages")
        return RetrievalResult(mode=AccessMode.HYBRID, attempts=attempts)

    # ------------------------------------------------------------------
    # Sending
    # ------------------------------------------------------------------

    async def send_message(
        self, room_id: str, text: str, *, parent_id: str | None = None
    ) -> tuple[ChatMessage, AccessMode]:
        """Send through the delegated transport when that mode is active, else directly."""
        if (
            self._active_mode == AccessMode.DELEGATED_AUTH
            and self._strategies[AccessMode.DELEGATED_AUTH].configured
        ):
            sent = await self._delegated_client.send_message(room_id, text, parent_id=parent_id)
            return sent, AccessMode.DELEGATED_AUTH
        if not self._direct_client.has_token:
            raise RetrievalError("No credential available to send messages")
        sent = await self._direct_client.send_message(room_id, text, parent_id=parent_id)
        return sent, AccessMode.DIRECT
