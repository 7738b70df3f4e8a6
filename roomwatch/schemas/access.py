"""Schemas for access modes, delegated credentials and push delivery.

Covers the lifecycle:
  probe modes -> recommend -> retrieve via strategy (with hybrid fallback)
"""

from datetime import UTC, datetime, timedelta
from enum import StrEnum

from pydantic import BaseModel, ConfigDict, Field

from roomwatch.schemas.messages import ChatMessage

# --- Modes ---


class AccessMode(StrEnum):
    """Retrieval strategy used to reach the chat service."""

    DIRECT = "direct"  # service-account / bot credential
    DELEGATED_AUTH = "delegated_auth"  # user-consented OAuth credential
    PUSH_NOTIFICATION = "push_notification"  # webhook-delivered events
    HYBRID = "hybrid"  # best-effort combination


class ModeAnalysis(BaseModel):
    """Result of probing one access mode."""

    mode: AccessMode
    configured: bool = False
    available: bool = False
    can_read_messages: bool = False
    can_create_subscription: bool = False
    errors: list[str] = Field(default_factory=list)


class ModeDetection(BaseModel):
    """Outcome of detect_best_mode()."""

    recommended_mode: AccessMode
    analysis: dict[AccessMode, ModeAnalysis]
    reasoning: list[str] = Field(default_factory=list)


class AttemptStatus(StrEnum):
    """How one strategy attempt ended."""

    SUCCEEDED = "succeeded"
    EMPTY = "empty"  # call succeeded, nothing to return
    FAILED = "failed"
    SKIPPED = "skipped"


class StrategyAttempt(BaseModel):
    """One step of a retrieval, recorded for hybrid fallback reporting."""

    mode: AccessMode
    status: AttemptStatus
    message_count: int = 0
    error: str | None = None


class RetrievalResult(BaseModel):
    """Messages gathered by a retrieval strategy."""

    mode: AccessMode
    messages: list[ChatMessage] = Field(default_factory=list)
    rooms_accessed: int = 0
    attempts: list[StrategyAttempt] = Field(default_factory=list)

    @property
    def urgent_messages(self) -> list[ChatMessage]:
        return [m for m in self.messages if m.is_urgent]

    @property
    def is_empty(self) -> bool:
        return not self.messages


class MessagesViaModeResult(BaseModel):
    """Upward result of get_messages_via_best_mode()."""

    mode: AccessMode
    messages: list[ChatMessage] = Field(default_factory=list)
    urgent_messages: list[ChatMessage] = Field(default_factory=list)
    total_messages: int = 0
    total_urgent: int = 0
    rooms_accessed: int = 0
    attempts: list[StrategyAttempt] = Field(default_factory=list)


# --- Delegated auth ---


class DelegatedAuthConfig(BaseModel):
    """OAuth client registration plus any credential already held."""

    client_id: str
    client_secret: str
    redirect_uri: str = "http://localhost:3000/callback"
    access_token: str | None = None
    refresh_token: str | None = None


class TokenPair(BaseModel):
    """Access/refresh credential pair returned by the token endpoint."""

    access_token: str
    refresh_token: str | None = None
    expires_in: int | None = None
    refresh_token_expires_in: int | None = None
    issued_at: datetime = Field(default_factory=lambda: datetime.now(UTC))

    @property
    def expires_at(self) -> datetime | None:
        if self.expires_in is None:
            return None
        return self.issued_at + timedelta(seconds=self.expires_in)


class AuthFlowResult(BaseModel):
    """Outcome of completing the delegated authorization flow."""

    success: bool
    access_token: str | None = None
    refresh_token: str | None = None
    error: str | None = None


class AuthSetupResult(BaseModel):
    """Returned by configure_delegated_auth()."""

    authorization_url: str
    redirect_uri: str


# --- Push delivery ---


class PushSubscription(BaseModel):
    """A webhook registered with the chat service."""

    model_config = ConfigDict(populate_by_name=True)

    id: str
    name: str = ""
    target_url: str = Field(default="", alias="targetUrl")
    resource: str = "messages"
    event: str = "created"
    status: str | None = None


class PushEventData(BaseModel):
    """Resource reference carried by a push event."""

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    id: str
    room_id: str | None = Field(default=None, alias="roomId")
    person_id: str | None = Field(default=None, alias="personId")
    person_email: str | None = Field(default=None, alias="personEmail")
    created: datetime | None = None


class PushEvent(BaseModel):
    """Webhook delivery payload."""

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    id: str = ""
    name: str = ""
    resource: str
    event: str
    data: PushEventData


class BufferedMessage(BaseModel):
    """A pushed message held in the in-memory queue."""

    message: ChatMessage
    received_at: datetime
