"""Unified exception hierarchy for roomwatch.

Per-resource errors (one room, one probe) are raised by the transport and
caught at the point of origin by batch operations, which downgrade them to a
degraded record or an error string. Only ``ConfigError`` is fatal.
"""


class RoomwatchError(Exception):
    """Base exception for all roomwatch errors."""


class ConfigError(RoomwatchError):
    """Required configuration is missing or malformed."""


# --- Upstream chat service ---


class ChatServiceError(RoomwatchError):
    """Base exception for failed calls to the chat service."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class AuthError(ChatServiceError):
    """Credential is invalid or expired."""


class AccessDeniedError(ChatServiceError):
    """Access to a specific resource was denied (org policy or missing scope)."""


class NotFoundError(ChatServiceError):
    """Room, message, or person no longer exists."""


class RateLimitError(ChatServiceError):
    """The chat service is throttling requests."""

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = 429,
        retry_after: float | None = None,
    ) -> None:
        super().__init__(message, status_code=status_code)
        self.retry_after = retry_after


class NetworkError(ChatServiceError):
    """Transport failure or timeout talking to the chat service."""


class PartialAccessError(RoomwatchError):
    """Some rooms were inaccessible while others succeeded. Recoverable."""

    def __init__(self, inaccessible: dict[str, str], accessible_count: int) -> None:
        self.inaccessible = dict(inaccessible)
        self.accessible_count = accessible_count
        super().__init__(
            f"{len(self.inaccessible)} room(s) inaccessible, "
            f"{accessible_count} room(s) read successfully"
        )


def describe_error(exc: BaseException) -> str:
    """Short human-readable description used in degraded records and reports."""
    if isinstance(exc, AccessDeniedError):
        return f"403 Forbidden - access denied: {exc}"
    if isinstance(exc, AuthError):
        return f"401 Unauthorized - invalid credential: {exc}"
    if isinstance(exc, NotFoundError):
        return f"404 Not Found - resource may have been deleted: {exc}"
    if isinstance(exc, RateLimitError):
        return f"429 Too Many Requests: {exc}"
    if isinstance(exc, TimeoutError):
        return "Timed out"
    return str(exc) or exc.__class__.__name__


class RetrievalError(RoomwatchError):
    """An access mode could not read anything (not configured, or every room failed)."""


class MalformedResponseError(ChatServiceError):
    """The chat service answered with a body that is not the expected JSON shape."""
