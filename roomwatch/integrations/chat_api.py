"""Async client for the chat service REST API (rooms, messages, webhooks)."""

import asyncio
import logging
from typing import TypeVar

import httpx
from pydantic import BaseModel, ValidationError

from roomwatch.errors import (
    AccessDeniedError,
    AuthError,
    ChatServiceError,
    MalformedResponseError,
    NetworkError,
    NotFoundError,
    RateLimitError,
)
from roomwatch.schemas.access import PushSubscription
from roomwatch.schemas.messages import ChatMessage, Membership, Person, Room

logger = logging.getLogger(__name__)

T = TypeVar("T", bound=BaseModel)

MAX_RETRIES = 2
RETRY_DELAY = 1.0
# Throttling windows longer than this are surfaced as RateLimitError, not slept through.
MAX_RETRY_AFTER = 30.0

# Upper bound the service accepts for ?max= on message listings.
MAX_PAGE_SIZE = 50


def _retry_after(response: httpx.Response) -> float | None:
    value = response.headers.get("retry-after")
    if not value:
        return None
    try:
        return max(0.0, float(value))
    except ValueError:
        return None


def throttle_delay(response: httpx.Response) -> float | None:
    """Seconds to wait before retrying ``response``, or None if it should not be retried.

    Only 429 responses are retried, and only when the service asks for a
    short enough pause.
    """
    if response.status_code != 429:
        return None
    delay = _retry_after(response)
    if delay is None:
        return RETRY_DELAY
    return delay if delay <= MAX_RETRY_AFTER else None


def _error_message(response: httpx.Response) -> str:
    try:
        data = response.json()
    except ValueError:
        return response.text.strip() or response.reason_phrase
    if isinstance(data, dict) and data.get("message"):
        return str(data["message"])
    return response.reason_phrase


def raise_for_chat_status(response: httpx.Response) -> None:
    """Map a non-2xx response onto the roomwatch error taxonomy."""
    status = response.status_code
    if status < 400:
        return

    message = f"{response.request.method} {response.request.url.path}: {_error_message(response)}"
    if status == 401:
        raise AuthError(message, status_code=status)
    if status == 403:
        raise AccessDeniedError(message, status_code=status)
    if status == 404:
        raise NotFoundError(message, status_code=status)
    if status == 429:
        raise RateLimitError(message, status_code=status, retry_after=_retry_after(response))
    raise ChatServiceError(message, status_code=status)


def decode_json(response: httpx.Response):
    """Body of a successful response, or MalformedResponseError if it is not JSON."""
    try:
        return response.json()
    except ValueError as exc:
        raise MalformedResponseError(
            f"{response.request.method} {response.request.url.path}: response body is not JSON",
            status_code=response.status_code,
        ) from exc


def parse_model(model: type[T], data, source: str) -> T:
    try:
        return model.model_validate(data)
    except ValidationError as exc:
        raise MalformedResponseError(
            f"{source}: unexpected {model.__name__} payload ({exc.error_count()} invalid field(s))"
        ) from exc


def parse_items(model: type[T], items: list, source: str) -> list[T]:
    """Validate listing items, skipping (and logging) any that do not fit ``model``."""
    parsed: list[T] = []
    for item in items:
        try:
            parsed.append(model.model_validate(item))
        except ValidationError as exc:
            item_id = item.get("id") if isinstance(item, dict) else None
            logger.warning(
                "%s: skipping malformed %s %s (%d invalid field(s))",
                source,
                model.__name__,
                item_id,
                exc.error_count(),
            )
    return parsed


class ChatApiClient:
    """Async HTTP client for the chat service.

    Usage::

        async with ChatApiClient(base_url, token) as client:
            rooms = await client.list_rooms()
            messages = await client.list_messages(rooms[0].id, max_messages=20)
    """

    def __init__(self, base_url: str, token: str | None, *, timeout: float = 30.0) -> None:
        self._base_url = base_url.rstrip("/")
        self._client = httpx.AsyncClient(
            base_url=self._base_url,
            headers={"Content-Type": "application/json"},
            timeout=timeout,
        )
        self._token: str | None = None
        self.set_token(token)

    async def __aenter__(self) -> "ChatApiClient":
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.close()

    async def close(self) -> None:
        await self._client.aclose()

    @property
    def has_token(self) -> bool:
        return bool(self._token)

    def set_token(self, token: str | None) -> None:
        """Swap the bearer credential used for subsequent requests."""
        self._token = token
        if token:
            self._client.headers["Authorization"] = f"Bearer {token}"
        else:
            self._client.headers.pop("Authorization", None)

    # ------------------------------------------------------------------
    # Generic helpers
    # ------------------------------------------------------------------

    async def _send(self, method: str, path: str, **kwargs) -> httpx.Response:
        """Send one request, retrying dropped connections and short throttling windows."""
        for attempt in range(MAX_RETRIES + 1):
            final = attempt == MAX_RETRIES
            try:
                response = await self._client.request(method, path, **kwargs)
            except httpx.RemoteProtocolError:
                if final:
                    raise
                logger.warning(
                    "%s %s: connection dropped (attempt %d/%d), retrying",
                    method,
                    path,
                    attempt + 1,
                    MAX_RETRIES + 1,
                )
                await asyncio.sleep(RETRY_DELAY)
                continue
            delay = throttle_delay(response)
            if delay is None or final:
                return response
            logger.warning("%s %s: throttled, retrying in %.1fs", method, path, delay)
            await asyncio.sleep(delay)
        raise AssertionError("retry loop exited without a response")

    async def _request(self, method: str, path: str, **kwargs) -> httpx.Response:
        """Send a request, mapping failures onto the error taxonomy."""
        try:
            response = await self._send(method, path, **kwargs)
        except httpx.TimeoutException as exc:
            raise NetworkError(f"{method} {path} timed out") from exc
        except httpx.TransportError as exc:
            raise NetworkError(f"{method} {path} failed: {exc}") from exc
        raise_for_chat_status(response)
        return response

    async def _get(self, path: str, params: dict | None = None):
        response = await self._request("GET", path, params=params)
        return decode_json(response)

    async def _get_items(self, path: str, params: dict | None = None) -> list:
        data = await self._get(path, params=params)
        items = data.get("items") if isinstance(data, dict) else None
        if not isinstance(items, list):
            raise MalformedResponseError(f"GET {path}: expected an object with an items list")
        return items

    # ------------------------------------------------------------------
    # People
    # ------------------------------------------------------------------

    async def get_me(self) -> Person:
        """Return the identity behind the current credential."""
        return parse_model(Person, await self._get("/people/me"), "GET /people/me")

    async def get_person(self, person_id: str) -> Person:
        return parse_model(Person, await self._get(f"/people/{person_id}"), "GET /people")

    # ------------------------------------------------------------------
    # Rooms
    # ------------------------------------------------------------------

    async def list_rooms(self, *, max_rooms: int | None = None) -> list[Room]:
        """List rooms visible to the credential, in upstream order."""
        params = {"max": max_rooms} if max_rooms else None
        items = await self._get_items("/rooms", params=params)
        return parse_items(Room, items, "GET /rooms")

    async def get_room(self, room_id: str) -> Room:
        return parse_model(Room, await self._get(f"/rooms/{room_id}"), "GET /rooms")

    # ------------------------------------------------------------------
    # Messages
    # ------------------------------------------------------------------

    async def list_messages(
        self,
        room_id: str,
        *,
        max_messages: int = MAX_PAGE_SIZE,
        room: Room | None = None,
    ) -> list[ChatMessage]:
        """Fetch the most recent messages in a room, newest first.

        Args:
            room_id: Room to read.
            max_messages: Upper bound on returned messages (capped at 50).
            room: Optional room record used to stamp ``room_title``.
        """
        params = {"roomId": room_id, "max": min(max_messages, MAX_PAGE_SIZE)}
        items = await self._get_items("/messages", params=params)
        messages = parse_items(ChatMessage, items, "GET /messages")
        if room is not None:
            messages = [m.model_copy(update={"room_title": room.display_title}) for m in messages]
        return messages

    async def get_message(self, message_id: str) -> ChatMessage:
        return parse_model(ChatMessage, await self._get(f"/messages/{message_id}"), "GET /messages")

    async def send_message(
        self, room_id: str, text: str, *, parent_id: str | None = None
    ) -> ChatMessage:
        """Post a message, optionally threaded under ``parent_id``."""
        payload: dict = {"roomId": room_id, "text": text}
        if parent_id:
            payload["parentId"] = parent_id
        response = await self._request("POST", "/messages", json=payload)
        return parse_model(ChatMessage, decode_json(response), "POST /messages")

    # ------------------------------------------------------------------
    # Memberships
    # ------------------------------------------------------------------

    async def list_memberships(self, room_id: str) -> list[Membership]:
        items = await self._get_items("/memberships", params={"roomId": room_id})
        return parse_items(Membership, items, "GET /memberships")

    async def count_members(self, room_id: str) -> int:
        return len(await self.list_memberships(room_id))

    # ------------------------------------------------------------------
    # Webhooks (push subscriptions)
    # ------------------------------------------------------------------

    async def create_webhook(
        self,
        target_url: str,
        *,
        secret: str | None = None,
        name: str = "roomwatch message webhook",
        resource: str = "messages",
        event: str = "created",
    ) -> PushSubscription:
        payload: dict = {
            "name": name,
            "targetUrl": target_url,
            "resource": resource,
            "event": event,
        }
        if secret:
            payload["secret"] = secret
        response = await self._request("POST", "/webhooks", json=payload)
        return parse_model(PushSubscription, decode_json(response), "POST /webhooks")

    async def list_webhooks(self) -> list[PushSubscription]:
        items = await self._get_items("/webhooks")
        return parse_items(PushSubscription, items, "GET /webhooks")

    async def delete_webhook(self, webhook_id: str) -> None:
        await self._request("DELETE", f"/webhooks/{webhook_id}")
