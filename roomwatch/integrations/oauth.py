"""Delegated (OAuth authorization-code) credential client.

Builds the consent URL, exchanges the returned code for an access/refresh
pair, and refreshes the access token when it expires. Listeners registered
with ``on_token`` are told about every new credential so transports can swap
their bearer token.
"""

import logging
from collections.abc import Callable
from urllib.parse import urlencode

import httpx

from roomwatch.errors import AuthError, NetworkError
from roomwatch.integrations.chat_api import decode_json, parse_model
from roomwatch.schemas.access import DelegatedAuthConfig, TokenPair

logger = logging.getLogger(__name__)

DELEGATED_SCOPES = (
    "spark:people_read",
    "spark:rooms_read",
    "spark:messages_read",
    "spark:messages_write",
    "spark:memberships_read",
)


class DelegatedAuthClient:
    """Holds a delegated credential and keeps it fresh.

    Usage::

        async with DelegatedAuthClient(base_url, auth_config) as auth:
            url = auth.authorization_url()
            tokens = await auth.exchange_code(code_from_redirect)
    """

    def __init__(self, base_url: str, config: DelegatedAuthConfig, *, timeout: float = 30.0) -> None:
        self._base_url = base_url.rstrip("/")
        self._config = config
        self._access_token = config.access_token
        self._refresh_token = config.refresh_token
        self._listeners: list[Callable[[TokenPair], None]] = []
        self._client = httpx.AsyncClient(timeout=timeout)

    async def __aenter__(self) -> "DelegatedAuthClient":
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.close()

    async def close(self) -> None:
        await self._client.aclose()

    @property
    def access_token(self) -> str | None:
        return self._access_token

    @property
    def refresh_token(self) -> str | None:
        return self._refresh_token

    @property
    def redirect_uri(self) -> str:
        return self._config.redirect_uri

    def reconfigure(self, config: DelegatedAuthConfig) -> None:
        """Switch to another client registration. Any credential held for the old one is dropped."""
        self._config = config
        self._access_token = config.access_token
        self._refresh_token = config.refresh_token

    def on_token(self, listener: Callable[[TokenPair], None]) -> None:
        self._listeners.append(listener)

    def authorization_url(self, state: str = "roomwatch-delegated-auth") -> str:
        params = {
            "response_type": "code",
            "client_id": self._config.client_id,
            "redirect_uri": self._config.redirect_uri,
            "scope": " ".join(DELEGATED_SCOPES),
            "state": state,
        }
        return f"{self._base_url}/authorize?{urlencode(params)}"

    async def exchange_code(self, code: str) -> TokenPair:
        """Exchange an authorization code for an access/refresh pair."""
        return await self._token_request(
            {
                "grant_type": "authorization_code",
                "client_id": self._config.client_id,
                "client_secret": self._config.client_secret,
                "code": code,
                "redirect_uri": self._config.redirect_uri,
            }
        )

    async def refresh(self) -> TokenPair:
        """Refresh the access token with the held refresh token."""
        if not self._refresh_token:
            raise AuthError("No refresh token available")
        return await self._token_request(
            {
                "grant_type": "refresh_token",
                "client_id": self._config.client_id,
                "client_secret": self._config.client_secret,
                "refresh_token": self._refresh_token,
            }
        )

    async def _token_request(self, form: dict[str, str]) -> TokenPair:
        try:
            response = await self._client.post(f"{self._base_url}/access_token", data=form)
        except httpx.HTTPError as exc:
            raise NetworkError(f"Token endpoint unreachable: {exc}") from exc

        if response.status_code >= 400:
            try:
                body = response.json()
            except ValueError:
                body = None
            detail = body.get("message", response.reason_phrase) if isinstance(body, dict) else response.reason_phrase
            raise AuthError(
                f"Token request ({form['grant_type']}) failed: {detail}",
                status_code=response.status_code,
            )

        tokens = parse_model(TokenPair, decode_json(response), f"Token request ({form['grant_type']})")
        self._access_token = tokens.access_token
        # Some providers omit the refresh token on refresh; keep the old one.
        if tokens.refresh_token:
            self._refresh_token = tokens.refresh_token
        logger.info("Delegated credential updated via %s", form["grant_type"])
        for listener in self._listeners:
            listener(tokens)
        return tokens
