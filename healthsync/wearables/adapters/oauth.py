"""Shared OAuth2 authorization-code machinery for REST platform connectors.

Subclasses provide endpoints, scopes and ``_fetch()``; this base handles
the token lifecycle:

    UNAUTHENTICATED ──exchange code──▶ AUTHENTICATED
    AUTHENTICATED ──token near expiry──▶ REFRESHING ──▶ AUTHENTICATED
                                                   └──▶ UNAUTHENTICATED (refresh failed)

Concurrent callers that find the token expired share a single refresh
call through an ``asyncio.Lock``.  The user-consent redirect itself is
performed by the UI; ``authorization_url()`` only builds the URL.
"""

from __future__ import annotations

import asyncio
import logging
from abc import abstractmethod
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from typing import Any, Mapping
from urllib.parse import urlencode

import httpx

from healthsync.wearables.base import (
    Clock,
    ConnectorError,
    ConnectorNotInitializedError,
    HealthDataPoint,
    HealthMetricType,
    NotAuthorizedError,
    OAuthTokens,
    TokenState,
    UnsupportedMetricError,
    WearableConnector,
    parse_timestamp,
    utc_now,
)

logger = logging.getLogger("healthsync.wearables.oauth")

_HTTP_TIMEOUT = httpx.Timeout(30.0, connect=10.0)


@dataclass(frozen=True)
class OAuthConfig:
    """Static OAuth2 client settings for one platform."""

    client_id: str
    client_secret: str
    redirect_uri: str
    scopes: tuple[str, ...]
    authorization_endpoint: str
    token_endpoint: str
    revoke_endpoint: str


def _parse_expiry(value: Any) -> datetime | None:
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return datetime.fromtimestamp(value, tz=timezone.utc)
    return parse_timestamp(value)


class OAuthConnector(WearableConnector):
    """Base class for connectors backed by an OAuth2 REST API.

    Args:
        auth_config: Client credentials and optional saved tokens
                     (``access_token``, ``refresh_token``, ``expires_at``)
                     or an ``auth_code`` from the consent redirect.
        http_client: Optional pre-configured httpx client (for testing).
        clock:       Time source for token expiry.
    """

    AUTHORIZATION_ENDPOINT: str
    TOKEN_ENDPOINT: str
    REVOKE_ENDPOINT: str
    DEFAULT_SCOPES: tuple[str, ...] = ()
    SUPPORTED_METRICS: frozenset[HealthMetricType] = frozenset()

    #: Tokens expiring within this many seconds are treated as expired.
    TOKEN_EXPIRY_BUFFER_SECONDS = 60

    #: Extra query parameters for the consent URL.
    EXTRA_AUTHORIZATION_PARAMS: dict[str, str] = {}

    def __init__(
        self,
        auth_config: Mapping[str, Any] | None = None,
        *,
        http_client: httpx.AsyncClient | None = None,
        clock: Clock = utc_now,
    ) -> None:
        self._auth_config = dict(auth_config or {})
        self.oauth = OAuthConfig(
            client_id=str(self._auth_config.get("client_id", "")),
            client_secret=str(self._auth_config.get("client_secret", "")),
            redirect_uri=str(self._auth_config.get("redirect_uri", "")),
            scopes=tuple(self._auth_config.get("scopes") or self.DEFAULT_SCOPES),
            authorization_endpoint=self.AUTHORIZATION_ENDPOINT,
            token_endpoint=self.TOKEN_ENDPOINT,
            revoke_endpoint=self.REVOKE_ENDPOINT,
        )
        self.user_id = str(self._auth_config.get("user_id", "default"))
        self._http_client = http_client
        self._owns_client = http_client is None
        self._clock = clock
        self._initialized = False
        self._tokens: OAuthTokens | None = None
        self._state = TokenState.UNAUTHENTICATED
        self._refresh_lock = asyncio.Lock()

    @property
    def token_state(self) -> TokenState:
        return self._state

    @property
    def tokens(self) -> OAuthTokens | None:
        return self._tokens

    def get_supported_metrics(self) -> frozenset[HealthMetricType]:
        return self.SUPPORTED_METRICS

    def authorization_url(self, state: str) -> str:
        """Build the consent URL the UI redirects the user to."""
        params = {
            "client_id": self.oauth.client_id,
            "redirect_uri": self.oauth.redirect_uri,
            "response_type": "code",
            "scope": " ".join(self.oauth.scopes),
            "state": state,
            **self.EXTRA_AUTHORIZATION_PARAMS,
        }
        return f"{self.oauth.authorization_endpoint}?{urlencode(params)}"

    # ------------------------------------------------------------------
    # WearableConnector interface
    # ------------------------------------------------------------------

    async def initialize(self) -> bool:
        """Load any saved tokens from the auth config.  Never raises."""
        access_token = self._auth_config.get("access_token")
        if access_token:
            self._tokens = OAuthTokens(
                access_token=str(access_token),
                refresh_token=self._auth_config.get("refresh_token"),
                expires_at=_parse_expiry(self._auth_config.get("expires_at")),
                scope=list(self.oauth.scopes),
            )
            self._state = TokenState.AUTHENTICATED
        self._initialized = True
        logger.debug("%s: initialized (saved token: %s)", self.DISPLAY_NAME, bool(access_token))
        return True

    async def authorize(self) -> bool:
        """Obtain a valid access token.

        Order: keep a valid token, else refresh silently, else exchange the
        ``auth_code`` from the auth config.  Returns False if ``initialize()``
        was not called.
        """
        if not self._initialized:
            logger.error("%s: authorize called before initialize", self.DISPLAY_NAME)
            return False
        if self._has_valid_token():
            return True
        if self._tokens is not None and self._tokens.refresh_token:
            if await self._refresh():
                return True

        code = self._auth_config.get("auth_code")
        if not code:
            logger.info("%s: no authorization code available", self.DISPLAY_NAME)
            return False

        try:
            data = await self._token_request(
                {
                    "grant_type": "authorization_code",
                    "code": code,
                    "redirect_uri": self.oauth.redirect_uri,
                }
            )
            tokens = self._parse_token_response(data)
        except (httpx.HTTPError, KeyError, ValueError) as exc:
            logger.warning("%s: code exchange failed: %s", self.DISPLAY_NAME, exc)
            self._state = TokenState.UNAUTHENTICATED
            return False

        self._set_tokens(tokens)
        logger.info("%s: authorized", self.DISPLAY_NAME)
        return True

    async def is_authorized(self) -> bool:
        if not self._initialized:
            return False
        if self._has_valid_token():
            return True
        if self._tokens is not None and self._tokens.refresh_token:
            return await self._refresh()
        return False

    async def revoke_authorization(self) -> bool:
        """Revoke the token with the platform and clear local state.

        A failed revoke call is logged; local state is cleared regardless.
        """
        if self._tokens is None:
            self._state = TokenState.UNAUTHENTICATED
            return True

        token = self._tokens.refresh_token or self._tokens.access_token
        try:
            await self._revoke_request(token)
        except httpx.HTTPError as exc:
            logger.warning("%s: token revoke call failed: %s", self.DISPLAY_NAME, exc)

        self._tokens = None
        self._state = TokenState.UNAUTHENTICATED
        logger.info("%s: authorization revoked", self.DISPLAY_NAME)
        return True

    async def fetch_data(
        self,
        metric_type: HealthMetricType,
        start_time: datetime | None = None,
        end_time: datetime | None = None,
    ) -> list[HealthDataPoint]:
        if not self._initialized:
            raise ConnectorNotInitializedError(f"{self.DISPLAY_NAME} connector not initialized")
        if not await self.is_authorized():
            raise NotAuthorizedError(f"{self.DISPLAY_NAME} is not authorized")
        if not self.supports(metric_type):
            raise UnsupportedMetricError(
                f"{self.DISPLAY_NAME} does not support {metric_type.value}"
            )

        end = end_time or self._clock()
        start = start_time or end - self.DEFAULT_FETCH_WINDOW
        try:
            points = await self._fetch(metric_type, start, end)
        except httpx.HTTPStatusError as exc:
            if exc.response.status_code == 401:
                self._drop_access_token()
                raise NotAuthorizedError(
                    f"{self.DISPLAY_NAME} rejected the access token"
                ) from exc
            raise ConnectorError(
                f"{self.DISPLAY_NAME} API error {exc.response.status_code} "
                f"fetching {metric_type.value}"
            ) from exc
        except httpx.HTTPError as exc:
            raise ConnectorError(
                f"{self.DISPLAY_NAME} request failed fetching {metric_type.value}: {exc}"
            ) from exc

        logger.debug(
            "%s: fetched %d %s points", self.DISPLAY_NAME, len(points), metric_type.value
        )
        return points

    async def aclose(self) -> None:
        if self._owns_client and self._http_client is not None:
            await self._http_client.aclose()
            self._http_client = None

    # ------------------------------------------------------------------
    # Platform hooks
    # ------------------------------------------------------------------

    @abstractmethod
    async def _fetch(
        self, metric_type: HealthMetricType, start: datetime, end: datetime
    ) -> list[HealthDataPoint]:
        """Call the platform API and map the response to data points."""

    def _client_auth(self, data: dict[str, str]) -> tuple[dict[str, str], httpx.Auth | None]:
        """Attach client credentials to a token-endpoint request.

        Default: credentials in the form body.  Override for HTTP Basic.
        """
        return {
            **data,
            "client_id": self.oauth.client_id,
            "client_secret": self.oauth.client_secret,
        }, None

    # ------------------------------------------------------------------
    # Token helpers
    # ------------------------------------------------------------------

    def _has_valid_token(self) -> bool:
        return (
            self._tokens is not None
            and bool(self._tokens.access_token)
            and not self._tokens.is_expired(self._clock(), self.TOKEN_EXPIRY_BUFFER_SECONDS)
        )

    def _set_tokens(self, tokens: OAuthTokens) -> None:
        self._tokens = tokens
        self._state = TokenState.AUTHENTICATED

    def _drop_access_token(self) -> None:
        """Forget a rejected access token; a refresh token survives for ``is_authorized``."""
        if self._tokens is not None and self._tokens.refresh_token:
            self._tokens = replace(self._tokens, access_token="", expires_at=None)
        else:
            self._tokens = None
        self._state = TokenState.UNAUTHENTICATED

    async def _refresh(self) -> bool:
        async with self._refresh_lock:
            # A concurrent caller may have refreshed while we waited
            if self._has_valid_token():
                return True
            if self._tokens is None or not self._tokens.refresh_token:
                return False

            refresh_token = self._tokens.refresh_token
            self._state = TokenState.REFRESHING
            try:
                data = await self._token_request(
                    {"grant_type": "refresh_token", "refresh_token": refresh_token}
                )
                tokens = self._parse_token_response(data, previous_refresh_token=refresh_token)
            except (httpx.HTTPError, KeyError, ValueError) as exc:
                logger.warning("%s: token refresh failed: %s", self.DISPLAY_NAME, exc)
                self._state = TokenState.UNAUTHENTICATED
                return False

            self._set_tokens(tokens)
            logger.info("%s: access token refreshed", self.DISPLAY_NAME)
            return True

    def _parse_token_response(
        self, data: dict, previous_refresh_token: str | None = None
    ) -> OAuthTokens:
        expires_in = data.get("expires_in")
        expires_at = (
            self._clock() + timedelta(seconds=int(expires_in))
            if expires_in is not None
            else None
        )
        scope = data.get("scope")
        known = {"access_token", "refresh_token", "expires_in", "token_type", "scope"}
        return OAuthTokens(
            access_token=data["access_token"],
            refresh_token=data.get("refresh_token", previous_refresh_token),
            expires_at=expires_at,
            token_type=data.get("token_type", "Bearer"),
            scope=scope.split() if isinstance(scope, str) else list(self.oauth.scopes),
            extra={k: v for k, v in data.items() if k not in known},
        )

    # ------------------------------------------------------------------
    # HTTP helpers
    # ------------------------------------------------------------------

    def _client(self) -> httpx.AsyncClient:
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=_HTTP_TIMEOUT)
        return self._http_client

    async def _token_request(self, data: dict[str, str]) -> dict:
        body, auth = self._client_auth(data)
        extra = {"auth": auth} if auth is not None else {}
        response = await self._client().post(self.oauth.token_endpoint, data=body, **extra)
        response.raise_for_status()
        return response.json()

    async def _revoke_request(self, token: str) -> None:
        body, auth = self._client_auth({"token": token})
        extra = {"auth": auth} if auth is not None else {}
        response = await self._client().post(self.oauth.revoke_endpoint, data=body, **extra)
        response.raise_for_status()

    def _auth_headers(self) -> dict[str, str]:
        if self._tokens is None:
            raise NotAuthorizedError(f"{self.DISPLAY_NAME} is not authorized")
        return {"Authorization": f"Bearer {self._tokens.access_token}"}

    async def _get(self, url: str, params: dict | None = None) -> dict:
        """Authenticated GET returning the JSON body.

        Raises:
            httpx.HTTPStatusError: On non-2xx responses.
        """
        response = await self._client().get(url, params=params, headers=self._auth_headers())
        response.raise_for_status()
        return response.json()

    async def _post(self, url: str, payload: dict) -> dict:
        response = await self._client().post(url, json=payload, headers=self._auth_headers())
        response.raise_for_status()
        return response.json()
