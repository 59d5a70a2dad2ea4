"""
Square REST API client.

Thin typed wrapper over the Square endpoints the sales sync needs:
- OAuth 2.0 authorization code and refresh token grants, token revocation
- Location listing
- Order search (cursor paginated) and single order fetch

Every call goes through ``_with_retry``: rate-limit responses are retried with
exponential backoff (1s, 2s, 4s), every other failure is raised immediately.
"""

import asyncio
import logging
from datetime import datetime
from typing import Any, Awaitable, Callable, Optional, TypeVar
from urllib.parse import urlencode

import httpx

from app.config import settings
from app.services.square_errors import SquareSyncError, classify_error, classify_response

logger = logging.getLogger(__name__)

T = TypeVar("T")

MAX_RETRIES = 3
BASE_DELAY_SECONDS = 1.0
DEFAULT_PAGE_LIMIT = 100

OAUTH_SCOPES = ["MERCHANT_PROFILE_READ", "ORDERS_READ", "PAYMENTS_READ", "ITEMS_READ"]


class SquareClient:
    """Square API client bound to one environment (sandbox or production)."""

    SANDBOX_BASE_URL = "https://connect.squareupsandbox.com"
    PRODUCTION_BASE_URL = "https://connect.squareup.com"

    def __init__(
        self,
        environment: Optional[str] = None,
        client_id: Optional[str] = None,
        client_secret: Optional[str] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        max_retries: int = MAX_RETRIES,
        base_delay: float = BASE_DELAY_SECONDS,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.environment = environment or settings.SQUARE_ENVIRONMENT
        self.client_id = client_id if client_id is not None else settings.SQUARE_CLIENT_ID
        self.client_secret = client_secret if client_secret is not None else settings.SQUARE_CLIENT_SECRET
        self.api_version = settings.SQUARE_API_VERSION
        self.base_url = (
            self.PRODUCTION_BASE_URL if self.environment == "production" else self.SANDBOX_BASE_URL
        )
        self.max_retries = max_retries
        self.base_delay = base_delay
        self._sleep = sleep
        self._client = http_client or httpx.AsyncClient(timeout=30.0)

    def is_oauth_configured(self) -> bool:
        return bool(self.client_id and self.client_secret)

    async def close(self):
        await self._client.aclose()

    # =========================================================================
    # Transport
    # =========================================================================

    def _headers(self, access_token: Optional[str] = None) -> dict:
        headers = {
            "Accept": "application/json",
            "Content-Type": "application/json",
            "Square-Version": self.api_version,
        }
        if access_token:
            headers["Authorization"] = f"Bearer {access_token}"
        return headers

    async def _request(
        self,
        method: str,
        path: str,
        access_token: Optional[str] = None,
        json_data: Optional[dict] = None,
        params: Optional[dict] = None,
        authorization: Optional[str] = None,
    ) -> dict:
        """Issue one request; non-2xx responses raise a classified error."""
        headers = self._headers(access_token)
        if authorization:
            headers["Authorization"] = authorization
        try:
            response = await self._client.request(
                method,
                f"{self.base_url}{path}",
                headers=headers,
                json=json_data,
                params=params,
            )
        except httpx.HTTPError as e:
            raise classify_error(e) from e

        try:
            body = response.json() if response.content else {}
        except ValueError:
            body = None

        if response.is_success:
            if not isinstance(body, dict):
                raise classify_response(response.status_code, body)
            return body

        error = classify_response(response.status_code, body)
        logger.debug(f"Square {method} {path} failed: {error!r}")
        raise error

    async def _with_retry(self, operation: str, call: Callable[[], Awaitable[T]]) -> T:
        """Run ``call``, absorbing rate limits with exponential backoff."""
        attempt = 0
        while True:
            try:
                return await call()
            except SquareSyncError as e:
                if not e.retryable or attempt >= self.max_retries:
                    raise
                delay = self.base_delay * (2 ** attempt)
                attempt += 1
                logger.warning(
                    f"Square rate limited on {operation}, retry {attempt}/{self.max_retries} in {delay:.0f}s"
                )
                await self._sleep(delay)

    # =========================================================================
    # OAuth 2.0
    # =========================================================================

    def get_authorization_url(self, state: str) -> Optional[str]:
        """Build the Square OAuth authorize URL for the connect button."""
        if not self.client_id:
            return None
        params = {
            "client_id": self.client_id,
            "scope": " ".join(OAUTH_SCOPES),
            "session": "false",
            "state": state,
        }
        return f"{self.base_url}/oauth2/authorize?{urlencode(params)}"

    async def obtain_token(self, code: str, redirect_uri: Optional[str] = None) -> dict:
        """Exchange an authorization code for an access/refresh token pair."""
        payload = {
            "client_id": self.client_id,
            "client_secret": self.client_secret,
            "code": code,
            "grant_type": "authorization_code",
        }
        if redirect_uri:
            payload["redirect_uri"] = redirect_uri
        return await self._with_retry(
            "obtain_token", lambda: self._request("POST", "/oauth2/token", json_data=payload)
        )

    async def refresh_access_token(self, refresh_token: str) -> dict:
        """Refresh-token grant. Square may rotate the refresh token."""
        payload = {
            "client_id": self.client_id,
            "client_secret": self.client_secret,
            "refresh_token": refresh_token,
            "grant_type": "refresh_token",
        }
        return await self._with_retry(
            "refresh_access_token", lambda: self._request("POST", "/oauth2/token", json_data=payload)
        )

    async def revoke_token(self, access_token: str) -> dict:
        """Revoke all access tokens for this application and merchant."""
        payload = {"client_id": self.client_id, "access_token": access_token}
        return await self._with_retry(
            "revoke_token",
            lambda: self._request(
                "POST", "/oauth2/revoke", json_data=payload, authorization=f"Client {self.client_secret}"
            ),
        )

    # =========================================================================
    # Data access
    # =========================================================================

    async def list_locations(self, access_token: str) -> list[dict]:
        body = await self._with_retry(
            "list_locations", lambda: self._request("GET", "/v2/locations", access_token=access_token)
        )
        return body.get("locations", [])

    async def search_orders(
        self,
        access_token: str,
        location_id: str,
        start_at: datetime,
        end_at: datetime,
        cursor: Optional[str] = None,
        limit: int = DEFAULT_PAGE_LIMIT,
    ) -> dict:
        """Search completed orders closed in ``[start_at, end_at)``, oldest first.

        Returns the raw page: ``{"orders": [...], "cursor": "..."}``; the
        cursor is absent on the last page.
        """
        payload = {
            "location_ids": [location_id],
            "query": {
                "filter": {
                    "date_time_filter": {
                        "closed_at": {
                            "start_at": _rfc3339(start_at),
                            "end_at": _rfc3339(end_at),
                        }
                    },
                    "state_filter": {"states": ["COMPLETED"]},
                },
                "sort": {"sort_field": "CLOSED_AT", "sort_order": "ASC"},
            },
            "limit": limit,
        }
        if cursor:
            payload["cursor"] = cursor

        return await self._with_retry(
            "search_orders",
            lambda: self._request("POST", "/v2/orders/search", access_token=access_token, json_data=payload),
        )

    async def get_order(self, access_token: str, order_id: str) -> dict:
        body = await self._with_retry(
            "get_order",
            lambda: self._request("GET", f"/v2/orders/{order_id}", access_token=access_token),
        )
        return body.get("order") or {}


def _rfc3339(value: datetime) -> str:
    # Naive datetimes are UTC throughout the sync engine
    if value.tzinfo is None:
        return value.strftime("%Y-%m-%dT%H:%M:%SZ")
    return value.isoformat()


_square_client: Optional[SquareClient] = None


def get_square_client() -> SquareClient:
    """Get the shared Square client instance."""
    global _square_client
    if _square_client is None:
        _square_client = SquareClient()
    return _square_client
