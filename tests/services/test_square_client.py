"""
Tests for the Square API client.

Uses httpx.MockTransport so no request leaves the process; backoff delays are
recorded by a fake sleep instead of waited.
"""

import json
from datetime import datetime

import httpx
import pytest

from app.services.square_client import SquareClient
from app.services.square_errors import SquareErrorType, SquareSyncError


class RecordingSleep:
    def __init__(self):
        self.delays = []

    async def __call__(self, seconds):
        self.delays.append(seconds)


def _client(handler, sleep=None, environment="sandbox"):
    return SquareClient(
        environment=environment,
        client_id="sq0idp-test-client",
        client_secret="sq0csp-test-secret",
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
        sleep=sleep or RecordingSleep(),
    )


def _rate_limited():
    return httpx.Response(429, json={"errors": [{"category": "RATE_LIMIT_ERROR", "code": "RATE_LIMITED", "detail": "slow down"}]})


class TestRateLimitRetry:
    """429 responses are retried after 1s, 2s and 4s."""

    @pytest.mark.asyncio
    async def test_succeeds_after_two_rate_limits(self):
        calls = []

        def handler(request):
            calls.append(request)
            if len(calls) <= 2:
                return _rate_limited()
            return httpx.Response(200, json={"locations": [{"id": "L1"}]})

        sleep = RecordingSleep()
        client = _client(handler, sleep)

        locations = await client.list_locations("token")

        assert locations == [{"id": "L1"}]
        assert len(calls) == 3
        assert sleep.delays == [1.0, 2.0]

    @pytest.mark.asyncio
    async def test_succeeds_after_three_rate_limits(self):
        calls = []

        def handler(request):
            calls.append(request)
            if len(calls) <= 3:
                return _rate_limited()
            return httpx.Response(200, json={"locations": [{"id": "L1"}]})

        sleep = RecordingSleep()
        client = _client(handler, sleep)

        locations = await client.list_locations("token")

        assert locations == [{"id": "L1"}]
        assert len(calls) == 4
        assert sleep.delays == [1.0, 2.0, 4.0]

    @pytest.mark.asyncio
    async def test_exhausted_retries_raise_rate_limit(self):
        calls = []

        def handler(request):
            calls.append(request)
            return _rate_limited()

        sleep = RecordingSleep()
        client = _client(handler, sleep)

        with pytest.raises(SquareSyncError) as exc_info:
            await client.list_locations("token")

        assert exc_info.value.error_type == SquareErrorType.RATE_LIMIT
        assert len(calls) == 4
        assert sleep.delays == [1.0, 2.0, 4.0]

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "status_code, expected",
        [
            (400, SquareErrorType.VALIDATION),
            (401, SquareErrorType.AUTH),
            (404, SquareErrorType.NOT_FOUND),
            (500, SquareErrorType.API),
        ],
    )
    async def test_other_errors_are_not_retried(self, status_code, expected):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(status_code, json={"errors": [{"category": "X", "code": "Y", "detail": "failed"}]})

        sleep = RecordingSleep()
        client = _client(handler, sleep)

        with pytest.raises(SquareSyncError) as exc_info:
            await client.get_order("token", "ORDER-1")

        assert exc_info.value.error_type == expected
        assert len(calls) == 1
        assert sleep.delays == []

    @pytest.mark.asyncio
    async def test_transport_failure_is_unknown(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        with pytest.raises(SquareSyncError) as exc_info:
            await _client(handler).list_locations("token")

        assert exc_info.value.error_type == SquareErrorType.UNKNOWN

    @pytest.mark.asyncio
    async def test_non_json_success_body_is_unknown(self):
        def handler(request):
            return httpx.Response(200, text="<html>maintenance</html>")

        with pytest.raises(SquareSyncError) as exc_info:
            await _client(handler).list_locations("token")

        assert exc_info.value.error_type == SquareErrorType.UNKNOWN


class TestRequests:
    """Request shape for the endpoints the sync uses."""

    @pytest.mark.asyncio
    async def test_search_orders_payload(self):
        captured = {}

        def handler(request):
            captured["request"] = request
            return httpx.Response(200, json={"orders": [], "cursor": "next"})

        client = _client(handler)
        page = await client.search_orders(
            "EAAA-token",
            "L-TEST-1",
            datetime(2026, 10, 12),
            datetime(2026, 10, 13),
            cursor="abc",
            limit=50,
        )

        request = captured["request"]
        body = json.loads(request.content)
        assert request.url == "https://connect.squareupsandbox.com/v2/orders/search"
        assert request.headers["Authorization"] == "Bearer EAAA-token"
        assert request.headers["Square-Version"]
        assert body["location_ids"] == ["L-TEST-1"]
        assert body["query"]["filter"]["state_filter"] == {"states": ["COMPLETED"]}
        assert body["query"]["filter"]["date_time_filter"]["closed_at"] == {
            "start_at": "2026-10-12T00:00:00Z",
            "end_at": "2026-10-13T00:00:00Z",
        }
        assert body["query"]["sort"] == {"sort_field": "CLOSED_AT", "sort_order": "ASC"}
        assert body["cursor"] == "abc"
        assert body["limit"] == 50
        assert page == {"orders": [], "cursor": "next"}

    @pytest.mark.asyncio
    async def test_refresh_grant_payload(self):
        captured = {}

        def handler(request):
            captured["body"] = json.loads(request.content)
            return httpx.Response(200, json={"access_token": "new", "expires_at": "2026-11-18T00:00:00Z"})

        data = await _client(handler).refresh_access_token("EQAA-refresh")

        assert data["access_token"] == "new"
        assert captured["body"] == {
            "client_id": "sq0idp-test-client",
            "client_secret": "sq0csp-test-secret",
            "refresh_token": "EQAA-refresh",
            "grant_type": "refresh_token",
        }

    @pytest.mark.asyncio
    async def test_revoke_uses_client_authorization(self):
        captured = {}

        def handler(request):
            captured["request"] = request
            return httpx.Response(200, json={"success": True})

        await _client(handler).revoke_token("EAAA-token")

        assert captured["request"].url.path == "/oauth2/revoke"
        assert captured["request"].headers["Authorization"] == "Client sq0csp-test-secret"

    @pytest.mark.asyncio
    async def test_revoke_transport_failure_is_classified(self):
        def handler(request):
            raise httpx.ConnectError("square unreachable", request=request)

        with pytest.raises(SquareSyncError) as exc_info:
            await _client(handler).revoke_token("EAAA-token")

        assert exc_info.value.error_type == SquareErrorType.UNKNOWN

    def test_production_base_url(self):
        client = _client(lambda r: httpx.Response(200), environment="production")
        assert client.base_url == "https://connect.squareup.com"

    def test_authorization_url_carries_state_and_scopes(self):
        client = _client(lambda r: httpx.Response(200))
        url = client.get_authorization_url("signed-state")
        assert url.startswith("https://connect.squareupsandbox.com/oauth2/authorize?")
        assert "state=signed-state" in url
        assert "ORDERS_READ" in url
