"""
Tests for the Square webhook endpoint.

Signature verification, event filtering and the background order import.
"""

import base64
import hashlib
import hmac
import json
import uuid
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from httpx import AsyncClient, ASGITransport
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.config import settings
from app.main import app
from app.models.integration_connection import ConnectionStatus
from app.services.square_sync_service import SyncResult
from app.webhooks.square import sync_order_from_webhook, verify_square_signature


def _sign(body: bytes) -> str:
    digest = hmac.new(
        settings.SQUARE_WEBHOOK_SIGNATURE_KEY.encode(),
        settings.SQUARE_WEBHOOK_URL.encode() + body,
        hashlib.sha256,
    ).digest()
    return base64.b64encode(digest).decode()


def _order_event(event_type="order.updated", state="COMPLETED", order_id="ORDER-42"):
    object_key = "order_updated" if event_type == "order.updated" else "order_created"
    return {
        "merchant_id": "MERCHANT-1",
        "type": event_type,
        "event_id": str(uuid.uuid4()),
        "data": {
            "type": "order",
            "id": order_id,
            "object": {
                object_key: {
                    "order_id": order_id,
                    "location_id": "L-TEST-1",
                    "state": state,
                    "version": 3,
                }
            },
        },
    }


async def _post(body: bytes, signature: str | None):
    headers = {"Content-Type": "application/json"}
    if signature is not None:
        headers["x-square-hmacsha256-signature"] = signature
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        return await client.post("/webhooks/square", content=body, headers=headers)


class TestSignature:
    def test_valid_signature(self):
        body = b'{"type":"order.updated"}'
        assert verify_square_signature(body, _sign(body), settings.SQUARE_WEBHOOK_SIGNATURE_KEY, settings.SQUARE_WEBHOOK_URL)

    def test_body_tampering_detected(self):
        signature = _sign(b'{"type":"order.updated"}')
        assert not verify_square_signature(b'{"type":"order.created"}', signature, settings.SQUARE_WEBHOOK_SIGNATURE_KEY, settings.SQUARE_WEBHOOK_URL)

    def test_missing_key_rejects(self):
        body = b"{}"
        assert not verify_square_signature(body, _sign(body), None, settings.SQUARE_WEBHOOK_URL)


class TestWebhookEndpoint:
    @pytest.mark.asyncio
    async def test_invalid_signature_forbidden(self):
        body = json.dumps(_order_event()).encode()
        response = await _post(body, "bm90LWEtc2lnbmF0dXJl")
        assert response.status_code == 403

    @pytest.mark.asyncio
    async def test_missing_signature_forbidden(self):
        response = await _post(json.dumps(_order_event()).encode(), None)
        assert response.status_code == 403

    @pytest.mark.asyncio
    async def test_completed_order_scheduled(self):
        body = json.dumps(_order_event()).encode()
        with patch("app.webhooks.square.sync_order_from_webhook", new_callable=AsyncMock) as sync_task:
            response = await _post(body, _sign(body))

        assert response.status_code == 200
        assert response.json() == {"received": True, "handled": True}
        sync_task.assert_awaited_once_with("MERCHANT-1", "ORDER-42", "L-TEST-1")

    @pytest.mark.asyncio
    async def test_open_order_ignored(self):
        body = json.dumps(_order_event(state="OPEN")).encode()
        with patch("app.webhooks.square.sync_order_from_webhook", new_callable=AsyncMock) as sync_task:
            response = await _post(body, _sign(body))

        assert response.json() == {"received": True, "handled": False}
        sync_task.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_other_events_acknowledged(self):
        body = json.dumps({"merchant_id": "MERCHANT-1", "type": "payment.updated", "data": {}}).encode()
        response = await _post(body, _sign(body))

        assert response.status_code == 200
        assert response.json()["handled"] is False

    @pytest.mark.asyncio
    async def test_invalid_json(self):
        body = b"not json"
        response = await _post(body, _sign(body))
        assert response.status_code == 400


class TestSyncOrderFromWebhook:
    @pytest.fixture
    def session_maker(self, test_db):
        return async_sessionmaker(test_db.bind, class_=AsyncSession, expire_on_commit=False)

    @pytest.fixture
    def service(self):
        service = MagicMock()
        service.sync_single_order = AsyncMock(return_value=SyncResult(success=True))
        return service

    @pytest.mark.asyncio
    async def test_imports_for_matching_merchant(self, make_connection, session_maker, service, company_id):
        await make_connection()

        with patch("app.webhooks.square.async_session_maker", session_maker), \
                patch("app.webhooks.square.get_square_sync_service", return_value=service):
            await sync_order_from_webhook("MERCHANT-1", "ORDER-42", "L-TEST-1")

        args = service.sync_single_order.await_args.args
        assert args[1:] == (company_id, "L-TEST-1", "ORDER-42")

    @pytest.mark.asyncio
    async def test_unknown_merchant_ignored(self, make_connection, session_maker, service):
        await make_connection()

        with patch("app.webhooks.square.async_session_maker", session_maker), \
                patch("app.webhooks.square.get_square_sync_service", return_value=service):
            await sync_order_from_webhook("MERCHANT-OTHER", "ORDER-42", "L-TEST-1")

        service.sync_single_order.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_other_location_ignored(self, make_connection, session_maker, service):
        await make_connection()

        with patch("app.webhooks.square.async_session_maker", session_maker), \
                patch("app.webhooks.square.get_square_sync_service", return_value=service):
            await sync_order_from_webhook("MERCHANT-1", "ORDER-42", "L-SOMEWHERE-ELSE")

        service.sync_single_order.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_errored_connection_ignored(self, make_connection, session_maker, service):
        await make_connection(status=ConnectionStatus.ERROR)

        with patch("app.webhooks.square.async_session_maker", session_maker), \
                patch("app.webhooks.square.get_square_sync_service", return_value=service):
            await sync_order_from_webhook("MERCHANT-1", "ORDER-42", "L-TEST-1")

        service.sync_single_order.assert_not_awaited()
