import base64
import hashlib
import hmac
import json
import logging
from typing import Optional

from fastapi import APIRouter, BackgroundTasks, HTTPException, Request
from sqlalchemy import select

from app.config import settings
from app.database import async_session_maker
from app.models.integration_connection import IntegrationConnection, ConnectionStatus
from app.services.square_sync_service import get_square_sync_service

logger = logging.getLogger(__name__)

square_router = APIRouter()

SIGNATURE_HEADER = "x-square-hmacsha256-signature"
ORDER_EVENTS = {"order.created": "order_created", "order.updated": "order_updated"}


def verify_square_signature(
    body: bytes,
    signature: Optional[str],
    signature_key: Optional[str],
    notification_url: Optional[str],
) -> bool:
    """Square signs notification URL + raw body with HMAC-SHA256, base64 encoded."""
    if not signature or not signature_key or not notification_url:
        return False
    digest = hmac.new(
        signature_key.encode("utf-8"),
        notification_url.encode("utf-8") + body,
        hashlib.sha256,
    ).digest()
    expected = base64.b64encode(digest).decode("utf-8")
    return hmac.compare_digest(expected, signature)


async def sync_order_from_webhook(merchant_id: str, order_id: str, location_id: Optional[str]):
    """Background task: import one completed order for the matching company."""
    async with async_session_maker() as db:
        result = await db.execute(
            select(IntegrationConnection).where(
                IntegrationConnection.merchant_id == merchant_id,
                IntegrationConnection.provider == "square",
                IntegrationConnection.status == ConnectionStatus.CONNECTED,
            )
        )
        connection = result.scalar_one_or_none()
        if connection is None:
            logger.info(f"Square webhook for unknown or inactive merchant {merchant_id}, ignoring")
            return
        if connection.location_id and location_id and connection.location_id != location_id:
            logger.debug(f"Square order {order_id} is for location {location_id}, not the selected one")
            return

        service = get_square_sync_service()
        sync_result = await service.sync_single_order(db, connection.company_id, connection.location_id, order_id)
        if not sync_result.success:
            logger.warning(f"Webhook sync of Square order {order_id} failed: {sync_result.error}")


@square_router.post("")
async def handle_square_webhook(request: Request, background_tasks: BackgroundTasks):
    """
    Handle Square order notifications.

    Completed orders are imported through the normal sync path scoped to the
    order's date, so idempotency and normalization are shared with manual syncs.
    """
    body = await request.body()
    if not verify_square_signature(
        body,
        request.headers.get(SIGNATURE_HEADER),
        settings.SQUARE_WEBHOOK_SIGNATURE_KEY,
        settings.SQUARE_WEBHOOK_URL,
    ):
        logger.warning("Square webhook rejected: invalid signature")
        raise HTTPException(status_code=403, detail="Invalid signature")

    try:
        event = json.loads(body)
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid JSON payload")

    event_type = event.get("type")
    object_key = ORDER_EVENTS.get(event_type)
    if object_key is None:
        return {"received": True, "handled": False}

    order_info = ((event.get("data") or {}).get("object") or {}).get(object_key) or {}
    order_id = order_info.get("order_id")
    merchant_id = event.get("merchant_id")
    state = order_info.get("state")

    if not order_id or not merchant_id:
        return {"received": True, "handled": False}
    if state and state != "COMPLETED":
        return {"received": True, "handled": False}

    logger.info(f"Square {event_type} for order {order_id}, scheduling import")
    background_tasks.add_task(sync_order_from_webhook, merchant_id, order_id, order_info.get("location_id"))
    return {"received": True, "handled": True}
