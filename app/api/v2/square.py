"""
Square Integration API Endpoints

Provides:
- OAuth 2.0 connection flow (authorize → callback → encrypted token storage)
- Location listing and selection
- Manual "sync now" and recent sync runs
- Disconnect
"""

from datetime import datetime, timedelta
from typing import Annotated, Optional
from uuid import UUID, uuid4
from urllib.parse import urlencode
import logging

from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.responses import RedirectResponse
from jose import JWTError, jwt
from pydantic import BaseModel, Field
from sqlalchemy import select

from app.api.deps import DbSession, Tenant, AdminTenant
from app.config import settings
from app.exceptions import APIException, ErrorCode
from app.models.sales_import import SalesImport
from app.services.square_errors import SquareErrorType, SquareSyncError, classify_error
from app.services.square_sync_service import (
    SquareSyncService,
    get_square_sync_service,
)

logger = logging.getLogger(__name__)

router = APIRouter()

STATE_TTL_MINUTES = 10
SETTINGS_PATH = "/dashboard/settings/integrations"


# =============================================================================
# Pydantic Schemas
# =============================================================================


class SquareConnectionStatus(BaseModel):
    connected: bool
    status: Optional[str] = None
    merchant_id: Optional[str] = None
    location_id: Optional[str] = None
    location_name: Optional[str] = None
    last_error: Optional[str] = None
    last_connected_at: Optional[str] = None
    token_expires_at: Optional[str] = None
    message: Optional[str] = None


class SquareAuthURL(BaseModel):
    auth_url: str
    state: str


class SquareLocationOut(BaseModel):
    id: str
    name: str
    address: Optional[str] = None
    status: Optional[str] = None


class SelectLocationRequest(BaseModel):
    location_id: str = Field(..., min_length=1)
    location_name: Optional[str] = None


class SyncRequest(BaseModel):
    date_from: Optional[str] = None
    date_to: Optional[str] = None
    location_id: Optional[str] = None


class SyncRunOut(BaseModel):
    id: str
    status: str
    trigger: str
    date_from: Optional[str] = None
    date_to: Optional[str] = None
    records_total: int
    records_imported: int
    records_skipped: int
    records_failed: int
    revenue_total: float
    error_message: Optional[str] = None
    error_type: Optional[str] = None
    created_at: Optional[str] = None
    completed_at: Optional[str] = None


SyncService = Annotated[SquareSyncService, Depends(get_square_sync_service)]


# =============================================================================
# OAuth state (signed, short-lived, carries the tenant through the redirect)
# =============================================================================


def create_oauth_state(company_id: UUID, connected_by: Optional[str]) -> str:
    payload = {
        "company_id": str(company_id),
        "connected_by": connected_by,
        "nonce": uuid4().hex,
        "purpose": "square_oauth",
        "exp": datetime.utcnow() + timedelta(minutes=STATE_TTL_MINUTES),
    }
    return jwt.encode(payload, settings.SECRET_KEY, algorithm=settings.ALGORITHM)


def decode_oauth_state(state: str) -> dict:
    payload = jwt.decode(state, settings.SECRET_KEY, algorithms=[settings.ALGORITHM])
    if payload.get("purpose") != "square_oauth" or not payload.get("company_id"):
        raise JWTError("state is not a Square OAuth state")
    return payload


def _settings_redirect(**params) -> RedirectResponse:
    return RedirectResponse(
        f"{settings.FRONTEND_URL}{SETTINGS_PATH}?{urlencode(params)}",
        status_code=302,
    )


def _format_address(address: Optional[dict]) -> Optional[str]:
    if not address:
        return None
    parts = [
        address.get("address_line_1"),
        address.get("locality"),
        address.get("postal_code"),
    ]
    return ", ".join(p for p in parts if p) or None


# =============================================================================
# Connection Endpoints
# =============================================================================


@router.get("/status")
async def get_square_status(db: DbSession, tenant: Tenant, service: SyncService) -> SquareConnectionStatus:
    """Get Square connection status for the caller's company."""
    status = await service.token_manager.get_status(db, tenant.company_id)
    return SquareConnectionStatus(**status)


@router.get("/authorize")
async def authorize_square(tenant: AdminTenant, service: SyncService) -> SquareAuthURL:
    """Start the Square OAuth 2.0 flow."""
    if not service.client.is_oauth_configured():
        raise HTTPException(
            status_code=503,
            detail="Square integration not configured. Set SQUARE_CLIENT_ID and SQUARE_CLIENT_SECRET.",
        )
    state = create_oauth_state(tenant.company_id, tenant.email)
    auth_url = service.client.get_authorization_url(state)
    if not auth_url:
        raise HTTPException(status_code=503, detail="Failed to generate auth URL")
    return SquareAuthURL(auth_url=auth_url, state=state)


@router.get("/callback")
async def square_oauth_callback(
    db: DbSession,
    service: SyncService,
    code: Optional[str] = Query(None),
    state: str = Query(""),
    error: Optional[str] = Query(None),
) -> RedirectResponse:
    """Handle the Square redirect: exchange the code and store encrypted tokens."""
    if error:
        logger.warning(f"Square authorization declined: {error}")
        return _settings_redirect(square="error", reason=error)
    if not code:
        return _settings_redirect(square="error", reason="missing_code")

    try:
        state_payload = decode_oauth_state(state)
    except JWTError:
        logger.warning("Square OAuth callback with invalid state")
        return _settings_redirect(square="error", reason="invalid_state")

    company_id = UUID(state_payload["company_id"])
    try:
        token_payload = await service.client.obtain_token(code, settings.SQUARE_REDIRECT_URI)
        await service.token_manager.store_authorization(
            db, company_id, token_payload, connected_by=state_payload.get("connected_by")
        )
    except Exception as e:
        classified = classify_error(e)
        logger.error(f"Square code exchange failed for company {company_id}: {classified!r}")
        return _settings_redirect(square="error", reason="token_exchange_failed")

    return _settings_redirect(square="connected")


@router.get("/locations")
async def list_square_locations(db: DbSession, tenant: AdminTenant, service: SyncService) -> dict:
    """List the merchant's active Square locations for selection."""
    access_token = await service.token_manager.get_valid_access_token(db, tenant.company_id)
    if not access_token:
        raise SquareSyncError(SquareErrorType.TOKEN_UNAVAILABLE, "token unavailable")

    locations = await service.client.list_locations(access_token)
    return {
        "locations": [
            SquareLocationOut(
                id=loc["id"],
                name=loc.get("name") or loc["id"],
                address=_format_address(loc.get("address")),
                status=loc.get("status"),
            ).model_dump()
            for loc in locations
            if loc.get("status", "ACTIVE") == "ACTIVE"
        ]
    }


@router.post("/select-location")
async def select_square_location(
    body: SelectLocationRequest,
    db: DbSession,
    tenant: AdminTenant,
    service: SyncService,
) -> SquareConnectionStatus:
    """Choose which Square location feeds this company's sales."""
    connection = await service.token_manager.select_location(
        db, tenant.company_id, body.location_id, body.location_name
    )
    if connection is None:
        raise APIException(
            status_code=409,
            code=ErrorCode.SQUARE_NOT_CONNECTED,
            detail="Square is not connected",
        )
    status = await service.token_manager.get_status(db, tenant.company_id)
    return SquareConnectionStatus(**status)


@router.post("/disconnect")
async def disconnect_square(db: DbSession, tenant: AdminTenant, service: SyncService) -> dict:
    """Revoke and delete the company's Square credentials."""
    disconnected = await service.token_manager.disconnect(db, tenant.company_id)
    return {"success": disconnected}


# =============================================================================
# Sync Endpoints
# =============================================================================


@router.post("/sync")
async def sync_square_sales(
    db: DbSession,
    tenant: Tenant,
    service: SyncService,
    body: Optional[SyncRequest] = None,
) -> dict:
    """Run a sales sync now (defaults to the trailing 7 days)."""
    body = body or SyncRequest()
    result = await service.sync_sales(
        db,
        tenant.company_id,
        location_id=body.location_id,
        date_from=body.date_from,
        date_to=body.date_to,
        trigger="manual",
    )
    if not result.success and result.sync_run_id is None and result.error_type == SquareErrorType.VALIDATION.value:
        raise APIException(status_code=400, code=ErrorCode.VALIDATION_ERROR, detail=result.error)
    return {"success": result.success, "result": result.to_dict(), "error": result.error}


@router.get("/sync-runs")
async def list_sync_runs(
    db: DbSession,
    tenant: Tenant,
    limit: int = Query(20, ge=1, le=100),
) -> list[SyncRunOut]:
    """Most recent sync runs for the caller's company."""
    result = await db.execute(
        select(SalesImport)
        .where(SalesImport.company_id == tenant.company_id)
        .order_by(SalesImport.created_at.desc())
        .limit(limit)
    )
    return [
        SyncRunOut(
            id=str(run.id),
            status=run.status,
            trigger=run.trigger,
            date_from=run.date_from.isoformat() if run.date_from else None,
            date_to=run.date_to.isoformat() if run.date_to else None,
            records_total=run.records_total or 0,
            records_imported=run.records_imported or 0,
            records_skipped=run.records_skipped or 0,
            records_failed=run.records_failed or 0,
            revenue_total=float(run.revenue_total or 0),
            error_message=run.error_message,
            error_type=run.error_type,
            created_at=run.created_at.isoformat() if run.created_at else None,
            completed_at=run.completed_at.isoformat() if run.completed_at else None,
        )
        for run in result.scalars().all()
    ]
