"""
Square token lifecycle.

Reads and writes encrypted credentials in ``integration_connections`` and keeps
the access token fresh:
- Tokens expiring within REFRESH_HORIZON are refreshed before being handed out
- A rejected refresh marks the connection as ``error``; only a new OAuth
  authorization brings it back
- Refreshes are single-flighted per company inside the process
"""

import asyncio
import logging
import weakref
from datetime import datetime, timedelta, timezone
from typing import Optional
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.integration_connection import IntegrationConnection, ConnectionStatus
from app.services.encryption import CredentialVault, VaultError
from app.services.square_client import SquareClient
from app.services.square_errors import SquareErrorType, SquareSyncError, classify_error

logger = logging.getLogger(__name__)

PROVIDER = "square"
REFRESH_HORIZON = timedelta(days=7)


def parse_expires_at(value: Optional[str]) -> Optional[datetime]:
    """Parse Square's ``expires_at`` into a naive UTC datetime."""
    if not value:
        return None
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


class SquareTokenManager:
    """Owns every mutation of a company's Square credential record."""

    def __init__(self, client: SquareClient, vault: CredentialVault, now=datetime.utcnow):
        self.client = client
        self.vault = vault
        self._now = now
        # Entries vanish once no caller holds or waits on the lock
        self._refresh_locks: "weakref.WeakValueDictionary[UUID, asyncio.Lock]" = weakref.WeakValueDictionary()

    def _refresh_lock(self, company_id: UUID) -> asyncio.Lock:
        lock = self._refresh_locks.get(company_id)
        if lock is None:
            lock = asyncio.Lock()
            self._refresh_locks[company_id] = lock
        return lock

    async def get_connection(self, db: AsyncSession, company_id: UUID) -> Optional[IntegrationConnection]:
        result = await db.execute(
            select(IntegrationConnection)
            .where(
                IntegrationConnection.company_id == company_id,
                IntegrationConnection.provider == PROVIDER,
            )
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    def _needs_refresh(self, connection: IntegrationConnection) -> bool:
        if connection.token_expires_at is None:
            return True
        return connection.token_expires_at <= self._now() + REFRESH_HORIZON

    async def get_valid_access_token(self, db: AsyncSession, company_id: UUID) -> Optional[str]:
        """Return a usable access token, refreshing it first if it is close to expiry.

        Returns None when there is no connection, the connection is in
        ``error``, or the refresh fails; the caller should prompt a reconnect.
        """
        connection = await self.get_connection(db, company_id)
        if connection is None:
            return None
        if connection.status == ConnectionStatus.ERROR:
            logger.info(f"Square connection for company {company_id} is in error state")
            return None

        if self._needs_refresh(connection):
            logger.info(f"Square token for company {company_id} expires soon, refreshing")
            if not await self.refresh(db, company_id, only_if_needed=True):
                return None
            connection = await self.get_connection(db, company_id)
            if connection is None:
                return None

        try:
            return self.vault.decrypt_from_str(connection.access_token_encrypted)
        except VaultError as e:
            logger.error(f"Stored Square access token for company {company_id} is unreadable: {e}")
            await self._mark_error(db, connection, "Stored credentials could not be decrypted. Please reconnect Square.")
            return None

    async def refresh(self, db: AsyncSession, company_id: UUID, only_if_needed: bool = False) -> bool:
        """Exchange the stored refresh token for a new token pair.

        No retry here: a rejected refresh token cannot succeed on a second try,
        so the connection goes to ``error`` immediately.
        """
        async with self._refresh_lock(company_id):
            connection = await self.get_connection(db, company_id)
            if connection is None:
                return False
            if connection.status == ConnectionStatus.ERROR:
                return False
            # Another caller may have refreshed while we waited for the lock
            if only_if_needed and not self._needs_refresh(connection):
                return True

            if not connection.refresh_token_encrypted:
                await self._mark_error(db, connection, "No refresh token stored. Please reconnect Square.")
                return False

            try:
                refresh_token = self.vault.decrypt_from_str(connection.refresh_token_encrypted)
            except VaultError as e:
                logger.error(f"Stored Square refresh token for company {company_id} is unreadable: {e}")
                await self._mark_error(db, connection, "Stored credentials could not be decrypted. Please reconnect Square.")
                return False

            try:
                data = await self.client.refresh_access_token(refresh_token)
            except Exception as e:
                error = classify_error(e)
                logger.warning(f"Square token refresh failed for company {company_id}: {error!r}")
                await self._mark_error(db, connection, f"Token refresh failed: {error.message}")
                return False

            access_token = data.get("access_token")
            if not access_token:
                await self._mark_error(db, connection, "Token refresh failed: response did not include an access token")
                return False

            connection.access_token_encrypted = self.vault.encrypt_to_str(access_token)
            # Square keeps the same refresh token unless it rotates it
            new_refresh = data.get("refresh_token") or refresh_token
            connection.refresh_token_encrypted = self.vault.encrypt_to_str(new_refresh)
            connection.token_expires_at = parse_expires_at(data.get("expires_at"))
            connection.last_error = None
            await db.commit()
            logger.info(f"Square token refreshed for company {company_id}")
            return True

    async def _mark_error(self, db: AsyncSession, connection: IntegrationConnection, reason: str):
        connection.status = ConnectionStatus.ERROR
        connection.last_error = reason
        await db.commit()

    # =========================================================================
    # Connection lifecycle
    # =========================================================================

    async def store_authorization(
        self,
        db: AsyncSession,
        company_id: UUID,
        token_payload: dict,
        connected_by: Optional[str] = None,
    ) -> IntegrationConnection:
        """Persist a fresh OAuth grant. The connection waits in ``pending`` for a location."""
        access_token = token_payload.get("access_token")
        if not access_token:
            raise SquareSyncError(SquareErrorType.VALIDATION, "OAuth response did not include an access token")

        connection = await self.get_connection(db, company_id)
        if connection is None:
            connection = IntegrationConnection(company_id=company_id, provider=PROVIDER)
            db.add(connection)

        connection.access_token_encrypted = self.vault.encrypt_to_str(access_token)
        refresh_token = token_payload.get("refresh_token")
        connection.refresh_token_encrypted = self.vault.encrypt_to_str(refresh_token) if refresh_token else None
        connection.token_expires_at = parse_expires_at(token_payload.get("expires_at"))
        connection.merchant_id = token_payload.get("merchant_id")
        connection.location_id = None
        connection.location_name = None
        connection.status = ConnectionStatus.PENDING
        connection.last_error = None
        connection.connected_by = connected_by
        await db.commit()
        await db.refresh(connection)
        logger.info(f"Square authorization stored for company {company_id} (merchant {connection.merchant_id})")
        return connection

    async def select_location(
        self,
        db: AsyncSession,
        company_id: UUID,
        location_id: str,
        location_name: Optional[str] = None,
    ) -> Optional[IntegrationConnection]:
        connection = await self.get_connection(db, company_id)
        if connection is None:
            return None
        connection.location_id = location_id
        connection.location_name = location_name
        if connection.status == ConnectionStatus.PENDING:
            connection.status = ConnectionStatus.CONNECTED
            connection.last_connected_at = self._now()
        await db.commit()
        await db.refresh(connection)
        return connection

    async def mark_synced(self, db: AsyncSession, company_id: UUID):
        """Record a successful sync as the latest good contact with Square."""
        connection = await self.get_connection(db, company_id)
        if connection is not None and connection.status == ConnectionStatus.CONNECTED:
            connection.last_connected_at = self._now()
            await db.commit()

    async def disconnect(self, db: AsyncSession, company_id: UUID) -> bool:
        """Revoke upstream (best effort) and delete the credential record."""
        connection = await self.get_connection(db, company_id)
        if connection is None:
            return False

        try:
            access_token = self.vault.decrypt_from_str(connection.access_token_encrypted)
            await self.client.revoke_token(access_token)
        except (VaultError, SquareSyncError) as e:
            logger.warning(f"Square token revocation skipped for company {company_id}: {e}")

        await db.delete(connection)
        await db.commit()
        logger.info(f"Square disconnected for company {company_id}")
        return True

    async def get_status(self, db: AsyncSession, company_id: UUID) -> dict:
        connection = await self.get_connection(db, company_id)
        if connection is None:
            return {"connected": False, "status": None, "message": "Square is not connected"}

        return {
            "connected": connection.status == ConnectionStatus.CONNECTED,
            "status": connection.status,
            "merchant_id": connection.merchant_id,
            "location_id": connection.location_id,
            "location_name": connection.location_name,
            "last_error": connection.last_error,
            "last_connected_at": connection.last_connected_at.isoformat() if connection.last_connected_at else None,
            "token_expires_at": connection.token_expires_at.isoformat() if connection.token_expires_at else None,
        }
