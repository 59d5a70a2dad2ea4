"""
FastAPI Dependencies

Provides dependency injection for database sessions and the tenant context.

SECURITY NOTES:
- JWT payloads are never logged
- The company (tenant) always comes from the verified token, never from the request body
"""

from dataclasses import dataclass
from typing import Annotated
from uuid import UUID
import logging

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from sqlalchemy.ext.asyncio import AsyncSession
from jose import JWTError, jwt

from app.database import get_db
from app.config import settings

logger = logging.getLogger(__name__)

security = HTTPBearer(auto_error=False)

ADMIN_ROLES = {"Admin", "Owner", "General Manager"}


@dataclass
class TenantContext:
    """Authenticated caller scoped to one company."""

    user_id: str
    company_id: UUID
    role: str
    email: str | None = None

    @property
    def is_admin(self) -> bool:
        return self.role in ADMIN_ROLES


async def get_tenant(
    credentials: Annotated[HTTPAuthorizationCredentials | None, Depends(security)] = None,
) -> TenantContext:
    """Decode the bearer JWT into a tenant context."""
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )
    if not credentials:
        raise credentials_exception

    try:
        payload = jwt.decode(credentials.credentials, settings.SECRET_KEY, algorithms=[settings.ALGORITHM])
        # SECURITY: Never log JWT payloads
        sub = payload.get("sub")
        company_id = payload.get("company_id")
        if sub is None or company_id is None:
            raise credentials_exception
        return TenantContext(
            user_id=str(sub),
            company_id=UUID(str(company_id)),
            role=payload.get("role", ""),
            email=payload.get("email"),
        )
    except JWTError:
        logger.warning("JWT validation failed")
        raise credentials_exception
    except ValueError:
        logger.warning("Invalid company_id in token")
        raise credentials_exception


async def get_admin_tenant(tenant: Annotated[TenantContext, Depends(get_tenant)]) -> TenantContext:
    """Connection changes are restricted to company admins."""
    if not tenant.is_admin:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Admin role required")
    return tenant


# Type aliases for dependency injection
DbSession = Annotated[AsyncSession, Depends(get_db)]
Tenant = Annotated[TenantContext, Depends(get_tenant)]
AdminTenant = Annotated[TenantContext, Depends(get_admin_tenant)]
