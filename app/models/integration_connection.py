"""POS integration connection (OAuth credential) storage model."""

from sqlalchemy import Column, String, DateTime, Text, UniqueConstraint
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.sql import func
from app.database import Base
import uuid as uuid_module


class ConnectionStatus:
    PENDING = "pending"
    CONNECTED = "connected"
    ERROR = "error"


class IntegrationConnection(Base):
    """Encrypted OAuth credentials for one company + POS provider.

    Token columns hold serialized ``EncryptedValue`` triples produced by the
    credential vault, never plaintext.
    """

    __tablename__ = "integration_connections"
    __table_args__ = (
        UniqueConstraint("company_id", "provider", name="uq_integration_connections_company_provider"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid_module.uuid4)
    company_id = Column(UUID(as_uuid=True), nullable=False, index=True)
    provider = Column(String(30), nullable=False, default="square")
    access_token_encrypted = Column(Text, nullable=False)
    refresh_token_encrypted = Column(Text, nullable=True)
    token_expires_at = Column(DateTime, nullable=True)
    merchant_id = Column(String(100), nullable=True, index=True)
    location_id = Column(String(100), nullable=True)
    location_name = Column(String(255), nullable=True)
    status = Column(String(20), nullable=False, default=ConnectionStatus.PENDING)
    last_error = Column(Text, nullable=True)
    last_connected_at = Column(DateTime, nullable=True)
    connected_by = Column(String(255), nullable=True)
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, onupdate=func.now())

    def __repr__(self):
        return f"<IntegrationConnection company={self.company_id} provider={self.provider} status={self.status}>"
