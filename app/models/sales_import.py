"""Sync run record: one row per bounded import of POS sales."""

from datetime import datetime

from sqlalchemy import Column, String, Integer, Numeric, Date, DateTime, Text
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.sql import func
from app.database import Base
import uuid as uuid_module


class SyncRunStatus:
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class SalesImport(Base):
    """Tracks a single sync run.

    Created in ``processing`` before any external call and updated exactly
    once when the run finishes, so a crashed run stays ``processing``.
    """

    __tablename__ = "sales_imports"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid_module.uuid4)
    company_id = Column(UUID(as_uuid=True), nullable=False, index=True)
    location_id = Column(String(100), nullable=True)
    import_type = Column(String(30), nullable=False, default="square")
    trigger = Column(String(20), nullable=False, default="manual")
    date_from = Column(Date, nullable=True)
    date_to = Column(Date, nullable=True)
    status = Column(String(20), nullable=False, default=SyncRunStatus.PROCESSING, index=True)
    records_total = Column(Integer, nullable=False, default=0)
    records_imported = Column(Integer, nullable=False, default=0)
    records_skipped = Column(Integer, nullable=False, default=0)
    records_failed = Column(Integer, nullable=False, default=0)
    revenue_total = Column(Numeric(12, 2), nullable=False, default=0)
    error_message = Column(Text, nullable=True)
    error_type = Column(String(30), nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, server_default=func.now())
    completed_at = Column(DateTime, nullable=True)

    def __repr__(self):
        return f"<SalesImport {self.id} company={self.company_id} status={self.status}>"
