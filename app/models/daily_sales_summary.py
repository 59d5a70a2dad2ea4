"""Per-day sales aggregate recomputed after each sync run."""

from sqlalchemy import Column, String, Integer, Numeric, Date, DateTime, UniqueConstraint
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.sql import func
from app.database import Base
import uuid as uuid_module


class DailySalesSummary(Base):
    __tablename__ = "daily_sales_summary"
    __table_args__ = (
        UniqueConstraint("company_id", "location_id", "summary_date", name="uq_daily_sales_summary_scope_date"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid_module.uuid4)
    company_id = Column(UUID(as_uuid=True), nullable=False, index=True)
    location_id = Column(String(100), nullable=True)
    summary_date = Column(Date, nullable=False, index=True)
    gross_revenue = Column(Numeric(12, 2), nullable=False, default=0)
    discounts = Column(Numeric(12, 2), nullable=False, default=0)
    net_revenue = Column(Numeric(12, 2), nullable=False, default=0)
    vat_amount = Column(Numeric(12, 2), nullable=False, default=0)
    total_amount = Column(Numeric(12, 2), nullable=False, default=0)
    transaction_count = Column(Integer, nullable=False, default=0)
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())
