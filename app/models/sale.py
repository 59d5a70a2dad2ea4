"""Normalized POS sales and their line items."""

from sqlalchemy import Column, String, Numeric, Date, DateTime, ForeignKey, UniqueConstraint
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from app.database import Base
import uuid as uuid_module


class Sale(Base):
    """One imported POS order.

    (company_id, pos_provider, pos_transaction_id) is the idempotency key;
    the unique constraint is what makes overlapping sync runs safe.
    """

    __tablename__ = "sales"
    __table_args__ = (
        UniqueConstraint(
            "company_id", "pos_provider", "pos_transaction_id",
            name="uq_sales_company_provider_transaction",
        ),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid_module.uuid4)
    company_id = Column(UUID(as_uuid=True), nullable=False, index=True)
    location_id = Column(String(100), nullable=True, index=True)
    pos_provider = Column(String(30), nullable=False)
    pos_transaction_id = Column(String(100), nullable=False)
    import_batch_id = Column(UUID(as_uuid=True), ForeignKey("sales_imports.id"), nullable=True, index=True)
    sale_date = Column(Date, nullable=False, index=True)
    gross_revenue = Column(Numeric(12, 2), nullable=False, default=0)
    discounts = Column(Numeric(12, 2), nullable=False, default=0)
    net_revenue = Column(Numeric(12, 2), nullable=False, default=0)
    vat_amount = Column(Numeric(12, 2), nullable=False, default=0)
    tip_amount = Column(Numeric(12, 2), nullable=False, default=0)
    total_amount = Column(Numeric(12, 2), nullable=False, default=0)
    currency = Column(String(3), nullable=True)
    payment_method = Column(String(20), nullable=False, default="card")
    status = Column(String(20), nullable=False, default="completed")
    created_at = Column(DateTime, server_default=func.now())

    items = relationship(
        "SaleItem",
        back_populates="sale",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    def __repr__(self):
        return f"<Sale {self.pos_provider}:{self.pos_transaction_id} {self.sale_date} net={self.net_revenue}>"


class SaleItem(Base):
    """Line item owned by a Sale; removed only with its parent."""

    __tablename__ = "sale_items"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid_module.uuid4)
    sale_id = Column(UUID(as_uuid=True), ForeignKey("sales.id", ondelete="CASCADE"), nullable=False, index=True)
    item_name = Column(String(255), nullable=False)
    category_id = Column(UUID(as_uuid=True), nullable=True)
    pos_item_id = Column(String(100), nullable=True)
    quantity = Column(Numeric(12, 3), nullable=False, default=1)
    unit_price = Column(Numeric(12, 2), nullable=False, default=0)
    line_total = Column(Numeric(12, 2), nullable=False, default=0)

    sale = relationship("Sale", back_populates="items")
