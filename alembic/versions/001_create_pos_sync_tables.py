"""Create POS sync tables: integration_connections, sales_imports, sales, sale_items, daily_sales_summary.

Revision ID: 001
Revises:
"""

import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import UUID
from alembic import op

revision = "001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    op.create_table(
        "integration_connections",
        sa.Column("id", UUID(as_uuid=True), primary_key=True),
        sa.Column("company_id", UUID(as_uuid=True), nullable=False, index=True),
        sa.Column("provider", sa.String(30), nullable=False, server_default="square"),
        sa.Column("access_token_encrypted", sa.Text(), nullable=False),
        sa.Column("refresh_token_encrypted", sa.Text(), nullable=True),
        sa.Column("token_expires_at", sa.DateTime(), nullable=True),
        sa.Column("merchant_id", sa.String(100), nullable=True),
        sa.Column("location_id", sa.String(100), nullable=True),
        sa.Column("location_name", sa.String(255), nullable=True),
        sa.Column("status", sa.String(20), nullable=False, server_default="pending"),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("last_connected_at", sa.DateTime(), nullable=True),
        sa.Column("connected_by", sa.String(255), nullable=True),
        sa.Column("created_at", sa.DateTime(), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(), nullable=True),
        sa.UniqueConstraint("company_id", "provider", name="uq_integration_connections_company_provider"),
    )
    op.create_index("ix_integration_connections_merchant_id", "integration_connections", ["merchant_id"])

    op.create_table(
        "sales_imports",
        sa.Column("id", UUID(as_uuid=True), primary_key=True),
        sa.Column("company_id", UUID(as_uuid=True), nullable=False, index=True),
        sa.Column("location_id", sa.String(100), nullable=True),
        sa.Column("import_type", sa.String(30), nullable=False, server_default="square"),
        sa.Column("trigger", sa.String(20), nullable=False, server_default="manual"),
        sa.Column("date_from", sa.Date(), nullable=True),
        sa.Column("date_to", sa.Date(), nullable=True),
        sa.Column("status", sa.String(20), nullable=False, server_default="processing", index=True),
        sa.Column("records_total", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("records_imported", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("records_skipped", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("records_failed", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("revenue_total", sa.Numeric(12, 2), nullable=False, server_default="0"),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("error_type", sa.String(30), nullable=True),
        sa.Column("created_at", sa.DateTime(), server_default=sa.func.now()),
        sa.Column("completed_at", sa.DateTime(), nullable=True),
    )

    op.create_table(
        "sales",
        sa.Column("id", UUID(as_uuid=True), primary_key=True),
        sa.Column("company_id", UUID(as_uuid=True), nullable=False, index=True),
        sa.Column("location_id", sa.String(100), nullable=True, index=True),
        sa.Column("pos_provider", sa.String(30), nullable=False),
        sa.Column("pos_transaction_id", sa.String(100), nullable=False),
        sa.Column("import_batch_id", UUID(as_uuid=True), sa.ForeignKey("sales_imports.id"), nullable=True, index=True),
        sa.Column("sale_date", sa.Date(), nullable=False, index=True),
        sa.Column("gross_revenue", sa.Numeric(12, 2), nullable=False, server_default="0"),
        sa.Column("discounts", sa.Numeric(12, 2), nullable=False, server_default="0"),
        sa.Column("net_revenue", sa.Numeric(12, 2), nullable=False, server_default="0"),
        sa.Column("vat_amount", sa.Numeric(12, 2), nullable=False, server_default="0"),
        sa.Column("tip_amount", sa.Numeric(12, 2), nullable=False, server_default="0"),
        sa.Column("total_amount", sa.Numeric(12, 2), nullable=False, server_default="0"),
        sa.Column("currency", sa.String(3), nullable=True),
        sa.Column("payment_method", sa.String(20), nullable=False, server_default="card"),
        sa.Column("status", sa.String(20), nullable=False, server_default="completed"),
        sa.Column("created_at", sa.DateTime(), server_default=sa.func.now()),
        sa.UniqueConstraint(
            "company_id", "pos_provider", "pos_transaction_id",
            name="uq_sales_company_provider_transaction",
        ),
    )

    op.create_table(
        "sale_items",
        sa.Column("id", UUID(as_uuid=True), primary_key=True),
        sa.Column("sale_id", UUID(as_uuid=True), sa.ForeignKey("sales.id", ondelete="CASCADE"), nullable=False, index=True),
        sa.Column("item_name", sa.String(255), nullable=False),
        sa.Column("category_id", UUID(as_uuid=True), nullable=True),
        sa.Column("pos_item_id", sa.String(100), nullable=True),
        sa.Column("quantity", sa.Numeric(12, 3), nullable=False, server_default="1"),
        sa.Column("unit_price", sa.Numeric(12, 2), nullable=False, server_default="0"),
        sa.Column("line_total", sa.Numeric(12, 2), nullable=False, server_default="0"),
    )

    op.create_table(
        "daily_sales_summary",
        sa.Column("id", UUID(as_uuid=True), primary_key=True),
        sa.Column("company_id", UUID(as_uuid=True), nullable=False, index=True),
        sa.Column("location_id", sa.String(100), nullable=True),
        sa.Column("summary_date", sa.Date(), nullable=False, index=True),
        sa.Column("gross_revenue", sa.Numeric(12, 2), nullable=False, server_default="0"),
        sa.Column("discounts", sa.Numeric(12, 2), nullable=False, server_default="0"),
        sa.Column("net_revenue", sa.Numeric(12, 2), nullable=False, server_default="0"),
        sa.Column("vat_amount", sa.Numeric(12, 2), nullable=False, server_default="0"),
        sa.Column("total_amount", sa.Numeric(12, 2), nullable=False, server_default="0"),
        sa.Column("transaction_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("updated_at", sa.DateTime(), server_default=sa.func.now()),
        sa.UniqueConstraint("company_id", "location_id", "summary_date", name="uq_daily_sales_summary_scope_date"),
    )


def downgrade():
    op.drop_table("daily_sales_summary")
    op.drop_table("sale_items")
    op.drop_table("sales")
    op.drop_table("sales_imports")
    op.drop_table("integration_connections")
