from app.models.integration_connection import IntegrationConnection, ConnectionStatus
from app.models.sales_import import SalesImport, SyncRunStatus
from app.models.sale import Sale, SaleItem
from app.models.daily_sales_summary import DailySalesSummary

__all__ = [
    "IntegrationConnection",
    "ConnectionStatus",
    "SalesImport",
    "SyncRunStatus",
    "Sale",
    "SaleItem",
    "DailySalesSummary",
]
