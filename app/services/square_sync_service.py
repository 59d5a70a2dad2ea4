"""
Square sales sync.

Imports completed Square orders for a company/location over a date window:
1. Create the sync run record (``processing``) before touching Square
2. Resolve a valid access token (refreshing if needed)
3. Page through order search with Square's cursor, skipping orders already
   imported, normalizing the rest and persisting one batch per page
4. Recalculate the daily summary once per affected date
5. Finalize the run record exactly once, as ``completed`` or ``failed``

Re-running a window is safe: (company, provider, transaction id) is unique.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta
from decimal import Decimal
from typing import Any, Awaitable, Callable, Optional, Union
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.logging import sync_run_context
from app.core.sentry import capture_exception
from app.models.integration_connection import ConnectionStatus
from app.models.sale import Sale, SaleItem
from app.models.sales_import import SalesImport, SyncRunStatus
from app.services.daily_summary_service import DailySummaryService, get_daily_summary_service
from app.services.encryption import get_credential_vault
from app.services.square_client import SquareClient, get_square_client, DEFAULT_PAGE_LIMIT
from app.services.square_errors import SquareErrorType, SquareSyncError, classify_error
from app.services.square_mapping import NormalizedSale, map_order, sale_date_for
from app.services.square_token_manager import SquareTokenManager, PROVIDER

logger = logging.getLogger(__name__)

DEFAULT_WINDOW_DAYS = 7
PAGE_DELAY_SECONDS = 0.2

DateLike = Union[str, date, datetime, None]


@dataclass
class SyncResult:
    success: bool
    orders_processed: int = 0
    orders_skipped: int = 0
    orders_failed: int = 0
    revenue_total: Decimal = Decimal("0.00")
    date_from: Optional[date] = None
    date_to: Optional[date] = None
    sync_run_id: Optional[UUID] = None
    error: Optional[str] = None
    error_type: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "ordersProcessed": self.orders_processed,
            "ordersSkipped": self.orders_skipped,
            "ordersFailed": self.orders_failed,
            "revenueTotal": float(self.revenue_total),
            "dateFrom": self.date_from.isoformat() if self.date_from else None,
            "dateTo": self.date_to.isoformat() if self.date_to else None,
            "syncRunId": str(self.sync_run_id) if self.sync_run_id else None,
            "error": self.error,
            "errorType": self.error_type,
        }


@dataclass
class _RunTotals:
    total: int = 0
    imported: int = 0
    skipped: int = 0
    failed: int = 0
    revenue: Decimal = Decimal("0.00")
    affected_dates: set = field(default_factory=set)


def _to_date(value: DateLike) -> Optional[date]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value)[:10])
    except ValueError:
        raise ValueError(f"Invalid date: {value!r} (expected YYYY-MM-DD)")


class SquareSyncService:
    """Drives date-bounded Square sales sync runs."""

    def __init__(
        self,
        client: SquareClient,
        token_manager: SquareTokenManager,
        summary_service: DailySummaryService,
        page_delay: float = PAGE_DELAY_SECONDS,
        page_limit: int = DEFAULT_PAGE_LIMIT,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        today: Callable[[], date] = date.today,
    ):
        self.client = client
        self.token_manager = token_manager
        self.summary_service = summary_service
        self.page_delay = page_delay
        self.page_limit = page_limit
        self._sleep = sleep
        self._today = today

    def resolve_range(self, date_from: DateLike, date_to: DateLike) -> tuple[date, date]:
        """Default to the trailing 7 days ending today."""
        end = _to_date(date_to) or self._today()
        start = _to_date(date_from) or (end - timedelta(days=DEFAULT_WINDOW_DAYS))
        if start > end:
            raise ValueError(f"date_from {start} is after date_to {end}")
        return start, end

    async def sync_sales(
        self,
        db: AsyncSession,
        company_id: UUID,
        location_id: Optional[str] = None,
        date_from: DateLike = None,
        date_to: DateLike = None,
        trigger: str = "manual",
    ) -> SyncResult:
        try:
            start, end = self.resolve_range(date_from, date_to)
        except ValueError as e:
            return SyncResult(success=False, error=str(e), error_type=SquareErrorType.VALIDATION.value)

        connection = await self.token_manager.get_connection(db, company_id)
        if location_id is None and connection is not None:
            location_id = connection.location_id

        run = SalesImport(
            company_id=company_id,
            location_id=location_id,
            import_type=PROVIDER,
            trigger=trigger,
            date_from=start,
            date_to=end,
            status=SyncRunStatus.PROCESSING,
        )
        db.add(run)
        await db.commit()
        run_id = run.id

        totals = _RunTotals()
        with sync_run_context(run_id):
            logger.info(f"Square sync started for company {company_id} location {location_id} ({start} to {end})")
            try:
                if connection is not None and connection.status != ConnectionStatus.ERROR and not location_id:
                    raise SquareSyncError(SquareErrorType.LOCATION_UNSELECTED, "location not selected")

                access_token = await self.token_manager.get_valid_access_token(db, company_id)
                if not access_token:
                    raise SquareSyncError(SquareErrorType.TOKEN_UNAVAILABLE, "token unavailable")

                await self._import_orders(db, company_id, location_id, run_id, access_token, start, end, totals)
                await self._recalculate_summaries(db, company_id, location_id, totals.affected_dates)
                await self._finalize(db, run_id, SyncRunStatus.COMPLETED, totals)
                await self.token_manager.mark_synced(db, company_id)
            except Exception as e:
                error = classify_error(e)
                if isinstance(e, SquareSyncError):
                    logger.warning(f"Square sync failed: {error!r}")
                else:
                    logger.error(f"Square sync failed with unexpected error: {error!r}", exc_info=True)
                    capture_exception(e, context={"company_id": str(company_id), "sync_run_id": str(run_id)})
                await db.rollback()
                await self._finalize(db, run_id, SyncRunStatus.FAILED, totals, error)
                return SyncResult(
                    success=False,
                    orders_processed=totals.imported,
                    orders_skipped=totals.skipped,
                    orders_failed=totals.failed,
                    revenue_total=totals.revenue,
                    date_from=start,
                    date_to=end,
                    sync_run_id=run_id,
                    error=error.message,
                    error_type=error.error_type.value,
                )

            logger.info(
                f"Square sync completed: {totals.imported} imported, {totals.skipped} skipped, "
                f"{totals.failed} failed, revenue {totals.revenue}"
            )

        return SyncResult(
            success=True,
            orders_processed=totals.imported,
            orders_skipped=totals.skipped,
            orders_failed=totals.failed,
            revenue_total=totals.revenue,
            date_from=start,
            date_to=end,
            sync_run_id=run_id,
        )

    async def sync_single_order(
        self,
        db: AsyncSession,
        company_id: UUID,
        location_id: Optional[str],
        order_id: str,
    ) -> SyncResult:
        """Webhook entry point: import one order by syncing its closing date."""
        access_token = await self.token_manager.get_valid_access_token(db, company_id)
        if not access_token:
            return SyncResult(
                success=False,
                error="token unavailable",
                error_type=SquareErrorType.TOKEN_UNAVAILABLE.value,
            )

        try:
            order = await self.client.get_order(access_token, order_id)
            if order.get("state") != "COMPLETED":
                logger.info(f"Square order {order_id} is {order.get('state')}, nothing to import yet")
                return SyncResult(success=True)
            order_date = sale_date_for(order)
        except Exception as e:
            error = classify_error(e)
            logger.warning(f"Could not fetch Square order {order_id}: {error!r}")
            return SyncResult(success=False, error=error.message, error_type=error.error_type.value)

        return await self.sync_sales(
            db,
            company_id,
            location_id or order.get("location_id"),
            order_date,
            order_date,
            trigger="webhook",
        )

    # =========================================================================
    # Run steps
    # =========================================================================

    async def _import_orders(
        self,
        db: AsyncSession,
        company_id: UUID,
        location_id: str,
        run_id: UUID,
        access_token: str,
        start: date,
        end: date,
        totals: _RunTotals,
    ):
        start_at = datetime.combine(start, time.min)
        end_at = datetime.combine(end + timedelta(days=1), time.min)
        cursor = None
        seen_ids: set[str] = set()
        page_number = 0

        while True:
            page = await self.client.search_orders(
                access_token, location_id, start_at, end_at, cursor=cursor, limit=self.page_limit
            )
            page_number += 1
            orders = page.get("orders") or []
            batch = await self._prepare_batch(db, company_id, orders, seen_ids, totals)
            if batch:
                await self._persist_batch(db, company_id, location_id, run_id, batch, totals)
            logger.debug(f"Page {page_number}: {len(orders)} orders, {len(batch)} new")

            cursor = page.get("cursor")
            if not cursor:
                break
            await self._sleep(self.page_delay)

    async def _existing_transaction_ids(self, db: AsyncSession, company_id: UUID, ids: list[str]) -> set[str]:
        if not ids:
            return set()
        result = await db.execute(
            select(Sale.pos_transaction_id).where(
                Sale.company_id == company_id,
                Sale.pos_provider == PROVIDER,
                Sale.pos_transaction_id.in_(ids),
            )
        )
        return set(result.scalars().all())

    async def _prepare_batch(
        self,
        db: AsyncSession,
        company_id: UUID,
        orders: list,
        seen_ids: set[str],
        totals: _RunTotals,
    ) -> list[NormalizedSale]:
        ids = [o["id"] for o in orders if isinstance(o, dict) and o.get("id")]
        existing = await self._existing_transaction_ids(db, company_id, ids)

        batch = []
        for order in orders:
            totals.total += 1
            order_id = order.get("id") if isinstance(order, dict) else None
            # TODO: amended orders (same id, new amounts) are skipped; needs a correction-record decision
            if order_id and (order_id in existing or order_id in seen_ids):
                totals.skipped += 1
                continue
            try:
                sale = map_order(order)
            except Exception as e:
                totals.failed += 1
                logger.warning(f"Skipping Square order {order_id or '<no id>'}: {e}")
                continue
            seen_ids.add(sale.pos_transaction_id)
            batch.append(sale)
        return batch

    def _build_sale(self, company_id: UUID, location_id: str, run_id: UUID, sale: NormalizedSale) -> Sale:
        return Sale(
            company_id=company_id,
            location_id=sale.location_id or location_id,
            pos_provider=PROVIDER,
            pos_transaction_id=sale.pos_transaction_id,
            import_batch_id=run_id,
            sale_date=sale.sale_date,
            gross_revenue=sale.gross_revenue,
            discounts=sale.discounts,
            net_revenue=sale.net_revenue,
            vat_amount=sale.vat_amount,
            tip_amount=sale.tip_amount,
            total_amount=sale.total_amount,
            currency=sale.currency,
            payment_method=sale.payment_method,
            status=sale.status,
            items=[
                SaleItem(
                    item_name=item.item_name,
                    pos_item_id=item.pos_item_id,
                    quantity=item.quantity,
                    unit_price=item.unit_price,
                    line_total=item.line_total,
                )
                for item in sale.items
            ],
        )

    def _count_imported(self, totals: _RunTotals, sale: NormalizedSale):
        totals.imported += 1
        totals.revenue += sale.net_revenue
        totals.affected_dates.add(sale.sale_date)

    async def _persist_batch(
        self,
        db: AsyncSession,
        company_id: UUID,
        location_id: str,
        run_id: UUID,
        batch: list[NormalizedSale],
        totals: _RunTotals,
    ):
        """Insert one page's sales in a single commit.

        A unique-constraint collision means a concurrent run inserted some of
        these orders after our existence check; fall back to row-by-row
        inserts and count the collisions as skipped.
        """
        try:
            db.add_all([self._build_sale(company_id, location_id, run_id, sale) for sale in batch])
            await db.commit()
        except IntegrityError:
            await db.rollback()
            logger.warning(f"Batch of {len(batch)} sales collided with existing rows, inserting individually")
        else:
            for sale in batch:
                self._count_imported(totals, sale)
            return

        for sale in batch:
            db.add(self._build_sale(company_id, location_id, run_id, sale))
            try:
                await db.commit()
            except IntegrityError:
                await db.rollback()
                totals.skipped += 1
                continue
            self._count_imported(totals, sale)

    async def _recalculate_summaries(
        self,
        db: AsyncSession,
        company_id: UUID,
        location_id: Optional[str],
        affected_dates: set,
    ):
        for summary_date in sorted(affected_dates):
            try:
                await self.summary_service.recalculate(db, company_id, location_id, summary_date)
            except Exception as e:
                # Sales are committed; the summary can be rebuilt by a later run
                logger.warning(f"Daily summary recalculation failed for {summary_date}: {e}")
                await db.rollback()

    async def _finalize(
        self,
        db: AsyncSession,
        run_id: UUID,
        status: str,
        totals: _RunTotals,
        error: Optional[SquareSyncError] = None,
    ):
        await db.execute(
            update(SalesImport)
            .where(SalesImport.id == run_id)
            .values(
                status=status,
                records_total=totals.total,
                records_imported=totals.imported,
                records_skipped=totals.skipped,
                records_failed=totals.failed,
                revenue_total=totals.revenue,
                error_message=error.message if error else None,
                error_type=error.error_type.value if error else None,
                completed_at=datetime.utcnow(),
            )
        )
        await db.commit()


_token_manager: Optional[SquareTokenManager] = None
_sync_service: Optional[SquareSyncService] = None


def get_square_token_manager() -> SquareTokenManager:
    """Process-wide token manager; refresh locks live on this instance."""
    global _token_manager
    if _token_manager is None:
        _token_manager = SquareTokenManager(get_square_client(), get_credential_vault())
    return _token_manager


def get_square_sync_service() -> SquareSyncService:
    global _sync_service
    if _sync_service is None:
        _sync_service = SquareSyncService(
            get_square_client(),
            get_square_token_manager(),
            get_daily_summary_service(),
        )
    return _sync_service
