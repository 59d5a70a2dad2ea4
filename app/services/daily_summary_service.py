"""Daily sales summary recalculation.

Called once per affected date after a sync run; recomputes the whole day from
``sales`` so it is safe to run repeatedly.
"""

import logging
from datetime import date
from decimal import Decimal
from typing import Optional
from uuid import UUID

from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.daily_sales_summary import DailySalesSummary
from app.models.sale import Sale

logger = logging.getLogger(__name__)


class DailySummaryService:
    async def recalculate(
        self,
        db: AsyncSession,
        company_id: UUID,
        location_id: Optional[str],
        summary_date: date,
    ) -> DailySalesSummary:
        filters = [
            Sale.company_id == company_id,
            Sale.sale_date == summary_date,
            Sale.status == "completed",
        ]
        if location_id is None:
            filters.append(Sale.location_id.is_(None))
        else:
            filters.append(Sale.location_id == location_id)

        result = await db.execute(
            select(
                func.coalesce(func.sum(Sale.gross_revenue), 0),
                func.coalesce(func.sum(Sale.discounts), 0),
                func.coalesce(func.sum(Sale.net_revenue), 0),
                func.coalesce(func.sum(Sale.vat_amount), 0),
                func.coalesce(func.sum(Sale.total_amount), 0),
                func.count(Sale.id),
            ).where(*filters)
        )
        gross, discounts, net, vat, total, count = result.one()

        summary_filters = [
            DailySalesSummary.company_id == company_id,
            DailySalesSummary.summary_date == summary_date,
        ]
        if location_id is None:
            summary_filters.append(DailySalesSummary.location_id.is_(None))
        else:
            summary_filters.append(DailySalesSummary.location_id == location_id)

        existing = await db.execute(select(DailySalesSummary).where(*summary_filters))
        summary = existing.scalar_one_or_none()
        if summary is None:
            summary = DailySalesSummary(
                company_id=company_id,
                location_id=location_id,
                summary_date=summary_date,
            )
            db.add(summary)

        summary.gross_revenue = Decimal(str(gross))
        summary.discounts = Decimal(str(discounts))
        summary.net_revenue = Decimal(str(net))
        summary.vat_amount = Decimal(str(vat))
        summary.total_amount = Decimal(str(total))
        summary.transaction_count = count
        await db.commit()

        logger.debug(f"Daily summary recalculated for company {company_id} on {summary_date}: {count} sales")
        return summary


daily_summary_service = DailySummaryService()


def get_daily_summary_service() -> DailySummaryService:
    return daily_summary_service
