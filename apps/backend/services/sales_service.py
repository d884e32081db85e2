"""
Laburandik Seller Ops - Sales Data Fetchers
===========================================
Organization-scoped wrappers around the sales aggregation procedures
plus the per-packer metrics shown on the home screen.

Aggregation happens inside the database; this module only shapes the
calls and merges per-item COGS into the results.
"""

import asyncio
from datetime import date, datetime, timedelta
from typing import Any, Dict, List, Optional, Sequence

from exceptions import DatabaseError
from logging_config import get_logger
from schemas import ComparisonData, DailySalesRow, DashboardRow, DateRange
from services.database import DatabaseClient
from services.table_format import round_half_up

logger = get_logger(__name__)

ITEM_SALES_RPC = "get_item_sales_aggregated"
TOTAL_SALES_RPC = "get_total_sales_aggregated"

SUMMARY_FIELDS = (
    "total_orders", "total_units", "total_sales", "total_discount", "total_fee",
    "total_cogs", "total_shipping_cost", "gross_profit", "net_profit", "ad_cost",
    "refund_amount", "refund_units",
)


def _iso(value: Optional[date]) -> Optional[str]:
    return value.isoformat() if value else None


class SalesService:
    """Sales analytics for one organization at a time."""

    def __init__(self, db: DatabaseClient):
        self.db = db

    # =========================================================================
    # Raw procedure calls
    # =========================================================================

    async def item_sales_data(
        self,
        organization_id: str,
        start: Optional[date],
        end: Optional[date],
        item_ids: Optional[Sequence[str]] = None,
    ) -> List[Dict[str, Any]]:
        params: Dict[str, Any] = {
            "org_id": organization_id,
            "start_date": _iso(start),
            "end_date": _iso(end),
        }
        if item_ids:
            params["item_ids"] = list(item_ids)
        return await self.db.rpc(ITEM_SALES_RPC, params) or []

    async def total_sales_daily(
        self,
        organization_id: str,
        start: Optional[date],
        end: Optional[date],
        period: str = "day",
        item_ids: Optional[Sequence[str]] = None,
    ) -> List[Dict[str, Any]]:
        params: Dict[str, Any] = {
            "org_id": organization_id,
            "start_date": _iso(start),
            "end_date": _iso(end),
            "period": period,
        }
        if item_ids:
            params["item_ids"] = list(item_ids)
        return await self.db.rpc(TOTAL_SALES_RPC, params) or []

    async def fetch_cogs_map(self, organization_id: str) -> Dict[str, float]:
        """
        item_id -> unit COGS.

        A missing COGS table should not blank the dashboard, so failures
        yield an empty map.
        """
        try:
            rows = await (
                self.db.table("cogs")
                .select("item_id,cogs")
                .eq("organization_id", organization_id)
                .execute()
            )
        except DatabaseError as e:
            logger.warning("Could not load COGS map", organization_id=organization_id, error=e.message)
            return {}

        cogs_map: Dict[str, float] = {}
        for row in rows:
            try:
                cogs_map[row["item_id"]] = float(row.get("cogs") or 0)
            except (TypeError, ValueError):
                cogs_map[row["item_id"]] = 0.0
        return cogs_map

    # =========================================================================
    # View-level fetchers
    # =========================================================================

    @staticmethod
    def merge_cogs(rows: List[Dict[str, Any]], cogs_map: Dict[str, float]) -> List[DashboardRow]:
        return [
            DashboardRow(**{**row, "unit_cogs": cogs_map.get(row.get("item_id"), 0)})
            for row in rows or []
        ]

    async def fetch_item_sales_data(
        self,
        organization_id: str,
        start: Optional[date],
        end: Optional[date],
        item_ids: Optional[Sequence[str]] = None,
    ) -> List[DashboardRow]:
        sales, cogs_map = await asyncio.gather(
            self.item_sales_data(organization_id, start, end, item_ids),
            self.fetch_cogs_map(organization_id),
        )
        return self.merge_cogs(sales, cogs_map)

    async def fetch_daily_sales_data(
        self,
        organization_id: str,
        start: Optional[date],
        end: Optional[date],
        period: str = "day",
        item_ids: Optional[Sequence[str]] = None,
    ) -> List[DailySalesRow]:
        rows = await self.total_sales_daily(organization_id, start, end, period, item_ids)
        return [DailySalesRow(**row) for row in rows]

    async def fetch_comparison_data(
        self,
        organization_id: str,
        base: DateRange,
        comparison: DateRange,
        period: str = "day",
        item_ids: Optional[Sequence[str]] = None,
    ) -> ComparisonData:
        """Both periods' table and chart data, fetched concurrently."""
        base_table, comp_table, base_chart, comp_chart, cogs_map = await asyncio.gather(
            self.item_sales_data(organization_id, base.start, base.end, item_ids),
            self.item_sales_data(organization_id, comparison.start, comparison.end, item_ids),
            self.total_sales_daily(organization_id, base.start, base.end, period, item_ids),
            self.total_sales_daily(organization_id, comparison.start, comparison.end, period, item_ids),
            self.fetch_cogs_map(organization_id),
        )
        return ComparisonData(
            base_table_data=self.merge_cogs(base_table, cogs_map),
            comparison_table_data=self.merge_cogs(comp_table, cogs_map),
            base_chart_data=[DailySalesRow(**r) for r in base_chart],
            comparison_chart_data=[DailySalesRow(**r) for r in comp_chart],
        )

    @staticmethod
    def summarize_totals(rows: Sequence[DailySalesRow]) -> Dict[str, float]:
        """Sum period rows into the figures shown on the metric cards."""
        totals = {field: 0.0 for field in SUMMARY_FIELDS}
        for row in rows:
            for field in SUMMARY_FIELDS:
                totals[field] += getattr(row, field) or 0
        sales = totals["total_sales"]
        totals["profit_margin"] = totals["net_profit"] / sales * 100 if sales else 0.0
        totals["tacos"] = totals["ad_cost"] / sales * 100 if sales else 0.0
        return totals

    # =========================================================================
    # Packing metrics
    # =========================================================================

    async def fetch_packing_metrics(self, email: str) -> List[Dict[str, Any]]:
        """Most recent 30 daily rows for one packer."""
        return await (
            self.db.table("daily_packing_metrics")
            .select("*")
            .eq("packed_by_email", email)
            .order("packing_date", desc=True)
            .limit(30)
            .execute()
        )


def get_metrics_for_period(
    metrics: Sequence[Dict[str, Any]],
    days: int,
    today: Optional[date] = None,
) -> Dict[str, int]:
    cutoff = (today or date.today()) - timedelta(days=days)
    recent = []
    for metric in metrics:
        raw = metric.get("packing_date")
        if not raw:
            continue
        packed_on = datetime.strptime(str(raw)[:10], "%Y-%m-%d").date()
        if packed_on >= cutoff:
            recent.append(metric)

    total = sum(int(m.get("shipments_packed") or 0) for m in recent)
    days_worked = len(recent)
    return {
        "total_packages": total,
        "days_worked": days_worked,
        "avg_per_day": round_half_up(total / days_worked) if days_worked else 0,
        "period_days": days,
    }
