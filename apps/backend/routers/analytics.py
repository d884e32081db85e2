"""
Sales Analytics Router
======================
Item dashboard, period totals, period-over-period comparison and CSV
export. Admin only.
"""

from datetime import date
from typing import List, Literal, Optional

from fastapi import APIRouter, Depends, Query
from fastapi.responses import Response

from dependencies import OrgContext, get_database, require_admin
from logging_config import get_logger
from schemas import ComparisonType, DateRange, Period
from services.comparison import (
    calculate_delta,
    format_comparison_label,
    merge_chart_data_for_comparison,
)
from services.database import DatabaseClient
from services.date_utils import (
    calculate_comparison_period,
    ensure_valid_date_range,
    get_preset_date_range,
    get_preset_groups,
    get_yesterday,
)
from services.sales_service import SalesService
from services.table_format import (
    DAILY_METRIC_COLUMNS,
    METRIC_COLUMNS,
    ColumnMeta,
    csv_filename,
    export_to_csv,
)

logger = get_logger(__name__)

router = APIRouter()

ITEM_EXPORT_COLUMNS = [
    ColumnMeta("item_id", "Item ID"),
    ColumnMeta("title", "Title"),
    *METRIC_COLUMNS,
]
DAILY_EXPORT_COLUMNS = [ColumnMeta("date", "Date"), *DAILY_METRIC_COLUMNS]


def parse_item_ids(raw: Optional[str]) -> Optional[List[str]]:
    """Comma-separated item filter; empty means all items."""
    if not raw:
        return None
    ids = [part.strip() for part in raw.split(",") if part.strip()]
    return ids or None


def resolve_range(start: Optional[date], end: Optional[date]) -> DateRange:
    """Missing end defaults to yesterday; missing start to the same day."""
    end = end or get_yesterday()
    return DateRange(start=start or end, end=end)


@router.get("/presets")
async def presets(ctx: OrgContext = Depends(require_admin)):
    return {
        "groups": get_preset_groups(),
        "defaults": {
            period: get_preset_date_range(period).model_dump(mode="json")
            for period in ("day", "week", "month")
        },
    }


@router.get("/items")
async def item_sales(
    start: Optional[date] = None,
    end: Optional[date] = None,
    item_ids: Optional[str] = None,
    ctx: OrgContext = Depends(require_admin),
    db: DatabaseClient = Depends(get_database),
):
    date_range = resolve_range(start, end)
    rows = await SalesService(db).fetch_item_sales_data(
        ctx.organization_id, date_range.start, date_range.end, parse_item_ids(item_ids)
    )
    return {"data": rows, "range": date_range}


@router.get("/daily")
async def daily_sales(
    start: Optional[date] = None,
    end: Optional[date] = None,
    period: Period = "day",
    item_ids: Optional[str] = None,
    ctx: OrgContext = Depends(require_admin),
    db: DatabaseClient = Depends(get_database),
):
    if start is None and end is None:
        date_range = get_preset_date_range(period)
    else:
        date_range = resolve_range(start, end)
    ensure_valid_date_range(date_range, period)

    service = SalesService(db)
    rows = await service.fetch_daily_sales_data(
        ctx.organization_id, date_range.start, date_range.end, period, parse_item_ids(item_ids)
    )
    return {"data": rows, "totals": service.summarize_totals(rows), "range": date_range}


@router.get("/comparison")
async def comparison(
    start: Optional[date] = None,
    end: Optional[date] = None,
    comparison_type: ComparisonType = "previous_period",
    period: Period = "day",
    item_ids: Optional[str] = None,
    ctx: OrgContext = Depends(require_admin),
    db: DatabaseClient = Depends(get_database),
):
    base = resolve_range(start, end)
    comparison_range = calculate_comparison_period(base, comparison_type)

    service = SalesService(db)
    data = await service.fetch_comparison_data(
        ctx.organization_id, base, comparison_range, period, parse_item_ids(item_ids)
    )

    base_totals = service.summarize_totals(data.base_chart_data)
    comparison_totals = service.summarize_totals(data.comparison_chart_data)
    deltas = {
        field: calculate_delta(base_totals[field], comparison_totals[field])
        for field in ("total_sales", "net_profit", "total_units", "ad_cost", "profit_margin")
    }

    return {
        "base_range": base,
        "comparison_range": comparison_range,
        "label": format_comparison_label(comparison_type, base, comparison_range),
        "data": data,
        "chart": merge_chart_data_for_comparison(
            [r.model_dump() for r in data.base_chart_data],
            [r.model_dump() for r in data.comparison_chart_data],
            period,
        ),
        "totals": {"base": base_totals, "comparison": comparison_totals},
        "deltas": deltas,
    }


@router.get("/export")
async def export(
    view: Literal["items", "daily"] = "items",
    start: Optional[date] = None,
    end: Optional[date] = None,
    period: Period = "day",
    item_ids: Optional[str] = Query(default=None),
    ctx: OrgContext = Depends(require_admin),
    db: DatabaseClient = Depends(get_database),
):
    """Current view as a CSV download."""
    date_range = resolve_range(start, end)
    service = SalesService(db)
    ids = parse_item_ids(item_ids)

    if view == "daily":
        ensure_valid_date_range(date_range, period)
        rows = await service.fetch_daily_sales_data(
            ctx.organization_id, date_range.start, date_range.end, period, ids
        )
        content = export_to_csv([r.model_dump() for r in rows], DAILY_EXPORT_COLUMNS)
        filename = csv_filename("daily_sales")
    else:
        rows = await service.fetch_item_sales_data(
            ctx.organization_id, date_range.start, date_range.end, ids
        )
        content = export_to_csv([r.model_dump() for r in rows], ITEM_EXPORT_COLUMNS)
        filename = csv_filename("item_sales")

    logger.info("Analytics export", view=view, rows=len(rows))
    return Response(
        content=content,
        media_type="text/csv; charset=utf-8",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )
