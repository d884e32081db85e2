"""
Laburandik Seller Ops - Table Formatting & Export
=================================================
Money/percent formatting, column metadata and CSV generation for the
analytics tables.
"""

import json
import math
from dataclasses import dataclass
from datetime import date
from typing import Any, Dict, Iterable, List, Optional, Sequence


def round_half_up(value: float) -> int:
    """Round .5 away from negative infinity, as spreadsheet users expect."""
    return int(math.floor(value + 0.5))


def round_to(value: float, decimals: int = 2) -> float:
    factor = 10 ** decimals
    return round_half_up(value * factor) / factor


def format_money(value: Optional[float]) -> str:
    """$1,235 style: whole units, thousands separators."""
    if value is None:
        return "-"
    return f"${round_half_up(value):,}"


def format_percent(value: Optional[float], decimals: int = 2) -> str:
    if value is None:
        return "-"
    return f"{value:.{decimals}f}%"


def format_number(value: Optional[float]) -> str:
    if value is None:
        return "-"
    return f"{round_half_up(value):,}"


@dataclass(frozen=True)
class ColumnMeta:
    id: str
    label: str
    is_currency: bool = False
    is_percent: bool = False
    decimals: int = 2


def format_cell_value(value: Optional[float], meta: ColumnMeta) -> str:
    if meta.is_currency:
        return format_money(value)
    if meta.is_percent:
        return format_percent(value, meta.decimals)
    return format_number(value)


METRIC_COLUMNS: List[ColumnMeta] = [
    ColumnMeta("item_orders", "Orders"),
    ColumnMeta("item_units", "Units"),
    ColumnMeta("item_sales", "Sales", is_currency=True),
    ColumnMeta("item_discount", "Discount", is_currency=True),
    ColumnMeta("item_fee", "ML Fee", is_currency=True),
    ColumnMeta("item_cogs", "Total COGS", is_currency=True),
    ColumnMeta("item_shipping_cost", "Shipping Cost", is_currency=True),
    ColumnMeta("net_profit", "Net Profit", is_currency=True),
    ColumnMeta("ad_cost", "Ad Cost", is_currency=True),
    ColumnMeta("refund_amount", "Refund Amount", is_currency=True),
    ColumnMeta("refund_units", "Refund Units"),
    ColumnMeta("profit_margin", "Margin", is_percent=True),
    ColumnMeta("tacos", "TACOS", is_percent=True),
    ColumnMeta("fees_percent", "Fees %", is_percent=True),
    ColumnMeta("cogs_percent", "COGS %", is_percent=True),
    ColumnMeta("shipping_percent", "Shipping %", is_percent=True),
]

DAILY_METRIC_COLUMNS: List[ColumnMeta] = [
    ColumnMeta("total_orders", "Orders"),
    ColumnMeta("total_units", "Units"),
    ColumnMeta("total_sales", "Sales", is_currency=True),
    ColumnMeta("total_discount", "Discount", is_currency=True),
    ColumnMeta("total_fee", "ML Fee", is_currency=True),
    ColumnMeta("total_cogs", "COGS", is_currency=True),
    ColumnMeta("total_shipping_cost", "Shipping Cost", is_currency=True),
    ColumnMeta("gross_profit", "Gross Profit", is_currency=True),
    ColumnMeta("net_profit", "Net Profit", is_currency=True),
    ColumnMeta("ad_cost", "Ad Cost", is_currency=True),
    ColumnMeta("refund_amount", "Refund Amount", is_currency=True),
    ColumnMeta("refund_units", "Refund Units"),
    ColumnMeta("profit_margin", "Profit Margin", is_percent=True),
    ColumnMeta("tacos", "TACOS", is_percent=True),
    ColumnMeta("fees_percent", "Fees %", is_percent=True),
    ColumnMeta("cogs_percent", "COGS %", is_percent=True),
    ColumnMeta("shipping_percent", "Shipping %", is_percent=True),
]


def get_column_meta(
    column_id: str,
    columns: Sequence[ColumnMeta] = METRIC_COLUMNS,
) -> Optional[ColumnMeta]:
    return next((c for c in columns if c.id == column_id), None)


# =============================================================================
# CSV
# =============================================================================

def _csv_cell(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, (dict, list)):
        value = json.dumps(value, ensure_ascii=False, separators=(",", ":"))
    elif isinstance(value, bool):
        value = "true" if value else "false"
    text = str(value)
    if any(ch in text for ch in (",", '"', "\n", "\r")):
        return '"' + text.replace('"', '""') + '"'
    return text


def export_to_csv(
    rows: Iterable[Dict[str, Any]],
    columns: Sequence[Any],
) -> str:
    """
    Render rows as CSV with a header of column labels.

    Columns may be ColumnMeta instances or {"id", "label"} dicts. Missing
    values become empty cells; nested objects are JSON-encoded.
    """
    specs = [
        (c.id, c.label) if isinstance(c, ColumnMeta) else (c["id"], c.get("label", c["id"]))
        for c in columns
    ]
    lines = [",".join(_csv_cell(label) for _, label in specs)]
    for row in rows:
        lines.append(",".join(_csv_cell(row.get(col_id)) for col_id, _ in specs))
    return "\n".join(lines)


def csv_filename(base: str, today: Optional[date] = None) -> str:
    return f"{base}_{(today or date.today()).isoformat()}.csv"
