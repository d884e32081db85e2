"""
Laburandik Seller Ops - Period Comparison
=========================================
Deltas, labels and chart alignment for base vs. comparison periods.
"""

from typing import Any, Dict, List, Sequence

from schemas import DateRange
from services.table_format import round_half_up

COMPARISON_LABELS = {
    "previous_period": "Previous Period",
    "same_last_year": "Same Time Last Year",
    "year_over_year": "Same Time Last Year",
    "month_before": "Month Before",
    "month_over_month": "Month Before",
}

PERIOD_LABELS = {"day": "Day", "week": "Week", "month": "Month"}

MONEY_FIELDS = ("total_sales", "net_profit", "ad_cost")
PLAIN_FIELDS = ("total_units", "profit_margin", "tacos")


def calculate_delta(base_value: float, comparison_value: float) -> Dict[str, float]:
    absolute = base_value - comparison_value
    if comparison_value != 0:
        percentage = (base_value - comparison_value) / abs(comparison_value) * 100
    else:
        percentage = 0.0
    return {"absolute": absolute, "percentage": percentage}


def format_delta(delta: Dict[str, float], is_currency: bool = False) -> str:
    """'+$1,000 (+25%)' / '-$500 (-10%)'."""
    magnitude = f"{abs(round_half_up(delta['absolute'])):,}"
    if is_currency:
        magnitude = f"${magnitude}"
    percent = abs(round_half_up(delta["percentage"]))

    value_sign = "+" if delta["absolute"] >= 0 else "-"
    percent_sign = "+" if delta["percentage"] >= 0 else "-"
    return f"{value_sign}{magnitude} ({percent_sign}{percent}%)"


def get_comparison_type_label(comparison_type: str) -> str:
    return COMPARISON_LABELS.get(comparison_type, "")


def format_comparison_label(
    comparison_type: str,
    base: DateRange,
    comparison: DateRange,
) -> str:
    if base.is_open or comparison.is_open:
        return ""
    label = get_comparison_type_label(comparison_type)
    if not label:
        return ""

    def fmt(d):
        return f"{d.strftime('%b')} {d.day}, {d.year}"

    return f"{label} ({fmt(comparison.start)} - {fmt(comparison.end)})"


def merge_chart_data_for_comparison(
    base_data: Sequence[Dict[str, Any]],
    comparison_data: Sequence[Dict[str, Any]],
    period: str,
) -> List[Dict[str, Any]]:
    """
    Align two period series by position (Day 1, Day 2, ...).

    The shorter series is padded with zeros. Monetary fields are rounded
    to whole units.
    """
    prefix = PERIOD_LABELS.get(period, "")
    merged = []

    for i in range(max(len(base_data), len(comparison_data))):
        base_row = base_data[i] if i < len(base_data) else {}
        comp_row = comparison_data[i] if i < len(comparison_data) else {}

        row: Dict[str, Any] = {"label": f"{prefix} {i + 1}" if prefix else "", "position": i}
        for name, source in (("base", base_row), ("comparison", comp_row)):
            for field in MONEY_FIELDS:
                row[f"{name}_{field}"] = round_half_up(source.get(field) or 0)
            for field in PLAIN_FIELDS:
                row[f"{name}_{field}"] = source.get(field) or 0
        merged.append(row)

    return merged
