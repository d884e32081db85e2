"""
Laburandik Seller Ops - Date Utilities
======================================
Presets, comparison periods and range validation for the analytics views.

All functions operate on calendar dates; "today" is injectable so the
results are deterministic in tests.
"""

import calendar
from datetime import date, datetime, timedelta
from typing import Dict, List, Optional

from exceptions import ValidationError
from schemas import DateRange

PERIOD_LIMIT_DAYS = {
    "day": (30, "Daily view limited to 30 days"),
    "week": (90, "Weekly view limited to 3 months"),
}

COMPARISON_TYPES = (
    "previous_period",
    "year_over_year",
    "same_last_year",
    "month_over_month",
    "month_before",
)


def _today(today: Optional[date] = None) -> date:
    return today or date.today()


def get_yesterday(today: Optional[date] = None) -> date:
    """Default end date for every report."""
    return _today(today) - timedelta(days=1)


def date_to_iso(value: date) -> str:
    return value.isoformat()


def shift_months(value: date, months: int) -> date:
    """Move by whole months, clamping the day to the target month's length."""
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return date(year, month, day)


def get_preset_groups(today: Optional[date] = None) -> List[List[Dict[str, str]]]:
    """Quick-pick ranges shown above the metric cards."""
    current = _today(today)
    yesterday = get_yesterday(current)
    last_7 = yesterday - timedelta(days=6)
    last_30 = yesterday - timedelta(days=29)

    return [
        [
            {"start": date_to_iso(current), "end": date_to_iso(current), "label": "Today"},
            {"start": date_to_iso(yesterday), "end": date_to_iso(yesterday), "label": "Yesterday"},
            {"start": date_to_iso(last_7), "end": date_to_iso(yesterday), "label": "Last 7 days"},
            {"start": date_to_iso(last_30), "end": date_to_iso(yesterday), "label": "Last 30 days"},
        ]
    ]


def get_preset_date_range(period: str, today: Optional[date] = None) -> DateRange:
    """Default window for the daily view at a given granularity."""
    end = get_yesterday(today)
    if period == "day":
        start = end - timedelta(days=29)
    elif period == "week":
        start = end - timedelta(days=89)
    elif period == "month":
        start = shift_months(end, -11).replace(day=1)
    else:
        raise ValidationError(f"Unknown period: {period}", field="period", value=period)
    return DateRange(start=start, end=end)


def calculate_comparison_period(base: DateRange, comparison_type: str) -> DateRange:
    """
    Derive the period the base range is compared against.

    previous_period ends the day before the base starts and spans the same
    number of days between its endpoints. Year and month shifts clamp to
    the end of the target month (Feb 29 -> Feb 28).
    """
    if base.is_open:
        return DateRange()

    diff_days = (base.end - base.start).days

    if comparison_type == "previous_period":
        comp_end = base.start - timedelta(days=1)
        return DateRange(start=comp_end - timedelta(days=diff_days), end=comp_end)
    if comparison_type in ("year_over_year", "same_last_year"):
        return DateRange(start=shift_months(base.start, -12), end=shift_months(base.end, -12))
    if comparison_type in ("month_over_month", "month_before"):
        return DateRange(start=shift_months(base.start, -1), end=shift_months(base.end, -1))
    return DateRange()


def validate_date_range(date_range: DateRange, period: str) -> Dict[str, object]:
    """
    Check a range against the per-granularity limits.

    Returns:
        {"valid": True} or {"valid": False, "error": <message>}
    """
    if date_range.is_open:
        return {"valid": True}

    diff_days = abs((date_range.end - date_range.start).days)
    limit = PERIOD_LIMIT_DAYS.get(period)
    if limit and diff_days > limit[0]:
        return {"valid": False, "error": limit[1]}
    return {"valid": True}


def ensure_valid_date_range(date_range: DateRange, period: str) -> None:
    result = validate_date_range(date_range, period)
    if not result["valid"]:
        raise ValidationError(str(result["error"]), field="period", value=period)


def format_date_for_display(value: date, fmt: str = "%b %d, %Y") -> str:
    return value.strftime(fmt)


def format_date_for_chart(date_str: Optional[str], period: str) -> str:
    """Axis label for a period bucket: 'Jan 5', 'Week Jan 5' or 'Jan'."""
    if not date_str:
        return "-"
    try:
        parsed = datetime.strptime(date_str[:10], "%Y-%m-%d").date()
    except ValueError:
        return date_str

    month = parsed.strftime("%b")
    if period == "day":
        return f"{month} {parsed.day}"
    if period == "week":
        return f"Week {month} {parsed.day}"
    if period == "month":
        return month
    return date_str
