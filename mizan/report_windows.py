from __future__ import annotations

import calendar
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Optional

REPORT_PERIODS = {"this_month", "last_month", "3m", "6m", "12m", "all"}
DEFAULT_PERIOD = "6m"
DAILY_PERIOD = "this_month"
DEFAULT_EPOCH = date(2024, 1, 1)

DAY_LABEL_FORMAT = "%Y-%m-%d"
MONTH_LABEL_FORMAT = "%Y-%m"

TRAILING_MONTHS = {"3m": 2, "6m": 5, "12m": 11}

BALANCE_HISTORY_RANGES = {"7d": 7, "30d": 30, "90d": 90, "1y": 365, "mtd": None}


@dataclass(frozen=True)
class ReportWindow:
    start: date
    end: date
    is_daily: bool = False

    def label_for(self, value: date) -> str:
        return value.strftime(DAY_LABEL_FORMAT if self.is_daily else MONTH_LABEL_FORMAT)

    def labels(self) -> list[str]:
        if self.is_daily:
            return [day.strftime(DAY_LABEL_FORMAT) for day in iter_days(self.start, self.end)]
        return [month.strftime(MONTH_LABEL_FORMAT) for month in iter_months(self.start, self.end)]


def resolve_window(
    today: date,
    period: Optional[str] = None,
    start_date: Optional[date | str] = None,
    end_date: Optional[date | str] = None,
    epoch: date = DEFAULT_EPOCH,
) -> ReportWindow:
    """Turn a preset and/or explicit dates into a report window.

    Granularity follows the preset literal alone: only ``this_month`` is
    daily, even when explicit dates narrow another preset to a single month.
    """
    normalized = normalize_period(period)
    start, end = preset_range(normalized, today, epoch)
    if start_date is not None:
        start = parse_date_value(start_date)
    if end_date is not None:
        end = parse_date_value(end_date)
    if start > end:
        raise ValueError("Start date must be on or before end date.")
    return ReportWindow(start=start, end=end, is_daily=normalized == DAILY_PERIOD)


def normalize_period(value: Optional[str]) -> str:
    if value is None or not value.strip():
        return DEFAULT_PERIOD
    normalized = value.strip().lower()
    if normalized not in REPORT_PERIODS:
        raise ValueError("Invalid period. Use this_month, last_month, 3m, 6m, 12m, or all.")
    return normalized


def preset_range(period: str, today: date, epoch: date = DEFAULT_EPOCH) -> tuple[date, date]:
    current_month = month_start(today)
    if period == "this_month":
        return current_month, month_end(current_month)
    if period == "last_month":
        previous = shift_month(current_month, -1)
        return previous, month_end(previous)
    if period == "all":
        return epoch, month_end(current_month)
    return shift_month(current_month, -TRAILING_MONTHS[period]), month_end(current_month)


def balance_history_start(range_key: str, today: date) -> date:
    normalized = range_key.strip().lower()
    if normalized not in BALANCE_HISTORY_RANGES:
        raise ValueError("Invalid range. Use 7d, 30d, 90d, 1y, or mtd.")
    days = BALANCE_HISTORY_RANGES[normalized]
    if days is None:
        return month_start(today)
    return today - timedelta(days=days)


def parse_date_value(value: date | str) -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return datetime.strptime(value.strip(), "%Y-%m-%d").date()
    except ValueError as exc:
        raise ValueError("Date must be in YYYY-MM-DD format.") from exc


def month_start(value: date) -> date:
    return value.replace(day=1)


def shift_month(value: date, months: int) -> date:
    month_index = (value.year * 12 + value.month - 1) + months
    year = month_index // 12
    month = month_index % 12 + 1
    return date(year, month, 1)


def month_end(value: date) -> date:
    last_day = calendar.monthrange(value.year, value.month)[1]
    return value.replace(day=last_day)


def iter_months(start_value: date, end_value: date) -> list[date]:
    months: list[date] = []
    cursor = month_start(start_value)
    end_month = month_start(end_value)
    while cursor <= end_month:
        months.append(cursor)
        cursor = shift_month(cursor, 1)
    return months


def iter_days(start_value: date, end_value: date) -> list[date]:
    days: list[date] = []
    cursor = start_value
    while cursor <= end_value:
        days.append(cursor)
        cursor += timedelta(days=1)
    return days
