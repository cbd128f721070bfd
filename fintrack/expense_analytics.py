from __future__ import annotations

import calendar
from dataclasses import dataclass, field
from datetime import date, timedelta
from decimal import Decimal
from typing import Iterable, List, Optional

from fintrack.week_calendar import week_number

ZERO = Decimal("0")
DAILY_WINDOW_DAYS = 30
YEARLY_WINDOW_YEARS = 5
COMPARISON_FILTERS = {"daily", "weekly", "monthly", "yearly"}
DEFAULT_COMPARISON_FILTER = "monthly"


@dataclass(frozen=True)
class ExpenseRecord:
    amount: Decimal
    date: date
    category: str
    title: Optional[str] = None
    id: Optional[int] = None
    account_id: Optional[int] = None


@dataclass(frozen=True)
class SeriesPoint:
    label: str
    total: Decimal


@dataclass(frozen=True)
class CategoryBreakdown:
    category: str
    total: Decimal
    items: List[ExpenseRecord] = field(default_factory=list)
    # Month-over-month change is not computed; the field is kept for clients.
    change_percent: Decimal = ZERO


def normalize_comparison_filter(value: Optional[str]) -> str:
    if value is None or not value.strip():
        return DEFAULT_COMPARISON_FILTER
    normalized = value.strip().lower()
    if normalized not in COMPARISON_FILTERS:
        raise ValueError("Filter must be one of daily, weekly, monthly, yearly.")
    return normalized


def compare_expenses(
    expenses: Iterable[ExpenseRecord],
    filter_name: Optional[str],
    today: date,
) -> List[SeriesPoint]:
    resolution = normalize_comparison_filter(filter_name)
    if resolution == "daily":
        return _daily_series(expenses, today)
    if resolution == "weekly":
        return _weekly_series(expenses)
    if resolution == "monthly":
        return _monthly_series(expenses, today)
    return _yearly_series(expenses, today)


def breakdown_expenses(expenses: Iterable[ExpenseRecord]) -> List[CategoryBreakdown]:
    by_category: dict[str, list[ExpenseRecord]] = {}
    for expense in expenses:
        by_category.setdefault(expense.category, []).append(expense)

    results: List[CategoryBreakdown] = []
    for category in sorted(by_category):
        items = sorted(by_category[category], key=lambda item: item.date, reverse=True)
        total = sum((_coerce_amount(item.amount) for item in items), ZERO)
        results.append(CategoryBreakdown(category=category, total=total, items=items))
    return results


def _daily_series(expenses: Iterable[ExpenseRecord], today: date) -> List[SeriesPoint]:
    window_start = today - timedelta(days=DAILY_WINDOW_DAYS - 1)
    totals: dict[date, Decimal] = {}
    for expense in expenses:
        if window_start <= expense.date <= today:
            totals[expense.date] = totals.get(expense.date, ZERO) + _coerce_amount(expense.amount)
    return [
        SeriesPoint(label=day.isoformat(), total=totals.get(day, ZERO))
        for day in (window_start + timedelta(days=offset) for offset in range(DAILY_WINDOW_DAYS))
    ]


def _weekly_series(expenses: Iterable[ExpenseRecord]) -> List[SeriesPoint]:
    totals: dict[int, Decimal] = {}
    for expense in expenses:
        week = week_number(expense.date)
        totals[week] = totals.get(week, ZERO) + _coerce_amount(expense.amount)
    return [SeriesPoint(label=f"Week {week}", total=totals[week]) for week in sorted(totals)]


def _monthly_series(expenses: Iterable[ExpenseRecord], today: date) -> List[SeriesPoint]:
    totals: dict[int, Decimal] = {}
    for expense in expenses:
        if expense.date.year == today.year:
            month = expense.date.month
            totals[month] = totals.get(month, ZERO) + _coerce_amount(expense.amount)
    return [
        SeriesPoint(label=calendar.month_abbr[month], total=totals.get(month, ZERO))
        for month in range(1, 13)
    ]


def _yearly_series(expenses: Iterable[ExpenseRecord], today: date) -> List[SeriesPoint]:
    first_year = today.year - (YEARLY_WINDOW_YEARS - 1)
    totals: dict[int, Decimal] = {}
    for expense in expenses:
        year = expense.date.year
        if first_year <= year <= today.year:
            totals[year] = totals.get(year, ZERO) + _coerce_amount(expense.amount)
    return [
        SeriesPoint(label=str(year), total=totals.get(year, ZERO))
        for year in range(first_year, today.year + 1)
    ]


def _coerce_amount(amount: Decimal | int | float | str) -> Decimal:
    if isinstance(amount, Decimal):
        return amount
    return Decimal(str(amount))
