"""
Daily spending target calculations.

Every function here is pure, floors to whole dollars, and answers 0 for
inputs it cannot make sense of instead of raising.
"""

import calendar
from datetime import date, datetime, timedelta
from decimal import ROUND_FLOOR, Decimal, InvalidOperation
from typing import Any, Iterable, Optional, Tuple

from moony_sms.utils.logger import get_logger

logger = get_logger("targets")

CENT = Decimal("0.01")


def _to_decimal(value: Any) -> Optional[Decimal]:
    """Coerce to a finite Decimal, or None."""
    if value is None or isinstance(value, bool):
        return None
    try:
        number = value if isinstance(value, Decimal) else Decimal(str(value))
    except (InvalidOperation, ValueError, TypeError):
        return None
    if not number.is_finite():
        return None
    return number


def _to_date(value: Any) -> Optional[date]:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str):
        try:
            return date.fromisoformat(value[:10])
        except ValueError:
            return None
    return None


def days_in_month(day: date) -> int:
    return calendar.monthrange(day.year, day.month)[1]


def goal_period(today: date, month_start_day: int = 1) -> Tuple[date, date]:
    """
    Inclusive budget period containing ``today``.

    With the default anchor of 1 this is the calendar month. Other anchors
    start the period on that day of the month (clamped to short months) and
    end the day before the next period starts.
    """
    if month_start_day <= 1:
        return today.replace(day=1), today.replace(day=days_in_month(today))

    def anchor(year: int, month: int) -> date:
        return date(year, month, min(month_start_day, calendar.monthrange(year, month)[1]))

    this_anchor = anchor(today.year, today.month)
    if today >= this_anchor:
        start = this_anchor
    else:
        prev_year, prev_month = (today.year, today.month - 1) if today.month > 1 else (today.year - 1, 12)
        start = anchor(prev_year, prev_month)

    next_year, next_month = (start.year, start.month + 1) if start.month < 12 else (start.year + 1, 1)
    end = anchor(next_year, next_month) - timedelta(days=1)
    return start, end


def _floor_target(remaining: Decimal, days_remaining: int) -> int:
    if days_remaining <= 0 or remaining <= 0:
        return 0
    target = (remaining / days_remaining).to_integral_value(rounding=ROUND_FLOOR)
    return max(0, int(target))


def calculate_daily_target(monthly_budget: Any, current_spending: Any, today: Any = None) -> int:
    """(budget - spent) / days left in the calendar month, today included."""
    budget = _to_decimal(monthly_budget)
    spent = _to_decimal(current_spending)
    day = _to_date(today) if today is not None else date.today()

    if budget is None or spent is None or day is None or budget < 0:
        logger.warning(
            "targets.invalid_inputs",
            extra={"monthly_budget": str(monthly_budget), "current_spending": str(current_spending)},
        )
        return 0

    days_remaining = days_in_month(day) - day.day + 1
    return _floor_target(budget - max(spent, Decimal("0")), days_remaining)


def calculate_period_aware_daily_target(
    period_budget: Any,
    current_spending: Any,
    period_start: Any,
    period_end: Any,
    today: Any = None,
) -> int:
    """(budget - spent) / days left in the inclusive [period_start, period_end] window."""
    budget = _to_decimal(period_budget)
    spent = _to_decimal(current_spending)
    start = _to_date(period_start)
    end = _to_date(period_end)
    day = _to_date(today) if today is not None else date.today()

    if budget is None or spent is None or start is None or end is None or day is None or budget < 0:
        logger.warning(
            "targets.invalid_period_inputs",
            extra={"period_budget": str(period_budget), "current_spending": str(current_spending)},
        )
        return 0

    if day > end:
        logger.info("targets.period_ended", extra={"period_end": end.isoformat(), "today": day.isoformat()})
        return 0

    # Before the period opens the whole window is still ahead.
    effective_day = max(day, start)
    days_remaining = (end - effective_day).days + 1
    return _floor_target(budget - max(spent, Decimal("0")), days_remaining)


def _field(transaction: Any, name: str) -> Any:
    if isinstance(transaction, dict):
        return transaction.get(name)
    return getattr(transaction, name, None)


def calculate_period_spending(transactions: Iterable[Any], period_start: Any, period_end: Any) -> Decimal:
    """
    Sum positive transaction amounts dated inside the inclusive window.

    Refunds (negative amounts), non-finite amounts and undated rows are skipped.
    """
    start = _to_date(period_start)
    end = _to_date(period_end)
    if start is None or end is None:
        return Decimal("0.00")

    total = Decimal("0")
    for tx in transactions or ():
        amount = _to_decimal(_field(tx, "amount"))
        tx_date = _to_date(_field(tx, "date"))
        if amount is None or amount <= 0 or tx_date is None:
            continue
        if start <= tx_date <= end:
            total += amount

    return total.quantize(CENT)
