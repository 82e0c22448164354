"""
Consumption forecasting and trend analysis.

All functions work on a list of readings of a single meter, in any
order, and never mutate it.
"""

import calendar
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Iterable, List, Optional

from pydantic import BaseModel

from meterforge.models import Reading, ensure_utc, to_utc_datetime, utcnow

SECONDS_PER_DAY = 86400
DAYS_PER_MONTH = 30.44
TREND_THRESHOLD_PERCENT = 10.0


class Confidence(str, Enum):
    """How much history backs a projection."""

    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class TrendDirection(str, Enum):
    INCREASING = "increasing"
    DECREASING = "decreasing"
    STABLE = "stable"
    INSUFFICIENT_DATA = "insufficient_data"


class AnnualProjection(BaseModel):
    daily: float = 0.0
    weekly: float = 0.0
    monthly: float = 0.0
    annual: float = 0.0
    confidence: Confidence = Confidence.LOW


class MonthlyAverage(BaseModel):
    key: str
    year: int
    month: int
    month_name: str
    consumption: float = 0.0
    daily_average: float = 0.0


class TrendAnalysis(BaseModel):
    direction: TrendDirection
    percentage: float = 0.0
    first_period_rate: Optional[float] = None
    second_period_rate: Optional[float] = None


class ReadingProjection(BaseModel):
    value: Optional[float] = None
    base_reading: Optional[float] = None
    daily_rate: float = 0.0
    days_diff: int = 0
    confidence: Confidence = Confidence.LOW
    target_date: Optional[datetime] = None
    error: Optional[str] = None


class PeriodComparison(BaseModel):
    current: float = 0.0
    previous: float = 0.0
    change: float = 0.0
    change_percent: float = 0.0
    period_days: int = 30
    error: Optional[str] = None


def _sorted(readings: Iterable[Reading]) -> List[Reading]:
    return sorted(readings, key=lambda r: r.timestamp)


def _days_between(start: datetime, end: datetime) -> float:
    return (end - start).total_seconds() / SECONDS_PER_DAY


def average_daily_consumption(readings: List[Reading]) -> float:
    """Consumption per day between the first and last reading."""
    if len(readings) < 2:
        return 0.0

    ordered = _sorted(readings)
    first, last = ordered[0], ordered[-1]
    days = _days_between(first.timestamp, last.timestamp)
    if days <= 0:
        return 0.0
    return (last.value - first.value) / days


def calculate_confidence(readings: List[Reading]) -> Confidence:
    if len(readings) >= 12:
        return Confidence.HIGH
    if len(readings) >= 6:
        return Confidence.MEDIUM
    return Confidence.LOW


def project_annual_usage(readings: List[Reading]) -> AnnualProjection:
    """Extrapolate the current daily rate to week, month and year."""
    daily = average_daily_consumption(readings)
    return AnnualProjection(
        daily=daily,
        weekly=daily * 7,
        monthly=daily * DAYS_PER_MONTH,
        annual=daily * 365,
        confidence=calculate_confidence(readings),
    )


def _next_month(moment: datetime) -> datetime:
    if moment.month == 12:
        return datetime(moment.year + 1, 1, 1, tzinfo=timezone.utc)
    return datetime(moment.year, moment.month + 1, 1, tzinfo=timezone.utc)


def monthly_averages(readings: List[Reading]) -> List[MonthlyAverage]:
    """
    Consumption per calendar month.

    The consumption between two readings is spread evenly over the days
    between them, so intervals crossing a month boundary are split.

    Returns:
        One entry per month touched by the readings, oldest first
    """
    if len(readings) < 2:
        return []

    ordered = _sorted(readings)
    totals: dict = {}

    for previous, current in zip(ordered, ordered[1:]):
        days = _days_between(previous.timestamp, current.timestamp)
        if days <= 0:
            continue
        daily_rate = (current.value - previous.value) / days

        cursor = previous.timestamp
        while cursor < current.timestamp:
            month_start = datetime(cursor.year, cursor.month, 1, tzinfo=timezone.utc)
            month_end = _next_month(month_start)
            period_end = min(current.timestamp, month_end)
            days_in_month = _days_between(cursor, period_end)

            entry = totals.setdefault((cursor.year, cursor.month), [0.0, 0.0])
            entry[0] += daily_rate * days_in_month
            entry[1] += days_in_month
            cursor = month_end

    result = []
    for (year, month), (consumption, days) in sorted(totals.items()):
        result.append(
            MonthlyAverage(
                key=f"{year}-{month:02d}",
                year=year,
                month=month,
                month_name=calendar.month_abbr[month],
                consumption=consumption,
                daily_average=consumption / days if days > 0 else 0.0,
            )
        )
    return result


def analyze_trend(readings: List[Reading]) -> TrendAnalysis:
    """
    Compare the daily rate of the older and newer half of the readings.

    A change beyond 10 % in either direction counts as a trend.
    """
    if len(readings) < 4:
        return TrendAnalysis(direction=TrendDirection.INSUFFICIENT_DATA)

    ordered = _sorted(readings)
    midpoint = len(ordered) // 2
    first_rate = average_daily_consumption(ordered[:midpoint])
    second_rate = average_daily_consumption(ordered[midpoint:])

    if first_rate == 0:
        return TrendAnalysis(direction=TrendDirection.STABLE)

    change = (second_rate - first_rate) / first_rate * 100
    if change > TREND_THRESHOLD_PERCENT:
        direction = TrendDirection.INCREASING
    elif change < -TREND_THRESHOLD_PERCENT:
        direction = TrendDirection.DECREASING
    else:
        direction = TrendDirection.STABLE

    return TrendAnalysis(
        direction=direction,
        percentage=abs(change),
        first_period_rate=first_rate,
        second_period_rate=second_rate,
    )


def project_reading(readings: List[Reading], target) -> ReadingProjection:
    """
    Projected meter value at a target date.

    Args:
        readings: History of the meter
        target: datetime, date or ISO string

    Returns:
        Projection; `value` is None when fewer than two readings exist
    """
    if len(readings) < 2:
        return ReadingProjection(error="At least 2 readings are required")

    last = _sorted(readings)[-1]
    daily_rate = average_daily_consumption(readings)
    target_at = to_utc_datetime(target)
    days = _days_between(last.timestamp, target_at)

    return ReadingProjection(
        value=max(0.0, last.value + daily_rate * days),
        base_reading=last.value,
        daily_rate=daily_rate,
        days_diff=round(days),
        confidence=calculate_confidence(readings),
        target_date=target_at,
    )


def year_end_projection(readings: List[Reading], now: Optional[datetime] = None) -> ReadingProjection:
    now = ensure_utc(now) if now else utcnow()
    year_end = datetime(now.year, 12, 31, 23, 59, 59, tzinfo=timezone.utc)
    return project_reading(readings, year_end)


def _period_consumption(readings: List[Reading]) -> float:
    if len(readings) < 2:
        return 0.0
    return readings[-1].value - readings[0].value


def compare_periods(
    readings: List[Reading],
    period_days: int = 30,
    now: Optional[datetime] = None,
) -> PeriodComparison:
    """Consumption of the last `period_days` against the period before it."""
    if len(readings) < 3:
        return PeriodComparison(period_days=period_days, error="Not enough data for a comparison")

    now = ensure_utc(now) if now else utcnow()
    period_start = now - timedelta(days=period_days)
    previous_start = period_start - timedelta(days=period_days)
    ordered = _sorted(readings)

    current = _period_consumption([r for r in ordered if period_start <= r.timestamp <= now])
    previous = _period_consumption([r for r in ordered if previous_start <= r.timestamp < period_start])
    change = current - previous

    return PeriodComparison(
        current=current,
        previous=previous,
        change=change,
        change_percent=change / previous * 100 if previous > 0 else 0.0,
        period_days=period_days,
    )
