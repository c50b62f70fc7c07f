"""
Contribution-grid aggregation over the completion log.

The grid-level streak here is a coarse cross-habit metric: a day is "active" when the
summed completion reaches half of the user's habits. It is intentionally different
from the per-habit value computed in streak_engine and the two are never unified.
"""
from __future__ import annotations
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Iterable, List, Optional, Tuple
from datetime import date, timedelta

from ..models.habit import CompletionRecord
from ..utils.dates import end_of_week, local_date

ACTIVE_DAY_THRESHOLD = 0.5


class Period(str, Enum):
    WEEK = "week"
    MONTH = "month"
    YEAR = "year"
    ALL = "all"


WEEKS_PER_PERIOD = {
    Period.WEEK: 1,
    Period.MONTH: 5,
    Period.YEAR: 53,
    Period.ALL: 104,
}


@dataclass(frozen=True)
class GridDay:
    date: date
    percentage: Optional[float]
    raw_value: Optional[float]
    level: Optional[int]
    is_future: bool
    is_today: bool


@dataclass(frozen=True)
class ActivityStats:
    total_days: int = 0
    active_days: int = 0
    current_streak: int = 0
    longest_streak: int = 0
    average_completion: int = 0
    total_completions: int = 0


Weeks = Tuple[Tuple[GridDay, ...], ...]


def _as_period(period) -> Period:
    try:
        return Period(period)
    except ValueError:
        return Period.MONTH


def window_for_period(period, today: date) -> Tuple[date, date, int]:
    """(start, end, weeks): end is the Saturday of today's week."""
    weeks = WEEKS_PER_PERIOD[_as_period(period)]
    end = end_of_week(today)
    start = end - timedelta(days=weeks * 7 - 1)
    return start, end, weeks


def by_date(records: Iterable[CompletionRecord]) -> Dict[date, float]:
    """Sum of per-habit completion fractions for each date."""
    totals: Dict[date, float] = {}
    for r in records:
        totals[r.completed_date] = totals.get(r.completed_date, 0.0) + r.fraction
    return totals


def day_percentage(raw_value: float, total_habit_count: int) -> float:
    if total_habit_count <= 0:
        return 0.0
    return max(0.0, min(raw_value / total_habit_count, 1.0))


def intensity_level(percentage: float) -> int:
    pct = percentage / 100 if percentage > 1 else percentage
    if pct <= 0:
        return 0
    if pct <= 0.25:
        return 1
    if pct <= 0.50:
        return 2
    if pct <= 0.75:
        return 3
    return 4


def build_grid(
    completion_log: Iterable[CompletionRecord],
    period,
    total_habit_count: int,
    today: Optional[date] = None,
) -> Weeks:
    """
    Fixed-shape grid of complete Sunday-to-Saturday weeks ending with today's week.
    Days after today carry None instead of a percentage.
    """
    today = today or local_date()
    start, _, weeks = window_for_period(period, today)
    totals = by_date(completion_log)

    grid: List[Tuple[GridDay, ...]] = []
    current = start
    for _ in range(weeks):
        week = []
        for _ in range(7):
            is_future = current > today
            if is_future:
                week.append(GridDay(current, None, None, None, True, False))
            else:
                raw = totals.get(current, 0.0)
                pct = day_percentage(raw, total_habit_count)
                week.append(GridDay(current, pct, raw, intensity_level(pct), False, current == today))
            current += timedelta(days=1)
        grid.append(tuple(week))
    return tuple(grid)


def _round_half_up(value: float) -> int:
    return int(value + 0.5)


def compute_stats(
    completion_log: Iterable[CompletionRecord],
    total_habit_count: int,
    today: Optional[date] = None,
    period=None,
) -> ActivityStats:
    today = today or local_date()
    records = list(completion_log)
    if period is not None:
        start, _, _ = window_for_period(period, today)
        records = [r for r in records if start <= r.completed_date <= today]

    totals = by_date(records)
    if not totals:
        return ActivityStats()

    percentages = {d: day_percentage(v, total_habit_count) for d, v in totals.items()}
    active = [p for p in percentages.values() if p > 0]
    average = _round_half_up(sum(active) / len(active) * 100) if active else 0

    def is_active(day: date) -> bool:
        return total_habit_count > 0 and totals.get(day, 0.0) >= total_habit_count * ACTIVE_DAY_THRESHOLD

    # Current run counts back from today itself
    current = 0
    cursor = today
    earliest = min(totals)
    while cursor >= earliest and is_active(cursor):
        current += 1
        cursor -= timedelta(days=1)

    longest = run = 0
    previous: Optional[date] = None
    for day in sorted(d for d in totals if is_active(d)):
        run = run + 1 if previous is not None and day == previous + timedelta(days=1) else 1
        longest = max(longest, run)
        previous = day

    return ActivityStats(
        total_days=len(totals),
        active_days=len(active),
        current_streak=current,
        longest_streak=longest,
        average_completion=average,
        total_completions=len(records),
    )


def month_labels(weeks: Weeks) -> List[Tuple[str, int]]:
    """(month abbreviation, week index) at each week whose first day starts a new month."""
    labels: List[Tuple[str, int]] = []
    last = None
    for index, week in enumerate(weeks):
        if not week:
            continue
        month = week[0].date.strftime("%b")
        if month != last:
            labels.append((month, index))
            last = month
    return labels
