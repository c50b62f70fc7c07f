from __future__ import annotations
from typing import Callable, Dict, Iterable, Optional
from datetime import date, timedelta

from ..config import settings
from ..models.habit import CompletionRecord

GoalResolver = Callable[[CompletionRecord], int]


def _recorded_goal(record: CompletionRecord) -> int:
    return record.daily_goal


def _index_by_date(records: Iterable[CompletionRecord]) -> Dict[date, CompletionRecord]:
    return {r.completed_date: r for r in records}


def _qualifies(record: Optional[CompletionRecord], resolve: GoalResolver) -> bool:
    if record is None:
        return False
    return record.completion_count >= max(1, resolve(record))


def compute_streak(
    records: Iterable[CompletionRecord],
    today: date,
    goal_resolver: Optional[GoalResolver] = None,
    max_lookback_days: Optional[int] = None,
) -> int:
    """
    Count consecutive qualifying days for one habit, walking back from `today`.

    A day qualifies iff its record reaches the goal stored on that record, so a later
    goal change never rewrites past results. An unfinished today is skipped rather
    than counted as a break: the streak ending yesterday still stands until the day
    rollover finalizes it.
    """
    resolve = goal_resolver or _recorded_goal
    lookback = max_lookback_days if max_lookback_days is not None else settings.MAX_STREAK_LOOKBACK_DAYS
    by_date = _index_by_date(records)
    if not by_date:
        return 0
    earliest = min(by_date)

    streak = 0
    cursor = today
    if not _qualifies(by_date.get(today), resolve):
        cursor = today - timedelta(days=1)

    floor = today - timedelta(days=lookback)
    while cursor >= earliest and cursor > floor:
        if not _qualifies(by_date.get(cursor), resolve):
            break
        streak += 1
        cursor -= timedelta(days=1)
    return streak


def longest_streak(
    records: Iterable[CompletionRecord],
    goal_resolver: Optional[GoalResolver] = None,
) -> int:
    """Longest run of consecutive qualifying calendar days anywhere in the history."""
    resolve = goal_resolver or _recorded_goal
    qualifying = sorted(r.completed_date for r in records if _qualifies(r, resolve))

    best = run = 0
    previous: Optional[date] = None
    for day in qualifying:
        if previous is not None and day == previous + timedelta(days=1):
            run += 1
        else:
            run = 1
        best = max(best, run)
        previous = day
    return best
