from __future__ import annotations
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional
from datetime import date, datetime
from loguru import logger

from ..models.habit import Habit, HISTORY_SLOTS, completion_percent
from ..models.actions import RecordCompletionAction
from ..utils.dates import days_between, local_date
from .local_cache import LocalCacheStore


class RolloverState(str, Enum):
    CURRENT_DAY = "CURRENT_DAY"
    TRANSITIONING = "TRANSITIONING"


@dataclass
class RolloverResult:
    today: date
    previous_day: Optional[date] = None
    days_elapsed: int = 0
    habits: List[Habit] = field(default_factory=list)
    # completion records for the finalized day, to be upserted idempotently
    backfill: List[RecordCompletionAction] = field(default_factory=list)
    # share of habits completed on the finalized day (0..1)
    finalized_fraction: float = 0.0

    @property
    def rolled_over(self) -> bool:
        return self.days_elapsed > 0


class DayRollover:
    """
    Detects a change of local calendar date since the last observation and freezes
    the finished day(s) into each habit's 7-slot history.

    The new last-visit marker is persisted before anything else, so a crash
    mid-transition never replays it. Streaks are not touched here; they are
    recomputed from the completion log by the caller.
    """

    def __init__(self, cache: LocalCacheStore, tz_name: Optional[str] = None):
        self.cache = cache
        self.tz_name = tz_name
        self.state = RolloverState.CURRENT_DAY

    async def check(self, habits: List[Habit], now: Optional[datetime] = None) -> RolloverResult:
        today = local_date(now, self.tz_name)
        last_visit = await self.cache.get_last_visit()

        if last_visit is None:
            await self.cache.set_last_visit(today)
            return RolloverResult(today=today, habits=habits)
        if last_visit >= today:
            return RolloverResult(today=today, previous_day=last_visit, habits=habits)

        self.state = RolloverState.TRANSITIONING
        try:
            await self.cache.set_last_visit(today)
            days = days_between(last_visit, today)
            result = RolloverResult(today=today, previous_day=last_visit, days_elapsed=days, habits=habits)
            result.finalized_fraction = completion_percent(habits) / 100
            for habit in habits:
                if habit.completions_today > 0:
                    result.backfill.append(RecordCompletionAction(
                        target_id=habit.id,
                        completed_date=last_visit,
                        completion_count=habit.completions_today,
                        daily_goal=habit.daily_goal,
                    ))
                self.roll_habit(habit, days)
            logger.info(
                "Day rollover {} -> {} ({} day(s)) for {} habits", last_visit, today, days, len(habits)
            )
            return result
        finally:
            self.state = RolloverState.CURRENT_DAY

    @staticmethod
    def roll_habit(habit: Habit, days: int) -> None:
        """
        Shift the ring once per elapsed day: the finished day pushes its completion
        flag, every skipped day after it pushes 0. Only the last HISTORY_SLOTS
        pushes can still be in the ring.
        """
        pushes = [1 if habit.completed_today else 0] + [0] * (days - 1)
        for value in pushes[-HISTORY_SLOTS:]:
            habit.push_history(value)
        habit.set_completions(0)
        habit.touch()

