import asyncio
from datetime import date, datetime, timezone

from habito.models.habit import Habit
from habito.services.day_rollover import DayRollover


def _habit(**kw):
    data = dict(user_id="u1", name="read", daily_goal=2)
    data.update(kw)
    return Habit(**data)


def _at(day: date) -> datetime:
    return datetime(day.year, day.month, day.day, 9, 0, tzinfo=timezone.utc)


def test_first_visit_only_records_marker(make_stores):
    async def _run_test():
        stores = await make_stores()
        await stores.cache.init("u1")
        rollover = DayRollover(stores.cache, "UTC")
        habit = _habit(completions_today=1)

        result = await rollover.check([habit], _at(date(2024, 5, 15)))
        assert not result.rolled_over
        assert await stores.cache.get_last_visit() == date(2024, 5, 15)
        assert habit.completions_today == 1

        # same day again is a no-op
        result = await rollover.check([habit], _at(date(2024, 5, 15)))
        assert not result.rolled_over
        assert habit.completions_today == 1
        await stores.dispose()

    asyncio.run(_run_test())


def test_three_day_gap_shifts_ring_three_times(make_stores):
    async def _run_test():
        stores = await make_stores()
        await stores.cache.init("u1")
        await stores.cache.set_last_visit(date(2024, 5, 12))
        rollover = DayRollover(stores.cache, "UTC")

        done = _habit(history=[1] * 7, streak=4)
        done.set_completions(2)
        partial = _habit(history=[1] * 7, streak=2)
        partial.set_completions(1)
        untouched = _habit(history=[1] * 7)

        result = await rollover.check([done, partial, untouched], _at(date(2024, 5, 15)))

        assert result.rolled_over and result.days_elapsed == 3
        assert result.previous_day == date(2024, 5, 12)
        assert done.history == [1, 1, 1, 1, 1, 0, 0]
        assert partial.history == [1, 1, 1, 1, 0, 0, 0]
        assert untouched.history == [1, 1, 1, 1, 0, 0, 0]
        for habit in (done, partial, untouched):
            assert habit.completions_today == 0
            assert habit.completed_today is False
        # streaks are left to the completion log recompute
        assert done.streak == 4 and partial.streak == 2

        assert [(a.target_id, a.completed_date, a.completion_count, a.daily_goal) for a in result.backfill] == [
            (done.id, date(2024, 5, 12), 2, 2),
            (partial.id, date(2024, 5, 12), 1, 2),
        ]
        assert result.finalized_fraction == 0.33
        assert await stores.cache.get_last_visit() == date(2024, 5, 15)
        await stores.dispose()

    asyncio.run(_run_test())


def test_long_absence_clears_ring():
    habit = _habit(history=[1] * 7)
    habit.set_completions(2)
    DayRollover.roll_habit(habit, 30)
    assert habit.history == [0] * 7
    assert habit.completions_today == 0


def test_finished_day_leaves_ring_after_seven_days():
    week = _habit(history=[0] * 7)
    week.set_completions(2)
    DayRollover.roll_habit(week, 7)
    assert week.history == [1, 0, 0, 0, 0, 0, 0]

    longer = _habit(history=[0] * 7)
    longer.set_completions(2)
    DayRollover.roll_habit(longer, 8)
    assert longer.history == [0] * 7
