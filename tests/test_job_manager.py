from datetime import date, datetime, time, timezone
import asyncio
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from pytz import utc

from habito.config import settings
from habito.models.habit import Habit
from habito.scheduler import jobs
from habito.scheduler.job_manager import JobManager

NOW = datetime(2024, 5, 15, 9, 0, tzinfo=timezone.utc)  # Wednesday


def _test_scheduler(monkeypatch):
    # Separate scheduler so the global one is left untouched
    test_scheduler = AsyncIOScheduler(timezone=utc)
    import habito.scheduler.job_manager as jm
    monkeypatch.setattr(jm, 'scheduler', test_scheduler)
    return test_scheduler


def test_schedule_user_jobs_registers_flush_and_rollover(monkeypatch):
    test_scheduler = _test_scheduler(monkeypatch)

    JobManager.schedule_user_jobs("u1", "Europe/Berlin")

    flush_job = test_scheduler.get_job('flush_u1')
    assert flush_job is not None
    assert isinstance(flush_job.trigger, IntervalTrigger)
    assert flush_job.trigger.interval.total_seconds() == settings.FLUSH_INTERVAL_SECONDS
    assert flush_job.args == ("u1",)

    rollover_job = test_scheduler.get_job('rollover_u1')
    assert rollover_job is not None
    next_run = rollover_job.trigger.get_next_fire_time(previous_fire_time=None, now=NOW)
    # 00:00:05 Berlin time on the following day
    assert next_run is not None
    assert (next_run.day, next_run.hour, next_run.minute, next_run.second) == (16, 0, 0, 5)


def test_habit_reminders_follow_schedule(monkeypatch):
    test_scheduler = _test_scheduler(monkeypatch)
    stretch = Habit(id="h1", user_id="u1", name="stretch", scheduled_time=time(7, 30), scheduled_days=[1, 3])
    read = Habit(id="h2", user_id="u1", name="read")

    JobManager.schedule_habit_reminders("u1", [stretch, read], "UTC")

    assert test_scheduler.get_job('habit_reminder_u1_h2') is None
    job = test_scheduler.get_job('habit_reminder_u1_h1')
    assert job is not None
    assert job.args == ("u1", "h1")
    next_run = job.trigger.get_next_fire_time(previous_fire_time=None, now=NOW)
    # Wednesday 07:30 has passed, so the next slot is Monday
    assert next_run.date() == date(2024, 5, 20)
    assert (next_run.hour, next_run.minute) == (7, 30)

    stretch.scheduled_time = None
    JobManager.schedule_habit_reminders("u1", [stretch, read], "UTC")
    assert test_scheduler.get_job('habit_reminder_u1_h1') is None


def test_remove_user_jobs_keeps_other_users(monkeypatch):
    test_scheduler = _test_scheduler(monkeypatch)
    habit = Habit(id="h1", user_id="u1", name="stretch", scheduled_time=time(7, 30))

    JobManager.schedule_user_jobs("u1", "UTC")
    JobManager.schedule_habit_reminders("u1", [habit], "UTC")
    JobManager.schedule_user_jobs("u2", "UTC")

    JobManager.remove_user_jobs("u1")

    assert sorted(job.id for job in test_scheduler.get_jobs()) == ['flush_u2', 'rollover_u2']


def test_flush_queue_job_calls_engine():
    engine = MagicMock()
    engine.flush_queue = AsyncMock(return_value=SimpleNamespace(error=None, remaining=0))
    jobs.register_context("u1", engine)
    try:
        asyncio.run(jobs.flush_queue_job("u1"))
        engine.flush_queue.assert_awaited_once()
    finally:
        jobs.unregister_context("u1")

    # no context, nothing to do
    asyncio.run(jobs.flush_queue_job("u1"))
    engine.flush_queue.assert_awaited_once()


def test_day_rollover_job_swallows_engine_errors():
    engine = MagicMock()
    engine.check_day = AsyncMock(side_effect=RuntimeError("db gone"))
    jobs.register_context("u1", engine)
    try:
        asyncio.run(jobs.day_rollover_job("u1"))
        engine.check_day.assert_awaited_once()
    finally:
        jobs.unregister_context("u1")


def test_habit_reminder_job_skips_completed_habits():
    habit = Habit(id="h1", user_id="u1", name="stretch", scheduled_time=time(7, 30))
    engine = MagicMock()
    engine.get_habit = MagicMock(return_value=habit)
    engine.today = MagicMock(return_value=date(2024, 5, 15))
    on_reminder = AsyncMock()
    jobs.register_context("u1", engine, on_reminder)
    try:
        asyncio.run(jobs.habit_reminder_job("u1", "h1"))
        on_reminder.assert_awaited_once()
        slot = on_reminder.await_args.args[0]
        assert slot.weekday == 3 and slot.habit_name == "stretch"

        habit.set_completions(1)
        asyncio.run(jobs.habit_reminder_job("u1", "h1"))
        on_reminder.assert_awaited_once()
    finally:
        jobs.unregister_context("u1")
