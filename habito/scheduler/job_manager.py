from __future__ import annotations
from typing import Iterable
from loguru import logger
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from ..config import settings
from ..models.habit import Habit, ALL_WEEKDAYS
from ..utils.dates import resolve_zone
from .scheduler_instance import scheduler

# APScheduler day names, indexed Sunday-first like Habit.scheduled_days
CRON_DAY_NAMES = ["sun", "mon", "tue", "wed", "thu", "fri", "sat"]


class JobManager:
    """
    Manages per-user scheduled jobs: queue flush, midnight rollover, habit reminders.
    """

    @staticmethod
    def schedule_user_jobs(user_id: str, tz_name: str | None = None):
        """
        Schedule or reschedule the sync jobs for a user.
        """
        tz = resolve_zone(tz_name)

        job_id = f"flush_{user_id}"
        scheduler.add_job(
            func="habito.scheduler.jobs:flush_queue_job",
            trigger=IntervalTrigger(seconds=settings.FLUSH_INTERVAL_SECONDS),
            id=job_id,
            args=[user_id],
            replace_existing=True,
        )
        logger.info("Scheduled queue flush for user {} every {}s", user_id, settings.FLUSH_INTERVAL_SECONDS)

        # A few seconds past midnight so the local date has certainly changed
        job_id = f"rollover_{user_id}"
        scheduler.add_job(
            func="habito.scheduler.jobs:day_rollover_job",
            trigger=CronTrigger(hour=0, minute=0, second=5, timezone=tz),
            id=job_id,
            args=[user_id],
            replace_existing=True,
        )
        logger.info("Scheduled day rollover for user {} at local midnight ({})", user_id, tz.key)

    @staticmethod
    def remove_user_jobs(user_id: str):
        """Remove all jobs for a user."""
        for job in list(scheduler.get_jobs()):
            if job.id in (f"flush_{user_id}", f"rollover_{user_id}") or job.id.startswith(f"habit_reminder_{user_id}_"):
                scheduler.remove_job(job.id)
                logger.info("Removed job {}", job.id)

    @staticmethod
    def schedule_habit_reminders(user_id: str, habits: Iterable[Habit], tz_name: str | None = None):
        """
        Schedule weekly reminders for habits with a scheduled_time, dropping those
        of habits that no longer have one.
        """
        tz = resolve_zone(tz_name)
        wanted = set()
        for habit in habits:
            if habit.scheduled_time is None:
                continue
            job_id = f"habit_reminder_{user_id}_{habit.id}"
            wanted.add(job_id)
            days = habit.scheduled_days or ALL_WEEKDAYS
            scheduler.add_job(
                func="habito.scheduler.jobs:habit_reminder_job",
                trigger=CronTrigger(
                    day_of_week=",".join(CRON_DAY_NAMES[d] for d in days),
                    hour=habit.scheduled_time.hour,
                    minute=habit.scheduled_time.minute,
                    timezone=tz,
                ),
                id=job_id,
                args=[user_id, habit.id],
                replace_existing=True,
            )
            logger.info("Scheduled reminder for habit {} at {}", habit.id, habit.scheduled_time)

        for job in list(scheduler.get_jobs()):
            if job.id.startswith(f"habit_reminder_{user_id}_") and job.id not in wanted:
                scheduler.remove_job(job.id)
                logger.info("Removed reminder job {}", job.id)
