from __future__ import annotations
import random
from typing import Callable, List, Optional, Tuple
from datetime import datetime
from redis.asyncio import Redis
from loguru import logger

from .config import settings
from .db import init_db, make_engine, make_session_factory
from .models.habit import Habit
from .models.actions import MutationOp
from .scheduler import jobs
from .scheduler.job_manager import JobManager
from .scheduler.scheduler_instance import start_scheduler, shutdown_scheduler
from .services.activity_aggregator import ActivityStats, Weeks
from .services.activity_service import ActivityService
from .services.change_feed import ChangeFeed, create_change_feed
from .services.gamification_service import GamificationService
from .services.local_cache import LocalCacheStore
from .services.reminders import ReminderSlot, reminder_schedule
from .services.remote_store import SqlRemoteStore
from .services.sync_engine import FlushResult, MutationOutcome, SyncEngine
from .services.day_rollover import RolloverResult


class HabitoApp:
    """
    Wires the local cache, remote store, change feed, sync engine, gamification,
    activity fetch layer and scheduler for one signed-in user at a time.
    """

    def __init__(
        self,
        local_url: Optional[str] = None,
        remote_url: Optional[str] = None,
        feed: Optional[ChangeFeed] = None,
        tz_name: Optional[str] = None,
        rng: Optional[random.Random] = None,
        on_reminder: Optional[Callable[[ReminderSlot], object]] = None,
        use_scheduler: bool = True,
        redis: Redis | None = None,
    ):
        self.tz_name = tz_name or settings.USER_TIMEZONE
        self.local_engine = make_engine(local_url or settings.LOCAL_CACHE_URL)
        self.remote_engine = make_engine(remote_url or settings.REMOTE_DATABASE_URL)
        self.feed = feed or create_change_feed()
        self.on_reminder = on_reminder
        self.use_scheduler = use_scheduler

        self.cache = LocalCacheStore(make_session_factory(self.local_engine))
        self.remote = SqlRemoteStore(make_session_factory(self.remote_engine), self.feed)
        self.activity = ActivityService(self.remote, redis=redis)
        self.sync = SyncEngine(self.remote, self.cache, activity=self.activity, tz_name=self.tz_name)
        self.gamification = GamificationService(
            self.remote, self.cache, rng=rng, online=lambda: self.sync.online
        )
        self.sync.gamification = self.gamification

    async def start(self) -> None:
        logger.remove()
        logger.add(lambda msg: print(msg, end=""), level=settings.LOG_LEVEL)

        await init_db(self.local_engine)
        await init_db(self.remote_engine)
        if self.use_scheduler:
            start_scheduler()
        logger.info("Habito started ({})", settings.ENV)

    async def sign_in(self, user_id: str, now: Optional[datetime] = None) -> List[Habit]:
        habits = await self.sync.load_initial(user_id, now)
        self.sync.start_realtime(self.feed)
        if self.use_scheduler:
            jobs.register_context(user_id, self.sync, self.on_reminder)
            JobManager.schedule_user_jobs(user_id, self.tz_name)
            JobManager.schedule_habit_reminders(user_id, self.sync.habits, self.tz_name)
        logger.info("User {} signed in with {} habits", user_id, len(habits))
        return habits

    async def mutate(self, op: MutationOp, now: Optional[datetime] = None) -> MutationOutcome:
        outcome = await self.sync.mutate(op, now)
        if self.use_scheduler and self.sync.user_id is not None:
            JobManager.schedule_habit_reminders(self.sync.user_id, self.sync.habits, self.tz_name)
        return outcome

    def reminders(self) -> List[ReminderSlot]:
        return reminder_schedule(self.sync.habits)

    async def activity_view(
        self, period, now: Optional[datetime] = None, skip_cache: bool = False
    ) -> Optional[Tuple[Weeks, ActivityStats]]:
        if self.sync.user_id is None:
            return None
        today = self.sync.today(now)
        data = await self.activity.fetch(self.sync.user_id, period, today, skip_cache=skip_cache)
        if data is None:
            return None
        return data.view(len(self.sync.habits), today)

    async def on_foreground(self, now: Optional[datetime] = None) -> RolloverResult:
        return await self.sync.on_foreground(now)

    async def on_network_change(self, online: bool) -> Optional[FlushResult]:
        return await self.sync.set_online(online)

    async def sign_out(self) -> None:
        user_id = self.sync.user_id
        if user_id is None:
            return
        if self.use_scheduler:
            JobManager.remove_user_jobs(user_id)
            jobs.unregister_context(user_id)
        await self.sync.sign_out()

    async def shutdown(self) -> None:
        await self.sync.stop()
        await self.activity.close()
        if self.use_scheduler:
            shutdown_scheduler()
        try:
            await self.feed.close()
        except Exception as e:
            logger.warning("Change feed did not close cleanly: {}", e)
        await self.local_engine.dispose()
        await self.remote_engine.dispose()
        logger.info("Habito shut down")
