from __future__ import annotations
from contextlib import suppress
from dataclasses import dataclass, field
import asyncio
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Set, Tuple
from datetime import date, datetime, timedelta, timezone
from loguru import logger

from ..config import settings
from ..errors import QueueReplayError, RemoteConnectionError, RemoteWriteError, ValidationError
from ..models.habit import Habit, CompletionRecord, ALL_WEEKDAYS, completion_percent
from ..models.actions import (
    PendingAction,
    CreateHabitAction,
    UpdateHabitAction,
    DeleteHabitAction,
    RecordCompletionAction,
    MutationOp,
    CreateHabitOp,
    UpdateHabitOp,
    DeleteHabitOp,
    RecordCompletionOp,
)
from ..models.events import ChangeEvent, ChangeType
from ..utils.dates import as_utc, local_date, utcnow
from ..utils.validators import clean_habit_name, clamp_goal, clean_scheduled_days, parse_scheduled_time
from .change_feed import ChangeFeed
from .completion_store import CompletionStore
from .day_rollover import DayRollover, RolloverResult
from .local_cache import LocalCacheStore
from .remote_store import RemoteStore
from .streak_engine import compute_streak
from .vitality_engine import HeartsUpdate

HABIT_ICONS = ["◎", "▣", "△", "▢", "○", "◇", "▽", "□", "●", "◆"]

# Fields compared when deciding whether a habit change event is our own write coming back
_ECHO_FIELDS = (
    "name", "icon", "daily_goal", "position", "scheduled_time", "scheduled_days",
    "history", "completed_today", "completions_today", "streak",
)

Revert = Callable[[], Awaitable[None]]


@dataclass
class RecomputeResult:
    streaks: Dict[str, int] = field(default_factory=dict)
    percent: int = 0
    hearts: Optional[HeartsUpdate] = None


@dataclass
class MutationOutcome:
    habit: Optional[Habit]
    queued: bool
    recompute: RecomputeResult


@dataclass
class FlushResult:
    flushed: int = 0
    remaining: int = 0
    error: Optional[QueueReplayError] = None

    @property
    def ok(self) -> bool:
        return self.error is None


class SyncEngine:
    """
    Reconciles the local habit snapshot with the remote store.

    Every mutation is applied to memory first, then persisted to the local cache,
    then written remotely (or queued while offline). Derived values are recomputed
    explicitly through `_recompute()` after each mutation.

    Remote writes for one habit are serialized through a per-habit lock, and while
    the offline queue still holds actions for a habit, newer writes for it are
    queued behind them instead of overtaking.
    """

    def __init__(
        self,
        remote: RemoteStore,
        cache: LocalCacheStore,
        gamification=None,
        activity=None,
        tz_name: Optional[str] = None,
        online: bool = True,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.remote = remote
        self.cache = cache
        self.gamification = gamification
        self.activity = activity
        self.tz_name = tz_name
        self.online = online
        self._clock = clock or utcnow
        self.rollover = DayRollover(cache, tz_name)

        self.user_id: Optional[str] = None
        self.habits: List[Habit] = []
        self.completions = CompletionStore("")
        self.queue: List[PendingAction] = []
        self._day: Optional[date] = None

        self._habit_locks: Dict[str, asyncio.Lock] = {}
        self._flush_lock = asyncio.Lock()
        self._in_flight: Dict[str, int] = {}
        self._last_local_mutation: Dict[str, datetime] = {}
        self._refresh_task: Optional[asyncio.Task] = None
        self._persist_task: Optional[asyncio.Future] = None
        self._refresh_generation = 0
        self._realtime_task: Optional[asyncio.Task] = None

    # --- helpers ---

    def now(self) -> datetime:
        return self._clock()

    def today(self, now: Optional[datetime] = None) -> date:
        return local_date(now or self.now(), self.tz_name)

    def _require_user(self) -> str:
        if self.user_id is None:
            raise RuntimeError("SyncEngine.load_initial(user_id) must be called first")
        return self.user_id

    def get_habit(self, habit_id: str) -> Optional[Habit]:
        for habit in self.habits:
            if habit.id == habit_id:
                return habit
        return None

    def _require_habit(self, habit_id: str) -> Habit:
        habit = self.get_habit(habit_id)
        if habit is None:
            raise ValidationError(f"Habit {habit_id} not found")
        return habit

    def _lock_for(self, habit_id: str) -> asyncio.Lock:
        lock = self._habit_locks.get(habit_id)
        if lock is None:
            lock = self._habit_locks[habit_id] = asyncio.Lock()
        return lock

    def _mark_local(self, habit_id: str) -> None:
        self._last_local_mutation[habit_id] = datetime.now(timezone.utc)

    def _has_queued(self, habit_id: str) -> bool:
        return any(a.habit_id == habit_id for a in self.queue)

    def pending_habit_ids(self) -> Set[str]:
        """Habits with queued or in-flight remote writes."""
        ids = {a.habit_id for a in self.queue}
        ids.update(h for h, n in self._in_flight.items() if n > 0)
        return ids

    def _sort_habits(self) -> None:
        self.habits.sort(key=lambda h: (h.position, as_utc(h.created_at)))

    async def _save_snapshot(self) -> None:
        await self.cache.save_habits(self.habits)
        await self.cache.save_completions(self.completions.all_records())

    # --- loading ---

    async def load_initial(self, user_id: str, now: Optional[datetime] = None) -> List[Habit]:
        """
        Returns the cached snapshot immediately when one exists and refreshes it in the
        background. Without a cache the remote fetch is awaited under a hard timeout.
        """
        now = now or self.now()
        await self.cache.init(user_id)
        self.user_id = user_id
        self.completions = CompletionStore(user_id)

        cached = await self.cache.load_habits()
        if cached is not None:
            habits, saved_at = cached
            self.habits = habits
            self.completions.replace_all(await self.cache.load_completions())
            self.queue = await self.cache.load_queue()
            logger.info(
                "Loaded {} cached habits for user {} (saved {}, {} queued actions)",
                len(habits), user_id, saved_at, len(self.queue),
            )
            if self.gamification is not None:
                await self.gamification.load(user_id, now, fetch_remote=False)
            # remote writes of a rollover go through the queue; the refresh flushes them
            await self.check_day(now, defer_remote=True)
            self.schedule_refresh()
            return list(self.habits)

        try:
            habits, records = await asyncio.wait_for(
                self._fetch_remote(user_id, self.today(now)), settings.INITIAL_LOAD_TIMEOUT_SECONDS
            )
        except asyncio.TimeoutError as e:
            logger.error("Initial load for user {} timed out", user_id)
            raise RemoteConnectionError(
                f"Remote store did not answer within {settings.INITIAL_LOAD_TIMEOUT_SECONDS}s"
            ) from e
        except Exception as e:
            logger.error("Initial load for user {} failed: {}", user_id, e)
            raise RemoteConnectionError(f"Remote store unreachable: {e}") from e

        self.habits = habits
        self._sort_habits()
        self.completions.replace_all(records)
        self.queue = await self.cache.load_queue()
        self._sync_today_counts(self.habits, self.today(now))
        self._recompute_streaks([h.id for h in self.habits], self.today(now))
        logger.info("Loaded {} habits for user {} from remote", len(habits), user_id)

        if self.gamification is not None:
            await self.gamification.load(user_id, now)
        await self._save_snapshot()
        await self.cache.touch_last_sync()
        await self.check_day(now)
        return list(self.habits)

    async def _fetch_remote(self, user_id: str, today: date) -> Tuple[List[Habit], List[CompletionRecord]]:
        habits = await self.remote.list_habits(user_id)
        start = today - timedelta(days=settings.MAX_STREAK_LOOKBACK_DAYS)
        records = await self.remote.list_completions(user_id, start, today)
        return habits, records

    def _sync_today_counts(self, habits: Iterable[Habit], today: date) -> None:
        """Today's count on each habit follows today's completion record."""
        for habit in habits:
            record = self.completions.get(habit.id, today)
            count = record.completion_count if record else 0
            if habit.completions_today != count or habit.completed_today != (count >= habit.daily_goal):
                habit.set_completions(count)

    # --- day rollover ---

    async def check_day(self, now: Optional[datetime] = None, defer_remote: bool = False) -> RolloverResult:
        """
        Run the rollover when the local date moved; persists and sends everything it
        produced. With defer_remote nothing waits on the remote store: the actions
        are queued and the spirit is only saved locally.
        """
        now = now or self.now()
        result = await self.rollover.check(self.habits, now)
        self._day = result.today
        if not result.rolled_over:
            return result

        for action in result.backfill:
            self.completions.set_count(
                action.target_id, action.completed_date, action.completion_count, action.daily_goal
            )
        self._recompute_streaks([h.id for h in self.habits], result.today)
        for habit in self.habits:
            self._mark_local(habit.id)
        await self._save_snapshot()

        actions: List[PendingAction] = list(result.backfill)
        for habit in self.habits:
            actions.append(UpdateHabitAction(
                target_id=habit.id,
                changes=self._json_fields(habit, ("history", "completed_today", "completions_today", "streak")),
            ))
        if defer_remote:
            if actions:
                await self._enqueue(actions)
        else:
            await self._dispatch(actions)

        if self.gamification is not None and self.gamification.state is not None:
            await self.gamification.finalize_day(result.today, remote=not defer_remote)
        await self._recompute([h.id for h in self.habits], result.today, remote=not defer_remote)
        return result

    async def _roll_to(self, now: Optional[datetime] = None) -> datetime:
        """Runs the rollover first when `now` falls on a new local date."""
        now = now or self.now()
        if self._day is not None and self.today(now) != self._day:
            await self.check_day(now)
        return now

    async def on_foreground(self, now: Optional[datetime] = None) -> RolloverResult:
        result = await self.check_day(now)
        if self.online:
            await self.flush_queue()
            self.schedule_refresh()
        return result

    # --- remote writes ---

    async def _apply_remote(self, action: PendingAction) -> None:
        user_id = self._require_user()
        if isinstance(action, CreateHabitAction):
            await self.remote.upsert_habit(Habit.from_snapshot(action.habit))
        elif isinstance(action, UpdateHabitAction):
            await self.remote.update_habit(user_id, action.target_id, action.changes)
        elif isinstance(action, DeleteHabitAction):
            await self.remote.delete_habit(user_id, action.target_id)
        elif isinstance(action, RecordCompletionAction):
            await self.remote.upsert_completion(
                user_id, action.target_id, action.completed_date, action.completion_count, action.daily_goal
            )
        else:
            raise TypeError(f"Unknown action {action!r}")

    async def _write_through(self, action: PendingAction) -> bool:
        """Write one action under its habit's lock. False means it must be queued behind older actions."""
        habit_id = action.habit_id
        self._in_flight[habit_id] = self._in_flight.get(habit_id, 0) + 1
        try:
            async with self._lock_for(habit_id):
                if self._has_queued(habit_id):
                    return False
                await asyncio.wait_for(self._apply_remote(action), settings.REMOTE_CALL_TIMEOUT_SECONDS)
                return True
        finally:
            self._in_flight[habit_id] -= 1
            if not self._in_flight[habit_id]:
                del self._in_flight[habit_id]

    async def _enqueue(self, actions: List[PendingAction]) -> None:
        self.queue.extend(actions)
        await self.cache.save_queue(self.queue)
        logger.info("Queued {} action(s) for user {} ({} pending)", len(actions), self.user_id, len(self.queue))

    async def _dispatch(self, actions: List[PendingAction], revert: Optional[Revert] = None) -> bool:
        """
        Send actions in order. Returns True when any of them ended up in the queue.

        Offline, everything is queued. If the first write fails while online the
        optimistic change is reverted and RemoteWriteError raised; once a write has
        landed, a later failure queues the rest instead.
        """
        if not actions:
            return False
        if not self.online:
            await self._enqueue(actions)
            return True

        for index, action in enumerate(actions):
            try:
                written = await self._write_through(action)
            except Exception as e:
                if index == 0 and revert is not None:
                    logger.warning("Remote write {} failed for habit {}; reverting: {}", action.type, action.habit_id, e)
                    await revert()
                    raise RemoteWriteError(f"Could not save change: {e}", action) from e
                logger.warning(
                    "Remote write {} failed for habit {}; queueing {} action(s): {}",
                    action.type, action.habit_id, len(actions) - index, e,
                )
                await self._enqueue(actions[index:])
                return True
            if not written:
                await self._enqueue(actions[index:])
                return True
        return False

    async def flush_queue(self) -> FlushResult:
        """Replay queued actions FIFO; an action leaves the queue only once the remote confirmed it."""
        if self.user_id is None:
            return FlushResult()
        if not self.online:
            return FlushResult(remaining=len(self.queue))

        result = FlushResult()
        async with self._flush_lock:
            while self.queue:
                action = self.queue[0]
                try:
                    async with self._lock_for(action.habit_id):
                        await asyncio.wait_for(self._apply_remote(action), settings.REMOTE_CALL_TIMEOUT_SECONDS)
                        if self.queue and self.queue[0] is action:
                            self.queue.pop(0)
                except Exception as e:
                    result.error = QueueReplayError(
                        f"Replaying {action.type} for habit {action.habit_id} failed: {e}",
                        action,
                        len(self.queue),
                    )
                    logger.warning("Queue flush halted for user {}: {}", self.user_id, e)
                    break
                result.flushed += 1
                await self.cache.save_queue(self.queue)
            result.remaining = len(self.queue)

        if result.flushed:
            logger.info("Flushed {} queued action(s) for user {}", result.flushed, self.user_id)
        if result.ok:
            await self.cache.touch_last_sync()
        if self.gamification is not None and self.gamification.state is not None:
            await self.gamification.flush()
        return result

    async def set_online(self, online: bool) -> Optional[FlushResult]:
        was_online = self.online
        self.online = online
        if online == was_online:
            return None
        logger.info("User {} is now {}", self.user_id, "online" if online else "offline")
        if online and self.user_id is not None:
            result = await self.flush_queue()
            self.schedule_refresh()
            return result
        return None

    # --- mutations ---

    async def mutate(self, op: MutationOp, now: Optional[datetime] = None) -> MutationOutcome:
        if isinstance(op, CreateHabitOp):
            return await self.create_habit(
                op.name, op.icon, op.daily_goal, op.scheduled_time, op.scheduled_days, now=now
            )
        if isinstance(op, UpdateHabitOp):
            return await self.update_habit(op.habit_id, op.changes, now=now)
        if isinstance(op, DeleteHabitOp):
            return await self.delete_habit(op.habit_id, now=now)
        if isinstance(op, RecordCompletionOp):
            return await self.record_completion(op.habit_id, op.completion_count, now=now)
        raise ValidationError(f"Unsupported mutation {op!r}")

    async def create_habit(
        self,
        name: str,
        icon: Optional[str] = None,
        daily_goal: int = 1,
        scheduled_time=None,
        scheduled_days: Optional[List[int]] = None,
        now: Optional[datetime] = None,
    ) -> MutationOutcome:
        user_id = self._require_user()
        habit = Habit(
            user_id=user_id,
            name=clean_habit_name(name),
            icon=self._clean_icon(icon) if icon else HABIT_ICONS[len(self.habits) % len(HABIT_ICONS)],
            daily_goal=clamp_goal(daily_goal),
            scheduled_time=parse_scheduled_time(scheduled_time),
            scheduled_days=clean_scheduled_days(scheduled_days) if scheduled_days is not None else list(ALL_WEEKDAYS),
            position=max((h.position for h in self.habits), default=-1) + 1,
        )
        self.habits.append(habit)
        self._mark_local(habit.id)
        today = self.today(now)

        async def revert() -> None:
            if habit in self.habits:
                self.habits.remove(habit)
                await self._save_snapshot()

        await self._save_snapshot()
        queued = await self._dispatch([CreateHabitAction(habit=habit.snapshot())], revert)
        logger.info("Created habit {} for user {}", habit.id, user_id)
        return MutationOutcome(habit, queued, await self._recompute([habit.id], today))

    @staticmethod
    def _clean_icon(icon) -> str:
        value = str(icon or "").strip()
        if not value or len(value) > 8:
            raise ValidationError("icon must be 1-8 characters")
        return value

    def _clean_changes(self, changes: Dict[str, Any]) -> Dict[str, Any]:
        if not changes:
            raise ValidationError("No changes given")
        cleaned: Dict[str, Any] = {}
        for key, value in changes.items():
            if key == "name":
                cleaned[key] = clean_habit_name(value)
            elif key == "icon":
                cleaned[key] = self._clean_icon(value)
            elif key == "daily_goal":
                cleaned[key] = clamp_goal(value)
            elif key == "scheduled_time":
                cleaned[key] = parse_scheduled_time(value)
            elif key == "scheduled_days":
                cleaned[key] = clean_scheduled_days(value)
            elif key == "position":
                try:
                    position = int(value)
                except (TypeError, ValueError):
                    raise ValidationError("position must be an integer")
                if position < 0:
                    raise ValidationError("position must not be negative")
                cleaned[key] = position
            else:
                raise ValidationError(f"Field {key!r} cannot be updated")
        return cleaned

    @staticmethod
    def _json_fields(habit: Habit, keys: Iterable[str]) -> Dict[str, Any]:
        data = habit.snapshot()
        return {k: data[k] for k in keys}

    async def update_habit(self, habit_id: str, changes: Dict[str, Any], now: Optional[datetime] = None) -> MutationOutcome:
        cleaned = self._clean_changes(changes)
        now = await self._roll_to(now)
        habit = self._require_habit(habit_id)
        today = self.today(now)

        tracked = set(cleaned) | {"completions_today", "completed_today", "streak"}
        before = {k: getattr(habit, k) for k in tracked}
        previous_record = self.completions.get(habit_id, today)

        for key, value in cleaned.items():
            setattr(habit, key, value)
        actions: List[PendingAction] = []
        goal_changed = "daily_goal" in cleaned and cleaned["daily_goal"] != before["daily_goal"]
        if goal_changed:
            # Past records keep the goal they were recorded with; only today moves to the new one
            habit.set_completions(habit.completions_today)
            if habit.completions_today > 0 or previous_record is not None:
                self.completions.set_count(habit_id, today, habit.completions_today, habit.daily_goal)
                actions.append(RecordCompletionAction(
                    target_id=habit_id,
                    completed_date=today,
                    completion_count=habit.completions_today,
                    daily_goal=habit.daily_goal,
                ))
            self._recompute_streaks([habit_id], today)
        habit.touch()
        if "position" in cleaned:
            self._sort_habits()
        self._mark_local(habit_id)
        actions.insert(0, UpdateHabitAction(target_id=habit_id, changes=self._json_fields(habit, tracked)))
        after = {k: getattr(habit, k) for k in tracked}

        async def revert() -> None:
            if self.get_habit(habit_id) is not habit or {k: getattr(habit, k) for k in tracked} != after:
                return
            for key, value in before.items():
                setattr(habit, key, value)
            if goal_changed:
                self.completions.restore(habit_id, today, previous_record)
            if "position" in cleaned:
                self._sort_habits()
            await self._save_snapshot()

        await self._save_snapshot()
        queued = await self._dispatch(actions, revert)
        return MutationOutcome(habit, queued, await self._recompute([habit_id], today))

    async def delete_habit(self, habit_id: str, now: Optional[datetime] = None) -> MutationOutcome:
        habit = self._require_habit(habit_id)
        today = self.today(now)
        index = self.habits.index(habit)
        records = self.completions.records_for_habit(habit_id)
        self.habits.remove(habit)
        self.completions.drop_habit(habit_id)
        self._mark_local(habit_id)

        async def revert() -> None:
            if self.get_habit(habit_id) is not None:
                return
            self.habits.insert(min(index, len(self.habits)), habit)
            for record in records:
                if self.completions.get(record.habit_id, record.completed_date) is None:
                    self.completions.restore(record.habit_id, record.completed_date, record)
            await self._save_snapshot()

        await self._save_snapshot()
        queued = await self._dispatch([DeleteHabitAction(target_id=habit_id)], revert)
        logger.info("Deleted habit {} for user {}", habit_id, self.user_id)
        return MutationOutcome(None, queued, await self._recompute([], today))

    async def record_completion(
        self, habit_id: str, completion_count: int, now: Optional[datetime] = None
    ) -> MutationOutcome:
        """Set today's count for a habit (clamped to 0..daily_goal). A count of 0 removes today's record."""
        now = await self._roll_to(now)
        today = self.today(now)
        habit = self._require_habit(habit_id)
        try:
            count = max(0, min(int(completion_count), habit.daily_goal))
        except (TypeError, ValueError):
            raise ValidationError("completion_count must be an integer")

        before = (habit.completions_today, habit.completed_today, habit.streak)
        previous_record = self.completions.get(habit_id, today)
        was_completed = habit.completed_today

        habit.set_completions(count)
        habit.touch()
        self.completions.set_count(habit_id, today, count, habit.daily_goal)
        self._recompute_streaks([habit_id], today)
        self._mark_local(habit_id)
        tracked = ("completions_today", "completed_today", "streak")
        after = tuple(getattr(habit, k) for k in tracked)
        actions: List[PendingAction] = [
            RecordCompletionAction(
                target_id=habit_id, completed_date=today, completion_count=count, daily_goal=habit.daily_goal
            ),
            UpdateHabitAction(target_id=habit_id, changes=self._json_fields(habit, tracked)),
        ]

        async def revert() -> None:
            if self.get_habit(habit_id) is not habit or tuple(getattr(habit, k) for k in tracked) != after:
                return
            habit.completions_today, habit.completed_today, habit.streak = before
            self.completions.restore(habit_id, today, previous_record)
            await self._save_snapshot()

        await self._save_snapshot()
        queued = await self._dispatch(actions, revert)
        recompute = await self._recompute([habit_id], today)
        if habit.completed_today and not was_completed and self.gamification is not None \
                and self.gamification.state is not None:
            await self.gamification.feed(habit.streak, now)
        return MutationOutcome(habit, queued, recompute)

    # The wrappers read today's count, so the day has to be rolled before they look

    async def toggle_habit(self, habit_id: str, now: Optional[datetime] = None) -> MutationOutcome:
        now = await self._roll_to(now)
        habit = self._require_habit(habit_id)
        return await self.record_completion(habit_id, 0 if habit.completed_today else habit.daily_goal, now)

    async def increment_completion(self, habit_id: str, now: Optional[datetime] = None) -> MutationOutcome:
        now = await self._roll_to(now)
        habit = self._require_habit(habit_id)
        return await self.record_completion(habit_id, habit.completions_today + 1, now)

    async def decrement_completion(self, habit_id: str, now: Optional[datetime] = None) -> MutationOutcome:
        now = await self._roll_to(now)
        habit = self._require_habit(habit_id)
        return await self.record_completion(habit_id, habit.completions_today - 1, now)

    # --- derived values ---

    def _recompute_streaks(self, habit_ids: Iterable[str], today: date) -> Dict[str, int]:
        streaks = {}
        for habit_id in habit_ids:
            habit = self.get_habit(habit_id)
            if habit is None:
                continue
            habit.streak = compute_streak(self.completions.records_for_habit(habit_id), today)
            streaks[habit_id] = habit.streak
        return streaks

    def _check_invariant(self) -> None:
        for habit in self.habits:
            if habit.completed_today != (habit.completions_today >= habit.daily_goal):
                logger.error(
                    "Habit {} had completed_today={} with {}/{}; repairing",
                    habit.id, habit.completed_today, habit.completions_today, habit.daily_goal,
                )
                habit.set_completions(habit.completions_today)

    async def _recompute(
        self,
        habit_ids: Iterable[str],
        today: Optional[date] = None,
        hearts: bool = True,
        remote: bool = True,
    ) -> RecomputeResult:
        """Streaks from the completion log, then today's percent, then hearts."""
        today = today or self.today()
        result = RecomputeResult(streaks=self._recompute_streaks(habit_ids, today))
        self._check_invariant()
        result.percent = completion_percent(self.habits)
        if hearts and self.gamification is not None and self.gamification.state is not None:
            result.hearts = await self.gamification.on_completion_percent(result.percent, today, remote=remote)
            await self.gamification.update_streak(max((h.streak for h in self.habits), default=0), remote=remote)
        if self.activity is not None and self.user_id is not None:
            await self.activity.invalidate(self.user_id)
        return result

    # --- refresh ---

    def schedule_refresh(self) -> asyncio.Task:
        """Start a refresh, cancelling one that is still running."""
        if self._refresh_task is not None and not self._refresh_task.done():
            self._refresh_task.cancel()
        self._refresh_task = asyncio.create_task(self._background_refresh())
        return self._refresh_task

    async def _background_refresh(self) -> None:
        try:
            if self.online and self.queue:
                await self.flush_queue()
            await self.refresh()
            if self.gamification is not None and self.gamification.state is not None:
                await self.gamification.refresh(self.user_id)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Background refresh failed for user {}", self.user_id)

    async def refresh(self) -> bool:
        """
        Fetch remote habits and completions and merge them in. Returns False when the
        fetch failed or a newer refresh started meanwhile; the cached data stays.
        """
        user_id = self._require_user()
        self._refresh_generation += 1
        generation = self._refresh_generation
        today = self.today()
        try:
            habits, records = await asyncio.wait_for(
                self._fetch_remote(user_id, today), settings.REMOTE_CALL_TIMEOUT_SECONDS
            )
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning("Refresh failed for user {}; keeping cached data: {}", user_id, e)
            return False
        if generation != self._refresh_generation or self.user_id != user_id:
            logger.debug("Discarding superseded refresh for user {}", user_id)
            return False

        previous = self._persist_task
        if previous is not None and not previous.done():
            await asyncio.wait([previous])
            if generation != self._refresh_generation:
                return False
        # Only the fetch is cancellable; once merging starts it runs to the end
        self._persist_task = asyncio.ensure_future(self._apply_refresh(user_id, habits, records, today))
        return await asyncio.shield(self._persist_task)

    async def _apply_refresh(
        self, user_id: str, habits: List[Habit], records: List[CompletionRecord], today: date
    ) -> bool:
        try:
            percent_before = completion_percent(self.habits)
            self._merge_remote(habits, records, today)
            await self._save_snapshot()
            await self.cache.touch_last_sync()
            result = await self._recompute(
                [h.id for h in self.habits],
                today,
                hearts=completion_percent(self.habits) != percent_before,
                remote=False,
            )
            await self._save_snapshot()
        except Exception:
            logger.exception("Could not apply refreshed data for user {}", user_id)
            return False
        logger.debug("Refreshed {} habits for user {} ({}%)", len(self.habits), user_id, result.percent)
        return True

    def _merge_remote(self, habits: List[Habit], records: List[CompletionRecord], today: date) -> None:
        """Remote rows win, except for habits with pending local writes, whose local copies are kept."""
        pending = self.pending_habit_ids()
        local = {h.id: h for h in self.habits}
        merged: List[Habit] = []
        remote_ids = set()
        for habit in habits:
            remote_ids.add(habit.id)
            if habit.id in pending:
                # absent locally means a queued delete
                if habit.id in local:
                    merged.append(local[habit.id])
                continue
            merged.append(habit)
        for habit in self.habits:
            if habit.id not in remote_ids and habit.id in pending:
                merged.append(habit)

        kept = [r for r in self.completions.all_records() if r.habit_id in pending]
        self.completions.replace_all([r for r in records if r.habit_id not in pending] + kept)
        self.habits = merged
        self._sort_habits()
        self._sync_today_counts([h for h in self.habits if h.id not in pending], today)

    # --- change feed ---

    def start_realtime(self, feed: ChangeFeed) -> asyncio.Task:
        user_id = self._require_user()
        if self._realtime_task is not None and not self._realtime_task.done():
            self._realtime_task.cancel()
        self._realtime_task = asyncio.create_task(self._consume_changes(feed, user_id))
        return self._realtime_task

    async def _consume_changes(self, feed: ChangeFeed, user_id: str) -> None:
        logger.info("Listening for changes for user {}", user_id)
        try:
            async for event in feed.subscribe(user_id):
                try:
                    await self.handle_change(event)
                except Exception:
                    logger.exception("Failed to handle {} change {}", event.table, event.entity_id)
        finally:
            logger.info("Stopped listening for changes for user {}", user_id)

    async def handle_change(self, event: ChangeEvent) -> bool:
        """React to a remote change. Returns True when it triggered a refresh."""
        if event.user_id != self.user_id:
            return False
        if event.table == "completions":
            habit_id = event.row["habit_id"] if event.row else event.entity_id.split(":", 1)[0]
            if self.activity is not None:
                await self.activity.invalidate(event.user_id)
        elif event.table == "habits":
            habit_id = event.entity_id
        else:
            return False

        if habit_id in self.pending_habit_ids():
            logger.debug("Ignoring {} change for habit {} with pending writes", event.table, habit_id)
            return False
        last_local = self._last_local_mutation.get(habit_id)
        if last_local is not None and as_utc(event.committed_at) < last_local:
            logger.debug("Ignoring stale {} change for habit {}", event.table, habit_id)
            return False
        if self._is_echo(event, habit_id):
            return False

        self.schedule_refresh()
        return True

    def _is_echo(self, event: ChangeEvent, habit_id: str) -> bool:
        """True when the event describes a state we already hold locally."""
        if event.table == "habits":
            habit = self.get_habit(habit_id)
            if event.event_type == ChangeType.DELETE or event.row is None:
                return habit is None
            if habit is None:
                return False
            mine = habit.snapshot()
            theirs = Habit.from_snapshot(event.row).snapshot()
            return all(mine[k] == theirs[k] for k in _ECHO_FIELDS)

        day = date.fromisoformat(event.entity_id.split(":", 1)[1])
        record = self.completions.get(habit_id, day)
        if event.event_type == ChangeType.DELETE or event.row is None:
            return record is None
        return (
            record is not None
            and record.completion_count == event.row.get("completion_count")
            and record.daily_goal == event.row.get("daily_goal")
        )

    # --- lifecycle ---

    async def stop(self) -> None:
        for task in (self._realtime_task, self._refresh_task):
            if task is not None and not task.done():
                task.cancel()
                with suppress(asyncio.CancelledError):
                    await task
        persist = self._persist_task
        if persist is not None and not persist.done():
            await asyncio.wait([persist])
        self._realtime_task = None
        self._refresh_task = None
        self._persist_task = None

    async def sign_out(self) -> None:
        """Stop background work and wipe the signed-in user's local state."""
        user_id = self.user_id
        if user_id is None:
            return
        if self.queue and self.online:
            await self.flush_queue()
        if self.queue:
            logger.warning("Signing out user {} with {} unsynced action(s)", user_id, len(self.queue))
        await self.stop()
        await self.cache.clear()
        if self.gamification is not None:
            await self.gamification.clear()
        if self.activity is not None:
            await self.activity.invalidate(user_id)
        self.user_id = None
        self.habits = []
        self.completions = CompletionStore("")
        self.queue = []
        self._day = None
        self._habit_locks.clear()
        self._in_flight.clear()
        self._last_local_mutation.clear()
        logger.info("Signed out user {}", user_id)
