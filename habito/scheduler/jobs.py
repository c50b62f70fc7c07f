from __future__ import annotations
from dataclasses import dataclass
import inspect
from typing import Any, Callable, Dict, Optional
from loguru import logger

from ..services.reminders import reminder_slots

ReminderHandler = Callable[[Any], Any]


@dataclass
class JobContext:
    engine: Any  # SyncEngine
    on_reminder: Optional[ReminderHandler] = None


# user_id -> live objects the jobs act on
_contexts: Dict[str, JobContext] = {}


def register_context(user_id: str, engine, on_reminder: Optional[ReminderHandler] = None) -> None:
    _contexts[user_id] = JobContext(engine=engine, on_reminder=on_reminder)


def unregister_context(user_id: str) -> None:
    _contexts.pop(user_id, None)


def get_context(user_id: str) -> Optional[JobContext]:
    return _contexts.get(user_id)


async def flush_queue_job(user_id: str):
    """Periodic retry of the offline queue."""
    ctx = get_context(user_id)
    if ctx is None:
        logger.warning("No sync engine registered for user {}; skipping flush", user_id)
        return
    try:
        result = await ctx.engine.flush_queue()
        if result.error is not None:
            logger.info("Flush for user {} stopped with {} action(s) left", user_id, result.remaining)
    except Exception as e:
        logger.exception("Error in flush_queue_job for user {}: {}", user_id, e)


async def day_rollover_job(user_id: str):
    """Local-midnight day change check."""
    logger.info("Running day rollover check for user {}", user_id)
    ctx = get_context(user_id)
    if ctx is None:
        return
    try:
        result = await ctx.engine.check_day()
        if result.rolled_over:
            logger.info("Rolled user {} over to {}", user_id, result.today)
    except Exception as e:
        logger.exception("Error in day_rollover_job for user {}: {}", user_id, e)


async def habit_reminder_job(user_id: str, habit_id: str):
    """Hand today's reminder for a habit to the notifier, unless it is already done."""
    ctx = get_context(user_id)
    if ctx is None:
        return
    try:
        habit = ctx.engine.get_habit(habit_id)
        if habit is None:
            logger.warning("Habit {} not found; skipping reminder", habit_id)
            return
        if habit.completed_today:
            logger.info("Habit {} already completed today; skipping reminder", habit_id)
            return
        today = ctx.engine.today()
        weekday = (today.weekday() + 1) % 7
        slot = next((s for s in reminder_slots(habit) if s.weekday == weekday), None)
        if slot is None or ctx.on_reminder is None:
            return
        outcome = ctx.on_reminder(slot)
        if inspect.isawaitable(outcome):
            await outcome
        logger.info("Sent reminder {} for habit {}", slot.notification_id, habit_id)
    except Exception as e:
        logger.exception("Error in habit_reminder_job for habit {}: {}", habit_id, e)
