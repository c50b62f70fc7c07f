from __future__ import annotations
from typing import Iterable, List, NamedTuple
from datetime import datetime, time, timedelta

from ..models.habit import Habit, ALL_WEEKDAYS
from ..utils.dates import resolve_zone, sunday_index

REMINDER_TITLE = "Habito Reminder"


class ReminderSlot(NamedTuple):
    notification_id: int
    habit_id: str
    habit_name: str
    weekday: int  # 0 = Sunday
    at: time

    @property
    def body(self) -> str:
        return f"Time to complete: {self.habit_name}"


def _int32(value: int) -> int:
    value &= 0xFFFFFFFF
    return value - 0x100000000 if value & 0x80000000 else value


def notification_id(habit_id: str, weekday: int) -> int:
    """Stable numeric id for one (habit, weekday) reminder, so rescheduling replaces it."""
    h = 0
    for char in habit_id:
        h = _int32((h << 5) - h + ord(char))
    return abs(h * 10 + weekday)


def cancel_ids(habit_id: str) -> List[int]:
    return [notification_id(habit_id, day) for day in ALL_WEEKDAYS]


def reminder_slots(habit: Habit) -> List[ReminderSlot]:
    if habit.scheduled_time is None:
        return []
    days = habit.scheduled_days or ALL_WEEKDAYS
    return [
        ReminderSlot(notification_id(habit.id, day), habit.id, habit.name, day, habit.scheduled_time)
        for day in days
    ]


def reminder_schedule(habits: Iterable[Habit]) -> List[ReminderSlot]:
    """Weekly reminder rows for every habit that has a scheduled time."""
    slots: List[ReminderSlot] = []
    for habit in habits:
        slots.extend(reminder_slots(habit))
    return slots


def next_occurrence(slot: ReminderSlot, now: datetime, tz_name: str | None = None) -> datetime:
    """Next local datetime the slot fires at; a time already passed today moves to next week."""
    local_now = now.astimezone(resolve_zone(tz_name))
    days_until = slot.weekday - sunday_index(local_now.date())
    if days_until < 0 or (days_until == 0 and local_now.time() >= slot.at):
        days_until += 7
    day = local_now.date() + timedelta(days=days_until)
    return datetime.combine(day, slot.at, tzinfo=local_now.tzinfo)
