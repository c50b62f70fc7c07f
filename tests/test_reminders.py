from datetime import datetime, time, timezone

from habito.models.habit import Habit
from habito.services.reminders import (
    ReminderSlot,
    cancel_ids,
    next_occurrence,
    notification_id,
    reminder_schedule,
    reminder_slots,
)

NOW = datetime(2024, 5, 15, 9, 0, tzinfo=timezone.utc)  # Wednesday


def test_notification_ids_are_stable_per_habit_and_day():
    assert notification_id("a", 0) == 970
    assert notification_id("a", 6) == 976
    assert notification_id("ab", 2) == 31052
    assert notification_id("habit-42", 3) == notification_id("habit-42", 3)
    assert len(set(cancel_ids("habit-42"))) == 7


def test_long_ids_stay_within_int32_hash():
    value = notification_id("f" * 64, 1)
    assert 0 <= value <= (2**31) * 10 + 6


def test_only_habits_with_a_time_get_slots():
    timed = Habit(id="h1", user_id="u1", name="stretch", scheduled_time=time(7, 30), scheduled_days=[1, 3])
    untimed = Habit(id="h2", user_id="u1", name="read")

    assert reminder_slots(untimed) == []
    slots = reminder_schedule([timed, untimed])
    assert [(s.habit_id, s.weekday, s.at) for s in slots] == [("h1", 1, time(7, 30)), ("h1", 3, time(7, 30))]
    assert slots[0].body == "Time to complete: stretch"
    assert slots[0].notification_id == notification_id("h1", 1)


def test_next_occurrence_rolls_past_times_to_next_week():
    earlier_today = ReminderSlot(1, "h1", "stretch", 3, time(8, 0))
    later_today = ReminderSlot(2, "h1", "stretch", 3, time(10, 0))
    sunday = ReminderSlot(3, "h1", "stretch", 0, time(8, 0))

    assert next_occurrence(earlier_today, NOW, "UTC") == datetime(2024, 5, 22, 8, 0, tzinfo=timezone.utc)
    assert next_occurrence(later_today, NOW, "UTC") == datetime(2024, 5, 15, 10, 0, tzinfo=timezone.utc)
    assert next_occurrence(sunday, NOW, "UTC") == datetime(2024, 5, 19, 8, 0, tzinfo=timezone.utc)


def test_next_occurrence_uses_local_wall_clock():
    slot = ReminderSlot(1, "h1", "stretch", 3, time(8, 0))
    fire = next_occurrence(slot, NOW, "America/New_York")
    assert (fire.hour, fire.minute) == (8, 0)
    assert fire.astimezone(timezone.utc) == datetime(2024, 5, 15, 12, 0, tzinfo=timezone.utc)
