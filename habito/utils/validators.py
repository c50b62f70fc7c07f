from __future__ import annotations
from datetime import time
from typing import Iterable, List, Optional

from ..config import settings
from ..errors import ValidationError


def clean_habit_name(name: Optional[str]) -> str:
    cleaned = (name or "").strip()
    if not cleaned:
        raise ValidationError("Habit name must not be empty")
    if len(cleaned) > settings.MAX_HABIT_NAME_LENGTH:
        raise ValidationError(f"Habit name must be at most {settings.MAX_HABIT_NAME_LENGTH} characters")
    return cleaned.lower()


def clamp_goal(goal) -> int:
    try:
        value = int(goal)
    except (TypeError, ValueError):
        raise ValidationError(f"daily_goal must be an integer, got {goal!r}")
    if not settings.MIN_DAILY_GOAL <= value <= settings.MAX_DAILY_GOAL:
        raise ValidationError(
            f"daily_goal must be between {settings.MIN_DAILY_GOAL} and {settings.MAX_DAILY_GOAL}"
        )
    return value


def clean_scheduled_days(days: Optional[Iterable[int]]) -> List[int]:
    if days is None:
        raise ValidationError("scheduled_days must not be empty")
    try:
        values = sorted({int(d) for d in days})
    except (TypeError, ValueError):
        raise ValidationError("scheduled_days must contain weekday numbers 0-6")
    if not values:
        raise ValidationError("scheduled_days must not be empty")
    if values[0] < 0 or values[-1] > 6:
        raise ValidationError("scheduled_days must contain weekday numbers 0-6")
    return values


def parse_scheduled_time(value) -> Optional[time]:
    if value is None or value == "":
        return None
    if isinstance(value, time):
        return value
    try:
        return time.fromisoformat(str(value))
    except ValueError:
        raise ValidationError("scheduled_time must be in HH:MM format")
