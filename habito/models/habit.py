from typing import Optional, List
from datetime import datetime, date, time, timezone
from uuid import uuid4
from sqlmodel import SQLModel, Field, Column, JSON, UniqueConstraint
from sqlalchemy import DateTime

HISTORY_SLOTS = 7
ALL_WEEKDAYS = [0, 1, 2, 3, 4, 5, 6]  # 0 = Sunday


def new_habit_id() -> str:
    return str(uuid4())


class Habit(SQLModel, table=True):
    """
    A user-defined recurring task with a daily completion goal.

    `history` is a fixed 7-slot ring of 0/1 with the most recent day last.
    `streak` is a cached projection of the completion log.
    """
    __tablename__ = "habits"

    id: str = Field(default_factory=new_habit_id, primary_key=True, max_length=64)
    user_id: str = Field(index=True, max_length=64)

    name: str = Field(max_length=200)
    icon: str = Field(default="◎", max_length=8)

    daily_goal: int = Field(default=1)
    position: int = Field(default=0, index=True)

    # Schedule data handed to the external notifier
    scheduled_time: Optional[time] = None
    scheduled_days: List[int] = Field(
        default_factory=lambda: list(ALL_WEEKDAYS), sa_column=Column(JSON, nullable=False)
    )

    history: List[int] = Field(
        default_factory=lambda: [0] * HISTORY_SLOTS, sa_column=Column(JSON, nullable=False)
    )
    completed_today: bool = Field(default=False)
    completions_today: int = Field(default=0)
    streak: int = Field(default=0)

    created_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        sa_column=Column(DateTime(timezone=True), nullable=False),
    )
    updated_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        sa_column=Column(DateTime(timezone=True), nullable=False),
    )

    def touch(self) -> None:
        self.updated_at = datetime.now(timezone.utc)

    def set_completions(self, count: int) -> None:
        """Set today's count, clamped to 0..daily_goal, keeping completed_today consistent."""
        self.completions_today = max(0, min(int(count), self.daily_goal))
        self.completed_today = self.completions_today >= self.daily_goal

    def push_history(self, value: int) -> None:
        ring = list(self.history or [0] * HISTORY_SLOTS)[-HISTORY_SLOTS:]
        ring = [0] * (HISTORY_SLOTS - len(ring)) + ring
        self.history = ring[1:] + [1 if value else 0]

    def snapshot(self) -> dict:
        return self.model_dump(mode="json")

    @classmethod
    def from_snapshot(cls, data: dict) -> "Habit":
        return cls.model_validate(data)


class CompletionRecord(SQLModel, table=True):
    """
    One row per (habit, date): "habit X had count C against goal G on date D".
    A zero count is represented by the absence of a row.
    """
    __tablename__ = "completions"
    __table_args__ = (UniqueConstraint("habit_id", "completed_date", name="uq_completions_habit_date"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: str = Field(index=True, max_length=64)
    habit_id: str = Field(index=True, max_length=64)

    completed_date: date = Field(index=True)
    completion_count: int = Field(default=1)
    daily_goal: int = Field(default=1)  # goal in effect on completed_date

    @property
    def fraction(self) -> float:
        if self.daily_goal <= 0:
            return 0.0
        return min(self.completion_count / self.daily_goal, 1.0)

    def key(self) -> tuple:
        return (self.habit_id, self.completed_date)

    def snapshot(self) -> dict:
        return self.model_dump(mode="json", exclude={"id"})

    @classmethod
    def from_snapshot(cls, data: dict) -> "CompletionRecord":
        return cls.model_validate(data)


def completion_percent(habits: List[Habit]) -> int:
    """Share of habits completed today, as a whole percent."""
    if not habits:
        return 0
    done = sum(1 for h in habits if h.completed_today)
    return int(done * 100 / len(habits) + 0.5)
