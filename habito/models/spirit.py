from typing import Optional, List
from datetime import datetime, date, timezone
from sqlmodel import SQLModel, Field, Column, JSON, UniqueConstraint
from sqlalchemy import DateTime


class Spirit(SQLModel, table=True):
    """
    The companion: active skin, unlocked collection and the vitality mood score.
    """
    __tablename__ = "hagotchi_spirit"
    __table_args__ = (UniqueConstraint("user_id", name="uq_hagotchi_spirit_user"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: str = Field(index=True, max_length=64)

    active_skin_id: str = Field(default="egbert", max_length=64)
    vitality: int = Field(default=100)
    last_fed_at: Optional[datetime] = Field(
        default=None, sa_column=Column(DateTime(timezone=True), nullable=True)
    )
    unlocked_skin_ids: List[str] = Field(
        default_factory=lambda: ["egbert"], sa_column=Column(JSON, nullable=False)
    )

    total_habits_completed: int = Field(default=0)
    current_streak: int = Field(default=0)
    longest_streak: int = Field(default=0)
    last_active_at: Optional[datetime] = Field(
        default=None, sa_column=Column(DateTime(timezone=True), nullable=True)
    )

    def snapshot(self) -> dict:
        return self.model_dump(mode="json", exclude={"id"})

    @classmethod
    def from_snapshot(cls, data: dict) -> "Spirit":
        return cls.model_validate(data)


class SpiritStats(SQLModel, table=True):
    """
    Hearts and coins. `hearts_base` holds whole finalized days' worth of completion;
    the intraday tracker (`today_fraction`, `consumed_fraction`, `peak_total`) is reset
    by the day rollover.
    """
    __tablename__ = "hagotchi_stats"
    __table_args__ = (UniqueConstraint("user_id", name="uq_hagotchi_stats_user"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: str = Field(index=True, max_length=64)

    hearts_base: float = Field(default=0.0)
    coins: int = Field(default=0)

    tracked_date: Optional[date] = None
    today_fraction: float = Field(default=0.0)
    # part of today_fraction already spent on an unlock
    consumed_fraction: float = Field(default=0.0)
    # highest live total seen today, so coins are awarded once per integer
    peak_total: float = Field(default=0.0)

    def snapshot(self) -> dict:
        return self.model_dump(mode="json", exclude={"id"})

    @classmethod
    def from_snapshot(cls, data: dict) -> "SpiritStats":
        return cls.model_validate(data)


class SkinProgress(SQLModel, table=True):
    __tablename__ = "hagotchi_skins"
    __table_args__ = (UniqueConstraint("user_id", "skin_id", name="uq_hagotchi_skins_user_skin"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: str = Field(index=True, max_length=64)
    skin_id: str = Field(max_length=64)

    days_active: int = Field(default=0)
    unlocked_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        sa_column=Column(DateTime(timezone=True), nullable=False),
    )
