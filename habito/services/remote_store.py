from __future__ import annotations
from typing import Any, Dict, List, Optional, Protocol
from datetime import date
from sqlalchemy import delete
from sqlalchemy.orm import sessionmaker
from sqlmodel import select
from loguru import logger

from ..db import get_session
from ..models.habit import Habit, CompletionRecord
from ..models.spirit import Spirit, SpiritStats, SkinProgress
from ..models.events import ChangeEvent, ChangeType
from .change_feed import ChangeFeed


class RemoteStore(Protocol):
    """Authenticated per-user row CRUD plus a change feed. Any backend satisfying this is interchangeable."""

    async def list_habits(self, user_id: str) -> List[Habit]: ...
    async def upsert_habit(self, habit: Habit) -> Habit: ...
    async def update_habit(self, user_id: str, habit_id: str, changes: Dict[str, Any]) -> Optional[Habit]: ...
    async def delete_habit(self, user_id: str, habit_id: str) -> None: ...

    async def upsert_completion(
        self, user_id: str, habit_id: str, completed_date: date, completion_count: int, daily_goal: int
    ) -> Optional[CompletionRecord]: ...
    async def delete_completion(self, user_id: str, habit_id: str, completed_date: date) -> None: ...
    async def list_completions(
        self, user_id: str, start: Optional[date] = None, end: Optional[date] = None
    ) -> List[CompletionRecord]: ...

    async def get_spirit(self, user_id: str) -> Optional[Spirit]: ...
    async def upsert_spirit(self, spirit: Spirit) -> Spirit: ...
    async def get_stats(self, user_id: str) -> Optional[SpiritStats]: ...
    async def upsert_stats(self, stats: SpiritStats) -> SpiritStats: ...
    async def upsert_skin_progress(
        self, user_id: str, skin_id: str, days_active_delta: int = 0
    ) -> SkinProgress: ...
    async def list_skin_progress(self, user_id: str) -> List[SkinProgress]: ...


def _detached(model_cls, row):
    return model_cls.model_validate(row.model_dump())


class SqlRemoteStore:
    """
    RemoteStore over a relational database through SQLAlchemy async sessions.
    Every committed write is published to the change feed.
    """

    def __init__(self, session_factory: sessionmaker, feed: Optional[ChangeFeed] = None):
        self._factory = session_factory
        self.feed = feed

    async def _publish(self, table: str, event_type: ChangeType, user_id: str, entity_id: str, row: Optional[dict]) -> None:
        if self.feed is None:
            return
        try:
            await self.feed.publish(ChangeEvent(
                table=table, event_type=event_type, user_id=user_id, entity_id=entity_id, row=row,
            ))
        except Exception as e:
            logger.warning("Failed to publish {} change for {}: {}", table, entity_id, e)

    # --- habits ---

    async def list_habits(self, user_id: str) -> List[Habit]:
        async with get_session(self._factory) as session:
            result = await session.execute(
                select(Habit).where(Habit.user_id == user_id).order_by(Habit.position, Habit.created_at)
            )
            return [_detached(Habit, h) for h in result.scalars().all()]

    async def upsert_habit(self, habit: Habit) -> Habit:
        data = habit.model_dump()
        async with get_session(self._factory) as session:
            row = await session.get(Habit, habit.id)
            event_type = ChangeType.UPDATE
            if row is None:
                row = Habit.model_validate(data)
                event_type = ChangeType.INSERT
            else:
                for key, value in data.items():
                    setattr(row, key, value)
                row.touch()
            session.add(row)
            await session.flush()
            stored = _detached(Habit, row)
        logger.info("Upserted habit {} for user {}", stored.id, stored.user_id)
        await self._publish("habits", event_type, stored.user_id, stored.id, stored.snapshot())
        return stored

    async def update_habit(self, user_id: str, habit_id: str, changes: Dict[str, Any]) -> Optional[Habit]:
        async with get_session(self._factory) as session:
            row = await session.get(Habit, habit_id)
            if row is None or row.user_id != user_id:
                logger.warning("Habit {} not found for user {}; update skipped", habit_id, user_id)
                return None
            merged = Habit.model_validate({**row.model_dump(), **changes})
            for key in changes:
                setattr(row, key, getattr(merged, key))
            row.touch()
            session.add(row)
            await session.flush()
            stored = _detached(Habit, row)
        await self._publish("habits", ChangeType.UPDATE, user_id, habit_id, stored.snapshot())
        return stored

    async def delete_habit(self, user_id: str, habit_id: str) -> None:
        async with get_session(self._factory) as session:
            await session.execute(
                delete(CompletionRecord).where(
                    CompletionRecord.user_id == user_id, CompletionRecord.habit_id == habit_id
                )
            )
            result = await session.execute(
                delete(Habit).where(Habit.id == habit_id, Habit.user_id == user_id)
            )
            deleted = result.rowcount
        if deleted:
            logger.info("Deleted habit {} for user {}", habit_id, user_id)
            await self._publish("habits", ChangeType.DELETE, user_id, habit_id, None)

    # --- completions ---

    async def upsert_completion(
        self, user_id: str, habit_id: str, completed_date: date, completion_count: int, daily_goal: int
    ) -> Optional[CompletionRecord]:
        if completion_count <= 0:
            await self.delete_completion(user_id, habit_id, completed_date)
            return None
        async with get_session(self._factory) as session:
            result = await session.execute(
                select(CompletionRecord).where(
                    CompletionRecord.habit_id == habit_id,
                    CompletionRecord.completed_date == completed_date,
                )
            )
            row = result.scalar_one_or_none()
            event_type = ChangeType.UPDATE
            if row is None:
                row = CompletionRecord(user_id=user_id, habit_id=habit_id, completed_date=completed_date)
                event_type = ChangeType.INSERT
            row.completion_count = completion_count
            row.daily_goal = daily_goal
            session.add(row)
            await session.flush()
            stored = _detached(CompletionRecord, row)
        await self._publish(
            "completions", event_type, user_id, f"{habit_id}:{completed_date.isoformat()}", stored.snapshot()
        )
        return stored

    async def delete_completion(self, user_id: str, habit_id: str, completed_date: date) -> None:
        async with get_session(self._factory) as session:
            result = await session.execute(
                delete(CompletionRecord).where(
                    CompletionRecord.user_id == user_id,
                    CompletionRecord.habit_id == habit_id,
                    CompletionRecord.completed_date == completed_date,
                )
            )
            deleted = result.rowcount
        if deleted:
            await self._publish(
                "completions", ChangeType.DELETE, user_id, f"{habit_id}:{completed_date.isoformat()}", None
            )

    async def list_completions(
        self, user_id: str, start: Optional[date] = None, end: Optional[date] = None
    ) -> List[CompletionRecord]:
        filters = [CompletionRecord.user_id == user_id]
        if start is not None:
            filters.append(CompletionRecord.completed_date >= start)
        if end is not None:
            filters.append(CompletionRecord.completed_date <= end)
        async with get_session(self._factory) as session:
            result = await session.execute(
                select(CompletionRecord).where(*filters).order_by(CompletionRecord.completed_date)
            )
            return [_detached(CompletionRecord, r) for r in result.scalars().all()]

    # --- gamification ---

    async def get_spirit(self, user_id: str) -> Optional[Spirit]:
        async with get_session(self._factory) as session:
            result = await session.execute(select(Spirit).where(Spirit.user_id == user_id))
            row = result.scalar_one_or_none()
            return _detached(Spirit, row) if row else None

    async def upsert_spirit(self, spirit: Spirit) -> Spirit:
        data = spirit.model_dump(exclude={"id"})
        async with get_session(self._factory) as session:
            result = await session.execute(select(Spirit).where(Spirit.user_id == spirit.user_id))
            row = result.scalar_one_or_none() or Spirit(user_id=spirit.user_id)
            for key, value in data.items():
                setattr(row, key, value)
            session.add(row)
            await session.flush()
            stored = _detached(Spirit, row)
        await self._publish("hagotchi_spirit", ChangeType.UPDATE, spirit.user_id, spirit.user_id, stored.snapshot())
        return stored

    async def get_stats(self, user_id: str) -> Optional[SpiritStats]:
        async with get_session(self._factory) as session:
            result = await session.execute(select(SpiritStats).where(SpiritStats.user_id == user_id))
            row = result.scalar_one_or_none()
            return _detached(SpiritStats, row) if row else None

    async def upsert_stats(self, stats: SpiritStats) -> SpiritStats:
        data = stats.model_dump(exclude={"id"})
        async with get_session(self._factory) as session:
            result = await session.execute(select(SpiritStats).where(SpiritStats.user_id == stats.user_id))
            row = result.scalar_one_or_none() or SpiritStats(user_id=stats.user_id)
            for key, value in data.items():
                setattr(row, key, value)
            session.add(row)
            await session.flush()
            return _detached(SpiritStats, row)

    async def upsert_skin_progress(self, user_id: str, skin_id: str, days_active_delta: int = 0) -> SkinProgress:
        async with get_session(self._factory) as session:
            result = await session.execute(
                select(SkinProgress).where(SkinProgress.user_id == user_id, SkinProgress.skin_id == skin_id)
            )
            row = result.scalar_one_or_none() or SkinProgress(user_id=user_id, skin_id=skin_id)
            row.days_active = (row.days_active or 0) + days_active_delta
            session.add(row)
            await session.flush()
            return _detached(SkinProgress, row)

    async def list_skin_progress(self, user_id: str) -> List[SkinProgress]:
        async with get_session(self._factory) as session:
            result = await session.execute(
                select(SkinProgress).where(SkinProgress.user_id == user_id).order_by(SkinProgress.unlocked_at)
            )
            return [_detached(SkinProgress, r) for r in result.scalars().all()]
