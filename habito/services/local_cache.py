from __future__ import annotations
from typing import Any, List, Optional, Tuple
from datetime import date, datetime, timezone
from sqlalchemy import delete
from sqlalchemy.orm import sessionmaker
from sqlmodel import select
from loguru import logger

from ..db import AsyncSessionLocal, get_session
from ..models.cache import CacheEntry
from ..models.habit import Habit, CompletionRecord
from ..models.actions import PendingAction, dump_queue, load_queue


class LocalCacheStore:
    """
    Durable on-device key-value cache holding the last-known snapshot for one user.

    Lifecycle is explicit: `init(user_id)` scopes every key to the signed-in user,
    `clear()` wipes that user's rows on sign-out.
    """
    HABITS_KEY = "habits"
    COMPLETIONS_KEY = "completions"
    PENDING_KEY = "pending_actions"
    LAST_SYNC_KEY = "last_sync"
    LAST_VISIT_KEY = "last_visit"
    SPIRIT_KEY = "spirit"
    FLAG_PREFIX = "flag:"
    HINT_DISMISSED_FLAG = "hint_dismissed"
    BRIEFING_SHOWN_FLAG = "briefing_shown"

    def __init__(self, session_factory: sessionmaker | None = None):
        self._factory = session_factory or AsyncSessionLocal
        self.user_id: Optional[str] = None

    async def init(self, user_id: str) -> None:
        self.user_id = user_id
        logger.debug("Local cache scoped to user {}", user_id)

    async def clear(self) -> None:
        if self.user_id is None:
            return
        async with get_session(self._factory) as session:
            await session.execute(delete(CacheEntry).where(CacheEntry.user_id == self.user_id))
        logger.info("Local cache cleared for user {}", self.user_id)
        self.user_id = None

    def _require_user(self) -> str:
        if self.user_id is None:
            raise RuntimeError("LocalCacheStore.init(user_id) must be called first")
        return self.user_id

    # --- raw key/value ---

    async def get(self, key: str, default: Any = None) -> Any:
        user_id = self._require_user()
        async with get_session(self._factory) as session:
            result = await session.execute(
                select(CacheEntry).where(CacheEntry.user_id == user_id, CacheEntry.key == key)
            )
            entry = result.scalar_one_or_none()
            return default if entry is None else entry.value

    async def set(self, key: str, value: Any) -> None:
        user_id = self._require_user()
        async with get_session(self._factory) as session:
            result = await session.execute(
                select(CacheEntry).where(CacheEntry.user_id == user_id, CacheEntry.key == key)
            )
            entry = result.scalar_one_or_none()
            if entry is None:
                entry = CacheEntry(user_id=user_id, key=key, value=value)
            else:
                entry.value = value
                entry.touch()
            session.add(entry)

    async def delete(self, key: str) -> None:
        user_id = self._require_user()
        async with get_session(self._factory) as session:
            await session.execute(
                delete(CacheEntry).where(CacheEntry.user_id == user_id, CacheEntry.key == key)
            )

    # --- habit snapshot ---

    async def save_habits(self, habits: List[Habit]) -> None:
        await self.set(self.HABITS_KEY, {
            "habits": [h.snapshot() for h in habits],
            "timestamp": datetime.now(timezone.utc).isoformat(),
        })

    async def load_habits(self) -> Optional[Tuple[List[Habit], Optional[datetime]]]:
        """Cached habits and their save time, or None when nothing was ever cached."""
        data = await self.get(self.HABITS_KEY)
        if data is None:
            return None
        # Older snapshots were a bare list
        if isinstance(data, list):
            raw, stamp = data, None
        else:
            raw, stamp = data.get("habits", []), data.get("timestamp")
        try:
            habits = [Habit.from_snapshot(item) for item in raw]
        except Exception as e:
            logger.error("Discarding unreadable habit snapshot for user {}: {}", self.user_id, e)
            return None
        return habits, datetime.fromisoformat(stamp) if stamp else None

    async def save_completions(self, records: List[CompletionRecord]) -> None:
        await self.set(self.COMPLETIONS_KEY, [r.snapshot() for r in records])

    async def load_completions(self) -> List[CompletionRecord]:
        raw = await self.get(self.COMPLETIONS_KEY, []) or []
        try:
            return [CompletionRecord.from_snapshot(item) for item in raw]
        except Exception as e:
            logger.error("Discarding unreadable completion snapshot for user {}: {}", self.user_id, e)
            return []

    # --- pending queue ---

    async def load_queue(self) -> List[PendingAction]:
        return load_queue(await self.get(self.PENDING_KEY, []))

    async def save_queue(self, actions: List[PendingAction]) -> None:
        await self.set(self.PENDING_KEY, dump_queue(actions))

    # --- markers ---

    async def get_last_sync(self) -> Optional[datetime]:
        value = await self.get(self.LAST_SYNC_KEY)
        return datetime.fromisoformat(value) if value else None

    async def touch_last_sync(self, when: Optional[datetime] = None) -> None:
        await self.set(self.LAST_SYNC_KEY, (when or datetime.now(timezone.utc)).isoformat())

    async def get_last_visit(self) -> Optional[date]:
        value = await self.get(self.LAST_VISIT_KEY)
        return date.fromisoformat(value) if value else None

    async def set_last_visit(self, day: date) -> None:
        await self.set(self.LAST_VISIT_KEY, day.isoformat())

    # --- gamification snapshot ---

    async def save_spirit(self, snapshot: dict) -> None:
        await self.set(self.SPIRIT_KEY, snapshot)

    async def load_spirit(self) -> Optional[dict]:
        return await self.get(self.SPIRIT_KEY)

    # --- one-time flags ---

    async def is_flag_set(self, name: str) -> bool:
        return bool(await self.get(self.FLAG_PREFIX + name, False))

    async def set_flag(self, name: str, value: Any = True) -> None:
        await self.set(self.FLAG_PREFIX + name, value)

    async def briefing_shown_today(self, today: date) -> bool:
        return await self.get(self.FLAG_PREFIX + self.BRIEFING_SHOWN_FLAG) == today.isoformat()

    async def mark_briefing_shown(self, today: date) -> None:
        await self.set_flag(self.BRIEFING_SHOWN_FLAG, today.isoformat())
