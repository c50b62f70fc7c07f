from __future__ import annotations
from dataclasses import dataclass
import asyncio
import json
from typing import List, Optional, Tuple
from datetime import date, datetime, timezone
from redis.asyncio import Redis
from redis.exceptions import RedisError
from loguru import logger

from ..config import settings
from ..models.habit import CompletionRecord
from . import activity_aggregator
from .activity_aggregator import ActivityStats, Period, Weeks
from .remote_store import RemoteStore


@dataclass
class ActivityData:
    user_id: str
    period: Period
    start: date
    end: date
    records: List[CompletionRecord]
    fetched_at: datetime

    def view(self, total_habit_count: int, today: date) -> Tuple[Weeks, ActivityStats]:
        grid = activity_aggregator.build_grid(self.records, self.period, total_habit_count, today)
        stats = activity_aggregator.compute_stats(self.records, total_habit_count, today, self.period)
        return grid, stats

    def dumps(self) -> str:
        return json.dumps({
            "user_id": self.user_id,
            "period": self.period.value,
            "start": self.start.isoformat(),
            "end": self.end.isoformat(),
            "records": [r.snapshot() for r in self.records],
            "fetched_at": self.fetched_at.isoformat(),
        })

    @classmethod
    def loads(cls, raw: str) -> "ActivityData":
        data = json.loads(raw)
        return cls(
            user_id=data["user_id"],
            period=Period(data["period"]),
            start=date.fromisoformat(data["start"]),
            end=date.fromisoformat(data["end"]),
            records=[CompletionRecord.from_snapshot(item) for item in data["records"]],
            fetched_at=datetime.fromisoformat(data["fetched_at"]),
        )


class ActivityService:
    """
    Fetches the completion range behind the activity grid.

    Results are cached in Redis under activity:{user}:{period}:{window start} with
    an ACTIVITY_CACHE_TTL_SECONDS expiry. A second copy without expiry is kept
    under the same key plus ":stale"; `peek()` reads it so the grid renders at
    once while `fetch()` revalidates. Starting a fetch cancels the previous one;
    a result that arrives after a newer fetch began is dropped.

    Redis being unreachable only costs the cache: fetches go straight to the
    remote store.
    """
    KEY_PREFIX = "activity"

    def __init__(
        self,
        remote: RemoteStore,
        redis: Redis | None = None,
        ttl_seconds: Optional[int] = None,
    ):
        self.remote = remote
        self._owns_redis = redis is None
        self.redis = redis or Redis.from_url(settings.REDIS_URL, decode_responses=True)
        self.ttl = settings.ACTIVITY_CACHE_TTL_SECONDS if ttl_seconds is None else ttl_seconds
        self._task: Optional[asyncio.Task] = None
        self._generation = 0

    @classmethod
    def key(cls, user_id: str, period, today: date) -> str:
        period = Period(period)
        start, _, _ = activity_aggregator.window_for_period(period, today)
        return f"{cls.KEY_PREFIX}:{user_id}:{period.value}:{start.isoformat()}"

    @staticmethod
    def stale_key(key: str) -> str:
        return f"{key}:stale"

    async def _read(self, key: str) -> Optional[ActivityData]:
        try:
            raw = await self.redis.get(key)
        except RedisError as e:
            logger.warning("Activity cache unavailable, reading {} skipped: {}", key, e)
            return None
        if not raw:
            return None
        try:
            return ActivityData.loads(raw)
        except (ValueError, KeyError, TypeError) as e:
            logger.warning("Could not deserialize cached activity {}: {}", key, e)
            return None

    async def _write(self, key: str, data: ActivityData) -> None:
        payload = data.dumps()
        try:
            async with self.redis.pipeline(transaction=True) as pipe:
                pipe.set(key, payload, ex=self.ttl)
                pipe.set(self.stale_key(key), payload)
                await pipe.execute()
        except RedisError as e:
            logger.warning("Could not cache activity {}: {}", key, e)

    async def peek(self, user_id: str, period, today: date) -> Optional[ActivityData]:
        """Last cached result for the window, expired or not."""
        return await self._read(self.stale_key(self.key(user_id, period, today)))

    async def fetch(
        self, user_id: str, period, today: date, skip_cache: bool = False
    ) -> Optional[ActivityData]:
        """
        Fresh cached data, or the result of a new range query. On failure or when
        superseded, falls back to the stale entry, or None.
        """
        period = Period(period)
        key = self.key(user_id, period, today)
        if not skip_cache:
            cached = await self._read(key)
            if cached is not None:
                return cached

        if self._task is not None and not self._task.done():
            self._task.cancel()
        self._generation += 1
        generation = self._generation
        start, end, _ = activity_aggregator.window_for_period(period, today)
        self._task = asyncio.create_task(self.remote.list_completions(user_id, start, end))

        try:
            records = await asyncio.wait_for(self._task, settings.REMOTE_CALL_TIMEOUT_SECONDS)
        except asyncio.CancelledError:
            if generation != self._generation:
                logger.debug("Activity fetch for {} ({}) superseded", user_id, period.value)
                return await self._read(self.stale_key(key))
            raise
        except Exception as e:
            logger.warning("Activity fetch failed for user {} ({}): {}", user_id, period.value, e)
            return await self._read(self.stale_key(key))

        if generation != self._generation:
            logger.debug("Discarding stale activity result for {} ({})", user_id, period.value)
            return await self._read(self.stale_key(key))
        data = ActivityData(
            user_id=user_id,
            period=period,
            start=start,
            end=end,
            records=records,
            fetched_at=datetime.now(timezone.utc),
        )
        await self._write(key, data)
        return data

    async def invalidate(self, user_id: Optional[str] = None) -> None:
        """Drop cached windows (fresh and stale) for one user, or for everyone."""
        pattern = f"{self.KEY_PREFIX}:{user_id}:*" if user_id else f"{self.KEY_PREFIX}:*"
        try:
            keys = [k async for k in self.redis.scan_iter(match=pattern)]
            if keys:
                await self.redis.delete(*keys)
        except RedisError as e:
            logger.warning("Could not invalidate activity cache ({}): {}", pattern, e)

    async def close(self) -> None:
        if self._task is not None and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        if self._owns_redis:
            await self.redis.aclose()
