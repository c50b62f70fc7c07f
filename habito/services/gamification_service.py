from __future__ import annotations
from dataclasses import dataclass
import asyncio
import random
from typing import Callable, Dict, Optional
from datetime import date, datetime, timezone
from loguru import logger

from ..config import settings
from ..data.skins import is_known_skin
from ..errors import ValidationError
from ..models.spirit import Spirit, SpiritStats
from . import vitality_engine
from .local_cache import LocalCacheStore
from .remote_store import RemoteStore


@dataclass
class GamificationState:
    spirit: Spirit
    stats: SpiritStats

    @property
    def live_hearts(self) -> float:
        return vitality_engine.live_total(self.stats)

    def vitality_at(self, now: Optional[datetime] = None) -> int:
        return vitality_engine.decayed_vitality(self.spirit.last_fed_at, self.spirit.vitality, now)

    def band_at(self, now: Optional[datetime] = None) -> str:
        return vitality_engine.vitality_band(self.vitality_at(now))


class GamificationService:
    """
    Owns the user's spirit/stats rows: applies VitalityEngine transitions, writes the
    local snapshot first and then the remote rows. Remote failures leave the state
    marked dirty; `flush()` retries it on the next sync trigger.
    """

    def __init__(
        self,
        remote: RemoteStore,
        cache: LocalCacheStore,
        rng: Optional[random.Random] = None,
        online: Optional[Callable[[], bool]] = None,
    ):
        self.remote = remote
        self.cache = cache
        self.rng = rng or random.Random()
        self._online = online or (lambda: True)
        self.state: Optional[GamificationState] = None
        self._dirty = False
        self._pending_skin_days: Dict[str, int] = {}

    # --- lifecycle ---

    async def load(
        self, user_id: str, now: Optional[datetime] = None, fetch_remote: bool = True
    ) -> GamificationState:
        """Cached state first, then the remote rows; creates the spirit on first use."""
        now = now or datetime.now(timezone.utc)
        cached = await self.cache.load_spirit()
        if cached:
            try:
                self.state = GamificationState(
                    spirit=Spirit.from_snapshot(cached["spirit"]),
                    stats=SpiritStats.from_snapshot(cached["stats"]),
                )
                self._dirty = bool(cached.get("dirty"))
                self._pending_skin_days = dict(cached.get("pending_skin_days") or {})
            except Exception as e:
                logger.warning("Ignoring unreadable spirit snapshot for user {}: {}", user_id, e)
                self.state = None

        if fetch_remote:
            await self.refresh(user_id, now)
        elif self.state is None:
            self.state = self._new_state(user_id, now)
            self._dirty = True

        # vitality is stored as of last_fed_at; decay is applied on read
        self.state.spirit.last_fed_at = self.state.spirit.last_fed_at or now
        await self._save_local()
        return self.state

    async def refresh(self, user_id: Optional[str] = None, now: Optional[datetime] = None) -> None:
        """Pull the remote rows, or push local ones first when they are newer."""
        now = now or datetime.now(timezone.utc)
        user_id = user_id or self._require_state().spirit.user_id
        if self._dirty and self.state is not None:
            await self.flush()
            return
        try:
            await asyncio.wait_for(self._load_remote(user_id, now), settings.REMOTE_CALL_TIMEOUT_SECONDS)
        except Exception as e:
            if self.state is None:
                logger.warning("Spirit fetch failed for user {} with no cache; starting locally: {}", user_id, e)
                self.state = self._new_state(user_id, now)
                self._dirty = True
            else:
                logger.warning("Spirit refresh failed for user {}; using cached state: {}", user_id, e)

    async def _load_remote(self, user_id: str, now: datetime) -> None:
        spirit = await self.remote.get_spirit(user_id)
        stats = await self.remote.get_stats(user_id)
        if spirit is None:
            fresh = self._new_state(user_id, now)
            spirit = await self.remote.upsert_spirit(fresh.spirit)
            await self.remote.upsert_skin_progress(user_id, spirit.active_skin_id)
            logger.info("Created spirit for user {}", user_id)
        if stats is None:
            stats = await self.remote.upsert_stats(SpiritStats(user_id=user_id))
        self.state = GamificationState(spirit=spirit, stats=stats)

    @staticmethod
    def _new_state(user_id: str, now: datetime) -> GamificationState:
        return GamificationState(
            spirit=Spirit(
                user_id=user_id,
                active_skin_id=settings.DEFAULT_SKIN_ID,
                vitality=100,
                last_fed_at=now,
                unlocked_skin_ids=[settings.DEFAULT_SKIN_ID],
                last_active_at=now,
            ),
            stats=SpiritStats(user_id=user_id),
        )

    async def clear(self) -> None:
        self.state = None
        self._dirty = False
        self._pending_skin_days = {}

    def _require_state(self) -> GamificationState:
        if self.state is None:
            raise RuntimeError("GamificationService.load(user_id) must be called first")
        return self.state

    # --- hearts ---

    async def on_completion_percent(
        self, percent: float, today: Optional[date] = None, remote: bool = True
    ) -> vitality_engine.HeartsUpdate:
        state = self._require_state()
        if today is not None:
            tracked = state.stats.tracked_date
            if tracked is None:
                state.stats.tracked_date = today
            elif tracked < today:
                # the day change was not seen here (new device, cleared cache)
                logger.info("Finalizing {} for user {} before tracking {}", tracked, state.spirit.user_id, today)
                await self.finalize_day(today, remote=False)
        update = vitality_engine.apply_completion_percent(
            state.stats, percent, state.spirit.unlocked_skin_ids, self.rng
        )
        if update.unlocked_skin_id:
            state.spirit.unlocked_skin_ids = [*state.spirit.unlocked_skin_ids, update.unlocked_skin_id]
            self._pending_skin_days.setdefault(update.unlocked_skin_id, 0)
            logger.info("User {} unlocked {}", state.spirit.user_id, update.unlocked_skin_id)
        elif update.event == vitality_engine.HeartEvent.ALL_UNLOCKED:
            logger.info("User {} has unlocked every companion", state.spirit.user_id)
        await self.persist(remote)
        return update

    async def finalize_day(self, today: date, remote: bool = True) -> float:
        """Fold the finished day into hearts_base and credit the active companion with a day."""
        state = self._require_state()
        folded = vitality_engine.finalize_day(state.stats)
        state.stats.tracked_date = today
        skin_id = state.spirit.active_skin_id
        self._pending_skin_days[skin_id] = self._pending_skin_days.get(skin_id, 0) + 1
        await self.persist(remote)
        return folded

    # --- vitality / spirit ---

    async def feed(self, streak: Optional[int] = None, now: Optional[datetime] = None) -> int:
        """A habit was completed: restore some vitality and count it."""
        state = self._require_state()
        now = now or datetime.now(timezone.utc)
        gain = vitality_engine.vitality_gain(self.rng)
        spirit = state.spirit
        spirit.vitality = min(100, state.vitality_at(now) + gain)
        spirit.last_fed_at = now
        spirit.last_active_at = now
        spirit.total_habits_completed += 1
        if streak is not None:
            spirit.current_streak = streak
            spirit.longest_streak = max(spirit.longest_streak, streak)
        await self.persist()
        return gain

    async def update_streak(self, streak: int, remote: bool = True) -> None:
        spirit = self._require_state().spirit
        if spirit.current_streak == streak and spirit.longest_streak >= streak:
            return
        spirit.current_streak = streak
        spirit.longest_streak = max(spirit.longest_streak, streak)
        await self.persist(remote)

    async def switch_skin(self, skin_id: str) -> None:
        spirit = self._require_state().spirit
        if not is_known_skin(skin_id) or skin_id not in spirit.unlocked_skin_ids:
            raise ValidationError(f"Skin {skin_id!r} is not unlocked")
        spirit.active_skin_id = skin_id
        await self.persist()

    # --- persistence ---

    async def _save_local(self) -> None:
        state = self._require_state()
        await self.cache.save_spirit({
            "spirit": state.spirit.snapshot(),
            "stats": state.stats.snapshot(),
            "dirty": self._dirty,
            "pending_skin_days": self._pending_skin_days,
        })

    async def persist(self, remote: bool = True) -> None:
        """Save locally, then push unless the caller defers remote writes."""
        self._dirty = True
        await self._save_local()
        if remote and self._online():
            await self.flush()

    async def flush(self) -> bool:
        """Push dirty state to the remote rows. Returns True when nothing is left to push."""
        if not self._dirty and not self._pending_skin_days:
            return True
        state = self._require_state()
        timeout = settings.REMOTE_CALL_TIMEOUT_SECONDS
        try:
            await asyncio.wait_for(self.remote.upsert_spirit(state.spirit), timeout)
            await asyncio.wait_for(self.remote.upsert_stats(state.stats), timeout)
            for skin_id in list(self._pending_skin_days):
                await asyncio.wait_for(
                    self.remote.upsert_skin_progress(
                        state.spirit.user_id, skin_id, self._pending_skin_days[skin_id]
                    ),
                    timeout,
                )
                del self._pending_skin_days[skin_id]
        except Exception as e:
            logger.warning("Spirit sync failed for user {}; will retry: {}", state.spirit.user_id, e)
            await self._save_local()
            return False
        self._dirty = False
        await self._save_local()
        return True
