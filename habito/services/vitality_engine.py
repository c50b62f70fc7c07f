"""
Gamification state machine, driven by two independent clocks.

Hearts are event-driven: today's completion fraction is added to `hearts_base`, and
reaching MAX_HEARTS unlocks a companion. Vitality is a 0-100 mood score that decays
with wall-clock time and recovers on each completed habit. Hearts drive permanent
unlocks; vitality is cosmetic.
"""
from __future__ import annotations
from dataclasses import dataclass
from enum import Enum
import math
import random
from typing import List, Optional, Sequence, Tuple
from datetime import datetime, timezone

from ..config import settings
from ..data.skins import locked_skin_ids
from ..models.spirit import SpiritStats


class HeartEvent(str, Enum):
    UNLOCK = "unlock"
    ALL_UNLOCKED = "all_unlocked"


@dataclass
class HeartsUpdate:
    previous_total: float
    live_total: float
    coins_awarded: int = 0
    event: Optional[HeartEvent] = None
    unlocked_skin_id: Optional[str] = None


def live_total(stats: SpiritStats, fraction: Optional[float] = None) -> float:
    """hearts_base plus the not-yet-spent part of today's fraction, clamped to [0, MAX_HEARTS]."""
    today = stats.today_fraction if fraction is None else fraction
    pending = max(0.0, today - stats.consumed_fraction)
    return max(0.0, min(float(settings.MAX_HEARTS), stats.hearts_base + pending))


def apply_completion_percent(
    stats: SpiritStats,
    percent: float,
    unlocked_skin_ids: Sequence[str],
    rng: Optional[random.Random] = None,
) -> HeartsUpdate:
    """
    Fold a new completion percentage for today into `stats` (mutated in place).

    Coins are awarded once per integer boundary crossed above the day's peak, so a
    jump from 0% to 100% awards the whole delta at once and toggling back and forth
    does not farm coins. An unlock resets hearts_base to 0 and drops any carry past
    MAX_HEARTS.
    """
    fraction = max(0.0, min(percent / 100.0, 1.0))
    previous = live_total(stats)
    stats.today_fraction = fraction
    total = live_total(stats)

    update = HeartsUpdate(previous_total=previous, live_total=total)
    high = max(stats.peak_total, previous)
    if math.floor(total) > math.floor(high):
        update.coins_awarded = math.floor(total) - math.floor(high)
        stats.coins += update.coins_awarded
    stats.peak_total = max(stats.peak_total, total)

    if total >= settings.MAX_HEARTS:
        skin_id = pick_unlock(unlocked_skin_ids, rng)
        update.event = HeartEvent.UNLOCK if skin_id else HeartEvent.ALL_UNLOCKED
        update.unlocked_skin_id = skin_id
        stats.hearts_base = 0.0
        stats.consumed_fraction = fraction
        stats.peak_total = 0.0
    return update


def pick_unlock(unlocked_skin_ids: Sequence[str], rng: Optional[random.Random] = None) -> Optional[str]:
    pool = locked_skin_ids(list(unlocked_skin_ids))
    if not pool:
        return None
    return (rng or random).choice(pool)


def finalize_day(stats: SpiritStats) -> float:
    """
    Fold the finished day's unspent fraction into hearts_base and reset the intraday
    tracker. Returns the amount folded in.
    """
    folded = max(0.0, stats.today_fraction - stats.consumed_fraction)
    stats.hearts_base = min(float(settings.MAX_HEARTS), stats.hearts_base + folded)
    stats.today_fraction = 0.0
    stats.consumed_fraction = 0.0
    stats.peak_total = stats.hearts_base
    return folded


# --- vitality ---

VITALITY_BANDS: List[Tuple[int, str]] = [
    (80, "thriving"),
    (40, "content"),
    (20, "tired"),
    (0, "dormant"),
]


def _aware(value: datetime) -> datetime:
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


def decayed_vitality(last_fed_at: Optional[datetime], vitality: int, now: Optional[datetime] = None) -> int:
    if last_fed_at is None:
        return vitality
    now = _aware(now or datetime.now(timezone.utc))
    hours = max(0.0, (now - _aware(last_fed_at)).total_seconds() / 3600)
    decay = math.floor(hours * settings.VITALITY_DECAY_PER_HOUR)
    return max(0, vitality - decay)


def vitality_gain(rng: Optional[random.Random] = None) -> int:
    return (rng or random).randint(settings.VITALITY_GAIN_MIN, settings.VITALITY_GAIN_MAX)


def vitality_band(vitality: int) -> str:
    for floor, name in VITALITY_BANDS:
        if vitality >= floor:
            return name
    return VITALITY_BANDS[-1][1]


def current_band(last_fed_at: Optional[datetime], vitality: int, now: Optional[datetime] = None) -> str:
    return vitality_band(decayed_vitality(last_fed_at, vitality, now))


# --- presentation triggers (numeric only) ---

def completion_trigger(percent: float, previous: float = 0) -> Optional[str]:
    if previous == 0 and percent > 0:
        return "habit_complete_first"
    if previous < 50 <= percent < 100:
        return "habit_complete_50_percent"
    if previous < 100 <= percent:
        return "habit_complete_100_percent"
    return None


def heart_trigger(new_total: float, previous_total: float) -> Optional[str]:
    if math.floor(new_total) > math.floor(previous_total):
        return "heart_earned"
    if previous_total < 2.5 <= new_total:
        return "heart_almost_unlock"
    return None


def should_show_welcome_back(last_active_at: Optional[datetime], now: Optional[datetime] = None) -> bool:
    if last_active_at is None:
        return False
    now = _aware(now or datetime.now(timezone.utc))
    return (now - _aware(last_active_at)).total_seconds() >= 24 * 3600


def time_of_day_trigger(local_now: datetime) -> str:
    hour = local_now.hour
    if 5 <= hour < 12:
        return "app_open_morning"
    if 12 <= hour < 17:
        return "app_open_afternoon"
    if 17 <= hour < 23:
        return "app_open_evening"
    return "app_open_late_night"
