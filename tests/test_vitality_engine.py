import pytest
import random
from datetime import datetime, timedelta, timezone

from habito.data.skins import SKINS
from habito.models.spirit import SpiritStats
from habito.services import vitality_engine as ve

NOW = datetime(2024, 5, 15, 12, 0, tzinfo=timezone.utc)


def test_unlock_clamps_to_three_and_resets_base():
    stats = SpiritStats(user_id="u1", hearts_base=2.95)
    update = ve.apply_completion_percent(stats, 10, ["egbert"], random.Random(1))

    assert update.live_total == 3.0
    assert update.event == ve.HeartEvent.UNLOCK
    assert update.unlocked_skin_id is not None and update.unlocked_skin_id != "egbert"
    assert stats.hearts_base == 0
    # the spent fraction is not folded in again
    assert ve.live_total(stats) == 0
    assert ve.finalize_day(stats) == 0
    assert stats.hearts_base == 0


def test_only_one_unlock_per_crossing():
    stats = SpiritStats(user_id="u1", hearts_base=2.95)
    rng = random.Random(3)
    first = ve.apply_completion_percent(stats, 10, ["egbert"], rng)
    again = ve.apply_completion_percent(stats, 10, ["egbert", first.unlocked_skin_id], rng)
    assert first.event == ve.HeartEvent.UNLOCK
    assert again.event is None


def test_coins_awarded_per_integer_crossed_once():
    stats = SpiritStats(user_id="u1", hearts_base=0.5)
    up = ve.apply_completion_percent(stats, 100, ["egbert"])
    assert up.live_total == 1.5
    assert up.coins_awarded == 1
    # toggling down and back up does not pay again
    ve.apply_completion_percent(stats, 0, ["egbert"])
    back = ve.apply_completion_percent(stats, 100, ["egbert"])
    assert back.coins_awarded == 0
    assert stats.coins == 1


def test_all_unlocked_event_when_pool_empty():
    stats = SpiritStats(user_id="u1", hearts_base=2.5)
    update = ve.apply_completion_percent(stats, 50, [s.id for s in SKINS])
    assert update.event == ve.HeartEvent.ALL_UNLOCKED
    assert update.unlocked_skin_id is None
    assert stats.hearts_base == 0


def test_finalize_day_folds_fraction_and_resets_tracker():
    stats = SpiritStats(user_id="u1", hearts_base=1.0)
    ve.apply_completion_percent(stats, 40, ["egbert"])
    assert ve.finalize_day(stats) == pytest.approx(0.4)
    assert stats.hearts_base == pytest.approx(1.4)
    assert stats.today_fraction == 0 and stats.consumed_fraction == 0


def test_vitality_decays_two_points_per_hour():
    fed = NOW - timedelta(hours=10, minutes=45)
    assert ve.decayed_vitality(fed, 80, NOW) == 59
    assert ve.decayed_vitality(NOW - timedelta(days=5), 80, NOW) == 0
    assert ve.decayed_vitality(None, 70, NOW) == 70


def test_vitality_gain_range_and_bands():
    rng = random.Random(7)
    gains = {ve.vitality_gain(rng) for _ in range(200)}
    assert min(gains) >= 15 and max(gains) <= 25

    assert ve.vitality_band(80) == "thriving"
    assert ve.vitality_band(79) == "content"
    assert ve.vitality_band(40) == "content"
    assert ve.vitality_band(39) == "tired"
    assert ve.vitality_band(20) == "tired"
    assert ve.vitality_band(19) == "dormant"
    assert ve.current_band(NOW - timedelta(hours=20), 100, NOW) == "content"


def test_triggers():
    assert ve.completion_trigger(25, 0) == "habit_complete_first"
    assert ve.completion_trigger(60, 25) == "habit_complete_50_percent"
    assert ve.completion_trigger(100, 60) == "habit_complete_100_percent"
    assert ve.heart_trigger(2.1, 1.9) == "heart_earned"
    assert ve.heart_trigger(2.6, 2.2) == "heart_almost_unlock"
    assert ve.should_show_welcome_back(NOW - timedelta(days=2), NOW)
    assert not ve.should_show_welcome_back(NOW - timedelta(hours=3), NOW)
    assert ve.time_of_day_trigger(NOW.replace(hour=7)) == "app_open_morning"
    assert ve.time_of_day_trigger(NOW.replace(hour=2)) == "app_open_late_night"
