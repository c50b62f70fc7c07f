from datetime import date, timedelta

from habito.models.habit import CompletionRecord
from habito.services.activity_aggregator import (
    Period,
    build_grid,
    compute_stats,
    intensity_level,
    month_labels,
    window_for_period,
)

TODAY = date(2024, 5, 15)  # a Wednesday


def _rec(day, habit_id, count=1, goal=1):
    return CompletionRecord(user_id="u1", habit_id=habit_id, completed_date=day, completion_count=count, daily_goal=goal)


def test_window_aligns_to_full_weeks():
    start, end, weeks = window_for_period(Period.MONTH, TODAY)
    assert end == date(2024, 5, 18)  # Saturday
    assert start == date(2024, 4, 14)  # Sunday
    assert weeks == 5

    start, end, weeks = window_for_period("week", TODAY)
    assert (start, end, weeks) == (date(2024, 5, 12), date(2024, 5, 18), 1)

    assert window_for_period(Period.YEAR, TODAY)[2] == 53
    assert window_for_period(Period.ALL, TODAY)[2] == 104


def test_grid_shape_and_future_days():
    grid = build_grid([], Period.MONTH, 3, TODAY)
    assert len(grid) == 5
    assert all(len(week) == 7 for week in grid)

    last_week = grid[-1]
    today_cell = next(d for d in last_week if d.date == TODAY)
    assert today_cell.is_today and today_cell.percentage == 0.0
    future = [d for d in last_week if d.date > TODAY]
    assert len(future) == 3
    assert all(d.is_future and d.percentage is None and d.raw_value is None for d in future)


def test_grid_percentage_sums_capped_fractions():
    log = [
        _rec(TODAY, "a", 1, 1),
        _rec(TODAY, "b", 2, 4),
        _rec(TODAY, "c", 9, 3),  # capped at 1
    ]
    grid = build_grid(log, Period.WEEK, 4, TODAY)
    cell = next(d for d in grid[0] if d.date == TODAY)
    assert cell.raw_value == 2.5
    assert cell.percentage == 0.625
    assert cell.level == 3


def test_grid_is_deterministic():
    log = [_rec(TODAY - timedelta(days=i), "a") for i in range(10)]
    first = build_grid(log, Period.MONTH, 2, TODAY)
    second = build_grid(list(reversed(log)), Period.MONTH, 2, TODAY)
    assert first == second


def test_intensity_levels():
    assert intensity_level(0) == 0
    assert intensity_level(0.25) == 1
    assert intensity_level(0.5) == 2
    assert intensity_level(0.75) == 3
    assert intensity_level(0.76) == 4


def test_stats_use_relaxed_half_rule():
    # two habits; a day is active for streaks when at least one is fully done
    log = [
        _rec(TODAY - timedelta(days=1), "a"),
        _rec(TODAY - timedelta(days=2), "a"),
        _rec(TODAY - timedelta(days=2), "b"),
        _rec(TODAY - timedelta(days=3), "a", 1, 4),  # 12.5%: active day, but not a streak day
        _rec(TODAY - timedelta(days=5), "a"),
        _rec(TODAY - timedelta(days=6), "b"),
    ]
    stats = compute_stats(log, 2, TODAY)
    assert stats.total_days == 5
    assert stats.active_days == 5
    assert stats.current_streak == 0  # the run starts at today, which is below 50%
    assert stats.longest_streak == 2
    assert stats.total_completions == 6
    # (50 + 100 + 12.5 + 50 + 50) / 5 = 52.5 -> 53
    assert stats.average_completion == 53


def test_current_streak_counts_back_from_active_today():
    log = [_rec(TODAY, "a"), _rec(TODAY - timedelta(days=1), "a"), _rec(TODAY - timedelta(days=3), "a")]
    assert compute_stats(log, 2, TODAY).current_streak == 2
    assert compute_stats(log[1:], 2, TODAY).current_streak == 0


def test_stats_window_filter_and_empty_log():
    assert compute_stats([], 3, TODAY).active_days == 0
    old = [_rec(TODAY - timedelta(days=60), "a")]
    assert compute_stats(old, 1, TODAY, Period.WEEK).total_completions == 0


def test_month_labels_mark_new_months():
    grid = build_grid([], Period.MONTH, 1, TODAY)
    labels = month_labels(grid)
    assert labels == [("Apr", 0), ("May", 3)]
