import asyncio
from datetime import date

import pytest

from habito.db import get_session
from habito.models.cache import CacheEntry
from habito.models.habit import Habit
from habito.models.actions import RecordCompletionAction, UpdateHabitAction
from habito.services.local_cache import LocalCacheStore


def test_requires_init():
    cache = LocalCacheStore()
    with pytest.raises(RuntimeError):
        asyncio.run(cache.get("habits"))


def test_habit_snapshot_and_queue_round_trip(make_stores):
    async def _run_test():
        stores = await make_stores()
        cache = stores.cache
        await cache.init("u1")
        assert await cache.load_habits() is None

        habit = Habit(user_id="u1", name="stretch", daily_goal=3, scheduled_days=[1, 3])
        habit.set_completions(2)
        await cache.save_habits([habit])
        habits, saved_at = await cache.load_habits()
        assert saved_at is not None
        assert habits[0].id == habit.id
        assert habits[0].completions_today == 2
        assert habits[0].scheduled_days == [1, 3]

        queue = [
            UpdateHabitAction(target_id=habit.id, changes={"name": "yoga"}),
            RecordCompletionAction(target_id=habit.id, completed_date=date(2024, 5, 15), completion_count=2, daily_goal=3),
        ]
        await cache.save_queue(queue)
        loaded = await cache.load_queue()
        assert [type(a) for a in loaded] == [UpdateHabitAction, RecordCompletionAction]
        assert loaded[1].completed_date == date(2024, 5, 15)
        await stores.dispose()

    asyncio.run(_run_test())


def test_legacy_bare_list_snapshot(make_stores):
    async def _run_test():
        stores = await make_stores()
        await stores.cache.init("u1")
        habit = Habit(user_id="u1", name="walk")
        await stores.cache.set(LocalCacheStore.HABITS_KEY, [habit.snapshot()])
        habits, saved_at = await stores.cache.load_habits()
        assert saved_at is None
        assert habits[0].name == "walk"
        await stores.dispose()

    asyncio.run(_run_test())


def test_flags_markers_and_scoped_clear(make_stores):
    async def _run_test():
        stores = await make_stores()
        cache = stores.cache
        other = LocalCacheStore(cache._factory)
        await other.init("u2")
        await other.set_last_visit(date(2024, 5, 1))

        await cache.init("u1")
        assert not await cache.is_flag_set(LocalCacheStore.HINT_DISMISSED_FLAG)
        await cache.set_flag(LocalCacheStore.HINT_DISMISSED_FLAG)
        assert await cache.is_flag_set(LocalCacheStore.HINT_DISMISSED_FLAG)

        await cache.mark_briefing_shown(date(2024, 5, 15))
        assert await cache.briefing_shown_today(date(2024, 5, 15))
        assert not await cache.briefing_shown_today(date(2024, 5, 16))

        await cache.touch_last_sync()
        assert await cache.get_last_sync() is not None

        await cache.clear()
        assert cache.user_id is None
        await cache.init("u1")
        assert await cache.get_last_sync() is None
        assert await other.get_last_visit() == date(2024, 5, 1)
        await stores.dispose()

    asyncio.run(_run_test())


def test_cancelled_write_is_rolled_back(make_stores):
    async def _run_test():
        stores = await make_stores()
        cache = stores.cache
        await cache.init("u1")
        entered = asyncio.Event()

        async def write_and_hang():
            async with get_session(cache._factory) as session:
                session.add(CacheEntry(user_id="u1", key="draft", value=1))
                await session.flush()
                entered.set()
                await asyncio.Event().wait()

        task = asyncio.create_task(write_and_hang())
        await entered.wait()
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        await cache.set("other", 2)
        assert await cache.get("other") == 2
        assert await cache.get("draft") is None
        await stores.dispose()

    asyncio.run(_run_test())
