import asyncio
from datetime import date, datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock

from habito.models.habit import Habit
from habito.models.events import ChangeType

DAY = date(2024, 5, 15)


def test_completion_replay_is_idempotent(make_stores):
    async def _run_test():
        stores = await make_stores()
        remote = stores.remote
        first = await remote.upsert_completion("u1", "h1", DAY, 2, 3)
        second = await remote.upsert_completion("u1", "h1", DAY, 2, 3)

        rows = await remote.list_completions("u1", DAY, DAY)
        assert len(rows) == 1
        assert (rows[0].completion_count, rows[0].daily_goal) == (2, 3)
        assert first.snapshot() == second.snapshot()

        # zero count removes the row, and replaying that is harmless too
        assert await remote.upsert_completion("u1", "h1", DAY, 0, 3) is None
        await remote.delete_completion("u1", "h1", DAY)
        assert await remote.list_completions("u1") == []
        await stores.dispose()

    asyncio.run(_run_test())


def test_habits_ordered_updated_and_deleted(make_stores):
    async def _run_test():
        feed = MagicMock()
        feed.publish = AsyncMock()
        stores = await make_stores(feed)
        remote = stores.remote
        base = datetime(2024, 5, 1, tzinfo=timezone.utc)

        b = await remote.upsert_habit(Habit(user_id="u1", name="b", position=1, created_at=base))
        a = await remote.upsert_habit(Habit(user_id="u1", name="a", position=0, created_at=base + timedelta(hours=1)))
        c = await remote.upsert_habit(Habit(user_id="u1", name="c", position=1, created_at=base + timedelta(hours=2)))
        await remote.upsert_habit(Habit(user_id="u2", name="other"))
        assert [h.name for h in await remote.list_habits("u1")] == ["a", "b", "c"]

        updated = await remote.update_habit("u1", a.id, {"name": "aa", "scheduled_time": "07:30:00"})
        assert updated.name == "aa"
        assert updated.scheduled_time.hour == 7
        assert await remote.update_habit("u1", "missing", {"name": "x"}) is None
        assert await remote.update_habit("u2", b.id, {"name": "x"}) is None

        await remote.upsert_completion("u1", c.id, DAY, 1, 1)
        await remote.delete_habit("u1", c.id)
        await remote.delete_habit("u1", c.id)
        assert [h.id for h in await remote.list_habits("u1")] == [a.id, b.id]
        assert await remote.list_completions("u1") == []

        events = [call.args[0] for call in feed.publish.await_args_list]
        deletes = [e for e in events if e.table == "habits" and e.event_type == ChangeType.DELETE]
        assert len(deletes) == 1 and deletes[0].entity_id == c.id
        assert any(e.table == "completions" and e.entity_id == f"{c.id}:{DAY.isoformat()}" for e in events)
        await stores.dispose()

    asyncio.run(_run_test())


def test_spirit_rows_and_skin_progress(make_stores):
    async def _run_test():
        stores = await make_stores()
        remote = stores.remote
        from habito.models.spirit import Spirit, SpiritStats

        assert await remote.get_spirit("u1") is None
        spirit = await remote.upsert_spirit(Spirit(user_id="u1", vitality=70))
        spirit.vitality = 90
        await remote.upsert_spirit(spirit)
        assert (await remote.get_spirit("u1")).vitality == 90

        await remote.upsert_stats(SpiritStats(user_id="u1", coins=3))
        assert (await remote.get_stats("u1")).coins == 3

        await remote.upsert_skin_progress("u1", "egbert")
        await remote.upsert_skin_progress("u1", "egbert", 2)
        progress = await remote.list_skin_progress("u1")
        assert [(p.skin_id, p.days_active) for p in progress] == [("egbert", 2)]
        await stores.dispose()

    asyncio.run(_run_test())
