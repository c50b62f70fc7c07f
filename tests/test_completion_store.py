from datetime import date

from habito.services.completion_store import CompletionStore

DAY = date(2024, 5, 15)


def test_set_count_overwrites_and_zero_deletes():
    store = CompletionStore("u1")
    store.set_count("h1", DAY, 1, 3)
    store.set_count("h1", DAY, 2, 3)
    assert len(store) == 1
    assert store.get("h1", DAY).completion_count == 2

    assert store.set_count("h1", DAY, 0, 3) is None
    assert store.get("h1", DAY) is None
    assert len(store) == 0


def test_restore_puts_back_previous_state():
    store = CompletionStore("u1")
    previous = store.set_count("h1", DAY, 1, 1)
    store.set_count("h1", DAY, 0, 1)
    store.restore("h1", DAY, previous)
    assert store.get("h1", DAY).completion_count == 1

    store.restore("h1", DAY, None)
    assert store.get("h1", DAY) is None


def test_ranges_and_drop_habit():
    store = CompletionStore("u1")
    store.set_count("h1", date(2024, 5, 1), 1, 1)
    store.set_count("h2", date(2024, 5, 10), 1, 1)
    store.set_count("h1", date(2024, 5, 20), 1, 1)

    assert [r.completed_date.day for r in store.records_in_range(date(2024, 5, 5), date(2024, 5, 31))] == [10, 20]
    assert [r.completed_date.day for r in store.records_for_habit("h1")] == [1, 20]

    store.drop_habit("h1")
    assert [r.habit_id for r in store.all_records()] == ["h2"]
