from __future__ import annotations
from typing import Dict, Iterable, List, Optional, Tuple
from datetime import date
from loguru import logger

from ..models.habit import CompletionRecord

Key = Tuple[str, date]


class CompletionStore:
    """
    In-memory completion log for one user: at most one record per (habit, date).

    Writes overwrite; a zero count removes the record. All derived aggregates
    (streaks, activity grid, hearts) are computed from this log.
    """

    def __init__(self, user_id: str, records: Optional[Iterable[CompletionRecord]] = None):
        self.user_id = user_id
        self._records: Dict[Key, CompletionRecord] = {}
        for r in records or []:
            self._put(r)

    def __len__(self) -> int:
        return len(self._records)

    def _put(self, record: CompletionRecord) -> None:
        if record.completion_count <= 0:
            self._records.pop(record.key(), None)
        else:
            self._records[record.key()] = record

    def get(self, habit_id: str, day: date) -> Optional[CompletionRecord]:
        return self._records.get((habit_id, day))

    def set_count(self, habit_id: str, day: date, count: int, daily_goal: int) -> Optional[CompletionRecord]:
        """
        Overwrite the record for (habit_id, day). Returns the stored record, or None
        when the count is zero and the record was deleted.
        """
        if count <= 0:
            removed = self._records.pop((habit_id, day), None)
            if removed is not None:
                logger.debug("Removed completion {} on {}", habit_id, day)
            return None
        record = CompletionRecord(
            user_id=self.user_id,
            habit_id=habit_id,
            completed_date=day,
            completion_count=int(count),
            daily_goal=int(daily_goal),
        )
        self._records[record.key()] = record
        return record

    def restore(self, habit_id: str, day: date, previous: Optional[CompletionRecord]) -> None:
        """Put back a record captured before an optimistic write (None means absent)."""
        if previous is None:
            self._records.pop((habit_id, day), None)
        else:
            self._put(previous)

    def replace_all(self, records: Iterable[CompletionRecord]) -> None:
        self._records.clear()
        for r in records:
            self._put(r)

    def drop_habit(self, habit_id: str) -> None:
        for key in [k for k in self._records if k[0] == habit_id]:
            del self._records[key]

    def records_for_habit(self, habit_id: str) -> List[CompletionRecord]:
        return sorted(
            (r for (h, _), r in self._records.items() if h == habit_id),
            key=lambda r: r.completed_date,
        )

    def records_in_range(self, start: date, end: date) -> List[CompletionRecord]:
        return sorted(
            (r for r in self._records.values() if start <= r.completed_date <= end),
            key=lambda r: (r.completed_date, r.habit_id),
        )

    def all_records(self) -> List[CompletionRecord]:
        return sorted(self._records.values(), key=lambda r: (r.completed_date, r.habit_id))
