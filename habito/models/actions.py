"""
Queued offline actions and the typed mutation requests that produce them.

Each action is replayable: applying it twice leaves the remote store in the same
state as applying it once.
"""
from __future__ import annotations
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Union
from datetime import datetime, date, timezone
from pydantic import BaseModel, Field, TypeAdapter


class ActionType(str, Enum):
    CREATE_HABIT = "CREATE_HABIT"
    UPDATE_HABIT = "UPDATE_HABIT"
    DELETE_HABIT = "DELETE_HABIT"
    RECORD_COMPLETION = "RECORD_COMPLETION"


def _now() -> datetime:
    return datetime.now(timezone.utc)


class _BaseAction(BaseModel):
    queued_at: datetime = Field(default_factory=_now)


class CreateHabitAction(_BaseAction):
    type: Literal["CREATE_HABIT"] = ActionType.CREATE_HABIT.value
    habit: Dict[str, Any]

    @property
    def habit_id(self) -> str:
        return self.habit["id"]


class UpdateHabitAction(_BaseAction):
    type: Literal["UPDATE_HABIT"] = ActionType.UPDATE_HABIT.value
    target_id: str
    changes: Dict[str, Any]

    @property
    def habit_id(self) -> str:
        return self.target_id


class DeleteHabitAction(_BaseAction):
    type: Literal["DELETE_HABIT"] = ActionType.DELETE_HABIT.value
    target_id: str

    @property
    def habit_id(self) -> str:
        return self.target_id


class RecordCompletionAction(_BaseAction):
    type: Literal["RECORD_COMPLETION"] = ActionType.RECORD_COMPLETION.value
    target_id: str
    completed_date: date
    completion_count: int = Field(ge=0)
    daily_goal: int = Field(ge=1)

    @property
    def habit_id(self) -> str:
        return self.target_id


PendingAction = Annotated[
    Union[CreateHabitAction, UpdateHabitAction, DeleteHabitAction, RecordCompletionAction],
    Field(discriminator="type"),
]

_queue_adapter = TypeAdapter(List[PendingAction])


def dump_queue(actions: List[PendingAction]) -> List[Dict[str, Any]]:
    return [a.model_dump(mode="json") for a in actions]


def load_queue(raw: Optional[List[Dict[str, Any]]]) -> List[PendingAction]:
    if not raw:
        return []
    return _queue_adapter.validate_python(raw)


# --- mutation requests (validated before entering the sync layer) ---

class CreateHabitOp(BaseModel):
    name: str
    icon: Optional[str] = None
    daily_goal: int = 1
    scheduled_time: Optional[str] = None  # HH:MM
    scheduled_days: Optional[List[int]] = None


class UpdateHabitOp(BaseModel):
    habit_id: str
    changes: Dict[str, Any]


class DeleteHabitOp(BaseModel):
    habit_id: str


class RecordCompletionOp(BaseModel):
    habit_id: str
    completion_count: int


MutationOp = Union[CreateHabitOp, UpdateHabitOp, DeleteHabitOp, RecordCompletionOp]
