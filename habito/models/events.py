from __future__ import annotations
from enum import Enum
from typing import Any, Dict, Optional
from datetime import datetime, timezone
from pydantic import BaseModel, Field


class ChangeType(str, Enum):
    INSERT = "INSERT"
    UPDATE = "UPDATE"
    DELETE = "DELETE"


class ChangeEvent(BaseModel):
    """A row-level change notification published by the remote store."""
    table: str
    event_type: ChangeType
    user_id: str
    entity_id: str
    row: Optional[Dict[str, Any]] = None
    committed_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
