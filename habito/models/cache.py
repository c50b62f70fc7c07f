from typing import Optional, Any
from datetime import datetime, timezone
from sqlmodel import SQLModel, Field, Column, JSON, UniqueConstraint
from sqlalchemy import DateTime


class CacheEntry(SQLModel, table=True):
    """
    Durable key-value row in the on-device cache, scoped per user.
    """
    __tablename__ = "local_cache"
    __table_args__ = (UniqueConstraint("user_id", "key", name="uq_local_cache_user_key"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: str = Field(index=True, max_length=64)
    key: str = Field(max_length=100)

    value: Any = Field(default=None, sa_column=Column(JSON, nullable=True))

    updated_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        sa_column=Column(DateTime(timezone=True), nullable=False),
    )

    def touch(self) -> None:
        self.updated_at = datetime.now(timezone.utc)
