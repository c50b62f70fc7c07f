from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field

class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    ENV: str = "dev"
    LOG_LEVEL: str = "INFO"

    # Local durable cache (fast read path)
    LOCAL_CACHE_URL: str = Field(
        "sqlite+aiosqlite:///habito_cache.db",
        description="SQLAlchemy async URL for the on-device cache",
    )

    # Remote source of truth
    REMOTE_DATABASE_URL: str = Field(
        "sqlite+aiosqlite:///habito_remote.db",
        description="SQLAlchemy async URL, e.g., postgresql+asyncpg://...",
    )

    # Change feed: "memory" or "redis"
    CHANGE_FEED_BACKEND: str = "memory"
    REDIS_URL: str = "redis://redis:6379/0"

    # Local calendar used for day boundaries
    USER_TIMEZONE: str = "UTC"

    # Sync timings (seconds)
    INITIAL_LOAD_TIMEOUT_SECONDS: float = 30.0
    REMOTE_CALL_TIMEOUT_SECONDS: float = 15.0
    FLUSH_INTERVAL_SECONDS: int = 60
    ACTIVITY_CACHE_TTL_SECONDS: int = 300

    MAX_STREAK_LOOKBACK_DAYS: int = 3650

    # Gamification
    MAX_HEARTS: int = 3
    VITALITY_DECAY_PER_HOUR: float = 2.0
    VITALITY_GAIN_MIN: int = 15
    VITALITY_GAIN_MAX: int = 25
    DEFAULT_SKIN_ID: str = "egbert"

    # Validation limits
    MIN_DAILY_GOAL: int = 1
    MAX_DAILY_GOAL: int = 10
    MAX_HABIT_NAME_LENGTH: int = 200

settings = Settings()
