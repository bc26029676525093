"""Application settings loaded from environment variables."""

from functools import lru_cache

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Central configuration — all values from .env or environment."""

    DATABASE_URL: str = "sqlite+aiosqlite:///./data/tripflow.db"
    LOG_LEVEL: str = "INFO"
    LOG_FILE: str = "data/logs/tripflow.log"

    # Remote backend (PostgREST-style API)
    REMOTE_URL: str = ""
    REMOTE_API_KEY: str = ""
    REMOTE_TIMEOUT: float = 15.0
    REMOTE_POLL_INTERVAL: float = 5.0
    USER_ID: str = ""  # signed-in user on this device; empty runs anonymously

    # Directions provider
    GOOGLE_DIRECTIONS_API_KEY: str = ""
    DIRECTIONS_TIMEOUT: float = 20.0

    # Route ordering
    ROUTE_DEBOUNCE_SECONDS: float = 0.5
    DEFAULT_PROXIMITY_THRESHOLD: float = 1000.0  # meters
    DEFAULT_STAY_MINUTES: int = 30
    MIN_POSITION_DELTA_M: float = 20.0  # ignore GPS jitter below this

    EXPORT_PATH: str = "data/plan.csv"

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8", "extra": "ignore"}


@lru_cache
def get_settings() -> Settings:
    return Settings()
