"""Runtime settings loaded from environment variables."""

import os
from functools import lru_cache

from pydantic import BaseModel


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


class Settings(BaseModel):
    """Service configuration.

    Every value can be overridden through the environment; see ``from_env``.
    """

    database_path: str = "/data/tasksync.db"
    attachments_path: str = "/data/attachments"
    log_level: str = "INFO"

    # Remote API behaviour
    page_delay_seconds: float = 0.35
    max_retries: int = 3
    http_timeout_seconds: float = 30.0

    # Import behaviour
    lookback_hours: int = 24
    skip_completed: bool = True

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            database_path=os.getenv("DATABASE_PATH", "/data/tasksync.db"),
            attachments_path=os.getenv("ATTACHMENTS_PATH", "/data/attachments"),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
            page_delay_seconds=int(os.getenv("SYNC_PAGE_DELAY_MS", "350")) / 1000,
            max_retries=int(os.getenv("SYNC_MAX_RETRIES", "3")),
            http_timeout_seconds=float(os.getenv("SYNC_HTTP_TIMEOUT", "30")),
            lookback_hours=int(os.getenv("SYNC_LOOKBACK_HOURS", "24")),
            skip_completed=_env_bool("SYNC_SKIP_COMPLETED", True),
        )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Get the process-wide settings, read once from the environment."""
    return Settings.from_env()
