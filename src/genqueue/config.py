"""Runtime settings for genqueue."""

from functools import lru_cache
from typing import List, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Settings loaded from ``GENQUEUE_*`` environment variables"""

    # Durable backend, memory-only when unset
    redis_url: Optional[str] = None
    key_namespace: str = "genqueue"

    # Terminal tasks are kept this long before expiry
    task_expire_hours: float = Field(default=1, gt=0)
    sweep_interval_seconds: float = Field(default=300, gt=0)

    task_max_concurrent: int = Field(default=50, ge=1)

    webhook_timeout_seconds: float = Field(default=10.0, gt=0)
    webhook_retry_delays: List[float] = Field(default_factory=lambda: [5, 15, 30])

    log_level: str = "INFO"

    model_config = SettingsConfigDict(
        env_prefix="GENQUEUE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    @property
    def task_expire_seconds(self) -> int:
        return int(self.task_expire_hours * 3600)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
