"""Configuration utilities for the state machine engine."""

from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class FlowSettings(BaseSettings):
    """Engine defaults, overridable through ``PLASMA_FLOW_*`` environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="PLASMA_FLOW_", env_file=".env", env_file_encoding="utf-8", extra="ignore"
    )

    max_retries: int = Field(default=3, ge=1)
    retry_initial_delay_seconds: float = Field(default=0.0, ge=0.0)
    retry_backoff_multiplier: float = Field(default=2.0, ge=1.0)
    retry_max_delay_seconds: float = Field(default=30.0, ge=0.0)

    redis_url: str = "redis://localhost:6379/0"
    # Zero disables expiry of persisted machine state
    state_ttl_seconds: int = Field(default=30 * 24 * 60 * 60, ge=0)
    sqlite_path: str = "plasma_flow.db"

    def retry_delay(self, attempt: int) -> float:
        """Exponential backoff delay after the given failed attempt (1-based)."""
        delay = self.retry_initial_delay_seconds * (
            self.retry_backoff_multiplier ** (attempt - 1)
        )
        return min(delay, self.retry_max_delay_seconds)


@lru_cache
def get_settings() -> FlowSettings:
    """Return cached FlowSettings to avoid repeated environment parsing."""

    return FlowSettings()
