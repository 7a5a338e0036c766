from functools import lru_cache
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="allow")

    environment: Literal["development", "staging", "production"] = "development"
    service_name: str = "rewards-engine"
    database_url: str = "sqlite+aiosqlite:///./rewards.db"
    sql_echo: bool = False
    log_level: str = "INFO"

    # Reward rule tables (thresholds, multipliers, rates) live outside the engine
    # Unset means the rules file bundled with the package
    reward_rules_path: str | None = None

    # Cascade and conflict handling
    cascade_max_depth: int = Field(default=6, ge=1)
    conflict_retry_attempts: int = Field(default=5, ge=1)
    conflict_retry_backoff_seconds: float = 0.05
    conflict_retry_max_backoff_seconds: float = 1.0

    # Ledger history pagination
    ledger_page_size: int = 25
    ledger_page_size_max: int = 100

    # Fraction of root spans exported
    trace_sample_ratio: float = Field(default=1.0, ge=0.0, le=1.0)

    @field_validator("log_level", mode="before")
    @classmethod
    def _normalize_log_level(cls, value: object) -> str:
        if value is None:
            return "INFO"
        return str(value).strip().upper() or "INFO"


@lru_cache
def get_settings() -> Settings:
    return Settings()  # type: ignore[arg-type]


settings = get_settings()
