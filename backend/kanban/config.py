"""Pydantic Settings configuration models.

Config hierarchy (lowest to highest priority):
1. Pydantic defaults (in code below)
2. .env file (loaded by Pydantic Settings)
3. Environment variables (e.g., KANBAN_SCAN__MAX_REPLAY_BATCH_SIZE=50)
"""

from __future__ import annotations

from pydantic import BaseModel, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

VALID_LOG_LEVELS = frozenset({"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"})
VALID_LOG_FORMATS = frozenset({"console", "json"})


class ScanConfig(BaseModel):
    """QR scan dedupe and offline replay parameters."""

    dedupe_enabled: bool = True
    pending_ttl_seconds: int = Field(default=30, ge=1, le=600)
    completed_ttl_seconds: int = Field(default=300, ge=1, le=86400)
    failed_ttl_seconds: int = Field(default=10, ge=1, le=600)
    max_replay_batch_size: int = Field(default=100, ge=1, le=1000)

    @model_validator(mode="after")
    def validate_ttl_order(self) -> ScanConfig:
        if self.failed_ttl_seconds > self.completed_ttl_seconds:
            raise ValueError(
                "failed_ttl_seconds must not exceed completed_ttl_seconds"
            )
        return self


class EventsConfig(BaseModel):
    """Outbound lifecycle event channel."""

    queue_maxsize: int = Field(default=10_000, ge=1)


class KanbanConfig(BaseSettings):
    """Top-level configuration.

    Env var examples:
        KANBAN_LOG_LEVEL=DEBUG
        KANBAN_DB_PATH=/var/lib/kanban/kanban.db
        KANBAN_SCAN__DEDUPE_ENABLED=false
    """

    model_config = SettingsConfigDict(
        env_prefix="KANBAN_",
        env_nested_delimiter="__",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    log_level: str = "INFO"
    log_format: str = "console"
    db_path: str = "data/kanban.db"
    db_busy_timeout_ms: int = Field(default=5000, ge=0)
    scan: ScanConfig = ScanConfig()
    events: EventsConfig = EventsConfig()

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        v = v.upper()
        if v not in VALID_LOG_LEVELS:
            raise ValueError(
                f"log_level must be one of {sorted(VALID_LOG_LEVELS)}, got {v}"
            )
        return v

    @field_validator("log_format")
    @classmethod
    def validate_log_format(cls, v: str) -> str:
        v = v.lower()
        if v not in VALID_LOG_FORMATS:
            raise ValueError(
                f"log_format must be one of {sorted(VALID_LOG_FORMATS)}, got {v}"
            )
        return v

    @property
    def database_url(self) -> str:
        return f"sqlite+aiosqlite:///{self.db_path}"
