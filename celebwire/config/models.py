"""Pydantic models used across the celebwire configuration flow."""

from __future__ import annotations

from datetime import timedelta
from enum import Enum
from pathlib import Path
from typing import Any, Literal

from pydantic import BaseModel, Field, field_validator, model_validator


class ScheduleType(str, Enum):
    """Timer modes for the fetch cycle."""

    CRON = "cron"
    INTERVAL = "interval"


class ScheduleConfig(BaseModel):
    """When the periodic fetch cycle fires."""

    type: ScheduleType = Field(default=ScheduleType.INTERVAL)
    value: Any = Field(
        default=86400,
        description="Cron expression or interval seconds, depending on type.",
    )
    timezone: str = "UTC"
    cleanup_cron: str = "0 2 * * sun"
    run_initial_fetch: bool = True

    @model_validator(mode="after")
    def _validate_value(self) -> "ScheduleConfig":
        if self.type is ScheduleType.CRON and not isinstance(self.value, str):
            raise ValueError("Cron schedule requires string expression")
        if self.type is ScheduleType.INTERVAL:
            if not isinstance(self.value, (int, float, dict)) or isinstance(self.value, bool):
                raise ValueError("Interval schedule requires seconds (int/float) or kwargs dict")
            if isinstance(self.value, (int, float)) and self.value <= 0:
                raise ValueError("Interval seconds must be positive")
        return self

    def interval(self) -> timedelta | None:
        """Cadence as a timedelta, or None for cron schedules."""

        if self.type is not ScheduleType.INTERVAL:
            return None
        if isinstance(self.value, dict):
            return timedelta(**self.value)
        return timedelta(seconds=float(self.value))


class CredentialSettings(BaseModel):
    """Credential pool list and health parameters."""

    api_keys: list[str] = Field(default_factory=list)
    probe_interval_seconds: int = 300
    probe_timeout: float = 10.0
    rate_limit_cooldown_seconds: int = 3600
    max_consecutive_failures: int = 3

    @field_validator("api_keys", mode="before")
    @classmethod
    def _coerce_keys(cls, value: Any) -> list[str]:
        if value in (None, ""):
            return []
        if isinstance(value, str):
            value = value.split(",")
        keys: list[str] = []
        for item in value:
            key = str(item).strip()
            if key and key not in keys:
                keys.append(key)
        return keys

    @model_validator(mode="after")
    def _validate_limits(self) -> "CredentialSettings":
        if self.probe_interval_seconds < 0:
            raise ValueError("probe_interval_seconds must be >= 0")
        if self.max_consecutive_failures < 1:
            raise ValueError("max_consecutive_failures must be >= 1")
        return self


class BatchSettings(BaseModel):
    batch_size: int = 25
    advance_on_failure: bool = True

    @field_validator("batch_size")
    @classmethod
    def _positive(cls, value: int) -> int:
        if value < 1:
            raise ValueError("batch_size must be >= 1")
        return value


class FetchSettings(BaseModel):
    """External search request parameters."""

    base_url: str = "https://newsapi.org/v2/everything"
    request_timeout: float = 10.0
    retry_count: int = 2
    backoff_base: float = 1.0
    backoff_max: float = 30.0
    language: str | None = "pt"
    sort_by: Literal["publishedAt", "relevancy", "popularity"] = "publishedAt"
    page_size: int = 100
    lookback_days: int = 7
    max_query_length: int = 500
    max_per_entity: int = 0

    @model_validator(mode="after")
    def _validate_ranges(self) -> "FetchSettings":
        if self.request_timeout <= 0:
            raise ValueError("request_timeout must be positive")
        if self.retry_count < 0:
            raise ValueError("retry_count must be >= 0")
        if not 1 <= self.page_size <= 100:
            raise ValueError("page_size must be between 1 and 100")
        if self.lookback_days < 0:
            raise ValueError("lookback_days must be >= 0")
        if self.max_query_length < 10:
            raise ValueError("max_query_length is too small")
        return self


class CacheTTL(BaseModel):
    """Time-to-live in seconds per response category."""

    list: int = 3600
    search: int = 1800
    recent: int = 1800
    trending: int = 3600
    statistics: int = 3600

    @model_validator(mode="after")
    def _positive(self) -> "CacheTTL":
        for name, value in self.model_dump().items():
            if value <= 0:
                raise ValueError(f"TTL for {name} must be positive")
        return self


class CacheSettings(BaseModel):
    redis_url: str | None = "redis://localhost:6379/0"
    default_ttl: int = 3600
    reconnect_interval: float = 30.0
    socket_timeout: float = 2.0
    ttl: CacheTTL = Field(default_factory=CacheTTL)


class AuditSettings(BaseModel):
    next_due_interval_hours: float = 24.0
    retention_days: int = 90


class StorageSettings(BaseModel):
    backend: Literal["mongodb", "memory"] = "mongodb"
    mongo_uri: str = "mongodb://localhost:27017"
    database: str = "celebwire"
    state_path: Path = Field(default=Path("data/state/pipeline_state.db"))

    @field_validator("state_path", mode="before")
    @classmethod
    def _coerce_path(cls, value: Any) -> Path:
        return Path(value)

    def resolved_state_path(self, base_dir: Path) -> Path:
        """Return the rotation/credential state file relative to the project root."""

        if not self.state_path.is_absolute():
            return (base_dir / self.state_path).resolve()
        return self.state_path


class EntityConfig(BaseModel):
    id: str
    name: str
    aliases: list[str] = Field(default_factory=list)
    active: bool = True
    priority: int = 0


class RosterSettings(BaseModel):
    """Where the tracked entity roster is read from."""

    source: Literal["mongodb", "file"] = "mongodb"
    collection: str = "celebrities"
    entities: list[EntityConfig] = Field(default_factory=list)

    @model_validator(mode="after")
    def _validate_file_roster(self) -> "RosterSettings":
        ids = [entity.id for entity in self.entities]
        if len(ids) != len(set(ids)):
            raise ValueError("Roster entity ids must be unique")
        return self


class PipelineConfig(BaseModel):
    """Root configuration object for the ingestion pipeline."""

    credentials: CredentialSettings = Field(default_factory=CredentialSettings)
    batching: BatchSettings = Field(default_factory=BatchSettings)
    fetch: FetchSettings = Field(default_factory=FetchSettings)
    cache: CacheSettings = Field(default_factory=CacheSettings)
    schedule: ScheduleConfig = Field(default_factory=ScheduleConfig)
    audit: AuditSettings = Field(default_factory=AuditSettings)
    storage: StorageSettings = Field(default_factory=StorageSettings)
    roster: RosterSettings = Field(default_factory=RosterSettings)

    def next_due_interval(self) -> timedelta:
        """Cadence used for ``nextFetchDue``: the scheduler interval when one is set."""

        return self.schedule.interval() or timedelta(hours=self.audit.next_due_interval_hours)


__all__ = [
    "AuditSettings",
    "BatchSettings",
    "CacheSettings",
    "CacheTTL",
    "CredentialSettings",
    "EntityConfig",
    "FetchSettings",
    "PipelineConfig",
    "RosterSettings",
    "ScheduleConfig",
    "ScheduleType",
    "StorageSettings",
]
