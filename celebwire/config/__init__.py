"""Configuration package exports."""

from .loader import ConfigLocator, ConfigRepository
from .models import (
    AuditSettings,
    BatchSettings,
    CacheSettings,
    CacheTTL,
    CredentialSettings,
    EntityConfig,
    FetchSettings,
    PipelineConfig,
    RosterSettings,
    ScheduleConfig,
    ScheduleType,
    StorageSettings,
)

__all__ = [
    "AuditSettings",
    "BatchSettings",
    "CacheSettings",
    "CacheTTL",
    "ConfigLocator",
    "ConfigRepository",
    "CredentialSettings",
    "EntityConfig",
    "FetchSettings",
    "PipelineConfig",
    "RosterSettings",
    "ScheduleConfig",
    "ScheduleType",
    "StorageSettings",
]
