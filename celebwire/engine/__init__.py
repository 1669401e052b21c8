"""Engine components driving plan → fetch → dedup → invalidate → audit."""

from .audit import FetchAudit
from .batching import BatchPlanner, partition
from .cache import CacheKeys, CacheLayer
from .credentials import CredentialPool, StartupMode, StartupReport
from .dedup import Deduplicator, IngestReport, assign_entities, identity_key
from .fetcher import FetchExecutor, RawFetchResult, build_query

__all__ = [
    "BatchPlanner",
    "CacheKeys",
    "CacheLayer",
    "CredentialPool",
    "Deduplicator",
    "FetchAudit",
    "FetchExecutor",
    "IngestReport",
    "RawFetchResult",
    "StartupMode",
    "StartupReport",
    "assign_entities",
    "build_query",
    "identity_key",
    "partition",
]
