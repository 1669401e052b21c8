"""Domain records passed between pipeline stages."""

from __future__ import annotations

import hashlib
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def key_id_for(secret: str) -> str:
    """Safe, unique identifier for a credential: never log or persist the full secret.

    The readable prefix alone can collide between keys, so a short digest of
    the whole secret is appended.
    """

    digest = hashlib.sha256(secret.encode("utf-8")).hexdigest()[:8]
    return f"{secret[:8]}...{digest}"


class CredentialStatus(str, Enum):
    VALID = "valid"
    INVALID = "invalid"
    RATE_LIMITED = "rate_limited"
    UNKNOWN = "unknown"


class ProbeOutcome(str, Enum):
    """Classification of a single request made with a credential."""

    VALID = "valid"
    RATE_LIMITED = "rate_limited"
    INVALID = "invalid"
    NETWORK_ERROR = "network_error"


@dataclass(slots=True)
class Credential:
    """API key plus the health bookkeeping owned by the credential pool."""

    secret: str = field(repr=False)
    priority: int = 0
    status: CredentialStatus = CredentialStatus.UNKNOWN
    last_checked: datetime | None = None
    last_used: datetime | None = None
    daily_usage: int = 0
    successful_requests: int = 0
    rate_limited_count: int = 0
    consecutive_failures: int = 0
    health_score: int = 100
    rate_limit_reset: datetime | None = None

    @property
    def key_id(self) -> str:
        return key_id_for(self.secret)

    def in_cooldown(self, now: datetime) -> bool:
        return self.rate_limit_reset is not None and now < self.rate_limit_reset

    def describe(self) -> dict[str, Any]:
        return {
            "key_id": self.key_id,
            "priority": self.priority,
            "status": self.status.value,
            "last_checked": self.last_checked.isoformat() if self.last_checked else None,
            "last_used": self.last_used.isoformat() if self.last_used else None,
            "daily_usage": self.daily_usage,
            "successful_requests": self.successful_requests,
            "rate_limited_count": self.rate_limited_count,
            "consecutive_failures": self.consecutive_failures,
            "health_score": self.health_score,
            "rate_limit_reset": self.rate_limit_reset.isoformat() if self.rate_limit_reset else None,
        }


@dataclass(frozen=True, slots=True)
class CredentialUpdate:
    """Proposed change to a credential's state, applied by the pool owner."""

    key_id: str
    outcome: ProbeOutcome
    at: datetime
    counts_as_request: bool = True
    probe: bool = False


@dataclass(frozen=True, slots=True)
class Entity:
    """Tracked subject; name and aliases form the search terms."""

    id: str
    name: str
    aliases: tuple[str, ...] = ()
    active: bool = True
    priority: int = 0

    @property
    def search_terms(self) -> list[str]:
        seen: set[str] = set()
        terms: list[str] = []
        for term in (self.name, *self.aliases):
            cleaned = term.strip()
            if cleaned and cleaned.lower() not in seen:
                seen.add(cleaned.lower())
                terms.append(cleaned)
        return terms


@dataclass(frozen=True, slots=True)
class RotationState:
    cursor: int = 0
    total_batches: int = 0


@dataclass(frozen=True, slots=True)
class Batch:
    index: int
    total: int
    entities: tuple[Entity, ...]

    @property
    def names(self) -> list[str]:
        return [entity.name for entity in self.entities]


class FetchStatus(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"
    PARTIAL = "partial"


@dataclass(frozen=True, slots=True)
class RateLimitInfo:
    remaining: int | None = None
    reset: datetime | None = None


@dataclass(slots=True)
class FetchCycleResult:
    """One audit record per fetch cycle; field names in documents are stable."""

    fetched_at: datetime
    next_fetch_due: datetime
    status: FetchStatus
    duration_ms: int
    api_calls_used: int = 0
    duplicates_found: int = 0
    new_articles_added: int = 0
    articles_count: int = 0
    error: str | None = None
    rate_limit: RateLimitInfo | None = None
    entities: list[str] = field(default_factory=list)
    batch_index: int | None = None
    total_batches: int | None = None
    trigger: str = "timer"

    def to_document(self) -> dict[str, Any]:
        metadata = None
        if self.rate_limit is not None:
            metadata = {
                "totalApiCalls": self.api_calls_used,
                "rateLimitRemaining": self.rate_limit.remaining,
                "rateLimitReset": self.rate_limit.reset,
            }
        return {
            "fetchDate": self.fetched_at,
            "nextFetchDue": self.next_fetch_due,
            "status": self.status.value,
            "duration": self.duration_ms,
            "apiCallsUsed": self.api_calls_used,
            "duplicatesFound": self.duplicates_found,
            "newArticlesAdded": self.new_articles_added,
            "articlesCount": self.articles_count,
            "error": self.error,
            "metadata": metadata,
            "celebrities": list(self.entities),
            "batchIndex": self.batch_index,
            "totalBatches": self.total_batches,
            "trigger": self.trigger,
        }

    @classmethod
    def from_document(cls, doc: dict[str, Any]) -> "FetchCycleResult":
        metadata = doc.get("metadata") or None
        rate_limit = None
        if metadata is not None:
            rate_limit = RateLimitInfo(
                remaining=metadata.get("rateLimitRemaining"),
                reset=_aware(metadata.get("rateLimitReset")),
            )
        return cls(
            fetched_at=_aware(doc["fetchDate"]),
            next_fetch_due=_aware(doc["nextFetchDue"]),
            status=FetchStatus(doc["status"]),
            duration_ms=int(doc.get("duration", 0)),
            api_calls_used=int(doc.get("apiCallsUsed", 0)),
            duplicates_found=int(doc.get("duplicatesFound", 0)),
            new_articles_added=int(doc.get("newArticlesAdded", 0)),
            articles_count=int(doc.get("articlesCount", 0)),
            error=doc.get("error"),
            rate_limit=rate_limit,
            entities=list(doc.get("celebrities") or []),
            batch_index=doc.get("batchIndex"),
            total_batches=doc.get("totalBatches"),
            trigger=doc.get("trigger", "timer"),
        )


@dataclass(slots=True)
class Article:
    """External news item normalised into the store schema."""

    identity_key: str
    url: str | None
    title: str
    description: str
    published_at: datetime
    source_name: str
    entity_id: str
    entity_name: str
    source_id: str | None = None
    content: str | None = None
    image_url: str | None = None
    author: str | None = None
    sentiment: str = "neutral"
    is_active: bool = True
    created_at: datetime = field(default_factory=utcnow)

    def to_document(self) -> dict[str, Any]:
        return {
            "identity_key": self.identity_key,
            "url": self.url,
            "title": self.title,
            "description": self.description,
            "content": self.content,
            "urlToImage": self.image_url,
            "publishedAt": self.published_at,
            "source": {"id": self.source_id, "name": self.source_name},
            "author": self.author,
            "celebrity": self.entity_name,
            "celebrityId": self.entity_id,
            "sentiment": self.sentiment,
            "isActive": self.is_active,
            "createdAt": self.created_at,
        }


def _aware(value: Any) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, str):
        value = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


__all__ = [
    "Article",
    "Batch",
    "Credential",
    "CredentialStatus",
    "CredentialUpdate",
    "Entity",
    "FetchCycleResult",
    "FetchStatus",
    "ProbeOutcome",
    "RateLimitInfo",
    "RotationState",
    "key_id_for",
    "utcnow",
]
