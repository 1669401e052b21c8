"""Identity keys, entity assignment and duplicate-safe persistence of articles."""

from __future__ import annotations

import hashlib
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Iterable, Sequence
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

import structlog

from ..errors import StoreWriteError
from ..logging_conf import component_logger
from ..models import Article, Batch, Entity, _aware, utcnow
from .store import ArticleRepository

TRACKING_PARAMS = frozenset({"fbclid", "gclid"})
REMOVED_MARKER = "[Removed]"


def normalize_url(url: str) -> str:
    parts = urlsplit(url.strip())
    host = (parts.hostname or "").lower()
    if host.startswith("www."):
        host = host[4:]
    netloc = host
    if parts.port and not (
        (parts.scheme.lower() == "http" and parts.port == 80)
        or (parts.scheme.lower() == "https" and parts.port == 443)
    ):
        netloc = f"{host}:{parts.port}"
    query = sorted(
        (key, value)
        for key, value in parse_qsl(parts.query, keep_blank_values=True)
        if not key.lower().startswith("utm_") and key.lower() not in TRACKING_PARAMS
    )
    path = parts.path.rstrip("/")
    return urlunsplit((parts.scheme.lower(), netloc, path, urlencode(query), ""))


def identity_key(item: dict[str, Any]) -> str:
    """Deduplication key of a raw item: canonical URL, or a content hash without one."""

    url = (item.get("url") or "").strip()
    if url:
        return normalize_url(url)
    source = (item.get("source") or {}).get("name") or ""
    material = f"{item.get('title') or ''}|{source}|{item.get('publishedAt') or ''}"
    return "sha256:" + hashlib.sha256(material.encode("utf-8")).hexdigest()


def _usable(item: dict[str, Any]) -> bool:
    title = item.get("title")
    if not isinstance(title, str):
        return False
    title = title.strip()
    return bool(title) and title != REMOVED_MARKER


def _published(item: dict[str, Any]) -> datetime:
    try:
        return _aware(item.get("publishedAt")) or utcnow()
    except (AttributeError, TypeError, ValueError):
        return utcnow()


@dataclass(slots=True)
class Assignment:
    by_entity: dict[str, list[dict[str, Any]]] = field(default_factory=dict)
    unmatched: int = 0
    capped: int = 0

    @property
    def matched(self) -> int:
        return sum(len(items) for items in self.by_entity.values())


def assign_entities(
    raw_items: Iterable[dict[str, Any]], batch: Batch, max_per_entity: int = 0
) -> Assignment:
    """Group a combined query's items by the first entity they mention.

    An item belongs to the first entity in batch order whose name or alias
    occurs in its title or description. With ``max_per_entity`` set, only the
    newest items of each entity are kept.
    """

    assignment = Assignment(by_entity={entity.id: [] for entity in batch.entities})
    for item in raw_items:
        if not _usable(item):
            assignment.unmatched += 1
            continue
        text = f"{item.get('title') or ''} {item.get('description') or ''}".lower()
        owner = next(
            (
                entity
                for entity in batch.entities
                if any(term.lower() in text for term in entity.search_terms)
            ),
            None,
        )
        if owner is None:
            assignment.unmatched += 1
            continue
        assignment.by_entity[owner.id].append(item)

    if max_per_entity > 0:
        for entity_id, items in assignment.by_entity.items():
            if len(items) > max_per_entity:
                items.sort(key=_published, reverse=True)
                assignment.capped += len(items) - max_per_entity
                assignment.by_entity[entity_id] = items[:max_per_entity]
    return assignment


@dataclass(slots=True)
class IngestReport:
    new_count: int = 0
    duplicate_count: int = 0
    stored: list[Article] = field(default_factory=list)
    failures: dict[str, str] = field(default_factory=dict)
    rejected: dict[str, str] = field(default_factory=dict)

    def merge(self, other: "IngestReport") -> None:
        self.new_count += other.new_count
        self.duplicate_count += other.duplicate_count
        self.stored.extend(other.stored)
        self.failures.update(other.failures)
        self.rejected.update(other.rejected)


def to_article(item: dict[str, Any], entity: Entity, key: str, now: datetime) -> Article:
    source = item.get("source") or {}
    return Article(
        identity_key=key,
        url=item.get("url") or None,
        title=(item.get("title") or "").strip(),
        description=(item.get("description") or "").strip(),
        published_at=_published(item),
        source_name=source.get("name") or "Unknown",
        source_id=source.get("id"),
        entity_id=entity.id,
        entity_name=entity.name,
        content=item.get("content"),
        image_url=item.get("urlToImage"),
        author=item.get("author"),
        created_at=now,
    )


class Deduplicator:
    """Skip items whose identity key is already stored; persist the rest."""

    def __init__(
        self,
        repository: ArticleRepository,
        *,
        clock: Callable[[], datetime] = utcnow,
        logger: structlog.BoundLogger | None = None,
    ) -> None:
        self.repository = repository
        self.clock = clock
        self.logger = logger or component_logger("dedup")

    async def ingest(self, raw_items: Sequence[dict[str, Any]], entity: Entity) -> IngestReport:
        """Store the new items of one entity.

        A store failure or a malformed item is recorded against that item only;
        the rest of the batch is still ingested.
        """

        report = IngestReport()
        seen: set[str] = set()
        now = self.clock()
        for index, item in enumerate(raw_items):
            key = f"item:{index}"
            try:
                key = identity_key(item)
                if key in seen:
                    report.duplicate_count += 1
                    continue
                seen.add(key)
                if await self.repository.exists(key):
                    report.duplicate_count += 1
                    continue
                article = to_article(item, entity, key, now)
                if await self.repository.insert(article):
                    report.new_count += 1
                    report.stored.append(article)
                else:
                    report.duplicate_count += 1
            except StoreWriteError as exc:
                report.failures[key] = str(exc)
                self.logger.error("article_store_failed", entity=entity.name, identity_key=key, error=str(exc))
            except (AttributeError, TypeError, ValueError) as exc:
                report.rejected[key] = f"{type(exc).__name__}: {exc}"
                self.logger.warning("article_rejected", entity=entity.name, identity_key=key, error=str(exc))
        self.logger.debug(
            "entity_ingested",
            entity=entity.name,
            new=report.new_count,
            duplicates=report.duplicate_count,
            failures=len(report.failures),
            rejected=len(report.rejected),
        )
        return report


__all__ = [
    "Assignment",
    "Deduplicator",
    "IngestReport",
    "assign_entities",
    "identity_key",
    "normalize_url",
    "to_article",
]
