"""In-process repositories used for dry runs and tests."""

from __future__ import annotations

import copy
from collections import Counter
from datetime import datetime
from typing import Any

from ...models import Article, FetchStatus
from .base import ArticleQuery, ArticleRepository, FetchLogRepository, empty_statistics


def _matches(document: dict[str, Any], query: ArticleQuery) -> bool:
    if query.active_only and not document.get("isActive", True):
        return False
    if query.entity and str(document.get("celebrity", "")).lower() != query.entity.lower():
        return False
    if query.sentiment and document.get("sentiment") != query.sentiment:
        return False
    if query.source and (document.get("source") or {}).get("name") != query.source:
        return False
    published = document.get("publishedAt")
    if query.date_from and published < query.date_from:
        return False
    if query.date_to and published > query.date_to:
        return False
    if query.search_term:
        haystack = f"{document.get('title', '')} {document.get('description', '')}".lower()
        if not any(word in haystack for word in query.search_term.lower().split()):
            return False
    return True


class MemoryArticleRepository(ArticleRepository):
    def __init__(self) -> None:
        self.documents: dict[str, dict[str, Any]] = {}

    async def exists(self, identity_key: str) -> bool:
        return identity_key in self.documents

    async def insert(self, article: Article) -> bool:
        if article.identity_key in self.documents:
            return False
        self.documents[article.identity_key] = article.to_document()
        return True

    def _select(self, query: ArticleQuery) -> list[dict[str, Any]]:
        selected = [doc for doc in self.documents.values() if _matches(doc, query)]
        return sorted(selected, key=lambda doc: doc[query.sort_by], reverse=True)

    async def find(self, query: ArticleQuery, *, skip: int = 0, limit: int = 20) -> list[dict[str, Any]]:
        return [copy.deepcopy(doc) for doc in self._select(query)[skip : skip + limit]]

    async def count(self, query: ArticleQuery) -> int:
        return len(self._select(query))

    async def entity_counts(self, since: datetime, limit: int = 10) -> list[tuple[str, int]]:
        counter = Counter(
            doc["celebrity"]
            for doc in self.documents.values()
            if doc.get("isActive", True) and doc["publishedAt"] >= since
        )
        return sorted(counter.items(), key=lambda item: (-item[1], item[0]))[:limit]


class MemoryFetchLogRepository(FetchLogRepository):
    def __init__(self) -> None:
        self.documents: list[dict[str, Any]] = []

    def _select(self, status: FetchStatus | None) -> list[dict[str, Any]]:
        selected = [
            doc for doc in self.documents if status is None or doc["status"] == status.value
        ]
        return sorted(selected, key=lambda doc: doc["fetchDate"], reverse=True)

    async def insert(self, document: dict[str, Any]) -> None:
        self.documents.append(copy.deepcopy(document))

    async def latest(self, status: FetchStatus | None = None) -> dict[str, Any] | None:
        selected = self._select(status)
        return copy.deepcopy(selected[0]) if selected else None

    async def list(
        self, status: FetchStatus | None = None, *, skip: int = 0, limit: int = 10
    ) -> list[dict[str, Any]]:
        return [copy.deepcopy(doc) for doc in self._select(status)[skip : skip + limit]]

    async def count(self, status: FetchStatus | None = None) -> int:
        return len(self._select(status))

    async def statistics(self) -> dict[str, Any]:
        if not self.documents:
            return empty_statistics()
        statuses = Counter(doc["status"] for doc in self.documents)
        return {
            "totalCycles": len(self.documents),
            "successCount": statuses.get(FetchStatus.SUCCESS.value, 0),
            "failureCount": statuses.get(FetchStatus.FAILED.value, 0),
            "partialCount": statuses.get(FetchStatus.PARTIAL.value, 0),
            "avgDuration": sum(doc["duration"] for doc in self.documents) / len(self.documents),
            "totalNewArticles": sum(doc["newArticlesAdded"] for doc in self.documents),
        }

    async def delete_before(self, cutoff: datetime) -> int:
        before = len(self.documents)
        self.documents = [doc for doc in self.documents if doc["fetchDate"] >= cutoff]
        return before - len(self.documents)


__all__ = ["MemoryArticleRepository", "MemoryFetchLogRepository"]
