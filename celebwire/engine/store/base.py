"""Repository SPI for articles and fetch-audit records."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Literal

from ...models import Article, FetchStatus


@dataclass(frozen=True, slots=True)
class ArticleQuery:
    """Filters understood by every article repository."""

    entity: str | None = None
    sentiment: str | None = None
    source: str | None = None
    date_from: datetime | None = None
    date_to: datetime | None = None
    search_term: str | None = None
    active_only: bool = True
    sort_by: Literal["publishedAt", "createdAt"] = "publishedAt"


class ArticleRepository(ABC):
    """Uniform article persistence contract."""

    @abstractmethod
    async def exists(self, identity_key: str) -> bool:
        """Return True when an article with this identity key is stored."""

    @abstractmethod
    async def insert(self, article: Article) -> bool:
        """Persist ``article``; return False when the identity key already exists.

        Raises ``StoreWriteError`` for any other failure.
        """

    @abstractmethod
    async def find(self, query: ArticleQuery, *, skip: int = 0, limit: int = 20) -> list[dict[str, Any]]:
        """Return article documents, newest first."""

    @abstractmethod
    async def count(self, query: ArticleQuery) -> int:
        """Count documents matching ``query``."""

    @abstractmethod
    async def entity_counts(self, since: datetime, limit: int = 10) -> list[tuple[str, int]]:
        """Entities with the most articles published since ``since``."""


class FetchLogRepository(ABC):
    """Uniform fetch-audit persistence contract."""

    @abstractmethod
    async def insert(self, document: dict[str, Any]) -> None:
        """Persist one audit document."""

    @abstractmethod
    async def latest(self, status: FetchStatus | None = None) -> dict[str, Any] | None:
        """Most recent document, optionally restricted to ``status``."""

    @abstractmethod
    async def list(
        self, status: FetchStatus | None = None, *, skip: int = 0, limit: int = 10
    ) -> list[dict[str, Any]]:
        """Documents newest first."""

    @abstractmethod
    async def count(self, status: FetchStatus | None = None) -> int:
        """Number of stored documents."""

    @abstractmethod
    async def statistics(self) -> dict[str, Any]:
        """Aggregate totals over every stored cycle."""

    @abstractmethod
    async def delete_before(self, cutoff: datetime) -> int:
        """Drop documents fetched before ``cutoff``; return the number removed."""


def empty_statistics() -> dict[str, Any]:
    return {
        "totalCycles": 0,
        "successCount": 0,
        "failureCount": 0,
        "partialCount": 0,
        "avgDuration": 0.0,
        "totalNewArticles": 0,
    }


__all__ = ["ArticleQuery", "ArticleRepository", "FetchLogRepository", "empty_statistics"]
