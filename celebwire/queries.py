"""Read side of the article store served through the response cache."""

from __future__ import annotations

import math
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable

import structlog

from .engine.cache import CacheKeys, CacheLayer, to_jsonable
from .engine.store import ArticleQuery, ArticleRepository
from .errors import ValidationError
from .logging_conf import component_logger
from .models import utcnow

SENTIMENTS = frozenset({"positive", "negative", "neutral"})
MAX_LIMIT = 100


def _check_page(page: int, limit: int) -> None:
    if page < 1:
        raise ValidationError("page must be >= 1")
    if not 1 <= limit <= MAX_LIMIT:
        raise ValidationError(f"limit must be between 1 and {MAX_LIMIT}")


def _paginated(items: list[dict[str, Any]], total: int, page: int, limit: int) -> dict[str, Any]:
    pages = math.ceil(total / limit) if total else 0
    return {
        "articles": items,
        "pagination": {
            "page": page,
            "limit": limit,
            "total": total,
            "pages": pages,
            "has_more": page < pages,
        },
    }


class NewsQueryService:
    """List, search, recent, trending and statistics reads with cache-aside."""

    def __init__(
        self,
        repository: ArticleRepository,
        cache: CacheLayer,
        *,
        clock: Callable[[], datetime] = utcnow,
        logger: structlog.BoundLogger | None = None,
    ) -> None:
        self.repository = repository
        self.cache = cache
        self.clock = clock
        self.logger = logger or component_logger("queries")

    async def _cached(
        self, category: str, params: dict[str, Any], loader: Callable[[], Awaitable[Any]]
    ) -> Any:
        key = CacheKeys.fingerprint(category, params)
        cached = await self.cache.get(key)
        if cached is not None:
            return cached
        value = to_jsonable(await loader())
        await self.cache.set(key, value, self.cache.ttl_for(category))
        return value

    async def list_articles(
        self,
        *,
        page: int = 1,
        limit: int = 20,
        entity: str | None = None,
        sentiment: str | None = None,
        source: str | None = None,
        date_from: datetime | None = None,
        date_to: datetime | None = None,
        sort_by: str = "publishedAt",
    ) -> dict[str, Any]:
        _check_page(page, limit)
        if sentiment is not None and sentiment not in SENTIMENTS:
            raise ValidationError(f"sentiment must be one of {sorted(SENTIMENTS)}")
        if sort_by not in ("publishedAt", "createdAt"):
            raise ValidationError("sort_by must be publishedAt or createdAt")
        if date_from and date_to and date_from > date_to:
            raise ValidationError("date_from must not be after date_to")
        query = ArticleQuery(
            entity=entity,
            sentiment=sentiment,
            source=source,
            date_from=date_from,
            date_to=date_to,
            sort_by=sort_by,  # type: ignore[arg-type]
        )
        params = {
            "page": page,
            "limit": limit,
            "entity": entity,
            "sentiment": sentiment,
            "source": source,
            "date_from": date_from,
            "date_to": date_to,
            "sort_by": sort_by,
        }

        async def load() -> dict[str, Any]:
            items = await self.repository.find(query, skip=(page - 1) * limit, limit=limit)
            return _paginated(items, await self.repository.count(query), page, limit)

        return await self._cached(CacheKeys.LIST, params, load)

    async def search(self, term: str, *, page: int = 1, limit: int = 20) -> dict[str, Any]:
        term = (term or "").strip()
        if len(term) < 2:
            raise ValidationError("search term must contain at least 2 characters")
        _check_page(page, limit)
        query = ArticleQuery(search_term=term)

        async def load() -> dict[str, Any]:
            items = await self.repository.find(query, skip=(page - 1) * limit, limit=limit)
            return _paginated(items, await self.repository.count(query), page, limit)

        return await self._cached(CacheKeys.SEARCH, {"q": term.lower(), "page": page, "limit": limit}, load)

    async def recent(self, limit: int = 20) -> list[dict[str, Any]]:
        _check_page(1, limit)

        async def load() -> list[dict[str, Any]]:
            return await self.repository.find(ArticleQuery(), limit=limit)

        return await self._cached(CacheKeys.RECENT, {"limit": limit}, load)

    async def trending(self, *, days: int = 7, limit: int = 10) -> list[dict[str, Any]]:
        """Entities with the most articles over the last ``days``."""

        _check_page(1, limit)
        if days < 1:
            raise ValidationError("days must be >= 1")
        since = self.clock() - timedelta(days=days)

        async def load() -> list[dict[str, Any]]:
            counts = await self.repository.entity_counts(since, limit)
            return [{"celebrity": name, "count": count} for name, count in counts]

        return await self._cached(CacheKeys.TRENDING, {"days": days, "limit": limit}, load)

    async def statistics(self) -> dict[str, Any]:
        async def load() -> dict[str, Any]:
            now = self.clock()
            total = await self.repository.count(ArticleQuery(active_only=False))
            active = await self.repository.count(ArticleQuery())
            recent = await self.repository.count(ArticleQuery(date_from=now - timedelta(hours=24)))
            by_entity = await self.repository.entity_counts(datetime(1970, 1, 1, tzinfo=timezone.utc), 10)
            return {
                "totalArticles": total,
                "activeArticles": active,
                "inactiveArticles": total - active,
                "recentArticlesCount": recent,
                "articlesByCelebrity": [{"celebrity": name, "count": count} for name, count in by_entity],
            }

        return await self._cached(CacheKeys.STATISTICS, {}, load)


__all__ = ["NewsQueryService"]
