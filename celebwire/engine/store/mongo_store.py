"""MongoDB repositories for articles and fetch logs."""

from __future__ import annotations

import re
from datetime import datetime
from typing import Any

from pymongo import DESCENDING
from pymongo.errors import DuplicateKeyError, PyMongoError

from ...errors import StoreWriteError
from ...infra.mongo import ARTICLES_COLLECTION, FETCH_LOGS_COLLECTION, MongoManager
from ...models import Article, FetchStatus
from .base import ArticleQuery, ArticleRepository, FetchLogRepository, empty_statistics


def _article_filter(query: ArticleQuery) -> dict[str, Any]:
    flt: dict[str, Any] = {}
    if query.active_only:
        flt["isActive"] = True
    if query.entity:
        flt["celebrity"] = {"$regex": f"^{re.escape(query.entity)}$", "$options": "i"}
    if query.sentiment:
        flt["sentiment"] = query.sentiment
    if query.source:
        flt["source.name"] = query.source
    if query.date_from or query.date_to:
        window: dict[str, Any] = {}
        if query.date_from:
            window["$gte"] = query.date_from
        if query.date_to:
            window["$lte"] = query.date_to
        flt["publishedAt"] = window
    if query.search_term:
        flt["$text"] = {"$search": query.search_term}
    return flt


class MongoArticleRepository(ArticleRepository):
    """Articles collection with a unique ``identity_key`` index."""

    def __init__(self, manager: MongoManager) -> None:
        self.collection = manager.collection(ARTICLES_COLLECTION)

    async def exists(self, identity_key: str) -> bool:
        try:
            document = await self.collection.find_one({"identity_key": identity_key}, {"_id": 1})
        except PyMongoError as exc:
            raise StoreWriteError(f"Failed to look up article {identity_key}: {exc}") from exc
        return document is not None

    async def insert(self, article: Article) -> bool:
        try:
            await self.collection.insert_one(article.to_document())
        except DuplicateKeyError:
            return False
        except PyMongoError as exc:
            raise StoreWriteError(f"Failed to store article {article.identity_key}: {exc}") from exc
        return True

    async def find(self, query: ArticleQuery, *, skip: int = 0, limit: int = 20) -> list[dict[str, Any]]:
        cursor = (
            self.collection.find(_article_filter(query), {"_id": 0})
            .sort(query.sort_by, DESCENDING)
            .skip(skip)
            .limit(limit)
        )
        return await cursor.to_list(length=limit)

    async def count(self, query: ArticleQuery) -> int:
        return await self.collection.count_documents(_article_filter(query))

    async def entity_counts(self, since: datetime, limit: int = 10) -> list[tuple[str, int]]:
        pipeline = [
            {"$match": {"isActive": True, "publishedAt": {"$gte": since}}},
            {"$group": {"_id": "$celebrity", "count": {"$sum": 1}}},
            {"$sort": {"count": -1, "_id": 1}},
            {"$limit": limit},
        ]
        cursor = await self.collection.aggregate(pipeline)
        return [(row["_id"], row["count"]) async for row in cursor]


class MongoFetchLogRepository(FetchLogRepository):
    """``fetchLogs`` collection keeping one document per cycle."""

    def __init__(self, manager: MongoManager) -> None:
        self.collection = manager.collection(FETCH_LOGS_COLLECTION)

    @staticmethod
    def _filter(status: FetchStatus | None) -> dict[str, Any]:
        return {"status": status.value} if status is not None else {}

    async def insert(self, document: dict[str, Any]) -> None:
        try:
            await self.collection.insert_one(dict(document))
        except PyMongoError as exc:
            raise StoreWriteError(f"Failed to store fetch log: {exc}") from exc

    async def latest(self, status: FetchStatus | None = None) -> dict[str, Any] | None:
        return await self.collection.find_one(
            self._filter(status), {"_id": 0}, sort=[("fetchDate", DESCENDING)]
        )

    async def list(
        self, status: FetchStatus | None = None, *, skip: int = 0, limit: int = 10
    ) -> list[dict[str, Any]]:
        cursor = (
            self.collection.find(self._filter(status), {"_id": 0})
            .sort("fetchDate", DESCENDING)
            .skip(skip)
            .limit(limit)
        )
        return await cursor.to_list(length=limit)

    async def count(self, status: FetchStatus | None = None) -> int:
        return await self.collection.count_documents(self._filter(status))

    async def statistics(self) -> dict[str, Any]:
        pipeline = [
            {
                "$group": {
                    "_id": None,
                    "totalCycles": {"$sum": 1},
                    "successCount": {"$sum": {"$cond": [{"$eq": ["$status", "success"]}, 1, 0]}},
                    "failureCount": {"$sum": {"$cond": [{"$eq": ["$status", "failed"]}, 1, 0]}},
                    "partialCount": {"$sum": {"$cond": [{"$eq": ["$status", "partial"]}, 1, 0]}},
                    "avgDuration": {"$avg": "$duration"},
                    "totalNewArticles": {"$sum": "$newArticlesAdded"},
                }
            }
        ]
        cursor = await self.collection.aggregate(pipeline)
        rows = await cursor.to_list(length=1)
        if not rows:
            return empty_statistics()
        row = rows[0]
        row.pop("_id", None)
        row["avgDuration"] = float(row.get("avgDuration") or 0.0)
        return row

    async def delete_before(self, cutoff: datetime) -> int:
        result = await self.collection.delete_many({"fetchDate": {"$lt": cutoff}})
        return result.deleted_count


__all__ = ["MongoArticleRepository", "MongoFetchLogRepository"]
