"""MongoDB connection handling for the document collections."""

from __future__ import annotations

from typing import Any

from pymongo import ASCENDING, DESCENDING, AsyncMongoClient

ARTICLES_COLLECTION = "articles"
FETCH_LOGS_COLLECTION = "fetchLogs"


class MongoManager:
    """Own one async client and expose the collections the pipeline uses."""

    def __init__(self, uri: str, database: str, **client_kwargs: Any) -> None:
        self.uri = uri
        self.database_name = database
        self.client: AsyncMongoClient = AsyncMongoClient(uri, tz_aware=True, **client_kwargs)
        self.database = self.client[database]

    def collection(self, name: str):
        return self.database[name]

    async def ensure_indexes(self) -> None:
        articles = self.collection(ARTICLES_COLLECTION)
        await articles.create_index([("identity_key", ASCENDING)], unique=True)
        await articles.create_index([("publishedAt", DESCENDING)])
        await articles.create_index([("celebrity", ASCENDING), ("publishedAt", DESCENDING)])
        await articles.create_index([("title", "text"), ("description", "text")])
        logs = self.collection(FETCH_LOGS_COLLECTION)
        await logs.create_index([("fetchDate", DESCENDING)])
        await logs.create_index([("status", ASCENDING), ("fetchDate", DESCENDING)])

    async def close(self) -> None:
        await self.client.close()


__all__ = ["ARTICLES_COLLECTION", "FETCH_LOGS_COLLECTION", "MongoManager"]
