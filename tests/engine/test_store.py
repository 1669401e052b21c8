from __future__ import annotations

from datetime import datetime, timezone
from types import SimpleNamespace

import pytest
from pymongo.errors import DuplicateKeyError, ServerSelectionTimeoutError

from celebwire.engine.store import ArticleQuery, MongoArticleRepository
from celebwire.engine.store.mongo_store import _article_filter
from celebwire.errors import StoreWriteError
from celebwire.models import Article

START = datetime(2026, 1, 1, tzinfo=timezone.utc)


class FakeCollection:
    def __init__(self, error: Exception | None = None) -> None:
        self.error = error
        self.inserted: list[dict] = []

    async def insert_one(self, document: dict) -> None:
        if self.error is not None:
            raise self.error
        self.inserted.append(document)

    async def find_one(self, flt: dict, projection: dict):  # noqa: ARG002
        if self.error is not None:
            raise self.error
        return next((doc for doc in self.inserted if doc["identity_key"] == flt["identity_key"]), None)


def repository_with(collection: FakeCollection) -> MongoArticleRepository:
    return MongoArticleRepository(SimpleNamespace(collection=lambda name: collection))  # type: ignore[arg-type]


def sample_article() -> Article:
    return Article(
        identity_key="https://g1.globo.com/1",
        url="https://g1.globo.com/1",
        title="Anitta",
        description="",
        published_at=START,
        source_name="G1",
        entity_id="a",
        entity_name="Anitta",
    )


def test_default_filter_only_active() -> None:
    assert _article_filter(ArticleQuery()) == {"isActive": True}
    assert _article_filter(ArticleQuery(active_only=False)) == {}


def test_filter_combines_fields() -> None:
    flt = _article_filter(
        ArticleQuery(entity="Mc Daniel (BR)", source="G1", date_from=START, search_term="show")
    )
    assert flt["celebrity"] == {"$regex": r"^Mc\ Daniel\ \(BR\)$", "$options": "i"}
    assert flt["source.name"] == "G1"
    assert flt["publishedAt"] == {"$gte": START}
    assert flt["$text"] == {"$search": "show"}


async def test_insert_and_exists() -> None:
    collection = FakeCollection()
    repository = repository_with(collection)
    assert await repository.insert(sample_article())
    assert await repository.exists("https://g1.globo.com/1")
    assert collection.inserted[0]["celebrity"] == "Anitta"


async def test_duplicate_key_is_not_an_error() -> None:
    repository = repository_with(FakeCollection(DuplicateKeyError("E11000 duplicate key")))
    assert await repository.insert(sample_article()) is False


async def test_driver_failures_become_store_errors() -> None:
    repository = repository_with(FakeCollection(ServerSelectionTimeoutError("no servers")))
    with pytest.raises(StoreWriteError):
        await repository.insert(sample_article())
    with pytest.raises(StoreWriteError):
        await repository.exists("https://g1.globo.com/1")
