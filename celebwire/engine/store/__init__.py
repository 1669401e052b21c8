"""Repository SPI and implementations."""

from .base import ArticleQuery, ArticleRepository, FetchLogRepository
from .memory_store import MemoryArticleRepository, MemoryFetchLogRepository
from .mongo_store import MongoArticleRepository, MongoFetchLogRepository

__all__ = [
    "ArticleQuery",
    "ArticleRepository",
    "FetchLogRepository",
    "MemoryArticleRepository",
    "MemoryFetchLogRepository",
    "MongoArticleRepository",
    "MongoFetchLogRepository",
]
