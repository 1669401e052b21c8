"""Infra layer utilities (state file, document store connection)."""

from .mongo import MongoManager
from .storage import SQLiteManager, StateStore

__all__ = ["MongoManager", "SQLiteManager", "StateStore"]
