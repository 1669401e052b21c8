"""Read-only sources of the tracked entity roster."""

from __future__ import annotations

from typing import Any, Iterable, Protocol

from .config import EntityConfig
from .infra.mongo import MongoManager
from .models import Entity


class EntityRoster(Protocol):
    async def active_entities(self) -> list[Entity]: ...


class StaticRoster:
    """Roster declared in the YAML configuration or handed in by tests."""

    def __init__(self, entities: Iterable[Entity | EntityConfig]) -> None:
        self._entities = [
            entity
            if isinstance(entity, Entity)
            else Entity(
                id=entity.id,
                name=entity.name,
                aliases=tuple(entity.aliases),
                active=entity.active,
                priority=entity.priority,
            )
            for entity in entities
        ]

    async def active_entities(self) -> list[Entity]:
        return [entity for entity in self._entities if entity.active]


def entity_from_document(document: dict[str, Any]) -> Entity:
    aliases = document.get("aliases") or document.get("searchTerms") or []
    return Entity(
        id=str(document.get("_id") or document.get("id")),
        name=str(document["name"]).strip(),
        aliases=tuple(str(alias) for alias in aliases),
        active=bool(document.get("isActive", True)),
        priority=int(document.get("priority", 0) or 0),
    )


class MongoRoster:
    """Roster maintained by the surrounding application in a Mongo collection."""

    def __init__(self, manager: MongoManager, collection: str = "celebrities") -> None:
        self.collection = manager.collection(collection)

    async def active_entities(self) -> list[Entity]:
        cursor = self.collection.find({"isActive": True}, {"name": 1, "aliases": 1, "searchTerms": 1, "isActive": 1, "priority": 1})
        return [entity_from_document(document) async for document in cursor if document.get("name")]


__all__ = ["EntityRoster", "MongoRoster", "StaticRoster", "entity_from_document"]
