"""Resource stores.

``ResourceStore`` is the narrow interface the synchronizer needs from an
external database: existence checks by slug, lookups, inserts, and
partial updates. Inserts enforce uniqueness of ids and of slugs within
their scope and raise ``DuplicateKeyError`` on violation.

``InMemoryStore`` keeps everything in dicts; ``JsonFileStore`` adds one
JSON file per resource kind on disk.
"""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import Any, Protocol

from explora.errors import DuplicateKeyError
from explora.models.resources import RESOURCE_TYPES, MindMap, Resource, utcnow
from explora.utils.config import get_settings

logger = logging.getLogger(__name__)


class ResourceStore(Protocol):
    """Storage operations used by the persistence synchronizer."""

    async def exists(self, scope: str, slug: str) -> bool: ...

    async def get(self, kind: str, resource_id: str) -> Resource | None: ...

    async def find(self, kind: str, **filters: Any) -> list[Resource]: ...

    async def create(self, record: Resource) -> Resource: ...

    async def update(self, kind: str, resource_id: str, patch: dict[str, Any]) -> Resource: ...


class InMemoryStore:
    """Dict-backed store.

    Each operation yields to the event loop once before touching state, so
    concurrent callers interleave the way they would against a real
    database, while each insert's uniqueness check stays atomic.

    Args:
        unique_live_mind_map: reject a second live mind map for one topic,
            like a partial unique index on ``(topic_id) WHERE live``
    """

    def __init__(self, unique_live_mind_map: bool = True):
        self.unique_live_mind_map = unique_live_mind_map
        self._records: dict[str, dict[str, Resource]] = {kind: {} for kind in RESOURCE_TYPES}
        self._slugs: dict[tuple[str, str], str] = {}

    def _table(self, kind: str) -> dict[str, Resource]:
        if kind not in self._records:
            raise ValueError(f"Unknown resource kind: {kind}")
        return self._records[kind]

    def _index(self, record: Resource) -> None:
        if record.slug_scope is not None and record.slug_value is not None:
            self._slugs[(record.slug_scope, record.slug_value)] = record.id

    def _check_unique(self, record: Resource, ignore_id: str | None = None) -> None:
        table = self._table(record.kind)
        if ignore_id is None and record.id in table:
            raise DuplicateKeyError(
                f"{record.kind} {record.id} already exists", {"id": record.id}
            )

        if record.slug_scope is not None and record.slug_value is not None:
            owner = self._slugs.get((record.slug_scope, record.slug_value))
            if owner is not None and owner != ignore_id:
                raise DuplicateKeyError(
                    f"Slug '{record.slug_value}' is taken in scope {record.slug_scope}",
                    {"scope": record.slug_scope, "slug": record.slug_value},
                )

        if self.unique_live_mind_map and isinstance(record, MindMap) and record.live:
            for other in table.values():
                if (
                    isinstance(other, MindMap)
                    and other.live
                    and other.topic_id == record.topic_id
                    and other.id != ignore_id
                ):
                    raise DuplicateKeyError(
                        f"Topic {record.topic_id} already has live mind map {other.id}",
                        {"topic_id": record.topic_id, "existing_id": other.id},
                    )

    def _persist(self, kind: str) -> None:
        """Hook for subclasses that write through to disk."""

    async def exists(self, scope: str, slug: str) -> bool:
        await asyncio.sleep(0)
        return (scope, slug) in self._slugs

    async def get(self, kind: str, resource_id: str) -> Resource | None:
        await asyncio.sleep(0)
        return self._table(kind).get(resource_id)

    async def find(self, kind: str, **filters: Any) -> list[Resource]:
        await asyncio.sleep(0)
        matches = [
            record
            for record in self._table(kind).values()
            if all(getattr(record, key, None) == value for key, value in filters.items())
        ]
        return sorted(matches, key=lambda r: r.created_at)

    async def create(self, record: Resource) -> Resource:
        await asyncio.sleep(0)
        self._check_unique(record)
        self._table(record.kind)[record.id] = record
        self._index(record)
        self._persist(record.kind)
        logger.debug(f"Created {record.kind} {record.id}")
        return record

    async def update(self, kind: str, resource_id: str, patch: dict[str, Any]) -> Resource:
        await asyncio.sleep(0)
        table = self._table(kind)
        current = table.get(resource_id)
        if current is None:
            raise KeyError(f"{kind} {resource_id} not found")

        data = {**current.model_dump(), **patch, "id": resource_id, "updated_at": utcnow()}
        updated = type(current).model_validate(data)
        self._check_unique(updated, ignore_id=resource_id)

        if current.slug_scope is not None and current.slug_value != updated.slug_value:
            self._slugs.pop((current.slug_scope, current.slug_value), None)
        table[resource_id] = updated
        self._index(updated)
        self._persist(kind)
        return updated


class JsonFileStore(InMemoryStore):
    """File-backed store: one ``<kind>s.json`` file per resource kind."""

    def __init__(self, storage_path: Path | None = None, unique_live_mind_map: bool = True):
        super().__init__(unique_live_mind_map=unique_live_mind_map)
        settings = get_settings()
        self.storage_path = storage_path or settings.data_path
        self.storage_path.mkdir(parents=True, exist_ok=True)
        self._load()

    def _file_for(self, kind: str) -> Path:
        return self.storage_path / f"{kind}s.json"

    def _load(self) -> None:
        """Load all data from disk."""
        for kind, model_class in RESOURCE_TYPES.items():
            path = self._file_for(kind)
            if not path.exists():
                continue

            try:
                with path.open() as f:
                    data = json.load(f)
            except (OSError, json.JSONDecodeError) as e:
                logger.warning(f"Failed to load {path}: {e}")
                continue

            for item in data:
                record = model_class.model_validate(item)
                self._records[kind][record.id] = record
                self._index(record)

    def _persist(self, kind: str) -> None:
        path = self._file_for(kind)
        items = [record.model_dump(mode="json") for record in self._records[kind].values()]
        with path.open("w") as f:
            json.dump(items, f, indent=2, default=str)
