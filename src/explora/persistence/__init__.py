"""Persistence: resource stores and the synchronizer."""

from explora.persistence.store import InMemoryStore, JsonFileStore, ResourceStore
from explora.persistence.sync import GetOrCreateResult, PersistenceSynchronizer

__all__ = [
    "GetOrCreateResult",
    "InMemoryStore",
    "JsonFileStore",
    "PersistenceSynchronizer",
    "ResourceStore",
]
