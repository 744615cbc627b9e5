"""Caching layer for generated content."""

from explora.cache.content_cache import (
    ContentCache,
    ContentCacheKey,
    InMemoryContentCache,
    RedisContentCache,
)

__all__ = ["ContentCache", "ContentCacheKey", "InMemoryContentCache", "RedisContentCache"]
