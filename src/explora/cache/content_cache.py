"""Content page cache.

Generated pages are cached by topic, difficulty, language and a hash of
the request context. A cache hit is replayed through the same message
sequence as a live generation.

The Redis cache degrades gracefully: if Redis is unreachable every
lookup is a miss and every write is a no-op.
"""

from __future__ import annotations

import hashlib
import json
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Protocol

import redis.asyncio as redis
from pydantic import ValidationError
from redis.exceptions import RedisError

from explora.identifiers.resolver import normalize_title, slug
from explora.models.content import ContentPage
from explora.utils.config import get_settings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ContentCacheKey:
    """Components of a content cache key."""

    topic: str
    difficulty: str
    language: str
    context_hash: str

    def to_string(self) -> str:
        """Convert to string key for Redis.

        The slug keeps keys readable; the title hash keeps topics apart
        whose slugs collide, such as ``C`` and ``C++``.
        """
        title_hash = hashlib.sha256(normalize_title(self.topic).encode()).hexdigest()
        parts = [
            slug(self.topic) or "_",
            title_hash[:8],
            self.difficulty,
            self.language,
            self.context_hash[:12],
        ]
        return ":".join(parts)

    @classmethod
    def from_request(
        cls,
        topic: str,
        context: str = "",
        difficulty: str = "intermediate",
        language: str = "en",
    ) -> ContentCacheKey:
        """Create a cache key from a generation request."""
        context_hash = hashlib.sha256(context.encode()).hexdigest()
        return cls(
            topic=topic,
            difficulty=difficulty,
            language=language,
            context_hash=context_hash,
        )


class ContentCache(Protocol):
    async def get(self, key: ContentCacheKey) -> ContentPage | None: ...

    async def put(self, key: ContentCacheKey, page: ContentPage) -> bool: ...


class InMemoryContentCache:
    """Process-local cache, used when Redis is not configured."""

    def __init__(self) -> None:
        self._entries: dict[str, ContentPage] = {}

    async def get(self, key: ContentCacheKey) -> ContentPage | None:
        return self._entries.get(key.to_string())

    async def put(self, key: ContentCacheKey, page: ContentPage) -> bool:
        self._entries[key.to_string()] = page
        return True

    async def invalidate(self, key: ContentCacheKey) -> bool:
        return self._entries.pop(key.to_string(), None) is not None


class RedisContentCache:
    """Redis-backed content page cache with TTL."""

    PREFIX = "explora:content:"

    def __init__(self, redis_url: str | None = None, ttl: timedelta | None = None):
        settings = get_settings()
        self.redis_url = redis_url or settings.redis_url
        self.ttl = ttl or timedelta(days=settings.content_cache_ttl_days)
        self._client: redis.Redis | None = None
        self._connected = False

    @property
    def is_connected(self) -> bool:
        return self._connected

    async def connect(self) -> None:
        """Connect to Redis."""
        if self._connected:
            return

        try:
            self._client = redis.from_url(
                self.redis_url,
                encoding="utf-8",
                decode_responses=True,
            )
            await self._client.ping()
            self._connected = True
            logger.info(f"Connected to Redis at {self.redis_url}")
        except (RedisError, OSError) as e:
            logger.warning(f"Failed to connect to Redis: {e}")
            self._client = None
            self._connected = False

    async def disconnect(self) -> None:
        """Disconnect from Redis."""
        if self._client:
            await self._client.aclose()
            self._client = None
            self._connected = False

    async def get(self, key: ContentCacheKey) -> ContentPage | None:
        """Get a cached page, or None on miss or Redis failure."""
        if not self._connected or not self._client:
            return None

        str_key = key.to_string()
        try:
            data = await self._client.get(self.PREFIX + str_key)
        except RedisError as e:
            logger.warning(f"Cache get error: {e}")
            return None

        if not data:
            return None

        try:
            entry = json.loads(data)
            page = ContentPage.model_validate(entry["page"])
        except (json.JSONDecodeError, KeyError, ValidationError) as e:
            logger.warning(f"Discarding unreadable cache entry {str_key}: {e}")
            return None

        logger.debug(f"Cache hit for {str_key}")
        return page

    async def put(self, key: ContentCacheKey, page: ContentPage) -> bool:
        """Cache a complete page. Returns True if it was stored."""
        if not self._connected or not self._client:
            return False

        str_key = key.to_string()
        entry = {
            "key": str_key,
            "page": page.to_wire(),
            "created_at": datetime.now(timezone.utc).isoformat(),
            "ttl_seconds": int(self.ttl.total_seconds()),
        }

        try:
            await self._client.setex(self.PREFIX + str_key, self.ttl, json.dumps(entry))
            logger.debug(f"Cached content page for {str_key}")
            return True
        except RedisError as e:
            logger.warning(f"Cache set error: {e}")
            return False

    async def invalidate(self, key: ContentCacheKey) -> bool:
        """Invalidate a cache entry."""
        if not self._connected or not self._client:
            return False

        try:
            deleted = await self._client.delete(self.PREFIX + key.to_string())
            return deleted > 0
        except RedisError as e:
            logger.warning(f"Cache invalidate error: {e}")
            return False
