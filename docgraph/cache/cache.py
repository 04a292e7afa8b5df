"""
Key-value cache with TTL used by the planner, reasoning engine and graph builder.
"""

import hashlib
import json
import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)


def make_cache_key(prefix: str, *parts: str, hashed: Optional[str] = None) -> str:
    """
    Build a colon separated cache key.

    Args:
        prefix: Key namespace, e.g. ``"intent"``
        parts: Plain key segments such as user or document ids
        hashed: Free text (a query) that is reduced to a sha256 digest

    Returns:
        Cache key string
    """
    segments = [prefix, *[str(p) for p in parts]]
    if hashed is not None:
        segments.append(hashlib.sha256(hashed.encode("utf-8")).hexdigest())
    return ":".join(segments)


class Cache(ABC):
    """Abstract cache. Implementations must never raise from get/set."""

    @abstractmethod
    async def get(self, key: str) -> Optional[Any]:
        """Return the cached value or None on a miss."""

    @abstractmethod
    async def set(self, key: str, value: Any, ttl: int) -> None:
        """Store a JSON-serialisable value for ttl seconds."""

    async def close(self):
        """Release the backing connection."""


class NullCache(Cache):
    """Cache that never stores anything."""

    async def get(self, key: str) -> Optional[Any]:
        return None

    async def set(self, key: str, value: Any, ttl: int) -> None:
        return None


class RedisCache(Cache):
    """Redis-backed cache storing JSON-encoded values."""

    def __init__(self, config: Dict[str, Any]):
        import redis.asyncio as redis

        self.url = config.get("redis_url") or "redis://localhost:6379/0"
        self.prefix = config.get("key_prefix") or "docgraph"
        self.client = redis.from_url(self.url)
        logger.info(f"Redis cache configured at {self.url}")

    def _key(self, key: str) -> str:
        return f"{self.prefix}:{key}" if self.prefix else key

    async def get(self, key: str) -> Optional[Any]:
        try:
            cached = await self.client.get(self._key(key))
        except Exception as e:
            logger.warning(f"Cache read failed for {key}: {e}")
            return None

        if cached is None:
            return None

        try:
            return json.loads(cached)
        except (json.JSONDecodeError, TypeError, UnicodeDecodeError) as e:
            logger.warning(f"Discarding undecodable cache entry {key}: {e}")
            return None

    async def set(self, key: str, value: Any, ttl: int) -> None:
        try:
            serialized = json.dumps(value, default=str)
            await self.client.setex(self._key(key), int(ttl), serialized)
        except Exception as e:
            logger.warning(f"Cache write failed for {key}: {e}")

    async def close(self):
        await self.client.aclose()
