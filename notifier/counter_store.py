"""
Durable counter store for rate-limit buckets.

Used best-effort only: a failed load or save never changes a rate-limit
decision, the in-memory buckets stay authoritative.
"""

import json
import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional
from urllib.parse import urlparse

logger = logging.getLogger(__name__)

# Longest bucket window is a day; nothing older is worth restoring
COUNTER_TTL_SECONDS = 24 * 60 * 60


def _sanitize_url(url: str) -> str:
    """Remove credentials from URL for safe logging."""
    try:
        parsed = urlparse(url)
        if parsed.password:
            sanitized = parsed._replace(
                netloc=f"{parsed.username or ''}:*@{parsed.hostname}:{parsed.port or 6379}"
            )
            return sanitized.geturl()
        return url
    except Exception:
        return url


class CounterStore(ABC):

    @abstractmethod
    async def load(self, key: str) -> Optional[Dict[str, Any]]:
        """Return the saved bucket state for ``key`` or None."""
        pass

    @abstractmethod
    async def save(self, key: str, state: Dict[str, Any]) -> None:
        pass

    async def close(self) -> None:
        return None


class InMemoryCounterStore(CounterStore):
    """Process-local store, for tests and single-process development."""

    def __init__(self):
        self._data: Dict[str, str] = {}

    async def load(self, key: str) -> Optional[Dict[str, Any]]:
        raw = self._data.get(key)
        return json.loads(raw) if raw is not None else None

    async def save(self, key: str, state: Dict[str, Any]) -> None:
        self._data[key] = json.dumps(state)

    def keys(self):
        return list(self._data.keys())


class RedisCounterStore(CounterStore):
    """
    Bucket state as JSON strings in Redis, one key per recipient.

    Keys expire after a day so abandoned recipients do not accumulate.
    """

    KEY_PREFIX = "rate_limits:"

    def __init__(self, redis_client, ttl_seconds: int = COUNTER_TTL_SECONDS):
        """
        Args:
            redis_client: ``redis.asyncio.Redis`` instance
            ttl_seconds: Expiry applied on every save
        """
        self._redis = redis_client
        self.ttl_seconds = ttl_seconds
        self._owns_client = False

    @classmethod
    def from_url(cls, redis_url: str, ttl_seconds: int = COUNTER_TTL_SECONDS) -> "RedisCounterStore":
        from redis import asyncio as redis_asyncio

        client = redis_asyncio.Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_connect_timeout=5,
            socket_timeout=5
        )
        logger.info(f"Counter store using Redis at {_sanitize_url(redis_url)}")
        store = cls(client, ttl_seconds=ttl_seconds)
        store._owns_client = True
        return store

    def _key(self, key: str) -> str:
        return f"{self.KEY_PREFIX}{key}"

    async def load(self, key: str) -> Optional[Dict[str, Any]]:
        raw = await self._redis.get(self._key(key))
        if raw is None:
            return None
        if isinstance(raw, bytes):
            raw = raw.decode('utf-8')
        return json.loads(raw)

    async def save(self, key: str, state: Dict[str, Any]) -> None:
        await self._redis.set(self._key(key), json.dumps(state), ex=self.ttl_seconds)

    async def close(self) -> None:
        if self._owns_client:
            await self._redis.aclose()
