"""Cache service with Redis (production) or in-memory (single-process) backend.

A single-process deployment owns every execution it runs, so the in-memory
backend is sufficient there. Redis is used when several engine processes
share ownership of executions.
"""

import json
import time
from typing import Any, Dict, Optional, Set, Tuple

import redis.asyncio as redis

from core.config import Settings
from core.logging import get_logger, log_cache_operation

logger = get_logger(__name__)


class CacheService:
    """Async cache service with Redis or in-memory backend.

    Backend selection:
    - Redis: When REDIS_ENABLED=true and the server answers PING
    - Memory: Otherwise (values expire lazily on read)
    """

    def __init__(self, settings: Settings):
        self.settings = settings
        self.redis: Optional[redis.Redis] = None
        self.use_redis = settings.redis_enabled and bool(settings.redis_url)
        self.memory_cache: Dict[str, Tuple[Any, Optional[float]]] = {}
        self.memory_sets: Dict[str, Set[str]] = {}

    async def startup(self):
        """Initialize cache connection."""
        if not self.use_redis:
            logger.info("Using in-memory cache", redis_enabled=self.settings.redis_enabled)
            return

        try:
            self.redis = redis.from_url(
                self.settings.redis_url,
                encoding="utf-8",
                decode_responses=True,
                socket_timeout=5,
                socket_connect_timeout=5,
                retry_on_timeout=True
            )
            await self.redis.ping()
            logger.info("Redis cache initialized", url=self.settings.redis_url)
        except Exception as e:
            logger.warning("Redis connection failed, falling back to memory", error=str(e))
            self.use_redis = False
            self.redis = None

    async def shutdown(self):
        """Close cache connections."""
        if self.redis:
            await self.redis.aclose()
            logger.info("Redis cache connections closed")
        self.memory_cache.clear()
        self.memory_sets.clear()

    def is_redis_available(self) -> bool:
        return self.use_redis and self.redis is not None

    # ============================================================================
    # Key/value
    # ============================================================================

    def _memory_get(self, key: str) -> Any:
        entry = self.memory_cache.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at is not None and expires_at <= time.time():
            del self.memory_cache[key]
            return None
        return value

    async def get(self, key: str) -> Optional[Any]:
        """Get value from cache."""
        try:
            if self.is_redis_available():
                value = await self.redis.get(key)
                log_cache_operation(logger, "get", key, hit=value is not None)
                return json.loads(value) if value is not None else None

            value = self._memory_get(key)
            log_cache_operation(logger, "get", key, hit=value is not None)
            return value

        except Exception as e:
            logger.error("Cache get failed", key=key, error=str(e))
            return None

    async def set(self, key: str, value: Any, ttl: Optional[int] = None) -> bool:
        """Set value in cache with optional TTL."""
        try:
            ttl = ttl or self.settings.cache_ttl

            if self.is_redis_available():
                await self.redis.setex(key, ttl, json.dumps(value, default=str))
            else:
                self.memory_cache[key] = (value, time.time() + ttl)
            log_cache_operation(logger, "set", key, ttl=ttl)
            return True

        except Exception as e:
            logger.error("Cache set failed", key=key, error=str(e))
            return False

    async def set_if_absent(self, key: str, value: Any, ttl: int) -> bool:
        """Atomically set key only when it does not exist (SET NX EX)."""
        if self.is_redis_available():
            return bool(await self.redis.set(key, json.dumps(value), ex=ttl, nx=True))

        if self._memory_get(key) is not None:
            return False
        self.memory_cache[key] = (value, time.time() + ttl)
        return True

    async def delete(self, key: str) -> bool:
        """Delete value from cache."""
        try:
            if self.is_redis_available():
                deleted = bool(await self.redis.delete(key))
            else:
                deleted = self.memory_cache.pop(key, None) is not None
            log_cache_operation(logger, "delete", key, deleted=deleted)
            return deleted

        except Exception as e:
            logger.error("Cache delete failed", key=key, error=str(e))
            return False

    async def exists(self, key: str) -> bool:
        """Check if key exists in cache."""
        try:
            if self.is_redis_available():
                return bool(await self.redis.exists(key))
            return self._memory_get(key) is not None

        except Exception as e:
            logger.error("Cache exists check failed", key=key, error=str(e))
            return False

    async def expire(self, key: str, ttl: int) -> bool:
        """Set TTL for existing key."""
        try:
            if self.is_redis_available():
                return bool(await self.redis.expire(key, ttl))

            value = self._memory_get(key)
            if value is None:
                return False
            self.memory_cache[key] = (value, time.time() + ttl)
            return True

        except Exception as e:
            logger.error("Cache expire failed", key=key, error=str(e))
            return False

    # ============================================================================
    # Sets
    # ============================================================================

    async def set_add(self, key: str, member: str) -> None:
        if self.is_redis_available():
            await self.redis.sadd(key, member)
        else:
            self.memory_sets.setdefault(key, set()).add(member)

    async def set_remove(self, key: str, member: str) -> None:
        if self.is_redis_available():
            await self.redis.srem(key, member)
        else:
            self.memory_sets.get(key, set()).discard(member)

    async def set_members(self, key: str) -> Set[str]:
        if self.is_redis_available():
            return set(await self.redis.smembers(key))
        return set(self.memory_sets.get(key, set()))
