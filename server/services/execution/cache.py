"""Execution ownership cache.

A running scheduler owns its execution through a lock key with a TTL that
it keeps refreshing. If the owning process dies, the key expires and the
recovery sweeper may resume the execution elsewhere.

Key schema:
    execution:{id}:owner      -> STRING owner token (TTL = owner_lock_ttl)
    execution:{id}:heartbeat  -> FLOAT last refresh timestamp
    executions:active         -> SET {execution_ids owned by any process}
"""

import os
import socket
import time
import uuid
from typing import Optional, Set

from constants import ACTIVE_EXECUTIONS_KEY, heartbeat_key, owner_lock_key
from core.cache import CacheService
from core.logging import get_logger

logger = get_logger(__name__)


def make_owner_id() -> str:
    return f"{socket.gethostname()}:{os.getpid()}:{uuid.uuid4().hex[:8]}"


class ExecutionCache:
    """Ownership locks and heartbeats for executions."""

    def __init__(self, cache_service: CacheService, lock_ttl: int = 60,
                 owner_id: Optional[str] = None):
        self.cache = cache_service
        self.lock_ttl = lock_ttl
        self.owner_id = owner_id or make_owner_id()

    # =========================================================================
    # OWNERSHIP
    # =========================================================================

    async def acquire_ownership(self, execution_id: str) -> bool:
        """Take the owner lock. Re-acquiring a lock we already hold succeeds."""
        key = owner_lock_key(execution_id)
        acquired = await self.cache.set_if_absent(key, self.owner_id, self.lock_ttl)
        if not acquired:
            acquired = await self.cache.get(key) == self.owner_id
            if not acquired:
                logger.info("Execution owned elsewhere", execution_id=execution_id)
                return False

        await self.cache.set_add(ACTIVE_EXECUTIONS_KEY, execution_id)
        await self.update_heartbeat(execution_id)
        logger.debug("Ownership acquired", execution_id=execution_id, owner=self.owner_id)
        return True

    async def refresh_ownership(self, execution_id: str) -> bool:
        """Extend the lock TTL. False means the lock was lost."""
        key = owner_lock_key(execution_id)
        if await self.cache.get(key) != self.owner_id:
            logger.warning("Ownership lost", execution_id=execution_id)
            return False
        await self.cache.expire(key, self.lock_ttl)
        await self.update_heartbeat(execution_id)
        return True

    async def release_ownership(self, execution_id: str) -> None:
        key = owner_lock_key(execution_id)
        # Only release if we hold the lock
        if await self.cache.get(key) == self.owner_id:
            await self.cache.delete(key)
        await self.cache.delete(heartbeat_key(execution_id))
        await self.cache.set_remove(ACTIVE_EXECUTIONS_KEY, execution_id)
        logger.debug("Ownership released", execution_id=execution_id)

    async def get_owner(self, execution_id: str) -> Optional[str]:
        return await self.cache.get(owner_lock_key(execution_id))

    async def has_live_owner(self, execution_id: str) -> bool:
        return await self.cache.exists(owner_lock_key(execution_id))

    async def get_active_executions(self) -> Set[str]:
        return await self.cache.set_members(ACTIVE_EXECUTIONS_KEY)

    # =========================================================================
    # HEARTBEATS (for crash recovery)
    # =========================================================================

    async def update_heartbeat(self, execution_id: str) -> bool:
        return await self.cache.set(heartbeat_key(execution_id), time.time(), ttl=self.lock_ttl * 5)

    async def get_heartbeat(self, execution_id: str) -> Optional[float]:
        value = await self.cache.get(heartbeat_key(execution_id))
        return float(value) if value is not None else None
