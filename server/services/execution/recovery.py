"""Recovery sweeper for crash recovery.

Runs as background task to:
- Find executions persisted as PENDING/RUNNING/PAUSED with no live owner
- Hand them to the executor to resume
- Clean orphans out of the active-executions set
"""

import asyncio
from typing import Awaitable, Callable, List, Optional

from constants import ACTIVE_EXECUTIONS_KEY
from core.database import Database
from core.logging import get_logger
from .cache import ExecutionCache

logger = get_logger(__name__)

RecoveryCallback = Callable[[str], Awaitable[bool]]


class RecoverySweeper:
    """Background task that recovers abandoned workflow executions.

    An execution is abandoned when the database says it is not finished and
    nobody holds its owner lock (the owner's TTL expired).
    """

    def __init__(self, database: Database, cache: ExecutionCache,
                 on_recovery: RecoveryCallback,
                 is_local: Callable[[str], bool],
                 sweep_interval: int = 60):
        """Initialize recovery sweeper.

        Args:
            database: Source of truth for unfinished executions
            cache: Ownership locks
            on_recovery: Async callback resuming one execution, returns True if resumed
            is_local: Whether this process already drives an execution
            sweep_interval: Seconds between sweep runs
        """
        self.database = database
        self.cache = cache
        self._on_recovery = on_recovery
        self._is_local = is_local
        self.sweep_interval = sweep_interval
        self._running = False
        self._task: Optional[asyncio.Task] = None

    async def start(self) -> None:
        """Start the recovery sweeper background task."""
        if self._running:
            logger.warning("Recovery sweeper already running")
            return

        self._running = True
        self._task = asyncio.create_task(self._sweep_loop(), name="recovery-sweeper")
        logger.info("Recovery sweeper started", sweep_interval=self.sweep_interval)

    async def stop(self) -> None:
        """Stop the recovery sweeper."""
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("Recovery sweeper stopped")

    async def _sweep_loop(self) -> None:
        """Main sweep loop - runs continuously."""
        while self._running:
            await asyncio.sleep(self.sweep_interval)
            try:
                await self.sweep_once()
            except Exception as e:
                logger.error("Sweep iteration failed", error=str(e))

    async def find_abandoned(self) -> List[str]:
        """Unfinished executions with no live owner and not driven by this process."""
        abandoned = []
        for record in await self.database.get_incomplete_executions():
            if self._is_local(record.id):
                continue
            if await self.cache.has_live_owner(record.id):
                continue
            abandoned.append(record.id)
        return abandoned

    async def sweep_once(self) -> List[str]:
        """Single sweep iteration. Returns the execution ids resumed."""
        for execution_id in await self.cache.get_active_executions():
            if not await self.cache.has_live_owner(execution_id):
                logger.warning("Orphan execution in active set", execution_id=execution_id)
                await self.cache.cache.set_remove(ACTIVE_EXECUTIONS_KEY, execution_id)

        recovered = []
        for execution_id in await self.find_abandoned():
            logger.info("Triggering recovery", execution_id=execution_id)
            try:
                if await self._on_recovery(execution_id):
                    recovered.append(execution_id)
            except Exception as e:
                logger.error("Recovery callback failed", execution_id=execution_id, error=str(e))

        if recovered:
            logger.info("Recovered executions", count=len(recovered))
        return recovered
