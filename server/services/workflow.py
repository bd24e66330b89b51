"""Workflow Service - Facade for workflow registration and execution.

This is a thin facade that delegates to specialized modules:
- WorkflowExecutor: per-execution schedulers, control signals, recovery
- ExecutionStateStore: authoritative execution state, logs and metrics
- ExecutionEventBus: ordered event streams for subscribers
- RecoverySweeper: resumption of executions whose owner went away

On top of those it keeps the registered definition versions and enforces
each workflow's concurrency policy.
"""

import asyncio
from collections import deque
from typing import Any, Deque, Dict, List, Optional, Tuple, Union, TYPE_CHECKING

from core.logging import get_logger
from models.workflow import ConcurrencyPolicy, WorkflowDefinition
from services.execution import (
    ConcurrencyLimitError,
    Execution,
    ExecutionNotFoundError,
    ExecutionStatus,
    LogSource,
    Subscription,
    TriggerType,
    WorkflowGraph,
    WorkflowNotFoundError,
    WorkflowValidationError,
    validate_workflow,
)

if TYPE_CHECKING:
    from core.config import Settings
    from core.database import Database
    from services.execution import ExecutionEventBus, ExecutionStateStore, RecoverySweeper, WorkflowExecutor

logger = get_logger(__name__)


class WorkflowService:
    """Workflow registration and execution service.

    Thin facade delegating to specialized modules for:
    - Graph validation (validate_workflow)
    - Orchestration (WorkflowExecutor)
    - State, logs and metrics (ExecutionStateStore)
    - Live updates (ExecutionEventBus)
    """

    def __init__(
        self,
        executor: "WorkflowExecutor",
        store: "ExecutionStateStore",
        bus: "ExecutionEventBus",
        settings: "Settings",
        database: Optional["Database"] = None,
        recovery: Optional["RecoverySweeper"] = None,
    ):
        self.executor = executor
        self.store = store
        self.bus = bus
        self.settings = settings
        self.database = database
        self.recovery = recovery

        self._definitions: Dict[str, Dict[int, WorkflowDefinition]] = {}
        self._graphs: Dict[Tuple[str, int], WorkflowGraph] = {}
        self._queues: Dict[str, Deque[str]] = {}
        self._start_lock = asyncio.Lock()
        self._stats: Dict[str, Dict[str, float]] = {}

        self.executor.on_complete(self._on_execution_complete)

    async def startup(self) -> None:
        await self.executor.startup()
        if self.recovery:
            if self.settings.recover_on_startup:
                recovered = await self.recovery.sweep_once()
                logger.info("Startup recovery finished", recovered=len(recovered))
            await self.recovery.start()

    async def shutdown(self) -> None:
        if self.recovery:
            await self.recovery.stop()
        await self.executor.shutdown()

    # =========================================================================
    # WORKFLOW DEFINITIONS
    # =========================================================================

    def register_workflow(self, definition: Union[WorkflowDefinition, Dict[str, Any]]) -> WorkflowDefinition:
        """Validate and store a definition version.

        Re-registering an identical version is a no-op; a different
        definition under an existing version is rejected since versions are
        immutable.
        """
        if not isinstance(definition, WorkflowDefinition):
            definition = WorkflowDefinition.model_validate(definition)

        graph = validate_workflow(definition)

        versions = self._definitions.setdefault(definition.id, {})
        existing = versions.get(definition.version)
        if existing is not None and existing != definition:
            raise WorkflowValidationError(
                [f"Workflow {definition.id} version {definition.version} is already registered"]
            )

        versions[definition.version] = definition
        self._graphs[(definition.id, definition.version)] = graph
        logger.info("Workflow registered", workflow_id=definition.id, version=definition.version,
                    node_count=len(definition.nodes), connection_count=len(definition.connections))
        return definition

    def get_workflow(self, workflow_id: str, version: Optional[int] = None) -> WorkflowDefinition:
        """A registered definition; the latest version when ``version`` is None."""
        versions = self._definitions.get(workflow_id)
        if not versions:
            raise WorkflowNotFoundError(workflow_id)
        if version is None:
            return versions[max(versions)]
        definition = versions.get(version)
        if definition is None:
            raise WorkflowNotFoundError(workflow_id, version)
        return definition

    def list_workflows(self) -> List[Dict[str, Any]]:
        return [
            {
                "id": workflow_id,
                "name": versions[max(versions)].name,
                "versions": sorted(versions),
                "latest_version": max(versions),
            }
            for workflow_id, versions in sorted(self._definitions.items())
        ]

    # =========================================================================
    # EXECUTION
    # =========================================================================

    def _active_count(self, workflow_id: str) -> int:
        count = 0
        for execution_id in self.executor.active_executions():
            if self.store.has_execution(execution_id) and \
                    self.store.get_execution(execution_id).workflow_id == workflow_id:
                count += 1
        return count

    async def start_execution(
        self,
        workflow_id: str,
        version: Optional[int] = None,
        trigger_payload: Optional[Dict[str, Any]] = None,
        trigger_type: TriggerType = TriggerType.MANUAL,
        user_id: Optional[str] = None,
    ) -> str:
        """Create and start an execution of a registered workflow version.

        Raises:
            WorkflowNotFoundError: unknown workflow or version
            ConcurrencyLimitError: at max_instances under the REJECT policy
        """
        definition = self.get_workflow(workflow_id, version)
        graph = self._graphs[(definition.id, definition.version)]
        concurrency = definition.settings.concurrency

        async with self._start_lock:
            active = self._active_count(workflow_id)
            at_limit = concurrency.max_instances > 0 and active >= concurrency.max_instances

            if at_limit and concurrency.policy == ConcurrencyPolicy.REJECT:
                logger.warning("Execution rejected", workflow_id=workflow_id,
                               limit=concurrency.max_instances)
                raise ConcurrencyLimitError(workflow_id, concurrency.max_instances)

            execution = await self.executor.create_execution(
                definition,
                trigger_type=trigger_type,
                trigger_payload=trigger_payload,
                user_id=user_id,
                graph=graph,
            )

            if at_limit and concurrency.policy == ConcurrencyPolicy.QUEUE:
                self._queues.setdefault(workflow_id, deque()).append(execution.id)
                self.bus.log(execution.id, "Execution queued until a running instance finishes",
                             source=LogSource.SYSTEM, category="concurrency",
                             active=active, limit=concurrency.max_instances)
                logger.info("Execution queued", execution_id=execution.id, workflow_id=workflow_id,
                            queue_length=len(self._queues[workflow_id]))
            else:
                self.executor.start(execution.id)

        return execution.id

    async def _on_execution_complete(self, execution: Execution) -> None:
        self._record_stats(execution)

        queue = self._queues.get(execution.workflow_id)
        if queue and execution.id in queue:
            queue.remove(execution.id)
        await self._release_queue(execution.workflow_id)

    async def _release_queue(self, workflow_id: str) -> None:
        queue = self._queues.get(workflow_id)
        if not queue:
            return

        async with self._start_lock:
            limit = self.get_workflow(workflow_id).settings.concurrency.max_instances
            while queue and (limit == 0 or self._active_count(workflow_id) < limit):
                execution_id = queue.popleft()
                if self.store.get_execution(execution_id).status != ExecutionStatus.PENDING:
                    continue
                logger.info("Starting queued execution", execution_id=execution_id,
                            workflow_id=workflow_id)
                self.executor.start(execution_id)
            if not queue:
                self._queues.pop(workflow_id, None)

    def queued_executions(self, workflow_id: str) -> List[str]:
        return list(self._queues.get(workflow_id, ()))

    async def _find_execution(self, execution_id: str) -> Execution:
        if self.store.has_execution(execution_id):
            return self.store.get_execution(execution_id)
        loaded = await self.store.read_execution(execution_id)
        if loaded is None:
            raise ExecutionNotFoundError(execution_id)
        return loaded[0]

    async def get_execution_status(self, execution_id: str) -> Dict[str, Any]:
        """Execution status with every node state."""
        execution = await self._find_execution(execution_id)
        return execution.to_dict()

    async def get_execution_logs(self, execution_id: str, since_cursor: int = 0,
                                 limit: Optional[int] = None) -> List[Dict[str, Any]]:
        """Log entries after ``since_cursor``; the last entry's ``sequence`` is the next cursor."""
        entries = await self.store.get_logs(execution_id, since_cursor, limit)
        return [entry.to_dict() for entry in entries]

    async def get_execution_metrics(self, execution_id: str) -> List[Dict[str, Any]]:
        metrics = await self.store.get_metrics(execution_id)
        return [metric.to_dict() for metric in metrics]

    async def subscribe(self, execution_id: str, since_sequence: Optional[int] = None) -> Subscription:
        """Live node and execution updates; ends after the completion event."""
        execution = await self._find_execution(execution_id)
        if execution.status.is_terminal and not self.bus.history(execution_id):
            # Nothing left to replay (evicted or finished in another process)
            self.bus.execution_completed(execution)
        return self.bus.subscribe(execution_id, since_sequence)

    # =========================================================================
    # CONTROL
    # =========================================================================

    async def _ensure_local(self, execution_id: str) -> bool:
        """True if this process drives the execution; raises if it does not exist at all."""
        if self.executor.is_local(execution_id):
            return True
        await self._find_execution(execution_id)
        return False

    async def cancel_execution(self, execution_id: str) -> bool:
        """Cancel a PENDING, RUNNING or PAUSED execution. False if it can no longer be cancelled."""
        if not await self._ensure_local(execution_id):
            return False
        return await self.executor.cancel_execution(execution_id)

    async def pause_execution(self, execution_id: str) -> bool:
        if not await self._ensure_local(execution_id):
            return False
        return await self.executor.pause_execution(execution_id)

    async def resume_execution(self, execution_id: str) -> bool:
        if not await self._ensure_local(execution_id):
            return False
        return await self.executor.resume_execution(execution_id)

    # =========================================================================
    # STATISTICS
    # =========================================================================

    def _record_stats(self, execution: Execution) -> None:
        if not execution.status.is_terminal:
            return
        stats = self._stats.setdefault(execution.workflow_id, {
            "execution_count": 0, "success_count": 0, "failure_count": 0,
            "total_duration": 0.0, "timed_runs": 0,
        })
        stats["execution_count"] += 1
        if execution.status == ExecutionStatus.SUCCESS:
            stats["success_count"] += 1
        elif execution.status == ExecutionStatus.FAILED:
            stats["failure_count"] += 1
        if execution.duration is not None:
            stats["total_duration"] += execution.duration
            stats["timed_runs"] += 1

    async def get_workflow_stats(self, workflow_id: str) -> Dict[str, Any]:
        """Execution, success and failure counts and average duration (ms)."""
        if self.database:
            return await self.database.get_workflow_stats(workflow_id)

        stats = self._stats.get(workflow_id)
        if stats is None:
            return {"workflow_id": workflow_id, "execution_count": 0, "success_count": 0,
                    "failure_count": 0, "average_duration": None}
        average = stats["total_duration"] / stats["timed_runs"] if stats["timed_runs"] else None
        return {
            "workflow_id": workflow_id,
            "execution_count": int(stats["execution_count"]),
            "success_count": int(stats["success_count"]),
            "failure_count": int(stats["failure_count"]),
            "average_duration": round(average, 2) if average is not None else None,
        }
