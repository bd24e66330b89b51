"""Workflow executor - the engine facade that owns every running scheduler.

Implements:
- One ExecutionScheduler per execution, run as its own task
- Ownership lock + heartbeat per running execution (lightly sharded ownership)
- Control signals (pause / resume / cancel) routed to the owning scheduler
- Resumption of executions interrupted by a crash or restart
"""

import asyncio
from typing import Awaitable, Callable, Dict, List, Optional

from core.config import Settings
from core.logging import get_logger
from models.workflow import WorkflowDefinition
from .cache import ExecutionCache
from .events import ExecutionEventBus
from .exceptions import ExecutionNotFoundError
from .invoker import NodeInvoker
from .models import (
    ErrorKind, Execution, ExecutionStatus, LogLevel, LogSource, NodeStatus, TriggerType,
)
from .scheduler import ExecutionScheduler, SleepFn
from .store import ExecutionStateStore
from .validation import WorkflowGraph, build_graph, validate_workflow

logger = get_logger(__name__)

CompletionCallback = Callable[[Execution], Awaitable[None]]


class WorkflowExecutor:
    """Creates executions and drives them through per-execution schedulers.

    Features:
    - Concurrent, independent executions sharing only registry/credentials
    - Ownership lock refreshed by a heartbeat while a scheduler runs
    - Completion callbacks for queueing and statistics
    """

    def __init__(self, store: ExecutionStateStore, bus: ExecutionEventBus,
                 invoker: NodeInvoker, settings: Settings,
                 ownership: Optional[ExecutionCache] = None,
                 sleep: SleepFn = asyncio.sleep):
        """Initialize executor.

        Args:
            store: Authoritative execution state
            bus: Event and log emitter
            invoker: Runs node implementations
            settings: Engine settings (timeouts, grace period, lock TTL)
            ownership: Optional ownership cache; without it every execution is local
            sleep: Retry backoff sleep, injectable for tests
        """
        self.store = store
        self.bus = bus
        self.invoker = invoker
        self.settings = settings
        self.ownership = ownership
        self._sleep = sleep
        self._schedulers: Dict[str, ExecutionScheduler] = {}
        self._runs: Dict[str, asyncio.Task] = {}
        self._completion_callbacks: List[CompletionCallback] = []

    async def startup(self) -> None:
        await self.bus.start()

    async def shutdown(self) -> None:
        """Stop driving executions without cancelling them; recovery resumes them later."""
        runs = list(self._runs.values())
        for task in runs:
            task.cancel()
        if runs:
            await asyncio.gather(*runs, return_exceptions=True)
        await self.bus.stop()
        logger.info("Workflow executor stopped", interrupted=len(runs))

    def on_complete(self, callback: CompletionCallback) -> None:
        self._completion_callbacks.append(callback)

    # =========================================================================
    # CREATE / START
    # =========================================================================

    async def create_execution(self, definition: WorkflowDefinition,
                               trigger_type: TriggerType = TriggerType.MANUAL,
                               trigger_payload: Optional[Dict] = None,
                               user_id: Optional[str] = None,
                               graph: Optional[WorkflowGraph] = None) -> Execution:
        """Create a PENDING execution with one PENDING node state per node."""
        graph = graph or validate_workflow(definition)
        execution = Execution.create(
            workflow_id=definition.id,
            workflow_version=definition.version,
            nodes=definition.nodes,
            trigger_type=trigger_type,
            trigger_payload=trigger_payload,
            variables=definition.variables,
            user_id=user_id,
        )
        await self.store.create_execution(execution, definition)
        self._schedulers[execution.id] = self._build_scheduler(execution.id, definition, graph)

        self.bus.execution_updated(execution)
        self.bus.log(execution.id, f"Execution created by {trigger_type.value.lower()} trigger",
                     source=LogSource.TRIGGER, category="trigger",
                     payload_keys=sorted((trigger_payload or {}).keys()))
        logger.info("Execution created", execution_id=execution.id, workflow_id=definition.id,
                    version=definition.version, trigger=trigger_type.value,
                    node_count=len(definition.nodes))
        return execution

    def _build_scheduler(self, execution_id: str, definition: WorkflowDefinition,
                         graph: WorkflowGraph) -> ExecutionScheduler:
        return ExecutionScheduler(
            execution_id=execution_id,
            definition=definition,
            graph=graph,
            store=self.store,
            bus=self.bus,
            invoker=self.invoker,
            settings=self.settings,
            sleep=self._sleep,
        )

    def start(self, execution_id: str) -> asyncio.Task:
        """Start driving a created execution in the background."""
        existing = self._runs.get(execution_id)
        if existing is not None:
            return existing
        scheduler = self.get_scheduler(execution_id)
        task = asyncio.create_task(self._run(scheduler), name=f"execution_{execution_id}")
        self._runs[execution_id] = task
        return task

    async def execute(self, definition: WorkflowDefinition,
                      trigger_type: TriggerType = TriggerType.MANUAL,
                      trigger_payload: Optional[Dict] = None,
                      user_id: Optional[str] = None) -> Execution:
        """Create, run and wait for one execution."""
        execution = await self.create_execution(definition, trigger_type, trigger_payload, user_id)
        return await self.start(execution.id)

    async def wait(self, execution_id: str, timeout: Optional[float] = None) -> Execution:
        """Wait for a running execution to finish (or the timeout to pass)."""
        task = self._runs.get(execution_id)
        if task is not None:
            await asyncio.wait({task}, timeout=timeout)
        return self.store.get_execution(execution_id)

    async def _run(self, scheduler: ExecutionScheduler) -> Execution:
        execution_id = scheduler.execution_id
        # Live object; stays readable if the store evicts the execution later
        execution = self.store.get_execution(execution_id)
        heartbeat: Optional[asyncio.Task] = None
        try:
            if self.ownership:
                if not await self.ownership.acquire_ownership(execution_id):
                    return self.store.get_execution(execution_id)
                heartbeat = asyncio.create_task(self._heartbeat(execution_id))

            return await scheduler.run()

        except asyncio.CancelledError:
            logger.info("Execution interrupted", execution_id=execution_id)
            raise
        except Exception as e:
            logger.exception("Execution crashed", execution_id=execution_id, error=str(e))
            await self._fail_crashed(execution_id, e)
            return self.store.get_execution(execution_id)
        finally:
            if heartbeat:
                heartbeat.cancel()
            if self.ownership:
                await self.ownership.release_ownership(execution_id)
            self._runs.pop(execution_id, None)
            self._schedulers.pop(execution_id, None)
            await self._notify_complete(execution)

    async def _heartbeat(self, execution_id: str) -> None:
        interval = max(self.settings.owner_lock_ttl / 3, 1)
        while True:
            await asyncio.sleep(interval)
            await self.ownership.refresh_ownership(execution_id)

    async def _fail_crashed(self, execution_id: str, error: Exception) -> None:
        """Best effort: an invariant violation still leaves a terminal record."""
        await self.store.transition_execution(
            execution_id,
            (ExecutionStatus.PENDING, ExecutionStatus.RUNNING, ExecutionStatus.PAUSED),
            ExecutionStatus.FAILED,
            error={"message": f"Internal engine error: {error}", "kind": ErrorKind.RUNTIME.value,
                   "node_id": None},
        )
        execution = self.store.get_execution(execution_id)
        self.bus.log(execution_id, "Execution aborted by internal error", level=LogLevel.FATAL,
                     error=str(error))
        self.bus.execution_completed(execution)

    async def _notify_complete(self, execution: Execution) -> None:
        for callback in self._completion_callbacks:
            try:
                await callback(execution)
            except Exception as e:
                logger.error("Completion callback failed", execution_id=execution.id, error=str(e))

    # =========================================================================
    # CONTROL
    # =========================================================================

    def get_scheduler(self, execution_id: str) -> ExecutionScheduler:
        scheduler = self._schedulers.get(execution_id)
        if scheduler is None:
            raise ExecutionNotFoundError(execution_id)
        return scheduler

    def is_local(self, execution_id: str) -> bool:
        return execution_id in self._schedulers

    def active_executions(self) -> List[str]:
        return list(self._runs)

    async def cancel_execution(self, execution_id: str) -> bool:
        scheduler = self.get_scheduler(execution_id)
        cancelled = await scheduler.cancel()
        if cancelled and execution_id not in self._runs:
            # Never started (queued): run it once so it finalizes and notifies
            self.start(execution_id)
        if cancelled:
            logger.info("Execution cancelled", execution_id=execution_id)
        return cancelled

    async def pause_execution(self, execution_id: str) -> bool:
        return await self.get_scheduler(execution_id).pause()

    async def resume_execution(self, execution_id: str) -> bool:
        return await self.get_scheduler(execution_id).resume()

    # =========================================================================
    # RECOVERY
    # =========================================================================

    async def recover_execution(self, execution_id: str) -> bool:
        """Resume an interrupted execution whose owner is gone.

        Interrupted RUNNING nodes and FAILED nodes that were waiting to retry
        go back to PENDING; completed work is kept.
        """
        if self.is_local(execution_id):
            return False

        execution = await self.store.load_execution(execution_id)
        if execution is None:
            logger.warning("Execution not found for recovery", execution_id=execution_id)
            return False
        if execution.status.is_terminal:
            logger.info("Execution already complete", execution_id=execution_id,
                        status=execution.status.value)
            return False

        for state in list(execution.node_states.values()):
            interrupted = state.status == NodeStatus.RUNNING
            waiting_retry = state.status == NodeStatus.FAILED and not state.final
            if interrupted or waiting_retry:
                await self.store.reset_node(execution_id, state.node_id)

        definition = self.store.get_definition(execution_id)
        self._schedulers[execution_id] = self._build_scheduler(
            execution_id, definition, build_graph(definition)
        )
        self.bus.log(execution_id, "Recovering interrupted execution", level=LogLevel.WARN,
                     category="recovery")
        logger.info("Recovering execution", execution_id=execution_id, status=execution.status.value)
        self.start(execution_id)
        return True
