"""Scheduler/Interpreter - drives one execution to a terminal status.

Continuous scheduling: every completion (asyncio.wait FIRST_COMPLETED) and
every control signal triggers a readiness pass. A pass first propagates
skips, then dispatches every ready node as its own task. Dispatch is a
compare-and-set PENDING -> RUNNING in the state store, so evaluating twice
without a completion in between starts nothing new.

Each node task owns its retry loop:

    RUNNING -> SUCCESS
    RUNNING -> FAILED (final)            not retryable / retries exhausted / stopping
    RUNNING -> FAILED -> (backoff, wait while paused) -> RUNNING, retry_count + 1

Stopping (cancel, halting failure, workflow timeout) sets the shared
cooperative cancel signal. Nothing is ever cancelled forcibly; in-flight
nodes get a grace period and record whatever they finish with.
"""

import asyncio
import time
from functools import partial
from typing import Awaitable, Callable, Dict, List, Optional, Set, Tuple

from constants import WORKFLOW_TRIGGER_TYPES
from core.config import Settings
from core.logging import get_logger, log_execution_time
from models.workflow import NO_RETRY, NodeSpec, RetryPolicy, WorkflowDefinition
from services.execution.events import ExecutionEventBus
from services.execution.exceptions import UnresolvedReferenceError
from services.execution.expressions import resolve_config
from services.execution.invoker import InvocationOutcome, NodeContext, NodeInvoker
from services.execution.models import (
    ErrorKind, Execution, ExecutionMetric, ExecutionStatus, LogLevel, MetricType,
    NodeFailure, NodeStatus,
)
from services.execution.store import ExecutionStateStore
from services.execution.validation import WorkflowGraph

logger = get_logger(__name__)

SleepFn = Callable[[float], Awaitable[None]]


class ExecutionScheduler:
    """Owns and drives exactly one execution."""

    def __init__(self, execution_id: str, definition: WorkflowDefinition, graph: WorkflowGraph,
                 store: ExecutionStateStore, bus: ExecutionEventBus, invoker: NodeInvoker,
                 settings: Settings, sleep: SleepFn = asyncio.sleep,
                 clock: Callable[[], float] = time.monotonic):
        self.execution_id = execution_id
        self.definition = definition
        self.graph = graph
        self.store = store
        self.bus = bus
        self.invoker = invoker
        self.settings = settings
        self._sleep = sleep
        self._clock = clock
        self._nodes: Dict[str, NodeSpec] = {node.id: node for node in definition.nodes}

        self.cancel_event = asyncio.Event()  # cooperative stop signal shared by node contexts
        self._resume = asyncio.Event()
        self._resume.set()
        self._wake = asyncio.Event()
        self._tasks: Dict[asyncio.Task, str] = {}
        self._abandoned: Set[asyncio.Task] = set()
        self._halt: Optional[Tuple[str, NodeFailure]] = None
        self._timed_out = False
        self._deadline: Optional[float] = None
        self._start_clock: Optional[float] = None
        self._idle_triggers: Set[str] = set()

    # =========================================================================
    # STATE HELPERS
    # =========================================================================

    @property
    def execution(self) -> Execution:
        return self.store.get_execution(self.execution_id)

    @property
    def stopping(self) -> bool:
        return self.cancel_event.is_set()

    @property
    def in_flight(self) -> List[str]:
        return list(self._tasks.values())

    def _state(self, node_id: str):
        return self.store.get_node_state(self.execution_id, node_id)

    def retry_policy_for(self, node: NodeSpec) -> RetryPolicy:
        """Node policy, then the workflow default, then no retries."""
        return node.retry_policy or self.definition.settings.retry_policy or NO_RETRY

    def _remaining(self) -> Optional[float]:
        if self._deadline is None:
            return None
        return self._deadline - self._clock()

    # =========================================================================
    # CONTROL SIGNALS
    # =========================================================================

    async def pause(self) -> bool:
        if not await self.store.transition_execution(
            self.execution_id, ExecutionStatus.RUNNING, ExecutionStatus.PAUSED
        ):
            return False
        self._resume.clear()
        self.bus.execution_updated(self.execution)
        self.bus.log(self.execution_id, "Execution paused", category="execution")
        self._wake.set()
        return True

    async def resume(self) -> bool:
        if not await self.store.transition_execution(
            self.execution_id, ExecutionStatus.PAUSED, ExecutionStatus.RUNNING
        ):
            return False
        self._resume.set()
        self.bus.execution_updated(self.execution)
        self.bus.log(self.execution_id, "Execution resumed", category="execution")
        self._wake.set()
        return True

    async def cancel(self) -> bool:
        execution = self.execution
        now = time.time()
        duration = round((now - execution.started_at) * 1000, 2) if execution.started_at else None
        if not await self.store.transition_execution(
            self.execution_id,
            (ExecutionStatus.PENDING, ExecutionStatus.RUNNING, ExecutionStatus.PAUSED),
            ExecutionStatus.CANCELLED,
            completed_at=now, duration=duration,
        ):
            return False
        self.cancel_event.set()
        self._resume.set()
        self.bus.execution_updated(self.execution)
        self.bus.log(self.execution_id, "Execution cancelled", level=LogLevel.WARN,
                     category="execution", in_flight=self.in_flight)
        self._wake.set()
        return True

    # =========================================================================
    # READINESS
    # =========================================================================

    def _upstream(self, node_id: str) -> Set[str]:
        """Predecessors, minus trigger nodes that did not fire this execution."""
        return self.graph.predecessors[node_id] - self._idle_triggers

    def _is_ready(self, node_id: str) -> bool:
        node = self._nodes[node_id]
        for predecessor in self._upstream(node_id):
            upstream = self._state(predecessor)
            if upstream.status == NodeStatus.SUCCESS:
                continue
            if upstream.is_settled and node.continue_on_error:
                continue
            return False
        return True

    def _skip_reason(self, node_id: str) -> Optional[str]:
        upstream_ids = self._upstream(node_id)
        if self.graph.predecessors[node_id] and not upstream_ids:
            return "no upstream trigger fired"
        if self._nodes[node_id].continue_on_error:
            return None
        for predecessor in sorted(upstream_ids):
            upstream = self._state(predecessor)
            if upstream.status == NodeStatus.SKIPPED:
                return f"upstream node {predecessor} was skipped"
            if upstream.status == NodeStatus.FAILED and upstream.final:
                return f"upstream node {predecessor} failed"
        return None

    def _dispatch_blocked(self) -> bool:
        return (
            self.stopping
            or self._halt is not None
            or self.execution.status != ExecutionStatus.RUNNING
        )

    async def _propagate_skips(self) -> List[str]:
        """Mark PENDING nodes behind a settled failure SKIPPED, transitively."""
        skipped: List[str] = []
        changed = True
        while changed:
            changed = False
            for node_id in self.graph.node_ids:
                if self._state(node_id).status != NodeStatus.PENDING:
                    continue
                reason = self._skip_reason(node_id)
                if reason is None:
                    continue
                if await self.store.compare_and_set_node(
                    self.execution_id, node_id, NodeStatus.PENDING, NodeStatus.SKIPPED,
                    completed_at=time.time(),
                ):
                    skipped.append(node_id)
                    changed = True
                    self.bus.node_updated(self.execution_id, self._state(node_id))
                    self.bus.log(self.execution_id, f"Node skipped: {reason}", node_id=node_id,
                                 category="node")
        return skipped

    async def evaluate(self) -> List[str]:
        """One readiness pass. Returns the node ids dispatched by this pass."""
        if self.execution.status != ExecutionStatus.CANCELLED:
            await self._propagate_skips()
        if self._dispatch_blocked():
            return []

        dispatched: List[str] = []
        for node_id in self.graph.node_ids:
            if self._state(node_id).status != NodeStatus.PENDING or not self._is_ready(node_id):
                continue
            if not await self.store.compare_and_set_node(
                self.execution_id, node_id, NodeStatus.PENDING, NodeStatus.RUNNING,
                started_at=time.time(),
            ):
                continue
            self.bus.node_updated(self.execution_id, self._state(node_id))
            task = asyncio.create_task(self._run_node(self._nodes[node_id]),
                                       name=f"node_{node_id}")
            self._tasks[task] = node_id
            dispatched.append(node_id)

        if dispatched:
            logger.debug("Dispatched nodes", execution_id=self.execution_id, node_ids=dispatched)
        return dispatched

    # =========================================================================
    # NODE TASK
    # =========================================================================

    def _gather_inputs(self, node_id: str) -> Dict[str, object]:
        """Upstream outputs keyed by source node; failed/skipped upstreams are error-shaped."""
        inputs: Dict[str, object] = {}
        for predecessor in sorted(self._upstream(node_id)):
            upstream = self._state(predecessor)
            if upstream.status == NodeStatus.SUCCESS:
                inputs[predecessor] = upstream.output
            else:
                inputs[predecessor] = {
                    "status": upstream.status.value,
                    "error": upstream.error.to_dict() if upstream.error else None,
                }
        return inputs

    async def _invoke(self, node: NodeSpec) -> Tuple[Optional[dict], InvocationOutcome]:
        execution = self.execution
        try:
            parameters = resolve_config(node.config, self.store.get_context(self.execution_id))
        except UnresolvedReferenceError as e:
            return None, InvocationOutcome(failure=NodeFailure(
                ErrorKind.VALIDATION, str(e), details={"expression": e.expression}
            ))

        context = NodeContext(
            execution_id=self.execution_id,
            workflow_id=execution.workflow_id,
            node_id=node.id,
            node_type=node.type,
            user_id=execution.user_id,
            inputs=self._gather_inputs(node.id),
            variables=execution.variables,
            trigger=execution.trigger_payload,
            cancel_event=self.cancel_event,
            log_callback=partial(self.bus.node_log, self.execution_id),
        )
        return parameters, await self.invoker.invoke(node, parameters, context)

    async def _backoff(self, seconds: float) -> None:
        """Sleep for the retry delay unless the execution starts stopping."""
        sleeper = asyncio.ensure_future(self._sleep(seconds))
        stopper = asyncio.ensure_future(self.cancel_event.wait())
        try:
            await asyncio.wait({sleeper, stopper}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for waiter in (sleeper, stopper):
                if not waiter.done():
                    waiter.cancel()

    async def _wait_resumed(self) -> None:
        """Block while paused; a stop signal releases the wait as well."""
        if self._resume.is_set() or self.stopping:
            return
        resumer = asyncio.ensure_future(self._resume.wait())
        stopper = asyncio.ensure_future(self.cancel_event.wait())
        try:
            await asyncio.wait({resumer, stopper}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for waiter in (resumer, stopper):
                if not waiter.done():
                    waiter.cancel()

    async def _run_node(self, node: NodeSpec) -> None:
        policy = self.retry_policy_for(node)

        while True:
            parameters, outcome = await self._invoke(node)
            retry_count = self._state(node.id).retry_count
            now = time.time()

            if outcome.ok:
                await self.store.compare_and_set_node(
                    self.execution_id, node.id, NodeStatus.RUNNING, NodeStatus.SUCCESS,
                    input=parameters, output=outcome.output, completed_at=now,
                )
                state = self._state(node.id)
                self.bus.node_updated(self.execution_id, state)
                self.bus.log(self.execution_id, f"Node {node.display_name} completed", node_id=node.id,
                             category="node", duration=outcome.duration, retry_count=retry_count)
                await self._record_node_metrics(node, state.duration, retry_count)
                return

            failure = outcome.failure
            will_retry = failure.retryable and policy.allows_retry(retry_count) and not self.stopping
            await self.store.compare_and_set_node(
                self.execution_id, node.id, NodeStatus.RUNNING, NodeStatus.FAILED,
                input=parameters, error=failure, completed_at=now, final=not will_retry,
            )
            self.bus.node_updated(self.execution_id, self._state(node.id))
            self.bus.log(
                self.execution_id, f"Node {node.display_name} failed: {failure.message}",
                level=LogLevel.WARN if will_retry else LogLevel.ERROR, node_id=node.id,
                category="node", error=failure.to_dict(), retry_count=retry_count,
            )

            if not will_retry:
                await self._record_node_metrics(node, self._state(node.id).duration, retry_count)
                self._on_final_failure(node, failure)
                return

            delay_ms = policy.calculate_delay(retry_count)
            self.bus.log(self.execution_id, f"Retrying node {node.display_name} in {delay_ms:g}ms",
                         node_id=node.id, category="retry", attempt=retry_count + 1,
                         max_retries=policy.max_retries, delay=delay_ms)
            await self._backoff(delay_ms / 1000)

            # Paused executions hold retries until resumed
            await self._wait_resumed()

            if self.stopping:
                await self.store.mark_final(self.execution_id, node.id)
                self.bus.node_updated(self.execution_id, self._state(node.id))
                self._on_final_failure(node, failure)
                return

            await self.store.compare_and_set_node(
                self.execution_id, node.id, NodeStatus.FAILED, NodeStatus.RUNNING,
                retry_count=retry_count + 1, started_at=time.time(), completed_at=None, error=None,
            )
            self.bus.node_updated(self.execution_id, self._state(node.id))

    def _on_final_failure(self, node: NodeSpec, failure: NodeFailure) -> None:
        if node.continue_on_error or self._halt is not None:
            return
        if self.execution.status == ExecutionStatus.CANCELLED:
            return
        self._halt = (node.id, failure)
        self.cancel_event.set()
        self._wake.set()
        logger.info("Halting execution", execution_id=self.execution_id, node_id=node.id,
                    kind=failure.kind.value)

    async def _record_node_metrics(self, node: NodeSpec, duration: Optional[float],
                                   retry_count: int) -> None:
        if duration is not None:
            await self.store.record_metric(ExecutionMetric(
                execution_id=self.execution_id, node_id=node.id, name="node.duration",
                value=duration, metric_type=MetricType.TIMER, unit="ms",
                tags={"node_type": node.type},
            ))
        if retry_count:
            await self.store.record_metric(ExecutionMetric(
                execution_id=self.execution_id, node_id=node.id, name="node.retries",
                value=retry_count, metric_type=MetricType.COUNTER,
                tags={"node_type": node.type},
            ))

    # =========================================================================
    # DECIDE LOOP
    # =========================================================================

    def _collect(self, task: asyncio.Task) -> None:
        self._tasks.pop(task, None)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            # Node-level failures never raise; anything here is a broken invariant
            raise error

    def _select_trigger(self) -> None:
        """Trigger nodes other than the one that fired stay idle for this execution."""
        fired = (self.execution.trigger_payload or {}).get("node_id")
        triggers = {
            node_id for node_id in self.graph.entry_nodes()
            if self._nodes[node_id].type in WORKFLOW_TRIGGER_TYPES
        }
        if fired in triggers:
            self._idle_triggers = triggers - {fired}

    async def _skip_idle_triggers(self) -> None:
        for node_id in sorted(self._idle_triggers):
            if await self.store.compare_and_set_node(
                self.execution_id, node_id, NodeStatus.PENDING, NodeStatus.SKIPPED,
                completed_at=time.time(),
            ):
                self.bus.node_updated(self.execution_id, self._state(node_id))
                self.bus.log(self.execution_id, "Node skipped: trigger did not fire", node_id=node_id,
                             category="node")

    async def _start(self) -> bool:
        execution = self.execution
        if execution.status == ExecutionStatus.PENDING:
            if not await self.store.transition_execution(
                self.execution_id, ExecutionStatus.PENDING, ExecutionStatus.RUNNING,
                started_at=time.time(),
            ):
                return False
            self.bus.execution_updated(self.execution)
            self.bus.log(self.execution_id, f"Execution started ({execution.trigger_type.value})",
                         category="execution", workflow_id=execution.workflow_id,
                         workflow_version=execution.workflow_version)
            await self._skip_idle_triggers()
            return True

        if execution.status == ExecutionStatus.PAUSED:
            self._resume.clear()
        if execution.status in (ExecutionStatus.RUNNING, ExecutionStatus.PAUSED):
            self.bus.log(self.execution_id, "Execution resumed after interruption", category="execution")
            await self._skip_idle_triggers()
            return True
        return False

    async def run(self) -> Execution:
        """Drive the execution to SUCCESS, FAILED or CANCELLED."""
        self._start_clock = self._clock()
        timeout = self.definition.settings.timeout
        if timeout:
            self._deadline = self._start_clock + timeout / 1000

        self._select_trigger()
        if await self._start():
            await self.evaluate()
            await self._decide_loop()

        if self._tasks:
            self.cancel_event.set()
            await self._drain(self.settings.cancel_grace_period)

        if self.execution.status != ExecutionStatus.CANCELLED:
            await self._propagate_skips()
        return await self._finish()

    async def _decide_loop(self) -> None:
        while True:
            status = self.execution.status
            if status == ExecutionStatus.CANCELLED or self._halt is not None:
                return
            if not self._tasks and status != ExecutionStatus.PAUSED:
                return

            remaining = self._remaining()
            if remaining is not None and remaining <= 0:
                self._timed_out = True
                return

            wake = asyncio.ensure_future(self._wake.wait())
            try:
                done, _ = await asyncio.wait(
                    {*self._tasks, wake}, timeout=remaining, return_when=asyncio.FIRST_COMPLETED
                )
            finally:
                if not wake.done():
                    wake.cancel()
            self._wake.clear()

            for task in done:
                if task is not wake:
                    self._collect(task)

            await self.evaluate()

    async def _drain(self, grace_period: float) -> None:
        """Give in-flight nodes a grace period to observe the stop signal."""
        pending = set(self._tasks)
        logger.info("Waiting for in-flight nodes", execution_id=self.execution_id,
                    count=len(pending), grace_period=grace_period)
        done, still_running = await asyncio.wait(pending, timeout=grace_period)
        for task in done:
            self._collect(task)
        for task in still_running:
            # Left running; the node task records its own result if it ever finishes
            self._tasks.pop(task, None)
            self._abandoned.add(task)
            task.add_done_callback(self._forget_abandoned)
            logger.warning("Node ignored stop signal", execution_id=self.execution_id,
                           node_id=task.get_name())

    def _forget_abandoned(self, task: asyncio.Task) -> None:
        self._abandoned.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.warning("Abandoned node finished with error", execution_id=self.execution_id,
                           node_id=task.get_name(), error=str(error))

    async def _finish(self) -> Execution:
        now = time.time()
        started_at = self.execution.started_at or now
        duration = round((now - started_at) * 1000, 2)
        active = (ExecutionStatus.PENDING, ExecutionStatus.RUNNING, ExecutionStatus.PAUSED)

        if self._timed_out:
            await self.store.transition_execution(
                self.execution_id, active, ExecutionStatus.FAILED,
                completed_at=now, duration=duration,
                error={"message": f"Workflow exceeded its {self.definition.settings.timeout}ms timeout",
                       "kind": ErrorKind.TIMEOUT.value, "node_id": None},
            )
        elif self._halt is not None:
            node_id, failure = self._halt
            await self.store.transition_execution(
                self.execution_id, active, ExecutionStatus.FAILED,
                completed_at=now, duration=duration,
                error={"message": failure.message, "kind": failure.kind.value, "node_id": node_id},
            )
        else:
            await self.store.transition_execution(
                self.execution_id, (ExecutionStatus.RUNNING,), ExecutionStatus.SUCCESS,
                completed_at=now, duration=duration,
            )

        execution = self.execution
        if not execution.status.is_terminal:
            # Paused or never started and not cancelled: nothing more to drive
            return execution

        await self._record_execution_metrics(execution)
        self.bus.log(
            self.execution_id, f"Execution finished with status {execution.status.value}",
            level=LogLevel.ERROR if execution.status == ExecutionStatus.FAILED else LogLevel.INFO,
            category="execution", duration=execution.duration, error=execution.error,
        )
        self.bus.execution_completed(execution)
        log_execution_time(logger, "workflow_execution", self._start_clock or self._clock(), self._clock(),
                           execution_id=self.execution_id, status=execution.status.value)
        return execution

    async def _record_execution_metrics(self, execution: Execution) -> None:
        tags = {"workflow_id": execution.workflow_id, "status": execution.status.value}
        if execution.duration is not None:
            await self.store.record_metric(ExecutionMetric(
                execution_id=execution.id, name="execution.duration", value=execution.duration,
                metric_type=MetricType.TIMER, unit="ms", tags=tags,
            ))
        for label, status in (("succeeded", NodeStatus.SUCCESS), ("failed", NodeStatus.FAILED),
                              ("skipped", NodeStatus.SKIPPED)):
            await self.store.record_metric(ExecutionMetric(
                execution_id=execution.id, name=f"execution.nodes.{label}",
                value=execution.count_nodes(status), metric_type=MetricType.GAUGE, tags=tags,
            ))
