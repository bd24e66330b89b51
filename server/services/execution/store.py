"""Execution State Store - authoritative state for every execution.

State lives in memory, guarded by one ``asyncio.Lock`` per execution, and
is written through to the database when one is configured. All status
changes go through compare-and-set operations so concurrent scheduler
passes can never dispatch the same node twice.

Readers get deep copies (``get_context``); the only writer of the shared
context map is :meth:`compare_and_set_node` on a SUCCESS transition.
"""

import asyncio
import copy
import time
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Tuple, Union

from core.database import Database
from core.logging import get_logger
from models.workflow import WorkflowDefinition
from services.execution.exceptions import ExecutionNotFoundError, InvalidTransitionError
from services.execution.models import (
    Execution, ExecutionLogEntry, ExecutionMetric, ExecutionStatus, LogLevel, LogSource,
    MetricType, NodeFailure, NodeState, NodeStatus, TriggerType,
    check_execution_transition, check_node_transition,
)

logger = get_logger(__name__)

NODE_FIELDS = ("input", "output", "error", "started_at", "completed_at", "retry_count", "final")
EXECUTION_FIELDS = ("started_at", "completed_at", "duration", "error")


class ExecutionStateStore:
    """In-process execution state with optional write-through persistence."""

    def __init__(self, database: Optional[Database] = None):
        self.database = database
        self._executions: Dict[str, Execution] = {}
        self._definitions: Dict[str, WorkflowDefinition] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        self._logs: Dict[str, List[ExecutionLogEntry]] = {}
        self._log_sequence: Dict[str, int] = {}
        self._last_log_timestamp: Dict[str, float] = {}
        self._metrics: Dict[str, List[ExecutionMetric]] = {}

    def _lock(self, execution_id: str) -> asyncio.Lock:
        lock = self._locks.get(execution_id)
        if lock is None:
            lock = self._locks[execution_id] = asyncio.Lock()
        return lock

    # ============================================================================
    # Executions
    # ============================================================================

    async def create_execution(self, execution: Execution, definition: WorkflowDefinition) -> Execution:
        async with self._lock(execution.id):
            self._executions[execution.id] = execution
            self._definitions[execution.id] = definition
            self._logs.setdefault(execution.id, [])
            self._metrics.setdefault(execution.id, [])

            if self.database:
                record = execution.to_record()
                record["definition"] = definition.model_dump(mode="json", by_alias=True)
                await self.database.save_execution(record)
                for state in execution.node_states.values():
                    await self.database.save_node_state(execution.id, state.to_dict())

        logger.debug("Execution created", execution_id=execution.id, workflow_id=execution.workflow_id)
        return execution

    def has_execution(self, execution_id: str) -> bool:
        return execution_id in self._executions

    def evict(self, execution_id: str) -> bool:
        """Drop a finished execution from memory; persisted reads still find it."""
        execution = self._executions.get(execution_id)
        if execution is None:
            return False
        if not execution.status.is_terminal:
            raise InvalidTransitionError(f"execution {execution_id}", execution.status.value, "EVICTED")
        for index in (self._executions, self._definitions, self._locks, self._logs,
                      self._log_sequence, self._last_log_timestamp, self._metrics):
            index.pop(execution_id, None)
        logger.debug("Execution evicted from memory", execution_id=execution_id)
        return True

    def get_execution(self, execution_id: str) -> Execution:
        """Live execution object. Callers must not mutate it."""
        execution = self._executions.get(execution_id)
        if execution is None:
            raise ExecutionNotFoundError(execution_id)
        return execution

    def get_definition(self, execution_id: str) -> WorkflowDefinition:
        definition = self._definitions.get(execution_id)
        if definition is None:
            raise ExecutionNotFoundError(execution_id)
        return definition

    def list_executions(self, workflow_id: Optional[str] = None,
                        statuses: Optional[Iterable[ExecutionStatus]] = None) -> List[Execution]:
        wanted = set(statuses) if statuses is not None else None
        return [
            execution for execution in self._executions.values()
            if (workflow_id is None or execution.workflow_id == workflow_id)
            and (wanted is None or execution.status in wanted)
        ]

    async def transition_execution(self, execution_id: str,
                                   expected: Union[ExecutionStatus, Iterable[ExecutionStatus]],
                                   new: ExecutionStatus, **fields) -> bool:
        """Move an execution to ``new`` if its status is one of ``expected``.

        Returns False when the current status does not match. Raises
        InvalidTransitionError when the move itself is illegal.
        """
        allowed = {expected} if isinstance(expected, ExecutionStatus) else set(expected)
        unknown = set(fields) - set(EXECUTION_FIELDS)
        if unknown:
            raise TypeError(f"Unknown execution field: {sorted(unknown)[0]}")
        async with self._lock(execution_id):
            execution = self.get_execution(execution_id)
            if execution.status not in allowed:
                return False
            check_execution_transition(execution_id, execution.status, new)

            execution.status = new
            for key, value in fields.items():
                setattr(execution, key, value)

            if self.database:
                await self.database.save_execution(execution.to_record())
        return True

    # ============================================================================
    # Node states
    # ============================================================================

    def get_node_state(self, execution_id: str, node_id: str) -> NodeState:
        return self.get_execution(execution_id).node_states[node_id]

    async def compare_and_set_node(self, execution_id: str, node_id: str,
                                   expected: NodeStatus, new: NodeStatus, **fields) -> bool:
        """Atomically move a node from ``expected`` to ``new``.

        Extra keyword fields (input, output, error, started_at, completed_at,
        retry_count, final) are applied in the same step. On SUCCESS the
        output is merged into the execution context.

        Returns:
            False when the node is not currently in ``expected``

        Raises:
            InvalidTransitionError: for a transition the state machine forbids
        """
        check_node_transition(node_id, expected, new)
        unknown = set(fields) - set(NODE_FIELDS)
        if unknown:
            raise TypeError(f"Unknown node field: {sorted(unknown)[0]}")

        async with self._lock(execution_id):
            execution = self.get_execution(execution_id)
            state = execution.node_states[node_id]
            if state.status != expected:
                return False

            state.status = new
            for key, value in fields.items():
                setattr(state, key, value)

            if new == NodeStatus.SUCCESS:
                execution.outputs[node_id] = copy.deepcopy(state.output)

            if self.database:
                await self.database.save_node_state(execution_id, state.to_dict())
                if new == NodeStatus.SUCCESS:
                    await self.database.save_execution(execution.to_record())
        return True

    async def mark_final(self, execution_id: str, node_id: str) -> None:
        """Give up on further retries of a FAILED node."""
        async with self._lock(execution_id):
            state = self.get_node_state(execution_id, node_id)
            if state.status != NodeStatus.FAILED or state.final:
                return
            state.final = True
            if self.database:
                await self.database.save_node_state(execution_id, state.to_dict())

    def get_context(self, execution_id: str) -> Dict[str, Any]:
        """Deep-copied snapshot used by the expression resolver."""
        execution = self.get_execution(execution_id)
        return {
            "nodes": copy.deepcopy(execution.outputs),
            "node_status": {
                node_id: state.status.value for node_id, state in execution.node_states.items()
            },
            "vars": copy.deepcopy(execution.variables),
            "trigger": copy.deepcopy(execution.trigger_payload),
            "execution": {"id": execution.id},
            "workflow": {"id": execution.workflow_id, "version": execution.workflow_version},
            "now": datetime.now(timezone.utc).isoformat(),
        }

    # ============================================================================
    # Logs
    # ============================================================================

    def append_log(self, entry: ExecutionLogEntry) -> ExecutionLogEntry:
        """Assign the next log cursor and clamp the timestamp so it never goes backwards.

        Synchronous on purpose: it has no await point, so it is atomic with
        respect to other coroutines on the loop.
        """
        execution_id = entry.execution_id
        sequence = self._log_sequence.get(execution_id, 0) + 1
        self._log_sequence[execution_id] = sequence
        entry.sequence = sequence

        last = self._last_log_timestamp.get(execution_id)
        if last is not None and entry.timestamp < last:
            entry.timestamp = last
        self._last_log_timestamp[execution_id] = entry.timestamp

        self._logs.setdefault(execution_id, []).append(entry)
        return entry

    async def get_logs(self, execution_id: str, since_cursor: int = 0,
                       limit: Optional[int] = None) -> List[ExecutionLogEntry]:
        """Entries after ``since_cursor`` in non-decreasing timestamp order."""
        if execution_id in self._logs:
            entries = [entry for entry in self._logs[execution_id] if entry.sequence > since_cursor]
            return entries[:limit] if limit else entries

        if execution_id not in self._executions and self.database:
            records = await self.database.get_execution_logs(execution_id, since_cursor, limit)
            if records or await self.database.get_execution(execution_id):
                return [ExecutionLogEntry.from_dict(record.model_dump()) for record in records]

        if execution_id not in self._executions:
            raise ExecutionNotFoundError(execution_id)
        return []

    # ============================================================================
    # Metrics
    # ============================================================================

    async def record_metric(self, metric: ExecutionMetric) -> None:
        self._metrics.setdefault(metric.execution_id, []).append(metric)
        if self.database:
            await self.database.add_execution_metric(metric.to_dict())

    async def get_metrics(self, execution_id: str) -> List[ExecutionMetric]:
        if execution_id in self._metrics:
            return list(self._metrics[execution_id])

        if self.database and await self.database.get_execution(execution_id):
            records = await self.database.get_execution_metrics(execution_id)
            return [
                ExecutionMetric(
                    execution_id=record.execution_id,
                    node_id=record.node_id,
                    name=record.name,
                    value=record.value,
                    metric_type=MetricType(record.metric_type),
                    unit=record.unit,
                    tags=record.tags or {},
                    timestamp=record.timestamp,
                )
                for record in records
            ]

        raise ExecutionNotFoundError(execution_id)

    # ============================================================================
    # Recovery
    # ============================================================================

    async def read_execution(self, execution_id: str) -> Optional[Tuple[Execution, WorkflowDefinition]]:
        """Read a persisted execution without taking it into memory."""
        if not self.database:
            return None

        record = await self.database.get_execution(execution_id)
        if record is None:
            return None

        execution = Execution(
            id=record.id,
            workflow_id=record.workflow_id,
            workflow_version=record.workflow_version,
            user_id=record.user_id,
            trigger_type=TriggerType(record.trigger_type),
            status=ExecutionStatus(record.status),
            trigger_payload=record.trigger_payload or {},
            variables=record.variables or {},
            outputs=record.outputs or {},
            error=record.error,
            created_at=record.created_at.timestamp() if record.created_at else time.time(),
            started_at=record.started_at,
            completed_at=record.completed_at,
            duration=record.duration,
        )
        for node_record in await self.database.get_node_states(execution_id):
            state = NodeState(
                node_id=node_record.node_id,
                node_type=node_record.node_type,
                name=node_record.name,
                status=NodeStatus(node_record.status),
                input=node_record.input,
                output=node_record.output,
                error=NodeFailure.from_dict(node_record.error) if node_record.error else None,
                started_at=node_record.started_at,
                completed_at=node_record.completed_at,
                retry_count=node_record.retry_count,
                final=node_record.final,
            )
            execution.node_states[state.node_id] = state

        definition = WorkflowDefinition.model_validate(record.definition)
        # Nodes the snapshot knows about but whose rows never landed start over
        for node in definition.nodes:
            execution.node_states.setdefault(
                node.id, NodeState(node_id=node.id, node_type=node.type, name=node.name)
            )
        return execution, definition

    async def load_execution(self, execution_id: str) -> Optional[Execution]:
        """Rehydrate an execution (and its definition snapshot) from the database."""
        if execution_id in self._executions:
            return self._executions[execution_id]

        loaded = await self.read_execution(execution_id)
        if loaded is None:
            return None
        execution, definition = loaded

        persisted_logs = await self.database.get_execution_logs(execution_id)
        self._executions[execution_id] = execution
        self._definitions[execution_id] = definition
        self._logs[execution_id] = [
            ExecutionLogEntry.from_dict(log.model_dump()) for log in persisted_logs
        ]
        if persisted_logs:
            self._log_sequence[execution_id] = max(log.sequence for log in persisted_logs)
            self._last_log_timestamp[execution_id] = max(log.timestamp for log in persisted_logs)
        self._metrics.setdefault(execution_id, [])

        logger.info("Execution rehydrated", execution_id=execution_id, status=execution.status.value)
        return execution

    async def reset_node(self, execution_id: str, node_id: str) -> None:
        """Return an interrupted RUNNING node to PENDING before a resumed run.

        This is the only way back to PENDING and is used exclusively by
        recovery, where the previous owner is known to be gone.
        """
        async with self._lock(execution_id):
            state = self.get_node_state(execution_id, node_id)
            state.status = NodeStatus.PENDING
            state.started_at = None
            state.completed_at = None
            state.error = None
            if self.database:
                await self.database.save_node_state(execution_id, state.to_dict())


def make_log_entry(execution_id: str, message: str, level: LogLevel = LogLevel.INFO,
                   node_id: Optional[str] = None, source: LogSource = LogSource.SYSTEM,
                   category: Optional[str] = None, **details) -> ExecutionLogEntry:
    return ExecutionLogEntry(
        execution_id=execution_id,
        node_id=node_id,
        level=level,
        message=message,
        details=details,
        source=source,
        category=category,
    )
