"""Execution engine state models.

All models are plain dataclasses with ``to_dict``/``from_dict`` so they can
be persisted, cached and pushed to subscribers without an ORM in the way.
Timestamps are epoch seconds (``time.time()``); durations are milliseconds.
"""

import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Any, List, Optional

from services.execution.exceptions import InvalidTransitionError


class ExecutionStatus(str, Enum):
    """Execution states.

    State transitions:
        PENDING -> RUNNING -> SUCCESS | FAILED | CANCELLED
        RUNNING <-> PAUSED
        PENDING | PAUSED -> CANCELLED
    """
    PENDING = "PENDING"
    RUNNING = "RUNNING"
    PAUSED = "PAUSED"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"

    @property
    def is_terminal(self) -> bool:
        return self in (ExecutionStatus.SUCCESS, ExecutionStatus.FAILED, ExecutionStatus.CANCELLED)


class NodeStatus(str, Enum):
    """Node states.

    State transitions:
        PENDING -> RUNNING -> SUCCESS
                           -> FAILED -> RUNNING (retry only)
        PENDING -> SKIPPED
    """
    PENDING = "PENDING"
    RUNNING = "RUNNING"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"
    SKIPPED = "SKIPPED"


class TriggerType(str, Enum):
    MANUAL = "MANUAL"
    WEBHOOK = "WEBHOOK"
    SCHEDULE = "SCHEDULE"
    EVENT = "EVENT"


class ErrorKind(str, Enum):
    CONFIGURATION = "CONFIGURATION"  # bad node type/config/credential, never retried
    VALIDATION = "VALIDATION"        # expression resolution failure, never retried
    TIMEOUT = "TIMEOUT"              # retryable
    RUNTIME = "RUNTIME"              # retryable unless fatal
    CANCELLED = "CANCELLED"          # terminal status, not a user-facing failure


class LogLevel(str, Enum):
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARN = "WARN"
    ERROR = "ERROR"
    FATAL = "FATAL"


class LogSource(str, Enum):
    SYSTEM = "SYSTEM"
    NODE = "NODE"
    TRIGGER = "TRIGGER"
    USER = "USER"


class MetricType(str, Enum):
    COUNTER = "COUNTER"
    GAUGE = "GAUGE"
    TIMER = "TIMER"


class EventType(str, Enum):
    NODE_UPDATED = "NODE_UPDATED"
    EXECUTION_UPDATED = "EXECUTION_UPDATED"
    LOG_NEW = "LOG_NEW"
    EXECUTION_COMPLETED = "EXECUTION_COMPLETED"


NODE_TRANSITIONS: Dict[NodeStatus, tuple] = {
    NodeStatus.PENDING: (NodeStatus.RUNNING, NodeStatus.SKIPPED),
    NodeStatus.RUNNING: (NodeStatus.SUCCESS, NodeStatus.FAILED),
    NodeStatus.FAILED: (NodeStatus.RUNNING,),
    NodeStatus.SUCCESS: (),
    NodeStatus.SKIPPED: (),
}

EXECUTION_TRANSITIONS: Dict[ExecutionStatus, tuple] = {
    ExecutionStatus.PENDING: (ExecutionStatus.RUNNING, ExecutionStatus.CANCELLED, ExecutionStatus.FAILED),
    ExecutionStatus.RUNNING: (ExecutionStatus.PAUSED, ExecutionStatus.SUCCESS,
                              ExecutionStatus.FAILED, ExecutionStatus.CANCELLED),
    ExecutionStatus.PAUSED: (ExecutionStatus.RUNNING, ExecutionStatus.CANCELLED, ExecutionStatus.FAILED),
    ExecutionStatus.SUCCESS: (),
    ExecutionStatus.FAILED: (),
    ExecutionStatus.CANCELLED: (),
}


def check_node_transition(node_id: str, current: NodeStatus, target: NodeStatus) -> None:
    if target not in NODE_TRANSITIONS[current]:
        raise InvalidTransitionError(f"node {node_id}", current.value, target.value)


def check_execution_transition(execution_id: str, current: ExecutionStatus,
                               target: ExecutionStatus) -> None:
    if target not in EXECUTION_TRANSITIONS[current]:
        raise InvalidTransitionError(f"execution {execution_id}", current.value, target.value)


@dataclass
class NodeFailure:
    """Typed node failure. Returned by the invoker, never raised."""
    kind: ErrorKind
    message: str
    fatal: bool = False
    details: Dict[str, Any] = field(default_factory=dict)

    @property
    def retryable(self) -> bool:
        if self.fatal:
            return False
        return self.kind in (ErrorKind.TIMEOUT, ErrorKind.RUNTIME)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "message": self.message,
            "fatal": self.fatal,
            "details": self.details,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "NodeFailure":
        return cls(
            kind=ErrorKind(data["kind"]),
            message=data.get("message", ""),
            fatal=data.get("fatal", False),
            details=data.get("details") or {},
        )


@dataclass
class NodeState:
    """Tracks execution state for a single node."""
    node_id: str
    node_type: str
    name: Optional[str] = None
    status: NodeStatus = NodeStatus.PENDING
    input: Optional[Dict[str, Any]] = None
    output: Optional[Any] = None
    error: Optional[NodeFailure] = None
    started_at: Optional[float] = None
    completed_at: Optional[float] = None
    retry_count: int = 0
    final: bool = False  # FAILED with no further retry

    @property
    def is_settled(self) -> bool:
        """SUCCESS, SKIPPED or terminally FAILED."""
        if self.status in (NodeStatus.SUCCESS, NodeStatus.SKIPPED):
            return True
        return self.status == NodeStatus.FAILED and self.final

    @property
    def duration(self) -> Optional[float]:
        if self.started_at is None or self.completed_at is None:
            return None
        return round((self.completed_at - self.started_at) * 1000, 2)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "node_id": self.node_id,
            "node_type": self.node_type,
            "name": self.name,
            "status": self.status.value,
            "input": self.input,
            "output": self.output,
            "error": self.error.to_dict() if self.error else None,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
            "retry_count": self.retry_count,
            "final": self.final,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "NodeState":
        return cls(
            node_id=data["node_id"],
            node_type=data["node_type"],
            name=data.get("name"),
            status=NodeStatus(data["status"]),
            input=data.get("input"),
            output=data.get("output"),
            error=NodeFailure.from_dict(data["error"]) if data.get("error") else None,
            started_at=data.get("started_at"),
            completed_at=data.get("completed_at"),
            retry_count=data.get("retry_count", 0),
            final=data.get("final", False),
        )


@dataclass
class Execution:
    """One run of a workflow definition version."""
    id: str
    workflow_id: str
    workflow_version: int = 1
    user_id: Optional[str] = None
    trigger_type: TriggerType = TriggerType.MANUAL
    status: ExecutionStatus = ExecutionStatus.PENDING
    trigger_payload: Dict[str, Any] = field(default_factory=dict)
    variables: Dict[str, Any] = field(default_factory=dict)
    outputs: Dict[str, Any] = field(default_factory=dict)
    error: Optional[Dict[str, Any]] = None  # {message, kind, node_id}
    node_states: Dict[str, NodeState] = field(default_factory=dict)
    created_at: float = field(default_factory=time.time)
    started_at: Optional[float] = None
    completed_at: Optional[float] = None
    duration: Optional[float] = None  # ms

    @classmethod
    def create(cls, workflow_id: str, workflow_version: int, nodes: List[Any],
               trigger_type: TriggerType = TriggerType.MANUAL,
               trigger_payload: Optional[Dict[str, Any]] = None,
               variables: Optional[Dict[str, Any]] = None,
               user_id: Optional[str] = None) -> "Execution":
        """Factory: one PENDING node state per node of the definition, in order."""
        execution = cls(
            id=str(uuid.uuid4()),
            workflow_id=workflow_id,
            workflow_version=workflow_version,
            user_id=user_id,
            trigger_type=trigger_type,
            trigger_payload=dict(trigger_payload or {}),
            variables=dict(variables or {}),
        )
        for node in nodes:
            execution.node_states[node.id] = NodeState(
                node_id=node.id, node_type=node.type, name=node.name
            )
        return execution

    def count_nodes(self, status: NodeStatus) -> int:
        return sum(1 for state in self.node_states.values() if state.status == status)

    def to_dict(self, include_nodes: bool = True) -> Dict[str, Any]:
        data = {
            "id": self.id,
            "workflow_id": self.workflow_id,
            "workflow_version": self.workflow_version,
            "user_id": self.user_id,
            "trigger_type": self.trigger_type.value,
            "status": self.status.value,
            "trigger_payload": self.trigger_payload,
            "variables": self.variables,
            "outputs": self.outputs,
            "error": self.error,
            "created_at": self.created_at,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
            "duration": self.duration,
        }
        if include_nodes:
            data["node_states"] = [state.to_dict() for state in self.node_states.values()]
        return data

    def to_record(self) -> Dict[str, Any]:
        """Column values for the ``executions`` table."""
        data = self.to_dict(include_nodes=False)
        data.pop("created_at")
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Execution":
        execution = cls(
            id=data["id"],
            workflow_id=data["workflow_id"],
            workflow_version=data.get("workflow_version", 1),
            user_id=data.get("user_id"),
            trigger_type=TriggerType(data.get("trigger_type", TriggerType.MANUAL.value)),
            status=ExecutionStatus(data["status"]),
            trigger_payload=data.get("trigger_payload") or {},
            variables=data.get("variables") or {},
            outputs=data.get("outputs") or {},
            error=data.get("error"),
            created_at=data.get("created_at") or time.time(),
            started_at=data.get("started_at"),
            completed_at=data.get("completed_at"),
            duration=data.get("duration"),
        )
        for node_data in data.get("node_states", []):
            state = NodeState.from_dict(node_data)
            execution.node_states[state.node_id] = state
        return execution


@dataclass
class ExecutionLogEntry:
    """Append-only execution log line."""
    execution_id: str
    message: str
    level: LogLevel = LogLevel.INFO
    node_id: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)
    source: LogSource = LogSource.SYSTEM
    category: Optional[str] = None
    sequence: int = 0
    timestamp: float = field(default_factory=time.time)
    id: str = field(default_factory=lambda: uuid.uuid4().hex)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "execution_id": self.execution_id,
            "node_id": self.node_id,
            "sequence": self.sequence,
            "level": self.level.value,
            "message": self.message,
            "details": self.details,
            "source": self.source.value,
            "category": self.category,
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ExecutionLogEntry":
        return cls(
            id=data["id"],
            execution_id=data["execution_id"],
            node_id=data.get("node_id"),
            sequence=data.get("sequence", 0),
            level=LogLevel(data.get("level", LogLevel.INFO.value)),
            message=data["message"],
            details=data.get("details") or {},
            source=LogSource(data.get("source", LogSource.SYSTEM.value)),
            category=data.get("category"),
            timestamp=data["timestamp"],
        )


@dataclass
class ExecutionMetric:
    execution_id: str
    name: str
    value: float
    metric_type: MetricType
    unit: Optional[str] = None
    node_id: Optional[str] = None
    tags: Dict[str, Any] = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "execution_id": self.execution_id,
            "node_id": self.node_id,
            "name": self.name,
            "value": self.value,
            "metric_type": self.metric_type.value,
            "unit": self.unit,
            "tags": self.tags,
            "timestamp": self.timestamp,
        }


@dataclass
class ExecutionEvent:
    """Ordered event delivered to subscribers of one execution."""
    type: EventType
    execution_id: str
    sequence: int
    node_id: Optional[str] = None
    status: Optional[str] = None
    payload: Dict[str, Any] = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type.value,
            "execution_id": self.execution_id,
            "node_id": self.node_id,
            "status": self.status,
            "sequence": self.sequence,
            "timestamp": self.timestamp,
            "payload": self.payload,
        }
