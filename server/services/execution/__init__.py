"""Execution engine package.

Workflow execution with:
- Continuous DAG scheduling (asyncio.wait FIRST_COMPLETED)
- Compare-and-set node state machine with retry/backoff
- Pure {{ ... }} expression resolution against context snapshots
- Ordered per-execution events with bounded subscriber queues
- Ownership locks and recovery of interrupted executions
"""

from .models import (
    ExecutionStatus,
    NodeStatus,
    TriggerType,
    ErrorKind,
    LogLevel,
    LogSource,
    MetricType,
    EventType,
    NodeFailure,
    NodeState,
    Execution,
    ExecutionLogEntry,
    ExecutionMetric,
    ExecutionEvent,
)
from .exceptions import (
    ExecutionEngineError,
    WorkflowValidationError,
    WorkflowNotFoundError,
    UnresolvedReferenceError,
    NodeNotFoundError,
    NodeError,
    InvalidTransitionError,
    ExecutionNotFoundError,
    ConcurrencyLimitError,
    CredentialError,
    CredentialNotFound,
    CredentialDenied,
    CredentialExpired,
)
from .registry import NodeRegistry, RegisteredNode, ExecutionMode
from .invoker import NodeInvoker, NodeContext, InvocationOutcome
from .store import ExecutionStateStore
from .events import ExecutionEventBus, Subscription
from .validation import validate_workflow, build_graph, WorkflowGraph
from .scheduler import ExecutionScheduler
from .executor import WorkflowExecutor
from .cache import ExecutionCache
from .recovery import RecoverySweeper

__all__ = [
    # Models
    "ExecutionStatus",
    "NodeStatus",
    "TriggerType",
    "ErrorKind",
    "LogLevel",
    "LogSource",
    "MetricType",
    "EventType",
    "NodeFailure",
    "NodeState",
    "Execution",
    "ExecutionLogEntry",
    "ExecutionMetric",
    "ExecutionEvent",
    # Errors
    "ExecutionEngineError",
    "WorkflowValidationError",
    "WorkflowNotFoundError",
    "UnresolvedReferenceError",
    "NodeNotFoundError",
    "NodeError",
    "InvalidTransitionError",
    "ExecutionNotFoundError",
    "ConcurrencyLimitError",
    "CredentialError",
    "CredentialNotFound",
    "CredentialDenied",
    "CredentialExpired",
    # Nodes
    "NodeRegistry",
    "RegisteredNode",
    "ExecutionMode",
    "NodeInvoker",
    "NodeContext",
    "InvocationOutcome",
    # State and events
    "ExecutionStateStore",
    "ExecutionEventBus",
    "Subscription",
    # Scheduling
    "validate_workflow",
    "build_graph",
    "WorkflowGraph",
    "ExecutionScheduler",
    "WorkflowExecutor",
    # Ownership / recovery
    "ExecutionCache",
    "RecoverySweeper",
]
