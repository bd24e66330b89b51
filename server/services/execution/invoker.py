"""Node Invoker - runs one node implementation and returns a typed outcome.

The invoker never raises for node-level problems. Every failure mode is
turned into a ``NodeFailure``:

    type not registered / credential refused   CONFIGURATION (not retried)
    deadline exceeded                          TIMEOUT
    implementation raised                      RUNTIME (fatal if NodeError(fatal=True))
    implementation returned a NodeFailure      passed through
"""

import asyncio
import time
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import TYPE_CHECKING, Any, Callable, Dict, Mapping, Optional

from core.config import Settings
from core.logging import get_logger
from models.workflow import NodeSpec
from services.execution.exceptions import CredentialError, NodeError, NodeNotFoundError
from services.execution.models import ErrorKind, LogLevel, NodeFailure
from services.execution.registry import ExecutionMode, NodeResolver, RegisteredNode

if TYPE_CHECKING:
    from services.credentials import CredentialResolver

logger = get_logger(__name__)

LogCallback = Callable[[str, LogLevel, str, Dict[str, Any]], None]


def _on_event_loop(loop: asyncio.AbstractEventLoop) -> bool:
    try:
        return asyncio.get_running_loop() is loop
    except RuntimeError:
        return False


@dataclass
class NodeContext:
    """Everything a node implementation may see of its execution.

    Variables and the trigger payload are read-only views. ``cancelled``
    becomes true when the execution is cancelled or halted; long-running
    implementations should check it (or use :meth:`sleep`) and stop early.
    """
    execution_id: str
    workflow_id: str
    node_id: str
    node_type: str
    user_id: Optional[str] = None
    inputs: Dict[str, Any] = field(default_factory=dict)
    variables: Mapping[str, Any] = field(default_factory=dict)
    trigger: Mapping[str, Any] = field(default_factory=dict)
    credentials: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    cancel_event: asyncio.Event = field(default_factory=asyncio.Event)
    log_callback: Optional[LogCallback] = None
    loop: Optional[asyncio.AbstractEventLoop] = None

    def __post_init__(self):
        self.variables = MappingProxyType(dict(self.variables))
        self.trigger = MappingProxyType(dict(self.trigger))

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()

    def log(self, message: str, level: LogLevel = LogLevel.INFO, **details) -> None:
        """Append a node log line. Safe to call from SYNC handlers' worker threads."""
        if self.log_callback is None:
            return
        level = LogLevel(level)
        if self.loop is not None and not _on_event_loop(self.loop):
            self.loop.call_soon_threadsafe(self.log_callback, self.node_id, level, message, details)
        else:
            self.log_callback(self.node_id, level, message, details)

    async def sleep(self, seconds: float) -> bool:
        """Sleep unless cancelled first. Returns True when cancelled."""
        try:
            await asyncio.wait_for(self.cancel_event.wait(), timeout=seconds)
            return True
        except asyncio.TimeoutError:
            return False


@dataclass
class InvocationOutcome:
    output: Any = None
    failure: Optional[NodeFailure] = None
    duration: float = 0.0  # ms

    @property
    def ok(self) -> bool:
        return self.failure is None


def _discard_result(task: asyncio.Task) -> None:
    if not task.cancelled():
        task.exception()


class NodeInvoker:
    """Executes nodes through the registry with credentials and deadlines."""

    def __init__(self, registry: NodeResolver, credentials: "CredentialResolver", settings: Settings):
        self.registry = registry
        self.credentials = credentials
        self.settings = settings

    def timeout_for(self, node: NodeSpec, registered: RegisteredNode) -> int:
        """Deadline in ms: node override, then implementation, then engine default."""
        return node.timeout or registered.timeout or self.settings.node_default_timeout

    async def invoke(self, node: NodeSpec, parameters: Dict[str, Any],
                     context: NodeContext) -> InvocationOutcome:
        start_time = time.time()

        try:
            registered = self.registry.resolve(node.type)
        except NodeNotFoundError as e:
            return self._outcome(start_time, failure=NodeFailure(
                ErrorKind.CONFIGURATION, str(e), details={"node_type": node.type}
            ))

        failure = await self._resolve_credentials(node, context)
        if failure:
            return self._outcome(start_time, failure=failure)

        timeout_ms = self.timeout_for(node, registered)
        context.loop = context.loop or asyncio.get_running_loop()
        task = asyncio.ensure_future(self._run(registered, parameters, context))

        done, _ = await asyncio.wait({task}, timeout=timeout_ms / 1000)
        if not done:
            # Report the deadline now; the abandoned call may keep running.
            task.cancel()
            task.add_done_callback(_discard_result)
            logger.warning("Node timed out", node_id=node.id, node_type=node.type, timeout_ms=timeout_ms)
            return self._outcome(start_time, failure=NodeFailure(
                ErrorKind.TIMEOUT, f"Node {node.id} exceeded its {timeout_ms}ms deadline",
                details={"timeout": timeout_ms}
            ))

        try:
            result = task.result()
        except NodeError as e:
            return self._outcome(start_time, failure=NodeFailure(
                ErrorKind.RUNTIME, str(e), fatal=e.fatal, details=e.details
            ))
        except Exception as e:
            logger.error("Node implementation raised", node_id=node.id, node_type=node.type, error=str(e))
            return self._outcome(start_time, failure=NodeFailure(
                ErrorKind.RUNTIME, str(e) or type(e).__name__,
                details={"exception": type(e).__name__}
            ))

        if isinstance(result, NodeFailure):
            return self._outcome(start_time, failure=result)
        return self._outcome(start_time, output=result)

    async def _resolve_credentials(self, node: NodeSpec, context: NodeContext) -> Optional[NodeFailure]:
        for slot, credential_id in node.credentials.items():
            try:
                context.credentials[slot] = await self.credentials.resolve(credential_id, context.user_id)
            except CredentialError as e:
                logger.warning("Credential resolution failed", node_id=node.id,
                               credential_id=credential_id, reason=type(e).__name__)
                return NodeFailure(
                    ErrorKind.CONFIGURATION, str(e),
                    details={"credential_id": credential_id, "slot": slot, "reason": type(e).__name__}
                )
            except Exception as e:
                logger.error("Credential resolver raised", node_id=node.id,
                             credential_id=credential_id, error=str(e))
                return NodeFailure(
                    ErrorKind.CONFIGURATION, f"Credential resolution failed: {e}",
                    details={"credential_id": credential_id, "slot": slot, "reason": type(e).__name__}
                )
        return None

    async def _run(self, registered: RegisteredNode, parameters: Dict[str, Any],
                   context: NodeContext) -> Any:
        handler = registered.handler

        if registered.mode == ExecutionMode.SYNC:
            return await asyncio.to_thread(handler, parameters, context)

        if registered.mode == ExecutionMode.ASYNC:
            return await handler(parameters, context)

        items = []
        async for chunk in handler(parameters, context):
            items.append(chunk)
            context.log(f"Stream chunk {len(items)}", level=LogLevel.DEBUG, chunk=chunk)
        return {"items": items}

    @staticmethod
    def _outcome(start_time: float, output: Any = None,
                 failure: Optional[NodeFailure] = None) -> InvocationOutcome:
        return InvocationOutcome(
            output=output,
            failure=failure,
            duration=round((time.time() - start_time) * 1000, 2),
        )
