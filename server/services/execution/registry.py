"""Node Registry - maps node type strings to implementations.

Node implementations are plain callables with the signature
``handler(parameters, context)``. The execution mode is inferred from the
callable unless given explicitly:

    def handler(...)                 SYNC    run in a worker thread
    async def handler(...)           ASYNC   awaited on the event loop
    async def handler(...): yield    STREAM  chunks collected into {"items": [...]}

New node types are added by registering them; the scheduler never changes.
"""

import inspect
from dataclasses import dataclass
from enum import Enum
from functools import partial
from typing import Callable, Dict, List, Optional, Protocol

from core.logging import get_logger
from services.execution.exceptions import NodeNotFoundError

logger = get_logger(__name__)


class ExecutionMode(str, Enum):
    SYNC = "SYNC"
    ASYNC = "ASYNC"
    STREAM = "STREAM"


@dataclass(frozen=True)
class RegisteredNode:
    """A node implementation and how to run it."""
    node_type: str
    handler: Callable
    mode: ExecutionMode
    timeout: Optional[int] = None  # ms, overrides the engine default
    description: str = ""


class NodeResolver(Protocol):
    """What the invoker needs from a registry."""

    def resolve(self, node_type: str) -> RegisteredNode:
        ...


def detect_mode(handler: Callable) -> ExecutionMode:
    target = handler.func if isinstance(handler, partial) else handler
    if inspect.isasyncgenfunction(target):
        return ExecutionMode.STREAM
    if inspect.iscoroutinefunction(target):
        return ExecutionMode.ASYNC
    return ExecutionMode.SYNC


class NodeRegistry:
    """In-process node registry. Read-mostly and shared by every execution."""

    def __init__(self):
        self._nodes: Dict[str, RegisteredNode] = {}

    def register(self, node_type: str, handler: Callable,
                 mode: Optional[ExecutionMode] = None,
                 timeout: Optional[int] = None,
                 description: str = "") -> RegisteredNode:
        if node_type in self._nodes:
            logger.warning("Replacing node implementation", node_type=node_type)

        registered = RegisteredNode(
            node_type=node_type,
            handler=handler,
            mode=mode or detect_mode(handler),
            timeout=timeout,
            description=description,
        )
        self._nodes[node_type] = registered
        logger.debug("Registered node type", node_type=node_type, mode=registered.mode.value)
        return registered

    def node(self, node_type: str, mode: Optional[ExecutionMode] = None,
             timeout: Optional[int] = None, description: str = "") -> Callable:
        """Decorator form of :meth:`register`."""
        def decorator(handler: Callable) -> Callable:
            self.register(node_type, handler, mode=mode, timeout=timeout, description=description)
            return handler
        return decorator

    def unregister(self, node_type: str) -> bool:
        return self._nodes.pop(node_type, None) is not None

    def resolve(self, node_type: str) -> RegisteredNode:
        registered = self._nodes.get(node_type)
        if registered is None:
            raise NodeNotFoundError(node_type)
        return registered

    def __contains__(self, node_type: str) -> bool:
        return node_type in self._nodes

    def types(self) -> List[str]:
        return sorted(self._nodes)

    def describe(self) -> List[Dict[str, object]]:
        return [
            {
                "type": node.node_type,
                "mode": node.mode.value,
                "timeout": node.timeout,
                "description": node.description,
            }
            for node in sorted(self._nodes.values(), key=lambda n: n.node_type)
        ]
