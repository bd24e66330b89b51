"""Shared fixtures for the execution engine tests.

Engines are assembled from real components (registry, invoker, state store,
event bus, executor) without a database or cache unless a test asks for
one. Node implementations used by the tests are registered per test.
"""

import asyncio
from typing import Any, Dict, List, Optional

import pytest

from core.config import Settings
from models.workflow import WorkflowDefinition
from services.credentials import StaticCredentialResolver
from services.execution import (
    ExecutionEventBus,
    ExecutionStateStore,
    NodeError,
    NodeInvoker,
    NodeRegistry,
    WorkflowExecutor,
)
from services.handlers import register_builtin_nodes


def make_workflow(nodes: List[Dict[str, Any]], connections: Optional[List] = None,
                  workflow_id: str = "wf-test", **extra) -> WorkflowDefinition:
    """Build a definition; connections may be given as (source, target) tuples."""
    edges = []
    for connection in connections or []:
        if isinstance(connection, tuple):
            edges.append({"source": connection[0], "target": connection[1]})
        else:
            edges.append(connection)
    return WorkflowDefinition.model_validate({
        "id": workflow_id,
        "name": "Test workflow",
        "nodes": nodes,
        "connections": edges,
        **extra,
    })


class RecordingSleep:
    """Stand-in for asyncio.sleep that records retry delays and returns at once."""

    def __init__(self):
        self.delays: List[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)
        await asyncio.sleep(0)


class Engine:
    """One assembled engine instance."""

    def __init__(self, settings: Settings, registry: NodeRegistry, sleep=None, database=None):
        self.settings = settings
        self.registry = registry
        self.credentials = StaticCredentialResolver()
        self.store = ExecutionStateStore(database)
        self.bus = ExecutionEventBus(self.store, database, queue_size=settings.event_queue_size,
                                     history_size=settings.event_history_size)
        self.invoker = NodeInvoker(registry, self.credentials, settings)
        self.executor = WorkflowExecutor(self.store, self.bus, self.invoker, settings,
                                         sleep=sleep or asyncio.sleep)

    async def run(self, definition: WorkflowDefinition, **kwargs):
        return await asyncio.wait_for(self.executor.execute(definition, **kwargs), timeout=10)

    def node(self, execution, node_id: str):
        return execution.node_states[node_id]


@pytest.fixture
def settings():
    return Settings(
        database_url="sqlite+aiosqlite:///:memory:",
        redis_enabled=False,
        node_default_timeout=5000,
        cancel_grace_period=1.0,
        event_queue_size=100,
        event_history_size=500,
    )


@pytest.fixture
def registry():
    """Built-in nodes plus small test node types.

    echo       returns its parameters and upstream inputs
    boom       raises a retryable NodeError
    fatal      raises a fatal NodeError
    """
    registry = register_builtin_nodes(NodeRegistry())

    async def echo(parameters, context):
        return {"node": context.node_id, "params": parameters, "inputs": dict(context.inputs)}

    async def boom(parameters, context):
        raise NodeError(parameters.get("message", "boom"))

    async def fatal(parameters, context):
        raise NodeError(parameters.get("message", "fatal"), fatal=True)

    registry.register("echo", echo)
    registry.register("boom", boom)
    registry.register("fatal", fatal)
    return registry


@pytest.fixture
def recording_sleep():
    return RecordingSleep()


@pytest.fixture
def engine(settings, registry, recording_sleep):
    return Engine(settings, registry, sleep=recording_sleep)
