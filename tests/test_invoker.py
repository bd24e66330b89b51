"""Tests for the node registry and invoker."""

import asyncio
import time

import pytest

from models.workflow import NodeSpec
from services.credentials import StaticCredentialResolver
from services.execution import (
    ErrorKind,
    ExecutionMode,
    LogLevel,
    NodeContext,
    NodeError,
    NodeFailure,
    NodeInvoker,
    NodeNotFoundError,
    NodeRegistry,
)


def _context(node_id="n1", node_type="test", **kwargs):
    return NodeContext(execution_id="exec-1", workflow_id="wf-1", node_id=node_id,
                       node_type=node_type, **kwargs)


@pytest.fixture
def credentials():
    resolver = StaticCredentialResolver()
    resolver.add("api", {"token": "secret"})
    resolver.add("mine", {"token": "private"}, owner_id="alice")
    resolver.add("old", {"token": "stale"}, expires_at=time.time() - 10)
    return resolver


@pytest.fixture
def node_registry():
    return NodeRegistry()


@pytest.fixture
def invoker(node_registry, credentials, settings):
    return NodeInvoker(node_registry, credentials, settings)


class TestRegistry:

    def test_mode_detection(self, node_registry):
        def sync_handler(parameters, context):
            return {}

        async def async_handler(parameters, context):
            return {}

        async def stream_handler(parameters, context):
            yield {}

        assert node_registry.register("a", sync_handler).mode == ExecutionMode.SYNC
        assert node_registry.register("b", async_handler).mode == ExecutionMode.ASYNC
        assert node_registry.register("c", stream_handler).mode == ExecutionMode.STREAM

    def test_decorator_and_resolve(self, node_registry):
        @node_registry.node("greet", timeout=500, description="Says hello")
        async def greet(parameters, context):
            return {"hello": parameters.get("name")}

        registered = node_registry.resolve("greet")
        assert registered.handler is greet
        assert registered.timeout == 500
        assert "greet" in node_registry
        assert node_registry.describe()[0]["description"] == "Says hello"

    def test_unknown_type(self, node_registry):
        with pytest.raises(NodeNotFoundError):
            node_registry.resolve("nope")


class TestInvoke:

    @pytest.mark.asyncio
    async def test_unregistered_type_is_configuration_failure(self, invoker):
        outcome = await invoker.invoke(NodeSpec(id="n1", type="missing"), {}, _context())

        assert not outcome.ok
        assert outcome.failure.kind == ErrorKind.CONFIGURATION
        assert not outcome.failure.retryable

    @pytest.mark.asyncio
    async def test_async_handler_output(self, invoker, node_registry):
        async def handler(parameters, context):
            return {"doubled": parameters["value"] * 2, "node": context.node_id}

        node_registry.register("double", handler)
        outcome = await invoker.invoke(NodeSpec(id="n1", type="double"), {"value": 21}, _context())

        assert outcome.ok
        assert outcome.output == {"doubled": 42, "node": "n1"}
        assert outcome.duration >= 0

    @pytest.mark.asyncio
    async def test_sync_handler_runs_off_loop_and_can_log(self, invoker, node_registry):
        lines = []

        def handler(parameters, context):
            context.log("working", level=LogLevel.INFO, step=1)
            return {"ok": True}

        node_registry.register("blocking", handler)
        context = _context(log_callback=lambda node_id, level, message, details:
                           lines.append((node_id, level, message, details)))

        outcome = await invoker.invoke(NodeSpec(id="n1", type="blocking"), {}, context)
        await asyncio.sleep(0)

        assert outcome.output == {"ok": True}
        assert lines == [("n1", LogLevel.INFO, "working", {"step": 1})]

    @pytest.mark.asyncio
    async def test_stream_handler_collects_items(self, invoker, node_registry):
        async def handler(parameters, context):
            for i in range(3):
                yield {"chunk": i}

        node_registry.register("chunks", handler)
        outcome = await invoker.invoke(NodeSpec(id="n1", type="chunks"), {}, _context())

        assert outcome.output == {"items": [{"chunk": 0}, {"chunk": 1}, {"chunk": 2}]}

    @pytest.mark.asyncio
    async def test_node_error_is_runtime_failure(self, invoker, node_registry):
        async def retryable(parameters, context):
            raise NodeError("upstream 503", details={"status": 503})

        async def fatal(parameters, context):
            raise NodeError("bad input", fatal=True)

        node_registry.register("retryable", retryable)
        node_registry.register("fatal", fatal)

        soft = await invoker.invoke(NodeSpec(id="n1", type="retryable"), {}, _context())
        hard = await invoker.invoke(NodeSpec(id="n2", type="fatal"), {}, _context())

        assert soft.failure.kind == ErrorKind.RUNTIME
        assert soft.failure.retryable
        assert soft.failure.details == {"status": 503}
        assert hard.failure.fatal
        assert not hard.failure.retryable

    @pytest.mark.asyncio
    async def test_unexpected_exception_is_runtime_failure(self, invoker, node_registry):
        async def handler(parameters, context):
            raise KeyError("missing")

        node_registry.register("broken", handler)
        outcome = await invoker.invoke(NodeSpec(id="n1", type="broken"), {}, _context())

        assert outcome.failure.kind == ErrorKind.RUNTIME
        assert outcome.failure.details == {"exception": "KeyError"}

    @pytest.mark.asyncio
    async def test_returned_failure_passes_through(self, invoker, node_registry):
        async def handler(parameters, context):
            return NodeFailure(ErrorKind.CONFIGURATION, "missing url")

        node_registry.register("returns_failure", handler)
        outcome = await invoker.invoke(NodeSpec(id="n1", type="returns_failure"), {}, _context())

        assert outcome.failure.message == "missing url"

    @pytest.mark.asyncio
    async def test_deadline_exceeded(self, invoker, node_registry):
        async def slow(parameters, context):
            await asyncio.sleep(5)

        node_registry.register("slow", slow)
        outcome = await invoker.invoke(NodeSpec(id="n1", type="slow", timeout=50), {}, _context())

        assert outcome.failure.kind == ErrorKind.TIMEOUT
        assert outcome.failure.retryable
        assert outcome.failure.details == {"timeout": 50}
        assert outcome.duration < 5000

    def test_timeout_precedence(self, invoker, node_registry, settings):
        async def handler(parameters, context):
            return None

        registered = node_registry.register("t", handler, timeout=700)

        assert invoker.timeout_for(NodeSpec(id="n", type="t", timeout=100), registered) == 100
        assert invoker.timeout_for(NodeSpec(id="n", type="t"), registered) == 700
        plain = node_registry.register("u", handler)
        assert invoker.timeout_for(NodeSpec(id="n", type="u"), plain) == settings.node_default_timeout


class TestCredentials:

    @pytest.fixture(autouse=True)
    def register_reader(self, node_registry):
        async def reader(parameters, context):
            return {"token": context.credentials["auth"]["token"]}

        node_registry.register("reader", reader)

    @pytest.mark.asyncio
    async def test_resolved_into_context(self, invoker):
        node = NodeSpec(id="n1", type="reader", credentials={"auth": "api"})

        outcome = await invoker.invoke(node, {}, _context())

        assert outcome.output == {"token": "secret"}

    @pytest.mark.asyncio
    @pytest.mark.parametrize("credential_id,user_id,reason", [
        ("ghost", None, "CredentialNotFound"),
        ("mine", "bob", "CredentialDenied"),
        ("old", None, "CredentialExpired"),
    ])
    async def test_refusals_are_configuration_failures(self, invoker, credential_id, user_id, reason):
        node = NodeSpec(id="n1", type="reader", credentials={"auth": credential_id})

        outcome = await invoker.invoke(node, {}, _context(user_id=user_id))

        assert outcome.failure.kind == ErrorKind.CONFIGURATION
        assert outcome.failure.details["reason"] == reason
        assert not outcome.failure.retryable

    @pytest.mark.asyncio
    async def test_owner_may_use_private_credential(self, invoker):
        node = NodeSpec(id="n1", type="reader", credentials={"auth": "mine"})

        outcome = await invoker.invoke(node, {}, _context(user_id="alice"))

        assert outcome.output == {"token": "private"}

    @pytest.mark.asyncio
    async def test_resolver_error_is_configuration_failure(self, node_registry, settings):
        class UnreachableVault:
            async def resolve(self, credential_id, user_id=None):
                raise ConnectionError("vault unreachable")

        invoker = NodeInvoker(node_registry, UnreachableVault(), settings)
        node = NodeSpec(id="n1", type="reader", credentials={"auth": "api"})

        outcome = await invoker.invoke(node, {}, _context())

        assert outcome.failure.kind == ErrorKind.CONFIGURATION
        assert outcome.failure.details == {"credential_id": "api", "slot": "auth",
                                           "reason": "ConnectionError"}
        assert "vault unreachable" in outcome.failure.message
        assert not outcome.failure.retryable
