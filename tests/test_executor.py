"""Tests for scheduling, retries, control signals and recovery."""

import asyncio

import pytest

from services.execution import (
    EventType,
    ExecutionStatus,
    NodeError,
    NodeStatus,
    TriggerType,
    WorkflowExecutor,
)
from conftest import make_workflow


async def wait_until(predicate, timeout=2.0):
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not reached")
        await asyncio.sleep(0.01)


@pytest.fixture
def gate(engine):
    """Registers ``blocking``: waits for the gate (or the stop signal) then succeeds."""
    release = asyncio.Event()

    async def blocking(parameters, context):
        waiter = asyncio.ensure_future(release.wait())
        stopper = asyncio.ensure_future(context.cancel_event.wait())
        try:
            await asyncio.wait({waiter, stopper}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            waiter.cancel()
            stopper.cancel()
        return {"released": release.is_set(), "node": context.node_id}

    engine.registry.register("blocking", blocking)
    return release


def flaky(failures):
    """Node that fails ``failures`` times before succeeding; counts attempts."""
    attempts = []

    async def handler(parameters, context):
        attempts.append(context.node_id)
        if len(attempts) <= failures:
            raise NodeError(f"attempt {len(attempts)} failed")
        return {"attempts": len(attempts)}

    return handler, attempts


RETRY_3_EXPONENTIAL = {"maxRetries": 3, "backoffType": "EXPONENTIAL",
                       "initialDelay": 1000, "multiplier": 2}


class TestScheduling:

    @pytest.mark.asyncio
    async def test_linear_chain_passes_outputs(self, engine):
        definition = make_workflow(
            [{"id": "start", "type": "start", "config": {"initialData": {"n": 1}}},
             {"id": "echo", "type": "echo", "config": {"n": "{{ start.n }}"}}],
            [("start", "echo")],
        )

        execution = await engine.run(definition, trigger_payload={"source": "test"})

        assert execution.status == ExecutionStatus.SUCCESS
        echo = engine.node(execution, "echo")
        assert echo.input == {"n": 1}
        assert echo.output["inputs"] == {"start": {"n": 1, "source": "test"}}

    @pytest.mark.asyncio
    async def test_diamond_runs_branches_concurrently(self, engine):
        started = []
        both_started = asyncio.Event()

        async def branch(parameters, context):
            started.append(context.node_id)
            if len(started) == 2:
                both_started.set()
            # Each branch only finishes once the other has started
            await asyncio.wait_for(both_started.wait(), timeout=2)
            return {"branch": context.node_id}

        engine.registry.register("branch", branch)
        definition = make_workflow(
            [{"id": "A", "type": "noOp"}, {"id": "B", "type": "branch"},
             {"id": "C", "type": "branch"}, {"id": "D", "type": "echo"}],
            [("A", "B"), ("A", "C"), ("B", "D"), ("C", "D")],
        )

        execution = await engine.run(definition)

        assert execution.status == ExecutionStatus.SUCCESS
        assert sorted(started) == ["B", "C"]
        d = engine.node(execution, "D")
        assert set(d.output["inputs"]) == {"B", "C"}
        assert d.started_at >= max(engine.node(execution, n).completed_at for n in "BC")

    @pytest.mark.asyncio
    async def test_entry_nodes_dispatch_in_first_pass(self, engine, gate):
        definition = make_workflow(
            [{"id": "x", "type": "blocking"}, {"id": "y", "type": "blocking"},
             {"id": "z", "type": "echo"}],
            [("x", "z")],
        )
        execution = await engine.executor.create_execution(definition)
        scheduler = engine.executor.get_scheduler(execution.id)
        await engine.store.transition_execution(execution.id, ExecutionStatus.PENDING,
                                                ExecutionStatus.RUNNING)

        first = await scheduler.evaluate()
        second = await scheduler.evaluate()

        assert first == ["x", "y"]
        assert second == []

        gate.set()
        finished = await asyncio.wait_for(engine.executor.start(execution.id), timeout=5)
        assert finished.status == ExecutionStatus.SUCCESS
        assert all(s.retry_count == 0 for s in finished.node_states.values())

    @pytest.mark.asyncio
    async def test_unresolved_reference_fails_node(self, engine):
        definition = make_workflow(
            [{"id": "a", "type": "echo", "config": {"value": "{{ $vars.missing }}"}}],
        )

        execution = await engine.run(definition)

        assert execution.status == ExecutionStatus.FAILED
        assert execution.error["kind"] == "VALIDATION"
        assert execution.error["node_id"] == "a"

    @pytest.mark.asyncio
    async def test_events_end_with_completion(self, engine):
        definition = make_workflow([{"id": "a", "type": "noOp"}, {"id": "b", "type": "noOp"}],
                                   [("a", "b")])
        execution = await engine.executor.create_execution(definition)
        subscription = engine.bus.subscribe(execution.id, since_sequence=0)

        engine.executor.start(execution.id)
        events = [event async for event in subscription]

        sequences = [event.sequence for event in events]
        assert sequences == sorted(sequences)
        assert len(set(sequences)) == len(sequences)
        assert events[-1].type == EventType.EXECUTION_COMPLETED
        assert events[-1].status == "SUCCESS"


class TestRetries:

    @pytest.mark.asyncio
    async def test_retry_then_succeed(self, engine, recording_sleep):
        handler, attempts = flaky(failures=2)
        engine.registry.register("flaky", handler)
        definition = make_workflow([{"id": "a", "type": "flaky", "retryPolicy": RETRY_3_EXPONENTIAL}])

        execution = await engine.run(definition)

        assert execution.status == ExecutionStatus.SUCCESS
        assert len(attempts) == 3
        assert recording_sleep.delays == [1.0, 2.0]
        state = engine.node(execution, "a")
        assert state.retry_count == 2
        assert state.error is None

    @pytest.mark.asyncio
    async def test_exponential_backoff_then_halt(self, engine, recording_sleep):
        handler, attempts = flaky(failures=10)
        engine.registry.register("flaky", handler)
        definition = make_workflow(
            [{"id": "a", "type": "flaky", "retryPolicy": RETRY_3_EXPONENTIAL},
             {"id": "b", "type": "echo"}],
            [("a", "b")],
        )

        execution = await engine.run(definition)

        assert recording_sleep.delays == [1.0, 2.0, 4.0]
        assert len(attempts) == 4
        assert execution.status == ExecutionStatus.FAILED
        assert execution.error == {"message": "attempt 4 failed", "kind": "RUNTIME", "node_id": "a"}
        a = engine.node(execution, "a")
        assert a.status == NodeStatus.FAILED and a.final
        assert a.retry_count == 3
        assert engine.node(execution, "b").status == NodeStatus.SKIPPED

    @pytest.mark.asyncio
    async def test_workflow_default_retry_policy(self, engine, recording_sleep):
        handler, attempts = flaky(failures=1)
        engine.registry.register("flaky", handler)
        definition = make_workflow(
            [{"id": "a", "type": "flaky"}],
            settings={"retryPolicy": {"enabled": True, "maxRetries": 2, "retryDelay": 250}},
        )

        execution = await engine.run(definition)

        assert execution.status == ExecutionStatus.SUCCESS
        assert recording_sleep.delays == [0.25]

    @pytest.mark.asyncio
    async def test_fatal_error_is_not_retried(self, engine, recording_sleep):
        definition = make_workflow([{"id": "a", "type": "fatal", "retryPolicy": RETRY_3_EXPONENTIAL}])

        execution = await engine.run(definition)

        assert execution.status == ExecutionStatus.FAILED
        assert recording_sleep.delays == []
        assert engine.node(execution, "a").retry_count == 0

    @pytest.mark.asyncio
    async def test_retry_metrics_recorded(self, engine):
        handler, _ = flaky(failures=1)
        engine.registry.register("flaky", handler)
        definition = make_workflow([{"id": "a", "type": "flaky", "retryPolicy": {"maxRetries": 1}}])

        execution = await engine.run(definition)

        metrics = {m.name: m for m in await engine.store.get_metrics(execution.id)}
        assert metrics["node.retries"].value == 1
        assert metrics["node.duration"].unit == "ms"
        assert metrics["execution.nodes.succeeded"].value == 1
        assert "execution.duration" in metrics


class TestErrorPolicy:

    @pytest.mark.asyncio
    async def test_failure_skips_dependents(self, engine):
        definition = make_workflow(
            [{"id": "a", "type": "fatal"}, {"id": "b", "type": "echo"}, {"id": "c", "type": "echo"}],
            [("a", "b"), ("b", "c")],
        )

        execution = await engine.run(definition)

        assert execution.status == ExecutionStatus.FAILED
        assert execution.error["node_id"] == "a"
        for node_id in "bc":
            state = engine.node(execution, node_id)
            assert state.status == NodeStatus.SKIPPED
            assert state.started_at is None

    @pytest.mark.asyncio
    async def test_continue_on_error(self, engine):
        definition = make_workflow(
            [{"id": "a", "type": "fatal", "onError": "continue"},
             {"id": "b", "type": "echo", "onError": "continue"},
             {"id": "c", "type": "echo"}],
            [("a", "b"), ("a", "c")],
        )

        execution = await engine.run(definition)

        assert execution.status == ExecutionStatus.SUCCESS
        assert execution.error is None
        b = engine.node(execution, "b")
        assert b.status == NodeStatus.SUCCESS
        assert b.output["inputs"]["a"]["status"] == "FAILED"
        assert b.output["inputs"]["a"]["error"]["message"] == "fatal"
        assert engine.node(execution, "c").status == NodeStatus.SKIPPED

    @pytest.mark.asyncio
    async def test_credential_resolver_error_fails_only_the_node(self, engine, monkeypatch):
        async def unreachable(credential_id, user_id=None):
            raise ConnectionError("vault unreachable")

        monkeypatch.setattr(engine.credentials, "resolve", unreachable)
        definition = make_workflow(
            [{"id": "a", "type": "echo", "onError": "continue", "credentials": {"auth": "vault"}},
             {"id": "b", "type": "echo", "onError": "continue"}],
            [("a", "b")],
        )

        execution = await engine.run(definition)

        assert execution.status == ExecutionStatus.SUCCESS
        a = engine.node(execution, "a")
        assert a.status == NodeStatus.FAILED and a.final
        assert a.error.kind.value == "CONFIGURATION"
        assert a.error.details["reason"] == "ConnectionError"
        b = engine.node(execution, "b")
        assert b.status == NodeStatus.SUCCESS
        assert b.output["inputs"]["a"]["status"] == "FAILED"

    @pytest.mark.asyncio
    async def test_unregistered_node_type(self, engine):
        definition = make_workflow([{"id": "a", "type": "doesNotExist"}])

        execution = await engine.run(definition)

        assert execution.status == ExecutionStatus.FAILED
        assert execution.error["kind"] == "CONFIGURATION"


class TestControl:

    @pytest.mark.asyncio
    async def test_cancel_with_running_and_pending_nodes(self, engine, gate):
        definition = make_workflow(
            [{"id": "r1", "type": "blocking"}, {"id": "r2", "type": "blocking"},
             {"id": "p1", "type": "echo"}, {"id": "p2", "type": "echo"}, {"id": "p3", "type": "echo"}],
            [("r1", "p1"), ("r2", "p2"), ("p1", "p3"), ("p2", "p3")],
        )
        execution = await engine.executor.create_execution(definition)
        run = engine.executor.start(execution.id)
        await wait_until(lambda: all(
            execution.node_states[n].status == NodeStatus.RUNNING for n in ("r1", "r2")
        ))

        assert await engine.executor.cancel_execution(execution.id)
        finished = await asyncio.wait_for(run, timeout=5)

        assert finished.status == ExecutionStatus.CANCELLED
        for node_id in ("r1", "r2"):
            assert finished.node_states[node_id].status in (NodeStatus.SUCCESS, NodeStatus.RUNNING)
        for node_id in ("p1", "p2", "p3"):
            state = finished.node_states[node_id]
            assert state.status == NodeStatus.PENDING
            assert state.started_at is None

    @pytest.mark.asyncio
    async def test_pause_holds_dispatch_until_resume(self, engine, gate):
        definition = make_workflow(
            [{"id": "a", "type": "blocking"}, {"id": "b", "type": "echo"}],
            [("a", "b")],
        )
        execution = await engine.executor.create_execution(definition)
        run = engine.executor.start(execution.id)
        await wait_until(lambda: execution.node_states["a"].status == NodeStatus.RUNNING)

        assert await engine.executor.pause_execution(execution.id)
        assert not await engine.executor.pause_execution(execution.id)
        gate.set()
        await wait_until(lambda: execution.node_states["a"].status == NodeStatus.SUCCESS)
        await asyncio.sleep(0.05)

        assert execution.status == ExecutionStatus.PAUSED
        assert execution.node_states["b"].status == NodeStatus.PENDING

        assert await engine.executor.resume_execution(execution.id)
        finished = await asyncio.wait_for(run, timeout=5)
        assert finished.status == ExecutionStatus.SUCCESS
        assert finished.node_states["b"].status == NodeStatus.SUCCESS

    @pytest.mark.asyncio
    async def test_cancel_queued_execution_finalizes(self, engine):
        completed = []

        async def on_complete(execution):
            completed.append(execution.id)

        engine.executor.on_complete(on_complete)
        definition = make_workflow([{"id": "a", "type": "echo"}])
        execution = await engine.executor.create_execution(definition)

        assert await engine.executor.cancel_execution(execution.id)
        await wait_until(lambda: completed == [execution.id])

        assert execution.status == ExecutionStatus.CANCELLED
        assert execution.node_states["a"].status == NodeStatus.PENDING


    @pytest.mark.asyncio
    async def test_halt_releases_retry_held_by_pause(self, engine):
        release = {"a": asyncio.Event(), "b": asyncio.Event()}

        async def gated_failure(parameters, context):
            await release[context.node_id].wait()
            raise NodeError(f"{context.node_id} failed", fatal=parameters.get("fatal", False))

        engine.registry.register("gatedFailure", gated_failure)
        definition = make_workflow([
            {"id": "a", "type": "gatedFailure", "retryPolicy": RETRY_3_EXPONENTIAL},
            {"id": "b", "type": "gatedFailure", "config": {"fatal": True}},
        ])
        execution = await engine.executor.create_execution(definition)
        run = engine.executor.start(execution.id)
        await wait_until(lambda: all(
            execution.node_states[n].status == NodeStatus.RUNNING for n in ("a", "b")
        ))
        assert await engine.executor.pause_execution(execution.id)

        # a fails and waits to retry behind the pause
        release["a"].set()
        await wait_until(lambda: execution.node_states["a"].status == NodeStatus.FAILED)
        await asyncio.sleep(0.05)
        assert not execution.node_states["a"].final

        loop = asyncio.get_running_loop()
        halted_at = loop.time()
        release["b"].set()
        finished = await asyncio.wait_for(run, timeout=5)

        assert loop.time() - halted_at < engine.settings.cancel_grace_period
        assert finished.status == ExecutionStatus.FAILED
        assert finished.error["node_id"] == "b"
        a = finished.node_states["a"]
        assert a.status == NodeStatus.FAILED and a.final
        assert a.retry_count == 0


class TestTriggerSelection:

    @pytest.mark.asyncio
    async def test_only_fired_trigger_branch_runs(self, engine):
        definition = make_workflow(
            [{"id": "hook", "type": "webhookTrigger", "config": {"path": "orders"}},
             {"id": "cron", "type": "cronScheduler", "config": {"cronExpression": "0 * * * *"}},
             {"id": "on_hook", "type": "echo"},
             {"id": "hourly_report", "type": "echo"},
             {"id": "audit", "type": "echo"}],
            [("hook", "on_hook"), ("cron", "hourly_report"), ("hook", "audit"), ("cron", "audit")],
        )

        execution = await engine.run(definition, trigger_type=TriggerType.WEBHOOK,
                                     trigger_payload={"node_id": "hook", "body": "x"})

        assert execution.status == ExecutionStatus.SUCCESS
        for node_id in ("cron", "hourly_report"):
            state = engine.node(execution, node_id)
            assert state.status == NodeStatus.SKIPPED
            assert state.started_at is None
        assert engine.node(execution, "hook").output == {"node_id": "hook", "body": "x"}
        assert engine.node(execution, "on_hook").status == NodeStatus.SUCCESS
        audit = engine.node(execution, "audit")
        assert audit.status == NodeStatus.SUCCESS
        assert set(audit.output["inputs"]) == {"hook"}

    @pytest.mark.asyncio
    async def test_manual_run_starts_every_trigger(self, engine):
        definition = make_workflow(
            [{"id": "hook", "type": "webhookTrigger"},
             {"id": "cron", "type": "cronScheduler", "config": {"cronExpression": "0 * * * *"}},
             {"id": "on_hook", "type": "echo"},
             {"id": "hourly_report", "type": "echo"}],
            [("hook", "on_hook"), ("cron", "hourly_report")],
        )

        execution = await engine.run(definition)

        assert execution.status == ExecutionStatus.SUCCESS
        assert all(state.status == NodeStatus.SUCCESS for state in execution.node_states.values())



class TestTimeouts:

    @pytest.mark.asyncio
    async def test_node_timeout(self, engine):
        async def slow(parameters, context):
            await asyncio.sleep(5)

        engine.registry.register("slow", slow)
        definition = make_workflow([{"id": "a", "type": "slow", "timeout": 50}])

        execution = await engine.run(definition)

        assert execution.status == ExecutionStatus.FAILED
        assert execution.error["kind"] == "TIMEOUT"
        assert engine.node(execution, "a").error.details == {"timeout": 50}

    @pytest.mark.asyncio
    async def test_workflow_timeout(self, engine, gate):
        definition = make_workflow(
            [{"id": "a", "type": "blocking"}, {"id": "b", "type": "echo"}],
            [("a", "b")],
            settings={"timeout": 100},
        )

        execution = await engine.run(definition)

        assert execution.status == ExecutionStatus.FAILED
        assert execution.error["kind"] == "TIMEOUT"
        assert execution.error["node_id"] is None
        assert engine.node(execution, "a").output == {"released": False, "node": "a"}
        assert engine.node(execution, "b").status == NodeStatus.PENDING


class TestLogs:

    @pytest.mark.asyncio
    async def test_timestamps_non_decreasing(self, engine):
        handler, _ = flaky(failures=1)
        engine.registry.register("flaky", handler)
        definition = make_workflow(
            [{"id": "a", "type": "console", "config": {"message": "hello"}},
             {"id": "b", "type": "flaky", "retryPolicy": {"maxRetries": 1}},
             {"id": "c", "type": "echo"}],
            [("a", "c"), ("b", "c")],
        )

        execution = await engine.run(definition)
        logs = await engine.store.get_logs(execution.id)

        timestamps = [entry.timestamp for entry in logs]
        assert timestamps == sorted(timestamps)
        assert [entry.sequence for entry in logs] == list(range(1, len(logs) + 1))
        categories = {entry.category for entry in logs}
        assert {"execution", "node", "retry"} <= categories
        assert any(entry.message == "hello" and entry.node_id == "a" for entry in logs)


class TestRecovery:

    @pytest.mark.asyncio
    async def test_interrupted_execution_resumes(self, engine):
        definition = make_workflow(
            [{"id": "a", "type": "echo"}, {"id": "b", "type": "echo"}, {"id": "c", "type": "echo"}],
            [("a", "b"), ("b", "c")],
        )
        execution = await engine.executor.create_execution(definition)
        store = engine.store
        await store.transition_execution(execution.id, ExecutionStatus.PENDING, ExecutionStatus.RUNNING)
        await store.compare_and_set_node(execution.id, "a", NodeStatus.PENDING, NodeStatus.RUNNING)
        await store.compare_and_set_node(execution.id, "a", NodeStatus.RUNNING, NodeStatus.SUCCESS,
                                         output={"kept": True})
        await store.compare_and_set_node(execution.id, "b", NodeStatus.PENDING, NodeStatus.RUNNING)

        # Another process picks the execution up after the owner disappears
        survivor = WorkflowExecutor(store, engine.bus, engine.invoker, engine.settings)
        assert not survivor.is_local(execution.id)
        assert await survivor.recover_execution(execution.id)
        finished = await survivor.wait(execution.id, timeout=5)

        assert finished.status == ExecutionStatus.SUCCESS
        assert finished.node_states["a"].output == {"kept": True}
        assert finished.node_states["b"].status == NodeStatus.SUCCESS
        assert not await survivor.recover_execution(execution.id)
