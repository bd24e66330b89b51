"""HTTP and WebSocket API tests.

The application is exercised without its lifespan: the container's engine
providers are overridden with an in-memory engine built per test.
"""

import asyncio

import httpx
import pytest
import pytest_asyncio
from dependency_injector import providers
from fastapi.testclient import TestClient

from core.container import container
from main import app
from services.triggers import TriggerManager
from services.workflow import WorkflowService
from conftest import make_workflow


@pytest.fixture
def service(engine, settings):
    return WorkflowService(engine.executor, engine.store, engine.bus, settings)


@pytest.fixture
def trigger_manager(service):
    return TriggerManager(service.start_execution)


@pytest.fixture
def overrides(engine, service, trigger_manager):
    with container.workflow_service.override(providers.Object(service)), \
            container.trigger_manager.override(providers.Object(trigger_manager)), \
            container.workflow_executor.override(providers.Object(engine.executor)), \
            container.node_registry.override(providers.Object(engine.registry)):
        yield


@pytest_asyncio.fixture
async def client(overrides):
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


async def wait_finished(service, execution_id):
    return await asyncio.wait_for(service.executor.wait(execution_id), timeout=5)


WORKFLOW = {
    "id": "wf-api",
    "name": "API workflow",
    "nodes": [
        {"id": "start", "type": "start"},
        {"id": "greet", "type": "set", "config": {"values": {"greeting": "hello {{ start.name }}"}}},
    ],
    "connections": [{"source": "start", "target": "greet"}],
}


class TestWorkflowRoutes:

    @pytest.mark.asyncio
    async def test_register_and_fetch(self, client):
        response = await client.post("/api/workflows", json=WORKFLOW)

        assert response.status_code == 200
        assert response.json() == {"success": True, "workflow_id": "wf-api", "version": 1}

        listed = (await client.get("/api/workflows")).json()["workflows"]
        assert listed[0]["id"] == "wf-api"

        fetched = (await client.get("/api/workflows/wf-api", params={"version": 1})).json()
        assert fetched["workflow"]["nodes"][1]["config"]["values"]["greeting"].startswith("hello")

    @pytest.mark.asyncio
    async def test_invalid_definitions(self, client):
        cyclic = {**WORKFLOW, "connections": [{"source": "start", "target": "greet"},
                                              {"source": "greet", "target": "start"}]}
        response = await client.post("/api/workflows", json=cyclic)
        assert response.status_code == 422
        assert response.json()["success"] is False

        malformed = await client.post("/api/workflows", json={"nodes": "nope"})
        assert malformed.status_code == 422
        assert malformed.json()["errors"]

    @pytest.mark.asyncio
    async def test_unknown_workflow(self, client):
        assert (await client.get("/api/workflows/missing")).status_code == 404
        assert (await client.post("/api/workflows/missing/execute")).status_code == 404


class TestExecutionRoutes:

    @pytest.mark.asyncio
    async def test_execute_and_inspect(self, client, service):
        await client.post("/api/workflows", json=WORKFLOW)

        response = await client.post("/api/workflows/wf-api/execute", json={"payload": {"name": "ada"}})
        assert response.status_code == 200
        execution_id = response.json()["execution_id"]
        await wait_finished(service, execution_id)

        execution = (await client.get(f"/api/executions/{execution_id}")).json()["execution"]
        assert execution["status"] == "SUCCESS"
        greet = next(s for s in execution["node_states"] if s["node_id"] == "greet")
        assert greet["output"] == {"name": "ada", "greeting": "hello ada"}

        page = (await client.get(f"/api/executions/{execution_id}/logs", params={"limit": 2})).json()
        assert len(page["logs"]) == 2
        rest = (await client.get(f"/api/executions/{execution_id}/logs",
                                 params={"since": page["cursor"]})).json()
        assert rest["logs"][0]["sequence"] == page["cursor"] + 1

        metrics = (await client.get(f"/api/executions/{execution_id}/metrics")).json()["metrics"]
        assert any(m["name"] == "execution.duration" for m in metrics)

        stats = (await client.get("/api/workflows/wf-api/stats")).json()["stats"]
        assert stats["execution_count"] == 1

    @pytest.mark.asyncio
    async def test_missing_execution(self, client):
        assert (await client.get("/api/executions/nope")).status_code == 404
        assert (await client.get("/api/executions/nope/logs")).status_code == 404
        assert (await client.post("/api/executions/nope/cancel")).status_code == 404

    @pytest.mark.asyncio
    async def test_control_conflict_after_finish(self, client, service):
        await client.post("/api/workflows", json=WORKFLOW)
        execution_id = (await client.post("/api/workflows/wf-api/execute")).json()["execution_id"]
        await wait_finished(service, execution_id)

        response = await client.post(f"/api/executions/{execution_id}/pause")

        assert response.status_code == 409
        assert response.json()["status"] == "SUCCESS"

    @pytest.mark.asyncio
    async def test_cancel_running_execution(self, client, service, engine):
        release = asyncio.Event()

        async def blocking(parameters, context):
            await release.wait()

        engine.registry.register("blocking", blocking)
        await client.post("/api/workflows", json={
            "id": "wf-block", "nodes": [{"id": "a", "type": "blocking"}, {"id": "b", "type": "noOp"}],
            "connections": [{"source": "a", "target": "b"}],
        })
        execution_id = (await client.post("/api/workflows/wf-block/execute")).json()["execution_id"]

        response = await client.post(f"/api/executions/{execution_id}/cancel")
        release.set()
        finished = await wait_finished(service, execution_id)

        assert response.status_code == 200
        assert response.json()["status"] == "CANCELLED"
        assert finished.node_states["b"].status.value == "PENDING"

    @pytest.mark.asyncio
    async def test_concurrency_reject(self, client, service, engine):
        release = asyncio.Event()

        async def blocking(parameters, context):
            await release.wait()

        engine.registry.register("blocking", blocking)
        await client.post("/api/workflows", json={
            "id": "wf-one", "nodes": [{"id": "a", "type": "blocking"}],
            "settings": {"concurrency": {"maxInstances": 1, "policy": "REJECT"}},
        })
        first = (await client.post("/api/workflows/wf-one/execute")).json()["execution_id"]

        response = await client.post("/api/workflows/wf-one/execute")

        assert response.status_code == 409
        assert response.json()["limit"] == 1
        release.set()
        await wait_finished(service, first)

    @pytest.mark.asyncio
    async def test_node_types(self, client):
        nodes = (await client.get("/api/nodes")).json()["nodes"]

        assert {"start", "httpRequest", "echo"} <= {node["type"] for node in nodes}


class TestTriggerRoutes:

    @pytest.mark.asyncio
    async def test_webhook_starts_execution(self, client, service):
        await client.post("/api/workflows", json={
            "id": "wf-hook",
            "nodes": [{"id": "hook", "type": "webhookTrigger", "config": {"path": "orders", "method": "POST"}},
                      {"id": "echo", "type": "echo", "config": {"order": "{{ hook.json.id }}"}}],
            "connections": [{"source": "hook", "target": "echo"}],
        })

        response = await client.post("/webhook/orders?src=shop", json={"id": 42})
        assert response.status_code == 202
        execution = await wait_finished(service, response.json()["execution_id"])

        assert execution.trigger_type.value == "WEBHOOK"
        assert execution.trigger_payload["query"] == {"src": "shop"}
        assert execution.node_states["echo"].output["params"] == {"order": 42}

        assert (await client.get("/webhook/orders")).status_code == 405
        assert (await client.post("/webhook/unknown")).status_code == 404
        info = (await client.get("/webhook/")).json()
        assert info["registered"][0]["path"] == "orders"

    @pytest.mark.asyncio
    async def test_webhook_conflict_registers_no_version(self, client, trigger_manager):
        def hook_workflow(workflow_id):
            return {"id": workflow_id,
                    "nodes": [{"id": "hook", "type": "webhookTrigger", "config": {"path": "orders"}}]}

        assert (await client.post("/api/workflows", json=hook_workflow("wf-a"))).status_code == 200
        response = await client.post("/api/workflows", json=hook_workflow("wf-b"))

        assert response.status_code == 422
        assert "already used by workflow wf-a" in response.json()["errors"][0]
        assert (await client.get("/api/workflows/wf-b")).status_code == 404
        assert trigger_manager.find_webhook("orders").workflow_id == "wf-a"

    @pytest.mark.asyncio
    async def test_event_route(self, client, service):
        await client.post("/api/workflows", json={
            "id": "wf-event",
            "nodes": [{"id": "on", "type": "eventTrigger", "config": {"source": "crm"}}],
        })

        response = await client.post("/api/events/crm/contact.created", json={"id": 1})

        [execution_id] = response.json()["execution_ids"]
        execution = await wait_finished(service, execution_id)
        assert execution.node_states["on"].output["data"] == {"id": 1}


class TestWebSocket:

    def test_finished_execution_replays_completion(self, overrides, service):
        service.register_workflow(make_workflow([{"id": "a", "type": "noOp"}], workflow_id="wf"))

        async def run():
            execution_id = await service.start_execution("wf")
            await wait_finished(service, execution_id)
            return execution_id

        execution_id = asyncio.run(run())

        with TestClient(app).websocket_connect(f"/ws/executions/{execution_id}") as websocket:
            event = websocket.receive_json()

        assert event["type"] == "EXECUTION_COMPLETED"
        assert event["status"] == "SUCCESS"

    def test_replay_since_sequence(self, overrides, service):
        service.register_workflow(make_workflow([{"id": "a", "type": "noOp"}], workflow_id="wf"))

        async def run():
            execution_id = await service.start_execution("wf")
            await wait_finished(service, execution_id)
            return execution_id

        execution_id = asyncio.run(run())
        received = []

        with TestClient(app).websocket_connect(f"/ws/executions/{execution_id}?since=0") as websocket:
            while True:
                event = websocket.receive_json()
                received.append(event)
                if event["type"] == "EXECUTION_COMPLETED":
                    break

        sequences = [event["sequence"] for event in received]
        assert sequences == list(range(1, len(received) + 1))

    def test_unknown_execution(self, overrides):
        with TestClient(app).websocket_connect("/ws/executions/nope") as websocket:
            message = websocket.receive_json()

        assert message["type"] == "error"
