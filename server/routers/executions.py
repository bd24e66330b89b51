"""Workflow registration, execution control and live execution updates."""

from typing import Any, Dict, Optional

import orjson
from fastapi import APIRouter, Body, Depends, Query, WebSocket, WebSocketDisconnect
from fastapi.responses import ORJSONResponse
from pydantic import BaseModel, Field, ValidationError

from core.container import container
from core.logging import get_logger
from models.workflow import WorkflowDefinition
from services.execution import (
    ConcurrencyLimitError,
    ExecutionNotFoundError,
    TriggerType,
    WorkflowNotFoundError,
    WorkflowValidationError,
)
from services.triggers import TriggerManager
from services.workflow import WorkflowService

logger = get_logger(__name__)
router = APIRouter(tags=["executions"])

WS_NOT_FOUND = 4404
WS_DROPPED = 4408


def _error(status_code: int, error: str, **extra) -> ORJSONResponse:
    return ORJSONResponse(status_code=status_code, content={"success": False, "error": error, **extra})


def _get_workflow_service() -> WorkflowService:
    return container.workflow_service()


def _get_trigger_manager() -> TriggerManager:
    return container.trigger_manager()


class ExecuteWorkflowRequest(BaseModel):
    version: Optional[int] = Field(default=None, ge=1)
    payload: Dict[str, Any] = Field(default_factory=dict)
    user_id: Optional[str] = None


# =============================================================================
# WORKFLOWS
# =============================================================================

@router.post("/api/workflows")
async def register_workflow(
    body: Dict[str, Any] = Body(...),
    workflow_service: WorkflowService = Depends(_get_workflow_service),
    trigger_manager: TriggerManager = Depends(_get_trigger_manager)
):
    """Validate and register a workflow definition version, then arm its triggers."""
    try:
        definition = WorkflowDefinition.model_validate(body)
    except ValidationError as e:
        return _error(422, "Invalid workflow definition",
                      errors=[f"{'.'.join(map(str, err['loc']))}: {err['msg']}" for err in e.errors()])

    # Trigger conflicts are found before the version is stored
    try:
        plan = trigger_manager.check_workflow(definition)
        workflow_service.register_workflow(definition)
    except WorkflowValidationError as e:
        return _error(422, str(e), errors=e.errors)
    trigger_manager.apply(plan)

    return {"success": True, "workflow_id": definition.id, "version": definition.version}


@router.get("/api/workflows")
async def list_workflows(workflow_service: WorkflowService = Depends(_get_workflow_service)):
    return {"success": True, "workflows": workflow_service.list_workflows()}


@router.get("/api/workflows/{workflow_id}")
async def get_workflow(
    workflow_id: str,
    version: Optional[int] = None,
    workflow_service: WorkflowService = Depends(_get_workflow_service)
):
    try:
        definition = workflow_service.get_workflow(workflow_id, version)
    except WorkflowNotFoundError as e:
        return _error(404, str(e))
    return {"success": True, "workflow": definition.model_dump(mode="json", by_alias=True)}


@router.post("/api/workflows/{workflow_id}/execute")
async def execute_workflow(
    workflow_id: str,
    request: Optional[ExecuteWorkflowRequest] = None,
    workflow_service: WorkflowService = Depends(_get_workflow_service)
):
    """Start a manual execution. Returns as soon as the execution exists."""
    request = request or ExecuteWorkflowRequest()
    try:
        execution_id = await workflow_service.start_execution(
            workflow_id,
            version=request.version,
            trigger_payload=request.payload,
            trigger_type=TriggerType.MANUAL,
            user_id=request.user_id,
        )
    except WorkflowNotFoundError as e:
        return _error(404, str(e))
    except ConcurrencyLimitError as e:
        return _error(409, str(e), limit=e.limit)

    return {"success": True, "execution_id": execution_id}


@router.get("/api/workflows/{workflow_id}/stats")
async def get_workflow_stats(
    workflow_id: str,
    workflow_service: WorkflowService = Depends(_get_workflow_service)
):
    return {"success": True, "stats": await workflow_service.get_workflow_stats(workflow_id)}


# =============================================================================
# EXECUTIONS
# =============================================================================

@router.get("/api/executions/{execution_id}")
async def get_execution(
    execution_id: str,
    workflow_service: WorkflowService = Depends(_get_workflow_service)
):
    try:
        execution = await workflow_service.get_execution_status(execution_id)
    except ExecutionNotFoundError as e:
        return _error(404, str(e))
    return {"success": True, "execution": execution}


@router.get("/api/executions/{execution_id}/logs")
async def get_execution_logs(
    execution_id: str,
    since: int = Query(default=0, ge=0),
    limit: Optional[int] = Query(default=None, ge=1, le=10000),
    workflow_service: WorkflowService = Depends(_get_workflow_service)
):
    """Log entries after the ``since`` cursor; pass the returned cursor back to page."""
    try:
        logs = await workflow_service.get_execution_logs(execution_id, since, limit)
    except ExecutionNotFoundError as e:
        return _error(404, str(e))
    cursor = logs[-1]["sequence"] if logs else since
    return {"success": True, "logs": logs, "cursor": cursor}


@router.get("/api/executions/{execution_id}/metrics")
async def get_execution_metrics(
    execution_id: str,
    workflow_service: WorkflowService = Depends(_get_workflow_service)
):
    try:
        metrics = await workflow_service.get_execution_metrics(execution_id)
    except ExecutionNotFoundError as e:
        return _error(404, str(e))
    return {"success": True, "metrics": metrics}


async def _control(execution_id: str, action: str, workflow_service: WorkflowService):
    operations = {
        "cancel": workflow_service.cancel_execution,
        "pause": workflow_service.pause_execution,
        "resume": workflow_service.resume_execution,
    }
    try:
        changed = await operations[action](execution_id)
        status = (await workflow_service.get_execution_status(execution_id))["status"]
    except ExecutionNotFoundError as e:
        return _error(404, str(e))

    if not changed:
        return _error(409, f"Execution cannot {action} from status {status}", status=status)
    logger.info("Execution control applied", execution_id=execution_id, action=action)
    return {"success": True, "execution_id": execution_id, "status": status}


@router.post("/api/executions/{execution_id}/cancel")
async def cancel_execution(
    execution_id: str,
    workflow_service: WorkflowService = Depends(_get_workflow_service)
):
    return await _control(execution_id, "cancel", workflow_service)


@router.post("/api/executions/{execution_id}/pause")
async def pause_execution(
    execution_id: str,
    workflow_service: WorkflowService = Depends(_get_workflow_service)
):
    return await _control(execution_id, "pause", workflow_service)


@router.post("/api/executions/{execution_id}/resume")
async def resume_execution(
    execution_id: str,
    workflow_service: WorkflowService = Depends(_get_workflow_service)
):
    return await _control(execution_id, "resume", workflow_service)


# =============================================================================
# EVENT TRIGGERS
# =============================================================================

@router.post("/api/events/{source}/{event_type}")
async def emit_event(
    source: str,
    event_type: str,
    data: Optional[Dict[str, Any]] = Body(default=None),
    trigger_manager: TriggerManager = Depends(_get_trigger_manager)
):
    """Start every workflow whose eventTrigger matches ``source``/``event_type``."""
    execution_ids = await trigger_manager.emit_event(source, event_type, data)
    return {"success": True, "execution_ids": execution_ids}


# =============================================================================
# LIVE UPDATES
# =============================================================================

@router.websocket("/ws/executions/{execution_id}")
async def execution_updates(websocket: WebSocket, execution_id: str, since: Optional[int] = None):
    """Stream ordered execution events; closes after EXECUTION_COMPLETED.

    ``since`` replays retained events with a greater sequence number so a
    reconnecting client can resume without gaps.
    """
    await websocket.accept()
    workflow_service = _get_workflow_service()

    try:
        subscription = await workflow_service.subscribe(execution_id, since)
    except ExecutionNotFoundError as e:
        await websocket.send_text(orjson.dumps({"type": "error", "error": str(e)}).decode())
        await websocket.close(code=WS_NOT_FOUND)
        return

    logger.debug("[WebSocket] Execution subscriber connected", execution_id=execution_id, since=since)
    try:
        async for event in subscription:
            await websocket.send_text(orjson.dumps(event.to_dict()).decode())

        if subscription.dropped:
            await websocket.send_text(orjson.dumps({
                "type": "error",
                "error": "Subscriber too slow, events dropped; reconnect with since=<last sequence>",
            }).decode())
            await websocket.close(code=WS_DROPPED)
        else:
            await websocket.close()
    except WebSocketDisconnect:
        logger.debug("[WebSocket] Execution subscriber disconnected", execution_id=execution_id)
    finally:
        subscription.close()
