"""Dynamic webhook endpoint router for incoming HTTP requests.

Each webhookTrigger node registers a path; a request to /webhook/{path}
starts an execution of the owning workflow with the request as the trigger
payload.
"""
import json
from typing import Any, Dict

from fastapi import APIRouter, Depends, Request
from fastapi.responses import ORJSONResponse

from core.container import container
from core.logging import get_logger
from services.execution import ConcurrencyLimitError, WorkflowNotFoundError
from services.triggers import TriggerManager

logger = get_logger(__name__)
router = APIRouter(prefix="/webhook", tags=["webhook"])


def _get_trigger_manager() -> TriggerManager:
    return container.trigger_manager()


async def _request_payload(path: str, request: Request) -> Dict[str, Any]:
    body = await request.body()
    text = body.decode('utf-8', errors='replace') if body else ""
    json_body = None

    if "application/json" in request.headers.get("content-type", "") and text:
        try:
            json_body = json.loads(text)
        except json.JSONDecodeError:
            logger.debug("[Webhook] Body is not valid JSON", path=path)

    return {
        "method": request.method,
        "path": path,
        "headers": dict(request.headers),
        "query": dict(request.query_params),
        "body": text,
        "json": json_body,
    }


@router.get("/")
async def list_info(trigger_manager: TriggerManager = Depends(_get_trigger_manager)):
    """Get webhook endpoint info."""
    return {
        "endpoint": "/webhook/{path}",
        "description": "Send HTTP requests to trigger webhookTrigger nodes",
        "registered": trigger_manager.describe()["webhooks"],
    }


@router.api_route("/{path:path}", methods=["GET", "POST", "PUT", "DELETE", "PATCH"])
async def handle_webhook(
    path: str,
    request: Request,
    trigger_manager: TriggerManager = Depends(_get_trigger_manager)
):
    """Handle incoming webhook requests by starting the registered workflow."""
    route = trigger_manager.find_webhook(path)
    if route is None:
        logger.warning("[Webhook] No workflow registered", path=path)
        return ORJSONResponse(status_code=404, content={
            "success": False, "error": f"No webhook registered for path: {path}"
        })
    if not route.accepts(request.method):
        return ORJSONResponse(status_code=405, content={
            "success": False, "error": f"Webhook {path} does not accept {request.method}"
        })

    payload = await _request_payload(path, request)
    logger.info("[Webhook] Received", method=request.method, path=path)

    try:
        execution_id = await trigger_manager.fire_webhook(route, payload)
    except WorkflowNotFoundError as e:
        return ORJSONResponse(status_code=404, content={"success": False, "error": str(e)})
    except ConcurrencyLimitError as e:
        return ORJSONResponse(status_code=409, content={"success": False, "error": str(e)})

    return ORJSONResponse(status_code=202, content={
        "success": True,
        "status": "received",
        "path": route.path,
        "execution_id": execution_id,
    })
