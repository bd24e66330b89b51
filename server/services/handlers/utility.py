"""Utility node handlers - triggers, data shaping, timing and logging."""

import time
from datetime import datetime
from typing import Any, AsyncIterator, Dict

from core.logging import get_logger
from services.execution.exceptions import NodeError
from services.execution.invoker import NodeContext
from services.execution.models import LogLevel

logger = get_logger(__name__)


# =============================================================================
# TRIGGER NODES
# =============================================================================

async def handle_start(parameters: Dict[str, Any], context: NodeContext) -> Dict[str, Any]:
    """Handle start node execution.

    Emits the trigger payload, layered over the node's optional
    ``initialData`` so manual runs can be seeded from the editor.

    Args:
        parameters: Resolved parameters with optional initialData
        context: Node context carrying the trigger payload

    Returns:
        Initial data for downstream nodes
    """
    initial_data = parameters.get('initialData') or {}
    if not isinstance(initial_data, dict):
        raise NodeError("initialData must be an object", fatal=True)

    result = {**initial_data, **dict(context.trigger)}
    logger.debug("[Start] Emitting initial data", node_id=context.node_id, keys=sorted(result))
    return result


async def handle_trigger_node(parameters: Dict[str, Any], context: NodeContext) -> Dict[str, Any]:
    """Webhook, schedule and event triggers emit what the trigger adapter received.

    The waiting happens outside the graph: the trigger adapter only creates an
    execution once the request, tick or event has arrived.
    """
    return dict(context.trigger)


# =============================================================================
# DATA NODES
# =============================================================================

async def handle_no_op(parameters: Dict[str, Any], context: NodeContext) -> Dict[str, Any]:
    """Pass upstream outputs through unchanged."""
    if len(context.inputs) == 1:
        return next(iter(context.inputs.values()))
    return dict(context.inputs)


async def handle_set(parameters: Dict[str, Any], context: NodeContext) -> Dict[str, Any]:
    """Set fields on the incoming item.

    ``values`` is merged over the single upstream output; with
    ``keepOnlySet`` only the configured values are emitted.
    """
    values = parameters.get('values') or {}
    if not isinstance(values, dict):
        raise NodeError("values must be an object", fatal=True)

    if parameters.get('keepOnlySet', False):
        return dict(values)

    base: Dict[str, Any] = {}
    if len(context.inputs) == 1:
        upstream = next(iter(context.inputs.values()))
        if isinstance(upstream, dict):
            base = dict(upstream)
    return {**base, **values}


def handle_merge(parameters: Dict[str, Any], context: NodeContext) -> Dict[str, Any]:
    """Merge the outputs of every predecessor.

    mode ``object`` shallow-merges dict outputs in predecessor order,
    mode ``append`` returns them as a list.
    """
    mode = parameters.get('mode', 'object')
    outputs = [context.inputs[node_id] for node_id in sorted(context.inputs)]

    match mode:
        case 'append':
            return {"items": outputs}
        case 'object':
            merged: Dict[str, Any] = {}
            for output in outputs:
                if isinstance(output, dict):
                    merged.update(output)
            return merged
        case _:
            raise NodeError(f"Unknown merge mode: {mode}", fatal=True)


async def handle_loop(parameters: Dict[str, Any], context: NodeContext) -> AsyncIterator[Dict[str, Any]]:
    """Yield one chunk per item of ``items``.

    Chunks are collected by the invoker into ``{"items": [...]}``.
    """
    items = parameters.get('items')
    if items is None:
        items = []
    if not isinstance(items, list):
        raise NodeError("items must be a list", fatal=True)

    batch_size = int(parameters.get('batchSize', 1))
    if batch_size < 1:
        raise NodeError("batchSize must be at least 1", fatal=True)

    for index in range(0, len(items), batch_size):
        if context.cancelled:
            context.log("Loop stopped early", LogLevel.WARN, index=index)
            return
        batch = items[index:index + batch_size]
        yield {"index": index, "item": batch[0] if batch_size == 1 else batch}


# =============================================================================
# TIMING / LOGGING NODES
# =============================================================================

def _wait_seconds(parameters: Dict[str, Any]) -> float:
    duration = float(parameters.get('duration', 5))
    unit = parameters.get('unit', 'seconds')

    match unit:
        case 'milliseconds':
            return duration / 1000
        case 'seconds':
            return duration
        case 'minutes':
            return duration * 60
        case 'hours':
            return duration * 3600
        case _:
            raise NodeError(f"Unknown time unit: {unit}", fatal=True)


async def handle_timer(parameters: Dict[str, Any], context: NodeContext) -> Dict[str, Any]:
    """Handle timer node execution - waits for the specified duration.

    The wait is cooperative: cancelling the execution ends it early and the
    node fails as cancelled.

    Args:
        parameters: Resolved parameters with duration and unit
        context: Node context

    Returns:
        Timing info
    """
    start_time = time.time()
    wait_seconds = _wait_seconds(parameters)

    context.log(f"Waiting {parameters.get('duration', 5)} {parameters.get('unit', 'seconds')}",
                wait_seconds=wait_seconds)

    if await context.sleep(wait_seconds):
        raise NodeError("Timer cancelled", fatal=True)

    elapsed_ms = int((time.time() - start_time) * 1000)
    logger.info("[Timer] Completed", node_id=context.node_id, elapsed_ms=elapsed_ms)
    return {
        "timestamp": datetime.now().isoformat(),
        "elapsed_ms": elapsed_ms,
        "wait_seconds": wait_seconds,
    }


async def handle_console(parameters: Dict[str, Any], context: NodeContext) -> Dict[str, Any]:
    """Write a message to the execution log and pass upstream data through."""
    message = parameters.get('message', '')
    if not isinstance(message, str):
        message = str(message)

    try:
        level = LogLevel(str(parameters.get('level', 'INFO')).upper())
    except ValueError:
        raise NodeError(f"Unknown log level: {parameters.get('level')}", fatal=True)

    context.log(message, level)
    return {"message": message, "level": level.value, "data": dict(context.inputs)}


async def handle_fail(parameters: Dict[str, Any], context: NodeContext) -> Dict[str, Any]:
    """Fail on purpose, for error branches and testing retry policies."""
    raise NodeError(parameters.get('message', 'Failed by workflow'),
                    fatal=bool(parameters.get('fatal', False)))
