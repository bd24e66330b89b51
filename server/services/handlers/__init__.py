"""Built-in node handlers.

This package contains the node implementations shipped with the engine:
- utility.py: Start, triggers, No-op, Set, Merge, Loop, Timer, Console, Fail
- http.py: HTTP Request

Every handler has the signature ``handler(parameters, context)`` and is
registered by node type with :func:`register_builtin_nodes`.
"""

from constants import (
    EVENT_TRIGGER_TYPE,
    MANUAL_TRIGGER_TYPE,
    SCHEDULE_TRIGGER_TYPE,
    WEBHOOK_TRIGGER_TYPE,
)
from services.execution.registry import NodeRegistry

# Utility handlers
from .utility import (
    handle_start,
    handle_trigger_node,
    handle_no_op,
    handle_set,
    handle_merge,
    handle_loop,
    handle_timer,
    handle_console,
    handle_fail,
)

# HTTP handlers
from .http import (
    handle_http_request,
)


def register_builtin_nodes(registry: NodeRegistry) -> NodeRegistry:
    """Register every built-in node type on ``registry``."""
    registry.register(MANUAL_TRIGGER_TYPE, handle_start, description="Manual trigger")
    registry.register(WEBHOOK_TRIGGER_TYPE, handle_trigger_node, description="Webhook trigger")
    registry.register(SCHEDULE_TRIGGER_TYPE, handle_trigger_node, description="Cron schedule trigger")
    registry.register(EVENT_TRIGGER_TYPE, handle_trigger_node, description="Event trigger")
    registry.register('noOp', handle_no_op, description="Pass input through")
    registry.register('set', handle_set, description="Set fields")
    registry.register('merge', handle_merge, description="Merge predecessor outputs")
    registry.register('loop', handle_loop, description="Iterate over items")
    registry.register('timer', handle_timer, description="Wait for a duration")
    registry.register('console', handle_console, description="Write to the execution log")
    registry.register('fail', handle_fail, description="Fail the node")
    registry.register('httpRequest', handle_http_request, timeout=120000, description="HTTP request")
    return registry


__all__ = [
    'register_builtin_nodes',
    'handle_start',
    'handle_trigger_node',
    'handle_no_op',
    'handle_set',
    'handle_merge',
    'handle_loop',
    'handle_timer',
    'handle_console',
    'handle_fail',
    'handle_http_request',
]
