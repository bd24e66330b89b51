"""Centralized constants for node types, handles and cache keys.

This module provides a single source of truth for the node type strings the
engine and the trigger adapters need to know about.
"""

from typing import FrozenSet

# =============================================================================
# TRIGGER NODE TYPES (entry points for workflow graphs)
# =============================================================================

MANUAL_TRIGGER_TYPE = 'start'
WEBHOOK_TRIGGER_TYPE = 'webhookTrigger'
SCHEDULE_TRIGGER_TYPE = 'cronScheduler'
EVENT_TRIGGER_TYPE = 'eventTrigger'

# Trigger nodes are entry points; their output is the trigger payload
WORKFLOW_TRIGGER_TYPES: FrozenSet[str] = frozenset([
    MANUAL_TRIGGER_TYPE,
    WEBHOOK_TRIGGER_TYPE,
    SCHEDULE_TRIGGER_TYPE,
    EVENT_TRIGGER_TYPE,
])

# =============================================================================
# LOOP NODE TYPES
# =============================================================================

# Loop constructs may receive a feedback connection on LOOP_HANDLE.
# Feedback connections are ignored by cycle detection and readiness;
# iteration is internal to the loop node.
LOOP_NODE_TYPES: FrozenSet[str] = frozenset([
    'loop',
])

LOOP_HANDLE = 'loop'

# =============================================================================
# CACHE KEYS
# =============================================================================

ACTIVE_EXECUTIONS_KEY = 'executions:active'


def owner_lock_key(execution_id: str) -> str:
    return f"execution:{execution_id}:owner"


def heartbeat_key(execution_id: str) -> str:
    return f"execution:{execution_id}:heartbeat"
