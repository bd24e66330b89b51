"""Execution engine exceptions.

Node-level failures are recorded on the node state and never cross the
scheduler boundary. The exceptions here are either raised by node
implementations (``NodeError``), raised at the service surface (validation,
lookup, concurrency) or signal a broken state-machine invariant.
"""

from typing import Any, Dict, List, Optional


class ExecutionEngineError(Exception):
    """Base class for all engine errors."""


class WorkflowValidationError(ExecutionEngineError):
    """A workflow definition failed structural validation."""

    def __init__(self, errors: List[str]):
        self.errors = errors
        super().__init__("; ".join(errors))


class UnresolvedReferenceError(ExecutionEngineError):
    """A ``{{ ... }}`` reference could not be resolved against the context."""

    def __init__(self, expression: str, reason: str):
        self.expression = expression
        self.reason = reason
        super().__init__(f"Unresolved reference '{expression}': {reason}")


class NodeNotFoundError(ExecutionEngineError):
    """No implementation is registered for a node type."""

    def __init__(self, node_type: str):
        self.node_type = node_type
        super().__init__(f"No implementation registered for node type '{node_type}'")


class NodeError(ExecutionEngineError):
    """Raised by node implementations.

    ``fatal=True`` marks the failure as non-retryable regardless of the
    node's retry policy.
    """

    def __init__(self, message: str, fatal: bool = False,
                 details: Optional[Dict[str, Any]] = None):
        self.fatal = fatal
        self.details = details or {}
        super().__init__(message)


class InvalidTransitionError(ExecutionEngineError):
    """A status change not allowed by the node or execution state machine."""

    def __init__(self, subject: str, current: str, target: str):
        self.subject = subject
        self.current = current
        self.target = target
        super().__init__(f"Illegal transition for {subject}: {current} -> {target}")


class ExecutionNotFoundError(ExecutionEngineError):

    def __init__(self, execution_id: str):
        self.execution_id = execution_id
        super().__init__(f"Execution not found: {execution_id}")


class WorkflowNotFoundError(ExecutionEngineError):

    def __init__(self, workflow_id: str, version: Optional[int] = None):
        self.workflow_id = workflow_id
        self.version = version
        label = workflow_id if version is None else f"{workflow_id} v{version}"
        super().__init__(f"Workflow not found: {label}")


class ConcurrencyLimitError(ExecutionEngineError):
    """Workflow is at ``max_instances`` and its policy is REJECT."""

    def __init__(self, workflow_id: str, limit: int):
        self.workflow_id = workflow_id
        self.limit = limit
        super().__init__(f"Workflow {workflow_id} already has {limit} running executions")


class CredentialError(ExecutionEngineError):
    """A credential reference could not be turned into usable values."""

    def __init__(self, credential_id: str, message: str):
        self.credential_id = credential_id
        super().__init__(message)


class CredentialNotFound(CredentialError):

    def __init__(self, credential_id: str):
        super().__init__(credential_id, f"Credential not found: {credential_id}")


class CredentialDenied(CredentialError):

    def __init__(self, credential_id: str, user_id: Optional[str]):
        self.user_id = user_id
        super().__init__(credential_id, f"Access to credential {credential_id} denied for user {user_id}")


class CredentialExpired(CredentialError):

    def __init__(self, credential_id: str, expired_at: float):
        self.expired_at = expired_at
        super().__init__(credential_id, f"Credential {credential_id} expired")
