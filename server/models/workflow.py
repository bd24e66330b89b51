"""Pydantic models for workflow definitions.

A definition is the immutable-per-version graph the engine executes:
ordered nodes, the connections between their handles, workflow variables
and workflow-level settings. JSON coming from the editor uses camelCase,
so every model accepts both the alias and the field name.
"""

from enum import Enum
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator


class BackoffType(str, Enum):
    FIXED = "FIXED"
    LINEAR = "LINEAR"
    EXPONENTIAL = "EXPONENTIAL"


class ConcurrencyPolicy(str, Enum):
    ALLOW = "ALLOW"
    QUEUE = "QUEUE"
    REJECT = "REJECT"


class _DefinitionModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class RetryPolicy(_DefinitionModel):
    """Retry configuration for a node or a whole workflow.

    Delays are in milliseconds. ``retry_count`` passed to
    :meth:`calculate_delay` is the number of retries already made (0-indexed):

        FIXED        initial_delay
        LINEAR       initial_delay * (retry_count + 1)
        EXPONENTIAL  initial_delay * multiplier ** retry_count

    and every kind is clamped to ``max_delay`` when set.
    """
    enabled: bool = True
    max_retries: int = Field(default=0, ge=0, alias="maxRetries")
    backoff_type: BackoffType = Field(default=BackoffType.FIXED, alias="backoffType")
    initial_delay: float = Field(default=1000, ge=0, alias="initialDelay")
    max_delay: Optional[float] = Field(default=None, ge=0, alias="maxDelay")
    multiplier: float = Field(default=2.0, gt=0)

    @model_validator(mode="before")
    @classmethod
    def accept_settings_shape(cls, data: Any) -> Any:
        """Workflow settings store ``{enabled, maxRetries, retryDelay}``."""
        if isinstance(data, dict) and "retryDelay" in data and "initialDelay" not in data:
            data = {**data, "initialDelay": data["retryDelay"]}
        return data

    def calculate_delay(self, retry_count: int) -> float:
        """Delay in milliseconds before the retry following ``retry_count`` retries."""
        if self.backoff_type == BackoffType.LINEAR:
            delay = self.initial_delay * (retry_count + 1)
        elif self.backoff_type == BackoffType.EXPONENTIAL:
            delay = self.initial_delay * (self.multiplier ** retry_count)
        else:
            delay = self.initial_delay

        if self.max_delay is not None:
            delay = min(delay, self.max_delay)
        return delay

    def allows_retry(self, retry_count: int) -> bool:
        return self.enabled and retry_count < self.max_retries


NO_RETRY = RetryPolicy(enabled=False)


class Position(_DefinitionModel):
    x: float = 0
    y: float = 0


class NodeSpec(_DefinitionModel):
    """One node of a workflow graph."""
    id: str
    type: str
    name: Optional[str] = None
    position: Position = Field(default_factory=Position)
    config: Dict[str, Any] = Field(default_factory=dict)
    credentials: Dict[str, str] = Field(default_factory=dict)
    retry_policy: Optional[RetryPolicy] = Field(default=None, alias="retryPolicy")
    on_error: Literal["halt", "continue"] = Field(default="halt", alias="onError")
    timeout: Optional[int] = Field(default=None, gt=0)  # ms

    @property
    def display_name(self) -> str:
        return self.name or self.id

    @property
    def continue_on_error(self) -> bool:
        return self.on_error == "continue"


class ConnectionSpec(_DefinitionModel):
    """Directed edge from a node's output handle to another node's input handle."""
    source: str
    source_handle: str = Field(default="output", alias="sourceHandle")
    target: str
    target_handle: str = Field(default="input", alias="targetHandle")


class ConcurrencySettings(_DefinitionModel):
    max_instances: int = Field(default=0, ge=0, alias="maxInstances")  # 0 = unlimited
    policy: ConcurrencyPolicy = ConcurrencyPolicy.ALLOW


class WorkflowSettings(_DefinitionModel):
    timeout: Optional[int] = Field(default=None, gt=0)  # ms, whole execution
    retry_policy: Optional[RetryPolicy] = Field(default=None, alias="retryPolicy")
    concurrency: ConcurrencySettings = Field(default_factory=ConcurrencySettings)


class WorkflowDefinition(_DefinitionModel):
    """Versioned workflow graph."""
    id: str
    version: int = Field(default=1, ge=1)
    name: str = ""
    nodes: List[NodeSpec] = Field(default_factory=list)
    connections: List[ConnectionSpec] = Field(default_factory=list)
    variables: Dict[str, Any] = Field(default_factory=dict)
    settings: WorkflowSettings = Field(default_factory=WorkflowSettings)

    def get_node(self, node_id: str) -> Optional[NodeSpec]:
        for node in self.nodes:
            if node.id == node_id:
                return node
        return None
