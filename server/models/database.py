"""SQLModel database models and tables."""

from datetime import datetime, timezone
from typing import Optional, Dict, Any
from sqlmodel import SQLModel, Field, Column, DateTime, JSON
from sqlalchemy import UniqueConstraint, func


class ExecutionRecord(SQLModel, table=True):
    """One run of a workflow version."""

    __tablename__ = "executions"

    id: str = Field(primary_key=True, max_length=255)
    workflow_id: str = Field(index=True, max_length=255)
    workflow_version: int = Field(default=1)
    user_id: Optional[str] = Field(default=None, max_length=255)
    trigger_type: str = Field(default="MANUAL", max_length=20)
    status: str = Field(default="PENDING", index=True, max_length=20)
    # Snapshot of the definition version so an interrupted run can be resumed
    definition: Dict[str, Any] = Field(sa_column=Column(JSON))
    trigger_payload: Optional[Dict[str, Any]] = Field(default=None, sa_column=Column(JSON))
    variables: Optional[Dict[str, Any]] = Field(default=None, sa_column=Column(JSON))
    outputs: Optional[Dict[str, Any]] = Field(default=None, sa_column=Column(JSON))
    error: Optional[Dict[str, Any]] = Field(default=None, sa_column=Column(JSON))
    started_at: Optional[float] = Field(default=None)
    completed_at: Optional[float] = Field(default=None)
    duration: Optional[float] = Field(default=None)  # ms
    created_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        sa_column=Column(DateTime(timezone=True), server_default=func.now())
    )
    updated_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        sa_column=Column(DateTime(timezone=True), onupdate=func.now())
    )


class NodeStateRecord(SQLModel, table=True):
    """Per-node state within an execution."""

    __tablename__ = "execution_node_states"
    __table_args__ = (UniqueConstraint("execution_id", "node_id"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    execution_id: str = Field(index=True, max_length=255)
    node_id: str = Field(max_length=255)
    node_type: str = Field(max_length=100)
    name: Optional[str] = Field(default=None, max_length=255)
    status: str = Field(default="PENDING", max_length=20)
    input: Optional[Dict[str, Any]] = Field(default=None, sa_column=Column(JSON))
    output: Optional[Dict[str, Any]] = Field(default=None, sa_column=Column(JSON))
    error: Optional[Dict[str, Any]] = Field(default=None, sa_column=Column(JSON))
    started_at: Optional[float] = Field(default=None)
    completed_at: Optional[float] = Field(default=None)
    retry_count: int = Field(default=0)
    final: bool = Field(default=False)


class ExecutionLogRecord(SQLModel, table=True):
    """Append-only execution log line."""

    __tablename__ = "execution_logs"

    id: str = Field(primary_key=True, max_length=64)
    execution_id: str = Field(index=True, max_length=255)
    node_id: Optional[str] = Field(default=None, max_length=255)
    sequence: int = Field(index=True)
    level: str = Field(default="INFO", max_length=10)
    message: str = Field(max_length=10000)
    details: Optional[Dict[str, Any]] = Field(default=None, sa_column=Column(JSON))
    source: str = Field(default="SYSTEM", max_length=10)
    category: Optional[str] = Field(default=None, max_length=50)
    timestamp: float = Field(index=True)


class ExecutionMetricRecord(SQLModel, table=True):
    """Counter, gauge or timer sample recorded during an execution."""

    __tablename__ = "execution_metrics"

    id: Optional[int] = Field(default=None, primary_key=True)
    execution_id: str = Field(index=True, max_length=255)
    node_id: Optional[str] = Field(default=None, max_length=255)
    name: str = Field(max_length=100)
    value: float
    metric_type: str = Field(max_length=10)
    unit: Optional[str] = Field(default=None, max_length=20)
    tags: Optional[Dict[str, Any]] = Field(default=None, sa_column=Column(JSON))
    timestamp: float
