"""Modern async database service with SQLModel and SQLAlchemy 2.0."""

import logging
from typing import Dict, Any, List, Optional
from sqlmodel import SQLModel, select
from sqlalchemy import func
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from contextlib import asynccontextmanager

from core.config import Settings
from models.database import ExecutionRecord, NodeStateRecord, ExecutionLogRecord, ExecutionMetricRecord
from core.logging import get_logger

logger = get_logger(__name__)

INCOMPLETE_STATUSES = ("PENDING", "RUNNING", "PAUSED")


class Database:
    """Async database service with SQLModel."""

    def __init__(self, settings: Settings):
        self.settings = settings
        self.engine = None
        self.async_session = None

    async def startup(self):
        """Initialize database connection and create tables."""
        try:
            # Disable verbose database logging
            logging.getLogger("aiosqlite").setLevel(logging.WARNING)
            logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
            logging.getLogger("sqlalchemy.pool").setLevel(logging.WARNING)

            engine_kwargs: Dict[str, Any] = {"echo": self.settings.database_echo}
            if not self.settings.is_sqlite:
                engine_kwargs["pool_size"] = self.settings.database_pool_size
                engine_kwargs["max_overflow"] = self.settings.database_max_overflow

            self.engine = create_async_engine(self.settings.database_url, **engine_kwargs)

            self.async_session = async_sessionmaker(
                bind=self.engine,
                class_=AsyncSession,
                expire_on_commit=False
            )

            async with self.engine.begin() as conn:
                await conn.run_sync(SQLModel.metadata.create_all)

            logger.info("Database initialized successfully", url=self.settings.database_url)

        except Exception as e:
            logger.error("Database startup failed", error=str(e))
            raise

    async def shutdown(self):
        """Close database connections."""
        if self.engine:
            await self.engine.dispose()
            logger.info("Database connections closed")

    @asynccontextmanager
    async def get_session(self):
        """Get async database session."""
        if not self.async_session:
            raise RuntimeError("Database not initialized")

        async with self.async_session() as session:
            try:
                yield session
            except Exception:
                await session.rollback()
                raise
            finally:
                await session.close()

    # ============================================================================
    # Executions
    # ============================================================================

    async def save_execution(self, data: Dict[str, Any]) -> bool:
        """Insert or update an execution row from its dict form."""
        execution_id = data["id"]
        try:
            async with self.get_session() as session:
                existing = await session.get(ExecutionRecord, execution_id)
                if existing:
                    for key, value in data.items():
                        if key != "id" and hasattr(existing, key):
                            setattr(existing, key, value)
                else:
                    session.add(ExecutionRecord(**data))
                await session.commit()
                return True

        except Exception as e:
            logger.error("Failed to save execution", execution_id=execution_id, error=str(e))
            return False

    async def get_execution(self, execution_id: str) -> Optional[ExecutionRecord]:
        """Get execution by ID."""
        try:
            async with self.get_session() as session:
                stmt = select(ExecutionRecord).where(ExecutionRecord.id == execution_id)
                result = await session.execute(stmt)
                return result.scalar_one_or_none()

        except Exception as e:
            logger.error("Failed to get execution", execution_id=execution_id, error=str(e))
            return None

    async def get_incomplete_executions(self) -> List[ExecutionRecord]:
        """Executions that never reached a terminal status (recovery candidates)."""
        try:
            async with self.get_session() as session:
                stmt = (
                    select(ExecutionRecord)
                    .where(ExecutionRecord.status.in_(INCOMPLETE_STATUSES))
                    .order_by(ExecutionRecord.created_at)
                )
                result = await session.execute(stmt)
                return list(result.scalars().all())

        except Exception as e:
            logger.error("Failed to list incomplete executions", error=str(e))
            return []

    async def get_workflow_stats(self, workflow_id: str) -> Dict[str, Any]:
        """Execution/success/failure counts and average duration for a workflow."""
        stats = {
            "workflow_id": workflow_id,
            "execution_count": 0,
            "success_count": 0,
            "failure_count": 0,
            "average_duration": None,
        }
        try:
            async with self.get_session() as session:
                stmt = (
                    select(ExecutionRecord.status, func.count(), func.avg(ExecutionRecord.duration))
                    .where(ExecutionRecord.workflow_id == workflow_id)
                    .group_by(ExecutionRecord.status)
                )
                result = await session.execute(stmt)

                total_duration = 0.0
                timed_runs = 0
                for status, count, avg_duration in result.all():
                    stats["execution_count"] += count
                    if status == "SUCCESS":
                        stats["success_count"] += count
                    elif status == "FAILED":
                        stats["failure_count"] += count
                    if avg_duration is not None:
                        total_duration += avg_duration * count
                        timed_runs += count

                if timed_runs:
                    stats["average_duration"] = round(total_duration / timed_runs, 2)
                return stats

        except Exception as e:
            logger.error("Failed to get workflow stats", workflow_id=workflow_id, error=str(e))
            return stats

    # ============================================================================
    # Node States
    # ============================================================================

    async def save_node_state(self, execution_id: str, data: Dict[str, Any]) -> bool:
        """Insert or update one node's state row."""
        node_id = data["node_id"]
        try:
            async with self.get_session() as session:
                stmt = select(NodeStateRecord).where(
                    NodeStateRecord.execution_id == execution_id,
                    NodeStateRecord.node_id == node_id
                )
                result = await session.execute(stmt)
                existing = result.scalar_one_or_none()

                if existing:
                    for key, value in data.items():
                        if hasattr(existing, key):
                            setattr(existing, key, value)
                else:
                    session.add(NodeStateRecord(execution_id=execution_id, **data))
                await session.commit()
                return True

        except Exception as e:
            logger.error("Failed to save node state", execution_id=execution_id,
                         node_id=node_id, error=str(e))
            return False

    async def get_node_states(self, execution_id: str) -> List[NodeStateRecord]:
        try:
            async with self.get_session() as session:
                stmt = (
                    select(NodeStateRecord)
                    .where(NodeStateRecord.execution_id == execution_id)
                    .order_by(NodeStateRecord.id)
                )
                result = await session.execute(stmt)
                return list(result.scalars().all())

        except Exception as e:
            logger.error("Failed to get node states", execution_id=execution_id, error=str(e))
            return []

    # ============================================================================
    # Logs
    # ============================================================================

    async def add_execution_logs(self, entries: List[Dict[str, Any]]) -> bool:
        """Persist a batch of execution log entries."""
        if not entries:
            return True
        try:
            async with self.get_session() as session:
                session.add_all([ExecutionLogRecord(**entry) for entry in entries])
                await session.commit()
                return True

        except Exception as e:
            logger.error("Failed to persist execution logs", count=len(entries), error=str(e))
            return False

    async def get_execution_logs(self, execution_id: str, since_sequence: int = 0,
                                 limit: Optional[int] = None) -> List[ExecutionLogRecord]:
        """Log entries with sequence greater than ``since_sequence``, oldest first."""
        try:
            async with self.get_session() as session:
                stmt = (
                    select(ExecutionLogRecord)
                    .where(
                        ExecutionLogRecord.execution_id == execution_id,
                        ExecutionLogRecord.sequence > since_sequence
                    )
                    .order_by(ExecutionLogRecord.timestamp, ExecutionLogRecord.sequence)
                )
                if limit:
                    stmt = stmt.limit(limit)
                result = await session.execute(stmt)
                return list(result.scalars().all())

        except Exception as e:
            logger.error("Failed to get execution logs", execution_id=execution_id, error=str(e))
            return []

    # ============================================================================
    # Metrics
    # ============================================================================

    async def add_execution_metric(self, data: Dict[str, Any]) -> bool:
        try:
            async with self.get_session() as session:
                session.add(ExecutionMetricRecord(**data))
                await session.commit()
                return True

        except Exception as e:
            logger.error("Failed to persist metric", name=data.get("name"), error=str(e))
            return False

    async def get_execution_metrics(self, execution_id: str) -> List[ExecutionMetricRecord]:
        try:
            async with self.get_session() as session:
                stmt = (
                    select(ExecutionMetricRecord)
                    .where(ExecutionMetricRecord.execution_id == execution_id)
                    .order_by(ExecutionMetricRecord.id)
                )
                result = await session.execute(stmt)
                return list(result.scalars().all())

        except Exception as e:
            logger.error("Failed to get metrics", execution_id=execution_id, error=str(e))
            return []
