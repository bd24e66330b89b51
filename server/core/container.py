"""Dependency injection container for the application."""

from dependency_injector import containers, providers

from core.config import Settings
from core.database import Database
from core.cache import CacheService
from services.credentials import StaticCredentialResolver
from services.execution import (
    ExecutionCache,
    ExecutionEventBus,
    ExecutionStateStore,
    NodeInvoker,
    NodeRegistry,
    RecoverySweeper,
    WorkflowExecutor,
)
from services.handlers import register_builtin_nodes
from services.scheduler import CronScheduler
from services.triggers import TriggerManager
from services.workflow import WorkflowService


class Container(containers.DeclarativeContainer):
    """Application dependency injection container."""

    # Settings
    settings = providers.Singleton(
        Settings,
    )

    # Database (execution records, node states, logs, metrics)
    database = providers.Singleton(
        Database,
        settings=settings
    )

    # Cache service (uses Redis when enabled, memory otherwise)
    cache = providers.Singleton(
        CacheService,
        settings=settings
    )

    execution_cache = providers.Singleton(
        ExecutionCache,
        cache_service=cache,
        lock_ttl=settings.provided.owner_lock_ttl
    )

    # Node plugins and credentials (shared by every execution)
    node_registry = providers.Singleton(
        register_builtin_nodes,
        providers.Factory(NodeRegistry)
    )

    credentials = providers.Singleton(
        StaticCredentialResolver
    )

    # Execution engine
    state_store = providers.Singleton(
        ExecutionStateStore,
        database=database
    )

    event_bus = providers.Singleton(
        ExecutionEventBus,
        store=state_store,
        database=database,
        queue_size=settings.provided.event_queue_size,
        history_size=settings.provided.event_history_size
    )

    node_invoker = providers.Singleton(
        NodeInvoker,
        registry=node_registry,
        credentials=credentials,
        settings=settings
    )

    workflow_executor = providers.Singleton(
        WorkflowExecutor,
        store=state_store,
        bus=event_bus,
        invoker=node_invoker,
        settings=settings,
        ownership=execution_cache
    )

    recovery_sweeper = providers.Singleton(
        RecoverySweeper,
        database=database,
        cache=execution_cache,
        on_recovery=workflow_executor.provided.recover_execution,
        is_local=workflow_executor.provided.is_local,
        sweep_interval=settings.provided.recovery_sweep_interval
    )

    # Services
    workflow_service = providers.Singleton(
        WorkflowService,
        executor=workflow_executor,
        store=state_store,
        bus=event_bus,
        settings=settings,
        database=database,
        recovery=recovery_sweeper
    )

    cron_scheduler = providers.Singleton(
        CronScheduler,
        timezone=settings.provided.scheduler_timezone
    )

    trigger_manager = providers.Singleton(
        TriggerManager,
        start_execution=workflow_service.provided.start_execution,
        cron=cron_scheduler
    )


# Global container instance
container = Container()
