"""
FastAPI backend for the workflow execution engine.

Wires the dependency injection container, starts the engine services and
exposes the execution API, webhooks and live execution updates.
"""

import logging
from datetime import datetime
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import ORJSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from core.container import container
from core.logging import configure_logging, get_logger
from routers import executions, webhook

# Initialize settings and logging
settings = container.settings()
configure_logging(settings)
logger = get_logger(__name__)

# Suppress noisy loggers
logging.getLogger("apscheduler").setLevel(logging.WARNING)
logging.getLogger("apscheduler.scheduler").setLevel(logging.WARNING)
logging.getLogger("apscheduler.executors").setLevel(logging.WARNING)
logging.getLogger("uvicorn.access").setLevel(logging.WARNING)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan management."""
    # Startup
    logger.info("Starting workflow execution engine")

    await container.database().startup()
    await container.cache().startup()

    # Executor, log writer, startup recovery and the recovery sweeper
    workflow_service = container.workflow_service()
    await workflow_service.startup()

    # APScheduler for schedule triggers
    cron_scheduler = container.cron_scheduler()
    cron_scheduler.start()

    logger.info("Services started successfully",
                node_types=len(container.node_registry().types()),
                redis=container.cache().is_redis_available())
    yield

    # Shutdown
    cron_scheduler.shutdown()
    await workflow_service.shutdown()
    await container.cache().shutdown()
    await container.database().shutdown()
    logger.info("Services shutdown complete")


# Create FastAPI app
app = FastAPI(
    title="Workflow Execution Engine",
    version="1.0.0",
    description="Stateful, resumable DAG workflow execution with live updates",
    lifespan=lifespan,
    default_response_class=ORJSONResponse
)


class CatchAllExceptionsMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        try:
            return await call_next(request)
        except Exception as e:
            logger.error("Unhandled exception", error_type=type(e).__name__, error=str(e),
                         path=request.url.path, exc_info=True)
            return ORJSONResponse(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                content={
                    "success": False,
                    "error": f"{type(e).__name__}: {str(e)}",
                    "detail": "Internal server error"
                }
            )


app.add_middleware(CatchAllExceptionsMiddleware)

# Add CORS middleware (must be AFTER exception middleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(executions.router)
app.include_router(webhook.router)


@app.get("/health")
async def health_check():
    """Detailed health check."""
    executor = container.workflow_executor()
    return {
        "status": "OK",
        "service": "workflow-engine",
        "version": "1.0.0",
        "environment": "development" if settings.debug else "production",
        "redis_enabled": settings.redis_enabled,
        "execution_engine": {
            "active_executions": len(executor.active_executions()),
            "node_types": container.node_registry().types(),
        },
        "timestamp": datetime.now().isoformat()
    }


@app.get("/api/nodes")
async def list_node_types():
    """Registered node types and how they run."""
    return {"success": True, "nodes": container.node_registry().describe()}


if __name__ == "__main__":
    import uvicorn
    logger.info("Starting workflow execution engine",
                host=settings.host, port=settings.port, debug=settings.debug)
    uvicorn.run(
        "main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
        reload_dirs=["."] if settings.debug else None,
        workers=1
    )
