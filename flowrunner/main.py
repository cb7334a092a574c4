"""
FastAPI backend for the workflow execution core.

Runs the HTTP/SSE surface, the queue workers and the time-block scheduler
in one process so execution events reach stream subscribers in memory.
"""

from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, ORJSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from flowrunner.core.container import container
from flowrunner.core.logging import configure_logging, get_logger
from flowrunner.routers import executions
from flowrunner.services.execution.models import utcnow

# Initialize settings and logging
settings = container.settings()
configure_logging(settings)
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan management."""
    logger.info("Starting flowrunner")

    container.wire(modules=["flowrunner.routers.executions"])

    await container.database().startup()
    await container.cache().startup()

    scheduler = container.scheduler()
    await scheduler.start()

    worker_pool = container.worker_pool() if settings.workers_enabled else None
    if worker_pool:
        await worker_pool.start()

    logger.info("Services started successfully", workers_enabled=settings.workers_enabled)
    yield

    # Stop producers of work first, then the consumers, then the stores
    scheduler.shutdown()
    if worker_pool:
        await worker_pool.stop()
    await container.llm_client().close()
    await container.cache().shutdown()
    await container.database().shutdown()
    logger.info("Services shutdown complete")


app = FastAPI(
    title="flowrunner",
    version="0.1.0",
    description="Workflow execution core: orchestrator, queues, locks and live execution events",
    lifespan=lifespan,
    default_response_class=ORJSONResponse
)


class CatchAllExceptionsMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        try:
            return await call_next(request)
        except Exception as e:
            logger.error("Unhandled exception", path=request.url.path,
                         error_type=type(e).__name__, error=str(e), exc_info=True)
            return JSONResponse(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                content={
                    "success": False,
                    "error": f"{type(e).__name__}: {str(e)}",
                    "detail": "Internal server error"
                }
            )


app.add_middleware(CatchAllExceptionsMiddleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(executions.router)


@app.get("/health")
async def health_check():
    """Store connectivity and queue depth."""
    job_queue = container.job_queue()
    database_ok = await container.database().health_check()
    redis_ok = await container.cache().health_check()

    queues = {}
    if redis_ok:
        for name in job_queue.configs:
            queues[name.value] = await job_queue.metrics(name)

    return {
        "status": "OK" if database_ok and redis_ok else "DEGRADED",
        "service": "flowrunner",
        "version": "0.1.0",
        "environment": "development" if settings.debug else "production",
        "database": database_ok,
        "redis": redis_ok,
        "scheduler_running": container.scheduler().running,
        "queues": queues,
        "timestamp": utcnow().isoformat()
    }


if __name__ == "__main__":
    import uvicorn
    logger.info("Starting flowrunner", host=settings.host, port=settings.port, debug=settings.debug)
    uvicorn.run(
        "flowrunner.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
    )
