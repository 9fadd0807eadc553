"""Budget Planner sync engine API - Main entry point."""

from contextlib import asynccontextmanager
from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from app.config import get_settings
from app.cron import create_stale_sync_task
from app.engine import build_engine
from app.logging_config import get_logger, setup_logging
from app.routers import (
    cron_router,
    plaid_router,
    queue_router,
    sync_router,
    webhooks_router,
)
from app.schemas.common import ErrorResponse


settings = get_settings()
logger = get_logger("main")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan events."""
    # Startup
    setup_logging()
    logger.info(f"Starting {settings.app_name} API...")
    engine = build_engine(settings)
    app.state.engine = engine

    if settings.run_workers:
        engine.start()
    if settings.enable_cron_jobs:
        enqueue_stale_syncs = create_stale_sync_task(
            engine.scheduler, settings.cron_interval_seconds
        )
        await enqueue_stale_syncs()

    yield

    # Shutdown
    logger.info(f"Shutting down {settings.app_name} API...")
    engine.shutdown()


app = FastAPI(
    title=settings.app_name,
    description="External-account synchronization engine: Plaid sync jobs, webhooks and triggers",
    version="1.0.0",
    docs_url="/docs" if settings.debug else None,
    redoc_url="/redoc" if settings.debug else None,
    lifespan=lifespan,
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"] if settings.is_development else [],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Global exception handler
@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Handle uncaught exceptions."""
    logger.exception(f"Unhandled error on {request.method} {request.url.path}")
    body = ErrorResponse(
        error="Internal server error",
        detail=str(exc) if settings.debug else None,
    )
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=body.model_dump(exclude_none=True),
    )


# Health check endpoint
@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {
        "status": "healthy",
        "app": settings.app_name,
        "version": "1.0.0",
    }


# Include routers with API prefix
api_prefix = settings.api_v1_prefix

app.include_router(cron_router, prefix=api_prefix)
app.include_router(plaid_router, prefix=api_prefix)
app.include_router(queue_router, prefix=api_prefix)
app.include_router(sync_router, prefix=api_prefix)
app.include_router(webhooks_router, prefix=api_prefix)


# Root endpoint
@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "app": settings.app_name,
        "version": "1.0.0",
        "docs": "/docs" if settings.debug else "Disabled in production",
        "api": settings.api_v1_prefix,
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "app.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.is_development,
    )
