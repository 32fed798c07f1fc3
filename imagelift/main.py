"""
imagelift 4K/8K Enhancement Pipeline - Main Application

FastAPI application with:
- API versioning (/api/v1/)
- Structured logging with structlog
- Prometheus metrics
- Global exception handling
- In-process (asyncio) or Celery pipeline execution
"""

import time
from contextlib import asynccontextmanager
from datetime import datetime
from pathlib import Path

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.staticfiles import StaticFiles
from fastapi.responses import JSONResponse
import redis.asyncio as redis
from sqlalchemy import text

from imagelift.core.config import settings
from imagelift.core.database import create_engine_for, create_session_maker, create_db_and_tables
from imagelift.core.logging import setup_logging, get_logger
from imagelift.core.exceptions import register_exception_handlers
from imagelift.core.metrics import set_app_info, http_requests_total, http_request_duration_seconds
from imagelift.core.storage import create_storage
from imagelift.api.v1 import api_v1_router
from imagelift.modules.enhancement.repositories import InMemoryJobStore, SQLJobStore
from imagelift.modules.enhancement.services import EnhancementService
from imagelift.pipeline.dispatch import AsyncioDispatcher, CeleryDispatcher
from imagelift.pipeline.executor import create_executor


# =============================================================================
# Initialize Logging
# =============================================================================
setup_logging(
    log_level=settings.LOG_LEVEL,
    json_format=settings.LOG_FORMAT_JSON,
    app_version=settings.APP_VERSION
)
logger = get_logger(__name__)


# =============================================================================
# Lifespan Handler
# =============================================================================
@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler - builds the pipeline on startup, drains it on shutdown."""
    startup_start = time.time()
    settings.validate_backends()

    logger.info(
        "application_starting",
        app_name=settings.APP_NAME,
        version=settings.APP_VERSION,
        environment=settings.ENVIRONMENT,
        pipeline_backend=settings.PIPELINE_BACKEND,
        job_store_backend=settings.JOB_STORE_BACKEND,
        renderer=settings.RENDERER
    )

    storage = create_storage(settings)
    app.state.storage = storage

    # Job store
    app.state.db_engine = None
    if settings.JOB_STORE_BACKEND == "sql":
        app.state.db_engine = create_engine_for(settings.DATABASE_URL)
        await create_db_and_tables(app.state.db_engine)
        store = SQLJobStore(create_session_maker(app.state.db_engine))
        logger.info("database_initialized")
    else:
        store = InMemoryJobStore()

    # Dispatcher
    app.state.redis = None
    if settings.PIPELINE_BACKEND == "celery":
        dispatcher = CeleryDispatcher()
        app.state.redis = redis.from_url(
            settings.celery_broker_url,
            encoding="utf-8",
            decode_responses=True
        )
        logger.info("redis_connected", url=settings.celery_broker_url)
    else:
        dispatcher = AsyncioDispatcher(create_executor(settings, store, storage))
    app.state.dispatcher = dispatcher

    app.state.enhancement_service = EnhancementService(
        store=store,
        storage=storage,
        dispatcher=dispatcher,
        tiers=settings.resolution_tiers,
        max_upload_size_bytes=settings.MAX_UPLOAD_SIZE_BYTES,
        allowed_content_types=settings.allowed_content_types,
        upload_folder=settings.UPLOAD_FOLDER
    )

    set_app_info(
        version=settings.APP_VERSION,
        environment=settings.ENVIRONMENT
    )

    startup_time = time.time() - startup_start
    logger.info(
        "application_ready",
        startup_time_seconds=startup_time,
        tiers=[label for label, _ in settings.resolution_tiers]
    )

    yield

    # Shutdown
    logger.info("application_shutting_down")
    await dispatcher.shutdown()
    if app.state.redis is not None:
        await app.state.redis.aclose()
    if app.state.db_engine is not None:
        await app.state.db_engine.dispose()
    logger.info("application_shutdown_complete")


# =============================================================================
# Create FastAPI Application
# =============================================================================
app = FastAPI(
    title=settings.APP_NAME,
    description="""
    Asynchronous image enhancement service.

    Upload an image and receive two enhanced derivatives:

    1. **4K** - 3840px wide
    2. **8K** - 7680px wide

    Stages render one after the other, smallest first. Poll
    `/api/v1/status/{job_id}` until the job is `COMPLETED` or `FAILED`,
    then download each derivative from `/api/v1/enhance/{job_id}/download/{label}`.
    """,
    version=settings.APP_VERSION,
    lifespan=lifespan,
    docs_url="/api/docs",
    redoc_url="/api/redoc",
    openapi_url="/api/openapi.json"
)


# =============================================================================
# Middleware
# =============================================================================

# CORS
cors_origins = settings.CORS_ORIGINS.split(",")
app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Request timing middleware
@app.middleware("http")
async def add_request_timing(request: Request, call_next):
    """Track request timing for metrics."""
    start_time = time.time()
    response = await call_next(request)
    duration = time.time() - start_time

    # Label by route template so job ids don't explode cardinality
    route = request.scope.get("route")
    endpoint = getattr(route, "path", request.url.path)

    http_request_duration_seconds.labels(
        method=request.method,
        endpoint=endpoint
    ).observe(duration)

    http_requests_total.labels(
        method=request.method,
        endpoint=endpoint,
        status=response.status_code
    ).inc()

    response.headers["X-Process-Time"] = str(duration)

    return response


# =============================================================================
# Register Exception Handlers
# =============================================================================
register_exception_handlers(app)


# =============================================================================
# Include API Routers
# =============================================================================
app.include_router(api_v1_router)


# =============================================================================
# Static Files
# =============================================================================

# Serve rendered derivatives; uploads are never exposed
output_dir = Path(settings.LOCAL_STORAGE_PATH) / settings.OUTPUT_FOLDER
output_dir.mkdir(parents=True, exist_ok=True)
app.mount(
    f"/static/storage/{settings.OUTPUT_FOLDER}",
    StaticFiles(directory=str(output_dir)),
    name="storage"
)


# =============================================================================
# Root Endpoints
# =============================================================================

@app.get("/", tags=["root"])
async def root():
    """Root endpoint with API information."""
    return {
        "name": settings.APP_NAME,
        "version": settings.APP_VERSION,
        "environment": settings.ENVIRONMENT,
        "docs": "/api/docs",
        "api_v1": "/api/v1",
        "metrics": "/api/v1/metrics",
        "tiers": {label: width for label, width in settings.resolution_tiers}
    }


@app.get("/health", tags=["health"])
async def health():
    """Health check endpoint."""
    return {
        "status": "healthy",
        "version": settings.APP_VERSION
    }


@app.get("/api/health", tags=["health"])
async def api_health():
    """Liveness check with server timestamp."""
    return {"status": "OK", "timestamp": datetime.utcnow().isoformat() + "Z"}


@app.get("/ready", tags=["health"])
async def ready(request: Request):
    """Readiness check - verifies the configured dependencies are available."""
    checks = {
        "storage": Path(settings.LOCAL_STORAGE_PATH).is_dir()
    }

    if request.app.state.db_engine is not None:
        checks["database"] = False
        try:
            async with request.app.state.db_engine.connect() as conn:
                await conn.execute(text("SELECT 1"))
            checks["database"] = True
        except Exception as e:
            logger.warning("readiness_database_failed", error=str(e))

    if request.app.state.redis is not None:
        checks["redis"] = False
        try:
            await request.app.state.redis.ping()
            checks["redis"] = True
        except Exception as e:
            logger.warning("readiness_redis_failed", error=str(e))

    all_ready = all(checks.values())

    return JSONResponse(
        status_code=200 if all_ready else 503,
        content={
            "ready": all_ready,
            "checks": checks,
            "pipeline_backend": settings.PIPELINE_BACKEND
        }
    )


# =============================================================================
# Development Server
# =============================================================================
if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "imagelift.main:app",
        host="0.0.0.0",
        port=8000,
        reload=True,
        log_level="info"
    )
