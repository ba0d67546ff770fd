"""FastAPI application for the pooled reasoning knowledge graph.

Features:
- Cross-session step pooling of browser automation reasoning
- Standardized error response schema
- Request IDs and Prometheus metrics on every request
- Response compression (GZip)
- Structured startup logging
"""

import os
import platform
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import JSONResponse, Response
from neo4j.exceptions import ServiceUnavailable
from starlette.exceptions import HTTPException as StarletteHTTPException

from config import get_settings
from db.neo4j import close_neo4j, init_neo4j
from db.redis import close_redis, get_redis, init_redis
from middleware.metrics import MetricsMiddleware
from middleware.request_id import RequestIDMiddleware
from models.errors import (
    ErrorType,
    create_error_response,
    create_validation_error_response,
    error_type_for_status,
)
from routers import knowledge_graph, tasks
from services.automation import close_automation_client
from services.knowledge_graph import (
    close_knowledge_graph_service,
    get_knowledge_graph_service,
)
from services.llm import close_llm_client
from services.task_stream import close_task_stream_ingestor
from utils.logging import configure_logging, get_logger
from utils.metrics import get_metrics, set_app_info

APP_VERSION = "0.1.0"
APP_NAME = "Pooled Reason API"

logger = get_logger(__name__)


def get_request_id(request: Request) -> str | None:
    """Extract request ID from request state or headers."""
    if hasattr(request.state, "request_id"):
        return request.state.request_id
    return request.headers.get("X-Request-ID")


async def check_neo4j_connection() -> bool:
    """Verify Neo4j connection is healthy."""
    from db.neo4j import driver

    if driver is None:
        return False
    try:
        async with driver.session() as session:
            await session.run("RETURN 1")
        return True
    except Exception as e:
        logger.error(f"Neo4j health check failed: {e}")
        return False


async def check_redis_connection() -> bool:
    """Verify Redis connection is healthy."""
    client = get_redis()
    if client is None:
        return False
    try:
        await client.ping()
        return True
    except Exception as e:
        logger.error(f"Redis health check failed: {e}")
        return False


async def init_services() -> dict[str, bool]:
    """Connect databases and prepare the knowledge graph.

    Neo4j is required. Redis only backs the graph cache, so a failure there
    is logged and the app runs uncached.
    """
    services_status = {"neo4j": False, "redis": False}

    try:
        await init_neo4j()
        services_status["neo4j"] = True
        logger.info("Neo4j connection established")
    except Exception as e:
        logger.error(f"Failed to connect to Neo4j: {e}")
        raise

    try:
        await init_redis()
        services_status["redis"] = get_redis() is not None
    except Exception as e:
        logger.warning(f"Redis unavailable, graph caching disabled: {e}")
        await close_redis()

    try:
        await get_knowledge_graph_service().initialize()
    except Exception as e:
        logger.error(f"Failed to initialize knowledge graph: {e}")
        await close_redis()
        await close_neo4j()
        raise

    return services_status


async def close_services():
    """Stop background work first, then close clients and databases."""
    errors = []

    for name, close in (
        ("task followers", close_task_stream_ingestor),
        ("knowledge graph", close_knowledge_graph_service),
        ("automation client", close_automation_client),
        ("LLM client", close_llm_client),
        ("Redis", close_redis),
        ("Neo4j", close_neo4j),
    ):
        try:
            await close()
            logger.info(f"Closed {name}")
        except Exception as e:
            errors.append(f"{name}: {e}")
            logger.error(f"Error closing {name}: {e}")

    if errors:
        logger.warning(f"Errors during shutdown: {errors}")


def log_startup_banner(settings, services_status: dict[str, bool]):
    """Log structured startup information."""
    environment = "development" if settings.debug else "production"
    port = int(os.getenv("PORT", os.getenv("UVICORN_PORT", "8000")))
    host = os.getenv("HOST", os.getenv("UVICORN_HOST", "127.0.0.1"))

    connected_services = [svc for svc, ok in services_status.items() if ok]

    logger.info(
        "Application startup complete",
        extra={
            "event": "startup",
            "app_name": APP_NAME,
            "app_version": APP_VERSION,
            "environment": environment,
            "host": host,
            "port": port,
            "python_version": platform.python_version(),
            "services": {svc: "connected" if ok else "unavailable" for svc, ok in services_status.items()},
            "config": {
                "llm_provider": settings.llm_provider,
                "rate_limit_requests": settings.rate_limit_requests,
                "rate_limit_window": settings.rate_limit_window,
                "analysis_batch_size": settings.analysis_batch_size,
                "step_collection_delay": settings.step_collection_delay,
                "max_sessions_per_step": settings.max_sessions_per_step,
            },
        },
    )

    logger.info(f"App: {APP_NAME} v{APP_VERSION}")
    logger.info(f"Environment: {environment}")
    logger.info(f"Listening on: http://{host}:{port}")
    logger.info(f"Services connected: {', '.join(connected_services) or 'none'}")
    logger.info(f"API docs available at: http://{host}:{port}/docs")


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    configure_logging(level=settings.log_level)
    set_app_info(APP_VERSION, "development" if settings.debug else "production")

    logger.info("=" * 60)
    logger.info(f"{APP_NAME} v{APP_VERSION} starting up...")

    try:
        services_status = await init_services()
        log_startup_banner(settings, services_status)
        logger.info("=" * 60)
    except Exception as e:
        logger.error(f"Failed to initialize services: {e}")
        logger.error("=" * 60)
        raise

    yield

    logger.info("=" * 60)
    logger.info(
        "Application shutdown initiated",
        extra={"event": "shutdown", "app_name": APP_NAME, "app_version": APP_VERSION},
    )
    await close_services()
    logger.info("Graceful shutdown complete")
    logger.info("=" * 60)


app = FastAPI(
    title=APP_NAME,
    description="Cross-session knowledge graph of browser automation reasoning",
    version=APP_VERSION,
    lifespan=lifespan,
)


# =============================================================================
# Exception Handlers
# =============================================================================


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    errors = exc.errors()
    logger.warning(
        f"Validation error on {request.method} {request.url.path}: "
        f"{len(errors)} error(s)"
    )
    response = create_validation_error_response(
        message="Request validation failed",
        errors=errors,
        request_id=get_request_id(request),
        path=str(request.url.path),
    )
    return JSONResponse(status_code=422, content=response)


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(
    request: Request, exc: StarletteHTTPException
) -> JSONResponse:
    response = create_error_response(
        error=error_type_for_status(exc.status_code),
        message=exc.detail if isinstance(exc.detail, str) else str(exc.detail),
        request_id=get_request_id(request),
        path=str(request.url.path),
    )
    return JSONResponse(status_code=exc.status_code, content=response, headers=exc.headers)


@app.exception_handler(ServiceUnavailable)
async def neo4j_unavailable_handler(request: Request, exc: ServiceUnavailable) -> JSONResponse:
    logger.error(f"Neo4j unavailable during {request.method} {request.url.path}: {exc}")
    response = create_error_response(
        error=ErrorType.DATABASE_ERROR,
        message="Graph database unavailable. Please try again later.",
        request_id=get_request_id(request),
        path=str(request.url.path),
    )
    return JSONResponse(status_code=503, content=response)


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception(
        f"Unhandled exception on {request.method} {request.url.path}: "
        f"{type(exc).__name__}: {exc}"
    )

    # Don't expose internal error details to clients
    response = create_error_response(
        error=ErrorType.INTERNAL_ERROR,
        message="An unexpected error occurred. Please try again later.",
        request_id=get_request_id(request),
        path=str(request.url.path),
    )
    return JSONResponse(status_code=500, content=response)


# =============================================================================
# Middleware (last added = first executed on request)
# =============================================================================

app.add_middleware(MetricsMiddleware)

settings = get_settings()
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Content-Type", "X-Request-ID", "Accept", "Accept-Encoding"],
    expose_headers=["X-Request-ID"],
    max_age=3600,
)

app.add_middleware(GZipMiddleware, minimum_size=1000)

app.add_middleware(RequestIDMiddleware)

# =============================================================================
# Routers
# =============================================================================

app.include_router(
    knowledge_graph.router, prefix="/api/knowledge-graph", tags=["Knowledge Graph"]
)
app.include_router(tasks.router, prefix="/api/tasks", tags=["Tasks"])


# =============================================================================
# Health, Metrics & Status Endpoints
# =============================================================================


@app.get("/health")
async def health_check():
    return {"status": "healthy"}


@app.get("/health/ready")
async def readiness_check():
    """Readiness check. 503 if Neo4j, or a configured Redis, is unhealthy."""
    neo4j_ok = await check_neo4j_connection()
    checks = {"neo4j": "healthy" if neo4j_ok else "unhealthy"}
    ready = neo4j_ok

    if get_settings().redis_url:
        redis_ok = await check_redis_connection()
        checks["redis"] = "healthy" if redis_ok else "unhealthy"
        ready = ready and redis_ok

    status = {"ready": ready, "checks": checks}
    if not ready:
        return JSONResponse(status_code=503, content=status)
    return status


@app.get("/metrics")
async def metrics():
    """Prometheus scrape endpoint."""
    return Response(content=get_metrics(), media_type="text/plain; version=0.0.4; charset=utf-8")


@app.get("/")
async def root():
    return {
        "name": APP_NAME,
        "version": APP_VERSION,
        "docs": "/docs",
    }
