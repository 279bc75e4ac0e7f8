"""FastAPI application entry point.

Wires together: middleware, exception handlers, routes, metrics, health.
Validates config at startup.
"""

from contextlib import asynccontextmanager

import structlog
from fastapi import Depends, FastAPI
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from shared.cache import (
    CacheBackend,
    CacheBackendError,
    close_cache_backend,
    get_cache_backend,
    roundtrip_check,
)
from shared.config import settings
from shared.database import engine
from shared.exceptions import ProblemDetailError
from shared.logging import configure_logging
from shared.metrics import create_metrics_app
from shared.middleware import (
    RequestIdMiddleware,
    http_exception_handler,
    problem_detail_handler,
    request_validation_handler,
    unhandled_exception_handler,
)
from sleep.api import router as sleep_router
from social.api import router as social_router

logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown lifecycle."""
    configure_logging(json_output=settings.log_json, level=settings.log_level)
    logger.info(
        "app_starting",
        cache_enabled=settings.cache_enabled,
        cache_backend=settings.cache_backend,
        database_url=settings.database_url.split("@")[-1],  # hide credentials
    )
    yield
    await close_cache_backend()
    await engine.dispose()
    logger.info("app_shutting_down")


app = FastAPI(
    title="Good Night API",
    description=(
        "Tracks sleep sessions, lets users follow each other, and serves a feed "
        "of followed users' sleep records."
    ),
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(RequestIdMiddleware)

# All errors emit application/problem+json (RFC 9457)
app.add_exception_handler(ProblemDetailError, problem_detail_handler)
app.add_exception_handler(RequestValidationError, request_validation_handler)
app.add_exception_handler(StarletteHTTPException, http_exception_handler)
app.add_exception_handler(Exception, unhandled_exception_handler)

app.include_router(sleep_router)
app.include_router(social_router)

metrics_app = create_metrics_app()
app.mount("/metrics", metrics_app)


@app.get("/health")
async def health():
    return {"status": "ok", "version": app.version}


@app.get("/health/cache")
async def cache_health(backend: CacheBackend = Depends(get_cache_backend)):
    """Write, read and delete a probe key against the configured cache backend."""
    try:
        check = await roundtrip_check(backend)
    except CacheBackendError as exc:
        logger.warning("cache_health_failed", error=str(exc))
        return JSONResponse(
            status_code=503,
            content={
                "status": "error",
                "backend": type(backend).__name__,
                "detail": str(exc),
            },
        )
    if not check["ok"]:
        return JSONResponse(
            status_code=503,
            content={
                "status": "error",
                "backend": type(backend).__name__,
                "detail": "cache read/write mismatch",
                "response_time_ms": check["response_time_ms"],
            },
        )
    return {
        "status": "ok",
        "backend": type(backend).__name__,
        "response_time_ms": check["response_time_ms"],
    }
