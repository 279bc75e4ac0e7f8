"""Request ID propagation, access logging and problem+json error handlers."""

import time
from collections.abc import Awaitable, Callable
from contextvars import ContextVar
from typing import Any
from uuid import uuid4

import structlog
from fastapi import Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.middleware.base import BaseHTTPMiddleware

from shared.exceptions import PROBLEM_BASE, ProblemDetailError

REQUEST_ID_HEADER = "X-Request-ID"
PROBLEM_JSON = "application/problem+json"

request_id_var: ContextVar[str] = ContextVar("request_id", default="")

logger = structlog.get_logger()


class RequestIdMiddleware(BaseHTTPMiddleware):
    """Tag every request with an id and write one access log line for it.

    A client-supplied X-Request-ID is reused; otherwise a UUID v4 is minted.
    The id is echoed on the response and bound into structlog contextvars
    for everything logged while the request is handled.
    """

    async def dispatch(
        self, request: Request, call_next: Callable[[Request], Awaitable[Response]]
    ) -> Response:
        rid = request.headers.get(REQUEST_ID_HEADER) or str(uuid4())
        request_id_var.set(rid)
        structlog.contextvars.bind_contextvars(request_id=rid)
        started = time.monotonic()

        try:
            response = await call_next(request)
            response.headers[REQUEST_ID_HEADER] = rid
            logger.info(
                "request_completed",
                method=request.method,
                path=request.url.path,
                status=response.status_code,
                duration_ms=round((time.monotonic() - started) * 1000, 2),
            )
            return response
        finally:
            structlog.contextvars.unbind_contextvars("request_id")


def _problem(request: Request, status: int, title: str, detail: str, **extra: Any) -> JSONResponse:
    body: dict[str, Any] = {
        "type": extra.pop("type_uri", "about:blank"),
        "title": title,
        "status": status,
        "detail": detail,
        "instance": request.url.path,
    }
    body.update({key: value for key, value in extra.items() if value})
    return JSONResponse(status_code=status, content=body, media_type=PROBLEM_JSON)


async def problem_detail_handler(request: Request, exc: ProblemDetailError) -> JSONResponse:
    """Render a ProblemDetailError, including the machine-readable reason."""
    logger.info(
        "request_rejected",
        path=request.url.path,
        status=exc.status,
        reason=exc.reason,
    )
    return _problem(
        request,
        exc.status,
        exc.title,
        exc.detail,
        type_uri=exc.type_uri,
        reason=exc.reason,
        violations=exc.violations,
    )


async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Request schema failures become 422 problems with a violations list."""
    violations = []
    for err in exc.errors():
        loc = err.get("loc", ())
        field = ".".join(str(part) for part in loc if part not in ("body", "query", "path"))
        violations.append(
            {
                "field": field or "(root)",
                "message": err.get("msg", "Validation error"),
                "constraint": err.get("type", "validation"),
            }
        )

    return _problem(
        request,
        422,
        "Validation Error",
        f"Request contains {len(violations)} validation error(s)",
        type_uri=f"{PROBLEM_BASE}/validation-error",
        reason="validation_error",
        violations=violations,
    )


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    """Routing errors (unknown path, wrong method) in the same problem format."""
    detail = exc.detail if isinstance(exc.detail, str) else str(exc.detail)
    return _problem(request, exc.status_code, detail, detail)


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.error("unhandled_exception", path=request.url.path, exc_info=exc)
    return _problem(
        request,
        500,
        "Internal Server Error",
        "An unexpected error occurred",
        type_uri=f"{PROBLEM_BASE}/internal-error",
    )
