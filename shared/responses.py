"""Response envelope metadata and per-request metrics shared by all routers."""

import time
from datetime import UTC, datetime
from typing import Any

from shared.config import settings
from shared.metrics import api_requests_total, api_response_duration_seconds
from shared.middleware import request_id_var


def response_meta() -> dict[str, Any]:
    return {
        "request_id": request_id_var.get(""),
        "timestamp": datetime.now(UTC).isoformat(),
        "api_version": settings.api_version,
    }


def observe_request(endpoint: str, method: str, status_code: int, started: float) -> None:
    api_requests_total.labels(endpoint=endpoint, method=method, status_code=str(status_code)).inc()
    api_response_duration_seconds.labels(endpoint=endpoint).observe(time.monotonic() - started)
