"""Prometheus instrumentation for HTTP requests."""

import re
import time

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from utils.metrics import REQUEST_COUNT, REQUEST_DURATION


def normalize_path(path: str) -> str:
    """Collapse session ids and numeric ids so endpoint labels stay bounded.

    Session ids come from the automation API and have no fixed format, so
    the segment after /sessions/ is always replaced.
    """
    path = re.sub(r"/sessions/[^/]+", "/sessions/{session_id}", path)
    path = re.sub(
        r"[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}",
        "{id}",
        path,
        flags=re.IGNORECASE,
    )
    path = re.sub(r"/\d+(?=/|$)", "/{id}", path)
    return path


class MetricsMiddleware(BaseHTTPMiddleware):
    """Records pooled_reason_http_requests_total and request durations."""

    EXCLUDE_PATHS = {"/health", "/health/ready", "/metrics", "/"}

    async def dispatch(self, request: Request, call_next) -> Response:
        path = request.url.path
        if path in self.EXCLUDE_PATHS:
            return await call_next(request)

        method = request.method
        endpoint = normalize_path(path)
        start_time = time.perf_counter()

        try:
            response = await call_next(request)
            status_code = response.status_code
        except Exception:
            status_code = 500
            raise
        finally:
            duration = time.perf_counter() - start_time
            REQUEST_COUNT.labels(
                method=method, endpoint=endpoint, status_code=str(status_code)
            ).inc()
            REQUEST_DURATION.labels(method=method, endpoint=endpoint).observe(duration)

        return response
