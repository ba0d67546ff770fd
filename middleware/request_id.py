"""Request ID middleware for request tracing.

Every request gets an X-Request-ID (taken from the incoming header when
present). The id is kept on request.state, echoed in the response and put
in the logging context. Routes scoped to one automation session also put
the session id in the logging context.
"""

import re
import uuid

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from utils.logging import clear_request_context, set_request_context

SESSION_PATH_PATTERN = re.compile(r"/sessions/([^/]+)")


class RequestIDMiddleware(BaseHTTPMiddleware):
    """Middleware that generates and propagates request IDs."""

    async def dispatch(self, request: Request, call_next) -> Response:
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        request.state.request_id = request_id

        match = SESSION_PATH_PATTERN.search(request.url.path)
        set_request_context(
            request_id=request_id,
            session_id=match.group(1) if match else None,
        )

        try:
            response = await call_next(request)
            response.headers["X-Request-ID"] = request_id
            return response
        finally:
            clear_request_context()
