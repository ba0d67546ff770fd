"""Middleware components for the Pooled Reason API."""

from middleware.metrics import MetricsMiddleware
from middleware.request_id import RequestIDMiddleware

__all__ = [
    "MetricsMiddleware",
    "RequestIDMiddleware",
]
