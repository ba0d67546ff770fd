"""Error bodies returned by every endpoint.

Handlers in main.py turn exceptions into one of these shapes:

    {
        "error": "ExternalServiceError",
        "message": "Failed to create automation task",
        "request_id": "4f0c...",
        "timestamp": "2026-01-29T12:00:00+00:00",
        "path": "/api/tasks"
    }

Validation failures add a "validation_errors" list with one entry per field.
"""

from datetime import UTC, datetime
from typing import Any, Iterable, Optional

from pydantic import BaseModel, Field


class ErrorType:
    """Values of the "error" field."""

    VALIDATION_ERROR = "ValidationError"
    NOT_FOUND = "NotFound"
    BAD_REQUEST = "BadRequest"
    SERVICE_UNAVAILABLE = "ServiceUnavailable"
    EXTERNAL_SERVICE_ERROR = "ExternalServiceError"  # automation API failures
    DATABASE_ERROR = "DatabaseError"
    INTERNAL_ERROR = "InternalError"


STATUS_ERROR_TYPES = {
    400: ErrorType.BAD_REQUEST,
    404: ErrorType.NOT_FOUND,
    422: ErrorType.VALIDATION_ERROR,
    502: ErrorType.EXTERNAL_SERVICE_ERROR,
    503: ErrorType.SERVICE_UNAVAILABLE,
}


def error_type_for_status(status_code: int) -> str:
    return STATUS_ERROR_TYPES.get(status_code, ErrorType.INTERNAL_ERROR)


class ErrorResponse(BaseModel):
    error: str = Field(..., examples=["NotFound", "ServiceUnavailable"])
    message: str
    details: Optional[dict[str, Any]] = None
    request_id: Optional[str] = None
    timestamp: str = Field(default_factory=lambda: datetime.now(UTC).isoformat())
    path: Optional[str] = Field(default=None, examples=["/api/knowledge-graph/steps"])


class FieldError(BaseModel):
    """One rejected request field, e.g. body.sessionId."""

    field: str
    message: str
    type: str


class ValidationErrorResponse(ErrorResponse):
    error: str = ErrorType.VALIDATION_ERROR
    validation_errors: list[FieldError] = Field(default_factory=list)


def field_errors(errors: Iterable[dict]) -> list[FieldError]:
    """Flatten FastAPI/pydantic error dicts into FieldErrors."""
    return [
        FieldError(
            field=".".join(str(part) for part in e.get("loc", ())) or "unknown",
            message=e.get("msg", "Validation failed"),
            type=e.get("type", "value_error"),
        )
        for e in errors
    ]


def create_error_response(
    error: str,
    message: str,
    details: Optional[dict[str, Any]] = None,
    request_id: Optional[str] = None,
    path: Optional[str] = None,
) -> dict[str, Any]:
    return ErrorResponse(
        error=error,
        message=message,
        details=details,
        request_id=request_id,
        path=path,
    ).model_dump(exclude_none=True)


def create_validation_error_response(
    message: str,
    errors: Iterable[dict],
    request_id: Optional[str] = None,
    path: Optional[str] = None,
) -> dict[str, Any]:
    """Validation error body built from raw pydantic error dicts."""
    return ValidationErrorResponse(
        message=message,
        validation_errors=field_errors(errors),
        request_id=request_id,
        path=path,
    ).model_dump(exclude_none=True)
