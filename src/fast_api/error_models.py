# file: src/fast_api/error_models.py
# Error bodies returned by FastApiManager's exception handlers. Every failure,
# domain or framework, answers with the same {success: false, error, detail, ...} shape.
from typing import Optional, Any, Dict, List
from pydantic import BaseModel


class ErrorResponse(BaseModel):
    success: bool = False
    error: str  # short title, e.g. "Not Connected"
    detail: Optional[str] = None
    status_code: int
    timestamp: str  # ISO-8601 UTC
    path: Optional[str] = None


class ValidationErrorResponse(ErrorResponse):
    """Malformed body or params; errors lists the failing locations."""
    errors: Optional[List[Dict[str, Any]]] = None


class RateLimitResponse(ErrorResponse):
    retry_after: Optional[int] = None  # seconds


# OpenAPI documentation for RelayManager routes
RELAY_ERROR_RESPONSES: Dict[int, Dict[str, Any]] = {
    400: {"model": ValidationErrorResponse, "description": "Missing or invalid user id, number or message"},
    500: {"model": ErrorResponse, "description": "Session creation, send or credential failure"},
}
SEND_ERROR_RESPONSES: Dict[int, Dict[str, Any]] = {
    **RELAY_ERROR_RESPONSES,
    401: {"model": ErrorResponse, "description": "Session missing or not connected"},
    429: {"model": RateLimitResponse, "description": "Send rate limit exceeded"},
}
