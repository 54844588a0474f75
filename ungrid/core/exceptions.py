"""
Global Exception Handling

Defines the error taxonomy shared by the orchestrators and converts it
into structured JSON responses for the HTTP layer.
"""

import traceback
from typing import Optional, Dict, Any
from datetime import datetime, timezone
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from ungrid.core.logging import get_logger, run_id_var, item_id_var

logger = get_logger(__name__)


# =============================================================================
# Custom Exceptions
# =============================================================================

class UngridBaseException(Exception):
    """Base exception for UnGrid."""

    def __init__(
        self,
        message: str,
        code: int = 500,
        run_id: Optional[str] = None,
        item_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None
    ):
        self.message = message
        self.code = code
        self.run_id = run_id or run_id_var.get()
        self.item_id = item_id or item_id_var.get()
        self.details = details or {}
        super().__init__(self.message)


class ValidationError(UngridBaseException):
    """Raised when input validation fails."""

    def __init__(self, message: str, **kwargs):
        super().__init__(message, code=400, **kwargs)


class MissingCredentialError(UngridBaseException):
    """Raised when no usable access credential is configured.

    Halts the active run; never retried and never recorded as an item failure.
    """

    def __init__(self, message: str = "No usable API key configured", **kwargs):
        super().__init__(message, code=401, **kwargs)


class ExternalAPIError(UngridBaseException):
    """Raised when a call to the generation/detection service fails."""

    def __init__(self, message: str, service: str, http_status: Optional[int] = None, **kwargs):
        super().__init__(message, code=502, **kwargs)
        self.details["service"] = service
        self.details["http_status"] = http_status


class ServiceRefusalError(ExternalAPIError):
    """Raised when the service answered with text instead of an image."""

    def __init__(self, refusal_text: str, service: str = "gemini", **kwargs):
        super().__init__(f"Model Refusal: {refusal_text}", service=service, **kwargs)
        self.details["refusal"] = refusal_text


class EmptyResultError(ExternalAPIError):
    """Raised when the service answered with neither image nor text."""

    def __init__(self, service: str = "gemini", **kwargs):
        super().__init__("No image generated by the service", service=service, **kwargs)


class DetectionError(ExternalAPIError):
    """Raised when panel detection fails or returns an unreadable layout."""

    def __init__(self, message: str, **kwargs):
        super().__init__(message, service="detection", **kwargs)


class ItemNotFoundError(UngridBaseException):
    """Raised when a panel, job or chain step id is unknown."""

    def __init__(self, kind: str, item_id: str, **kwargs):
        super().__init__(f"{kind} not found: {item_id}", code=404, item_id=item_id, **kwargs)
        self.details["kind"] = kind


class RunActiveError(UngridBaseException):
    """Raised when an operation requires that no run is active."""

    def __init__(self, message: str = "A run is already active", **kwargs):
        super().__init__(message, code=409, **kwargs)


class QueueFullError(UngridBaseException):
    """Raised when composing a job into a full queue."""

    def __init__(self, capacity: int, **kwargs):
        super().__init__(f"Job queue is full (capacity {capacity})", code=409, **kwargs)
        self.details["capacity"] = capacity


class RerunConfirmationRequired(UngridBaseException):
    """Raised when every item already succeeded and no forced rerun was requested."""

    def __init__(self, message: str = "All items already succeeded; confirm a full rerun with force=true", **kwargs):
        super().__init__(message, code=409, **kwargs)


# =============================================================================
# Exception Handlers
# =============================================================================

def _error_body(exc: UngridBaseException) -> Dict[str, Any]:
    return {
        "error": exc.message,
        "type": type(exc).__name__,
        "code": exc.code,
        "run_id": exc.run_id,
        "item_id": exc.item_id,
        "details": exc.details,
        "timestamp": datetime.now(timezone.utc).isoformat()
    }


def register_exception_handlers(app: FastAPI):
    """Register custom exception handlers with FastAPI app."""

    @app.exception_handler(UngridBaseException)
    async def ungrid_exception_handler(request: Request, exc: UngridBaseException):
        log = logger.warning if exc.code < 500 else logger.error
        log(
            "ungrid_exception",
            error=exc.message,
            error_type=type(exc).__name__,
            code=exc.code,
            path=str(request.url.path),
            details=exc.details
        )

        return JSONResponse(status_code=exc.code, content=_error_body(exc))

    @app.exception_handler(Exception)
    async def generic_exception_handler(request: Request, exc: Exception):
        logger.error(
            "unhandled_exception",
            error=str(exc),
            error_type=type(exc).__name__,
            path=str(request.url.path),
            traceback=traceback.format_exc()
        )

        return JSONResponse(
            status_code=500,
            content={
                "error": "Internal server error",
                "code": 500,
                "timestamp": datetime.now(timezone.utc).isoformat()
            }
        )
