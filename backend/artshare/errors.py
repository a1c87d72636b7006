"""
Typed billing errors and their FastAPI exception handler.

Services raise these instead of HTTPException so webhook handlers and
background tasks can share the same code paths. The handler renders them
in FastAPI's usual ``{"detail": ...}`` shape.
"""

import structlog
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

logger = structlog.get_logger(__name__)


class BillingError(Exception):
    """Base error for the billing subsystem.

    Args:
        message: Human readable message, returned to HTTP callers.
        context: Extra key-value pairs for structured logging.
    """

    status_code = 500

    def __init__(self, message: str, *, context: dict | None = None) -> None:
        self.message = message
        self.context = context or {}
        super().__init__(message)


class BadRequestError(BillingError):
    """Caller supplied invalid or incomplete input."""

    status_code = 400


class NotFoundError(BillingError):
    """A record the caller relies on does not exist."""

    status_code = 404


class InternalBillingError(BillingError):
    """Misconfiguration, incomplete provider data or a failed dependency."""

    status_code = 500


async def billing_error_handler(request: Request, exc: BillingError) -> JSONResponse:
    """Convert BillingError into a JSON error response."""
    if exc.status_code >= 500:
        logger.error(
            "billing_request_failed",
            path=request.url.path,
            error=exc.message,
            error_kind=type(exc).__name__,
            **exc.context,
        )
    else:
        logger.info(
            "billing_request_rejected",
            path=request.url.path,
            status_code=exc.status_code,
            error=exc.message,
        )
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})


def register_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(BillingError, billing_error_handler)
