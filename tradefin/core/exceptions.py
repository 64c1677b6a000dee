"""
Domain exceptions and global exception handlers for the FastAPI application.

Every error response follows the same JSON structure::

    {
        "error": true,
        "message": "<human-readable description>"
    }

The service layer raises the domain exceptions defined here without
importing FastAPI, so business logic stays framework-agnostic.  Every
exception aborts the requested operation; the unit of work rolls back and
the invoice is left exactly as it was.
"""

import logging
from typing import Any, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from tradefin.core.resilience import CircuitBreakerError

logger = logging.getLogger(__name__)


# ────────────────────────────────────────────────────────────────────────────
# Domain exceptions  (raised by service layer, caught by handlers below)
# ────────────────────────────────────────────────────────────────────────────


class AppException(Exception):
    """Base exception for all application-level errors."""

    def __init__(self, status_code: int, message: str, details: Any = None):
        self.status_code = status_code
        self.message = message
        self.details = details
        super().__init__(message)


class NotFoundException(AppException):
    """Resource not found (404)."""

    def __init__(self, resource: str, identifier: Any):
        super().__init__(
            status_code=404,
            message=f"{resource} with id '{identifier}' not found",
        )


class InvalidInputError(AppException):
    """Malformed or out-of-range input (422)."""

    def __init__(self, message: str, details: Any = None):
        super().__init__(status_code=422, message=message, details=details)


class InvalidStateError(AppException):
    """Operation is not valid for the invoice's current status (409)."""

    def __init__(self, message: str):
        super().__init__(status_code=409, message=message)


class InvalidTransitionError(InvalidStateError):
    """A status change outside the lifecycle graph was attempted (409)."""

    def __init__(self, current: Any, attempted: Any):
        self.current = current
        self.attempted = attempted
        super().__init__(
            f"Invalid status transition: '{_label(current)}' → '{_label(attempted)}'"
        )


class AlreadyFinalizedError(InvalidStateError):
    """Verification was already resolved for this invoice (409)."""

    def __init__(self, invoice_id: Any, status: Any):
        self.invoice_id = invoice_id
        super().__init__(
            f"Verification of invoice {invoice_id} is already final "
            f"(status '{_label(status)}')"
        )


class FundingCapExceededError(AppException):
    """Investment would push funding above the invoice's target (409)."""

    def __init__(self, invoice_id: Any, requested: int, remaining: int):
        self.invoice_id = invoice_id
        self.requested = requested
        self.remaining = remaining
        super().__init__(
            status_code=409,
            message=(
                f"Investment of {requested} exceeds the remaining funding "
                f"capacity of invoice {invoice_id} ({remaining})"
            ),
            details={"requested": requested, "remaining": remaining},
        )


class OracleTimeoutError(AppException):
    """The verification oracle did not answer within the configured window (504)."""

    def __init__(self, message: str = "Verification oracle timed out"):
        super().__init__(status_code=504, message=message)


class OracleUnavailableError(AppException):
    """An external data dependency is down, stale or failing (503)."""

    def __init__(self, message: str = "Verification oracle unavailable"):
        super().__init__(status_code=503, message=message)


def _label(value: Optional[Any]) -> str:
    return getattr(value, "value", value)


# ────────────────────────────────────────────────────────────────────────────
# FastAPI exception handler registration
# ────────────────────────────────────────────────────────────────────────────


def add_exception_handlers(app: FastAPI) -> None:
    """Register global exception handlers on the FastAPI application instance."""

    @app.exception_handler(AppException)
    async def app_exception_handler(
        request: Request, exc: AppException
    ) -> JSONResponse:
        """Handle domain-specific exceptions raised by the service layer."""
        content = {"error": True, "message": exc.message}
        if exc.details is not None:
            content["details"] = exc.details
        return JSONResponse(status_code=exc.status_code, content=content)

    @app.exception_handler(CircuitBreakerError)
    async def circuit_breaker_handler(
        request: Request, exc: CircuitBreakerError
    ) -> JSONResponse:
        """A dependency is fast-failing; tell the client when to come back."""
        logger.warning("Rejecting %s %s: %s", request.method, request.url.path, exc)
        return JSONResponse(
            status_code=503,
            headers={"Retry-After": str(int(exc.retry_after) + 1)},
            content={
                "error": True,
                "message": f"Service temporarily unavailable ({exc.name} circuit is open)",
            },
        )

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(
        request: Request, exc: StarletteHTTPException
    ) -> JSONResponse:
        """Handle standard HTTP exceptions (e.g. 404 from path-not-found)."""
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": True, "message": exc.detail},
        )

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(
        request: Request, exc: RequestValidationError
    ) -> JSONResponse:
        """Return a 422 listing every field that failed validation."""
        errors = []
        for err in exc.errors():
            loc = " -> ".join(str(part) for part in err["loc"])
            errors.append({"field": loc, "message": err["msg"]})
        return JSONResponse(
            status_code=422,
            content={"error": True, "message": "Validation failed", "details": errors},
        )

    @app.exception_handler(Exception)
    async def global_exception_handler(
        request: Request, exc: Exception
    ) -> JSONResponse:
        """Catch-all for unexpected exceptions."""
        logger.exception(
            "Unhandled exception on %s %s", request.method, request.url.path
        )
        return JSONResponse(
            status_code=500,
            content={
                "error": True,
                "message": "Internal Server Error. Please contact support.",
            },
        )
