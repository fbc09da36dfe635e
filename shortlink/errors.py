"""
Application error hierarchy and FastAPI exception handlers.

AppError is the base for all typed errors. The global exception handler
converts AppError subclasses to consistent JSON responses, including any
protocol headers the error carries (Retry-After, WWW-Authenticate).

IngestionError never reaches a handler: it is raised and caught inside the
asynchronous click pipeline only.
"""

from __future__ import annotations

import logging
from typing import Any, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from shortlink.audit import AuditAction

logger = logging.getLogger(__name__)

PASSWORD_CHALLENGE = 'LinkPassword realm="short-link"'


class AppError(Exception):
    """Base application error. All typed errors inherit from this."""

    status_code: int = 500
    error_code: str = "internal_error"

    def __init__(
        self,
        message: str,
        *,
        field: Optional[str] = None,
        details: Optional[Any] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.field = field
        self.details = details

    @property
    def headers(self) -> dict[str, str]:
        return {}

    def to_dict(self) -> dict:
        payload: dict = {"error": self.message, "code": self.error_code}
        if self.field is not None:
            payload["field"] = self.field
        if self.details is not None:
            payload["details"] = self.details
        return payload


class ValidationError(AppError):
    status_code = 400
    error_code = "validation_error"


class AuthError(AppError):
    status_code = 401
    error_code = "authentication_error"


class PasswordRequiredError(AuthError):
    error_code = "password_required"

    @property
    def headers(self) -> dict[str, str]:
        return {"WWW-Authenticate": PASSWORD_CHALLENGE}


class InvalidPasswordError(AuthError):
    status_code = 403
    error_code = "invalid_password"


class NotFoundError(AppError):
    status_code = 404
    error_code = "not_found"


class LinkNotFoundError(NotFoundError):
    def __init__(self, code: str) -> None:
        super().__init__("Short URL not found", details={"code": code})


class ConflictError(AppError):
    status_code = 409
    error_code = "conflict"


class StateError(AppError):
    """The link exists but can no longer be resolved."""

    status_code = 410
    error_code = "gone"


class LinkInactiveError(StateError):
    error_code = "link_inactive"

    def __init__(self, code: str) -> None:
        super().__init__("Short URL has been disabled", details={"code": code})


class LinkExpiredError(StateError):
    error_code = "link_expired"

    def __init__(self, code: str, expires_at: Optional[str] = None) -> None:
        details: dict = {"code": code}
        if expires_at is not None:
            details["expires_at"] = expires_at
        super().__init__("Short URL has expired", details=details)


class RateLimitError(AppError):
    status_code = 429
    error_code = "rate_limit_exceeded"

    def __init__(self, retry_after: int) -> None:
        super().__init__(
            f"Too many requests, retry in {retry_after} seconds",
            details={"retry_after": retry_after},
        )
        self.retry_after = retry_after

    @property
    def headers(self) -> dict[str, str]:
        return {"Retry-After": str(self.retry_after)}


class AllocationExhaustedError(AppError):
    status_code = 503
    error_code = "allocation_exhausted"


class IngestionError(Exception):
    """Parse or storage failure inside the click pipeline (internal only)."""


def register_error_handlers(app: FastAPI) -> None:
    """Register global exception handlers on the FastAPI app."""

    @app.exception_handler(AppError)
    async def app_error_handler(request: Request, exc: AppError) -> JSONResponse:
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict(), headers=exc.headers)

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        errors = exc.errors()
        first = errors[0] if errors else {}
        field = ".".join(str(part) for part in first.get("loc", ()) if part != "body") or None
        error = ValidationError(
            first.get("msg", "Invalid request"),
            field=field,
            details=[{"loc": list(e.get("loc", ())), "msg": e.get("msg")} for e in errors],
        )
        services = getattr(request.app.state, "services", None)
        if services is not None:
            services.audit.record(
                request.client.host if request.client else None,
                AuditAction.SECURITY_INVALID_INPUT,
                "rejected",
                details={"path": request.url.path, "field": field},
            )
        return JSONResponse(status_code=error.status_code, content=error.to_dict())

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.error(f"Unhandled error on {request.method} {request.url.path}: {exc}", exc_info=exc)
        return JSONResponse(
            status_code=500,
            content={"error": "An internal server error occurred.", "code": "internal_error"},
        )
