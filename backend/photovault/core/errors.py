"""Structured error responses: consistent JSON format for all errors.

Services raise ``ServiceError`` subclasses carrying an HTTP status and a
machine-readable ``code``; the handlers below turn every error into
``{error, status_code, code, detail, request_id}``.
"""

import logging

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

logger = logging.getLogger("photovault.errors")


class ServiceError(Exception):
    """Base class for errors surfaced to API callers."""

    status_code = status.HTTP_400_BAD_REQUEST
    code = "BAD_REQUEST"

    def __init__(self, message: str, *, code: str | None = None, extra: dict | None = None):
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code
        self.extra = extra or {}


class NotFoundError(ServiceError):
    status_code = status.HTTP_404_NOT_FOUND
    code = "NOT_FOUND"


class ValidationFailure(ServiceError, ValueError):
    """Malformed input, rejected before any capability call."""

    status_code = status.HTTP_400_BAD_REQUEST
    code = "VALIDATION_FAILED"


class ConflictError(ServiceError):
    status_code = status.HTTP_409_CONFLICT
    code = "CONFLICT"


class NotRestoredError(ConflictError):
    code = "NOT_RESTORED"

    def __init__(self, status_value: str):
        super().__init__(
            "Photo is not yet restored. Request a restore first, "
            "then check the restore status after the estimated window.",
            extra={"status": status_value, "needs_restore_request": status_value == "archived"},
        )


class AccessDenied(ServiceError):
    status_code = status.HTTP_403_FORBIDDEN
    code = "FORBIDDEN"

    def __init__(self, message: str, *, code: str, status_code: int | None = None,
                 extra: dict | None = None):
        super().__init__(message, code=code, extra=extra)
        if status_code is not None:
            self.status_code = status_code


class CapabilityFailure(ServiceError):
    """Unexpected failure from the storage or payment provider."""

    status_code = status.HTTP_502_BAD_GATEWAY
    code = "CAPABILITY_FAILED"


class RetrievalFailure(CapabilityFailure):
    code = "RETRIEVAL_FAILED"


class BillingFailure(CapabilityFailure):
    code = "BILLING_FAILED"


def _error_body(request: Request, status_code: int, detail, code: str | None = None) -> dict:
    return {
        "error": True,
        "status_code": status_code,
        "code": code,
        "detail": detail,
        "request_id": getattr(request.state, "request_id", None),
    }


def register_error_handlers(app: FastAPI) -> None:
    """Register global exception handlers on the FastAPI app."""

    @app.exception_handler(ServiceError)
    async def service_error_handler(request: Request, exc: ServiceError):
        if isinstance(exc, CapabilityFailure):
            logger.warning("capability failure path=%s code=%s: %s",
                           request.url.path, exc.code, exc.message)
        content = _error_body(request, exc.status_code, exc.message, exc.code)
        content.update(exc.extra)
        return JSONResponse(status_code=exc.status_code, content=content)

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException):
        return JSONResponse(
            status_code=exc.status_code,
            content=_error_body(request, exc.status_code, exc.detail),
            headers=getattr(exc, "headers", None),
        )

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        content = _error_body(
            request, status.HTTP_422_UNPROCESSABLE_ENTITY, "Validation error", "VALIDATION_FAILED"
        )
        content["errors"] = exc.errors()
        return JSONResponse(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, content=content)

    @app.exception_handler(Exception)
    async def generic_exception_handler(request: Request, exc: Exception):
        logger.exception("unhandled error path=%s", request.url.path)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content=_error_body(request, 500, "Internal server error"),
        )
