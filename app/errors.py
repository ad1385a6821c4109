"""Application error taxonomy and the FastAPI handlers that render it.

Services raise these exceptions; routers never build error responses by hand.
Every error leaves the API as the standard envelope produced by
:func:`app.routes_shared.api_error`.
"""
from __future__ import annotations

import logging
from typing import Any, List, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException

from .routes_shared import api_error

logger = logging.getLogger(__name__)


class AppError(Exception):
    status_code = 500
    default_message = "Internal server error"
    code: Optional[str] = None

    def __init__(self, message: Optional[str] = None, *, errors: Optional[List[Any]] = None,
                 status_code: Optional[int] = None):
        self.message = message or self.default_message
        self.errors = errors
        if status_code is not None:
            self.status_code = status_code
        super().__init__(self.message)


class ValidationError(AppError):
    status_code = 400
    default_message = "Validation failed"


class OrderingError(ValidationError):
    default_message = "Invalid order"


class InvalidTransitionError(ValidationError):
    default_message = "Invalid status transition"


class AuthenticationError(AppError):
    status_code = 401
    default_message = "Authentication required"
    code = "UNAUTHENTICATED"


class AuthorizationError(AppError):
    status_code = 403
    default_message = "Access denied"

    def __init__(self, message: Optional[str] = None, *, reason: Optional[str] = None, **kw):
        self.reason = reason
        self.code = reason
        super().__init__(message, **kw)


class NotFoundError(AppError):
    status_code = 404
    default_message = "Not found"


class ConflictError(AppError):
    status_code = 409
    default_message = "Resource already exists"


class PayloadTooLargeError(AppError):
    status_code = 413
    default_message = "Uploaded file is too large"


class UpstreamError(AppError):
    """Blob store or transcoder failure. The message shown to clients is generic."""
    status_code = 500
    default_message = "Upstream service failure"


class BlobStoreError(UpstreamError):
    default_message = "Storage operation failed"


class TranscodeError(UpstreamError):
    default_message = "Audio merge failed"


def register_exception_handlers(app: FastAPI, *, debug: bool = False) -> None:

    @app.exception_handler(AppError)
    async def _app_error(request: Request, exc: AppError):
        if isinstance(exc, UpstreamError):
            logger.error("%s %s failed upstream: %s", request.method, request.url.path, exc.message)
            return api_error(exc.default_message, status_code=exc.status_code,
                             debug_detail=exc.message if debug else None)
        return api_error(exc.message, status_code=exc.status_code, errors=exc.errors, code=exc.code)

    @app.exception_handler(RequestValidationError)
    async def _request_validation(request: Request, exc: RequestValidationError):
        errors = []
        for err in exc.errors():
            loc = [str(p) for p in err.get("loc", ()) if p not in ("body", "query", "path", "form")]
            errors.append({"field": ".".join(loc) or None, "message": err.get("msg")})
        return api_error("Validation failed", status_code=400, errors=errors)

    @app.exception_handler(StarletteHTTPException)
    async def _http_error(request: Request, exc: StarletteHTTPException):
        detail = exc.detail if isinstance(exc.detail, str) else "Request failed"
        if exc.detail == "LOGIN_BAD_CREDENTIALS":
            detail = "Invalid credentials"
        return api_error(detail, status_code=exc.status_code, headers=getattr(exc, "headers", None))

    @app.exception_handler(Exception)
    async def _unhandled(request: Request, exc: Exception):
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        return api_error("Internal server error", status_code=500,
                         debug_detail=repr(exc) if debug else None)
