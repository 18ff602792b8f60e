"""Typed failures and their translation into HTTP error responses."""

from __future__ import annotations

import functools
import logging
from typing import Any, Callable, Dict, Optional, TypeVar

from fastapi import status
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError
from starlette.exceptions import HTTPException as StarletteHTTPException

logger = logging.getLogger(__name__)

INTERNAL_ERROR_MESSAGE = "An unexpected error occurred"

F = TypeVar("F", bound=Callable[..., Any])


class AppError(Exception):
    """Base class for failures that carry a code, an HTTP status and details."""

    code = "INTERNAL_ERROR"
    http_status = status.HTTP_500_INTERNAL_SERVER_ERROR
    default_message = INTERNAL_ERROR_MESSAGE

    def __init__(self, message: Optional[str] = None, details: Any = None) -> None:
        self.message = message or self.default_message
        self.details = details
        super().__init__(self.message)

    def __repr__(self) -> str:
        return f"{type(self).__name__}(code={self.code!r}, message={self.message!r}, details={self.details!r})"


class NotFoundError(AppError):
    """A referenced entity does not exist."""

    code = "NOT_FOUND"
    http_status = status.HTTP_404_NOT_FOUND
    default_message = "Resource not found"


class ValidationError(AppError):
    """A business rule rejected the input."""

    code = "VALIDATION_ERROR"
    http_status = 422
    default_message = "Validation error"


class BadRequestError(AppError):
    """The request is malformed or carries out-of-range identifiers."""

    code = "BAD_REQUEST"
    http_status = status.HTTP_400_BAD_REQUEST
    default_message = "Bad request"


class MethodNotAllowedError(AppError):
    """The route exists but does not accept the request method."""

    code = "METHOD_NOT_ALLOWED"
    http_status = status.HTTP_405_METHOD_NOT_ALLOWED
    default_message = "Method not allowed"


class RateLimitError(AppError):
    """The client exceeded the configured request rate."""

    code = "RATE_LIMITED"
    http_status = status.HTTP_429_TOO_MANY_REQUESTS
    default_message = "Too many requests, please try again later"


class InternalError(AppError):
    """Anything unclassified."""


def error_body(exc: BaseException) -> tuple[int, Dict[str, Any]]:
    """Return the status code and JSON body for ``exc``.

    Client errors keep their details. Internal errors never expose them.
    """

    if isinstance(exc, AppError) and not isinstance(exc, InternalError):
        body: Dict[str, Any] = {"code": exc.code, "message": exc.message}
        if exc.details is not None:
            body["details"] = exc.details
        return exc.http_status, body
    return InternalError.http_status, {"code": InternalError.code, "message": INTERNAL_ERROR_MESSAGE}


def from_http_exception(exc: StarletteHTTPException, path: str = "") -> AppError:
    """Map a framework-level HTTP exception (unknown route, wrong method, rate limit) to a typed error."""

    if exc.status_code == status.HTTP_404_NOT_FOUND:
        return NotFoundError("Route not found", {"path": path})
    if exc.status_code == status.HTTP_405_METHOD_NOT_ALLOWED:
        return MethodNotAllowedError(details={"path": path})
    if exc.status_code == status.HTTP_429_TOO_MANY_REQUESTS:
        return RateLimitError(details={"limit": exc.detail})
    if exc.status_code >= status.HTTP_500_INTERNAL_SERVER_ERROR:
        return InternalError(str(exc.detail))
    return BadRequestError(str(exc.detail))


def translate_error(exc: BaseException) -> JSONResponse:
    """Log ``exc`` and convert it into the normalized error response."""

    status_code, body = error_body(exc)
    if status_code >= status.HTTP_500_INTERNAL_SERVER_ERROR:
        details = exc.details if isinstance(exc, AppError) else None
        logger.error("Unhandled error: %r (details=%r)", exc, details, exc_info=exc)
    else:
        logger.warning("%s: %s %r", body["code"], body["message"], body.get("details"))
    return JSONResponse(status_code=status_code, content=body)


def storage_guard(func: F) -> F:
    """Re-raise storage errors that escaped a service method as :class:`InternalError`."""

    @functools.wraps(func)
    def wrapper(*args: Any, **kwargs: Any) -> Any:
        try:
            return func(*args, **kwargs)
        except SQLAlchemyError as exc:
            raise InternalError(f"Storage failure in {func.__qualname__}", {"error": str(exc)}) from exc

    return wrapper  # type: ignore[return-value]
