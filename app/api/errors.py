"""
Error Boundary - Maps the service exception taxonomy onto HTTP responses.

Every error body has the shape {"error": <message>, "code": <CODE>}.
Unexpected exceptions become 500s; their detail is only exposed outside
production.
"""

from typing import Any

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
from structlog import get_logger

from app.config import settings
from app.exceptions import (
    AuthError,
    ConcurrencyError,
    ConflictError,
    CredentialError,
    DecryptionError,
    EmailDeliveryError,
    NotFoundError,
    ServiceError,
    UpstreamProviderError,
    ValidationError,
)
from app.observability.metrics import metrics

logger = get_logger(__name__)

# First match wins; subclasses must precede their bases.
STATUS_BY_ERROR: tuple[tuple[type[ServiceError], int], ...] = (
    (ValidationError, status.HTTP_400_BAD_REQUEST),
    (AuthError, status.HTTP_401_UNAUTHORIZED),
    (NotFoundError, status.HTTP_404_NOT_FOUND),
    (ConflictError, status.HTTP_409_CONFLICT),
    (CredentialError, status.HTTP_400_BAD_REQUEST),
    (UpstreamProviderError, status.HTTP_502_BAD_GATEWAY),
    (EmailDeliveryError, status.HTTP_502_BAD_GATEWAY),
    (ConcurrencyError, status.HTTP_409_CONFLICT),
    (DecryptionError, status.HTTP_500_INTERNAL_SERVER_ERROR),
)

INTERNAL_ERROR_MESSAGE = "Internal server error"


def status_for(exc: ServiceError) -> int:
    """HTTP status for a service exception."""
    for error_type, status_code in STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            return status_code
    return status.HTTP_500_INTERNAL_SERVER_ERROR


def error_body(exc: ServiceError, status_code: int) -> dict[str, Any]:
    """Client-facing body for a service exception."""
    if status_code >= 500 and not isinstance(exc, UpstreamProviderError | EmailDeliveryError):
        message = INTERNAL_ERROR_MESSAGE if settings.is_production else str(exc)
        return {"error": message, "code": exc.code}

    body: dict[str, Any] = {"error": getattr(exc, "message", str(exc)), "code": exc.code}
    if isinstance(exc, UpstreamProviderError):
        body["provider"] = exc.provider
    return body


async def service_error_handler(request: Request, exc: Exception) -> JSONResponse:
    """Convert a ServiceError into its JSON error response."""
    assert isinstance(exc, ServiceError)
    status_code = status_for(exc)
    metrics.record_error(type(exc).__name__, request.url.path)

    if status_code >= 500:
        logger.error(
            "request_service_error",
            path=request.url.path,
            method=request.method,
            error_type=type(exc).__name__,
            code=exc.code,
            error=str(exc),
        )
    else:
        logger.info(
            "request_rejected",
            path=request.url.path,
            method=request.method,
            error_type=type(exc).__name__,
            code=exc.code,
        )

    headers = {"WWW-Authenticate": "Bearer"} if isinstance(exc, AuthError) else None
    return JSONResponse(
        status_code=status_code, content=error_body(exc, status_code), headers=headers
    )


async def validation_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Log and flatten request body validation errors."""
    assert isinstance(exc, RequestValidationError)

    # ctx may contain non-serializable objects
    sanitized_errors = []
    for error in exc.errors():
        sanitized: dict[str, Any] = {
            "type": error.get("type"),
            "loc": error.get("loc"),
            "msg": error.get("msg"),
        }
        if "ctx" in error:
            sanitized["ctx"] = {k: str(v) for k, v in error["ctx"].items()}
        sanitized_errors.append(sanitized)

    logger.warning(
        "validation_error",
        path=request.url.path,
        method=request.method,
        errors=sanitized_errors,
    )
    first = sanitized_errors[0]["msg"] if sanitized_errors else "Invalid request"
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={"error": first, "code": ValidationError.code, "details": sanitized_errors},
    )


async def http_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Framework-raised HTTP errors (unknown route, wrong method) in the same shape."""
    assert isinstance(exc, StarletteHTTPException)
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": str(exc.detail), "code": "HTTP_ERROR"},
        headers=getattr(exc, "headers", None),
    )


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Last resort: log with traceback, hide detail in production."""
    metrics.record_error(type(exc).__name__, request.url.path)
    logger.error(
        "request_unhandled_exception",
        path=request.url.path,
        method=request.method,
        error_type=type(exc).__name__,
        exc_info=exc,
    )
    body: dict[str, Any] = {"error": INTERNAL_ERROR_MESSAGE, "code": ServiceError.code}
    if not settings.is_production:
        body["detail"] = f"{type(exc).__name__}: {exc}"
    return JSONResponse(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, content=body)


def register_exception_handlers(app: FastAPI) -> None:
    """Install the error boundary on an application."""
    app.add_exception_handler(ServiceError, service_error_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)
