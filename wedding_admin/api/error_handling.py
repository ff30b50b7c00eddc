from __future__ import annotations

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException

from wedding_admin.api.schemas import Envelope, ErrorBody
from wedding_admin.logging import get_correlation_id, get_logger, sanitize_error_message
from wedding_admin.service.errors import LockoutError, RateLimitError, ServiceError

logger = get_logger(__name__)

_STATUS_TO_CODE = {
    400: "validation_error",
    401: "unauthorized",
    403: "forbidden",
    404: "not_found",
    409: "conflict",
    422: "validation_error",
    429: "rate_limited",
    500: "server_error",
}

_STATUS_TO_KIND = {
    400: "ValidationError",
    401: "AuthenticationError",
    403: "AuthorizationError",
    404: "ValidationError",
    409: "ValidationError",
    422: "ValidationError",
    429: "RateLimitError",
}


def _error_code_for_status(status_code: int) -> str:
    return _STATUS_TO_CODE.get(status_code, "server_error")


def _error_response(
    status_code: int,
    message: str,
    details: dict | list | None = None,
    code: str | None = None,
    kind: str | None = None,
    headers: dict | None = None,
) -> JSONResponse:
    error_code = code or _error_code_for_status(status_code)
    error_body = ErrorBody(
        code=error_code,
        kind=kind or _STATUS_TO_KIND.get(status_code, "InternalError"),
        message=message,
        details=details,
    )
    envelope = Envelope(status="error", error=error_body)
    if get_correlation_id():
        envelope.request_id = get_correlation_id()
    return JSONResponse(
        status_code=status_code, content=envelope.model_dump(mode="json"), headers=headers
    )


def _retry_headers(exc: ServiceError) -> dict | None:
    if isinstance(exc, (LockoutError, RateLimitError)):
        return {"Retry-After": str(exc.retry_after_seconds)}
    return None


def register_exception_handlers(app: FastAPI) -> None:
    """Install handlers that turn every failure into the error envelope."""

    @app.exception_handler(ServiceError)
    async def handle_service_error(request: Request, exc: ServiceError):
        log_fn = logger.error if exc.status_code >= 500 else logger.warning
        log_fn(
            "service_error",
            path=request.url.path,
            method=request.method,
            status_code=exc.status_code,
            error_code=exc.error_code,
            kind=exc.kind,
            message=exc.message,
            cause=repr(exc.__cause__) if exc.__cause__ else None,
        )
        return _error_response(
            exc.status_code,
            sanitize_error_message(exc.message),
            exc.detail or None,
            code=exc.error_code,
            kind=exc.kind,
            headers=_retry_headers(exc),
        )

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        logger.warning(
            "request_validation_error",
            path=request.url.path,
            method=request.method,
            errors=len(exc.errors()),
        )
        # Only field locations and messages; submitted values may hold passwords
        details = [
            {"loc": [str(part) for part in err.get("loc", ())], "msg": err.get("msg", "")}
            for err in exc.errors()
        ]
        return _error_response(
            400, "invalid request", details, code="validation_error", kind="ValidationError"
        )

    @app.exception_handler(HTTPException)
    async def handle_http_exception(request: Request, exc: HTTPException):
        message = exc.detail if isinstance(exc.detail, str) else "http error"
        if exc.status_code >= 500:
            logger.error(
                "http_error",
                path=request.url.path,
                method=request.method,
                status_code=exc.status_code,
                message=message,
            )
        return _error_response(exc.status_code, message, headers=exc.headers)

    @app.exception_handler(Exception)
    async def handle_uncaught(request: Request, exc: Exception):
        logger.exception(
            "unhandled_exception",
            exc_info=exc,
            path=request.url.path,
            method=request.method,
            error_type=type(exc).__name__,
            error=str(exc),
        )
        return _error_response(500, "internal server error", code="server_error", kind="InternalError")
