from __future__ import annotations

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException

from sessiongate.api.schemas import Envelope, ErrorBody
from sessiongate.logging import get_logger, sanitize_error_message
from sessiongate.service.errors import ErrorCode, ServiceError
from sessiongate.storage.errors import ConstraintViolation

logger = get_logger(__name__)

# Auth cookies dropped whenever the refresh endpoint rejects the caller
AUTH_COOKIES = ("token", "fp", "auth")


def error_response(
    status_code: int,
    code: ErrorCode | str,
    message: str | None = None,
    details: dict | list | None = None,
) -> JSONResponse:
    """Build an error envelope response."""
    code_value = code.value if isinstance(code, ErrorCode) else code
    error_body = ErrorBody(code=code_value, message=message or code_value, details=details or None)
    envelope = Envelope(status="error", error=error_body)
    return JSONResponse(status_code=status_code, content=envelope.model_dump())


def _clear_auth_cookies(response: JSONResponse) -> None:
    for name in AUTH_COOKIES:
        response.delete_cookie(name, path="/")


def register_exception_handlers(app: FastAPI) -> None:
    """Install envelope-producing handlers for service, storage and framework errors."""

    @app.exception_handler(ServiceError)
    async def handle_service_error(request: Request, exc: ServiceError):
        log_fn = logger.error if exc.status_code >= 500 else logger.warning
        log_fn(
            "service_error",
            path=request.url.path,
            method=request.method,
            status_code=exc.status_code,
            error_code=exc.error_code.value,
            detail=exc.detail,
        )
        response = error_response(
            exc.status_code,
            exc.error_code,
            sanitize_error_message(exc.message),
            exc.detail,
        )
        if request.url.path.rstrip("/").endswith("/auth/refresh") and exc.status_code == 401:
            _clear_auth_cookies(response)
        return response

    @app.exception_handler(ConstraintViolation)
    async def handle_constraint_violation(request: Request, exc: ConstraintViolation):
        logger.warning(
            "constraint_violation",
            path=request.url.path,
            method=request.method,
            message=exc.message,
            detail=exc.detail,
        )
        return error_response(409, ErrorCode.CONFLICT, exc.message, exc.detail)

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        fields = [
            ".".join(str(part) for part in err.get("loc", ()) if part != "body")
            for err in exc.errors()
        ]
        logger.warning(
            "request_validation_failed",
            path=request.url.path,
            method=request.method,
            fields=fields,
        )
        return error_response(
            400, ErrorCode.INVALID_FIELD, details={"fields": [f for f in fields if f]}
        )

    @app.exception_handler(HTTPException)
    async def handle_http_exception(request: Request, exc: HTTPException):
        code = ErrorCode.for_status(exc.status_code)
        message = exc.detail if isinstance(exc.detail, str) else code.value
        if exc.status_code >= 500:
            logger.error(
                "http_error",
                path=request.url.path,
                method=request.method,
                status_code=exc.status_code,
            )
        elif exc.status_code >= 400:
            logger.warning(
                "http_client_error",
                path=request.url.path,
                method=request.method,
                status_code=exc.status_code,
                error_code=code.value,
            )
        response = error_response(exc.status_code, code, message)
        for name, value in (exc.headers or {}).items():
            response.headers[name] = value
        return response

    @app.exception_handler(Exception)
    async def handle_uncaught(request: Request, exc: Exception):
        logger.exception(
            "unhandled_exception",
            exc_info=exc,
            path=request.url.path,
            method=request.method,
            error_type=type(exc).__name__,
        )
        return error_response(500, ErrorCode.UNKNOWN_ERROR)
