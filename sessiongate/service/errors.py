from __future__ import annotations

from enum import Enum
from typing import Optional


class ErrorCode(str, Enum):
    """Named auth outcomes; the value is the wire code, each carries its HTTP status."""

    AUTH_ERROR = ("AuthError", 401)
    TOKEN_DENIED = ("TokenDenied", 401)
    INVALID_TOKEN = ("InvalidToken", 401)
    TOKEN_EXPIRED = ("TokenExpired", 401)
    TOKEN_VERIFICATION = ("TokenVerification", 400)
    EMAIL_VERIFICATION = ("emailVerification", 401)
    ACCOUNT_SUSPENDED = ("AccountSuspended", 403)
    ACCOUNT_INACTIVE = ("AccountInactive", 403)
    INVALID_TYPE = ("InvalidType", 405)
    INVALID_FIELD = ("InvalidField", 400)
    API_LIMIT = ("APILimit", 429)
    UNAUTHORIZED = ("Unauthorized", 401)
    FORBIDDEN = ("Forbidden", 403)
    NOT_FOUND = ("NotFound", 404)
    CONFLICT = ("Conflict", 409)
    UNKNOWN_ERROR = ("UnknownError", 500)

    def __new__(cls, value: str, status_code: int) -> "ErrorCode":
        member = str.__new__(cls, value)
        member._value_ = value
        member.status_code = status_code
        return member

    @classmethod
    def for_status(cls, status_code: int) -> "ErrorCode":
        """Fallback code for errors raised outside the service layer."""
        return _STATUS_FALLBACK.get(status_code, cls.UNKNOWN_ERROR)


_STATUS_FALLBACK = {
    400: ErrorCode.INVALID_FIELD,
    401: ErrorCode.UNAUTHORIZED,
    403: ErrorCode.FORBIDDEN,
    404: ErrorCode.NOT_FOUND,
    405: ErrorCode.INVALID_TYPE,
    409: ErrorCode.CONFLICT,
    422: ErrorCode.INVALID_FIELD,
    429: ErrorCode.API_LIMIT,
}


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass pins an ``ErrorCode``; ``status_code`` defaults to the code's
    status and can be overridden per raise (``InvalidType`` is 405 for a wrong
    method but 400 for an unknown operation).
    """

    error_code: ErrorCode = ErrorCode.UNKNOWN_ERROR

    def __init__(
        self,
        message: Optional[str] = None,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[ErrorCode] = None,
    ) -> None:
        if error_code is not None:
            self.error_code = error_code
        self.message = message or self.error_code.value
        super().__init__(self.message)
        self.status_code = status_code if status_code is not None else self.error_code.status_code
        self.detail = detail or {}


class AuthenticationError(ServiceError):
    """Unknown email or wrong password (401)."""
    error_code = ErrorCode.AUTH_ERROR


class TokenDeniedError(ServiceError):
    """Missing cookies, fingerprint mismatch or hijack detection (401)."""
    error_code = ErrorCode.TOKEN_DENIED


class InvalidTokenError(ServiceError):
    """Malformed or undecryptable token, or wrong token type (401)."""
    error_code = ErrorCode.INVALID_TOKEN


class TokenExpiredError(ServiceError):
    """Token or session is past expiry or no longer active (401)."""
    error_code = ErrorCode.TOKEN_EXPIRED


class TokenVerificationError(ServiceError):
    """Access token signature or structure could not be verified (400)."""
    error_code = ErrorCode.TOKEN_VERIFICATION


class EmailVerificationError(ServiceError):
    """Account email has not been verified (401)."""
    error_code = ErrorCode.EMAIL_VERIFICATION


class AccountSuspendedError(ServiceError):
    error_code = ErrorCode.ACCOUNT_SUSPENDED


class AccountInactiveError(ServiceError):
    error_code = ErrorCode.ACCOUNT_INACTIVE


class InvalidTypeError(ServiceError):
    """Unsupported method or operation tag (405 by default)."""
    error_code = ErrorCode.INVALID_TYPE


class InvalidFieldError(ServiceError):
    """Request validation failed (400)."""
    error_code = ErrorCode.INVALID_FIELD


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429)."""
    error_code = ErrorCode.API_LIMIT


class UnauthorizedError(ServiceError):
    """Authentication missing on a protected resource (401)."""
    error_code = ErrorCode.UNAUTHORIZED


class ForbiddenError(ServiceError):
    error_code = ErrorCode.FORBIDDEN


class NotFoundError(ServiceError):
    error_code = ErrorCode.NOT_FOUND


class ConflictError(ServiceError):
    error_code = ErrorCode.CONFLICT


class ServerError(ServiceError):
    """Internal failure, e.g. a session update that did not persist (500)."""
    error_code = ErrorCode.UNKNOWN_ERROR


__all__ = [
    "ErrorCode",
    "ServiceError",
    "AuthenticationError",
    "TokenDeniedError",
    "InvalidTokenError",
    "TokenExpiredError",
    "TokenVerificationError",
    "EmailVerificationError",
    "AccountSuspendedError",
    "AccountInactiveError",
    "InvalidTypeError",
    "InvalidFieldError",
    "RateLimitedError",
    "UnauthorizedError",
    "ForbiddenError",
    "NotFoundError",
    "ConflictError",
    "ServerError",
]
