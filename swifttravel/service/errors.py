from __future__ import annotations

from typing import Dict, Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass pins an HTTP status_code and a stable error_code; the API
    renders them as ``{"error": error_code, "message": message}``. Session
    validation failures (NO_TOKEN, INVALID_TOKEN, TOKEN_EXPIRED, TOKEN_REVOKED)
    and magic-link verification failures (INVALID_OR_EXPIRED_TOKEN) use
    separate codes so clients can tell a stale login link from a stale session.
    """

    status_code: int = 400
    error_code: str = "INVALID_DATA"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}
        self.headers = headers or {}


class InvalidRequestError(ServiceError):
    """Request body or field failed validation (400)."""
    status_code = 400
    error_code = "INVALID_DATA"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "NOT_FOUND"


class MethodNotAllowedError(ServiceError):
    """HTTP method not supported by the endpoint (405)."""
    status_code = 405
    error_code = "METHOD_NOT_ALLOWED"


class RateLimitedError(ServiceError):
    """Too many magic-link requests for this email (429)."""
    status_code = 429
    error_code = "RATE_LIMIT_EXCEEDED"


class AuthenticationError(ServiceError):
    """Session validation failed (401)."""
    status_code = 401
    error_code = "UNAUTHORIZED"


class NoTokenError(AuthenticationError):
    error_code = "NO_TOKEN"


class InvalidTokenError(AuthenticationError):
    error_code = "INVALID_TOKEN"


class TokenExpiredError(AuthenticationError):
    error_code = "TOKEN_EXPIRED"


class TokenRevokedError(AuthenticationError):
    error_code = "TOKEN_REVOKED"


class InvalidOrExpiredTokenError(ServiceError):
    """Magic-link token unknown, already used, or past its TTL (401)."""
    status_code = 401
    error_code = "INVALID_OR_EXPIRED_TOKEN"


class DeliveryFailedError(ServiceError):
    """Magic-link email could not be delivered (500)."""
    status_code = 500
    error_code = "DELIVERY_FAILED"


class InternalError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "INTERNAL_ERROR"


__all__ = [
    "ServiceError",
    "InvalidRequestError",
    "NotFoundError",
    "MethodNotAllowedError",
    "RateLimitedError",
    "AuthenticationError",
    "NoTokenError",
    "InvalidTokenError",
    "TokenExpiredError",
    "TokenRevokedError",
    "InvalidOrExpiredTokenError",
    "DeliveryFailedError",
    "InternalError",
]
