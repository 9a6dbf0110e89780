from __future__ import annotations

import re
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from swifttravel.api.schemas import ErrorBody
from swifttravel.config import get_settings
from swifttravel.logging import get_correlation_id, get_logger, sanitize_error_message
from swifttravel.service.errors import ServiceError

logger = get_logger(__name__)

_STATUS_TO_CODE = {
    400: "INVALID_DATA",
    401: "UNAUTHORIZED",
    404: "NOT_FOUND",
    405: "METHOD_NOT_ALLOWED",
    429: "RATE_LIMIT_EXCEEDED",
    500: "INTERNAL_ERROR",
}

_METHOD_ORDER = ["GET", "POST", "PUT", "PATCH", "DELETE"]

_GENERIC_INTERNAL_MESSAGE = "An internal error occurred while processing your request"


def _error_code_for_status(status_code: int) -> str:
    fallback = "INVALID_DATA" if 400 <= status_code < 500 else "INTERNAL_ERROR"
    return _STATUS_TO_CODE.get(status_code, fallback)


def _error_response(
    status_code: int,
    message: str,
    details: Any = None,
    code: Optional[str] = None,
    headers: Optional[Dict[str, str]] = None,
) -> JSONResponse:
    """Render the ``{error, message, details?, timestamp, requestId}`` body."""
    error_body = ErrorBody(
        error=code or _error_code_for_status(status_code),
        message=message,
        details=details or None,
        request_id=get_correlation_id(),
    )
    return JSONResponse(
        status_code=status_code,
        content=error_body.model_dump(mode="json", by_alias=True, exclude_none=True),
        headers=headers,
    )


def _validation_message(error: Dict[str, Any]) -> str:
    message = str(error.get("msg", "Invalid request data"))
    # pydantic prefixes messages raised from custom validators
    if message.startswith("Value error, "):
        message = message[len("Value error, "):]
    return message


def _validation_details(errors) -> list:
    return [
        {
            "field": ".".join(str(part) for part in err.get("loc", ())[1:]) or None,
            "message": _validation_message(err),
        }
        for err in errors
    ]


def _openapi_methods(app, path: str) -> set:
    """Methods documented for ``path`` in the app's OpenAPI paths."""
    methods = set()
    for template, operations in (app.openapi().get("paths") or {}).items():
        pattern = re.sub(r"\\\{[^/]+?\\\}", "[^/]+", re.escape(template))
        if re.fullmatch(pattern, path):
            methods.update(op.upper() for op in operations)
    return methods


def _allowed_methods(request: Request, exc: StarletteHTTPException) -> list:
    """Methods served at the request path across every route registered for it.

    Starlette's ``Allow`` header names only the first route that matched the
    path, so it is merged with the documented operations for that path.
    """
    methods = {
        m.strip().upper()
        for m in (exc.headers or {}).get("Allow", "").split(",")
        if m.strip()
    }
    methods.update(_openapi_methods(request.app, request.url.path))
    return [m for m in _METHOD_ORDER if m in methods]


def register_exception_handlers(app: FastAPI) -> None:
    """Install consistent exception handlers for service and framework errors."""

    @app.exception_handler(ServiceError)
    async def handle_service_error(request: Request, exc: ServiceError):
        log_fn = logger.error if exc.status_code >= 500 else logger.warning
        log_fn(
            "service_error",
            path=request.url.path,
            method=request.method,
            status_code=exc.status_code,
            error_code=exc.error_code,
            message=exc.message,
            detail=exc.detail,
        )
        details = exc.detail
        if exc.status_code >= 500 and get_settings().is_production:
            details = None
        return _error_response(
            exc.status_code,
            exc.message,
            details,
            code=exc.error_code,
            headers=exc.headers or None,
        )

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        errors = list(exc.errors())
        missing_body = any(
            err.get("type") == "missing" and tuple(err.get("loc", ())) == ("body",)
            for err in errors
        )
        logger.warning(
            "request_validation_failed",
            path=request.url.path,
            method=request.method,
            error_count=len(errors),
            missing_body=missing_body,
        )
        if missing_body:
            return _error_response(400, "Request body is required", code="MISSING_BODY")
        if any(err.get("type") == "json_invalid" for err in errors):
            return _error_response(400, "Invalid JSON in request body", code="INVALID_DATA")
        message = _validation_message(errors[0]) if errors else "Invalid request data"
        return _error_response(
            400, message, _validation_details(errors), code="INVALID_DATA"
        )

    @app.exception_handler(StarletteHTTPException)
    async def handle_http_exception(request: Request, exc: StarletteHTTPException):
        headers = dict(exc.headers or {})
        if exc.status_code == 405:
            methods = _allowed_methods(request, exc)
            allowed = ", ".join(methods)
            if allowed:
                headers["Allow"] = allowed
            if len(methods) == 1:
                message = f"Only {methods[0]} requests are allowed"
            elif methods:
                message = f"Only {' and '.join(methods)} methods are allowed"
            else:
                message = "Method not allowed"
            logger.warning(
                "method_not_allowed",
                path=request.url.path,
                method=request.method,
                allowed=allowed,
            )
            return _error_response(405, message, code="METHOD_NOT_ALLOWED", headers=headers)

        message = exc.detail if isinstance(exc.detail, str) else "http error"
        if exc.status_code >= 500:
            logger.error(
                "http_error",
                path=request.url.path,
                method=request.method,
                status_code=exc.status_code,
                message=message,
            )
        elif exc.status_code >= 400:
            logger.warning(
                "http_client_error",
                path=request.url.path,
                method=request.method,
                status_code=exc.status_code,
                message=message,
            )
        return _error_response(exc.status_code, message, headers=headers or None)

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
        details = None
        if not get_settings().is_production:
            details = {"error": sanitize_error_message(str(exc))}
        return _error_response(500, _GENERIC_INTERNAL_MESSAGE, details, code="INTERNAL_ERROR")
