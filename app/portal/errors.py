"""
API error taxonomy.

Handlers raise ApiError (usually through one of the factory helpers below); the
error handlers registered in create_app() turn it into a JSON body of the shape
{"error": <message>, "code": <ErrorCode>, "details": <optional>}.
"""
from __future__ import annotations

import logging
from typing import Any

from flask import Flask, g, jsonify
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from werkzeug.exceptions import HTTPException

logger = logging.getLogger(__name__)


class ErrorCode:
    # Authentication
    UNAUTHORIZED = "UNAUTHORIZED"
    INVALID_TOKEN = "INVALID_TOKEN"
    TOKEN_EXPIRED = "TOKEN_EXPIRED"

    # Authorization
    FORBIDDEN = "FORBIDDEN"
    INSUFFICIENT_PERMISSIONS = "INSUFFICIENT_PERMISSIONS"
    COMPANY_INACTIVE = "COMPANY_INACTIVE"
    LIMIT_REACHED = "LIMIT_REACHED"

    # Validation
    VALIDATION_ERROR = "VALIDATION_ERROR"
    INVALID_INPUT = "INVALID_INPUT"
    MISSING_FIELD = "MISSING_FIELD"
    INVALID_FORMAT = "INVALID_FORMAT"
    INVALID_STATUS_TRANSITION = "INVALID_STATUS_TRANSITION"

    # Resources
    NOT_FOUND = "NOT_FOUND"
    RESOURCE_NOT_FOUND = "RESOURCE_NOT_FOUND"
    CONFLICT = "CONFLICT"
    DUPLICATE_ENTRY = "DUPLICATE_ENTRY"
    ALREADY_EXISTS = "ALREADY_EXISTS"

    RATE_LIMIT_EXCEEDED = "RATE_LIMIT_EXCEEDED"

    # Server
    INTERNAL_ERROR = "INTERNAL_ERROR"
    DATABASE_ERROR = "DATABASE_ERROR"
    EXTERNAL_SERVICE_ERROR = "EXTERNAL_SERVICE_ERROR"
    SERVICE_UNAVAILABLE = "SERVICE_UNAVAILABLE"

    CSRF_ERROR = "CSRF_ERROR"


class ApiError(Exception):
    def __init__(
        self,
        message: str,
        code: str = ErrorCode.INTERNAL_ERROR,
        status: int = 500,
        details: Any = None,
        headers: dict[str, str] | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.code = code
        self.status = status
        self.details = details
        self.headers = headers or {}

    def to_dict(self) -> dict[str, Any]:
        body: dict[str, Any] = {"error": self.message, "code": self.code}
        if self.details is not None:
            body["details"] = self.details
        return body

    def __repr__(self) -> str:
        return f"ApiError({self.status}, {self.code}, {self.message!r})"


# ---------- factories ----------

def unauthorized(message: str = "Authentication required") -> ApiError:
    return ApiError(message, ErrorCode.UNAUTHORIZED, 401)


def invalid_token(message: str = "Invalid or expired token") -> ApiError:
    return ApiError(message, ErrorCode.INVALID_TOKEN, 401)


def token_expired(message: str = "Token has expired") -> ApiError:
    return ApiError(message, ErrorCode.TOKEN_EXPIRED, 401)


def forbidden(message: str = "Access denied") -> ApiError:
    return ApiError(message, ErrorCode.FORBIDDEN, 403)


def insufficient_permissions(message: str = "Insufficient permissions") -> ApiError:
    return ApiError(message, ErrorCode.INSUFFICIENT_PERMISSIONS, 403)


def company_inactive(message: str = "Your subscription is not active") -> ApiError:
    return ApiError(message, ErrorCode.COMPANY_INACTIVE, 403)


def limit_reached(message: str, details: dict[str, Any] | None = None) -> ApiError:
    return ApiError(message, ErrorCode.LIMIT_REACHED, 403, details)


def csrf(message: str = "Invalid CSRF token") -> ApiError:
    return ApiError(message, ErrorCode.CSRF_ERROR, 403)


def validation(message: str, details: Any = None) -> ApiError:
    return ApiError(message, ErrorCode.VALIDATION_ERROR, 400, details)


def invalid_input(message: str, field: str | None = None) -> ApiError:
    return ApiError(message, ErrorCode.INVALID_INPUT, 400, {"field": field} if field else None)


def missing_field(field: str) -> ApiError:
    return ApiError(f"{field} is required", ErrorCode.MISSING_FIELD, 400, {"field": field})


def invalid_status_transition(from_status: str, to_status: str) -> ApiError:
    return ApiError(
        f"Cannot move from {from_status} to {to_status}",
        ErrorCode.INVALID_STATUS_TRANSITION,
        400,
        {"from": from_status, "to": to_status},
    )


def not_found(resource: str = "Resource") -> ApiError:
    return ApiError(f"{resource} not found", ErrorCode.NOT_FOUND, 404)


def conflict(message: str) -> ApiError:
    return ApiError(message, ErrorCode.CONFLICT, 409)


def duplicate(resource: str) -> ApiError:
    return ApiError(f"{resource} already exists", ErrorCode.DUPLICATE_ENTRY, 409)


def rate_limited(retry_after: int | None = None) -> ApiError:
    return ApiError(
        "Too many requests",
        ErrorCode.RATE_LIMIT_EXCEEDED,
        429,
        {"retryAfter": retry_after} if retry_after is not None else None,
    )


def internal(message: str = "Internal server error") -> ApiError:
    return ApiError(message, ErrorCode.INTERNAL_ERROR, 500)


def database(message: str = "Database error") -> ApiError:
    return ApiError(message, ErrorCode.DATABASE_ERROR, 500)


def external_service(service: str, message: str | None = None) -> ApiError:
    return ApiError(message or f"{service} request failed", ErrorCode.EXTERNAL_SERVICE_ERROR, 500, {"service": service})


def service_unavailable(message: str) -> ApiError:
    return ApiError(message, ErrorCode.SERVICE_UNAVAILABLE, 503)


# ---------- mapping ----------

_HTTP_CODES = {
    400: ErrorCode.VALIDATION_ERROR,
    401: ErrorCode.UNAUTHORIZED,
    403: ErrorCode.FORBIDDEN,
    404: ErrorCode.NOT_FOUND,
    405: ErrorCode.INVALID_INPUT,
    409: ErrorCode.CONFLICT,
    413: ErrorCode.VALIDATION_ERROR,
    429: ErrorCode.RATE_LIMIT_EXCEEDED,
}


def _is_unique_violation(exc: IntegrityError) -> bool:
    orig = getattr(exc, "orig", None)
    if getattr(orig, "pgcode", None) == "23505" or getattr(orig, "sqlstate", None) == "23505":
        return True
    return "unique" in str(orig).lower()


def _is_fk_violation(exc: IntegrityError) -> bool:
    orig = getattr(exc, "orig", None)
    if getattr(orig, "pgcode", None) == "23503" or getattr(orig, "sqlstate", None) == "23503":
        return True
    return "foreign key" in str(orig).lower()


def handle_error(exc: BaseException) -> ApiError:
    """Map any exception raised by a handler onto the taxonomy."""
    if isinstance(exc, ApiError):
        return exc
    if isinstance(exc, IntegrityError):
        if _is_unique_violation(exc):
            return duplicate("Resource")
        if _is_fk_violation(exc):
            return validation("Referenced resource does not exist")
        return database()
    if isinstance(exc, SQLAlchemyError):
        return database()
    if isinstance(exc, HTTPException):
        status = exc.code or 500
        return ApiError(exc.description or exc.name, _HTTP_CODES.get(status, ErrorCode.INTERNAL_ERROR), status)
    if isinstance(exc, Exception):
        return internal(str(exc) or "Internal server error")
    return internal("An unexpected error occurred")


def register_error_handlers(app: Flask) -> None:
    @app.errorhandler(ApiError)
    def _api_error(e: ApiError):  # type: ignore[no-redef]
        if e.status >= 500:
            app.logger.error("API error %s (request_id=%s): %s", e.code, getattr(g, "request_id", None), e.message)
        return jsonify(e.to_dict()), e.status, e.headers

    @app.errorhandler(HTTPException)
    def _http_error(e: HTTPException):  # type: ignore[no-redef]
        err = handle_error(e)
        return jsonify(err.to_dict()), err.status

    @app.errorhandler(SQLAlchemyError)
    def _db_error(e: SQLAlchemyError):  # type: ignore[no-redef]
        s = getattr(g, "db_session", None)
        if s is not None:
            s.rollback()
        err = handle_error(e)
        if err.status >= 500:
            app.logger.exception("Database error (request_id=%s)", getattr(g, "request_id", None))
        else:
            app.logger.warning("Integrity error (request_id=%s): %s", getattr(g, "request_id", None), e)
        return jsonify(err.to_dict()), err.status

    @app.errorhandler(Exception)
    def _unhandled(e: Exception):  # type: ignore[no-redef]
        # Ensure stack trace shows in logs.
        app.logger.exception("Unhandled 500 (request_id=%s)", getattr(g, "request_id", None))
        err = internal("Internal server error")
        return jsonify(err.to_dict()), err.status
