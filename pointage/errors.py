from __future__ import annotations

from typing import Any

from fastapi import Request
from fastapi.responses import JSONResponse


class ApiError(Exception):
    status_code = 400
    default_code = "BAD_REQUEST"

    def __init__(
        self,
        message: str,
        *,
        code: str | None = None,
        status_code: int | None = None,
        details: dict[str, Any] | None = None,
    ):
        super().__init__(message)
        if status_code is not None:
            self.status_code = status_code
        self.code = code or self.default_code
        self.message = message
        self.details = details or {}


class ValidationError(ApiError):
    status_code = 400
    default_code = "VALIDATION_ERROR"


class NotFoundError(ApiError):
    status_code = 404
    default_code = "NOT_FOUND"


class ConflictError(ApiError):
    status_code = 409
    default_code = "CONFLICT"


class AuthorizationError(ApiError):
    status_code = 403
    default_code = "FORBIDDEN"


class TransientStoreError(ApiError):
    status_code = 503
    default_code = "STORE_UNAVAILABLE"


class DeliveryError(Exception):
    """Notification or audit delivery failed. Logged by the caller, never surfaced."""


def get_request_id(request: Request) -> str:
    request_id = getattr(request.state, "request_id", None)
    if request_id:
        return str(request_id)
    return "unknown"


def error_response(
    request: Request,
    *,
    status_code: int,
    code: str,
    message: str,
    extra: dict[str, Any] | None = None,
) -> JSONResponse:
    payload: dict[str, Any] = {
        "error": {
            "code": code,
            "message": message,
            "request_id": get_request_id(request),
        }
    }
    if extra:
        payload.update(extra)
    return JSONResponse(status_code=status_code, content=payload)
