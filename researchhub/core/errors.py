"""Error normalization and handlers."""

import logging
from typing import Any, Dict, Optional
from uuid import uuid4

from starlette.exceptions import HTTPException
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.requests import Request

from researchhub.core.logging import get_request_id


class AppError(Exception):
    code = "app_error"
    status_code = 500

    def __init__(
        self,
        message: str,
        *,
        code: Optional[str] = None,
        status_code: Optional[int] = None,
        request_id: Optional[str] = None,
        extra: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        if status_code:
            self.status_code = status_code
        self.request_id = request_id
        self.extra = extra or {}


class AuthError(AppError):
    code = "unauthorized"
    status_code = 401


class ForbiddenError(AppError):
    code = "forbidden"
    status_code = 403


class ValidationError(AppError, ValueError):
    code = "validation_error"
    status_code = 400


class InvalidPlanError(ValidationError):
    code = "invalid_plan"


class InsufficientBalanceError(AppError):
    """Raised when a debit exceeds the available points balance."""
    code = "insufficient_balance"
    status_code = 400

    def __init__(self, required: int, available: int, message: str = "Insufficient points balance"):
        super().__init__(message, extra={"data": {"required": required, "available": available}})
        self.required = required
        self.available = available


class PlanLimitExceededError(AppError):
    """Raised when the subscription plan does not allow an action."""
    code = "plan_limit_exceeded"
    status_code = 402

    def __init__(self, details: Dict[str, Any], message: str = "Plan upgrade required"):
        super().__init__(message, extra={"planLimitExceeded": True, "details": details})
        self.details = details


class NotFoundError(AppError, ValueError):
    code = "not_found"
    status_code = 404


class MethodNotAllowedError(AppError):
    code = "method_not_allowed"
    status_code = 405


class ConflictError(AppError):
    code = "conflict"
    status_code = 409


class AlreadyAllocatedError(ConflictError):
    code = "already_allocated"


class BackendUnavailableError(AppError):
    """Raised when the database or auth provider cannot be reached."""
    code = "backend_unavailable"
    status_code = 503


def _extract_request_id(request: Request, fallback: Optional[str] = None) -> str:
    return (
        getattr(request.state, "request_id", None)
        or get_request_id()
        or fallback
        or str(uuid4())
    )


def _error_payload(code: str, message: str, request_id: str, extra: Optional[Dict[str, Any]] = None) -> dict:
    payload = {
        "success": False,
        "error": message,
        "code": code,
        "request_id": request_id,
    }
    if extra:
        payload.update(extra)
    return payload


async def app_error_handler(request: Request, exc: AppError):
    rid = exc.request_id or _extract_request_id(request)
    payload = _error_payload(exc.code, exc.message, rid, exc.extra)
    logger = logging.getLogger("researchhub")
    log_level = logging.ERROR if exc.status_code >= 500 else logging.WARNING
    logger.log(
        log_level,
        "app.error",
        extra={"request_id": rid, "error_code": exc.code, "error_message": exc.message, "status": exc.status_code},
    )
    response = JSONResponse(status_code=exc.status_code, content=payload)
    response.headers["x-request-id"] = rid
    return response


async def http_error_handler(request: Request, exc: HTTPException):
    rid = _extract_request_id(request)
    code = {404: "not_found", 405: "method_not_allowed"}.get(exc.status_code, "http_error")
    message = exc.detail if isinstance(exc.detail, str) and exc.detail else "HTTP error"
    payload = _error_payload(code, message, rid)
    logger = logging.getLogger("researchhub")
    logger.warning("http.error", extra={"request_id": rid, "error_code": code, "status": exc.status_code})
    response = JSONResponse(status_code=exc.status_code, content=payload)
    response.headers["x-request-id"] = rid
    return response


async def request_validation_handler(request: Request, exc: RequestValidationError):
    rid = _extract_request_id(request)
    fields = [".".join(str(p) for p in err.get("loc", ()) if p not in ("body", "query")) for err in exc.errors()]
    message = "Invalid request fields: " + ", ".join(f for f in fields if f) if fields else "Invalid request"
    payload = _error_payload("validation_error", message, rid)
    response = JSONResponse(status_code=400, content=payload)
    response.headers["x-request-id"] = rid
    return response


async def unhandled_exception_handler(request: Request, exc: Exception):
    rid = _extract_request_id(request)
    logger = logging.getLogger("researchhub")
    logger.error("unhandled.exception", exc_info=True, extra={"request_id": rid, "error_code": "internal_error"})
    payload = _error_payload("internal_error", "Internal server error", rid)
    response = JSONResponse(status_code=500, content=payload)
    response.headers["x-request-id"] = rid
    return response
