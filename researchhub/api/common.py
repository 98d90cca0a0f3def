"""
Shared helpers for the action-multiplexed endpoints.

Each endpoint serves one path and routes on the `action` query parameter.
Unknown actions are a 400; a known action with the wrong method is a 405.
"""

import json
import logging
from typing import Any, Callable, Dict, Mapping, Optional, Tuple, Type, TypeVar

from pydantic import BaseModel, ValidationError as PydanticValidationError
from starlette.concurrency import run_in_threadpool
from starlette.requests import Request

from researchhub.core.errors import BackendUnavailableError, MethodNotAllowedError, ValidationError
from researchhub.core.logging import get_request_id
from researchhub.models.user import AuthenticatedUser

logger = logging.getLogger("researchhub")

ACTION_METHODS = ["GET", "POST", "PUT", "PATCH", "DELETE"]

ModelT = TypeVar("ModelT", bound=BaseModel)
ActionHandler = Callable[[AuthenticatedUser, Request, Dict[str, Any]], Any]


async def read_json_body(request: Request) -> Dict[str, Any]:
    if request.method in ("GET", "DELETE"):
        return {}
    raw = await request.body()
    if not raw:
        return {}
    try:
        body = json.loads(raw)
    except ValueError:
        raise ValidationError("Request body must be valid JSON") from None
    if not isinstance(body, dict):
        raise ValidationError("Request body must be a JSON object")
    return body


def parse_body(model: Type[ModelT], body: Mapping[str, Any]) -> ModelT:
    """Validate a request body, reporting the offending fields in one message."""
    try:
        return model.model_validate(body)
    except PydanticValidationError as exc:
        fields = sorted({".".join(str(p) for p in err["loc"]) for err in exc.errors() if err.get("loc")})
        message = "Invalid request fields: " + ", ".join(fields) if fields else "Invalid request"
        raise ValidationError(message) from None


def query_int(request: Request, name: str, default: int) -> int:
    raw = request.query_params.get(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValidationError(f"{name} must be an integer") from None


async def dispatch_action(
    request: Request,
    user: AuthenticatedUser,
    actions: Dict[str, Tuple[str, ActionHandler]],
) -> Any:
    action = request.query_params.get("action") or ""
    route = actions.get(action)
    if route is None:
        raise ValidationError("Invalid action or method")
    method, handler = route
    if request.method != method:
        raise MethodNotAllowedError(f"Method {request.method} not allowed for action '{action}'")
    body = await read_json_body(request)
    return await run_in_threadpool(handler, user, request, body)


def ok(data: Any) -> Dict[str, Any]:
    return {"success": True, "data": data}


def read_with_fallback(read: Callable[[], Any], fallback: Callable[[], Any], *, what: str) -> Any:
    """
    Run a read; on BackendUnavailableError return fallback() marked mode=fallback.

    Only read endpoints opt in. Writes always surface the error.
    """
    try:
        return read()
    except BackendUnavailableError as exc:
        logger.warning(
            "read.fallback",
            extra={"request_id": get_request_id(), "error_code": exc.code, "what": what},
        )
        data = fallback()
        data["mode"] = "fallback"
        return data


def dump(model: Optional[BaseModel]) -> Optional[Dict[str, Any]]:
    if model is None:
        return None
    return model.model_dump(by_alias=True, mode="json")
