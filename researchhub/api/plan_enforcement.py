"""
Plan enforcement API.

Clients ask `check` before a plan-gated action and call `record-usage` once
the action has succeeded.
"""
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel

from researchhub.api.common import ACTION_METHODS, dispatch_action, dump, ok, parse_body
from researchhub.core.auth import ensure_role, get_current_user
from researchhub.core.errors import ValidationError
from researchhub.features.enforcement.service import enforce_plan_limits
from researchhub.features.plans.service import assign_plan_for_days, get_user_plan
from researchhub.features.usage.service import get_usage, reset_usage, update_usage
from researchhub.models.user import AuthenticatedUser, Role

router = APIRouter(tags=["plan-enforcement"])


class ResetUsageIn(BaseModel):
    userId: str


class AssignPlanIn(BaseModel):
    userId: str
    planId: str
    expiresInDays: Optional[int] = None


def _action_from(body: Dict[str, Any], key: str) -> str:
    action = body.get(key)
    if not isinstance(action, str) or not action.strip():
        raise ValidationError(f"Invalid request fields: {key}")
    return action.strip()


def _check(user: AuthenticatedUser, request: Request, body: Dict[str, Any]) -> Dict[str, Any]:
    action = _action_from(body, "checkAction")
    context = enforce_plan_limits(user.user_id, action, body)
    return {
        "allowed": True,
        "action": action,
        "currentPlan": context["plan"].id.value,
        "usage": dump(context["usage"]),
    }


def _record_usage(user: AuthenticatedUser, request: Request, body: Dict[str, Any]) -> Dict[str, Any]:
    action = _action_from(body, "usageAction")
    return {"usage": dump(update_usage(user.user_id, action, body))}


def _usage(user: AuthenticatedUser, request: Request, body: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "usage": dump(get_usage(user.user_id)),
        "plan": dump(get_user_plan(user.user_id)),
    }


def _reset_usage(user: AuthenticatedUser, request: Request, body: Dict[str, Any]) -> Dict[str, Any]:
    ensure_role(user, Role.ADMIN)
    data = parse_body(ResetUsageIn, body)
    return {"usage": dump(reset_usage(data.userId))}


def _assign_plan(user: AuthenticatedUser, request: Request, body: Dict[str, Any]) -> Dict[str, Any]:
    ensure_role(user, Role.ADMIN)
    data = parse_body(AssignPlanIn, body)
    if data.expiresInDays is not None and data.expiresInDays <= 0:
        raise ValidationError("expiresInDays must be a positive integer")
    subscription = assign_plan_for_days(data.userId, data.planId, data.expiresInDays, assigned_by=user.user_id)
    return {"subscription": dump(subscription)}


ACTIONS = {
    "check": ("POST", _check),
    "record-usage": ("POST", _record_usage),
    "usage": ("GET", _usage),
    "reset-usage": ("POST", _reset_usage),
    "assign-plan": ("POST", _assign_plan),
}


@router.api_route("/api/plan-enforcement", methods=ACTION_METHODS)
async def plan_enforcement(request: Request, user: AuthenticatedUser = Depends(get_current_user)) -> Dict:
    return ok(await dispatch_action(request, user, ACTIONS))
