"""
Points API: balances, admin assignment, consumption, history, expiry sweep.
"""
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, field_validator

from researchhub.api.common import (
    ACTION_METHODS,
    dispatch_action,
    dump,
    ok,
    parse_body,
    query_int,
    read_with_fallback,
)
from researchhub.core.auth import ensure_role, get_current_user
from researchhub.core.timeutil import utc_now
from researchhub.features.points import ledger
from researchhub.models.points import PointsBalance
from researchhub.models.user import AuthenticatedUser, Role

router = APIRouter(tags=["points"])


class AssignPointsIn(BaseModel):
    targetUserId: Optional[str] = None
    userEmail: Optional[str] = None
    amount: int
    reason: Optional[str] = None
    expiresInDays: Optional[int] = None

    @field_validator("targetUserId", "userEmail", "reason")
    @classmethod
    def _trim(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        return value.strip() or None


class ConsumePointsIn(BaseModel):
    amount: int
    studyId: Optional[str] = None
    reason: Optional[str] = None


def _balance(user: AuthenticatedUser, request: Request, body: Dict[str, Any]) -> Dict[str, Any]:
    return read_with_fallback(
        lambda: {"balance": dump(ledger.get_balance(user.user_id))},
        lambda: {"balance": dump(PointsBalance(user_id=user.user_id, last_updated=utc_now()))},
        what="points.balance",
    )


def _assign(user: AuthenticatedUser, request: Request, body: Dict[str, Any]) -> Dict[str, Any]:
    ensure_role(user, Role.ADMIN)
    data = parse_body(AssignPointsIn, body)
    target = ledger.resolve_target_user(data.targetUserId, data.userEmail)
    txn, balance = ledger.assign_points(
        user.user_id,
        target,
        data.amount,
        data.reason,
        data.expiresInDays,
    )
    return {
        "transaction": dump(txn),
        "newBalance": dump(balance),
        "message": f"{data.amount} points assigned to {data.userEmail or target}",
    }


def _consume(user: AuthenticatedUser, request: Request, body: Dict[str, Any]) -> Dict[str, Any]:
    data = parse_body(ConsumePointsIn, body)
    txn, balance = ledger.consume_points(user.user_id, data.amount, data.studyId, data.reason)
    return {
        "transaction": dump(txn),
        "newBalance": dump(balance),
        "message": f"{data.amount} points consumed",
    }


def _history(user: AuthenticatedUser, request: Request, body: Dict[str, Any]) -> Dict[str, Any]:
    limit = query_int(request, "limit", ledger.DEFAULT_HISTORY_LIMIT)
    offset = query_int(request, "offset", 0)
    transactions = ledger.get_history(user.user_id, limit=limit, offset=offset)
    return {"transactions": [dump(t) for t in transactions]}


def _admin_balances(user: AuthenticatedUser, request: Request, body: Dict[str, Any]) -> Dict[str, Any]:
    ensure_role(user, Role.ADMIN)
    return {"balances": ledger.get_admin_balances()}


def _expire(user: AuthenticatedUser, request: Request, body: Dict[str, Any]) -> Dict[str, Any]:
    ensure_role(user, Role.ADMIN)
    return ledger.expire_points()


ACTIONS = {
    "balance": ("GET", _balance),
    "assign": ("POST", _assign),
    "consume": ("POST", _consume),
    "history": ("GET", _history),
    "admin-balances": ("GET", _admin_balances),
    "expire": ("POST", _expire),
}


@router.api_route("/api/points", methods=ACTION_METHODS)
async def points(request: Request, user: AuthenticatedUser = Depends(get_current_user)) -> Dict:
    return ok(await dispatch_action(request, user, ACTIONS))
