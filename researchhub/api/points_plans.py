"""
Plans and participant earnings API.

Researchers read plan info and claim monthly allocations; participants read
earnings and request withdrawals; admins review and process withdrawals.
"""
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from researchhub.api.common import ACTION_METHODS, dispatch_action, dump, ok, parse_body, read_with_fallback
from researchhub.core.auth import ensure_role, get_current_user
from researchhub.features.plans.catalog import get_plan, get_plan_comparison
from researchhub.features.plans.service import get_user_plan_id
from researchhub.features.points import ledger, withdrawals
from researchhub.models.plan import PlanTier
from researchhub.models.user import AuthenticatedUser, Role
from researchhub.models.withdrawal import WithdrawalStatus

router = APIRouter(tags=["points-plans"])


class WithdrawalIn(BaseModel):
    amount: int
    payoutMethod: str
    payoutDetails: Optional[Dict[str, Any]] = None


class ProcessWithdrawalIn(BaseModel):
    withdrawalRequestId: str
    status: str
    adminNotes: Optional[str] = None
    transactionId: Optional[str] = None


class RewardIn(BaseModel):
    participantId: str
    studyId: str
    studyBlocks: Optional[int] = 0
    difficulty: Optional[str] = "normal"


def _free_plan_info() -> Dict[str, Any]:
    plan = get_plan(PlanTier.FREE)
    return {
        "currentPlan": plan.id.value,
        "planDetails": dump(plan),
        "monthlyAllocation": {"total": plan.monthly_points, "allocated": 0, "remaining": plan.monthly_points},
        "upgradeAvailable": True,
    }


def _plan_info(user: AuthenticatedUser, request: Request, body: Dict[str, Any]) -> Dict[str, Any]:
    ensure_role(user, Role.RESEARCHER)
    return read_with_fallback(lambda: ledger.get_plan_info(user.user_id), _free_plan_info, what="points.plan_info")


def _plan_comparison(user: AuthenticatedUser, request: Request, body: Dict[str, Any]) -> Dict[str, Any]:
    return get_plan_comparison(get_user_plan_id(user.user_id))


def _allocate(user: AuthenticatedUser, request: Request, body: Dict[str, Any]) -> Dict[str, Any]:
    ensure_role(user, Role.RESEARCHER)
    txn, balance = ledger.allocate_monthly_points(user.user_id)
    return {
        "transaction": dump(txn),
        "newBalance": dump(balance),
        "message": f"{txn.amount} points allocated for this month",
    }


def _earnings(user: AuthenticatedUser, request: Request, body: Dict[str, Any]) -> Dict[str, Any]:
    ensure_role(user, Role.PARTICIPANT)
    return withdrawals.get_participant_earnings(user.user_id)


def _request_withdrawal(user: AuthenticatedUser, request: Request, body: Dict[str, Any]) -> JSONResponse:
    ensure_role(user, Role.PARTICIPANT)
    data = parse_body(WithdrawalIn, body)
    withdrawal, txn, balance = withdrawals.request_withdrawal(
        user.user_id, data.amount, data.payoutMethod, data.payoutDetails
    )
    payload = {
        "withdrawalRequest": dump(withdrawal),
        "transaction": dump(txn),
        "newBalance": dump(balance),
        "message": (
            f"Withdrawal request for {withdrawal.amount} points "
            f"({withdrawal.cash_value:.2f} USD) submitted successfully"
        ),
    }
    return JSONResponse(status_code=201, content=ok(payload))


def _process_withdrawal(user: AuthenticatedUser, request: Request, body: Dict[str, Any]) -> Dict[str, Any]:
    ensure_role(user, Role.ADMIN)
    data = parse_body(ProcessWithdrawalIn, body)
    withdrawal, refund, balance = withdrawals.process_withdrawal(
        user.user_id, data.withdrawalRequestId, data.status, data.adminNotes, data.transactionId
    )
    return {
        "withdrawalRequest": dump(withdrawal),
        "refundTransaction": dump(refund),
        "newBalance": dump(balance),
        "message": f"Withdrawal request {withdrawal.status.value} successfully",
    }


def _withdrawal_requests(user: AuthenticatedUser, request: Request, body: Dict[str, Any]) -> Dict[str, Any]:
    ensure_role(user, Role.ADMIN)
    status = request.query_params.get("status") or WithdrawalStatus.PENDING.value
    rows = withdrawals.list_withdrawal_requests(status, request.query_params.get("userId"))
    return {
        "withdrawalRequests": [dump(w) for w in rows],
        "count": len(rows),
        "totalPoints": sum(w.amount for w in rows),
    }

def _reward(user: AuthenticatedUser, request: Request, body: Dict[str, Any]) -> Dict[str, Any]:
    ensure_role(user, Role.RESEARCHER, Role.ADMIN)
    data = parse_body(RewardIn, body)
    txn, balance, reward = ledger.reward_participant(
        data.participantId, data.studyId, data.studyBlocks, data.difficulty
    )
    return {
        "transaction": dump(txn),
        "newBalance": dump(balance),
        "rewardAmount": reward,
        "cashValue": round(reward * withdrawals.CONVERSION_RATE, 2),
        "message": f"Participant rewarded {reward} points for study completion",
    }


ACTIONS = {
    "plan-info": ("GET", _plan_info),
    "plan-comparison": ("GET", _plan_comparison),
    "allocate-monthly-points": ("POST", _allocate),
    "participant-earnings": ("GET", _earnings),
    "request-withdrawal": ("POST", _request_withdrawal),
    "process-withdrawal": ("POST", _process_withdrawal),
    "withdrawal-requests": ("GET", _withdrawal_requests),
    "reward-participant": ("POST", _reward),
}


@router.api_route("/api/points-with-plans-and-earnings", methods=ACTION_METHODS)
async def points_with_plans(request: Request, user: AuthenticatedUser = Depends(get_current_user)):
    result = await dispatch_action(request, user, ACTIONS)
    if isinstance(result, JSONResponse):
        return result
    return ok(result)
