"""
Points ledger service.

Manages points accounting with:
- Append-only transaction log plus a derived balance per user
- Admin assignment, consumption and participant study rewards
- Monthly plan allocation (at most once per UTC calendar month)
- Expiry sweep for credits whose expiresAt has passed

Every mutation goes through one atomic Storage call, so the balance and its
transaction row are written together or not at all.
"""
from __future__ import annotations

import math
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple

from researchhub.core.config import settings
from researchhub.core.errors import NotFoundError, ValidationError
from researchhub.core.logging import log_event
from researchhub.core.timeutil import month_start, normalize_now
from researchhub.features.plans.catalog import get_plan
from researchhub.features.plans.service import get_user_plan_id
from researchhub.models.plan import PlanTier
from researchhub.models.points import PointsBalance, PointsTransaction, TransactionType
from researchhub.storage.factory import get_storage

BASE_REWARD_PER_STUDY = 5
BONUS_PER_BLOCK = 1
DIFFICULTY_MULTIPLIERS = {
    "easy": 0.8,
    "normal": 1.0,
    "hard": 1.5,
    "expert": 2.0,
}
MONTHLY_ALLOCATION_EXPIRY_DAYS = 30
DEFAULT_HISTORY_LIMIT = 50


def round_half_up(value: float) -> int:
    """Round to the nearest integer with halves rounded up (2.5 -> 3)."""
    return int(math.floor(value + 0.5))


def _positive_amount(amount: Any, field: str = "amount") -> int:
    if isinstance(amount, bool) or not isinstance(amount, (int, float)) or amount <= 0 or amount != int(amount):
        raise ValidationError(f"Positive integer {field} required")
    return int(amount)


def get_balance(user_id: str, *, now: Optional[datetime] = None) -> PointsBalance:
    """Current balance; a zero balance is created and persisted on first access."""
    return get_storage().ensure_balance(user_id, now=normalize_now(now))


def resolve_target_user(target_user_id: Optional[str] = None, user_email: Optional[str] = None) -> str:
    """Admins address users by id or by email."""
    storage = get_storage()
    if target_user_id:
        if storage.get_profile(target_user_id) is None:
            raise NotFoundError(f"Target user not found with ID: {target_user_id}")
        return target_user_id
    if user_email:
        profile = storage.find_profile_by_email(user_email)
        if profile is None:
            raise NotFoundError(f"Target user not found with email: {user_email}")
        return profile.user_id
    raise ValidationError("Target user ID or email and positive amount required")


def assign_points(
    admin_id: Optional[str],
    target_user_id: str,
    amount: int,
    reason: Optional[str] = None,
    expires_in_days: Optional[int] = None,
    transaction_type: TransactionType = TransactionType.ADMIN_ASSIGNED,
    *,
    now: Optional[datetime] = None,
    once_since: Optional[datetime] = None,
) -> Tuple[PointsTransaction, PointsBalance]:
    """Credit `amount` to total and available points in one atomic write."""
    amount = _positive_amount(amount)
    current = normalize_now(now)

    expires_at = None
    if expires_in_days is not None:
        if isinstance(expires_in_days, bool) or not isinstance(expires_in_days, int) or expires_in_days <= 0:
            raise ValidationError("expiresInDays must be a positive integer")
        if expires_in_days > settings.POINTS_MAX_EXPIRY_DAYS:
            raise ValidationError(f"expiresInDays cannot exceed {settings.POINTS_MAX_EXPIRY_DAYS}")
        expires_at = current + timedelta(days=expires_in_days)

    txn, balance = get_storage().credit(
        target_user_id,
        amount,
        type=transaction_type,
        reason=reason or "Admin assigned points",
        now=current,
        expires_at=expires_at,
        assigned_by=admin_id,
        once_since=once_since,
    )
    log_event(
        "info",
        "points.assigned",
        user_id=target_user_id,
        event_type="points.assigned",
        extra={"amount": amount, "type": transaction_type.value, "assigned_by": admin_id},
    )
    return txn, balance


def consume_points(
    user_id: str,
    amount: int,
    study_id: Optional[str] = None,
    reason: Optional[str] = None,
    *,
    now: Optional[datetime] = None,
) -> Tuple[PointsTransaction, PointsBalance]:
    """Debit `amount`; InsufficientBalanceError leaves the balance untouched."""
    amount = _positive_amount(amount)
    txn, balance = get_storage().debit(
        user_id,
        amount,
        type=TransactionType.SPENT,
        reason=reason or "Points consumed",
        now=normalize_now(now),
        study_id=study_id,
    )
    log_event(
        "info",
        "points.consumed",
        user_id=user_id,
        event_type="points.consumed",
        extra={"amount": amount, "study_id": study_id},
    )
    return txn, balance


def calculate_participant_reward(blocks: Optional[int] = 0, difficulty: Optional[str] = "normal") -> int:
    if blocks is None:
        blocks = 0
    if isinstance(blocks, bool) or not isinstance(blocks, int) or blocks < 0:
        raise ValidationError("studyBlocks must be a non-negative integer")
    multiplier = DIFFICULTY_MULTIPLIERS.get(difficulty or "normal", 1.0)
    return round_half_up((BASE_REWARD_PER_STUDY + blocks * BONUS_PER_BLOCK) * multiplier)


def reward_participant(
    participant_id: str,
    study_id: str,
    blocks: Optional[int] = 0,
    difficulty: Optional[str] = "normal",
    *,
    now: Optional[datetime] = None,
) -> Tuple[PointsTransaction, PointsBalance, int]:
    """Credit a study completion reward. No balance precondition."""
    if not participant_id or not study_id:
        raise ValidationError("Participant ID and study ID required")
    reward = calculate_participant_reward(blocks, difficulty)
    txn, balance = get_storage().credit(
        participant_id,
        reward,
        type=TransactionType.STUDY_REWARD,
        reason="Study completion reward",
        now=normalize_now(now),
        study_id=study_id,
    )
    log_event(
        "info",
        "points.rewarded",
        user_id=participant_id,
        event_type="points.rewarded",
        extra={"amount": reward, "study_id": study_id, "difficulty": difficulty},
    )
    return txn, balance, reward


def allocate_monthly_points(user_id: str, *, now: Optional[datetime] = None) -> Tuple[PointsTransaction, PointsBalance]:
    """Credit the plan's monthly points once per calendar month (AlreadyAllocatedError otherwise)."""
    current = normalize_now(now)
    plan = get_plan(get_user_plan_id(user_id, current))
    return assign_points(
        None,
        user_id,
        plan.monthly_points,
        f"Monthly {plan.name} allocation",
        MONTHLY_ALLOCATION_EXPIRY_DAYS,
        TransactionType.PLAN_ALLOCATION,
        now=current,
        once_since=month_start(current),
    )


def get_plan_info(user_id: str, *, now: Optional[datetime] = None) -> Dict[str, Any]:
    current = normalize_now(now)
    plan_id = get_user_plan_id(user_id, current)
    plan = get_plan(plan_id)
    allocations = get_storage().list_transactions(
        user_id, types=[TransactionType.PLAN_ALLOCATION], since=month_start(current)
    )
    allocated = sum(t.amount for t in allocations)
    return {
        "currentPlan": plan_id.value,
        "planDetails": plan.model_dump(by_alias=True, mode="json"),
        "monthlyAllocation": {
            "total": plan.monthly_points,
            "allocated": allocated,
            "remaining": max(0, plan.monthly_points - allocated),
        },
        "upgradeAvailable": plan_id is not PlanTier.ENTERPRISE,
    }


def get_history(user_id: str, limit: int = DEFAULT_HISTORY_LIMIT, offset: int = 0) -> List[PointsTransaction]:
    if limit < 1 or limit > 500:
        raise ValidationError("limit must be between 1 and 500")
    if offset < 0:
        raise ValidationError("offset must be non-negative")
    return get_storage().list_transactions(user_id, limit=limit, offset=offset)


def get_admin_balances() -> List[Dict[str, Any]]:
    """All balances with owner email and role, highest total first."""
    rows = []
    for balance, profile in get_storage().list_balances():
        entry = balance.model_dump(by_alias=True, mode="json")
        entry["profile"] = (
            {"email": profile.email, "role": profile.role.value} if profile is not None else None
        )
        rows.append(entry)
    return rows


def expire_points(*, now: Optional[datetime] = None) -> Dict[str, Any]:
    """
    Sweep credits whose expiresAt has passed.

    Spending draws on the soonest-expiring credits first and permanent
    credits last, so each credit moves only its unspent part (capped by
    available) into expired. A credit is swept at most once.
    """
    current = normalize_now(now)
    storage = get_storage()
    swept = 0
    expired_total = 0
    users = set()
    for credit in storage.list_expirable_credits(current):
        outcome = storage.expire_credit(credit, now=current)
        if outcome is None:
            continue
        txn, _ = outcome
        swept += 1
        expired_total += -txn.amount
        users.add(credit.user_id)

    log_event(
        "info",
        "points.expired",
        event_type="points.expired",
        extra={"credits_swept": swept, "points_expired": expired_total, "users": len(users)},
    )
    return {"creditsSwept": swept, "pointsExpired": expired_total, "usersAffected": len(users)}
