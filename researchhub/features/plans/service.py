"""
researchhub/features/plans/service.py

Subscription lookup and assignment.

A user without a subscription, or whose subscription is cancelled or
expired, is on the free tier.
"""

from datetime import datetime, timedelta
from typing import Optional, Union

from researchhub.core.logging import log_event
from researchhub.core.timeutil import as_utc, normalize_now
from researchhub.features.plans.catalog import get_plan, parse_plan_id
from researchhub.models.plan import PlanTier, SubscriptionPlan, UserSubscription
from researchhub.storage.factory import get_storage


def get_user_subscription(user_id: str) -> Optional[UserSubscription]:
    return get_storage().get_subscription(user_id)


def is_subscription_active(subscription: Optional[UserSubscription], now: Optional[datetime] = None) -> bool:
    if subscription is None or subscription.status != "active":
        return False
    if subscription.expires_at is None:
        return True
    return as_utc(subscription.expires_at) > normalize_now(now)


def get_user_plan_id(user_id: str, now: Optional[datetime] = None) -> PlanTier:
    subscription = get_user_subscription(user_id)
    if not is_subscription_active(subscription, now):
        return PlanTier.FREE
    return subscription.plan_id


def get_user_plan(user_id: str, now: Optional[datetime] = None) -> SubscriptionPlan:
    return get_plan(get_user_plan_id(user_id, now))


def assign_plan(
    user_id: str,
    plan_id: Union[str, PlanTier],
    expires_at: Optional[datetime] = None,
    *,
    assigned_by: Optional[str] = None,
    now: Optional[datetime] = None,
) -> UserSubscription:
    """Upsert the user's subscription (admin action)."""
    tier = parse_plan_id(plan_id)
    current = normalize_now(now)
    subscription = UserSubscription(
        user_id=user_id,
        plan_id=tier,
        status="active",
        expires_at=as_utc(expires_at),
        assigned_at=current,
    )
    get_storage().save_subscription(subscription)
    log_event(
        "info",
        "plan.assigned",
        user_id=user_id,
        event_type="plan.assigned",
        extra={"plan_id": tier.value, "assigned_by": assigned_by},
    )
    return subscription


def assign_plan_for_days(
    user_id: str,
    plan_id: Union[str, PlanTier],
    expires_in_days: Optional[int],
    *,
    assigned_by: Optional[str] = None,
    now: Optional[datetime] = None,
) -> UserSubscription:
    current = normalize_now(now)
    expires_at = current + timedelta(days=expires_in_days) if expires_in_days else None
    return assign_plan(user_id, plan_id, expires_at, assigned_by=assigned_by, now=current)
