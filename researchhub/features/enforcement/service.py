"""
researchhub/features/enforcement/service.py

Plan limit enforcement.

Handles:
- Pure allow/deny decision for a gated action (check_limit)
- Resolving plan + usage and raising PlanLimitExceededError (402) on denial

The enforcer never mutates usage. Callers record usage separately once the
gated action has actually succeeded.
"""

from dataclasses import dataclass, asdict
from datetime import datetime
from typing import Any, Dict, Mapping, Optional

from researchhub.core.errors import PlanLimitExceededError
from researchhub.core.logging import log_event
from researchhub.features.plans.catalog import get_upgrade_plan, is_unlimited
from researchhub.features.plans.service import get_user_plan
from researchhub.features.usage.service import get_usage, parse_count
from researchhub.models.plan import PlanTier, SubscriptionPlan
from researchhub.models.usage import UsageRecord

DEFAULT_CURRENT_PARTICIPANTS = 0
DEFAULT_ESTIMATED_MINUTES = 30


@dataclass(frozen=True)
class LimitCheckResult:
    allowed: bool
    reason: Optional[str] = None
    current_usage: Optional[int] = None
    plan_limit: Optional[int] = None
    required_plan: Optional[PlanTier] = None
    upgrade_message: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        return {
            "allowed": data["allowed"],
            "reason": data["reason"],
            "currentUsage": data["current_usage"],
            "planLimit": data["plan_limit"],
            "requiredPlan": self.required_plan.value if self.required_plan else None,
            "upgradeMessage": data["upgrade_message"],
        }


ALLOWED = LimitCheckResult(allowed=True)


def _feature_denied(reason: str, required: PlanTier, message: str) -> LimitCheckResult:
    return LimitCheckResult(allowed=False, reason=reason, required_plan=required, upgrade_message=message)


def check_limit(
    plan: SubscriptionPlan,
    usage: UsageRecord,
    action: str,
    action_data: Optional[Mapping[str, Any]] = None,
) -> LimitCheckResult:
    """Decide whether `action` fits within `plan` given `usage`. Unknown actions are allowed."""
    data = action_data or {}
    upgrade = get_upgrade_plan(plan.id)

    if action == "create-study":
        if not is_unlimited(plan.max_studies) and usage.studies_created >= plan.max_studies:
            return LimitCheckResult(
                allowed=False,
                reason="Study limit exceeded",
                current_usage=usage.studies_created,
                plan_limit=plan.max_studies,
                required_plan=upgrade,
                upgrade_message=f"Upgrade to {upgrade.value} to create more studies",
            )
        return ALLOWED

    if action == "add-participant":
        current = parse_count(data.get("currentParticipants"), DEFAULT_CURRENT_PARTICIPANTS, "currentParticipants")
        if not is_unlimited(plan.max_participants_per_study) and current >= plan.max_participants_per_study:
            return LimitCheckResult(
                allowed=False,
                reason="Participant limit exceeded for this study",
                current_usage=current,
                plan_limit=plan.max_participants_per_study,
                required_plan=upgrade,
                upgrade_message=f"Upgrade to {upgrade.value} for more participants per study",
            )
        return ALLOWED

    if action == "export-data":
        if not plan.export_data:
            return _feature_denied(
                "Data export not available in your plan",
                PlanTier.BASIC,
                "Upgrade to Basic plan to export your research data",
            )
        return ALLOWED

    if action == "advanced-analytics":
        if not plan.advanced_analytics:
            return _feature_denied(
                "Advanced analytics not available in your plan",
                PlanTier.BASIC,
                "Upgrade to Basic plan for advanced analytics insights",
            )
        return ALLOWED

    if action == "team-collaboration":
        if not plan.team_collaboration:
            return _feature_denied(
                "Team collaboration not available in your plan",
                PlanTier.PRO,
                "Upgrade to Pro plan for team collaboration features",
            )
        return ALLOWED

    if action == "record-session":
        requested = parse_count(data.get("estimatedMinutes"), DEFAULT_ESTIMATED_MINUTES, "estimatedMinutes")
        if not is_unlimited(plan.recording_minutes) and usage.recording_minutes_used + requested > plan.recording_minutes:
            return LimitCheckResult(
                allowed=False,
                reason="Recording minutes limit exceeded",
                current_usage=usage.recording_minutes_used,
                plan_limit=plan.recording_minutes,
                required_plan=upgrade,
                upgrade_message=f"Upgrade to {upgrade.value} for more recording time",
            )
        return ALLOWED

    return ALLOWED


def enforce_plan_limits(
    user_id: str,
    action: str,
    action_data: Optional[Mapping[str, Any]] = None,
    *,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """
    Gate `action` for `user_id`.

    Returns the plan context {plan, usage, result} when allowed.
    Raises PlanLimitExceededError with upgrade details when denied.
    """
    plan = get_user_plan(user_id, now)
    usage = get_usage(user_id, now)
    result = check_limit(plan, usage, action, action_data)

    if not result.allowed:
        details = {
            "reason": result.reason,
            "currentPlan": plan.id.value,
            "requiredPlan": result.required_plan.value if result.required_plan else None,
            "upgradeMessage": result.upgrade_message,
            "currentUsage": result.current_usage,
            "planLimit": result.plan_limit,
            "planFeatures": plan.model_dump(by_alias=True, mode="json"),
        }
        log_event(
            "warning",
            "plan.limit_exceeded",
            user_id=user_id,
            event_type="plan.limit_exceeded",
            error_code="plan_limit_exceeded",
            extra={"action": action, "plan_id": plan.id.value, "reason": result.reason},
        )
        raise PlanLimitExceededError(details)

    return {"plan": plan, "usage": usage, "result": result}
