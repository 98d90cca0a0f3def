"""
researchhub/features/plans/catalog.py

Static subscription plan catalog.

Handles:
- Plan lookup by tier id
- Linear upgrade chain (free -> basic -> pro -> enterprise)
- Comparison data for upgrade prompts
"""

from typing import Any, Dict, List, Optional, Union

from researchhub.core.errors import InvalidPlanError
from researchhub.models.plan import PlanTier, SubscriptionPlan, UNLIMITED


PLAN_CATALOG: Dict[PlanTier, SubscriptionPlan] = {
    PlanTier.FREE: SubscriptionPlan(
        id=PlanTier.FREE,
        name="Free Plan",
        price=0,
        monthly_points=20,
        max_studies=3,
        max_participants_per_study=10,
        recording_minutes=60,
        features=["Basic studies", "Up to 10 participants", "Email support"],
    ),
    PlanTier.BASIC: SubscriptionPlan(
        id=PlanTier.BASIC,
        name="Basic Plan",
        price=29,
        monthly_points=100,
        max_studies=15,
        max_participants_per_study=50,
        recording_minutes=300,
        advanced_analytics=True,
        export_data=True,
        features=["Up to 15 studies", "Up to 50 participants", "Basic analytics", "Data export"],
    ),
    PlanTier.PRO: SubscriptionPlan(
        id=PlanTier.PRO,
        name="Pro Plan",
        price=99,
        monthly_points=500,
        max_studies=UNLIMITED,
        max_participants_per_study=500,
        recording_minutes=1800,
        advanced_analytics=True,
        export_data=True,
        team_collaboration=True,
        priority_support=True,
        custom_branding=True,
        features=["Unlimited studies", "Advanced analytics", "Team collaboration", "Custom branding"],
    ),
    PlanTier.ENTERPRISE: SubscriptionPlan(
        id=PlanTier.ENTERPRISE,
        name="Enterprise Plan",
        price=299,
        monthly_points=2000,
        max_studies=UNLIMITED,
        max_participants_per_study=UNLIMITED,
        recording_minutes=UNLIMITED,
        advanced_analytics=True,
        export_data=True,
        team_collaboration=True,
        priority_support=True,
        custom_branding=True,
        features=["Unlimited everything", "Dedicated support", "Custom integrations", "SLA guarantee"],
    ),
}

PLAN_ORDER: List[PlanTier] = [PlanTier.FREE, PlanTier.BASIC, PlanTier.PRO, PlanTier.ENTERPRISE]

UPGRADE_PATH: Dict[PlanTier, PlanTier] = {
    PlanTier.FREE: PlanTier.BASIC,
    PlanTier.BASIC: PlanTier.PRO,
    PlanTier.PRO: PlanTier.ENTERPRISE,
    PlanTier.ENTERPRISE: PlanTier.ENTERPRISE,
}


def parse_plan_id(plan_id: Union[str, PlanTier, None]) -> PlanTier:
    """Coerce a plan id into PlanTier or raise InvalidPlanError."""
    if isinstance(plan_id, PlanTier):
        return plan_id
    if isinstance(plan_id, str):
        try:
            return PlanTier(plan_id.strip().lower())
        except ValueError:
            pass
    raise InvalidPlanError(f"Unknown plan '{plan_id}'")


def get_plan(plan_id: Union[str, PlanTier]) -> SubscriptionPlan:
    return PLAN_CATALOG[parse_plan_id(plan_id)]


def get_upgrade_plan(plan_id: Union[str, PlanTier]) -> PlanTier:
    """Next tier up; enterprise is terminal."""
    return UPGRADE_PATH[parse_plan_id(plan_id)]


def is_unlimited(limit: int) -> bool:
    return limit == UNLIMITED


def get_plan_comparison(current_plan: Optional[Union[str, PlanTier]] = None) -> Dict[str, Any]:
    """Current plan, the tiers above it, and per-feature limit columns."""
    current = parse_plan_id(current_plan or PlanTier.FREE)
    plans = [PLAN_CATALOG[tier] for tier in PLAN_ORDER]
    index = PLAN_ORDER.index(current)

    def dump(plan: SubscriptionPlan) -> Dict[str, Any]:
        return plan.model_dump(by_alias=True, mode="json")

    return {
        "current": dump(PLAN_CATALOG[current]),
        "available": [dump(p) for p in plans[index + 1:]],
        "features": {
            "studies": [{"plan": p.id.value, "limit": p.max_studies} for p in plans],
            "participants": [{"plan": p.id.value, "limit": p.max_participants_per_study} for p in plans],
            "recording": [{"plan": p.id.value, "limit": p.recording_minutes} for p in plans],
            "analytics": [{"plan": p.id.value, "enabled": p.advanced_analytics} for p in plans],
        },
    }
