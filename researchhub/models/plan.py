"""
researchhub/models/plan.py

Subscription plan models.

Plans are static capability tiers (free, basic, pro, enterprise). Numeric
limits use -1 for unlimited.
"""

from datetime import datetime
from enum import Enum
from typing import List, Optional
from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel


class PlanTier(str, Enum):
    FREE = "free"
    BASIC = "basic"
    PRO = "pro"
    ENTERPRISE = "enterprise"


UNLIMITED = -1


class SubscriptionPlan(BaseModel):
    """
    SubscriptionPlan bounds feature access and monthly point allocation.

    Immutable at runtime; the catalog is the only source of instances.
    """
    model_config = ConfigDict(frozen=True, alias_generator=to_camel, populate_by_name=True)

    id: PlanTier
    name: str
    price: int
    monthly_points: int
    max_studies: int
    max_participants_per_study: int
    recording_minutes: int
    advanced_analytics: bool = False
    export_data: bool = False
    team_collaboration: bool = False
    priority_support: bool = False
    custom_branding: bool = False
    features: List[str] = []


class UserSubscription(BaseModel):
    """A user's plan assignment. Missing or expired means free tier."""
    model_config = ConfigDict(frozen=True, alias_generator=to_camel, populate_by_name=True)

    user_id: str
    plan_id: PlanTier
    status: str = "active"
    expires_at: Optional[datetime] = None
    assigned_at: Optional[datetime] = None
