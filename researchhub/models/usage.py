"""
researchhub/models/usage.py

Per-user usage counters checked by plan enforcement.
"""

from datetime import datetime
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class UsageRecord(BaseModel):
    """
    UsageRecord counts plan-gated activity since the last reset.

    Counters are never negative. Reset is explicit (monthly job or admin).
    """
    model_config = ConfigDict(frozen=True, alias_generator=to_camel, populate_by_name=True)

    user_id: str
    studies_created: int = Field(default=0, ge=0)
    participants_recruited: int = Field(default=0, ge=0)
    recording_minutes_used: int = Field(default=0, ge=0)
    data_exports: int = Field(default=0, ge=0)
    last_reset_date: datetime
