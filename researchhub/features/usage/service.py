"""
researchhub/features/usage/service.py

Usage accounting for plan enforcement.

Handles:
- Usage reads (zero record when none is persisted; nothing is written)
- Named increments after a gated action succeeds
- Explicit reset (monthly job or admin)
"""

import math
from datetime import datetime
from typing import Any, Dict, Mapping, Optional

from researchhub.core.errors import ValidationError
from researchhub.core.logging import log_event
from researchhub.core.timeutil import normalize_now
from researchhub.models.usage import UsageRecord
from researchhub.storage.factory import get_storage


def parse_count(value: Any, default: int, field: str) -> int:
    """Non-negative whole number from action data; missing means `default`."""
    if value is None:
        return default
    if isinstance(value, str) and value.strip().isdecimal():
        return int(value.strip())
    if isinstance(value, bool) or not isinstance(value, (int, float)) or not math.isfinite(value) \
            or value < 0 or value != int(value):
        raise ValidationError(f"{field} must be a non-negative whole number")
    return int(value)


def usage_deltas(action: str, action_data: Optional[Mapping[str, Any]] = None) -> Dict[str, int]:
    """Map a gated action onto counter increments; unknown actions map to none."""
    data = action_data or {}
    if action == "create-study":
        return {"studies_created": 1}
    if action == "add-participant":
        return {"participants_recruited": parse_count(data.get("participantCount"), 1, "participantCount")}
    if action == "export-data":
        return {"data_exports": 1}
    if action == "record-session":
        return {"recording_minutes_used": parse_count(data.get("minutesUsed"), 0, "minutesUsed")}
    return {}


def get_usage(user_id: str, now: Optional[datetime] = None) -> UsageRecord:
    record = get_storage().get_usage(user_id)
    if record is not None:
        return record
    return UsageRecord(user_id=user_id, last_reset_date=normalize_now(now))


def update_usage(
    user_id: str,
    action: str,
    action_data: Optional[Mapping[str, Any]] = None,
    *,
    now: Optional[datetime] = None,
) -> UsageRecord:
    """Apply the increment for `action` and persist it."""
    deltas = usage_deltas(action, action_data)
    if not deltas:
        return get_usage(user_id, now)

    record = get_storage().increment_usage(user_id, deltas, now=normalize_now(now))
    log_event(
        "info",
        "usage.updated",
        user_id=user_id,
        event_type="usage.updated",
        extra={"action": action, "deltas": deltas},
    )
    return record


def reset_usage(user_id: str, *, now: Optional[datetime] = None) -> UsageRecord:
    record = UsageRecord(user_id=user_id, last_reset_date=normalize_now(now))
    get_storage().save_usage(record)
    log_event("info", "usage.reset", user_id=user_id, event_type="usage.reset")
    return record
