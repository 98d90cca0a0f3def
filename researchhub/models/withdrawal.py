"""
researchhub/models/withdrawal.py

Participant withdrawal requests.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional
from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel


class PayoutMethod(str, Enum):
    PAYPAL = "paypal"
    BANK_TRANSFER = "bank_transfer"
    GIFT_CARD = "gift_card"


class WithdrawalStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class WithdrawalRequest(BaseModel):
    """
    WithdrawalRequest converts points into a real-world payout.

    Lifecycle: pending -> approved | rejected (both terminal, admin only).
    """
    model_config = ConfigDict(frozen=True, alias_generator=to_camel, populate_by_name=True)

    id: str
    user_id: str
    amount: int
    fee: int
    net_amount: int
    payout_method: PayoutMethod
    payout_details: Optional[Dict[str, Any]] = None
    status: WithdrawalStatus = WithdrawalStatus.PENDING
    cash_value: float
    admin_notes: Optional[str] = None
    processed_at: Optional[datetime] = None
    processed_by: Optional[str] = None
    external_transaction_id: Optional[str] = None
    created_at: datetime
