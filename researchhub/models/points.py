"""
researchhub/models/points.py

Points balance and ledger transaction models.
"""

from datetime import datetime
from enum import Enum
from typing import Dict, Iterable, Optional
from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel


class TransactionType(str, Enum):
    # Researcher transactions
    EARNED = "earned"
    SPENT = "spent"
    ADMIN_ASSIGNED = "admin_assigned"
    PLAN_ALLOCATION = "plan_allocation"
    BONUS_POINTS = "bonus_points"

    # Participant transactions
    STUDY_REWARD = "study_reward"
    WITHDRAWAL = "withdrawal"
    WITHDRAWAL_FEE = "withdrawal_fee"
    BONUS_EARNED = "bonus_earned"

    # Compensating entries
    WITHDRAWAL_REVERSAL = "withdrawal_reversal"
    EXPIRED = "expired"


CREDIT_TYPES = frozenset({
    TransactionType.EARNED,
    TransactionType.ADMIN_ASSIGNED,
    TransactionType.PLAN_ALLOCATION,
    TransactionType.BONUS_POINTS,
    TransactionType.STUDY_REWARD,
    TransactionType.BONUS_EARNED,
})

EARNINGS_TYPES = frozenset({
    TransactionType.STUDY_REWARD,
    TransactionType.WITHDRAWAL,
    TransactionType.WITHDRAWAL_FEE,
    TransactionType.BONUS_EARNED,
    TransactionType.WITHDRAWAL_REVERSAL,
})


class PointsBalance(BaseModel):
    """
    Derived balance record.

    Invariant: total_points == available_points + used_points + expired_points.
    """
    model_config = ConfigDict(frozen=True, alias_generator=to_camel, populate_by_name=True)

    user_id: str
    total_points: int = 0
    available_points: int = 0
    used_points: int = 0
    expired_points: int = 0
    last_updated: Optional[datetime] = None


class PointsTransaction(BaseModel):
    """Immutable ledger entry. Negative amounts are debits."""
    model_config = ConfigDict(frozen=True, alias_generator=to_camel, populate_by_name=True)

    id: str
    user_id: str
    type: TransactionType
    amount: int
    reason: str
    balance_after: int
    expires_at: Optional[datetime] = None
    study_id: Optional[str] = None
    assigned_by: Optional[str] = None
    withdrawal_request_id: Optional[str] = None
    source_transaction_id: Optional[str] = None
    created_at: datetime


def remaining_on_credit(transactions: Iterable[PointsTransaction], credit_id: str) -> int:
    """
    Unspent part of one credit, replaying a user's ledger in time order.

    Debits draw from open credits soonest-expiry first; credits without an
    expiry are drawn last. Within one instant credits apply before debits.
    An expired entry closes the credit it references.
    """
    open_credits: Dict[str, int] = {}
    expiry: Dict[str, Optional[datetime]] = {}
    for txn in sorted(transactions, key=lambda t: (t.created_at, t.amount < 0)):
        if txn.type is TransactionType.EXPIRED:
            if txn.source_transaction_id in open_credits:
                open_credits[txn.source_transaction_id] = 0
        elif txn.amount > 0:
            open_credits[txn.id] = txn.amount
            expiry[txn.id] = txn.expires_at
        elif txn.amount < 0:
            owed = -txn.amount
            order = sorted(open_credits, key=lambda cid: (expiry[cid] is None, expiry[cid] or txn.created_at))
            for cid in order:
                if owed == 0:
                    break
                drawn = min(owed, open_credits[cid])
                open_credits[cid] -= drawn
                owed -= drawn
    return open_credits.get(credit_id, 0)
