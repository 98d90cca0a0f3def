"""
Participant withdrawals.

pending -> approved | rejected, both terminal and admin-only. The gross
amount is debited when the request is created; a rejection credits it back
in the same atomic unit that resolves the request.
"""
from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple
from uuid import uuid4

from researchhub.core.errors import ValidationError
from researchhub.core.logging import log_event
from researchhub.core.timeutil import normalize_now
from researchhub.features.points.ledger import get_balance, round_half_up
from researchhub.models.points import EARNINGS_TYPES, PointsBalance, PointsTransaction, TransactionType
from researchhub.models.withdrawal import PayoutMethod, WithdrawalRequest, WithdrawalStatus
from researchhub.storage.factory import get_storage

CONVERSION_RATE = 0.10  # USD per point
MIN_WITHDRAWAL = 50
WITHDRAWAL_FEE_PERCENT = 2.5
RECENT_EARNINGS_LIMIT = 10


def calculate_withdrawal(amount: int) -> Dict[str, Any]:
    fee = round_half_up(amount * WITHDRAWAL_FEE_PERCENT / 100)
    net_amount = amount - fee
    return {
        "fee": fee,
        "net_amount": net_amount,
        "cash_value": round(net_amount * CONVERSION_RATE, 2),
    }


def _parse_method(method: Any) -> PayoutMethod:
    try:
        return PayoutMethod(method)
    except ValueError:
        raise ValidationError("Invalid payout method") from None


def request_withdrawal(
    user_id: str,
    amount: int,
    method: Any,
    details: Optional[Dict[str, Any]] = None,
    *,
    now: Optional[datetime] = None,
) -> Tuple[WithdrawalRequest, PointsTransaction, PointsBalance]:
    if isinstance(amount, bool) or not isinstance(amount, int) or amount < MIN_WITHDRAWAL:
        raise ValidationError(f"Minimum withdrawal amount is {MIN_WITHDRAWAL} points")
    payout_method = _parse_method(method)
    current = normalize_now(now)
    figures = calculate_withdrawal(amount)

    request = WithdrawalRequest(
        id=str(uuid4()),
        user_id=user_id,
        amount=amount,
        fee=figures["fee"],
        net_amount=figures["net_amount"],
        payout_method=payout_method,
        payout_details=details,
        status=WithdrawalStatus.PENDING,
        cash_value=figures["cash_value"],
        created_at=current,
    )
    request, txn, balance = get_storage().create_withdrawal(
        request,
        reason=f"Withdrawal request via {payout_method.value}",
        now=current,
    )
    log_event(
        "info",
        "withdrawal.requested",
        user_id=user_id,
        event_type="withdrawal.requested",
        extra={"withdrawal_id": request.id, "amount": amount, "fee": request.fee, "method": payout_method.value},
    )
    return request, txn, balance


def process_withdrawal(
    admin_id: str,
    request_id: str,
    status: Any,
    notes: Optional[str] = None,
    external_tx_id: Optional[str] = None,
    *,
    now: Optional[datetime] = None,
) -> Tuple[WithdrawalRequest, Optional[PointsTransaction], Optional[PointsBalance]]:
    """Resolve a pending request. ConflictError if already resolved, NotFoundError if unknown."""
    if not request_id or status not in (WithdrawalStatus.APPROVED.value, WithdrawalStatus.REJECTED.value):
        raise ValidationError("Valid withdrawal request ID and status required")
    resolution = WithdrawalStatus(status)

    request, refund, balance = get_storage().resolve_withdrawal(
        request_id,
        status=resolution,
        processed_by=admin_id,
        admin_notes=notes,
        external_transaction_id=external_tx_id,
        now=normalize_now(now),
    )
    log_event(
        "info",
        "withdrawal.processed",
        user_id=request.user_id,
        event_type="withdrawal.processed",
        extra={
            "withdrawal_id": request_id,
            "status": resolution.value,
            "processed_by": admin_id,
            "refunded": refund.amount if refund else 0,
        },
    )
    return request, refund, balance


def list_withdrawal_requests(status: Any = WithdrawalStatus.PENDING.value, user_id: Optional[str] = None) -> List[WithdrawalRequest]:
    """Admin queue view, newest first. `status` of "all" lists every request."""
    if status == "all":
        return get_storage().list_withdrawals(user_id=user_id)
    try:
        wanted = WithdrawalStatus(status)
    except ValueError:
        raise ValidationError("Invalid withdrawal status") from None
    return get_storage().list_withdrawals(user_id=user_id, status=wanted)


def get_participant_earnings(user_id: str) -> Dict[str, Any]:
    """Earnings totals, withdrawal eligibility and the ten most recent earnings entries."""
    transactions = get_storage().list_transactions(user_id, types=EARNINGS_TYPES)

    total_earned = 0
    total_withdrawn = 0
    total_fees = 0
    for txn in transactions:
        if txn.type in (TransactionType.STUDY_REWARD, TransactionType.BONUS_EARNED):
            total_earned += abs(txn.amount)
        elif txn.type is TransactionType.WITHDRAWAL:
            total_withdrawn += abs(txn.amount)
        elif txn.type is TransactionType.WITHDRAWAL_REVERSAL:
            total_withdrawn -= abs(txn.amount)
        elif txn.type is TransactionType.WITHDRAWAL_FEE:
            total_fees += abs(txn.amount)

    current_balance = get_balance(user_id).available_points
    return {
        "earnings": {
            "totalEarned": total_earned,
            "totalWithdrawn": total_withdrawn,
            "totalFees": total_fees,
            "currentBalance": current_balance,
            "availableForWithdrawal": current_balance >= MIN_WITHDRAWAL,
            "minimumWithdrawal": MIN_WITHDRAWAL,
            "conversionRate": CONVERSION_RATE,
            "estimatedCashValue": round(current_balance * CONVERSION_RATE, 2),
        },
        "recentTransactions": [
            t.model_dump(by_alias=True, mode="json") for t in transactions[:RECENT_EARNINGS_LIMIT]
        ],
    }
