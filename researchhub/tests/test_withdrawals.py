"""Withdrawal requests and admin processing against both storage backends."""

from datetime import datetime, timezone

import pytest

from researchhub.core.errors import ConflictError, InsufficientBalanceError, NotFoundError, ValidationError
from researchhub.features.points import ledger, withdrawals
from researchhub.models.points import TransactionType
from researchhub.models.withdrawal import PayoutMethod, WithdrawalStatus

NOW = datetime(2026, 7, 1, 10, 0, tzinfo=timezone.utc)

both_backends = pytest.mark.parametrize("storage", ["memory", "sql"], indirect=True)


@pytest.mark.parametrize("amount", [50, 60, 99, 100, 137, 1000, 2019])
def test_fee_arithmetic(amount):
    figures = withdrawals.calculate_withdrawal(amount)
    assert figures["fee"] == ledger.round_half_up(amount * 0.025)
    assert figures["net_amount"] == amount - figures["fee"]
    assert figures["cash_value"] == round(figures["net_amount"] * 0.10, 2)


@both_backends
def test_sixty_point_paypal_withdrawal(storage):
    ledger.reward_participant("p1", "s1", 55, "normal", now=NOW)  # 60 points
    assert ledger.get_balance("p1").available_points == 60

    request, txn, balance = withdrawals.request_withdrawal(
        "p1", 60, "paypal", {"email": "p1@example.com"}, now=NOW
    )

    assert request.fee == 2
    assert request.net_amount == 58
    assert request.cash_value == pytest.approx(5.80)
    assert request.status is WithdrawalStatus.PENDING
    assert request.payout_method is PayoutMethod.PAYPAL
    assert txn.type is TransactionType.WITHDRAWAL
    assert txn.amount == -60
    assert txn.withdrawal_request_id == request.id
    assert balance.available_points == 0
    assert balance.used_points == 60
    assert [w.id for w in storage.list_withdrawals(status=WithdrawalStatus.PENDING)] == [request.id]


def test_minimum_withdrawal_enforced():
    with pytest.raises(ValidationError, match="Minimum withdrawal amount is 50 points"):
        withdrawals.request_withdrawal("p1", 49, "paypal")


def test_unknown_payout_method_rejected():
    with pytest.raises(ValidationError, match="Invalid payout method"):
        withdrawals.request_withdrawal("p1", 50, "crypto")


@both_backends
def test_withdrawal_needs_available_points(storage):
    ledger.reward_participant("p1", "s1", 40, "normal", now=NOW)  # 45 points
    with pytest.raises(InsufficientBalanceError):
        withdrawals.request_withdrawal("p1", 50, "gift_card", now=NOW)
    assert storage.list_withdrawals(user_id="p1") == []
    assert ledger.get_balance("p1").available_points == 45


@both_backends
def test_approval_is_terminal(storage):
    ledger.reward_participant("p1", "s1", 95, "normal", now=NOW)  # 100 points
    request, _, _ = withdrawals.request_withdrawal("p1", 100, "bank_transfer", now=NOW)

    approved, refund, balance = withdrawals.process_withdrawal("admin", request.id, "approved", "paid", "tx-1", now=NOW)
    assert approved.status is WithdrawalStatus.APPROVED
    assert approved.processed_by == "admin"
    assert approved.external_transaction_id == "tx-1"
    assert refund is None and balance is None

    with pytest.raises(ConflictError):
        withdrawals.process_withdrawal("admin", request.id, "rejected", now=NOW)
    assert ledger.get_balance("p1").available_points == 0


@both_backends
def test_rejection_credits_amount_back(storage):
    ledger.reward_participant("p1", "s1", 75, "normal", now=NOW)  # 80 points
    request, _, _ = withdrawals.request_withdrawal("p1", 80, "paypal", now=NOW)

    rejected, refund, balance = withdrawals.process_withdrawal("admin", request.id, "rejected", "bad details", now=NOW)

    assert rejected.status is WithdrawalStatus.REJECTED
    assert refund.type is TransactionType.WITHDRAWAL_REVERSAL
    assert refund.amount == 80
    assert balance.available_points == 80
    assert balance.used_points == 0
    assert balance.total_points == balance.available_points + balance.used_points + balance.expired_points


@both_backends
def test_unknown_request_is_not_found(storage):
    with pytest.raises(NotFoundError):
        withdrawals.process_withdrawal("admin", "00000000-0000-0000-0000-000000000000", "approved", now=NOW)


@pytest.mark.parametrize("status", ["pending", "cancelled", ""])
def test_process_requires_terminal_status(status):
    with pytest.raises(ValidationError):
        withdrawals.process_withdrawal("admin", "some-id", status)


@both_backends
def test_participant_earnings_summary(storage):
    ledger.reward_participant("p1", "s1", 95, "normal", now=NOW)   # 100
    ledger.reward_participant("p1", "s2", 15, "normal", now=NOW)   # 20
    request, _, _ = withdrawals.request_withdrawal("p1", 60, "paypal", now=NOW)
    withdrawals.request_withdrawal("p1", 50, "paypal", now=NOW)
    withdrawals.process_withdrawal("admin", request.id, "rejected", now=NOW)

    summary = withdrawals.get_participant_earnings("p1")
    earnings = summary["earnings"]
    assert earnings["totalEarned"] == 120
    assert earnings["totalWithdrawn"] == 50
    assert earnings["currentBalance"] == 70
    assert earnings["availableForWithdrawal"] is True
    assert earnings["minimumWithdrawal"] == 50
    assert earnings["estimatedCashValue"] == pytest.approx(7.0)
    assert len(summary["recentTransactions"]) == 5
