"""Expiry sweep: expired credits move into expiredPoints exactly once."""

from datetime import datetime, timedelta, timezone

import pytest

from researchhub.features.points import ledger
from researchhub.models.points import TransactionType

NOW = datetime(2026, 2, 1, 12, 0, tzinfo=timezone.utc)

both_backends = pytest.mark.parametrize("storage", ["memory", "sql"], indirect=True)


@both_backends
def test_nothing_expires_before_deadline(storage):
    ledger.assign_points("admin", "u1", 30, "trial", expires_in_days=10, now=NOW)
    result = ledger.expire_points(now=NOW + timedelta(days=9))
    assert result["creditsSwept"] == 0
    assert ledger.get_balance("u1").available_points == 30


@both_backends
def test_expired_credit_moves_to_expired_bucket(storage):
    credit, _ = ledger.assign_points("admin", "u1", 30, "trial", expires_in_days=10, now=NOW)
    ledger.assign_points("admin", "u1", 20, "permanent", now=NOW)

    result = ledger.expire_points(now=NOW + timedelta(days=10))

    assert result == {"creditsSwept": 1, "pointsExpired": 30, "usersAffected": 1}
    balance = ledger.get_balance("u1")
    assert balance.available_points == 20
    assert balance.expired_points == 30
    assert balance.total_points == 50

    newest = ledger.get_history("u1", limit=1)[0]
    assert newest.type is TransactionType.EXPIRED
    assert newest.amount == -30
    assert newest.source_transaction_id == credit.id


@both_backends
def test_expiry_is_capped_by_available_points(storage):
    ledger.assign_points("admin", "u1", 30, "trial", expires_in_days=1, now=NOW)
    ledger.consume_points("u1", 25, now=NOW)

    result = ledger.expire_points(now=NOW + timedelta(days=2))

    assert result["pointsExpired"] == 5
    balance = ledger.get_balance("u1")
    assert (balance.available_points, balance.used_points, balance.expired_points) == (0, 25, 5)
    assert balance.total_points == balance.available_points + balance.used_points + balance.expired_points


@both_backends
def test_sweep_is_idempotent(storage):
    ledger.assign_points("admin", "u1", 30, "trial", expires_in_days=1, now=NOW)
    ledger.expire_points(now=NOW + timedelta(days=2))
    before = ledger.get_balance("u1")

    again = ledger.expire_points(now=NOW + timedelta(days=3))

    assert again["creditsSwept"] == 0
    assert ledger.get_balance("u1") == before
    assert storage.list_expirable_credits(NOW + timedelta(days=3)) == []


@both_backends
def test_monthly_allocation_expires_after_thirty_days(storage):
    ledger.allocate_monthly_points("r1", now=NOW)
    ledger.expire_points(now=NOW + timedelta(days=29))
    assert ledger.get_balance("r1").available_points == 20

    ledger.expire_points(now=NOW + timedelta(days=30))
    balance = ledger.get_balance("r1")
    assert balance.available_points == 0
    assert balance.expired_points == 20


@both_backends
def test_spent_expiring_credit_leaves_permanent_points_alone(storage):
    ledger.assign_points("admin", "u1", 100, "trial", expires_in_days=10, now=NOW)
    ledger.assign_points("admin", "u1", 100, "permanent", now=NOW)
    ledger.consume_points("u1", 100, now=NOW + timedelta(days=1))

    result = ledger.expire_points(now=NOW + timedelta(days=11))

    assert result["pointsExpired"] == 0
    balance = ledger.get_balance("u1")
    assert (balance.available_points, balance.used_points, balance.expired_points) == (100, 100, 0)


@both_backends
def test_spending_draws_on_soonest_expiry_first(storage):
    ledger.assign_points("admin", "u1", 40, "late", expires_in_days=20, now=NOW)
    ledger.assign_points("admin", "u1", 40, "early", expires_in_days=5, now=NOW)
    ledger.consume_points("u1", 50, now=NOW + timedelta(days=1))

    first = ledger.expire_points(now=NOW + timedelta(days=6))
    assert first["pointsExpired"] == 0

    second = ledger.expire_points(now=NOW + timedelta(days=21))
    assert second["pointsExpired"] == 30
    balance = ledger.get_balance("u1")
    assert (balance.available_points, balance.used_points, balance.expired_points) == (0, 50, 30)
