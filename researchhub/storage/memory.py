"""
In-memory storage for local development and tests.

State lives in process dictionaries guarded by one re-entrant lock, so each
ledger mutation is atomic within the process. Nothing survives a restart and
nothing is shared between processes.
"""
from __future__ import annotations

import threading
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Tuple
from uuid import uuid4

from researchhub.core.errors import (
    AlreadyAllocatedError,
    ConflictError,
    InsufficientBalanceError,
    NotFoundError,
)
from researchhub.models.plan import UserSubscription
from researchhub.models.points import (
    CREDIT_TYPES,
    PointsBalance,
    PointsTransaction,
    TransactionType,
    remaining_on_credit,
)
from researchhub.models.usage import UsageRecord
from researchhub.models.user import UserProfile
from researchhub.models.withdrawal import WithdrawalRequest, WithdrawalStatus
from researchhub.storage.base import Storage, USAGE_COUNTERS


class MemoryStorage(Storage):
    name = "memory"

    def __init__(self):
        self._lock = threading.RLock()
        self._profiles: Dict[str, UserProfile] = {}
        self._subscriptions: Dict[str, UserSubscription] = {}
        self._usage: Dict[str, UsageRecord] = {}
        self._balances: Dict[str, PointsBalance] = {}
        self._transactions: List[PointsTransaction] = []
        self._withdrawals: Dict[str, WithdrawalRequest] = {}

    # Profiles

    def upsert_profile(self, profile: UserProfile, *, now: datetime) -> UserProfile:
        with self._lock:
            self._profiles[profile.user_id] = profile
            return profile

    def get_profile(self, user_id: str) -> Optional[UserProfile]:
        return self._profiles.get(user_id)

    def find_profile_by_email(self, email: str) -> Optional[UserProfile]:
        needle = email.strip().lower()
        with self._lock:
            for profile in self._profiles.values():
                if profile.email and profile.email.lower() == needle:
                    return profile
        return None

    # Subscriptions

    def get_subscription(self, user_id: str) -> Optional[UserSubscription]:
        return self._subscriptions.get(user_id)

    def save_subscription(self, subscription: UserSubscription) -> UserSubscription:
        with self._lock:
            self._subscriptions[subscription.user_id] = subscription
            return subscription

    # Usage

    def get_usage(self, user_id: str) -> Optional[UsageRecord]:
        return self._usage.get(user_id)

    def increment_usage(self, user_id: str, deltas: Dict[str, int], *, now: datetime) -> UsageRecord:
        with self._lock:
            current = self._usage.get(user_id) or UsageRecord(user_id=user_id, last_reset_date=now)
            updates = {
                field: getattr(current, field) + int(deltas.get(field, 0))
                for field in USAGE_COUNTERS
            }
            record = current.model_copy(update=updates)
            self._usage[user_id] = record
            return record

    def save_usage(self, record: UsageRecord) -> UsageRecord:
        with self._lock:
            self._usage[record.user_id] = record
            return record

    # Balances and ledger

    def get_balance(self, user_id: str) -> Optional[PointsBalance]:
        return self._balances.get(user_id)

    def ensure_balance(self, user_id: str, *, now: datetime) -> PointsBalance:
        with self._lock:
            balance = self._balances.get(user_id)
            if balance is None:
                balance = PointsBalance(user_id=user_id, last_updated=now)
                self._balances[user_id] = balance
            return balance

    def list_balances(self) -> List[Tuple[PointsBalance, Optional[UserProfile]]]:
        with self._lock:
            rows = [(b, self._profiles.get(b.user_id)) for b in self._balances.values()]
        return sorted(rows, key=lambda row: row[0].total_points, reverse=True)

    def _append(self, **fields) -> PointsTransaction:
        txn = PointsTransaction(id=str(uuid4()), **fields)
        self._transactions.append(txn)
        return txn

    def _apply(self, balance: PointsBalance, now: datetime, **deltas: int) -> PointsBalance:
        updates = {field: getattr(balance, field) + delta for field, delta in deltas.items()}
        updates["last_updated"] = now
        updated = balance.model_copy(update=updates)
        self._balances[balance.user_id] = updated
        return updated

    def credit(
        self,
        user_id: str,
        amount: int,
        *,
        type: TransactionType,
        reason: str,
        now: datetime,
        expires_at: Optional[datetime] = None,
        study_id: Optional[str] = None,
        assigned_by: Optional[str] = None,
        once_since: Optional[datetime] = None,
    ) -> Tuple[PointsTransaction, PointsBalance]:
        with self._lock:
            if once_since is not None and self.list_transactions(user_id, types=[type], since=once_since, limit=1):
                raise AlreadyAllocatedError("Monthly points already allocated for this period")
            balance = self.ensure_balance(user_id, now=now)
            balance = self._apply(balance, now, total_points=amount, available_points=amount)
            txn = self._append(
                user_id=user_id,
                type=type,
                amount=amount,
                reason=reason,
                balance_after=balance.available_points,
                expires_at=expires_at,
                study_id=study_id,
                assigned_by=assigned_by,
                created_at=now,
            )
            return txn, balance

    def _take(self, user_id: str, amount: int, now: datetime) -> PointsBalance:
        balance = self._balances.get(user_id)
        available = balance.available_points if balance else 0
        if balance is None or available < amount:
            raise InsufficientBalanceError(required=amount, available=available)
        return self._apply(balance, now, available_points=-amount, used_points=amount)

    def debit(
        self,
        user_id: str,
        amount: int,
        *,
        type: TransactionType,
        reason: str,
        now: datetime,
        study_id: Optional[str] = None,
    ) -> Tuple[PointsTransaction, PointsBalance]:
        with self._lock:
            balance = self._take(user_id, amount, now)
            txn = self._append(
                user_id=user_id,
                type=type,
                amount=-amount,
                reason=reason,
                balance_after=balance.available_points,
                study_id=study_id,
                created_at=now,
            )
            return txn, balance

    def list_transactions(
        self,
        user_id: str,
        *,
        types: Optional[Iterable[TransactionType]] = None,
        since: Optional[datetime] = None,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> List[PointsTransaction]:
        wanted = set(types) if types is not None else None
        with self._lock:
            rows = [
                t for t in self._transactions
                if t.user_id == user_id
                and (wanted is None or t.type in wanted)
                and (since is None or t.created_at >= since)
            ]
        # Stable sort keeps insertion order reversed for equal timestamps
        rows = list(reversed(rows))
        rows.sort(key=lambda t: t.created_at, reverse=True)
        end = None if limit is None else offset + limit
        return rows[offset:end]

    def list_expirable_credits(self, now: datetime) -> List[PointsTransaction]:
        with self._lock:
            swept = {t.source_transaction_id for t in self._transactions if t.source_transaction_id}
            return [
                t for t in self._transactions
                if t.type in CREDIT_TYPES
                and t.expires_at is not None
                and t.expires_at <= now
                and t.id not in swept
            ]

    def expire_credit(self, source: PointsTransaction, *, now: datetime) -> Optional[Tuple[PointsTransaction, PointsBalance]]:
        with self._lock:
            if any(t.source_transaction_id == source.id for t in self._transactions):
                return None
            balance = self.ensure_balance(source.user_id, now=now)
            history = [t for t in self._transactions if t.user_id == source.user_id]
            expired = max(0, min(remaining_on_credit(history, source.id), balance.available_points))
            balance = self._apply(balance, now, available_points=-expired, expired_points=expired)
            txn = self._append(
                user_id=source.user_id,
                type=TransactionType.EXPIRED,
                amount=-expired,
                reason=f"Expired points from transaction {source.id}",
                balance_after=balance.available_points,
                source_transaction_id=source.id,
                created_at=now,
            )
            return txn, balance

    # Withdrawals

    def create_withdrawal(
        self, request: WithdrawalRequest, *, reason: str, now: datetime
    ) -> Tuple[WithdrawalRequest, PointsTransaction, PointsBalance]:
        with self._lock:
            balance = self._take(request.user_id, request.amount, now)
            self._withdrawals[request.id] = request
            txn = self._append(
                user_id=request.user_id,
                type=TransactionType.WITHDRAWAL,
                amount=-request.amount,
                reason=reason,
                balance_after=balance.available_points,
                withdrawal_request_id=request.id,
                created_at=now,
            )
            return request, txn, balance

    def resolve_withdrawal(
        self,
        request_id: str,
        *,
        status: WithdrawalStatus,
        processed_by: str,
        admin_notes: Optional[str],
        external_transaction_id: Optional[str],
        now: datetime,
    ) -> Tuple[WithdrawalRequest, Optional[PointsTransaction], Optional[PointsBalance]]:
        with self._lock:
            request = self._withdrawals.get(request_id)
            if request is None:
                raise NotFoundError(f"Withdrawal request {request_id} not found")
            if request.status is not WithdrawalStatus.PENDING:
                raise ConflictError(f"Withdrawal request already {request.status.value}")

            updated = request.model_copy(update={
                "status": status,
                "admin_notes": admin_notes,
                "processed_at": now,
                "processed_by": processed_by,
                "external_transaction_id": external_transaction_id,
            })
            self._withdrawals[request_id] = updated

            if status is not WithdrawalStatus.REJECTED:
                return updated, None, None

            balance = self.ensure_balance(request.user_id, now=now)
            balance = self._apply(balance, now, available_points=request.amount, used_points=-request.amount)
            txn = self._append(
                user_id=request.user_id,
                type=TransactionType.WITHDRAWAL_REVERSAL,
                amount=request.amount,
                reason=f"Withdrawal request {request_id} rejected",
                balance_after=balance.available_points,
                withdrawal_request_id=request_id,
                created_at=now,
            )
            return updated, txn, balance

    def list_withdrawals(self, *, user_id: Optional[str] = None, status: Optional[WithdrawalStatus] = None) -> List[WithdrawalRequest]:
        with self._lock:
            rows = [
                w for w in self._withdrawals.values()
                if (user_id is None or w.user_id == user_id)
                and (status is None or w.status is status)
            ]
        return sorted(rows, key=lambda w: w.created_at, reverse=True)

    def ping(self) -> bool:
        return True
