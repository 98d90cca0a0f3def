"""
Storage interface for plans, usage and the points ledger.

Two implementations exist: SqlStorage (durable, SQLAlchemy) and MemoryStorage
(ephemeral, local development and tests). The backend is chosen once at
startup from settings.STORAGE_BACKEND.

Every ledger mutation is a single atomic unit: the balance change, the
transaction row and any withdrawal row are written together or not at all.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Tuple

from researchhub.models.plan import UserSubscription
from researchhub.models.points import PointsBalance, PointsTransaction, TransactionType
from researchhub.models.usage import UsageRecord
from researchhub.models.user import UserProfile
from researchhub.models.withdrawal import WithdrawalRequest, WithdrawalStatus

USAGE_COUNTERS = (
    "studies_created",
    "participants_recruited",
    "recording_minutes_used",
    "data_exports",
)


class Storage(ABC):
    name = "abstract"

    # Profiles

    @abstractmethod
    def upsert_profile(self, profile: UserProfile, *, now: datetime) -> UserProfile: ...

    @abstractmethod
    def get_profile(self, user_id: str) -> Optional[UserProfile]: ...

    @abstractmethod
    def find_profile_by_email(self, email: str) -> Optional[UserProfile]:
        """Case-insensitive email lookup."""

    # Subscriptions

    @abstractmethod
    def get_subscription(self, user_id: str) -> Optional[UserSubscription]: ...

    @abstractmethod
    def save_subscription(self, subscription: UserSubscription) -> UserSubscription: ...

    # Usage

    @abstractmethod
    def get_usage(self, user_id: str) -> Optional[UsageRecord]: ...

    @abstractmethod
    def increment_usage(self, user_id: str, deltas: Dict[str, int], *, now: datetime) -> UsageRecord:
        """Atomically add non-negative deltas to usage counters, creating the row if needed."""

    @abstractmethod
    def save_usage(self, record: UsageRecord) -> UsageRecord: ...

    # Balances and ledger

    @abstractmethod
    def get_balance(self, user_id: str) -> Optional[PointsBalance]: ...

    @abstractmethod
    def ensure_balance(self, user_id: str, *, now: datetime) -> PointsBalance:
        """Return the balance, creating a zero balance if none exists."""

    @abstractmethod
    def list_balances(self) -> List[Tuple[PointsBalance, Optional[UserProfile]]]:
        """All balances with their profiles, highest total first."""

    @abstractmethod
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
        """Add to total and available points and record the credit.

        When once_since is given, raise AlreadyAllocatedError if the user
        already has a transaction of the same type at or after that instant.
        """

    @abstractmethod
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
        """Move points from available to used, or raise InsufficientBalanceError."""

    @abstractmethod
    def list_transactions(
        self,
        user_id: str,
        *,
        types: Optional[Iterable[TransactionType]] = None,
        since: Optional[datetime] = None,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> List[PointsTransaction]:
        """Transactions newest first."""

    @abstractmethod
    def list_expirable_credits(self, now: datetime) -> List[PointsTransaction]:
        """Credits whose expires_at has passed and that have not been swept yet."""

    @abstractmethod
    def expire_credit(self, source: PointsTransaction, *, now: datetime) -> Optional[Tuple[PointsTransaction, PointsBalance]]:
        """Move min(source.amount, available) into expired points. None if already swept."""

    # Withdrawals

    @abstractmethod
    def create_withdrawal(
        self, request: WithdrawalRequest, *, reason: str, now: datetime
    ) -> Tuple[WithdrawalRequest, PointsTransaction, PointsBalance]:
        """Debit the gross amount and persist the pending request together."""

    @abstractmethod
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
        """Transition a pending request; rejection credits the amount back."""

    @abstractmethod
    def list_withdrawals(self, *, user_id: Optional[str] = None, status: Optional[WithdrawalStatus] = None) -> List[WithdrawalRequest]: ...

    # Health

    @abstractmethod
    def ping(self) -> bool: ...
