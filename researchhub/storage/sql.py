"""
Durable storage on SQLAlchemy Core.

Each public mutation runs inside one database transaction (get_db_session).
Balance changes use conditional UPDATE statements so concurrent debits can
never overdraw: a zero row count means the balance was insufficient.
"""
from __future__ import annotations

from datetime import datetime
from typing import Dict, Iterable, List, Optional, Tuple
from uuid import uuid4
from contextlib import contextmanager

from sqlalchemy import and_, func, insert, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import DBAPIError, IntegrityError, OperationalError, TimeoutError as PoolTimeoutError

from researchhub.core.database import (
    check_connection,
    get_db_session,
    points_balances,
    points_transactions,
    usage_metrics,
    user_profiles,
    user_subscriptions,
    withdrawal_requests,
)
from researchhub.core.errors import (
    AlreadyAllocatedError,
    BackendUnavailableError,
    ConflictError,
    InsufficientBalanceError,
    NotFoundError,
)
from researchhub.core.timeutil import as_utc
from researchhub.models.plan import UserSubscription
from researchhub.models.points import (
    CREDIT_TYPES,
    PointsBalance,
    PointsTransaction,
    TransactionType,
    remaining_on_credit,
)
from researchhub.models.usage import UsageRecord
from researchhub.models.user import Role, UserProfile
from researchhub.models.withdrawal import WithdrawalRequest, WithdrawalStatus
from researchhub.storage.base import Storage, USAGE_COUNTERS


def _row_to_profile(row) -> UserProfile:
    return UserProfile(user_id=row.user_id, email=row.email, role=Role.parse(row.role))


def _row_to_balance(row) -> PointsBalance:
    return PointsBalance(
        user_id=row.user_id,
        total_points=int(row.total_points or 0),
        available_points=int(row.available_points or 0),
        used_points=int(row.used_points or 0),
        expired_points=int(row.expired_points or 0),
        last_updated=as_utc(row.last_updated),
    )


def _row_to_transaction(row) -> PointsTransaction:
    return PointsTransaction(
        id=row.id,
        user_id=row.user_id,
        type=TransactionType(row.type),
        amount=int(row.amount),
        reason=row.reason,
        balance_after=int(row.balance_after),
        expires_at=as_utc(row.expires_at),
        study_id=row.study_id,
        assigned_by=row.assigned_by,
        withdrawal_request_id=row.withdrawal_request_id,
        source_transaction_id=row.source_transaction_id,
        created_at=as_utc(row.created_at),
    )


def _row_to_usage(row) -> UsageRecord:
    return UsageRecord(
        user_id=row.user_id,
        studies_created=int(row.studies_created or 0),
        participants_recruited=int(row.participants_recruited or 0),
        recording_minutes_used=int(row.recording_minutes_used or 0),
        data_exports=int(row.data_exports or 0),
        last_reset_date=as_utc(row.last_reset_date),
    )


def _row_to_withdrawal(row) -> WithdrawalRequest:
    return WithdrawalRequest(
        id=row.id,
        user_id=row.user_id,
        amount=int(row.amount),
        fee=int(row.fee),
        net_amount=int(row.net_amount),
        payout_method=row.payout_method,
        payout_details=row.payout_details,
        status=row.status,
        cash_value=float(row.cash_value),
        admin_notes=row.admin_notes,
        processed_at=as_utc(row.processed_at),
        processed_by=row.processed_by,
        external_transaction_id=row.external_transaction_id,
        created_at=as_utc(row.created_at),
    )


class SqlStorage(Storage):
    name = "sql"

    @contextmanager
    def _unit(self):
        """One database transaction; connectivity failures become BackendUnavailableError."""
        try:
            with get_db_session() as session:
                yield session
        except IntegrityError:
            raise
        except (OperationalError, PoolTimeoutError) as exc:
            raise BackendUnavailableError("Database unavailable") from exc
        except DBAPIError as exc:
            if exc.connection_invalidated:
                raise BackendUnavailableError("Database connection lost") from exc
            raise

    def _insert_ignore(self, session, table, values: dict, key: str):
        """INSERT ... ON CONFLICT DO NOTHING for the current dialect."""
        dialect = session.get_bind().dialect.name
        if dialect == "postgresql":
            stmt = pg_insert(table).values(**values).on_conflict_do_nothing(index_elements=[key])
        elif dialect == "sqlite":
            stmt = sqlite_insert(table).values(**values).on_conflict_do_nothing(index_elements=[key])
        else:
            exists = session.execute(select(table.c[key]).where(table.c[key] == values[key])).first()
            if exists:
                return
            stmt = insert(table).values(**values)
        session.execute(stmt)

    # Profiles

    def upsert_profile(self, profile: UserProfile, *, now: datetime) -> UserProfile:
        with self._unit() as session:
            self._insert_ignore(session, user_profiles, {
                "user_id": profile.user_id,
                "email": profile.email,
                "role": profile.role.value,
                "created_at": now,
                "updated_at": now,
            }, "user_id")
            session.execute(
                update(user_profiles)
                .where(user_profiles.c.user_id == profile.user_id)
                .values(email=profile.email, role=profile.role.value, updated_at=now)
            )
        return profile

    def get_profile(self, user_id: str) -> Optional[UserProfile]:
        with self._unit() as session:
            row = session.execute(select(user_profiles).where(user_profiles.c.user_id == user_id)).first()
            return _row_to_profile(row) if row else None

    def find_profile_by_email(self, email: str) -> Optional[UserProfile]:
        with self._unit() as session:
            row = session.execute(
                select(user_profiles).where(func.lower(user_profiles.c.email) == email.strip().lower())
            ).first()
            return _row_to_profile(row) if row else None

    # Subscriptions

    def get_subscription(self, user_id: str) -> Optional[UserSubscription]:
        with self._unit() as session:
            row = session.execute(
                select(user_subscriptions).where(user_subscriptions.c.user_id == user_id)
            ).first()
            if not row:
                return None
            return UserSubscription(
                user_id=row.user_id,
                plan_id=row.plan_id,
                status=row.status,
                expires_at=as_utc(row.expires_at),
                assigned_at=as_utc(row.assigned_at),
            )

    def save_subscription(self, subscription: UserSubscription) -> UserSubscription:
        values = {
            "plan_id": subscription.plan_id.value,
            "status": subscription.status,
            "expires_at": subscription.expires_at,
            "assigned_at": subscription.assigned_at,
        }
        with self._unit() as session:
            self._insert_ignore(session, user_subscriptions, {"user_id": subscription.user_id, **values}, "user_id")
            session.execute(
                update(user_subscriptions)
                .where(user_subscriptions.c.user_id == subscription.user_id)
                .values(**values)
            )
        return subscription

    # Usage

    def get_usage(self, user_id: str) -> Optional[UsageRecord]:
        with self._unit() as session:
            row = session.execute(select(usage_metrics).where(usage_metrics.c.user_id == user_id)).first()
            return _row_to_usage(row) if row else None

    def increment_usage(self, user_id: str, deltas: Dict[str, int], *, now: datetime) -> UsageRecord:
        with self._unit() as session:
            self._insert_ignore(session, usage_metrics, {
                "user_id": user_id,
                "studies_created": 0,
                "participants_recruited": 0,
                "recording_minutes_used": 0,
                "data_exports": 0,
                "last_reset_date": now,
            }, "user_id")
            increments = {
                field: usage_metrics.c[field] + int(deltas[field])
                for field in USAGE_COUNTERS
                if deltas.get(field)
            }
            if increments:
                session.execute(
                    update(usage_metrics).where(usage_metrics.c.user_id == user_id).values(**increments)
                )
            row = session.execute(select(usage_metrics).where(usage_metrics.c.user_id == user_id)).first()
            return _row_to_usage(row)

    def save_usage(self, record: UsageRecord) -> UsageRecord:
        values = {field: getattr(record, field) for field in USAGE_COUNTERS}
        values["last_reset_date"] = record.last_reset_date
        with self._unit() as session:
            self._insert_ignore(session, usage_metrics, {"user_id": record.user_id, **values}, "user_id")
            session.execute(update(usage_metrics).where(usage_metrics.c.user_id == record.user_id).values(**values))
        return record

    # Balances and ledger

    def _ensure_balance_row(self, session, user_id: str, now: datetime) -> None:
        self._insert_ignore(session, points_balances, {
            "user_id": user_id,
            "total_points": 0,
            "available_points": 0,
            "used_points": 0,
            "expired_points": 0,
            "last_updated": now,
        }, "user_id")

    def _lock_balance(self, session, user_id: str):
        return session.execute(
            select(points_balances).where(points_balances.c.user_id == user_id).with_for_update()
        ).first()

    def _adjust_balance(self, session, user_id: str, now: datetime, **deltas: int) -> PointsBalance:
        values = {field: points_balances.c[field] + delta for field, delta in deltas.items()}
        values["last_updated"] = now
        session.execute(update(points_balances).where(points_balances.c.user_id == user_id).values(**values))
        row = session.execute(select(points_balances).where(points_balances.c.user_id == user_id)).first()
        return _row_to_balance(row)

    def _take(self, session, user_id: str, amount: int, now: datetime) -> PointsBalance:
        result = session.execute(
            update(points_balances)
            .where(and_(points_balances.c.user_id == user_id, points_balances.c.available_points >= amount))
            .values(
                available_points=points_balances.c.available_points - amount,
                used_points=points_balances.c.used_points + amount,
                last_updated=now,
            )
        )
        if result.rowcount == 0:
            row = session.execute(
                select(points_balances.c.available_points).where(points_balances.c.user_id == user_id)
            ).first()
            raise InsufficientBalanceError(required=amount, available=int(row[0]) if row else 0)
        row = session.execute(select(points_balances).where(points_balances.c.user_id == user_id)).first()
        return _row_to_balance(row)

    def _append(self, session, **fields) -> PointsTransaction:
        values = {"id": str(uuid4()), **fields}
        values["type"] = fields["type"].value
        session.execute(insert(points_transactions).values(**values))
        return PointsTransaction(**{**values, "type": fields["type"]})

    def get_balance(self, user_id: str) -> Optional[PointsBalance]:
        with self._unit() as session:
            row = session.execute(select(points_balances).where(points_balances.c.user_id == user_id)).first()
            return _row_to_balance(row) if row else None

    def ensure_balance(self, user_id: str, *, now: datetime) -> PointsBalance:
        with self._unit() as session:
            self._ensure_balance_row(session, user_id, now)
            row = session.execute(select(points_balances).where(points_balances.c.user_id == user_id)).first()
            return _row_to_balance(row)

    def list_balances(self) -> List[Tuple[PointsBalance, Optional[UserProfile]]]:
        with self._unit() as session:
            rows = session.execute(
                select(points_balances, user_profiles.c.email, user_profiles.c.role)
                .select_from(points_balances.outerjoin(
                    user_profiles, user_profiles.c.user_id == points_balances.c.user_id
                ))
                .order_by(points_balances.c.total_points.desc())
            ).all()
            result = []
            for row in rows:
                profile = None
                if row.role is not None:
                    profile = UserProfile(user_id=row.user_id, email=row.email, role=Role.parse(row.role))
                result.append((_row_to_balance(row), profile))
            return result

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
        with self._unit() as session:
            self._ensure_balance_row(session, user_id, now)
            # Row lock serializes concurrent credits for the same user
            self._lock_balance(session, user_id)
            if once_since is not None:
                existing = session.execute(
                    select(points_transactions.c.id)
                    .where(points_transactions.c.user_id == user_id)
                    .where(points_transactions.c.type == type.value)
                    .where(points_transactions.c.created_at >= once_since)
                    .limit(1)
                ).first()
                if existing:
                    raise AlreadyAllocatedError("Monthly points already allocated for this period")
            balance = self._adjust_balance(session, user_id, now, total_points=amount, available_points=amount)
            txn = self._append(
                session,
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
        with self._unit() as session:
            balance = self._take(session, user_id, amount, now)
            txn = self._append(
                session,
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
        query = select(points_transactions).where(points_transactions.c.user_id == user_id)
        if types is not None:
            query = query.where(points_transactions.c.type.in_([t.value for t in types]))
        if since is not None:
            query = query.where(points_transactions.c.created_at >= since)
        query = query.order_by(points_transactions.c.created_at.desc()).offset(offset)
        if limit is not None:
            query = query.limit(limit)
        with self._unit() as session:
            return [_row_to_transaction(row) for row in session.execute(query).all()]

    def list_expirable_credits(self, now: datetime) -> List[PointsTransaction]:
        swept = select(points_transactions.c.source_transaction_id).where(
            points_transactions.c.source_transaction_id.is_not(None)
        )
        query = (
            select(points_transactions)
            .where(points_transactions.c.type.in_([t.value for t in CREDIT_TYPES]))
            .where(points_transactions.c.expires_at.is_not(None))
            .where(points_transactions.c.expires_at <= now)
            .where(points_transactions.c.id.not_in(swept))
            .order_by(points_transactions.c.expires_at)
        )
        with self._unit() as session:
            return [_row_to_transaction(row) for row in session.execute(query).all()]

    def expire_credit(self, source: PointsTransaction, *, now: datetime) -> Optional[Tuple[PointsTransaction, PointsBalance]]:
        with self._unit() as session:
            self._ensure_balance_row(session, source.user_id, now)
            row = self._lock_balance(session, source.user_id)
            already = session.execute(
                select(points_transactions.c.id)
                .where(points_transactions.c.source_transaction_id == source.id)
            ).first()
            if already:
                return None
            history = [
                _row_to_transaction(r)
                for r in session.execute(
                    select(points_transactions)
                    .where(points_transactions.c.user_id == source.user_id)
                    .order_by(points_transactions.c.created_at)
                ).all()
            ]
            expired = max(0, min(remaining_on_credit(history, source.id), int(row.available_points)))
            balance = self._adjust_balance(
                session, source.user_id, now, available_points=-expired, expired_points=expired
            )
            txn = self._append(
                session,
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
        with self._unit() as session:
            balance = self._take(session, request.user_id, request.amount, now)
            session.execute(
                insert(withdrawal_requests).values(
                    id=request.id,
                    user_id=request.user_id,
                    amount=request.amount,
                    fee=request.fee,
                    net_amount=request.net_amount,
                    payout_method=request.payout_method.value,
                    payout_details=request.payout_details,
                    status=request.status.value,
                    cash_value=request.cash_value,
                    created_at=request.created_at,
                )
            )
            txn = self._append(
                session,
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
        with self._unit() as session:
            row = session.execute(
                select(withdrawal_requests).where(withdrawal_requests.c.id == request_id).with_for_update()
            ).first()
            if not row:
                raise NotFoundError(f"Withdrawal request {request_id} not found")

            # Guarded transition: only one resolver can move a pending request
            result = session.execute(
                update(withdrawal_requests)
                .where(withdrawal_requests.c.id == request_id)
                .where(withdrawal_requests.c.status == WithdrawalStatus.PENDING.value)
                .values(
                    status=status.value,
                    admin_notes=admin_notes,
                    processed_at=now,
                    processed_by=processed_by,
                    external_transaction_id=external_transaction_id,
                )
            )
            if result.rowcount == 0:
                raise ConflictError(f"Withdrawal request already {row.status}")

            updated_row = session.execute(
                select(withdrawal_requests).where(withdrawal_requests.c.id == request_id)
            ).first()
            updated = _row_to_withdrawal(updated_row)

            if status is not WithdrawalStatus.REJECTED:
                return updated, None, None

            self._ensure_balance_row(session, updated.user_id, now)
            balance = self._adjust_balance(
                session, updated.user_id, now, available_points=updated.amount, used_points=-updated.amount
            )
            txn = self._append(
                session,
                user_id=updated.user_id,
                type=TransactionType.WITHDRAWAL_REVERSAL,
                amount=updated.amount,
                reason=f"Withdrawal request {request_id} rejected",
                balance_after=balance.available_points,
                withdrawal_request_id=request_id,
                created_at=now,
            )
            return updated, txn, balance

    def list_withdrawals(self, *, user_id: Optional[str] = None, status: Optional[WithdrawalStatus] = None) -> List[WithdrawalRequest]:
        query = select(withdrawal_requests)
        if user_id is not None:
            query = query.where(withdrawal_requests.c.user_id == user_id)
        if status is not None:
            query = query.where(withdrawal_requests.c.status == status.value)
        with self._unit() as session:
            rows = session.execute(query.order_by(withdrawal_requests.c.created_at.desc())).all()
            return [_row_to_withdrawal(row) for row in rows]

    def ping(self) -> bool:
        return check_connection()
