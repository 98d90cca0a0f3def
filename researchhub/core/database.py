"""
Database configuration and connection management.

This module provides:
- SQLAlchemy engine and session management
- Connection pooling with sane defaults
- Test database support (in-memory SQLite)
- Table definitions for the points and plans schema
"""
from typing import Optional
from contextlib import contextmanager
from sqlalchemy import (
    create_engine, MetaData, Table, Column, Integer, String, DateTime, JSON, Text, Numeric,
    Index, UniqueConstraint, CheckConstraint, text,
)
from sqlalchemy.pool import QueuePool, StaticPool
from sqlalchemy.orm import sessionmaker
import logging
import os

from researchhub.core.config import settings

logger = logging.getLogger("researchhub")

# SQLAlchemy metadata for table definitions
metadata = MetaData()

# Connection pooling configuration
POOL_SIZE = 10
MAX_OVERFLOW = 20
POOL_TIMEOUT = 30
POOL_RECYCLE = 3600  # Recycle connections after 1 hour

# Global engine and session factory
_engine = None
_SessionLocal = None


def get_database_url() -> Optional[str]:
    """
    Get the database URL from settings or environment.

    For testing, use TEST_DATABASE_URL if available.
    """
    test_url = os.getenv("TEST_DATABASE_URL")
    if test_url:
        return test_url

    return settings.DATABASE_URL


def _engine_kwargs(url: str) -> dict:
    if url.startswith("sqlite"):
        # A single shared connection keeps in-memory databases alive across sessions
        return {
            "poolclass": StaticPool,
            "connect_args": {"check_same_thread": False},
        }

    kwargs = {
        "poolclass": QueuePool,
        "pool_size": POOL_SIZE,
        "max_overflow": MAX_OVERFLOW,
        "pool_timeout": POOL_TIMEOUT,
        "pool_recycle": POOL_RECYCLE,
        "pool_pre_ping": True,
    }
    if url.startswith("postgresql"):
        timeout_ms = int(settings.DB_STATEMENT_TIMEOUT_SECONDS) * 1000
        kwargs["connect_args"] = {
            "connect_timeout": int(settings.DB_STATEMENT_TIMEOUT_SECONDS),
            "options": f"-c statement_timeout={timeout_ms}",
        }
    return kwargs


def init_engine(database_url: Optional[str] = None):
    """
    Initialize the SQLAlchemy engine.

    Args:
        database_url: Optional override for DATABASE_URL
    """
    global _engine, _SessionLocal

    url = database_url or get_database_url()

    if not url:
        raise ValueError(
            "DATABASE_URL is not configured. "
            "Set DATABASE_URL in environment or .env file."
        )

    if _engine is not None:
        _engine.dispose()

    _engine = create_engine(
        url,
        echo=False,  # Set to True for SQL query logging
        **_engine_kwargs(url),
    )

    # Create session factory
    _SessionLocal = sessionmaker(
        autocommit=False,
        autoflush=False,
        bind=_engine
    )

    return _engine


def get_engine():
    """Get the current SQLAlchemy engine."""
    global _engine
    if _engine is None:
        init_engine()
    return _engine


def get_session_factory():
    """Get the session factory."""
    global _SessionLocal
    if _SessionLocal is None:
        init_engine()
    return _SessionLocal


def dispose_engine() -> None:
    """Close pooled connections and forget the engine (tests, shutdown)."""
    global _engine, _SessionLocal
    if _engine is not None:
        _engine.dispose()
    _engine = None
    _SessionLocal = None


@contextmanager
def get_db_session():
    """
    Context manager for database sessions.

    Usage:
        with get_db_session() as session:
            session.execute(...)

    Commits on success, rolls back on any exception.
    """
    SessionLocal = get_session_factory()
    session = SessionLocal()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def create_all_tables():
    """
    Create all tables defined in metadata.

    This is idempotent - tables that already exist will not be recreated.
    """
    engine = get_engine()
    metadata.create_all(bind=engine)


def check_connection() -> bool:
    """
    Check if database connection is available.

    Returns:
        True if connection successful, False otherwise
    """
    try:
        engine = get_engine()
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        return True
    except Exception as e:
        logger.warning(f"Database connection check failed: {e}")
        return False


# User profiles (mirrors the auth provider identity for email lookups)
user_profiles = Table(
    'user_profiles',
    metadata,
    Column('user_id', String(100), primary_key=True),
    Column('email', String(320), nullable=True),
    Column('role', String(50), nullable=False, server_default='participant'),
    Column('created_at', DateTime(timezone=True), nullable=False),
    Column('updated_at', DateTime(timezone=True), nullable=False),
    Index('idx_user_profiles_email', 'email'),
)

# User subscriptions (one active plan per user)
user_subscriptions = Table(
    'user_subscriptions',
    metadata,
    Column('user_id', String(100), primary_key=True),
    Column('plan_id', String(50), nullable=False),
    Column('status', String(50), nullable=False, server_default='active'),
    Column('expires_at', DateTime(timezone=True), nullable=True),
    Column('assigned_at', DateTime(timezone=True), nullable=False),
    Index('idx_user_subscriptions_plan_id', 'plan_id'),
)

# Usage metrics (plan enforcement counters)
usage_metrics = Table(
    'usage_metrics',
    metadata,
    Column('user_id', String(100), primary_key=True),
    Column('studies_created', Integer, nullable=False, server_default='0'),
    Column('participants_recruited', Integer, nullable=False, server_default='0'),
    Column('recording_minutes_used', Integer, nullable=False, server_default='0'),
    Column('data_exports', Integer, nullable=False, server_default='0'),
    Column('last_reset_date', DateTime(timezone=True), nullable=False),
)

# Points balances (derived from the ledger, updated atomically with it)
points_balances = Table(
    'points_balances',
    metadata,
    Column('user_id', String(100), primary_key=True),
    Column('total_points', Integer, nullable=False, server_default='0'),
    Column('available_points', Integer, nullable=False, server_default='0'),
    Column('used_points', Integer, nullable=False, server_default='0'),
    Column('expired_points', Integer, nullable=False, server_default='0'),
    Column('last_updated', DateTime(timezone=True), nullable=True),
    CheckConstraint('available_points >= 0', name='ck_points_balances_available_non_negative'),
    Index('idx_points_balances_total', 'total_points'),
)

# Points transactions (append-only ledger)
points_transactions = Table(
    'points_transactions',
    metadata,
    Column('id', String(36), primary_key=True),
    Column('user_id', String(100), nullable=False, index=True),
    Column('type', String(50), nullable=False),
    Column('amount', Integer, nullable=False),
    Column('reason', Text, nullable=False),
    Column('balance_after', Integer, nullable=False),
    Column('expires_at', DateTime(timezone=True), nullable=True),
    Column('study_id', String(100), nullable=True),
    Column('assigned_by', String(100), nullable=True),
    Column('withdrawal_request_id', String(36), nullable=True),
    Column('source_transaction_id', String(36), nullable=True),
    Column('created_at', DateTime(timezone=True), nullable=False),
    # An expiring credit is swept at most once
    UniqueConstraint('source_transaction_id', name='uq_points_transactions_source'),
    # Composite index for history and monthly allocation lookups
    Index('idx_points_transactions_user_type_created', 'user_id', 'type', 'created_at'),
    Index('idx_points_transactions_expires_at', 'expires_at'),
)

# Withdrawal requests (pending -> approved | rejected)
withdrawal_requests = Table(
    'withdrawal_requests',
    metadata,
    Column('id', String(36), primary_key=True),
    Column('user_id', String(100), nullable=False, index=True),
    Column('amount', Integer, nullable=False),
    Column('fee', Integer, nullable=False),
    Column('net_amount', Integer, nullable=False),
    Column('payout_method', String(50), nullable=False),
    Column('payout_details', JSON, nullable=True),
    Column('status', String(50), nullable=False, server_default='pending'),
    Column('cash_value', Numeric(12, 2), nullable=False),
    Column('admin_notes', Text, nullable=True),
    Column('processed_at', DateTime(timezone=True), nullable=True),
    Column('processed_by', String(100), nullable=True),
    Column('external_transaction_id', String(200), nullable=True),
    Column('created_at', DateTime(timezone=True), nullable=False),
    Index('idx_withdrawal_requests_status_created', 'status', 'created_at'),
)
