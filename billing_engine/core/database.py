"""
Database configuration and connection management.

This module provides:
- SQLAlchemy engine and session management
- Connection pooling with sane defaults (StaticPool for in-memory SQLite)
- Test database support
- Billing table definitions
"""
import logging
import os
from contextlib import contextmanager
from typing import Iterator, Optional

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    Column,
    DateTime,
    Index,
    Integer,
    MetaData,
    Numeric,
    String,
    Table,
    Text,
    UniqueConstraint,
    create_engine,
    select,
)
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import QueuePool, StaticPool
from sqlalchemy.sql import func

from billing_engine.core.config import settings

logger = logging.getLogger(__name__)

# SQLAlchemy metadata for table definitions
metadata = MetaData()

# Connection pooling configuration
POOL_SIZE = 10
MAX_OVERFLOW = 20
POOL_TIMEOUT = 30
POOL_RECYCLE = 3600  # Recycle connections after 1 hour

# Money columns: major units, two decimal places
Money = Numeric(12, 2, asdecimal=True)

# Global engine and session factory
_engine: Optional[Engine] = None
_SessionLocal = None


def get_database_url() -> Optional[str]:
    """
    Get the database URL from settings or environment.

    For testing, use TEST_DATABASE_URL if available.
    """
    test_url = os.getenv("TEST_DATABASE_URL") or settings.TEST_DATABASE_URL
    if test_url:
        return test_url
    return settings.DATABASE_URL


def init_engine(database_url: Optional[str] = None) -> Engine:
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

    if url.startswith("sqlite"):
        in_memory = url in ("sqlite://", "sqlite:///:memory:") or ":memory:" in url
        _engine = create_engine(
            url,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool if in_memory else None,
            echo=False,
        )
    else:
        _engine = create_engine(
            url,
            poolclass=QueuePool,
            pool_size=POOL_SIZE,
            max_overflow=MAX_OVERFLOW,
            pool_timeout=POOL_TIMEOUT,
            pool_recycle=POOL_RECYCLE,
            pool_pre_ping=True,
            echo=False,
        )

    _SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=_engine)
    return _engine


def get_engine() -> Engine:
    """Get the current SQLAlchemy engine."""
    if _engine is None:
        return init_engine()
    return _engine


def get_session_factory():
    """Get the session factory."""
    if _SessionLocal is None:
        init_engine()
    return _SessionLocal


@contextmanager
def get_db_session() -> Iterator[Session]:
    """
    Context manager for database sessions.

    Commits on clean exit, rolls back on error.

    Usage:
        with get_db_session() as session:
            session.execute(...)
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


def create_all_tables() -> None:
    """Create all tables defined in metadata. Idempotent."""
    metadata.create_all(bind=get_engine())


def drop_all_tables() -> None:
    """
    Drop all tables defined in metadata.

    WARNING: This is destructive! Only use in tests or development.
    """
    metadata.drop_all(bind=get_engine())


def reset_database() -> None:
    """Drop and recreate all tables. Only use in tests."""
    drop_all_tables()
    create_all_tables()


def check_connection() -> bool:
    """
    Check if database connection is available.

    Returns:
        True if connection successful, False otherwise
    """
    try:
        with get_engine().connect() as conn:
            conn.execute(select(1))
        return True
    except Exception as e:
        logger.warning("[billing] database connection check failed", extra={"error": str(e)})
        return False


# Users: denormalized entitlement snapshot
users = Table(
    "app_users",
    metadata,
    Column("user_id", String(100), primary_key=True),
    Column("email", String(255), nullable=True),
    Column("name", Text, nullable=True),
    Column("user_type", String(50), nullable=False, default="individual"),
    Column("premium_active", Boolean, nullable=False, default=False),
    Column("premium_plan", String(50), nullable=True),
    Column("premium_expires_at", BigInteger, nullable=True),  # epoch ms
    Column("membership", JSON, nullable=True),
    Column("created_at", DateTime(timezone=True), server_default=func.now(), nullable=False),
    Column("updated_at", DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False),
)

# Billing accounts: one per user
billing_accounts = Table(
    "billing_accounts",
    metadata,
    Column("billing_id", String(64), primary_key=True),
    Column("user_id", String(100), nullable=False, unique=True),
    Column("plan_id", String(50), nullable=False, default="basic"),
    Column("billing_cycle", String(20), nullable=False, default="monthly"),
    Column("processor", String(20), nullable=True),
    Column("customer_id", String(100), nullable=True),
    Column("payment_method_id", String(100), nullable=True),
    Column("subscription_id", String(100), nullable=True, unique=True),
    Column("subscription_item_ref", String(100), nullable=True),
    Column("status", String(20), nullable=False, default="active"),
    Column("amount", Money, nullable=False, default=0),
    Column("currency", String(3), nullable=False, default="USD"),
    # Billing dates are epoch ms
    Column("next_billing_date", BigInteger, nullable=True),
    Column("trial_ends_at", BigInteger, nullable=True),
    Column("canceled_at", BigInteger, nullable=True),
    Column("grace_ends_at", BigInteger, nullable=True),
    Column("cancel_at_period_end", Boolean, nullable=False, default=False),
    Column("pending_downgrade_credit", Money, nullable=True),
    # Grace-period charge retries
    Column("retry_attempts", Integer, nullable=False, default=0),
    Column("next_retry_at", BigInteger, nullable=True),
    # Processor plan reference still to be applied after a paid plan change
    Column("pending_plan_ref", String(100), nullable=True),
    Column("metadata_json", JSON, nullable=True),
    Column("created_at", BigInteger, nullable=True),
    Column("updated_at", BigInteger, nullable=True),
    Index("idx_billing_accounts_customer_id", "customer_id"),
    Index("idx_billing_accounts_status_next_billing", "status", "next_billing_date"),
    Index("idx_billing_accounts_grace_ends_at", "grace_ends_at"),
    Index("idx_billing_accounts_next_retry_at", "next_retry_at"),
)

# Transactions: append-only ledger
billing_transactions = Table(
    "billing_transactions",
    metadata,
    Column("id", String(64), primary_key=True),
    Column("processor_transaction_id", String(100), nullable=True),
    Column("type", String(20), nullable=False),  # payment | refund
    Column("amount", Money, nullable=False),
    Column("currency", String(3), nullable=False),
    Column("status", String(20), nullable=False),  # completed | failed | pending
    Column("user_id", String(100), nullable=False),
    Column("billing_account_id", String(64), nullable=True),
    Column("fees", Money, nullable=False, default=0),
    Column("net_amount", Money, nullable=False, default=0),
    Column("description", Text, nullable=False, default=""),
    Column("metadata_json", JSON, nullable=True),
    Column("created_at", BigInteger, nullable=True),
    Column("completed_at", BigInteger, nullable=True),
    Index("idx_billing_transactions_user_id", "user_id"),
    Index("idx_billing_transactions_processor_id", "processor_transaction_id"),
    Index("idx_billing_transactions_account_id", "billing_account_id"),
)

# Billing events: webhook idempotency
billing_events = Table(
    "billing_events",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("processor", String(20), nullable=False),
    Column("event_id", String(100), nullable=False),
    Column("event_type", String(100), nullable=False, index=True),
    Column("received_at", DateTime(timezone=True), server_default=func.now(), nullable=False),
    Column("payload_hash", String(64), nullable=False),  # SHA256 of the raw body
    Column("processed", Boolean, nullable=False, default=False, index=True),
    Column("processed_at", DateTime(timezone=True), nullable=True),
    Column("error", Text, nullable=True),
    UniqueConstraint("processor", "event_id", name="uq_billing_events_processor_event"),
)

# Account leases: cross-process mutual exclusion, claimed by conditional update
billing_locks = Table(
    "billing_locks",
    metadata,
    Column("lock_key", String(200), primary_key=True),
    Column("owner", String(64), nullable=False),
    Column("expires_at", BigInteger, nullable=False),  # epoch ms
)

# Disputes and chargebacks reported by the processors
billing_disputes = Table(
    "billing_disputes",
    metadata,
    Column("id", String(64), primary_key=True),
    Column("processor", String(20), nullable=False),
    Column("processor_dispute_id", String(100), nullable=False),
    Column("transaction_id", String(64), nullable=True),
    Column("processor_transaction_id", String(100), nullable=True),
    Column("billing_account_id", String(64), nullable=True),
    Column("user_id", String(100), nullable=True),
    Column("amount", Money, nullable=True),
    Column("currency", String(3), nullable=True),
    Column("reason", String(100), nullable=True),
    Column("status", String(20), nullable=False, default="open"),
    Column("priority", String(10), nullable=False, default="low"),
    Column("respond_by", BigInteger, nullable=True),
    Column("created_at", BigInteger, nullable=True),
    UniqueConstraint("processor", "processor_dispute_id", name="uq_billing_disputes_processor_dispute"),
    Index("idx_billing_disputes_account_id", "billing_account_id"),
)
