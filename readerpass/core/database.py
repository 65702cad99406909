"""
Storage for entitlements, payment intents and gateway event ledgers.

SQLAlchemy Core only. Every write that must happen at most once (grants,
webhook deliveries) is guarded by a unique constraint rather than a
read-then-write check.
"""
import logging
import os
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import create_engine, MetaData, Table, Column, Integer, String, DateTime, Boolean, Text, Index, UniqueConstraint
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool
from sqlalchemy.sql import func

from readerpass.core.config import settings

logger = logging.getLogger("readerpass")

metadata = MetaData()

_POOL_OPTIONS = {
    "pool_size": 10,
    "max_overflow": 20,
    "pool_timeout": 30,
    "pool_recycle": 3600,
    "pool_pre_ping": True,
}

_engine: Optional[Engine] = None
_session_factory = None


def _database_url() -> str:
    url = os.getenv("TEST_DATABASE_URL") or settings.TEST_DATABASE_URL or settings.DATABASE_URL
    if not url:
        raise ValueError("DATABASE_URL is not configured. Set it in the environment or readerpass/.env.")
    return url


def get_engine() -> Engine:
    global _engine, _session_factory
    if _engine is None:
        url = _database_url()
        if url.startswith("sqlite"):
            # One shared connection so the threadpool and the test client see the same rows
            _engine = create_engine(url, poolclass=StaticPool, connect_args={"check_same_thread": False})
        else:
            _engine = create_engine(url, **_POOL_OPTIONS)
        _session_factory = sessionmaker(autocommit=False, autoflush=False, bind=_engine)
        logger.info("db.engine_ready", extra={"event_type": "db.init"})
    return _engine


@contextmanager
def get_db_session():
    """
    Transactional session scope.

        with get_db_session() as session:
            session.execute(...)

    Commits on clean exit, rolls back and re-raises on any exception.
    """
    get_engine()
    session = _session_factory()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def create_all_tables():
    """Create missing tables. Existing tables are left untouched."""
    metadata.create_all(bind=get_engine())


def clear_all_tables():
    """Delete every row, keeping the schema. Used between tests."""
    with get_engine().begin() as conn:
        for table in reversed(metadata.sorted_tables):
            conn.execute(table.delete())


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Normalize a stored timestamp to an aware UTC datetime.

    SQLite returns naive datetimes even for timezone-aware columns.
    """
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


# One logical subscription row per user
subscriptions = Table(
    'subscriptions',
    metadata,
    Column('user_id', String(100), primary_key=True),
    Column('tier', String(20), nullable=False, server_default='free'),  # free, member, daypass
    Column('status', String(20), nullable=False, server_default='free'),  # free, pending, active, cancelled, expired
    Column('end_date', DateTime(timezone=True), nullable=True),
    Column('provider', String(20), nullable=False, server_default='none'),  # domestic, international, none
    Column('provider_customer_ref', String(200), nullable=True),
    Column('provider_subscription_ref', String(200), nullable=True, index=True),
    Column('provider_transaction_ref', String(200), nullable=True),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Column('updated_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Index('idx_subscriptions_status', 'status'),
)

# Anonymous day passes keyed by the browser session token
anonymous_day_passes = Table(
    'anonymous_day_passes',
    metadata,
    Column('session_id', String(100), primary_key=True),
    Column('provider', String(20), nullable=False),
    Column('transaction_ref', String(200), nullable=False),
    Column('created_at', DateTime(timezone=True), nullable=False),
    Column('expires_at', DateTime(timezone=True), nullable=False),
    Column('merged_user_id', String(100), nullable=True, index=True),
    Column('merged_at', DateTime(timezone=True), nullable=True),
    Index('idx_anonymous_day_passes_expires_at', 'expires_at'),
)

# Every initiated payment, recoverable by its local reference
payment_intents = Table(
    'payment_intents',
    metadata,
    Column('reference', String(100), primary_key=True),
    Column('user_id', String(100), nullable=True, index=True),
    Column('session_id', String(100), nullable=True, index=True),
    Column('plan_name', String(50), nullable=False),
    Column('provider', String(20), nullable=False),
    Column('provider_reference', String(200), nullable=True, index=True),
    Column('first_charge_ref', String(200), nullable=True),  # gateway charge that paid this intent's first cycle
    Column('amount', Integer, nullable=False),
    Column('currency', String(3), nullable=False),
    Column('kind', String(20), nullable=False),  # one_time, recurring
    Column('status', String(20), nullable=False, server_default='pending'),  # pending, succeeded, failed
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Column('updated_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
)

# Grant ledger: the idempotency key of every entitlement write
entitlement_grants = Table(
    'entitlement_grants',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('subject_kind', String(10), nullable=False),  # user, session
    Column('subject_id', String(100), nullable=False),
    Column('reference', String(200), nullable=False),
    Column('provider', String(20), nullable=False),
    Column('tier', String(20), nullable=False),
    Column('end_date', DateTime(timezone=True), nullable=True),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    UniqueConstraint('subject_kind', 'subject_id', 'reference', name='uq_entitlement_grants_subject_reference'),
    Index('idx_entitlement_grants_reference', 'reference'),
)

# Webhook idempotency
billing_events = Table(
    'billing_events',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('provider', String(20), nullable=False),
    Column('event_id', String(200), nullable=False),
    Column('event_type', String(100), nullable=False, index=True),
    Column('received_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Column('payload_hash', String(64), nullable=False),  # SHA256 hash for deduplication
    Column('processed', Boolean, nullable=False, server_default='0', index=True),
    Column('processed_at', DateTime(timezone=True), nullable=True),
    Column('error', Text, nullable=True),
    UniqueConstraint('provider', 'event_id', name='uq_billing_events_provider_event'),
    Index('idx_billing_events_received_at', 'received_at'),
)
