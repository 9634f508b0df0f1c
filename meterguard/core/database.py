"""
Database configuration and table definitions.

This module provides:
- SQLAlchemy engine and session-factory construction
- A transactional session scope (commit on success, rollback on error)
- Table definitions for users, plans, entitlements, user subscriptions
  and the webhook delivery log

Nothing here holds a process-wide engine: the application entry point builds
one and hands the session factory to a BillingContext.
"""
from contextlib import contextmanager
from typing import Iterator, Optional

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    JSON,
    MetaData,
    Numeric,
    String,
    Table,
    Text,
    create_engine,
    false,
    text,
    true,
)
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import QueuePool, StaticPool
from sqlalchemy.sql import func
import logging

logger = logging.getLogger(__name__)

# SQLAlchemy metadata for table definitions
metadata = MetaData()

# Connection pooling configuration
POOL_SIZE = 10
MAX_OVERFLOW = 20
POOL_TIMEOUT = 30
POOL_RECYCLE = 3600  # Recycle connections after 1 hour


def create_db_engine(database_url: Optional[str], echo: bool = False) -> Engine:
    """
    Create the SQLAlchemy engine.

    In-memory SQLite (tests) shares one connection through StaticPool so every
    session sees the same database; server databases get a QueuePool.
    """
    if not database_url:
        raise ValueError(
            "DATABASE_URL is not configured. "
            "Set DATABASE_URL in environment or .env file."
        )

    if database_url.startswith("sqlite"):
        kwargs = {"connect_args": {"check_same_thread": False}}
        if ":memory:" in database_url or database_url.rstrip("/") in ("sqlite:", "sqlite+pysqlite:"):
            kwargs["poolclass"] = StaticPool
        return create_engine(database_url, echo=echo, **kwargs)

    return create_engine(
        database_url,
        poolclass=QueuePool,
        pool_size=POOL_SIZE,
        max_overflow=MAX_OVERFLOW,
        pool_timeout=POOL_TIMEOUT,
        pool_recycle=POOL_RECYCLE,
        pool_pre_ping=True,
        echo=echo,
    )


def build_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@contextmanager
def session_scope(session_factory: sessionmaker) -> Iterator[Session]:
    """
    Context manager for one database transaction.

    Usage:
        with session_scope(factory) as session:
            session.execute(...)
    """
    session = session_factory()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def create_all_tables(engine: Engine) -> None:
    """Create all tables defined in metadata (idempotent)."""
    metadata.create_all(bind=engine)


def drop_all_tables(engine: Engine) -> None:
    """
    Drop all tables defined in metadata.

    WARNING: This is destructive! Only use in tests or development.
    """
    metadata.drop_all(bind=engine)


def check_connection(engine: Engine) -> bool:
    """Return True if a trivial query succeeds against the engine."""
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        return True
    except Exception as e:
        logger.warning(f"Database connection check failed: {e}")
        return False


# Users: identity plus capability-consumption state
users = Table(
    'app_users',
    metadata,
    Column('id', String(36), primary_key=True),
    Column('email', String(255), nullable=False, unique=True),
    Column('name', Text, nullable=True),
    Column('phone', String(20), nullable=True),
    Column('role', String(20), nullable=False, server_default='USER'),  # USER, ADMIN
    Column('free_trial', Integer, nullable=False, server_default='0'),
    # Weak reference: entitlements are never deleted, so no FK is declared
    Column('entitlement_id', String(36), nullable=True, index=True),
    Column('user_limit', Integer, nullable=False, server_default='0'),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Column('updated_at', DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False),
    CheckConstraint('free_trial >= 0', name='ck_app_users_free_trial_non_negative'),
    CheckConstraint('user_limit >= 0', name='ck_app_users_user_limit_non_negative'),
)

# Purchasable plans (ORDER top-ups and recurring SUBSCRIPTION tiers)
plans = Table(
    'plans',
    metadata,
    Column('id', String(36), primary_key=True),
    Column('name', String(200), nullable=False),
    Column('description', Text, nullable=True),
    Column('plan_type', String(20), nullable=False),  # ORDER, SUBSCRIPTION
    Column('amount', Numeric(12, 2), nullable=False),
    Column('recurring_amount', Numeric(12, 2), nullable=True),
    Column('max_amount', Numeric(12, 2), nullable=True),
    Column('currency', String(3), nullable=False, server_default='INR'),
    Column('is_limited', Boolean, nullable=False, server_default=true()),
    Column('limit_number', Integer, nullable=True),
    Column('intervals', Integer, nullable=True),
    Column('interval_type', String(10), nullable=True),  # MONTH, YEAR
    Column('max_cycles', Integer, nullable=True),
    Column('gateway_plan_id', String(100), nullable=True, unique=True),
    Column('gateway_synced', Boolean, nullable=False, server_default=false()),
    Column('status', String(20), nullable=False, server_default='ACTIVE'),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Index('idx_plans_type_created', 'plan_type', 'created_at'),
)

# Currently granted capability package (shared across renewal cycles)
entitlements = Table(
    'entitlements',
    metadata,
    Column('id', String(36), primary_key=True),
    Column('name', String(200), nullable=False),
    Column('price', Numeric(12, 2), nullable=False),
    Column('plan_id', String(36), ForeignKey('plans.id'), nullable=True),
    Column('is_limited', Boolean, nullable=False),
    Column('plan_limit', Integer, nullable=False, server_default='0'),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Column('updated_at', DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False),
)

# One purchase attempt / one subscription's billing record
user_subscriptions = Table(
    'user_subscriptions',
    metadata,
    Column('id', String(36), primary_key=True),
    Column('user_id', String(36), ForeignKey('app_users.id'), nullable=False, index=True),
    Column('plan_id', String(36), ForeignKey('plans.id'), nullable=False, index=True),
    Column('status', String(20), nullable=False, server_default='PENDING'),
    Column('payment_status', String(20), nullable=False, server_default='PENDING'),
    Column('gateway_order_id', String(100), nullable=True, unique=True),
    Column('gateway_subscription_id', String(100), nullable=True, unique=True),
    Column('gateway_payment_id', String(100), nullable=True),
    Column('usage_count', Integer, nullable=False, server_default='0'),
    Column('amount_paid', Numeric(12, 2), nullable=False, server_default='0'),
    Column('currency', String(3), nullable=False, server_default='INR'),
    Column('started_at', DateTime(timezone=True), nullable=True),
    Column('expires_at', DateTime(timezone=True), nullable=True),
    Column('cycles_completed', Integer, nullable=False, server_default='0'),
    Column('payment_metadata', JSON, nullable=True),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Column('updated_at', DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False),
    Index('idx_user_subscriptions_user_status', 'user_id', 'status'),
    # At most one open (PENDING/ACTIVE/PAUSED) purchase per (user, plan)
    Index(
        'uq_user_subscriptions_open_per_plan',
        'user_id',
        'plan_id',
        unique=True,
        postgresql_where=text("status IN ('PENDING', 'ACTIVE', 'PAUSED')"),
        sqlite_where=text("status IN ('PENDING', 'ACTIVE', 'PAUSED')"),
    ),
)

# Webhook delivery log (audit only; handlers carry their own idempotency)
webhook_events = Table(
    'webhook_events',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('event_type', String(100), nullable=False, index=True),
    Column('payload_hash', String(64), nullable=False, index=True),  # SHA256 of raw body
    Column('received_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Column('processed', Boolean, nullable=False, server_default=false()),
    Column('processed_at', DateTime(timezone=True), nullable=True),
    Column('error', Text, nullable=True),
    Index('idx_webhook_events_received_at', 'received_at'),
)
