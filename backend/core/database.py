"""
Database configuration and table definitions.

This module provides:
- SQLAlchemy engine construction with sane pool defaults
- Table definitions for subscription state and the billing event ledger
- Schema creation and a connection probe

There is no process-wide engine here: the entry point builds one engine
(see SubscriptionStore.from_url) and hands it to the components that need it.
"""
import logging
import os
from typing import Optional

from sqlalchemy import (
    create_engine,
    MetaData,
    Table,
    Column,
    Integer,
    String,
    DateTime,
    Text,
    Index,
    UniqueConstraint,
    CheckConstraint,
    text,
)
from sqlalchemy.engine import Engine
from sqlalchemy.pool import QueuePool, StaticPool
from sqlalchemy.sql import func

from backend.core.config import settings

logger = logging.getLogger("inclusiva")

# SQLAlchemy metadata for table definitions
metadata = MetaData()

# Connection pooling configuration
POOL_SIZE = 10
MAX_OVERFLOW = 20
POOL_TIMEOUT = 30
POOL_RECYCLE = 3600  # Recycle connections after 1 hour


def get_database_url() -> Optional[str]:
    """
    Get the database URL from settings or environment.

    For testing, use TEST_DATABASE_URL if available.
    """
    test_url = os.getenv("TEST_DATABASE_URL")
    if test_url:
        return test_url

    return settings.DATABASE_URL


def build_engine(database_url: Optional[str] = None) -> Engine:
    """
    Build a SQLAlchemy engine.

    Args:
        database_url: Optional override for DATABASE_URL

    SQLite URLs (local/test) get a single shared connection so in-memory
    databases survive across sessions; everything else gets a QueuePool.
    """
    url = database_url or get_database_url()

    if not url:
        raise ValueError(
            "DATABASE_URL is not configured. "
            "Set DATABASE_URL in environment or .env file."
        )

    if url.startswith("sqlite"):
        return create_engine(
            url,
            poolclass=StaticPool,
            connect_args={"check_same_thread": False},
            echo=False,
        )

    return create_engine(
        url,
        poolclass=QueuePool,
        pool_size=POOL_SIZE,
        max_overflow=MAX_OVERFLOW,
        pool_timeout=POOL_TIMEOUT,
        pool_recycle=POOL_RECYCLE,
        pool_pre_ping=True,
        echo=False,  # Set to True for SQL query logging
    )


def create_all_tables(engine: Engine) -> None:
    """
    Create all tables defined in metadata.

    This is idempotent - tables that already exist will not be recreated.
    """
    metadata.create_all(bind=engine)


def check_connection(engine: Engine) -> bool:
    """
    Check if database connection is available.

    Returns:
        True if connection successful, False otherwise
    """
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        return True
    except Exception as e:
        logger.warning(f"Database connection check failed: {e}")
        return False


# Subscription records: one row per account, created lazily on first access
subscriptions = Table(
    'subscriptions',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('account_id', String(100), nullable=False),
    Column('plan_id', String(50), nullable=False, server_default='free'),
    Column('status', String(20), nullable=False, server_default='active'),  # active, cancelled, expired, trialing
    # Usage counters (reset on period rollover)
    Column('students_used', Integer, nullable=False, server_default='0'),
    Column('reports_used_this_period', Integer, nullable=False, server_default='0'),
    Column('generations_used_this_period', Integer, nullable=False, server_default='0'),
    # Dates
    Column('trial_ends_at', DateTime(timezone=True), nullable=True),
    Column('current_period_start', DateTime(timezone=True), nullable=True),
    Column('current_period_end', DateTime(timezone=True), nullable=True),
    Column('cancelled_at', DateTime(timezone=True), nullable=True),
    # Provider identifiers (present once a paid checkout completed)
    Column('provider_customer_id', String(100), nullable=True),
    Column('provider_subscription_id', String(100), nullable=True),
    Column('provider_price_id', String(128), nullable=True),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Column('updated_at', DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False),
    UniqueConstraint('account_id', name='uq_subscriptions_account_id'),
    UniqueConstraint('provider_subscription_id', name='uq_subscriptions_provider_subscription_id'),
    CheckConstraint('students_used >= 0', name='ck_subscriptions_students_used'),
    CheckConstraint('reports_used_this_period >= 0', name='ck_subscriptions_reports_used'),
    CheckConstraint('generations_used_this_period >= 0', name='ck_subscriptions_generations_used'),
    Index('idx_subscriptions_provider_customer_id', 'provider_customer_id'),
    Index('idx_subscriptions_plan_status', 'plan_id', 'status'),
)

# Billing events (webhook delivery ledger)
billing_events = Table(
    'billing_events',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('provider_event_id', String(100), nullable=False),
    Column('event_type', String(100), nullable=False, index=True),
    Column('received_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Column('payload_hash', String(64), nullable=False),  # SHA256 of the raw body
    Column('status', String(20), nullable=False, server_default='pending'),  # pending, processed, failed
    Column('outcome', String(50), nullable=True),
    Column('attempts', Integer, nullable=False, server_default='0'),
    Column('processed_at', DateTime(timezone=True), nullable=True),
    Column('error', Text, nullable=True),
    UniqueConstraint('provider_event_id', name='uq_billing_events_provider_event_id'),
    Index('idx_billing_events_received_at', 'received_at'),
    Index('idx_billing_events_status', 'status'),
)
