"""
Database configuration and connection management.

This module provides:
- SQLAlchemy engine and session management
- Connection pooling with sane defaults (static pool for SQLite)
- Table definitions for users, accounts, subscriptions, ledger entries
  and billing records
"""
import logging
import os
from contextlib import contextmanager
from typing import Optional

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    MetaData,
    Numeric,
    String,
    Table,
    Text,
    UniqueConstraint,
    create_engine,
)
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import QueuePool, StaticPool
from sqlalchemy.sql import func

from mywallet.core.config import settings

logger = logging.getLogger("mywallet")

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

    if url.startswith("sqlite"):
        # One shared connection so in-memory databases survive across sessions
        _engine = create_engine(
            url,
            poolclass=StaticPool,
            connect_args={"check_same_thread": False},
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
            echo=False,  # Set to True for SQL query logging
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
    """Dispose the engine and forget the session factory (tests, shutdown)."""
    global _engine, _SessionLocal
    if _engine is not None:
        _engine.dispose()
    _engine = None
    _SessionLocal = None


@contextmanager
def get_db_session():
    """
    Context manager for database sessions.

    The block is one transaction: committed when it exits cleanly,
    rolled back when it raises.

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


def create_all_tables():
    """
    Create all tables defined in metadata.

    This is idempotent - tables that already exist will not be recreated.
    """
    engine = get_engine()
    metadata.create_all(bind=engine)


def drop_all_tables():
    """
    Drop all tables defined in metadata.

    WARNING: This is destructive! Only use in tests or development.
    """
    engine = get_engine()
    metadata.drop_all(bind=engine)


# Users and their gateway subscription state
users = Table(
    'users',
    metadata,
    Column('id', String(36), primary_key=True),
    Column('name', String(255), nullable=True),
    Column('email', String(255), nullable=True, unique=True),
    Column('plan', String(20), nullable=False, server_default='FREE'),
    Column('subscription_status', String(20), nullable=False, server_default='INACTIVE'),
    Column('subscription_id', String(100), nullable=True),
    Column('subscription_expires_at', DateTime(timezone=True), nullable=True),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Column('updated_at', DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False),
    # Reverse lookup for recurring payment webhooks
    Index('idx_users_subscription_id', 'subscription_id'),
)

# Profiles (personal / business contexts of one user)
profiles = Table(
    'profiles',
    metadata,
    Column('id', String(36), primary_key=True),
    Column('user_id', String(36), ForeignKey('users.id'), nullable=False, index=True),
    Column('name', String(255), nullable=False),
    Column('type', String(20), nullable=False, server_default='PERSONAL'),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
)

# Bank accounts (balance mutated only through the balance ledger)
bank_accounts = Table(
    'bank_accounts',
    metadata,
    Column('id', String(36), primary_key=True),
    Column('user_id', String(36), ForeignKey('users.id'), nullable=False, index=True),
    Column('profile_id', String(36), ForeignKey('profiles.id'), nullable=True),
    Column('bank_name', String(100), nullable=False),
    Column('nickname', String(100), nullable=True),
    Column('balance', Numeric(15, 2), nullable=False, server_default='0'),
    Column('updated_at', DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False),
    Index('idx_bank_accounts_user_profile', 'user_id', 'profile_id'),
)

# Credit cards
credit_cards = Table(
    'credit_cards',
    metadata,
    Column('id', String(36), primary_key=True),
    Column('user_id', String(36), ForeignKey('users.id'), nullable=False, index=True),
    Column('profile_id', String(36), ForeignKey('profiles.id'), nullable=True),
    Column('name', String(100), nullable=False),
    Column('brand', String(30), nullable=True),
    Column('last_four_digits', String(4), nullable=True),
    # Account that pays the card bill
    Column('bank_account_id', String(36), ForeignKey('bank_accounts.id'), nullable=True),
    Index('idx_credit_cards_user_profile', 'user_id', 'profile_id'),
)

# Internal recurring expenses (distinct from the gateway subscription)
subscriptions = Table(
    'subscriptions',
    metadata,
    Column('id', String(36), primary_key=True),
    Column('user_id', String(36), ForeignKey('users.id'), nullable=False),
    Column('profile_id', String(36), ForeignKey('profiles.id'), nullable=True),
    Column('card_id', String(36), ForeignKey('credit_cards.id'), nullable=True, index=True),
    Column('bank_account_id', String(36), ForeignKey('bank_accounts.id'), nullable=True),
    Column('name', String(255), nullable=False),
    Column('description', Text, nullable=True),
    Column('amount', Numeric(15, 2), nullable=False),
    Column('currency', String(3), nullable=False, server_default='BRL'),
    Column('frequency', String(20), nullable=False, server_default='MONTHLY'),
    Column('category', String(30), nullable=False, server_default='OTHER'),
    Column('status', String(20), nullable=False, server_default='ACTIVE', index=True),
    Column('start_date', Date, nullable=False),
    Column('next_billing_date', Date, nullable=False, index=True),
    Column('end_date', Date, nullable=True),
    Column('auto_generate', Boolean, nullable=False, server_default='1'),
    Column('alert_days_before', Integer, nullable=False, server_default='3'),
    Column('notes', Text, nullable=True),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Column('updated_at', DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False),
    # Owner scans: (user_id, profile_id, status)
    Index('idx_subscriptions_owner_status', 'user_id', 'profile_id', 'status'),
)

# Card ledger entries
card_transactions = Table(
    'card_transactions',
    metadata,
    Column('id', String(36), primary_key=True),
    Column('user_id', String(36), ForeignKey('users.id'), nullable=False, index=True),
    Column('profile_id', String(36), ForeignKey('profiles.id'), nullable=True),
    Column('card_id', String(36), ForeignKey('credit_cards.id'), nullable=False, index=True),
    Column('subscription_id', String(36), ForeignKey('subscriptions.id'), nullable=True),
    Column('description', String(500), nullable=False),
    Column('amount', Numeric(15, 2), nullable=False),
    Column('date', Date, nullable=False),
    Column('category', String(30), nullable=True),
    Column('is_recurring', Boolean, nullable=False, server_default='0'),
    Column('recurring_frequency', String(20), nullable=True),
    Column('status', String(20), nullable=False, server_default='PENDING'),  # PENDING, PAID, CANCELLED
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    # One entry per billing cycle
    UniqueConstraint('subscription_id', 'date', name='uq_card_transactions_subscription_date'),
)

# Manual (non-card) ledger entries
manual_transactions = Table(
    'manual_transactions',
    metadata,
    Column('id', String(36), primary_key=True),
    Column('user_id', String(36), ForeignKey('users.id'), nullable=False, index=True),
    Column('profile_id', String(36), ForeignKey('profiles.id'), nullable=True),
    Column('bank_account_id', String(36), ForeignKey('bank_accounts.id'), nullable=True),
    Column('subscription_id', String(36), ForeignKey('subscriptions.id'), nullable=True),
    Column('type', String(20), nullable=False),  # INCOME, EXPENSE
    Column('source', String(20), nullable=False, server_default='OTHER'),
    Column('description', String(500), nullable=False),
    Column('amount', Numeric(15, 2), nullable=False),
    Column('date', Date, nullable=False),
    Column('category', String(30), nullable=True),
    Column('is_recurring', Boolean, nullable=False, server_default='0'),
    Column('status', String(20), nullable=False, server_default='COMPLETED'),  # PENDING, COMPLETED, CANCELLED
    Column('notes', Text, nullable=True),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    UniqueConstraint('subscription_id', 'date', name='uq_manual_transactions_subscription_date'),
)

# Gateway payment records (webhook idempotency)
payment_history = Table(
    'payment_history',
    metadata,
    Column('id', String(36), primary_key=True),
    Column('user_id', String(36), ForeignKey('users.id'), nullable=False, index=True),
    Column('amount', Numeric(10, 2), nullable=False),
    Column('status', String(20), nullable=False, server_default='PENDING'),  # PENDING, APPROVED, REJECTED, REFUNDED
    Column('method', String(50), nullable=True),
    Column('plan_type', String(20), nullable=False),
    Column('external_payment_id', String(255), nullable=False),
    Column('external_subscription_id', String(255), nullable=True),
    Column('external_data', JSON, nullable=True),
    Column('paid_at', DateTime(timezone=True), nullable=True),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    UniqueConstraint('external_payment_id', name='uq_payment_history_external_payment_id'),
    Index('idx_payment_history_user_created', 'user_id', 'created_at'),
)

# Key-value settings (persisted gateway plan ids)
app_settings = Table(
    'settings',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('key', String(100), nullable=False),
    Column('value', Text, nullable=True),
    Column('category', String(50), nullable=False, server_default='general'),
    Column('updated_at', DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False),
    UniqueConstraint('key', name='uq_settings_key'),
)

# Correlation references handed to the gateway as external_reference
payment_references = Table(
    'payment_references',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('reference', String(64), nullable=False),
    Column('user_id', String(36), ForeignKey('users.id'), nullable=False, index=True),
    Column('plan_key', String(20), nullable=False),
    Column('kind', String(20), nullable=False),  # preference, subscription
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    UniqueConstraint('reference', name='uq_payment_references_reference'),
)

# Audit trail for subscription changes
audit_log = Table(
    'audit_log',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('user_id', String(36), nullable=True, index=True),
    Column('action', String(100), nullable=False),  # SUBSCRIPTION_CREATE, SUBSCRIPTION_PAY, ...
    Column('resource', String(50), nullable=False),
    Column('resource_id', String(100), nullable=True),
    Column('payload_json', Text, nullable=True),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False, index=True),
)

# Periodic job runs
job_runs = Table(
    'job_runs',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('job_name', String(100), nullable=False, index=True),
    Column('started_at', DateTime(timezone=True), nullable=False),
    Column('finished_at', DateTime(timezone=True), nullable=True),
    Column('status', String(20), nullable=False),
    Column('stats_json', Text, nullable=True),
)
