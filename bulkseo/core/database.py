"""
Database configuration and connection management.

This module provides:
- SQLAlchemy engine and session management
- Connection pooling with sane defaults
- In-memory sqlite support for tests
- Table definitions for subscriptions, token balances and the catalog mirror
"""
from typing import Optional, Generator
from contextlib import contextmanager
from sqlalchemy import create_engine, MetaData, Table, Column, Integer, BigInteger, String, DateTime, Boolean, JSON, Text, Index
from sqlalchemy.pool import QueuePool, StaticPool
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.sql import func
import os

from bulkseo.core.config import settings


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
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
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


def dispose_engine() -> None:
    """Dispose the current engine (tests switch databases between cases)."""
    global _engine, _SessionLocal
    if _engine is not None:
        _engine.dispose()
    _engine = None
    _SessionLocal = None


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


@contextmanager
def get_db_session() -> Generator[Session, None, None]:
    """
    Context manager for database sessions.

    Usage:
        with get_db_session() as session:
            session.execute(...)

    Commits on normal exit, rolls back on error.
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


# Subscription state per shop (plan assignment + trial window)
subscriptions = Table(
    'subscriptions',
    metadata,
    Column('shop', String(255), primary_key=True),
    Column('plan_key', String(50), nullable=False),
    Column('trial_ends_at', DateTime(timezone=True), nullable=True),
    Column('activated_at', DateTime(timezone=True), nullable=True),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Column('updated_at', DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False),
)

# Token balance per shop (current totals)
token_balances = Table(
    'token_balances',
    metadata,
    Column('shop', String(255), primary_key=True),
    Column('balance', BigInteger, nullable=False, server_default='0'),
    Column('total_purchased', BigInteger, nullable=False, server_default='0'),
    Column('total_used', BigInteger, nullable=False, server_default='0'),
    Column('included_tokens', BigInteger, nullable=False, server_default='0'),  # current plan grant
    Column('updated_at', DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False),
)

# Append-only token history (purchases, included grants, usage debits)
token_events = Table(
    'token_events',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('shop', String(255), nullable=False, index=True),
    Column('event_type', String(50), nullable=False),  # PURCHASE | INCLUDED | HOLD | RELEASE | USAGE
    Column('feature', String(100), nullable=True),
    Column('entity_id', String(255), nullable=True),
    Column('amount', BigInteger, nullable=False),
    Column('balance_after', BigInteger, nullable=False),
    Column('usd_amount', Text, nullable=True),
    Column('charge_id', String(255), nullable=True),
    Column('event_metadata', JSON, nullable=True),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Index('idx_token_events_shop_created', 'shop', 'created_at'),
)

# Local mirror of synced catalog entities and their optimization state
catalog_entities = Table(
    'catalog_entities',
    metadata,
    Column('shop', String(255), primary_key=True),
    Column('entity_id', String(255), primary_key=True),
    Column('kind', String(20), nullable=False),
    Column('title', Text, nullable=False),
    Column('status', String(20), nullable=False, server_default='ACTIVE'),
    Column('optimized_languages', JSON, nullable=False),
    Column('ai_enhanced', Boolean, nullable=False, server_default='0'),
    Column('last_optimized_at', DateTime(timezone=True), nullable=True),
    Column('position', Integer, nullable=False, server_default='0'),
    Column('synced_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Index('idx_catalog_entities_shop_kind', 'shop', 'kind'),
)
