"""
Database configuration and connection management.

This module provides:
- SQLAlchemy engine and session management
- Connection pooling with sane defaults (PostgreSQL) and SQLite support for tests
- Table definitions for accounts, API keys, wallets, usage and chat history
"""
import logging
from typing import Optional, Generator
from contextlib import contextmanager
from sqlalchemy import create_engine, select, MetaData, Table, Column, Integer, String, DateTime, Boolean, Float, Text, Index, ForeignKey
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.pool import QueuePool
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.sql import func
import os

from unrepo.core.config import settings

logger = logging.getLogger("unrepo")

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

    if _engine is not None:
        _engine.dispose()

    if url.startswith("sqlite"):
        # SQLite is used for local runs and tests; a busy timeout lets
        # concurrent writers queue on the database lock instead of failing.
        _engine = create_engine(
            url,
            connect_args={"check_same_thread": False, "timeout": 30},
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


@contextmanager
def get_db_session():
    """
    Context manager for database sessions.

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


def get_db() -> Generator[Session, None, None]:
    """FastAPI-friendly DB dependency that yields a Session and closes it.

    Use this with `Depends(get_db)` in route functions.
    """
    SessionLocal = get_session_factory()
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


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


def check_connection() -> bool:
    """
    Check if database connection is available.

    Returns:
        True if connection successful, False otherwise
    """
    try:
        engine = get_engine()
        with engine.connect() as conn:
            conn.execute(select(1))
        return True
    except (SQLAlchemyError, ValueError) as e:
        logger.warning(f"Database connection check failed: {e}")
        return False


# Accounts: human users owning API keys
accounts = Table(
    'accounts',
    metadata,
    Column('id', String(36), primary_key=True),
    Column('email', String(320), nullable=True, unique=True),
    Column('name', Text, nullable=True),
    Column('github_id', String(100), nullable=True, unique=True),
    Column('github_username', String(100), nullable=True),
    Column('avatar', Text, nullable=True),
    Column('auth_method', String(20), nullable=False, server_default='GITHUB'),
    Column('payment_verified', Boolean, nullable=False, server_default='false'),
    Column('is_token_holder', Boolean, nullable=False, server_default='false'),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Column('last_login_at', DateTime(timezone=True), nullable=True),
)

# API keys: bearer tokens stored as SHA-256 digests
api_keys = Table(
    'api_keys',
    metadata,
    Column('id', String(36), primary_key=True),
    Column('account_id', String(36), ForeignKey('accounts.id'), nullable=False, index=True),
    Column('name', Text, nullable=False),
    Column('capability', String(20), nullable=False),  # 'research' | 'chat'
    Column('key_hash', String(64), nullable=False, unique=True),
    Column('key_prefix', String(40), nullable=False),
    Column('is_active', Boolean, nullable=False, server_default='true'),
    Column('usage_count', Integer, nullable=False, server_default='0'),
    Column('last_used_at', DateTime(timezone=True), nullable=True),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    # Authentication lookup: (key_hash, capability, is_active)
    Index('idx_api_keys_hash_capability_active', 'key_hash', 'capability', 'is_active'),
)

# Wallet users: self-contained principals with per-capability counters
wallet_users = Table(
    'wallet_users',
    metadata,
    Column('wallet_address', String(64), primary_key=True),
    Column('signature_hash', String(64), nullable=True),
    Column('is_verified', Boolean, nullable=False, server_default='false'),
    Column('research_used', Integer, nullable=False, server_default='0'),
    Column('research_limit', Integer, nullable=False, server_default='1'),
    Column('chat_used', Integer, nullable=False, server_default='0'),
    Column('chat_limit', Integer, nullable=False, server_default='5'),
    Column('is_token_holder', Boolean, nullable=False, server_default='false'),
    Column('token_balance', Float, nullable=False, server_default='0'),
    Column('last_token_check', DateTime(timezone=True), nullable=True),
    Column('last_used_at', DateTime(timezone=True), nullable=True),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
)

# Usage ledger: one row per accepted call (append-only)
api_usage = Table(
    'api_usage',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('account_id', String(36), ForeignKey('accounts.id'), nullable=True),
    Column('api_key_id', String(36), ForeignKey('api_keys.id'), nullable=True),
    Column('wallet_address', String(64), nullable=True),
    Column('endpoint', String(200), nullable=False),
    Column('method', String(10), nullable=False),
    Column('request_summary', Text, nullable=True),
    Column('created_at', DateTime(timezone=True), nullable=False),
    # Rolling window count: (api_key_id, created_at)
    Index('idx_api_usage_key_created', 'api_key_id', 'created_at'),
    Index('idx_api_usage_account_created', 'account_id', 'created_at'),
    Index('idx_api_usage_wallet_created', 'wallet_address', 'created_at'),
)

# Chat transcript: user and assistant turns of chatbot calls
chat_messages = Table(
    'chat_messages',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('account_id', String(36), ForeignKey('accounts.id'), nullable=True),
    Column('wallet_address', String(64), nullable=True),
    Column('session_id', String(120), nullable=False, index=True),
    Column('role', String(20), nullable=False),
    Column('content', Text, nullable=False),
    Column('repo_context', Text, nullable=True),
    Column('created_at', DateTime(timezone=True), nullable=False),
)
