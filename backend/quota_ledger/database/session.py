"""
Database session management with connection pooling.

Provides the engine and session factory singletons used by the ledger
service and the sweep worker. Every ledger operation opens its own short
session from the factory so each per-tenant unit of work has its own
transaction.

Usage:
    from quota_ledger.database.session import get_session_factory

    SessionLocal = get_session_factory()
    with SessionLocal() as session:
        ...
"""

import os
import logging
from typing import Optional

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import QueuePool, StaticPool

logger = logging.getLogger(__name__)

# Module-level engine singleton
_engine: Optional[Engine] = None
_SessionLocal: Optional[sessionmaker] = None


def _get_database_url() -> str:
    """
    Get and normalize the database URL from environment.

    Handles Render's postgres:// URL format by converting to postgresql://.
    """
    database_url = os.getenv("DATABASE_URL")
    if not database_url:
        raise ValueError("DATABASE_URL environment variable is not set")

    # SQLAlchemy requires postgresql://
    if database_url.startswith("postgres://"):
        database_url = database_url.replace("postgres://", "postgresql://", 1)

    return database_url


def build_engine(database_url: str) -> Engine:
    """
    Create an engine suited to the database backend.

    PostgreSQL gets a pooled engine with pre-ping; SQLite in-memory
    databases share one connection across threads.
    """
    if database_url.startswith("sqlite"):
        kwargs = {"connect_args": {"check_same_thread": False}}
        if ":memory:" in database_url or database_url == "sqlite://":
            kwargs["poolclass"] = StaticPool
        return create_engine(database_url, **kwargs)

    return create_engine(
        database_url,
        poolclass=QueuePool,
        pool_size=5,
        max_overflow=10,
        pool_pre_ping=True,  # Verify connection health
        pool_recycle=1800,   # Recycle connections after 30 minutes
    )


def get_engine() -> Engine:
    """Get or create the database engine singleton."""
    global _engine
    if _engine is None:
        try:
            _engine = build_engine(_get_database_url())
            logger.info("Database engine created")
        except ValueError as e:
            logger.error("Failed to create database engine", extra={"error": str(e)})
            raise
    return _engine


def get_session_factory() -> sessionmaker:
    """Get or create the session factory singleton."""
    global _SessionLocal
    if _SessionLocal is None:
        _SessionLocal = sessionmaker(
            autocommit=False,
            autoflush=False,
            expire_on_commit=False,
            bind=get_engine(),
        )
    return _SessionLocal


def reset_engine() -> None:
    """Dispose the engine singleton (used by workers on shutdown and by tests)."""
    global _engine, _SessionLocal
    if _engine is not None:
        _engine.dispose()
    _engine = None
    _SessionLocal = None


def init_database(engine: Optional[Engine] = None) -> None:
    """
    Create all ledger tables that do not exist yet.

    Existing tables are not modified.
    """
    from quota_ledger.db_base import Base
    import quota_ledger.models  # noqa: F401  registers every model with Base.metadata

    engine = engine or get_engine()
    table_names = sorted(Base.metadata.tables.keys())
    logger.info("Creating ledger tables: %s", ", ".join(table_names))
    Base.metadata.create_all(bind=engine)
