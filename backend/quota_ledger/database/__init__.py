"""Database engine and session management."""

from quota_ledger.database.session import (
    build_engine,
    get_engine,
    get_session_factory,
    init_database,
    reset_engine,
)

__all__ = ["build_engine", "get_engine", "get_session_factory", "init_database", "reset_engine"]
