"""
Database Package Initialization.

============================================================
PERSISTENCE LAYER
============================================================

Engine, session and transaction management shared by the
fusion scoring engine. Table definitions live with their
owning package (fusion_engine.models) and register on the
shared declarative Base.

============================================================
"""

from .engine import (
    # Declarative base
    Base,

    # Engine creation
    DEFAULT_DATABASE_URL,
    get_database_url,
    create_database_engine,
    enable_sqlite_savepoints,
    configure_engine,
    get_engine,

    # Session management
    get_session,
    get_session_factory,
    transaction_scope,

    # Database initialization
    initialize_database,
    verify_database_connection,
    create_all_tables,

    # Exceptions
    DatabasePersistenceError,
    DatabaseConnectionError,
    DatabaseInitializationError,
)


__version__ = "1.0.0"


__all__ = [
    "Base",
    "DEFAULT_DATABASE_URL",
    "get_database_url",
    "create_database_engine",
    "enable_sqlite_savepoints",
    "configure_engine",
    "get_engine",
    "get_session",
    "get_session_factory",
    "transaction_scope",
    "initialize_database",
    "verify_database_connection",
    "create_all_tables",
    "DatabasePersistenceError",
    "DatabaseConnectionError",
    "DatabaseInitializationError",
]
