"""Database package for Convotag."""

from convotag.db.connection import (
    Database,
    check_connection,
    create_db_engine,
    db_session,
    get_database,
    init_db,
)

__all__ = [
    "Database",
    "check_connection",
    "create_db_engine",
    "db_session",
    "get_database",
    "init_db",
]
