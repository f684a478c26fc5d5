"""
Database module for the Claims Hub.

Exports database connection utilities.
"""

from claimhub.db.connection import (
    build_session_maker,
    check_db_connection,
    close_db_connection,
    create_tables,
    get_engine,
    get_session_maker,
)

__all__ = [
    "get_engine",
    "build_session_maker",
    "get_session_maker",
    "create_tables",
    "close_db_connection",
    "check_db_connection",
]
