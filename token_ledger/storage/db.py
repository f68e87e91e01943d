"""
Database connection management.

Provides SQLite connections for the ledger.
"""

import sqlite3
from pathlib import Path

DEFAULT_DB_PATH = "token_ledger.db"

# Seconds a writer waits on another writer's BEGIN IMMEDIATE lock
BUSY_TIMEOUT = 30.0


def get_connection(db_path: str = DEFAULT_DB_PATH) -> sqlite3.Connection:
    """Create and return a SQLite connection with foreign keys enabled.

    The connection runs in autocommit mode; callers open transactions
    explicitly with BEGIN IMMEDIATE so the write lock is taken up front.

    Args:
        db_path: Path to SQLite database file

    Returns:
        SQLite connection with foreign key constraints enabled
    """
    path = Path(db_path)
    conn = sqlite3.connect(str(path), timeout=BUSY_TIMEOUT, isolation_level=None)
    conn.execute("PRAGMA foreign_keys = ON")
    return conn
