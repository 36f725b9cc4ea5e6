"""
Database connection management.

Provides SQLite connection for the call ledger.
"""

import sqlite3
from pathlib import Path

DEFAULT_DB_PATH = "rlm_lite.db"


def get_connection(db_path: str = DEFAULT_DB_PATH) -> sqlite3.Connection:
    """Create and return a SQLite connection for the call ledger.

    Concurrent writers from worker threads each open their own connection;
    the busy timeout lets them wait for the write lock instead of failing.

    Args:
        db_path: Path to SQLite database file

    Returns:
        SQLite connection
    """
    path = Path(db_path)
    conn = sqlite3.connect(str(path), timeout=10.0)
    conn.execute("PRAGMA foreign_keys = ON")
    return conn
