"""
Repository pattern for the call ledger.

Append-only persistence of model call records.
"""

from datetime import datetime
from typing import Dict, List, Optional

from .db import DEFAULT_DB_PATH, get_connection
from .models import ModelCallRecord

_COLUMNS = (
    "timestamp, requested_model, resolved_family, served_model, tier, "
    "input_tokens, output_tokens, cost_usd, latency_ms, attempts, "
    "unknown_rate, request_id"
)

_INSERT_SQL = f"""
    INSERT INTO model_call_record ({_COLUMNS})
    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
"""


def _to_row(record: ModelCallRecord) -> tuple:
    return (
        record.timestamp.isoformat(),
        record.requested_model,
        record.resolved_family,
        record.served_model,
        record.tier,
        record.input_tokens,
        record.output_tokens,
        record.cost_usd,
        record.latency_ms,
        record.attempts,
        int(record.unknown_rate),
        record.request_id,
    )


def _from_row(row: tuple) -> ModelCallRecord:
    return ModelCallRecord(
        timestamp=datetime.fromisoformat(row[0]),
        requested_model=row[1],
        resolved_family=row[2],
        served_model=row[3],
        tier=row[4],
        input_tokens=row[5],
        output_tokens=row[6],
        cost_usd=row[7],
        latency_ms=row[8],
        attempts=row[9],
        unknown_rate=bool(row[10]),
        request_id=row[11],
    )


class CallRepository:
    """Read access to the call ledger.

    Groups by resolved family, so dated variants are reported once.
    """

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        """Initialize the repository with a database path.

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = db_path

    def get_recent_records(
        self,
        family: Optional[str] = None,
        limit: int = 100
    ) -> List[ModelCallRecord]:
        """Get recent call records, newest first."""
        return fetch_recent_call_records(family=family, limit=limit, db_path=self.db_path)

    def get_family_totals(self) -> Dict[str, Dict[str, float]]:
        """Get token and cost totals per resolved family.

        Returns:
            Mapping of family to calls, input_tokens, output_tokens, cost_usd
        """
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute("""
                SELECT resolved_family,
                       COUNT(*),
                       SUM(input_tokens),
                       SUM(output_tokens),
                       SUM(cost_usd)
                FROM model_call_record
                GROUP BY resolved_family
                ORDER BY resolved_family
            """)
            return {
                row[0]: {
                    "calls": row[1],
                    "input_tokens": row[2] or 0,
                    "output_tokens": row[3] or 0,
                    "cost_usd": float(row[4] or 0),
                }
                for row in cursor.fetchall()
            }
        finally:
            conn.close()


def initialize_schema(db_path: str = DEFAULT_DB_PATH) -> None:
    """Create the model_call_record table if it doesn't exist.

    This creates an append-only ledger. No UPDATE or DELETE operations
    should ever be performed on this table.

    Args:
        db_path: Path to SQLite database file
    """
    conn = get_connection(db_path)
    try:
        conn.execute("""
            CREATE TABLE IF NOT EXISTS model_call_record (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                timestamp TEXT NOT NULL,
                requested_model TEXT NOT NULL,
                resolved_family TEXT NOT NULL,
                served_model TEXT NOT NULL,
                tier INTEGER NOT NULL,
                input_tokens INTEGER NOT NULL,
                output_tokens INTEGER NOT NULL,
                cost_usd REAL NOT NULL,
                latency_ms REAL NOT NULL,
                attempts INTEGER NOT NULL DEFAULT 1,
                unknown_rate INTEGER NOT NULL DEFAULT 0,
                request_id TEXT
            )
        """)
        conn.commit()
    finally:
        conn.close()


def insert_call_record(record: ModelCallRecord, db_path: str = DEFAULT_DB_PATH) -> None:
    """Append a single call record to the ledger.

    Args:
        record: The call record to persist
        db_path: Path to SQLite database file
    """
    conn = get_connection(db_path)
    try:
        conn.execute(_INSERT_SQL, _to_row(record))
        conn.commit()
    finally:
        conn.close()


def insert_call_records(records: List[ModelCallRecord], db_path: str = DEFAULT_DB_PATH) -> None:
    """Append multiple call records atomically.

    All records are inserted in a single transaction.

    Args:
        records: Call records to persist
        db_path: Path to SQLite database file
    """
    if not records:
        return

    conn = get_connection(db_path)
    try:
        conn.execute("BEGIN TRANSACTION")
        for record in records:
            conn.execute(_INSERT_SQL, _to_row(record))
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    finally:
        conn.close()


def fetch_recent_call_records(
    family: Optional[str] = None,
    limit: int = 100,
    db_path: str = DEFAULT_DB_PATH
) -> List[ModelCallRecord]:
    """Fetch recent call records, optionally filtered by resolved family.

    Args:
        family: Optional filter on resolved family
        limit: Maximum number of records to return
        db_path: Path to SQLite database file

    Returns:
        Call records ordered by timestamp (newest first)
    """
    conn = get_connection(db_path)
    try:
        query = f"SELECT {_COLUMNS} FROM model_call_record"
        params: list = []
        if family:
            query += " WHERE resolved_family = ?"
            params.append(family)
        query += " ORDER BY timestamp DESC, id DESC LIMIT ?"
        params.append(limit)

        cursor = conn.execute(query, params)
        return [_from_row(row) for row in cursor.fetchall()]
    finally:
        conn.close()
