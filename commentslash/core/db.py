"""SQLite store for the daily ledger record."""

import sqlite3
from datetime import datetime
from pathlib import Path

from commentslash.core.schemas import LedgerRecord

_LEDGER_TABLE = """
CREATE TABLE IF NOT EXISTS ledger (
    date        TEXT    PRIMARY KEY,
    total_used  INTEGER NOT NULL DEFAULT 0,
    last_reset  TEXT    NOT NULL
);
"""


def init_db(path: str | Path) -> sqlite3.Connection:
    """Create the database and table, returning a connection.

    The connection is shared by the request threads and the sweeper thread;
    callers serialise access with their own lock.
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(str(path), check_same_thread=False)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute(_LEDGER_TABLE)
    conn.commit()
    return conn


def get_latest_record(conn: sqlite3.Connection) -> LedgerRecord | None:
    """Return the most recent day's record, or None if the table is empty."""
    row = conn.execute(
        "SELECT date, total_used, last_reset FROM ledger ORDER BY date DESC LIMIT 1"
    ).fetchone()
    if row is None:
        return None
    return LedgerRecord(
        date=row["date"],
        total_used=row["total_used"],
        last_reset=datetime.fromisoformat(row["last_reset"]),
    )


def save_record(conn: sqlite3.Connection, record: LedgerRecord) -> None:
    """Insert or overwrite the record for its day."""
    conn.execute(
        """
        INSERT INTO ledger (date, total_used, last_reset)
        VALUES (?, ?, ?)
        ON CONFLICT(date)
        DO UPDATE SET
            total_used = excluded.total_used,
            last_reset = excluded.last_reset
        """,
        (record.date, record.total_used, record.last_reset.isoformat()),
    )
    conn.commit()
