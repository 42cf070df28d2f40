# concierge/memory/db.py

import sqlite3
from pathlib import Path


def get_connection(db_path: str) -> sqlite3.Connection:
    """
    Return a SQLite connection.
    Uses Row factory to allow dict-like access.
    Caller is responsible for closing.
    """
    conn = sqlite3.connect(db_path, timeout=30)
    conn.row_factory = sqlite3.Row
    return conn


def init_db(db_path: str) -> None:
    """
    Initialize the database schema if it does not exist.
    Safe to call multiple times.
    """
    Path(db_path).parent.mkdir(parents=True, exist_ok=True)
    conn = get_connection(db_path)
    cur = conn.cursor()

    # WAL keeps readers (API, context assembly) off the writer's back
    cur.execute("PRAGMA journal_mode=WAL")

    # live_messages: the verbatim window sent to the model, oldest first
    cur.execute(
        """
        CREATE TABLE IF NOT EXISTS live_messages (
            seq INTEGER PRIMARY KEY AUTOINCREMENT,
            id TEXT NOT NULL UNIQUE,
            role TEXT NOT NULL,            -- 'user', 'assistant' or 'tool'
            timestamp TEXT NOT NULL,
            payload TEXT NOT NULL          -- full Message as JSON
        )
        """
    )

    # chunks: committed archive index
    cur.execute(
        """
        CREATE TABLE IF NOT EXISTS chunks (
            id TEXT PRIMARY KEY,
            kind TEXT NOT NULL,            -- 'temporary' or 'consolidated'
            start_ts TEXT NOT NULL,
            end_ts TEXT NOT NULL,
            token_count INTEGER NOT NULL,
            message_count INTEGER NOT NULL,
            summary TEXT NOT NULL,
            raw_content_file TEXT NOT NULL,
            unavailable INTEGER NOT NULL DEFAULT 0  -- 1 once the raw file is missing or unreadable
        )
        """
    )

    # Databases created before the unavailable flag existed
    columns = {row["name"] for row in cur.execute("PRAGMA table_info(chunks)")}
    if "unavailable" not in columns:
        cur.execute("ALTER TABLE chunks ADD COLUMN unavailable INTEGER NOT NULL DEFAULT 0")

    # pending_chunks: raw content written, summary not yet committed
    cur.execute(
        """
        CREATE TABLE IF NOT EXISTS pending_chunks (
            id TEXT PRIMARY KEY,
            start_ts TEXT NOT NULL,
            end_ts TEXT NOT NULL,
            token_count INTEGER NOT NULL,
            message_count INTEGER NOT NULL,
            raw_content_file TEXT NOT NULL,
            created_at TEXT NOT NULL
        )
        """
    )

    # spend_ledger: USD per local calendar day ('YYYY-MM-DD')
    cur.execute(
        """
        CREATE TABLE IF NOT EXISTS spend_ledger (
            day TEXT PRIMARY KEY,
            amount_usd REAL NOT NULL
        )
        """
    )

    conn.commit()
    conn.close()
