"""
Database connection management.

Provides the SQLite connection and schema used by every durable store.
"""

import sqlite3
from pathlib import Path

DEFAULT_DB_PATH = "copyforge.db"

SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS generation_log (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        post_id INTEGER NOT NULL,
        block_type TEXT NOT NULL,
        prompt_tokens INTEGER NOT NULL DEFAULT 0,
        completion_tokens INTEGER NOT NULL DEFAULT 0,
        total_tokens INTEGER NOT NULL DEFAULT 0,
        cost REAL NOT NULL DEFAULT 0,
        model TEXT NOT NULL DEFAULT '',
        status TEXT NOT NULL,
        error_message TEXT,
        user_id INTEGER NOT NULL DEFAULT 0,
        created_at TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_generation_log_created ON generation_log (created_at, status)",
    """
    CREATE TABLE IF NOT EXISTS queue_entry (
        post_id INTEGER PRIMARY KEY,
        status TEXT NOT NULL,
        scheduled_time TEXT NOT NULL,
        queued_at TEXT NOT NULL,
        updated_at TEXT,
        error TEXT,
        last_error TEXT,
        retry_count INTEGER NOT NULL DEFAULT 0,
        blocks TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS queue_state (
        key TEXT PRIMARY KEY,
        value TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS page (
        id INTEGER PRIMARY KEY,
        title TEXT NOT NULL,
        focus_keyword TEXT NOT NULL DEFAULT '',
        topic TEXT NOT NULL DEFAULT '',
        status TEXT NOT NULL DEFAULT 'draft',
        fields TEXT NOT NULL DEFAULT '{}',
        block_order TEXT,
        block_timestamps TEXT NOT NULL DEFAULT '{}',
        auto_generated INTEGER NOT NULL DEFAULT 0,
        generation_date TEXT,
        blocks_generated INTEGER NOT NULL DEFAULT 0,
        blocks_failed INTEGER NOT NULL DEFAULT 0
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS image (
        id INTEGER PRIMARY KEY,
        title TEXT NOT NULL DEFAULT '',
        is_library INTEGER NOT NULL DEFAULT 1,
        is_default INTEGER NOT NULL DEFAULT 0
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS image_tag (
        image_id INTEGER NOT NULL REFERENCES image (id) ON DELETE CASCADE,
        tag TEXT NOT NULL,
        PRIMARY KEY (image_id, tag)
    )
    """,
)


def get_connection(db_path: str = DEFAULT_DB_PATH) -> sqlite3.Connection:
    """Create and return a SQLite database connection with foreign keys enabled.

    Args:
        db_path: Path to SQLite database file

    Returns:
        SQLite connection with foreign key constraints enabled
    """
    path = Path(db_path)
    conn = sqlite3.connect(str(path))
    conn.execute("PRAGMA foreign_keys = ON")
    return conn


def initialize_schema(db_path: str = DEFAULT_DB_PATH) -> None:
    """Create every table used by copyforge if it doesn't exist.

    Safe to call on every start; existing data is never touched.

    Args:
        db_path: Path to SQLite database file
    """
    conn = get_connection(db_path)
    try:
        for statement in SCHEMA:
            conn.execute(statement)
        conn.commit()
    finally:
        conn.close()
