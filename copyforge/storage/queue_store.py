"""
Durable job store for the generation queue.

Queue entries and queue-wide flags (paused, last generation time) live in
SQLite so a restart never loses scheduled work.
"""

import json
from datetime import datetime
from typing import List, Optional

from .db import DEFAULT_DB_PATH, get_connection
from .models import QueueEntry, QueueStatus

_COLUMNS = (
    "post_id, status, scheduled_time, queued_at, updated_at, error, "
    "last_error, retry_count, blocks"
)


def _parse_time(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def _row_to_entry(row) -> QueueEntry:
    return QueueEntry(
        post_id=row[0],
        status=QueueStatus(row[1]),
        scheduled_time=datetime.fromisoformat(row[2]),
        queued_at=datetime.fromisoformat(row[3]),
        updated_at=_parse_time(row[4]),
        error=row[5],
        last_error=row[6],
        retry_count=row[7],
        blocks=json.loads(row[8]) if row[8] else None,
    )


class SqliteJobStore:
    """SQLite implementation of the queue's storage interface.

    One row per post_id; the primary key enforces the uniqueness the queue
    relies on.
    """

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        self.db_path = db_path

    def get(self, post_id: int) -> Optional[QueueEntry]:
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute(
                f"SELECT {_COLUMNS} FROM queue_entry WHERE post_id = ?",
                (post_id,),
            )
            row = cursor.fetchone()
            return _row_to_entry(row) if row else None
        finally:
            conn.close()

    def all(self, status: Optional[QueueStatus] = None) -> List[QueueEntry]:
        """Entries ordered by scheduled time, optionally filtered by status."""
        conn = get_connection(self.db_path)
        try:
            query = f"SELECT {_COLUMNS} FROM queue_entry"
            params = []
            if status is not None:
                query += " WHERE status = ?"
                params.append(status.value)
            query += " ORDER BY scheduled_time ASC, post_id ASC"
            cursor = conn.execute(query, params)
            return [_row_to_entry(row) for row in cursor.fetchall()]
        finally:
            conn.close()

    def save(self, entry: QueueEntry) -> None:
        """Insert or replace the entry for `entry.post_id`."""
        conn = get_connection(self.db_path)
        try:
            conn.execute(
                f"""
                INSERT OR REPLACE INTO queue_entry ({_COLUMNS})
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    entry.post_id,
                    entry.status.value,
                    entry.scheduled_time.isoformat(),
                    entry.queued_at.isoformat(),
                    entry.updated_at.isoformat() if entry.updated_at else None,
                    entry.error,
                    entry.last_error,
                    entry.retry_count,
                    json.dumps(entry.blocks) if entry.blocks is not None else None,
                ),
            )
            conn.commit()
        finally:
            conn.close()

    def delete(self, post_id: int) -> bool:
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute(
                "DELETE FROM queue_entry WHERE post_id = ?", (post_id,)
            )
            conn.commit()
            return cursor.rowcount > 0
        finally:
            conn.close()

    def delete_many(self, post_ids: List[int]) -> int:
        if not post_ids:
            return 0

        conn = get_connection(self.db_path)
        try:
            placeholders = ",".join("?" for _ in post_ids)
            cursor = conn.execute(
                f"DELETE FROM queue_entry WHERE post_id IN ({placeholders})",
                list(post_ids),
            )
            conn.commit()
            return cursor.rowcount
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def delete_all(self) -> None:
        conn = get_connection(self.db_path)
        try:
            conn.execute("DELETE FROM queue_entry")
            conn.commit()
        finally:
            conn.close()

    def get_state(self, key: str) -> Optional[str]:
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute(
                "SELECT value FROM queue_state WHERE key = ?", (key,)
            )
            row = cursor.fetchone()
            return row[0] if row else None
        finally:
            conn.close()

    def set_state(self, key: str, value: str) -> None:
        conn = get_connection(self.db_path)
        try:
            conn.execute(
                "INSERT OR REPLACE INTO queue_state (key, value) VALUES (?, ?)",
                (key, value),
            )
            conn.commit()
        finally:
            conn.close()

    def delete_state(self, key: str) -> None:
        conn = get_connection(self.db_path)
        try:
            conn.execute("DELETE FROM queue_state WHERE key = ?", (key,))
            conn.commit()
        finally:
            conn.close()
