"""
Repository pattern for the generation log.

Handles database operations for the append-only spend ledger.
"""

from datetime import datetime
from typing import Dict, List

from .db import DEFAULT_DB_PATH, get_connection
from .models import GenerationLogRow, LogStatus

_COLUMNS = (
    "id, post_id, block_type, prompt_tokens, completion_tokens, total_tokens, "
    "cost, model, status, error_message, user_id, created_at"
)


def _row_to_log(row) -> GenerationLogRow:
    return GenerationLogRow(
        id=row[0],
        post_id=row[1],
        block_type=row[2],
        prompt_tokens=row[3],
        completion_tokens=row[4],
        total_tokens=row[5],
        cost=row[6],
        model=row[7],
        status=LogStatus(row[8]),
        error_message=row[9],
        user_id=row[10],
        created_at=datetime.fromisoformat(row[11]),
    )


class GenerationLogRepository:
    """Repository for reading and appending generation log rows.

    Rows are never updated. The only removal path is `delete`, used by
    retention cleanup.
    """

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        """Initialize the repository with a database path.

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = db_path

    def insert(self, row: GenerationLogRow) -> int:
        """Append one row to the ledger.

        Returns:
            The id of the new row
        """
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute(
                """
                INSERT INTO generation_log
                (post_id, block_type, prompt_tokens, completion_tokens,
                 total_tokens, cost, model, status, error_message, user_id,
                 created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    row.post_id,
                    row.block_type,
                    row.prompt_tokens,
                    row.completion_tokens,
                    row.total_tokens,
                    row.cost,
                    row.model,
                    row.status.value,
                    row.error_message,
                    row.user_id,
                    row.created_at.isoformat(),
                ),
            )
            conn.commit()
            return int(cursor.lastrowid)
        finally:
            conn.close()

    def by_post(self, post_id: int) -> List[GenerationLogRow]:
        """Rows for one page, newest first."""
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute(
                f"SELECT {_COLUMNS} FROM generation_log WHERE post_id = ? "
                "ORDER BY created_at DESC, id DESC",
                (post_id,),
            )
            return [_row_to_log(row) for row in cursor.fetchall()]
        finally:
            conn.close()

    def recent(self, limit: int = 100) -> List[GenerationLogRow]:
        """Most recent rows across all pages, newest first."""
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute(
                f"SELECT {_COLUMNS} FROM generation_log "
                "ORDER BY created_at DESC, id DESC LIMIT ?",
                (limit,),
            )
            return [_row_to_log(row) for row in cursor.fetchall()]
        finally:
            conn.close()

    def success_cost_since(self, since: datetime) -> float:
        """Sum of cost over successful rows created at or after `since`."""
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute(
                "SELECT SUM(cost) FROM generation_log "
                "WHERE created_at >= ? AND status = ?",
                (since.isoformat(), LogStatus.SUCCESS.value),
            )
            total = cursor.fetchone()[0]
            return float(total or 0.0)
        finally:
            conn.close()

    def ids_older_than(self, cutoff: datetime) -> List[int]:
        """Ids of rows created strictly before `cutoff`."""
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute(
                "SELECT id FROM generation_log WHERE created_at < ?",
                (cutoff.isoformat(),),
            )
            return [row[0] for row in cursor.fetchall()]
        finally:
            conn.close()

    def delete(self, ids: List[int]) -> int:
        """Delete rows by id in one transaction.

        Returns:
            Number of rows deleted
        """
        if not ids:
            return 0

        conn = get_connection(self.db_path)
        try:
            placeholders = ",".join("?" for _ in ids)
            cursor = conn.execute(
                f"DELETE FROM generation_log WHERE id IN ({placeholders})",
                list(ids),
            )
            conn.commit()
            return cursor.rowcount
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def post_statistics(self, post_id: int) -> Dict[str, float]:
        """Aggregate successful usage for one page."""
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute(
                """
                SELECT
                    COUNT(*) as total_generations,
                    SUM(total_tokens) as total_tokens,
                    SUM(cost) as total_cost,
                    AVG(cost) as avg_cost
                FROM generation_log
                WHERE post_id = ? AND status = ?
                """,
                (post_id, LogStatus.SUCCESS.value),
            )
            row = cursor.fetchone()
            return {
                "total_generations": row[0] or 0,
                "total_tokens": row[1] or 0,
                "total_cost": float(row[2] or 0),
                "avg_cost": float(row[3] or 0),
            }
        finally:
            conn.close()

    def status_counts(self, limit: int = 100) -> Dict[str, int]:
        """Success/total counts over the latest `limit` rows."""
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute(
                """
                SELECT
                    COUNT(*),
                    SUM(CASE WHEN status = ? THEN 1 ELSE 0 END)
                FROM (
                    SELECT status FROM generation_log
                    ORDER BY created_at DESC, id DESC LIMIT ?
                )
                """,
                (LogStatus.SUCCESS.value, limit),
            )
            row = cursor.fetchone()
            return {"total": row[0] or 0, "successful": row[1] or 0}
        finally:
            conn.close()
