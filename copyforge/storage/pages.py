"""
Page and media stores.

SQLite-backed implementations of the page store (block field values and
generation metadata) and the read side of the media library.
"""

import json
from datetime import datetime
from typing import Dict, Iterable, List, Optional

from .db import DEFAULT_DB_PATH, get_connection
from .models import ImageRecord, Page

_PAGE_COLUMNS = (
    "id, title, focus_keyword, topic, status, fields, block_order, "
    "block_timestamps, auto_generated, generation_date, blocks_generated, "
    "blocks_failed"
)


def _row_to_page(row) -> Page:
    return Page(
        id=row[0],
        title=row[1],
        focus_keyword=row[2],
        topic=row[3],
        status=row[4],
        fields=json.loads(row[5] or "{}"),
        block_order=json.loads(row[6]) if row[6] else None,
        block_timestamps=json.loads(row[7] or "{}"),
        auto_generated=bool(row[8]),
        generation_date=datetime.fromisoformat(row[9]) if row[9] else None,
        blocks_generated=row[10],
        blocks_failed=row[11],
    )


class SqlitePageStore:
    """Page store backed by the `page` table.

    Field values are stored as a JSON object keyed by canonical field name;
    writing a block overwrites only that block's fields.
    """

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        self.db_path = db_path

    def create(self, page: Page) -> Page:
        conn = get_connection(self.db_path)
        try:
            conn.execute(
                f"INSERT INTO page ({_PAGE_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    page.id,
                    page.title,
                    page.focus_keyword,
                    page.topic,
                    page.status,
                    json.dumps(page.fields),
                    json.dumps(page.block_order) if page.block_order is not None else None,
                    json.dumps(page.block_timestamps),
                    int(page.auto_generated),
                    page.generation_date.isoformat() if page.generation_date else None,
                    page.blocks_generated,
                    page.blocks_failed,
                ),
            )
            conn.commit()
            return page
        finally:
            conn.close()

    def get(self, post_id: int) -> Optional[Page]:
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute(
                f"SELECT {_PAGE_COLUMNS} FROM page WHERE id = ?", (post_id,)
            )
            row = cursor.fetchone()
            return _row_to_page(row) if row else None
        finally:
            conn.close()

    def save_block_fields(
        self,
        post_id: int,
        block_type: str,
        fields: Dict[str, object],
        generated_at: datetime,
    ) -> None:
        """Merge one block's fields into the page and stamp the block."""
        conn = get_connection(self.db_path)
        try:
            row = conn.execute(
                "SELECT fields, block_timestamps FROM page WHERE id = ?", (post_id,)
            ).fetchone()
            if row is None:
                raise KeyError(f"Page {post_id} not found")
            current = json.loads(row[0] or "{}")
            current.update(fields)
            stamps = json.loads(row[1] or "{}")
            stamps[block_type] = generated_at.isoformat()
            conn.execute(
                "UPDATE page SET fields = ?, block_timestamps = ? WHERE id = ?",
                (json.dumps(current), json.dumps(stamps), post_id),
            )
            conn.commit()
        finally:
            conn.close()

    def mark_generated(
        self,
        post_id: int,
        generated_at: datetime,
        blocks_generated: int,
        blocks_failed: int,
        status: str = "pending",
    ) -> None:
        """Flip the page out of draft and stamp generation metadata."""
        conn = get_connection(self.db_path)
        try:
            conn.execute(
                """
                UPDATE page SET status = ?, auto_generated = 1,
                    generation_date = ?, blocks_generated = ?, blocks_failed = ?
                WHERE id = ?
                """,
                (status, generated_at.isoformat(), blocks_generated, blocks_failed, post_id),
            )
            conn.commit()
        finally:
            conn.close()


class SqliteMediaStore:
    """Read side of the tagged media library."""

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        self.db_path = db_path

    def add_image(
        self,
        image_id: int,
        tags: Iterable[str],
        title: str = "",
        is_library: bool = True,
        is_default: bool = False,
    ) -> ImageRecord:
        """Register an image. Used by seeding and tests; the pipeline never writes."""
        tag_set = frozenset(tags)
        conn = get_connection(self.db_path)
        try:
            if is_default:
                conn.execute("UPDATE image SET is_default = 0")
            conn.execute(
                "INSERT INTO image (id, title, is_library, is_default) VALUES (?, ?, ?, ?)",
                (image_id, title, int(is_library), int(is_default)),
            )
            conn.executemany(
                "INSERT INTO image_tag (image_id, tag) VALUES (?, ?)",
                [(image_id, tag) for tag in sorted(tag_set)],
            )
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()
        return ImageRecord(
            id=image_id,
            tags=tag_set,
            title=title,
            is_library=is_library,
            is_default=is_default,
        )

    def _load(self, where: str = "", params: tuple = ()) -> List[ImageRecord]:
        conn = get_connection(self.db_path)
        try:
            rows = conn.execute(
                f"SELECT id, title, is_library, is_default FROM image {where} ORDER BY id",
                params,
            ).fetchall()
            tags: Dict[int, set] = {}
            for image_id, tag in conn.execute("SELECT image_id, tag FROM image_tag"):
                tags.setdefault(image_id, set()).add(tag)
            return [
                ImageRecord(
                    id=row[0],
                    title=row[1],
                    is_library=bool(row[2]),
                    is_default=bool(row[3]),
                    tags=frozenset(tags.get(row[0], ())),
                )
                for row in rows
            ]
        finally:
            conn.close()

    def library_images(self) -> List[ImageRecord]:
        return self._load("WHERE is_library = 1")

    def get(self, image_id: int) -> Optional[ImageRecord]:
        found = self._load("WHERE id = ?", (image_id,))
        return found[0] if found else None

    def default_image(self) -> Optional[ImageRecord]:
        found = self._load("WHERE is_default = 1")
        return found[0] if found else None
