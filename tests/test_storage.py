"""
Unit tests for storage layer.

Tests schema creation, ledger rows, queue persistence, pages and media.
"""

import os
import shutil
import tempfile
from datetime import datetime

import pytest

from copyforge.storage.db import get_connection, initialize_schema
from copyforge.storage.models import GenerationLogRow, LogStatus, Page, QueueEntry, QueueStatus
from copyforge.storage.pages import SqliteMediaStore, SqlitePageStore
from copyforge.storage.queue_store import SqliteJobStore
from copyforge.storage.repository import GenerationLogRepository


class _TempDb:
    def setup_method(self):
        """Set up a fresh database."""
        self.temp_dir = tempfile.mkdtemp()
        self.db_path = os.path.join(self.temp_dir, "test.db")
        initialize_schema(self.db_path)

    def teardown_method(self):
        """Clean up test environment."""
        shutil.rmtree(self.temp_dir, ignore_errors=True)


class TestStorageSchema(_TempDb):
    """Test database schema creation and structure."""

    def test_schema_creation(self):
        """Every table is created."""
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute("SELECT name FROM sqlite_master WHERE type='table'")
            tables = {row[0] for row in cursor.fetchall()}
        finally:
            conn.close()
        assert {"generation_log", "queue_entry", "queue_state", "page", "image", "image_tag"} <= tables

    def test_schema_is_idempotent(self):
        """Initializing twice keeps existing data."""
        repo = GenerationLogRepository(self.db_path)
        repo.insert(GenerationLogRow(1, "hero", LogStatus.SUCCESS, datetime(2024, 1, 5), cost=0.1))
        initialize_schema(self.db_path)
        assert len(repo.by_post(1)) == 1


class TestGenerationLogRepository(_TempDb):
    """Test ledger row persistence and aggregates."""

    def _row(self, post_id=1, status=LogStatus.SUCCESS, cost=0.01, created_at=None, block="hero"):
        return GenerationLogRow(
            post_id=post_id,
            block_type=block,
            status=status,
            created_at=created_at or datetime(2024, 3, 10, 12, 0, 0),
            prompt_tokens=100,
            completion_tokens=50,
            total_tokens=150,
            cost=cost,
            model="gpt-4",
        )

    def test_insert_and_read_back(self):
        """Inserted rows round-trip with their id."""
        repo = GenerationLogRepository(self.db_path)
        row_id = repo.insert(self._row())
        rows = repo.by_post(1)
        assert len(rows) == 1
        assert rows[0].id == row_id
        assert rows[0].status is LogStatus.SUCCESS
        assert rows[0].total_tokens == 150

    def test_success_cost_since_ignores_failures_and_old_rows(self):
        """Only successful rows at or after the cutoff are summed."""
        repo = GenerationLogRepository(self.db_path)
        repo.insert(self._row(cost=0.5, created_at=datetime(2024, 3, 1)))
        repo.insert(self._row(cost=0.25, created_at=datetime(2024, 3, 15)))
        repo.insert(self._row(cost=0.0, status=LogStatus.FAILED, created_at=datetime(2024, 3, 16)))
        repo.insert(self._row(cost=9.0, created_at=datetime(2024, 2, 28, 23, 59)))
        assert repo.success_cost_since(datetime(2024, 3, 1)) == pytest.approx(0.75)

    def test_delete_old_rows(self):
        """Rows before a cutoff can be listed and deleted."""
        repo = GenerationLogRepository(self.db_path)
        repo.insert(self._row(created_at=datetime(2024, 1, 1)))
        repo.insert(self._row(created_at=datetime(2024, 3, 1)))
        ids = repo.ids_older_than(datetime(2024, 2, 1))
        assert len(ids) == 1
        assert repo.delete(ids) == 1
        assert len(repo.recent()) == 1

    def test_post_statistics(self):
        """Per-page aggregates count successful rows only."""
        repo = GenerationLogRepository(self.db_path)
        repo.insert(self._row(cost=0.02))
        repo.insert(self._row(cost=0.04, block="faqs"))
        repo.insert(self._row(cost=0.0, status=LogStatus.FAILED))
        repo.insert(self._row(post_id=2, cost=1.0))
        stats = repo.post_statistics(1)
        assert stats["total_generations"] == 2
        assert stats["total_tokens"] == 300
        assert stats["total_cost"] == pytest.approx(0.06)
        assert stats["avg_cost"] == pytest.approx(0.03)

    def test_status_counts(self):
        """Success and total counts over the latest rows."""
        repo = GenerationLogRepository(self.db_path)
        repo.insert(self._row())
        repo.insert(self._row(status=LogStatus.FAILED, cost=0.0))
        assert repo.status_counts() == {"total": 2, "successful": 1}


class TestSqliteJobStore(_TempDb):
    """Test queue persistence."""

    def _entry(self, post_id, status=QueueStatus.PENDING, minute=0):
        return QueueEntry(
            post_id=post_id,
            status=status,
            scheduled_time=datetime(2024, 3, 10, 12, minute),
            queued_at=datetime(2024, 3, 10, 12, 0),
            blocks=["hero", "faqs"] if post_id == 1 else None,
        )

    def test_save_and_get(self):
        """Entries round-trip including their block list."""
        store = SqliteJobStore(self.db_path)
        store.save(self._entry(1))
        entry = store.get(1)
        assert entry.status is QueueStatus.PENDING
        assert entry.blocks == ["hero", "faqs"]

    def test_one_entry_per_post(self):
        """Saving the same post again replaces the entry."""
        store = SqliteJobStore(self.db_path)
        store.save(self._entry(2))
        store.save(self._entry(2, status=QueueStatus.COMPLETED))
        assert len(store.all()) == 1
        assert store.get(2).status is QueueStatus.COMPLETED

    def test_all_sorted_and_filtered(self):
        """Entries come back by scheduled time and can be filtered."""
        store = SqliteJobStore(self.db_path)
        store.save(self._entry(3, minute=9))
        store.save(self._entry(2, minute=3))
        store.save(self._entry(4, status=QueueStatus.FAILED, minute=1))
        assert [e.post_id for e in store.all()] == [4, 2, 3]
        assert [e.post_id for e in store.all(QueueStatus.PENDING)] == [2, 3]

    def test_delete(self):
        """Delete reports whether anything was removed."""
        store = SqliteJobStore(self.db_path)
        store.save(self._entry(2))
        assert store.delete(2) is True
        assert store.delete(2) is False

    def test_state_flags(self):
        """Queue-wide state values persist until deleted."""
        store = SqliteJobStore(self.db_path)
        assert store.get_state("paused") is None
        store.set_state("paused", "1")
        assert SqliteJobStore(self.db_path).get_state("paused") == "1"
        store.delete_state("paused")
        assert store.get_state("paused") is None


class TestSqlitePageStore(_TempDb):
    """Test page field persistence."""

    def test_save_block_fields_merges(self):
        """Writing a block keeps other blocks' fields."""
        store = SqlitePageStore(self.db_path)
        store.create(Page(id=7, title="Gold Rings", fields={"hero_image": 12}))
        store.save_block_fields(7, "hero", {"hero_title": "Gold"}, datetime(2024, 3, 10))
        page = store.get(7)
        assert page.fields == {"hero_image": 12, "hero_title": "Gold"}
        assert page.block_timestamps["hero"] == "2024-03-10T00:00:00"

    def test_save_block_fields_unknown_page(self):
        """Writing to a missing page raises KeyError."""
        store = SqlitePageStore(self.db_path)
        with pytest.raises(KeyError):
            store.save_block_fields(99, "hero", {}, datetime(2024, 3, 10))

    def test_mark_generated(self):
        """Generation metadata is stamped and status flips out of draft."""
        store = SqlitePageStore(self.db_path)
        store.create(Page(id=7, title="Gold Rings", block_order=["hero"]))
        store.mark_generated(7, datetime(2024, 3, 10, 8), blocks_generated=13, blocks_failed=0)
        page = store.get(7)
        assert page.status == "pending"
        assert page.auto_generated is True
        assert page.blocks_generated == 13
        assert page.block_order == ["hero"]

    def test_missing_page(self):
        """Unknown ids return None."""
        assert SqlitePageStore(self.db_path).get(1) is None


class TestSqliteMediaStore(_TempDb):
    """Test tagged media records."""

    def test_add_and_list_library_images(self):
        """Only library images are listed, with their tags."""
        store = SqliteMediaStore(self.db_path)
        store.add_image(1, ["gold", "ring"])
        store.add_image(2, ["silver"], is_library=False)
        images = store.library_images()
        assert [image.id for image in images] == [1]
        assert images[0].tags == frozenset({"gold", "ring"})

    def test_single_default(self):
        """Marking a new default clears the previous one."""
        store = SqliteMediaStore(self.db_path)
        store.add_image(1, ["gold"], is_default=True)
        store.add_image(2, ["silver"], is_default=True)
        assert store.default_image().id == 2
        assert store.get(1).is_default is False
