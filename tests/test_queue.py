"""
Unit tests for the generation queue.

Tests pacing, duplicate rejection, retries, pausing and cleanup.
"""

import os
import shutil
import tempfile
from datetime import datetime, timedelta

import pytest

from copyforge.core.queue import GenerationQueue, pace_schedule
from copyforge.storage.db import initialize_schema
from copyforge.storage.models import QueueStatus
from copyforge.storage.queue_store import SqliteJobStore

NOW = datetime(2024, 3, 15, 12, 0, 0)


class FakeClock:
    def __init__(self, now):
        self.now = now

    def __call__(self):
        return self.now


class TestPaceSchedule:
    """Test the pure pacing function."""

    def test_index_times_interval(self):
        """The n-th page runs n intervals from now."""
        assert pace_schedule(0) == timedelta(0)
        assert pace_schedule(1) == timedelta(seconds=180)
        assert pace_schedule(4, interval=60) == timedelta(seconds=240)

    def test_negative_index_rejected(self):
        """Negative positions are invalid."""
        with pytest.raises(ValueError):
            pace_schedule(-1)


class TestGenerationQueue:
    """Test queue operations against the SQLite job store."""

    def setup_method(self):
        """Set up a fresh queue."""
        self.temp_dir = tempfile.mkdtemp()
        self.db_path = os.path.join(self.temp_dir, "test.db")
        initialize_schema(self.db_path)
        self.clock = FakeClock(NOW)
        self.queue = GenerationQueue(SqliteJobStore(self.db_path), clock=self.clock)

    def teardown_method(self):
        """Clean up test environment."""
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def test_enqueue_paced_batch(self):
        """Jointly queued pages are 180 seconds apart."""
        for index, post_id in enumerate([10, 11, 12]):
            assert self.queue.enqueue(post_id, index)
        times = [entry.scheduled_time for entry in self.queue.status()]
        assert times == [NOW, NOW + timedelta(seconds=180), NOW + timedelta(seconds=360)]

    def test_duplicate_enqueue_rejected(self):
        """A pending page is not queued twice and the queue is unchanged."""
        assert self.queue.enqueue(10, 0)
        before = self.queue.entry(10)
        assert self.queue.enqueue(10, 5) is False
        assert self.queue.entry(10) == before
        assert self.queue.stats()["total"] == 1

    def test_processing_page_not_requeued(self):
        """A page being processed is not queued again."""
        self.queue.enqueue(10)
        self.queue.set_status(10, QueueStatus.PROCESSING)
        assert self.queue.enqueue(10) is False

    def test_finished_page_can_be_requeued(self):
        """A completed job is replaced by a fresh pending one."""
        self.queue.enqueue(10)
        self.queue.set_status(10, QueueStatus.COMPLETED)
        assert self.queue.enqueue(10, 0, blocks=["hero"])
        entry = self.queue.entry(10)
        assert entry.status is QueueStatus.PENDING
        assert entry.blocks == ["hero"]
        assert self.queue.stats()["total"] == 1

    def test_enqueue_many_paces_accepted_only(self):
        """Skipped duplicates don't leave gaps in the schedule."""
        self.queue.enqueue(11)
        assert self.queue.enqueue_many([10, 11, 12]) == 2
        assert self.queue.entry(12).scheduled_time == NOW + timedelta(seconds=180)

    def test_set_status_records_error(self):
        """Status changes stamp updated_at and keep error text."""
        self.queue.enqueue(10)
        assert self.queue.set_status(10, QueueStatus.FAILED, "boom")
        entry = self.queue.entry(10)
        assert entry.status is QueueStatus.FAILED
        assert entry.error == "boom"
        assert entry.updated_at == NOW

    def test_error_cleared_after_recovery(self):
        """A job that failed, was retried and then completed carries no error."""
        self.queue.enqueue(10)
        self.queue.set_status(10, QueueStatus.FAILED, "boom")
        self.queue.retry_failed(10, "boom")
        self.queue.set_status(10, QueueStatus.PROCESSING)
        self.queue.set_status(10, QueueStatus.COMPLETED)
        entry = self.queue.entry(10)
        assert entry.status is QueueStatus.COMPLETED
        assert entry.error is None
        assert entry.last_error == "boom"

    def test_failed_without_text_keeps_error(self):
        """Failing again without new text keeps the previous error."""
        self.queue.enqueue(10)
        self.queue.set_status(10, QueueStatus.FAILED, "boom")
        self.queue.set_status(10, QueueStatus.FAILED)
        assert self.queue.entry(10).error == "boom"

    def test_set_status_unknown(self):
        """Unknown ids report False."""
        assert self.queue.set_status(99, QueueStatus.FAILED) is False

    def test_remove_is_idempotent(self):
        """Removing twice reports False the second time."""
        self.queue.enqueue(10)
        assert self.queue.remove(10) is True
        assert self.queue.remove(10) is False

    def test_clear(self):
        """Clearing removes every job."""
        self.queue.enqueue_many([1, 2, 3])
        self.queue.clear()
        assert self.queue.status() == []

    def test_pause_resume(self):
        """The paused flag persists across queue instances."""
        self.queue.pause()
        assert GenerationQueue(SqliteJobStore(self.db_path)).is_paused()
        self.queue.resume()
        assert not self.queue.is_paused()

    def test_stats(self):
        """Counts per status plus total."""
        self.queue.enqueue_many([1, 2, 3])
        self.queue.set_status(2, QueueStatus.COMPLETED)
        self.queue.set_status(3, QueueStatus.FAILED)
        assert self.queue.stats() == {
            "pending": 1, "processing": 0, "completed": 1, "failed": 1, "total": 3,
        }

    def test_estimated_completion(self):
        """The last pending scheduled time, or None."""
        assert self.queue.estimated_completion() is None
        self.queue.enqueue_many([1, 2, 3])
        assert self.queue.estimated_completion() == NOW + timedelta(seconds=360)

    def test_due(self):
        """Only pending jobs whose time has come are due."""
        self.queue.enqueue_many([1, 2])
        assert [e.post_id for e in self.queue.due(NOW)] == [1]
        assert [e.post_id for e in self.queue.due(NOW + timedelta(seconds=180))] == [1, 2]

    def test_stale_processing_job_recovered(self):
        """A job left processing by a dead worker comes back on a later tick."""
        self.queue.enqueue(7)
        self.queue.set_status(7, QueueStatus.PROCESSING)

        restarted = GenerationQueue(SqliteJobStore(self.db_path), clock=self.clock)
        assert [e.post_id for e in restarted.due(NOW + timedelta(days=2))] == [7]
        assert restarted.entry(7).status is QueueStatus.PENDING

    def test_recent_processing_job_left_alone(self):
        """A job still inside the stale window is not handed out twice."""
        self.queue.enqueue(7)
        self.queue.set_status(7, QueueStatus.PROCESSING)
        assert self.queue.due(NOW + timedelta(minutes=5)) == []
        assert self.queue.entry(7).status is QueueStatus.PROCESSING

    def test_reschedule(self):
        """Rescheduling moves the job and keeps it pending."""
        self.queue.enqueue(1)
        later = NOW + timedelta(minutes=10)
        assert self.queue.reschedule(1, later)
        entry = self.queue.entry(1)
        assert entry.scheduled_time == later
        assert entry.status is QueueStatus.PENDING

    def test_retry_backoff(self):
        """Retries wait pacing * 2^(n-1)."""
        self.queue.enqueue(1)
        self.queue.set_status(1, QueueStatus.FAILED, "first")
        delays = []
        for _ in range(3):
            assert self.queue.retry_failed(1, "again")
            delays.append(self.queue.entry(1).scheduled_time - NOW)
        assert delays == [timedelta(seconds=180), timedelta(seconds=360), timedelta(seconds=720)]
        assert self.queue.entry(1).last_error == "again"

    def test_retry_exhausted(self):
        """After max retries the job is failed for good."""
        self.queue.enqueue(1)
        for _ in range(3):
            self.queue.retry_failed(1)
        assert self.queue.retry_failed(1, "timeout") is False
        entry = self.queue.entry(1)
        assert entry.status is QueueStatus.FAILED
        assert entry.error == "Max retries (3) exceeded. Last error: timeout"

    def test_cleanup_removes_old_finished_jobs(self):
        """Finished jobs older than the window are removed; pending ones stay."""
        self.queue.enqueue_many([1, 2, 3])
        self.queue.set_status(1, QueueStatus.COMPLETED)
        self.queue.set_status(2, QueueStatus.FAILED)
        self.clock.now = NOW + timedelta(days=8)
        assert self.queue.cleanup(7) == 2
        assert [e.post_id for e in self.queue.status()] == [3]
