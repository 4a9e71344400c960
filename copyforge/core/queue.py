"""
Durable generation queue.

Pages are queued as jobs, paced a fixed interval apart, and handed out by
an external scheduler tick. State lives in a job store so a restart never
loses scheduled work.
"""

import logging
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional

from ..storage.models import (
    ACTIVE_QUEUE_STATUSES,
    TERMINAL_QUEUE_STATUSES,
    QueueEntry,
    QueueStatus,
)

logger = logging.getLogger(__name__)

DEFAULT_PACING_SECONDS = 180
DEFAULT_STALE_SECONDS = 600
PAUSED_KEY = "paused"


def pace_schedule(index: int, interval: int = DEFAULT_PACING_SECONDS) -> timedelta:
    """Offset from now at which the index-th page of a batch should run."""
    if index < 0:
        raise ValueError("index must be >= 0")
    return timedelta(seconds=index * interval)


class GenerationQueue:
    """Queue of "generate this page" jobs, one per post_id.

    Args:
        store: Job store (get, all, save, delete, delete_many, delete_all,
            get_state, set_state, delete_state)
        pacing_seconds: Gap between consecutive jobs
        max_retries: Retries allowed by retry_failed before a job is failed
        stale_seconds: Age after which a processing job is presumed abandoned
        clock: Source of the current time
    """

    def __init__(
        self,
        store,
        pacing_seconds: int = DEFAULT_PACING_SECONDS,
        max_retries: int = 3,
        stale_seconds: int = DEFAULT_STALE_SECONDS,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.store = store
        self.pacing_seconds = pacing_seconds
        self.max_retries = max_retries
        self.stale_seconds = stale_seconds
        self.clock = clock

    def enqueue(self, post_id: int, order_index: int = 0, blocks: Optional[List[str]] = None) -> bool:
        """Schedule a page for generation.

        A page that is already pending or processing is not queued again.
        A finished (completed or failed) job for the same page is replaced.

        Returns:
            True if the job was queued, False if it was already active
        """
        existing = self.store.get(post_id)
        if existing is not None and existing.status in ACTIVE_QUEUE_STATUSES:
            logger.info(
                "event=queue.duplicate | post_id=%s | status=%s",
                post_id, existing.status.value,
            )
            return False

        now = self.clock()
        entry = QueueEntry(
            post_id=post_id,
            status=QueueStatus.PENDING,
            scheduled_time=now + pace_schedule(order_index, self.pacing_seconds),
            queued_at=now,
            blocks=list(blocks) if blocks is not None else None,
        )
        self.store.save(entry)
        logger.info(
            "event=queue.enqueued | post_id=%s | scheduled_time=%s",
            post_id, entry.scheduled_time.isoformat(),
        )
        return True

    def enqueue_many(self, post_ids: List[int], blocks: Optional[List[str]] = None) -> int:
        """Queue a batch, pacing each accepted page after the previous one.

        Returns:
            Number of pages queued
        """
        queued = 0
        for post_id in post_ids:
            if self.enqueue(post_id, queued, blocks):
                queued += 1
        return queued

    def entry(self, post_id: int) -> Optional[QueueEntry]:
        return self.store.get(post_id)

    def status(self, status_filter: Optional[QueueStatus] = None) -> List[QueueEntry]:
        return self.store.all(status_filter)

    def set_status(self, post_id: int, status: QueueStatus, error: Optional[str] = None) -> bool:
        """Move a job to a new status.

        A failed job keeps `error` (or its previous text); any other status
        clears it.
        """
        entry = self.store.get(post_id)
        if entry is None:
            return False
        entry.status = status
        entry.updated_at = self.clock()
        if status == QueueStatus.FAILED:
            entry.error = error or entry.error
        else:
            entry.error = None
        self.store.save(entry)
        logger.info("event=queue.status | post_id=%s | status=%s", post_id, status.value)
        return True

    def reschedule(self, post_id: int, when: datetime) -> bool:
        """Push a job to a later time, leaving it pending."""
        entry = self.store.get(post_id)
        if entry is None:
            return False
        entry.scheduled_time = when
        entry.status = QueueStatus.PENDING
        entry.updated_at = self.clock()
        self.store.save(entry)
        logger.info("event=queue.rescheduled | post_id=%s | when=%s", post_id, when.isoformat())
        return True

    def retry_failed(self, post_id: int, error: Optional[str] = None) -> bool:
        """Reschedule a failed job with exponential back-off.

        The n-th retry waits pacing * 2^(n-1). Once max_retries is reached
        the job is marked failed for good.

        Returns:
            True if the job was rescheduled
        """
        entry = self.store.get(post_id)
        if entry is None:
            return False

        now = self.clock()
        if entry.retry_count >= self.max_retries:
            entry.status = QueueStatus.FAILED
            entry.error = (
                f"Max retries ({self.max_retries}) exceeded. "
                f"Last error: {error or 'Unknown error'}"
            )
            entry.updated_at = now
            self.store.save(entry)
            logger.warning("event=queue.retries_exhausted | post_id=%s", post_id)
            return False

        entry.retry_count += 1
        delay = self.pacing_seconds * 2 ** (entry.retry_count - 1)
        entry.scheduled_time = now + timedelta(seconds=delay)
        entry.status = QueueStatus.PENDING
        entry.updated_at = now
        if error:
            entry.last_error = error
        self.store.save(entry)
        logger.info(
            "event=queue.retry | post_id=%s | retry_count=%d | delay_seconds=%d",
            post_id, entry.retry_count, delay,
        )
        return True

    def remove(self, post_id: int) -> bool:
        return self.store.delete(post_id)

    def clear(self) -> None:
        self.store.delete_all()
        logger.info("event=queue.cleared")

    def pause(self) -> None:
        self.store.set_state(PAUSED_KEY, "1")
        logger.info("event=queue.paused")

    def resume(self) -> None:
        self.store.delete_state(PAUSED_KEY)
        logger.info("event=queue.resumed")

    def is_paused(self) -> bool:
        return self.store.get_state(PAUSED_KEY) == "1"

    def stats(self) -> Dict[str, int]:
        entries = self.store.all()
        counts = {status.value: 0 for status in QueueStatus}
        for entry in entries:
            counts[entry.status.value] += 1
        counts["total"] = len(entries)
        return counts

    def estimated_completion(self) -> Optional[datetime]:
        """Scheduled time of the last pending job, or None if none are pending."""
        pending = self.store.all(QueueStatus.PENDING)
        if not pending:
            return None
        return max(entry.scheduled_time for entry in pending)

    def due(self, now: Optional[datetime] = None) -> List[QueueEntry]:
        """Pending jobs whose scheduled time has arrived, earliest first.

        A job left processing for longer than `stale_seconds` belonged to a
        worker that died mid-run; it is put back to pending and returned too.
        """
        now = now or self.clock()
        cutoff = now - timedelta(seconds=self.stale_seconds)
        for entry in self.store.all(QueueStatus.PROCESSING):
            if (entry.updated_at or entry.scheduled_time) <= cutoff:
                entry.status = QueueStatus.PENDING
                entry.updated_at = now
                self.store.save(entry)
                logger.warning("event=queue.stale_job_recovered | post_id=%s", entry.post_id)
        return [
            entry for entry in self.store.all(QueueStatus.PENDING)
            if entry.scheduled_time <= now
        ]

    def cleanup(self, days_old: int = 7) -> int:
        """Drop finished jobs scheduled more than `days_old` days ago.

        Returns:
            Number of jobs removed
        """
        cutoff = self.clock() - timedelta(days=days_old)
        stale = [
            entry.post_id for entry in self.store.all()
            if entry.status in TERMINAL_QUEUE_STATUSES and entry.scheduled_time < cutoff
        ]
        removed = self.store.delete_many(stale) if stale else 0
        logger.info("event=queue.cleanup | removed=%d", removed)
        return removed
