"""
Admission control for generation runs.

ConcurrencyGate caps simultaneous bulk runs per user, ProgressTracker holds
the live progress record of a run, and RateTimer paces queued work against
a single global last-generation timestamp. All three keep their state in the
job store's key/value table so separate processes (cron ticks, CLI calls)
see the same runs.
"""

import json
import logging
import uuid
from datetime import datetime, timedelta
from typing import Callable, List, Optional, Tuple

from .errors import RateLimitError

logger = logging.getLogger(__name__)

LAST_GENERATION_KEY = "last_generation_time"
ACTIVE_RUNS_KEY = "active_runs:{user_id}"
PROGRESS_KEY = "progress:{post_id}:{user_id}"


class ConcurrencyGate:
    """Per-user markers for active bulk runs.

    Every acquire adds its own marker, so two runs of the same page take two
    slots. A marker expires after `ttl_seconds` so a crashed run can never
    hold a slot forever.

    Args:
        store: Key/value state store (get_state, set_state, delete_state)
        max_active: Runs a user may hold at once
        ttl_seconds: Marker lifetime
        clock: Source of the current time
    """

    def __init__(
        self,
        store,
        max_active: int = 3,
        ttl_seconds: int = 600,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.store = store
        self.max_active = max_active
        self.ttl = timedelta(seconds=ttl_seconds)
        self.clock = clock

    def _markers(self, user_id: int) -> List[dict]:
        """Unexpired markers for a user."""
        raw = self.store.get_state(ACTIVE_RUNS_KEY.format(user_id=user_id))
        if not raw:
            return []
        now = self.clock()
        return [
            marker for marker in json.loads(raw)
            if now - datetime.fromisoformat(marker["started"]) < self.ttl
        ]

    def _save(self, user_id: int, markers: List[dict]) -> None:
        key = ACTIVE_RUNS_KEY.format(user_id=user_id)
        if markers:
            self.store.set_state(key, json.dumps(markers))
        else:
            self.store.delete_state(key)

    def active(self, user_id: int) -> int:
        return len(self._markers(user_id))

    def acquire(self, user_id: int, post_id: int) -> str:
        """Claim a slot for one run.

        Returns:
            Run token to pass to release

        Raises:
            RateLimitError: If the user already has max_active unexpired runs
        """
        markers = self._markers(user_id)
        if len(markers) >= self.max_active:
            logger.warning(
                "event=gate.rejected | user_id=%s | post_id=%s | active=%d",
                user_id, post_id, len(markers),
            )
            raise RateLimitError(
                f"Too many concurrent generations ({len(markers)} of {self.max_active}). "
                "Wait for a running generation to finish.",
                retry_after_seconds=int(self.ttl.total_seconds()),
            )
        token = uuid.uuid4().hex
        markers.append({"run": token, "post_id": post_id, "started": self.clock().isoformat()})
        self._save(user_id, markers)
        return token

    def release(self, user_id: int, token: str) -> None:
        """Free the slot held by one run. Unknown tokens are ignored."""
        markers = [m for m in self._markers(user_id) if m["run"] != token]
        self._save(user_id, markers)


class ProgressTracker:
    """Short-lived progress records keyed by (post, user)."""

    def __init__(self, store, ttl_seconds: int = 600, clock: Callable[[], datetime] = datetime.now):
        self.store = store
        self.ttl = timedelta(seconds=ttl_seconds)
        self.clock = clock

    def update(self, post_id: int, user_id: int, progress: dict) -> None:
        record = {"written_at": self.clock().isoformat(), "progress": progress}
        self.store.set_state(PROGRESS_KEY.format(post_id=post_id, user_id=user_id), json.dumps(record))

    def get(self, post_id: int, user_id: int) -> Optional[dict]:
        key = PROGRESS_KEY.format(post_id=post_id, user_id=user_id)
        raw = self.store.get_state(key)
        if not raw:
            return None
        record = json.loads(raw)
        if self.clock() - datetime.fromisoformat(record["written_at"]) >= self.ttl:
            self.store.delete_state(key)
            return None
        return record["progress"]

    def clear(self, post_id: int, user_id: int) -> None:
        self.store.delete_state(PROGRESS_KEY.format(post_id=post_id, user_id=user_id))


class RateTimer:
    """Global pacing between queued generations, persisted in the job store."""

    def __init__(self, store):
        self.store = store

    def last(self) -> Optional[datetime]:
        value = self.store.get_state(LAST_GENERATION_KEY)
        return datetime.fromisoformat(value) if value else None

    def ready(self, now: datetime, interval_seconds: int) -> Tuple[bool, int]:
        """Whether `interval_seconds` have passed since the last generation.

        Returns:
            (ready, seconds still to wait)
        """
        last = self.last()
        if last is None:
            return True, 0
        elapsed = (now - last).total_seconds()
        if elapsed >= interval_seconds:
            return True, 0
        return False, int(interval_seconds - elapsed)

    def mark(self, now: datetime) -> None:
        self.store.set_state(LAST_GENERATION_KEY, now.isoformat())
