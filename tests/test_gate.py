"""
Unit tests for admission control.
"""

from datetime import datetime, timedelta
from unittest.mock import Mock

import pytest

from copyforge.core.errors import RateLimitError
from copyforge.core.gate import ConcurrencyGate, ProgressTracker, RateTimer

NOW = datetime(2024, 3, 15, 12, 0, 0)


class FakeClock:
    def __init__(self, now):
        self.now = now

    def __call__(self):
        return self.now


def _store():
    """Key/value store backed by a plain dict."""
    state = {}
    store = Mock()
    store.get_state.side_effect = state.get
    store.set_state.side_effect = state.__setitem__
    store.delete_state.side_effect = lambda key: state.pop(key, None)
    return store


class TestConcurrencyGate:
    """Test per-user run markers."""

    def test_fourth_run_rejected(self):
        """A user may hold three runs; the fourth fails fast."""
        gate = ConcurrencyGate(_store(), clock=FakeClock(NOW))
        for post_id in (1, 2, 3):
            gate.acquire(5, post_id)
        with pytest.raises(RateLimitError) as excinfo:
            gate.acquire(5, 4)
        assert excinfo.value.retry_after_seconds == 600
        assert gate.active(5) == 3

    def test_same_page_runs_take_separate_slots(self):
        """Repeated runs of one page each hold their own slot."""
        gate = ConcurrencyGate(_store(), clock=FakeClock(NOW))
        tokens = [gate.acquire(5, 10) for _ in range(3)]
        assert len(set(tokens)) == 3
        with pytest.raises(RateLimitError):
            gate.acquire(5, 10)

        gate.release(5, tokens[0])
        assert gate.active(5) == 2

    def test_users_are_independent(self):
        """Another user's runs don't count."""
        gate = ConcurrencyGate(_store(), max_active=1, clock=FakeClock(NOW))
        gate.acquire(1, 10)
        gate.acquire(2, 10)
        assert gate.active(1) == 1

    def test_release_frees_slot(self):
        """Releasing a token frees its slot."""
        gate = ConcurrencyGate(_store(), max_active=1, clock=FakeClock(NOW))
        token = gate.acquire(1, 10)
        gate.release(1, token)
        assert gate.active(1) == 0
        gate.acquire(1, 11)

    def test_release_unknown_token(self):
        """An unknown token leaves other runs alone."""
        gate = ConcurrencyGate(_store(), clock=FakeClock(NOW))
        gate.acquire(1, 10)
        gate.release(1, "not-a-run")
        assert gate.active(1) == 1

    def test_markers_expire(self):
        """Markers older than the TTL no longer count."""
        clock = FakeClock(NOW)
        gate = ConcurrencyGate(_store(), max_active=1, ttl_seconds=600, clock=clock)
        gate.acquire(1, 10)
        clock.now = NOW + timedelta(minutes=10)
        assert gate.active(1) == 0
        gate.acquire(1, 11)

    def test_markers_shared_through_store(self):
        """Two gates over one store see each other's runs."""
        store = _store()
        first = ConcurrencyGate(store, max_active=1, clock=FakeClock(NOW))
        second = ConcurrencyGate(store, max_active=1, clock=FakeClock(NOW))
        token = first.acquire(1, 10)
        with pytest.raises(RateLimitError):
            second.acquire(1, 11)
        second.release(1, token)
        assert first.active(1) == 0


class TestProgressTracker:
    """Test progress records."""

    def test_update_and_get(self):
        """The latest record is returned as a copy."""
        tracker = ProgressTracker(_store(), clock=FakeClock(NOW))
        tracker.update(1, 0, {"currentBlock": "hero"})
        record = tracker.get(1, 0)
        record["currentBlock"] = "changed"
        assert tracker.get(1, 0) == {"currentBlock": "hero"}

    def test_visible_to_other_tracker(self):
        """A record written by one process is read by another."""
        store = _store()
        ProgressTracker(store, clock=FakeClock(NOW)).update(1, 0, {"currentBlock": "faq"})
        assert ProgressTracker(store, clock=FakeClock(NOW)).get(1, 0) == {"currentBlock": "faq"}

    def test_keyed_by_user(self):
        """Records of the same page for different users are separate."""
        tracker = ProgressTracker(_store(), clock=FakeClock(NOW))
        tracker.update(1, 7, {"currentBlock": "hero"})
        assert tracker.get(1, 0) is None

    def test_expired_record(self):
        """Records disappear after the TTL."""
        clock = FakeClock(NOW)
        store = _store()
        tracker = ProgressTracker(store, ttl_seconds=60, clock=clock)
        tracker.update(1, 0, {"currentBlock": "hero"})
        clock.now = NOW + timedelta(seconds=61)
        assert tracker.get(1, 0) is None
        store.delete_state.assert_called_once_with("progress:1:0")

    def test_clear(self):
        """Cleared records are gone."""
        tracker = ProgressTracker(_store(), clock=FakeClock(NOW))
        tracker.update(1, 0, {})
        tracker.clear(1, 0)
        assert tracker.get(1, 0) is None


class TestRateTimer:
    """Test global pacing."""

    def test_ready_without_history(self):
        """The first generation may run immediately."""
        assert RateTimer(_store()).ready(NOW, 180) == (True, 0)

    def test_waits_for_interval(self):
        """A recent generation makes the next one wait."""
        timer = RateTimer(_store())
        timer.mark(NOW)
        assert timer.ready(NOW + timedelta(seconds=60), 180) == (False, 120)
        assert timer.ready(NOW + timedelta(seconds=180), 180) == (True, 0)
        assert timer.last() == NOW
