"""Tests for the capture event deduplicator."""

import threading

import pytest

from snaptext.daemon.dedup import DedupState, EventDeduplicator, RejectReason, fingerprint_file

from conftest import write_png


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


class TestHorizon:
    @pytest.mark.parametrize("delta", [0.0, 0.05, 5.0, 9.99])
    def test_repeat_inside_horizon_rejected(self, delta):
        dedup = EventDeduplicator(horizon=10.0, max_age=None)
        assert dedup.admit("fp-1", observed_at=100.0)

        decision = dedup.admit("fp-1", observed_at=100.0 + delta)

        assert not decision
        assert decision.reason is RejectReason.DUPLICATE

    @pytest.mark.parametrize("delta", [10.01, 11.0, 3600.0])
    def test_repeat_after_horizon_admitted(self, delta):
        dedup = EventDeduplicator(horizon=10.0, max_age=None)
        assert dedup.admit("fp-1", observed_at=100.0)

        assert dedup.admit("fp-1", observed_at=100.0 + delta)

    def test_distinct_fingerprints_independent(self):
        dedup = EventDeduplicator(horizon=10.0, max_age=None)
        assert dedup.admit("a", observed_at=1.0)
        assert dedup.admit("b", observed_at=1.5)
        assert dedup.get_stats() == {"admitted": 2, "duplicate": 0, "too_old": 0}


def test_window_is_swept_and_state_returns_to_idle():
    clock = FakeClock()
    dedup = EventDeduplicator(horizon=10.0, max_age=None, clock=clock)
    assert dedup.state is DedupState.IDLE

    dedup.admit("a")
    dedup.admit("b")
    assert dedup.state is DedupState.RECENTLY_ADMITTED
    assert len(dedup) == 2

    clock.now += 10.5
    assert dedup.state is DedupState.IDLE
    assert len(dedup) == 0


def test_stale_files_rejected():
    dedup = EventDeduplicator(horizon=10.0, max_age=10.0)

    decision = dedup.admit("old", observed_at=500.0, created_at=480.0)

    assert not decision
    assert decision.reason is RejectReason.TOO_OLD
    assert dedup.admit("fresh", observed_at=500.0, created_at=497.0)


def test_same_content_different_path_is_duplicate(tmp_path):
    a = write_png(tmp_path / "Screenshot 1.png", color=(1, 2, 3))
    b = write_png(tmp_path / "copy" / "Screenshot 1.png", color=(1, 2, 3))
    c = write_png(tmp_path / "Screenshot 2.png", color=(9, 9, 9))

    assert fingerprint_file(a) == fingerprint_file(b)
    assert fingerprint_file(a) != fingerprint_file(c)
    assert fingerprint_file(a).startswith("sha256:")

    dedup = EventDeduplicator(horizon=10.0, max_age=None)
    assert dedup.admit(a, observed_at=1.0)
    assert not dedup.admit(b, observed_at=1.05)
    assert dedup.admit(c, observed_at=1.1)


def test_unreadable_file_falls_back_to_path(tmp_path):
    missing = tmp_path / "vanished.png"
    assert fingerprint_file(missing).startswith("path:")


def test_concurrent_admission_admits_once():
    dedup = EventDeduplicator(horizon=10.0, max_age=None)
    results = []
    barrier = threading.Barrier(8)

    def worker():
        barrier.wait()
        results.append(bool(dedup.admit("same", observed_at=1.0)))

    threads = [threading.Thread(target=worker) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert results.count(True) == 1
