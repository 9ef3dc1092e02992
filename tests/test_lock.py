"""Tests for goldfish.lock module."""

import json
import os
import threading
import time
from pathlib import Path

import pytest

from goldfish.errors import LockTimeoutError
from goldfish.lock import acquire_lock, file_lock, lock_path_for, with_lock


class TestAcquireLock:
    """Tests for acquire_lock()."""

    def test_creates_marker_with_pid_and_timestamp(self, tmp_path: Path):
        """The sidecar marker records the owner pid and a ms timestamp."""
        target = tmp_path / "log.md"

        release = acquire_lock(target)
        try:
            marker = lock_path_for(target)
            assert marker == tmp_path / "log.md.lock"
            data = json.loads(marker.read_text())
            assert data["pid"] == os.getpid()
            assert abs(data["timestamp"] / 1000 - time.time()) < 5
        finally:
            release()

        assert not lock_path_for(target).exists()

    def test_release_tolerates_missing_marker(self, tmp_path: Path):
        """Releasing after the marker was reclaimed is not an error."""
        target = tmp_path / "log.md"
        release = acquire_lock(target)
        lock_path_for(target).unlink()

        release()

    def test_times_out_when_held(self, tmp_path: Path):
        """A fresh lock held elsewhere surfaces LockTimeoutError."""
        target = tmp_path / "log.md"
        release = acquire_lock(target)
        try:
            with pytest.raises(LockTimeoutError) as exc_info:
                acquire_lock(target, max_attempts=3, retry_delay=0.001)
            assert exc_info.value.attempts == 3
        finally:
            release()

    def test_reclaims_stale_lock(self, tmp_path: Path):
        """A marker older than the staleness threshold is removed."""
        target = tmp_path / "log.md"
        stale = {"pid": 999999, "timestamp": int((time.time() - 60) * 1000)}
        lock_path_for(target).write_text(json.dumps(stale))

        release = acquire_lock(target, max_attempts=5, retry_delay=0.001)
        release()

        assert not lock_path_for(target).exists()

    def test_corrupt_marker_is_treated_as_held(self, tmp_path: Path):
        """An unreadable marker is not reclaimed; the caller retries until timeout."""
        target = tmp_path / "log.md"
        lock_path_for(target).write_text("not json")

        with pytest.raises(LockTimeoutError):
            acquire_lock(target, max_attempts=2, retry_delay=0.001)

    def test_marker_stamped_when_acquired(self, tmp_path: Path):
        """A writer that waited records the time it got the lock, not when it started."""
        target = tmp_path / "log.md"
        release_first = acquire_lock(target)
        acquired = {}

        def waiter():
            acquired["release"] = acquire_lock(target, retry_delay=0.01)

        thread = threading.Thread(target=waiter)
        thread.start()
        time.sleep(0.5)
        handed_over_at = time.time()
        release_first()
        thread.join(timeout=5)

        try:
            data = json.loads(lock_path_for(target).read_text())
            assert data["timestamp"] / 1000 >= handed_over_at - 0.05
        finally:
            acquired["release"]()


class TestWithLock:
    """Tests for with_lock() and file_lock()."""

    def test_returns_function_result(self, tmp_path: Path):
        """with_lock returns what the function returns and cleans up."""
        assert with_lock(tmp_path / "x", lambda: 42) == 42
        assert not lock_path_for(tmp_path / "x").exists()

    def test_releases_on_exception(self, tmp_path: Path):
        """The lock is released even when the body raises."""
        target = tmp_path / "x"

        def boom():
            raise RuntimeError("fail")

        with pytest.raises(RuntimeError):
            with_lock(target, boom)

        assert not lock_path_for(target).exists()

    def test_serializes_threads(self, tmp_path: Path):
        """Read-modify-write under the lock never loses an update."""
        target = tmp_path / "counter.txt"
        target.write_text("0")

        def increment():
            for _ in range(10):
                with file_lock(target):
                    value = int(target.read_text())
                    target.write_text(str(value + 1))

        threads = [threading.Thread(target=increment) for _ in range(5)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert target.read_text() == "50"
