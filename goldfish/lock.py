"""Advisory file locking using sidecar lock files.

Writers to the same file serialize through ``<path>.lock``, created with
O_CREAT | O_EXCL so exactly one process wins. No OS-level locks are used,
so a crashed holder is recovered by staleness: a marker older than
``MAX_LOCK_AGE_SECONDS`` is removed by the next contender.

Usage:
    with file_lock(path):
        ...  # exclusive access to path

    release = acquire_lock(path)
    try:
        ...
    finally:
        release()
"""

import json
import logging
import os
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import TypeVar

from goldfish.errors import LockTimeoutError

logger = logging.getLogger(__name__)

T = TypeVar("T")

MAX_LOCK_AGE_SECONDS = 30.0
LOCK_RETRY_DELAY_SECONDS = 0.010
MAX_LOCK_ATTEMPTS = 3000  # ~30s total


def lock_path_for(path: Path) -> Path:
    return Path(f"{path}.lock")


def _read_lock_timestamp(lock_path: Path) -> float | None:
    """Timestamp (seconds) recorded in a lock marker, or None if unreadable."""
    try:
        data = json.loads(lock_path.read_text(encoding="utf-8"))
        return float(data["timestamp"]) / 1000.0
    except (OSError, ValueError, KeyError, TypeError):
        # Missing, half-written or corrupted - treat as fresh and retry
        return None


def _remove_marker(lock_path: Path) -> None:
    try:
        lock_path.unlink()
    except FileNotFoundError:
        # Another process reclaimed it first
        pass


def acquire_lock(
    path: Path,
    max_attempts: int = MAX_LOCK_ATTEMPTS,
    retry_delay: float = LOCK_RETRY_DELAY_SECONDS,
    stale_after: float = MAX_LOCK_AGE_SECONDS,
) -> Callable[[], None]:
    """Acquire the lock for ``path`` and return its release function.

    Raises:
        LockTimeoutError: if the lock is still held after ``max_attempts``.
        OSError: for filesystem errors other than contention.
    """
    lock_path = lock_path_for(Path(path))

    attempts = 0
    while attempts < max_attempts:
        try:
            fd = os.open(lock_path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o600)
        except FileExistsError:
            recorded = _read_lock_timestamp(lock_path)
            if recorded is not None and time.time() - recorded > stale_after:
                logger.warning(f"Removing stale lock {lock_path}")
                _remove_marker(lock_path)

            attempts += 1
            time.sleep(retry_delay)
            continue

        # Stamped at acquisition time, not when the wait began
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(json.dumps({"pid": os.getpid(), "timestamp": int(time.time() * 1000)}))

        def release() -> None:
            _remove_marker(lock_path)

        return release

    raise LockTimeoutError(str(path), max_attempts)


@contextmanager
def file_lock(path: Path, **kwargs) -> Iterator[None]:
    """Hold the lock for ``path`` for the duration of the block."""
    release = acquire_lock(path, **kwargs)
    try:
        yield
    finally:
        release()


def with_lock(path: Path, fn: Callable[[], T], **kwargs) -> T:
    """Run ``fn`` holding the lock for ``path``; release even if it raises."""
    with file_lock(path, **kwargs):
        return fn()
