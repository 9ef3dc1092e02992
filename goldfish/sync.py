"""Incremental embedding synchronization.

The sync engine scans a workspace's daily checkpoint logs (or its JSONL
memory files), hashes each entry's embedding text and asks the index whether a record with the same ID and
hash already exists. Only new or changed entries are sent to the embedding
provider, so re-running a sync over unchanged logs makes zero embedding
calls.

A provider that is missing or broken turns sync into a logged no-op.
Per-entry failures are counted in ``SyncStats``, never raised.

``EmbeddingWorker`` runs syncs off the write path: saving a checkpoint
submits its workspace to a bounded queue consumed by one daemon thread.
"""

import logging
import queue
import threading
import time
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Callable

from goldfish.checkpoints import read_log_dir
from goldfish.embeddings import EmbeddingProvider, build_embedding_text, build_memory_embedding_text
from goldfish.hashing import hash_content
from goldfish.index import EmbeddingIndex, EmbeddingRecord, entry_id
from goldfish.memories import read_memory_dir
from goldfish.logging import log_sync_completed, log_sync_failed, log_sync_started

logger = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 100

SOURCE_CHECKPOINTS = "checkpoints"
SOURCE_MEMORIES = "memories"
SYNC_SOURCES = (SOURCE_CHECKPOINTS, SOURCE_MEMORIES)


@dataclass
class SyncStats:
    """Counts reported by one sync run."""

    total: int = 0
    already_embedded: int = 0
    queued: int = 0
    generated: int = 0
    failed: int = 0
    duration_ms: int = 0

    def to_dict(self) -> dict:
        return asdict(self)

    def merged(self, other: "SyncStats") -> "SyncStats":
        """Field-wise sum of two runs."""
        return SyncStats(**{k: v + getattr(other, k) for k, v in asdict(self).items()})


@dataclass(frozen=True)
class _QueueItem:
    id: str
    file_path: str
    position: int
    text: str
    content_hash: str


class SyncEngine:
    """Keeps the embedding index current for one workspace."""

    def __init__(
        self,
        workspace: str,
        source_dir: Path,
        index: EmbeddingIndex,
        provider: EmbeddingProvider,
        batch_size: int = DEFAULT_BATCH_SIZE,
        available: bool | None = None,
        source: str = SOURCE_CHECKPOINTS,
    ):
        """
        Args:
            workspace: Workspace slug (the ID prefix of its records)
            source_dir: Directory holding the daily files to index
            index: Shared embedding index
            provider: Embedding provider
            batch_size: Texts per provider call
            available: Result of an earlier provider probe; probed lazily if None
            source: What source_dir holds: checkpoint logs or memory files
        """
        if source not in SYNC_SOURCES:
            raise ValueError(f"Unknown sync source {source!r}")
        self.workspace = workspace
        self.source_dir = Path(source_dir)
        self.index = index
        self.provider = provider
        self.batch_size = max(1, batch_size)
        self._available = available
        self.source = source

    @property
    def available(self) -> bool:
        if self._available is None:
            self._available = self.provider.probe()
        return self._available

    def sync(self) -> SyncStats:
        start = time.monotonic()
        stats = SyncStats()

        items = self._scan()
        stats.total = len(items)

        if not self.available:
            logger.warning(
                f"Embedding provider {self.provider.name} unavailable - "
                f"skipping embedding generation for {self.workspace}"
            )
            stats.duration_ms = _elapsed_ms(start)
            return stats

        if not items:
            logger.debug(f"No {self.source} found in {self.workspace}")
            stats.duration_ms = _elapsed_ms(start)
            return stats

        log_sync_started(self.workspace, str(self.source_dir))

        pending: list[_QueueItem] = []
        for item in items:
            if self.index.exists_with_hash(item.id, item.content_hash):
                stats.already_embedded += 1
            else:
                pending.append(item)

        stats.queued = len(pending)
        if pending:
            logger.info(f"{self.workspace}: {len(pending)} {self.source} need embeddings")
            for batch_start in range(0, len(pending), self.batch_size):
                generated, failed = self._embed_batch(pending[batch_start : batch_start + self.batch_size])
                stats.generated += generated
                stats.failed += failed
        else:
            logger.debug(f"{self.workspace}: all {stats.total} {self.source} already embedded")

        self.index.update_workspace_metadata(self.workspace, str(self.source_dir))

        stats.duration_ms = _elapsed_ms(start)
        log_sync_completed(
            self.workspace, stats.total, stats.generated, stats.failed, stats.duration_ms
        )
        return stats

    def _scan(self) -> list[_QueueItem]:
        """Every entry under source_dir with its record ID and content hash."""
        if self.source == SOURCE_MEMORIES:
            scanned = [
                (e.id, e.file_path, e.position, build_memory_embedding_text(e.memory))
                for e in read_memory_dir(self.source_dir, self.workspace)
            ]
        else:
            scanned = [
                (
                    entry_id(self.workspace, e.date, e.position),
                    e.file_path,
                    e.position,
                    build_embedding_text(e.checkpoint),
                )
                for e in read_log_dir(self.source_dir, self.workspace)
            ]
        return [
            _QueueItem(id=rid, file_path=path, position=position, text=text, content_hash=hash_content(text))
            for rid, path, position, text in scanned
        ]

    def _embed_batch(self, batch: list[_QueueItem]) -> tuple[int, int]:
        """Embed and store one batch; returns (generated, failed)."""
        results = self.provider.embed_batch([item.text for item in batch])

        records: list[EmbeddingRecord] = []
        failed = 0
        for item, result in zip(batch, results):
            if result.is_err():
                logger.warning(f"Failed to generate embedding for {item.id}: {result.unwrap_err().message}")
                failed += 1
                continue
            records.append(
                EmbeddingRecord(
                    id=item.id,
                    workspace=self.workspace,
                    file_path=item.file_path,
                    position=item.position,
                    vector=result.unwrap(),
                    content_hash=item.content_hash,
                    created_at=time.time(),
                )
            )

        try:
            self.index.upsert_batch(records)
        except Exception as e:
            # A failed store loses the whole batch; the next sync retries it
            log_sync_failed(self.workspace, str(e))
            return 0, len(batch)
        return len(records), failed


def sync_workspace(
    workspace: str,
    source_dir: Path,
    index: EmbeddingIndex,
    provider: EmbeddingProvider,
) -> SyncStats:
    """One-off sync of a workspace with a throwaway engine."""
    return SyncEngine(workspace, source_dir, index, provider).sync()


def _elapsed_ms(start: float) -> int:
    return int((time.monotonic() - start) * 1000)


# ============================================================================
# Background worker
# ============================================================================


class EmbeddingWorker:
    """Runs workspace syncs on a dedicated thread.

    ``submit`` never blocks the caller: a workspace already waiting in the
    queue is not queued twice, and a full queue drops the request with a
    warning (the next checkpoint or an explicit sync picks the entries up).
    """

    def __init__(self, sync_fn: Callable[[str], SyncStats], maxsize: int = 64):
        self._sync_fn = sync_fn
        self._queue: queue.Queue[str | None] = queue.Queue(maxsize=maxsize)
        self._pending: set[str] = set()
        self._pending_lock = threading.Lock()
        self._thread: threading.Thread | None = None
        self._stopped = False
        self.processed = 0
        self.failed = 0

    def _ensure_started(self) -> None:
        if self._thread is None or not self._thread.is_alive():
            self._thread = threading.Thread(
                target=self._run, name="goldfish-embedding-worker", daemon=True
            )
            self._thread.start()

    def submit(self, workspace: str) -> bool:
        """Schedule a sync; returns False if it was dropped."""
        if self._stopped:
            logger.debug(f"Embedding worker stopped, ignoring {workspace}")
            return False

        with self._pending_lock:
            if workspace in self._pending:
                return True
            try:
                self._queue.put_nowait(workspace)
            except queue.Full:
                logger.warning(f"Embedding queue full, dropping background sync for {workspace}")
                return False
            self._pending.add(workspace)

        self._ensure_started()
        return True

    def _run(self) -> None:
        while True:
            workspace = self._queue.get()
            try:
                if workspace is None:
                    return
                with self._pending_lock:
                    self._pending.discard(workspace)
                try:
                    stats = self._sync_fn(workspace)
                    self.processed += 1
                    if stats.failed:
                        logger.warning(f"Background sync for {workspace}: {stats.failed} failed")
                except Exception as e:
                    # Workspace deletion races and provider crashes are not fatal
                    self.failed += 1
                    log_sync_failed(workspace, str(e))
            finally:
                self._queue.task_done()

    def join(self, timeout: float | None = None) -> bool:
        """Wait until every submitted sync has run; False on timeout."""
        deadline = None if timeout is None else time.monotonic() + timeout
        while self._queue.unfinished_tasks:
            if deadline is not None and time.monotonic() >= deadline:
                return False
            time.sleep(0.01)
        return True

    def stop(self, timeout: float | None = 5.0) -> None:
        """Finish queued work and stop the thread."""
        if self._stopped:
            return
        self._stopped = True
        if self._thread is not None and self._thread.is_alive():
            self._queue.put(None)
            self._thread.join(timeout)
