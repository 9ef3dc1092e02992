"""Goldfish runtime.

The host process (CLI, agent front end, tests) builds one ``Goldfish`` and
passes it to every operation. It owns everything that must exist once per
process:

- the checkpoint log store and the typed memory store
- the global embedding index
- the embedding provider and whether it is usable (probed once)
- one sync engine per workspace and source
- the background embedding worker
"""

import logging
import threading
from collections.abc import Iterable, Sequence
from datetime import datetime
from pathlib import Path

from goldfish.checkpoints import Checkpoint, CheckpointLog, save_checkpoint
from goldfish.config import GoldfishConfig
from goldfish.embeddings import EmbeddingProvider, create_provider
from goldfish.git import GitContext, capture_git_context
from goldfish.index import EmbeddingIndex
from goldfish.memories import MemoryEntry, MemoryStore, filter_memories, search_memories, store_memory
from goldfish.recall import RecallOptions, RecallResult, recall
from goldfish.sync import SOURCE_CHECKPOINTS, SOURCE_MEMORIES, EmbeddingWorker, SyncEngine, SyncStats
from goldfish.workspace import resolve_workspace

logger = logging.getLogger(__name__)


class Goldfish:
    """Process-wide registry of storage, index and embedding resources."""

    def __init__(
        self,
        config: GoldfishConfig | None = None,
        provider: EmbeddingProvider | None = None,
        background: bool = True,
    ):
        """
        Args:
            config: Settings; loaded from ``GOLDFISH_HOME`` when omitted
            provider: Embedding provider; built from config when omitted
            background: Embed new checkpoints on a worker thread
        """
        self.config = config or GoldfishConfig.load()
        self.root = Path(self.config.root)
        self.log = CheckpointLog(self.root)
        self.memories = MemoryStore(self.root)
        self.index = EmbeddingIndex(self.config.index_path)
        self.provider = provider or create_provider(self.config)
        self.semantic_available = self.provider.probe()

        self._engines: dict[tuple[str, str], SyncEngine] = {}
        self._engines_lock = threading.Lock()
        self.worker: EmbeddingWorker | None = None
        if background and self.semantic_available:
            self.worker = EmbeddingWorker(
                self.sync_all, maxsize=self.config.background_queue_size
            )

        logger.debug(
            f"Goldfish runtime at {self.root} "
            f"(semantic search {'on' if self.semantic_available else 'off'})"
        )

    def engine(
        self,
        workspace: str,
        source_dir: Path | None = None,
        source: str = SOURCE_CHECKPOINTS,
    ) -> SyncEngine:
        """The sync engine for a workspace and source, created on first use."""
        if source_dir is None:
            if source == SOURCE_MEMORIES:
                source_dir = self.memories.directory(workspace)
            else:
                source_dir = self.log.directory(workspace)
        source_dir = Path(source_dir)
        key = (workspace, source)
        with self._engines_lock:
            engine = self._engines.get(key)
            if engine is None or engine.source_dir != source_dir:
                engine = SyncEngine(
                    workspace,
                    source_dir,
                    self.index,
                    self.provider,
                    batch_size=self.config.embedding_batch_size,
                    available=self.semantic_available,
                    source=source,
                )
                self._engines[key] = engine
            return engine

    def save_checkpoint(
        self,
        workspace: str | None,
        description: str,
        tags: Iterable[str] | None = None,
        git_context: GitContext | None = None,
        cwd: Path | None = None,
    ) -> Checkpoint:
        """Save a checkpoint and schedule its embedding.

        Git context is captured from ``cwd`` (default: the working directory)
        unless given explicitly.

        Raises:
            ValidationError: empty description
            LockTimeoutError: lock contention beyond the retry budget
            OSError: filesystem errors
        """
        workspace = resolve_workspace(workspace, cwd)
        if git_context is None:
            git_context = capture_git_context(cwd or Path.cwd())

        checkpoint = save_checkpoint(self.log, workspace, description, tags, git_context)

        if self.worker is not None:
            self.worker.submit(workspace)
        return checkpoint

    def recall(self, options: RecallOptions | None = None) -> RecallResult:
        return recall(self, options)

    def sync_workspace(self, workspace: str, source_dir: Path | None = None) -> SyncStats:
        """Bring the index up to date with a workspace's logs."""
        workspace = resolve_workspace(workspace)
        return self.engine(workspace, source_dir).sync()

    def sync_memories(self, workspace: str, source_dir: Path | None = None) -> SyncStats:
        """Bring the index up to date with a workspace's stored memories."""
        workspace = resolve_workspace(workspace)
        return self.engine(workspace, source_dir, source=SOURCE_MEMORIES).sync()

    def sync_all(self, workspace: str) -> SyncStats:
        """Sync checkpoints and memories; the counts are summed."""
        return self.sync_workspace(workspace).merged(self.sync_memories(workspace))

    def store_memory(
        self,
        workspace: str | None,
        memory_type: str,
        source: str,
        content: str,
        tags: Iterable[str] | None = None,
        cwd: Path | None = None,
    ) -> MemoryEntry:
        """Store a typed memory and schedule its embedding.

        Raises:
            ValidationError: unknown type or source, empty content
            LockTimeoutError: lock contention beyond the retry budget
            OSError: filesystem errors
        """
        workspace = resolve_workspace(workspace, cwd)
        entry = store_memory(self.memories, workspace, memory_type, source, content, tags)
        if self.worker is not None:
            self.worker.submit(workspace)
        return entry

    def list_memories(
        self,
        workspace: str | None,
        query: str | None = None,
        types: Sequence[str] | None = None,
        sources: Sequence[str] | None = None,
        tags: Sequence[str] | None = None,
        since: datetime | None = None,
        limit: int = 10,
        min_similarity: float | None = None,
    ) -> list[MemoryEntry]:
        """Filtered memories, newest first, or ranked by similarity to ``query``.

        With semantic search the query ranks memories by similarity. Without
        it, or when no vector matches, the query is a case-insensitive
        substring filter on content.
        """
        workspace = resolve_workspace(workspace)
        entries = filter_memories(
            self.memories.read_all(workspace), types=types, sources=sources, tags=tags, since=since
        )

        if query and self.semantic_available:
            threshold = self.config.min_similarity if min_similarity is None else min_similarity
            hits = search_memories(query, entries, self.index, self.provider, threshold, workspace)
            if hits:
                return [entry for entry, _ in hits][: max(limit, 0)]
        if query:
            needle = query.lower()
            entries = [e for e in entries if needle in e.memory.content.lower()]

        entries.sort(key=lambda e: (e.memory.timestamp, e.date, e.position), reverse=True)
        return entries[: max(limit, 0)]

    def close(self) -> None:
        if self.worker is not None:
            self.worker.stop()
        self.index.close()

    def __enter__(self) -> "Goldfish":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()
