"""Tests for goldfish.memories module.

Covers:
- Memory validation (type, source, content)
- JSONL append, line numbering and tolerant parsing
- Filtering and listing through the runtime
- Embedding sync of memories, alongside checkpoints
"""

import json
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

from conftest import FakeProvider, add_checkpoint
from goldfish.core import Goldfish
from goldfish.errors import ValidationError
from goldfish.index import EmbeddingIndex, memory_entry_id
from goldfish.lock import lock_path_for
from goldfish.memories import (
    Memory,
    MemoryStore,
    create_memory,
    filter_memories,
    format_memory,
    parse_memory_file,
    read_memory_dir,
    search_memories,
    store_memory,
)
from goldfish.sync import SOURCE_MEMORIES, SyncEngine


def _ts(hour: int, minute: int = 0, day: int = 9) -> datetime:
    return datetime(2025, 11, day, hour, minute, tzinfo=UTC)


@pytest.fixture
def store(root: Path) -> MemoryStore:
    return MemoryStore(root)


# =============================================================================
# Validation and format
# =============================================================================


class TestCreateMemory:
    """Tests for create_memory()."""

    def test_valid_memory(self):
        """Content is stripped and blank tags dropped."""
        memory = create_memory("decision", "agent", "  Chose SQLite.  ", tags=["db", " "])

        assert memory.type == "decision"
        assert memory.content == "Chose SQLite."
        assert memory.tags == ("db",)

    @pytest.mark.parametrize(
        "memory_type, source, content, message",
        [
            ("", "agent", "x", "type"),
            ("decision", "", "x", "source"),
            ("decision", "agent", "   ", "content"),
            ("musing", "agent", "x", "Invalid type: musing"),
            ("decision", "robot", "x", "Invalid source: robot"),
        ],
    )
    def test_invalid_input(self, memory_type, source, content, message):
        """Missing fields and unknown enums are rejected with a clear message."""
        with pytest.raises(ValidationError, match=message):
            create_memory(memory_type, source, content)

    def test_jsonl_line(self):
        """One memory is one JSON line with a Z timestamp; empty tags are omitted."""
        line = format_memory(create_memory("insight", "user", "Caching helps", timestamp=_ts(10, 30)))

        assert line.endswith("\n")
        assert json.loads(line) == {
            "type": "insight",
            "source": "user",
            "content": "Caching helps",
            "timestamp": "2025-11-09T10:30:00Z",
        }


class TestParseMemoryFile:
    """Tests for parse_memory_file()."""

    def test_invalid_lines_keep_numbering(self):
        """Bad lines are skipped, but the lines after them keep their numbers."""
        good = format_memory(create_memory("feature", "agent", "one", timestamp=_ts(9)))
        other = format_memory(create_memory("feature", "agent", "three", timestamp=_ts(11)))
        content = good + "not json\n" + '{"type": "feature"}\n' + "\n" + other

        entries = parse_memory_file(content, "proj", "2025-11-09")

        assert [(e.position, e.memory.content) for e in entries] == [(1, "one"), (4, "three")]

    def test_offset_timestamps_accepted(self):
        """Timestamps written with an offset parse to aware datetimes."""
        line = '{"type": "insight", "source": "user", "content": "x", "timestamp": "2025-11-09T10:30:00.000+00:00"}'

        entries = parse_memory_file(line, "proj", "2025-11-09")

        assert entries[0].memory.timestamp == _ts(10, 30)

    def test_tags_must_be_a_list(self):
        """A string where tags belong makes the line invalid."""
        line = '{"type": "insight", "source": "user", "content": "x", "timestamp": "2025-11-09T10:30:00Z", "tags": "a"}'
        assert parse_memory_file(line, "proj", "2025-11-09") == []


# =============================================================================
# Store
# =============================================================================


class TestMemoryStore:
    """Tests for MemoryStore."""

    def test_append_returns_line_addresses(self, store: MemoryStore, root: Path):
        """Each append lands on the next line of the day's file."""
        first = store.append("proj", create_memory("decision", "agent", "a", timestamp=_ts(9)))
        second = store.append("proj", create_memory("bug-fix", "agent", "b", timestamp=_ts(10)))

        path = root / "proj" / "memories" / "2025-11-09.jsonl"
        assert (first.position, second.position) == (1, 2)
        assert second.file_path == "memories/2025-11-09.jsonl"
        assert len(path.read_text().splitlines()) == 2
        assert not lock_path_for(path).exists()

    def test_append_after_invalid_line(self, store: MemoryStore, root: Path):
        """A new memory's address matches what a reader will compute."""
        directory = root / "proj" / "memories"
        directory.mkdir(parents=True)
        (directory / "2025-11-09.jsonl").write_text("garbage")

        entry = store.append("proj", create_memory("insight", "user", "x", timestamp=_ts(9)))

        assert entry.position == 2
        assert [e.position for e in store.read_all("proj")] == [2]

    def test_read_all_sorted_across_days(self, store: MemoryStore):
        """Memories from several daily files come back oldest first."""
        store.append("proj", create_memory("feature", "agent", "later", timestamp=_ts(9, day=10)))
        store.append("proj", create_memory("feature", "agent", "earlier", timestamp=_ts(9, day=8)))

        assert [e.memory.content for e in store.read_all("proj")] == ["earlier", "later"]

    def test_missing_workspace_reads_empty(self, store: MemoryStore):
        """No memories directory reads as no memories."""
        assert store.read_all("nothing") == []

    def test_store_memory_validates_before_writing(self, store: MemoryStore, root: Path):
        """A rejected memory leaves no files behind."""
        with pytest.raises(ValidationError):
            store_memory(store, "proj", "musing", "agent", "x")
        assert not (root / "proj").exists()

    def test_ids_do_not_collide_with_checkpoints(self, store: MemoryStore):
        """A memory and a checkpoint at the same day and position get distinct IDs."""
        entry = store.append("proj", create_memory("feature", "agent", "a", timestamp=_ts(9)))
        assert entry.id == memory_entry_id("proj", "2025-11-09", 1)
        assert entry.id != "proj:2025-11-09:1"


class TestFilterMemories:
    """Tests for filter_memories()."""

    def test_filters_combine(self, store: MemoryStore):
        """Type, source and since all apply; tags match on any overlap."""
        store.append("proj", create_memory("decision", "agent", "a", tags=["db"], timestamp=_ts(8)))
        store.append("proj", create_memory("decision", "user", "b", tags=["api"], timestamp=_ts(9)))
        store.append("proj", create_memory("bug-fix", "agent", "c", tags=["db"], timestamp=_ts(10)))
        entries = store.read_all("proj")

        assert [e.memory.content for e in filter_memories(entries, types=["decision"])] == ["a", "b"]
        assert [e.memory.content for e in filter_memories(entries, sources=["agent"])] == ["a", "c"]
        assert [e.memory.content for e in filter_memories(entries, tags=["api", "x"])] == ["b"]
        assert [e.memory.content for e in filter_memories(entries, since=_ts(9))] == ["b", "c"]


# =============================================================================
# Sync and search
# =============================================================================


class TestMemorySync:
    """Memories flow through the same hash-gated sync as checkpoints."""

    def test_sync_is_idempotent(self, store: MemoryStore, tmp_path: Path):
        """A second sync over unchanged memories makes no embedding calls."""
        store.append("proj", create_memory("decision", "agent", "Chose SQLite", timestamp=_ts(9)))
        provider = FakeProvider()
        index = EmbeddingIndex(tmp_path / "index.db")
        try:
            engine = SyncEngine("proj", store.directory("proj"), index, provider, source=SOURCE_MEMORIES)

            first = engine.sync()
            calls = provider.calls
            second = engine.sync()

            assert (first.total, first.generated) == (1, 1)
            assert (second.already_embedded, second.generated) == (1, 0)
            assert provider.calls == calls
            record = index.get(memory_entry_id("proj", "2025-11-09", 1))
            assert record.file_path == "memories/2025-11-09.jsonl"
        finally:
            index.close()

    def test_unknown_source_rejected(self, tmp_path: Path):
        """SyncEngine only knows checkpoints and memories."""
        index = EmbeddingIndex(tmp_path / "index.db")
        try:
            with pytest.raises(ValueError):
                SyncEngine("proj", tmp_path, index, FakeProvider(), source="notes")
        finally:
            index.close()

    def test_sync_all_covers_both_sources(self, semantic_runtime: Goldfish):
        """Checkpoints and memories of a workspace are embedded side by side."""
        add_checkpoint(semantic_runtime.log, "proj", "Fixed login")
        semantic_runtime.store_memory("proj", "bug-fix", "agent", "Login token expired early")

        stats = semantic_runtime.sync_all("proj")

        assert stats.generated == 2
        assert semantic_runtime.index.count_workspace("proj") == 2

    def test_background_embedding_after_store(self, config):
        """Storing a memory schedules its embedding on the worker."""
        with Goldfish(config, provider=FakeProvider()) as gf:
            entry = gf.store_memory("proj", "insight", "agent", "WAL mode avoids lock errors")
            assert gf.worker.join(timeout=10)

            assert gf.index.get(entry.id) is not None

    def test_search_ranks_by_similarity(self, semantic_runtime: Goldfish):
        """The closest memory comes first once memories are synced."""
        semantic_runtime.store_memory("proj", "decision", "agent", "Chose SQLite for the embedding database")
        semantic_runtime.store_memory("proj", "bug-fix", "agent", "Fixed flaky login test")
        semantic_runtime.sync_memories("proj")

        found = semantic_runtime.list_memories("proj", query="sqlite database")

        assert found[0].memory.content == "Chose SQLite for the embedding database"

    def test_search_skips_unsynced_memories(self, store: MemoryStore, tmp_path: Path):
        """Memories without a vector are left out of the ranking."""
        entry = store.append("proj", create_memory("decision", "agent", "Chose SQLite", timestamp=_ts(9)))
        index = EmbeddingIndex(tmp_path / "index.db")
        try:
            assert search_memories("sqlite", [entry], index, FakeProvider()) == []
        finally:
            index.close()


class TestListMemories:
    """Tests for Goldfish.list_memories() without semantic search."""

    def test_newest_first_with_limit(self, runtime: Goldfish):
        """Listing is newest first and truncated to the limit."""
        for i in range(3):
            runtime.store_memory("proj", "feature", "agent", f"feature {i}")

        found = runtime.list_memories("proj", limit=2)

        assert [e.memory.content for e in found] == ["feature 2", "feature 1"]

    def test_query_falls_back_to_substring(self, runtime: Goldfish):
        """Without embeddings a query filters by content."""
        runtime.store_memory("proj", "decision", "agent", "Chose SQLite")
        runtime.store_memory("proj", "decision", "agent", "Chose click for the CLI")

        found = runtime.list_memories("proj", query="sqlite")

        assert [e.memory.content for e in found] == ["Chose SQLite"]

    def test_since_filter(self, runtime: Goldfish):
        """Memories older than ``since`` are excluded."""
        runtime.memories.append(
            "proj",
            Memory("insight", "user", "old", datetime.now(UTC) - timedelta(days=5)),
        )
        runtime.store_memory("proj", "insight", "user", "new")

        found = runtime.list_memories("proj", since=datetime.now(UTC) - timedelta(days=1))

        assert [e.memory.content for e in found] == ["new"]

    def test_read_memory_dir_matches_store(self, runtime: Goldfish):
        """The runtime's store reads through read_memory_dir."""
        runtime.store_memory("proj", "observation", "system", "Disk nearly full")

        direct = read_memory_dir(runtime.memories.directory("proj"), "proj")

        assert direct == runtime.memories.read_all("proj")
