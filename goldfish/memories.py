"""Typed memory storage.

Memories are short, categorized facts (a decision, a bug fix, an insight)
kept beside a workspace's checkpoints as JSON Lines, one file per UTC day:

    <root>/<workspace>/memories/YYYY-MM-DD.jsonl

Each line is one memory:

    {"type": "decision", "source": "agent", "content": "...",
     "timestamp": "2025-11-09T10:30:00Z", "tags": ["database"]}

Files are append-only, so a memory's line number is a stable address. The
embedding index keys memory vectors by workspace, day and line number.
Appends go through the same lock and atomic rename as the checkpoint log.
"""

import json
import logging
import re
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path

import numpy as np

from goldfish.atomic import atomic_write_or_raise
from goldfish.checkpoints import format_timestamp, utc_now
from goldfish.embeddings import EmbeddingProvider, cosine_similarity
from goldfish.errors import ValidationError
from goldfish.index import EmbeddingIndex, memory_entry_id
from goldfish.lock import file_lock
from goldfish.workspace import SCOPE_ALL, memories_dir

logger = logging.getLogger(__name__)

MEMORY_TYPES = ("decision", "bug-fix", "feature", "insight", "observation", "refactor")
MEMORY_SOURCES = ("agent", "user", "system", "development-session")

_DAY_FILE = re.compile(r"^(\d{4}-\d{2}-\d{2})\.jsonl$")


@dataclass(frozen=True)
class Memory:
    type: str
    source: str
    content: str
    timestamp: datetime
    tags: tuple[str, ...] = ()

    @property
    def date(self) -> str:
        return self.timestamp.astimezone(UTC).strftime("%Y-%m-%d")

    def to_dict(self) -> dict:
        data: dict = {
            "type": self.type,
            "source": self.source,
            "content": self.content,
            "timestamp": format_timestamp(self.timestamp),
        }
        if self.tags:
            data["tags"] = list(self.tags)
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "Memory":
        """Build a memory from one decoded JSONL line.

        Raises:
            ValidationError: missing fields or wrong field types
        """
        if not isinstance(data, dict):
            raise ValidationError("Memory must be a JSON object")
        for name in ("type", "source", "content", "timestamp"):
            if not isinstance(data.get(name), str):
                raise ValidationError(f"Memory field {name!r} must be a string")
        tags = data.get("tags")
        if tags is not None and not isinstance(tags, list):
            raise ValidationError("Memory field 'tags' must be a list")
        try:
            timestamp = datetime.fromisoformat(data["timestamp"])
        except ValueError as e:
            raise ValidationError(f"Invalid memory timestamp: {data['timestamp']!r}") from e
        if timestamp.tzinfo is None:
            timestamp = timestamp.replace(tzinfo=UTC)
        return cls(
            type=data["type"],
            source=data["source"],
            content=data["content"],
            timestamp=timestamp,
            tags=tuple(str(t) for t in tags or ()),
        )


@dataclass(frozen=True)
class MemoryEntry:
    """A memory together with its address in the JSONL files."""

    workspace: str
    date: str
    position: int  # 1-based line number within the day's file
    memory: Memory = field(compare=False)

    @property
    def file_path(self) -> str:
        """Path of the day's file relative to the workspace directory."""
        return f"memories/{self.date}.jsonl"

    @property
    def id(self) -> str:
        return memory_entry_id(self.workspace, self.date, self.position)


def create_memory(
    memory_type: str,
    source: str,
    content: str,
    tags: Iterable[str] | None = None,
    timestamp: datetime | None = None,
) -> Memory:
    """Validate input and build a memory stamped now.

    Raises:
        ValidationError: missing content or an unknown type or source
    """
    if not memory_type:
        raise ValidationError("Missing required field: type")
    if not source:
        raise ValidationError("Missing required field: source")
    if not content or not content.strip():
        raise ValidationError("Missing required field: content")
    if memory_type not in MEMORY_TYPES:
        raise ValidationError(f"Invalid type: {memory_type}. Must be one of: {', '.join(MEMORY_TYPES)}")
    if source not in MEMORY_SOURCES:
        raise ValidationError(
            f"Invalid source: {source}. Must be one of: {', '.join(MEMORY_SOURCES)}"
        )

    return Memory(
        type=memory_type,
        source=source,
        content=content.strip(),
        timestamp=timestamp or utc_now(),
        tags=tuple(t.strip() for t in tags or () if t and t.strip()),
    )


def format_memory(memory: Memory) -> str:
    """One JSONL line, newline included."""
    return json.dumps(memory.to_dict(), ensure_ascii=False) + "\n"


def parse_memory_file(content: str, workspace: str, day: str) -> list[MemoryEntry]:
    """Entries of one day's file.

    Blank lines are ignored. A line that is not a valid memory is logged and
    skipped but still counts toward the line numbers after it.
    """
    entries = []
    lines = [line for line in content.split("\n") if line.strip()]
    for position, line in enumerate(lines, start=1):
        try:
            memory = Memory.from_dict(json.loads(line))
        except (json.JSONDecodeError, ValidationError) as e:
            logger.warning(f"Skipping invalid memory at line {position} of {day}.jsonl: {e}")
            continue
        entries.append(MemoryEntry(workspace=workspace, date=day, position=position, memory=memory))
    return entries


def list_memory_files(directory: Path) -> list[tuple[str, Path]]:
    """(day, path) for each daily JSONL file, oldest first."""
    try:
        names = sorted(p.name for p in directory.iterdir())
    except FileNotFoundError:
        return []
    return [(m.group(1), directory / name) for name in names if (m := _DAY_FILE.match(name))]


def read_memory_file(path: Path, workspace: str, day: str) -> list[MemoryEntry]:
    try:
        content = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return []
    return parse_memory_file(content, workspace, day)


def read_memory_dir(directory: Path, workspace: str) -> list[MemoryEntry]:
    """Every memory under ``directory``, oldest first."""
    entries: list[MemoryEntry] = []
    for day, path in list_memory_files(directory):
        entries.extend(read_memory_file(path, workspace, day))
    entries.sort(key=lambda e: e.memory.timestamp)
    return entries


def filter_memories(
    entries: Iterable[MemoryEntry],
    types: Sequence[str] | None = None,
    sources: Sequence[str] | None = None,
    tags: Sequence[str] | None = None,
    since: datetime | None = None,
) -> list[MemoryEntry]:
    """Entries matching every given filter; ``tags`` matches any of them."""
    wanted_tags = set(tags or ())
    return [
        e
        for e in entries
        if (not types or e.memory.type in types)
        and (not sources or e.memory.source in sources)
        and (not wanted_tags or wanted_tags & set(e.memory.tags))
        and (since is None or e.memory.timestamp >= since)
    ]


class MemoryStore:
    """Append-only daily JSONL memory files under a storage root."""

    def __init__(self, root: Path):
        self.root = Path(root)

    def directory(self, workspace: str) -> Path:
        return memories_dir(self.root, workspace)

    def day_path(self, workspace: str, day: str) -> Path:
        return self.directory(workspace) / f"{day}.jsonl"

    def append(self, workspace: str, memory: Memory) -> MemoryEntry:
        """Append a memory to its day's file and return its address.

        Raises:
            LockTimeoutError: if another writer holds the lock too long
            OSError: on filesystem errors
        """
        directory = self.directory(workspace)
        directory.mkdir(parents=True, exist_ok=True, mode=0o700)
        path = self.day_path(workspace, memory.date)

        with file_lock(path):
            try:
                existing = path.read_text(encoding="utf-8")
            except FileNotFoundError:
                existing = ""
            if existing and not existing.endswith("\n"):
                existing += "\n"
            position = sum(1 for line in existing.split("\n") if line.strip()) + 1
            atomic_write_or_raise(path, existing + format_memory(memory))

        logger.debug(f"Stored memory at {path}:{position}")
        return MemoryEntry(workspace=workspace, date=memory.date, position=position, memory=memory)

    def read_all(self, workspace: str) -> list[MemoryEntry]:
        return read_memory_dir(self.directory(workspace), workspace)


def store_memory(
    store: MemoryStore,
    workspace: str,
    memory_type: str,
    source: str,
    content: str,
    tags: Iterable[str] | None = None,
) -> MemoryEntry:
    """Validate and append a memory stamped now.

    Raises:
        ValidationError: invalid type, source or content
        LockTimeoutError: lock contention beyond the retry budget
        OSError: filesystem errors
    """
    memory = create_memory(memory_type, source, content, tags=tags)
    return store.append(workspace, memory)


def search_memories(
    query: str,
    entries: Sequence[MemoryEntry],
    index: EmbeddingIndex,
    provider: EmbeddingProvider,
    min_similarity: float = 0.0,
    workspace: str = SCOPE_ALL,
) -> list[tuple[MemoryEntry, float]]:
    """Memories ranked by cosine similarity to the query.

    Memories without a stored vector are left out; a failed query embedding
    reads as no results.
    """
    if not entries:
        return []
    query_result = provider.embed(query)
    if query_result.is_err():
        logger.warning(f"Query embedding failed: {query_result.unwrap_err().message}")
        return []
    query_vector = np.asarray(query_result.unwrap(), dtype=np.float32)

    by_id = {e.id: e for e in entries}
    vectors = index.get_vectors(list(by_id), workspace)

    hits = []
    for rid, vector in vectors.items():
        if vector.shape != query_vector.shape:
            continue
        similarity = cosine_similarity(query_vector, vector)
        if similarity >= min_similarity:
            hits.append((by_id[rid], similarity))
    hits.sort(key=lambda hit: hit[1], reverse=True)
    return hits
