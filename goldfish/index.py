"""Global embedding store.

One SQLite database (``<root>/index.db``) holds the vectors of every
workspace; rows are told apart by their ``workspace`` column. Queries always
filter by workspace unless the caller explicitly asks for ``"all"``.

Vectors are stored as float32 blobs and compared with brute-force cosine
similarity (numpy), which is plenty for the size of a personal checkpoint log.
"""

import logging
import sqlite3
import threading
import time
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from pathlib import Path

import numpy as np

from goldfish.embeddings import cosine_similarity_matrix
from goldfish.workspace import SCOPE_ALL

logger = logging.getLogger(__name__)


def entry_id(workspace: str, date: str, position: int) -> str:
    """Deterministic record ID: ``{workspace}:{date}:{position}``."""
    return f"{workspace}:{date}:{position}"


def memory_entry_id(workspace: str, date: str, line: int) -> str:
    """Record ID of a stored memory: ``{workspace}:memories:{date}:{line}``."""
    return f"{workspace}:memories:{date}:{line}"


@dataclass(frozen=True)
class EmbeddingRecord:
    id: str
    workspace: str
    file_path: str
    position: int
    vector: np.ndarray
    content_hash: str
    created_at: float = 0.0


@dataclass(frozen=True)
class VectorSearchResult:
    id: str
    workspace: str
    similarity: float


class EmbeddingIndex:
    """SQLite-backed vector table shared by every workspace.

    A single instance is shared by all sync engines in the process; an
    internal lock serializes access to the connection.
    """

    def __init__(self, db_path: Path):
        self._db_path = Path(db_path)
        self._lock = threading.Lock()
        self._conn: sqlite3.Connection | None = None
        self._init_db()

    def _init_db(self) -> None:
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(str(self._db_path), check_same_thread=False)
        # Several agent sessions may sync at once
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute("PRAGMA busy_timeout=5000")

        self._conn.executescript("""
            CREATE TABLE IF NOT EXISTS embeddings (
                id TEXT PRIMARY KEY,
                workspace TEXT NOT NULL,
                file_path TEXT NOT NULL,
                position INTEGER NOT NULL,
                vector BLOB NOT NULL,
                content_hash TEXT NOT NULL,
                created_at REAL NOT NULL
            );
            CREATE INDEX IF NOT EXISTS idx_embeddings_workspace ON embeddings(workspace);
            CREATE INDEX IF NOT EXISTS idx_embeddings_hash ON embeddings(content_hash);

            CREATE TABLE IF NOT EXISTS workspaces (
                workspace TEXT PRIMARY KEY,
                full_path TEXT,
                last_synced REAL,
                memory_count INTEGER DEFAULT 0
            );
        """)
        self._conn.commit()

    @property
    def db_path(self) -> Path:
        return self._db_path

    def _connection(self) -> sqlite3.Connection:
        if self._conn is None:
            raise RuntimeError("EmbeddingIndex is closed")
        return self._conn

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    @staticmethod
    def _row(record: EmbeddingRecord) -> tuple:
        vector = np.asarray(record.vector, dtype=np.float32)
        return (
            record.id,
            record.workspace,
            record.file_path,
            record.position,
            vector.tobytes(),
            record.content_hash,
            record.created_at or time.time(),
        )

    def upsert(self, record: EmbeddingRecord) -> None:
        """Insert or replace one record."""
        self.upsert_batch([record])

    def upsert_batch(self, records: Iterable[EmbeddingRecord]) -> int:
        """Insert or replace records in a single transaction."""
        rows = [self._row(r) for r in records]
        if not rows:
            return 0
        with self._lock:
            conn = self._connection()
            with conn:
                conn.executemany(
                    """
                    INSERT OR REPLACE INTO embeddings
                        (id, workspace, file_path, position, vector, content_hash, created_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?)
                    """,
                    rows,
                )
        return len(rows)

    def delete(self, record_id: str) -> bool:
        with self._lock:
            conn = self._connection()
            with conn:
                cursor = conn.execute("DELETE FROM embeddings WHERE id = ?", (record_id,))
        return cursor.rowcount > 0

    def delete_workspace(self, workspace: str) -> int:
        """Purge every record of a workspace, plus its metadata row."""
        with self._lock:
            conn = self._connection()
            with conn:
                cursor = conn.execute("DELETE FROM embeddings WHERE workspace = ?", (workspace,))
                conn.execute("DELETE FROM workspaces WHERE workspace = ?", (workspace,))
        logger.info(f"Deleted {cursor.rowcount} embeddings for workspace {workspace}")
        return cursor.rowcount

    def update_workspace_metadata(self, workspace: str, full_path: str | None = None) -> None:
        """Record a sync: last_synced = now, memory_count = current row count."""
        with self._lock:
            conn = self._connection()
            with conn:
                (count,) = conn.execute(
                    "SELECT COUNT(*) FROM embeddings WHERE workspace = ?", (workspace,)
                ).fetchone()
                conn.execute(
                    """
                    INSERT INTO workspaces (workspace, full_path, last_synced, memory_count)
                    VALUES (?, ?, ?, ?)
                    ON CONFLICT(workspace) DO UPDATE SET
                        full_path = COALESCE(excluded.full_path, workspaces.full_path),
                        last_synced = excluded.last_synced,
                        memory_count = excluded.memory_count
                    """,
                    (workspace, full_path, time.time(), count),
                )

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get(self, record_id: str) -> EmbeddingRecord | None:
        with self._lock:
            row = self._connection().execute(
                """
                SELECT id, workspace, file_path, position, vector, content_hash, created_at
                FROM embeddings WHERE id = ?
                """,
                (record_id,),
            ).fetchone()
        if row is None:
            return None
        rid, workspace, file_path, position, blob, content_hash, created_at = row
        return EmbeddingRecord(
            id=rid,
            workspace=workspace,
            file_path=file_path,
            position=position,
            vector=np.frombuffer(blob, dtype=np.float32),
            content_hash=content_hash,
            created_at=created_at,
        )

    def exists_with_hash(self, record_id: str, content_hash: str) -> bool:
        """True if the record exists and was built from the same content."""
        with self._lock:
            row = self._connection().execute(
                "SELECT 1 FROM embeddings WHERE id = ? AND content_hash = ?",
                (record_id, content_hash),
            ).fetchone()
        return row is not None

    def get_vectors(self, ids: Sequence[str], workspace: str) -> dict[str, np.ndarray]:
        """Vectors for the given IDs; IDs without a record are absent.

        ``workspace`` filters rows unless it is ``"all"``.
        """
        if not ids:
            return {}
        vectors: dict[str, np.ndarray] = {}
        id_list = list(dict.fromkeys(ids))
        # Stay under SQLite's bound-parameter limit
        chunk_size = 500
        with self._lock:
            conn = self._connection()
            for start in range(0, len(id_list), chunk_size):
                chunk = id_list[start : start + chunk_size]
                placeholders = ",".join("?" * len(chunk))
                sql = f"SELECT id, vector FROM embeddings WHERE id IN ({placeholders})"
                params: list = list(chunk)
                if workspace != SCOPE_ALL:
                    sql += " AND workspace = ?"
                    params.append(workspace)
                for rid, blob in conn.execute(sql, params):
                    vectors[rid] = np.frombuffer(blob, dtype=np.float32)
        return vectors

    def search(
        self,
        query: np.ndarray,
        workspace: str,
        limit: int = 10,
        min_similarity: float = 0.0,
    ) -> list[VectorSearchResult]:
        """Nearest records by cosine similarity, best first."""
        sql = "SELECT id, workspace, vector FROM embeddings"
        params: tuple = ()
        if workspace != SCOPE_ALL:
            sql += " WHERE workspace = ?"
            params = (workspace,)

        with self._lock:
            rows = self._connection().execute(sql, params).fetchall()

        query = np.asarray(query, dtype=np.float32)
        rows = [r for r in rows if len(r[2]) == query.nbytes]
        if not rows:
            return []

        matrix = np.vstack([np.frombuffer(r[2], dtype=np.float32) for r in rows])
        sims = cosine_similarity_matrix(query, matrix)

        results = [
            VectorSearchResult(id=rid, workspace=ws, similarity=float(sim))
            for (rid, ws, _), sim in zip(rows, sims)
            if sim >= min_similarity
        ]
        results.sort(key=lambda r: r.similarity, reverse=True)
        return results[:limit] if limit > 0 else results

    def count(self) -> int:
        with self._lock:
            (n,) = self._connection().execute("SELECT COUNT(*) FROM embeddings").fetchone()
        return n

    def count_workspace(self, workspace: str) -> int:
        with self._lock:
            (n,) = self._connection().execute(
                "SELECT COUNT(*) FROM embeddings WHERE workspace = ?", (workspace,)
            ).fetchone()
        return n

    def list_workspaces(self) -> list[dict]:
        """Metadata rows for every synced workspace, sorted by name."""
        with self._lock:
            rows = self._connection().execute(
                """
                SELECT workspace, full_path, last_synced, memory_count
                FROM workspaces ORDER BY workspace
                """
            ).fetchall()
        return [
            {
                "workspace": ws,
                "full_path": full_path,
                "last_synced": last_synced,
                "memory_count": memory_count,
            }
            for ws, full_path, last_synced, memory_count in rows
        ]

    def close(self) -> None:
        with self._lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None
