"""Embedding generation for semantic recall.

This module provides:
- Embedding text construction for checkpoints and memories
- Cosine similarity computation (numpy)
- Embedding providers:
    * CommandEmbeddingProvider - an external executable printing a JSON vector
    * SentenceTransformerProvider - an in-process sentence-transformers model
    * NullEmbeddingProvider - semantic search disabled

Semantic search is a capability, not a requirement: every provider exposes
``probe()``, and a provider that is missing or broken only disables vector
ranking. Generation failures come back as ``Err`` results and are logged,
never raised.
"""

from __future__ import annotations

import json
import logging
import shutil
import subprocess
from typing import TYPE_CHECKING, Protocol

import numpy as np

from goldfish.config import GoldfishConfig
from goldfish.errors import GoldfishError, Result, err, ok

if TYPE_CHECKING:
    from sentence_transformers import SentenceTransformer

    from goldfish.checkpoints import Checkpoint
    from goldfish.memories import Memory

logger = logging.getLogger(__name__)

# Output buffer cap for the external embedder (10MB)
MAX_OUTPUT_BYTES = 10 * 1024 * 1024


def build_embedding_text(checkpoint: Checkpoint) -> str:
    """Text that represents a checkpoint for embedding: description, tags, branch."""
    parts = [checkpoint.description]
    if checkpoint.tags:
        parts.append(" ".join(checkpoint.tags))
    if checkpoint.git_branch:
        parts.append(checkpoint.git_branch)
    return " ".join(parts)


def build_memory_embedding_text(memory: Memory) -> str:
    """Text that represents a stored memory: content, then tags."""
    if memory.tags:
        return f"{memory.content} {' '.join(memory.tags)}"
    return memory.content


def cosine_similarity(a: np.ndarray, b: np.ndarray) -> float:
    """Compute cosine similarity between two vectors.

    Returns:
        Cosine similarity (-1 to 1); 0.0 for empty or zero vectors
    """
    if a.size == 0 or b.size == 0:
        return 0.0
    if a.shape != b.shape:
        raise ValueError(f"Vector dimensions must match: {a.shape} != {b.shape}")

    magnitude = float(np.linalg.norm(a) * np.linalg.norm(b))
    if magnitude == 0.0:
        return 0.0
    return float(np.dot(a, b) / magnitude)


def cosine_similarity_matrix(query: np.ndarray, embeddings: np.ndarray) -> np.ndarray:
    """Compute cosine similarities between a query and a matrix of embeddings.

    Args:
        query: Single query embedding (1D array)
        embeddings: Matrix of embeddings (2D array, shape: [n, dim])

    Returns:
        Array of similarity scores (shape: [n])
    """
    if query.size == 0 or embeddings.size == 0:
        return np.array([])

    norms = np.linalg.norm(embeddings, axis=1) * np.linalg.norm(query)
    dots = embeddings @ query
    with np.errstate(divide="ignore", invalid="ignore"):
        sims = np.where(norms > 0, dots / norms, 0.0)
    return sims


class EmbeddingProvider(Protocol):
    """Anything that can turn text into fixed-length vectors."""

    name: str
    dimensions: int

    def probe(self) -> bool: ...

    def embed(self, text: str) -> Result[np.ndarray, GoldfishError]: ...

    def embed_batch(self, texts: list[str]) -> list[Result[np.ndarray, GoldfishError]]: ...


def _check_vector(values, dimensions: int) -> Result[np.ndarray, GoldfishError]:
    if not isinstance(values, list) or not all(isinstance(v, (int, float)) for v in values):
        return err(
            GoldfishError(
                code="embedding_invalid_output",
                message="Embedder output is not a list of numbers",
                context={},
            )
        )
    if len(values) != dimensions:
        return err(
            GoldfishError(
                code="embedding_dimension_mismatch",
                message=f"Invalid embedding dimensions: expected {dimensions}, got {len(values)}",
                context={"expected": dimensions, "actual": len(values)},
            )
        )
    return ok(np.asarray(values, dtype=np.float32))


def _empty_text_error() -> Result[np.ndarray, GoldfishError]:
    return err(GoldfishError(code="embedding_empty_text", message="Cannot embed empty text", context={}))


# ============================================================================
# External command provider
# ============================================================================


class CommandEmbeddingProvider:
    """Runs an external embedder once per text.

    The command is an argv template; ``{text}`` is replaced by the text. The
    process must print a JSON array of ``dimensions`` floats on stdout and
    exit 0. Anything else is a failure for that text.
    """

    def __init__(self, command: list[str], dimensions: int = 384, timeout: float = 30.0):
        if not command:
            raise ValueError("Embedding command must not be empty")
        self.command = list(command)
        self.dimensions = dimensions
        self.timeout = timeout
        self.name = command[0]
        self._available: bool | None = None

    def probe(self) -> bool:
        """Check the executable exists (cached after the first call)."""
        if self._available is None:
            self._available = shutil.which(self.command[0]) is not None
            if self._available:
                logger.info(f"Found embedder {self.command[0]}")
            else:
                logger.warning(
                    f"{self.command[0]} not found - semantic search disabled, fuzzy search only"
                )
        return self._available

    def _argv(self, text: str) -> list[str]:
        return [arg.replace("{text}", text) for arg in self.command]

    def embed(self, text: str) -> Result[np.ndarray, GoldfishError]:
        if not text or not text.strip():
            return _empty_text_error()

        try:
            # Security: shell=False, text travels as a single argv element
            result = subprocess.run(
                self._argv(text),  # noqa: S603
                capture_output=True,
                text=True,
                timeout=self.timeout,
            )
        except subprocess.TimeoutExpired:
            return err(
                GoldfishError(
                    code="embedding_timeout",
                    message=f"{self.name} timed out after {self.timeout}s",
                    context={"timeout": self.timeout},
                )
            )
        except OSError as e:
            return err(
                GoldfishError(
                    code="embedding_unavailable",
                    message=f"Failed to run {self.name}: {e}",
                    context={"command": self.name},
                )
            )

        if result.returncode != 0:
            return err(
                GoldfishError(
                    code="embedding_failed",
                    message=f"{self.name} exited with {result.returncode}: {result.stderr.strip()[:200]}",
                    context={"returncode": result.returncode},
                )
            )

        stdout = result.stdout[:MAX_OUTPUT_BYTES].strip()
        try:
            values = json.loads(stdout)
        except json.JSONDecodeError as e:
            return err(
                GoldfishError(
                    code="embedding_invalid_output",
                    message=f"Invalid JSON from {self.name}: {e}",
                    context={},
                )
            )
        return _check_vector(values, self.dimensions)

    def embed_batch(self, texts: list[str]) -> list[Result[np.ndarray, GoldfishError]]:
        return [self.embed(text) for text in texts]


# ============================================================================
# In-process sentence-transformers provider
# ============================================================================


class SentenceTransformerProvider:
    """Lazily loads a sentence-transformers model and embeds in batches."""

    def __init__(self, model_name: str, dimensions: int = 384):
        self.model_name = model_name
        self.dimensions = dimensions
        self.name = f"sentence-transformers:{model_name}"
        self._model: SentenceTransformer | None = None

    def probe(self) -> bool:
        """Check if sentence-transformers is installed."""
        try:
            import sentence_transformers  # noqa: F401

            return True
        except ImportError:
            logger.warning("sentence-transformers not installed - semantic search disabled")
            return False

    def _get_model(self) -> Result[SentenceTransformer, GoldfishError]:
        if self._model is not None:
            return ok(self._model)
        try:
            from sentence_transformers import SentenceTransformer

            logger.info(f"Loading embedding model: {self.model_name}")
            self._model = SentenceTransformer(self.model_name)
            return ok(self._model)
        except Exception as e:
            return err(
                GoldfishError(
                    code="model_load_failed",
                    message=f"Failed to load embedding model: {e}",
                    context={"model_name": self.model_name},
                )
            )

    def embed(self, text: str) -> Result[np.ndarray, GoldfishError]:
        return self.embed_batch([text])[0]

    def embed_batch(self, texts: list[str]) -> list[Result[np.ndarray, GoldfishError]]:
        if not texts:
            return []
        model_result = self._get_model()
        if model_result.is_err():
            return [err(model_result.unwrap_err()) for _ in texts]

        model = model_result.unwrap()
        try:
            vectors = model.encode(texts, convert_to_numpy=True, normalize_embeddings=True)
        except Exception as e:
            error = GoldfishError(
                code="embedding_failed",
                message=f"Failed to generate batch embeddings: {e}",
                context={"batch_size": len(texts)},
            )
            return [err(error) for _ in texts]

        results: list[Result[np.ndarray, GoldfishError]] = []
        for text, vector in zip(texts, vectors):
            if not text.strip():
                results.append(_empty_text_error())
            else:
                results.append(_check_vector([float(v) for v in vector], self.dimensions))
        return results


class NullEmbeddingProvider:
    """Semantic search turned off."""

    name = "none"

    def __init__(self, dimensions: int = 384):
        self.dimensions = dimensions

    def probe(self) -> bool:
        return False

    def embed(self, text: str) -> Result[np.ndarray, GoldfishError]:
        return err(
            GoldfishError(code="embeddings_disabled", message="Semantic search is disabled", context={})
        )

    def embed_batch(self, texts: list[str]) -> list[Result[np.ndarray, GoldfishError]]:
        return [self.embed(text) for text in texts]


def create_provider(config: GoldfishConfig) -> EmbeddingProvider:
    """Build the embedding provider selected by ``config.embedding_backend``."""
    if config.embedding_backend == "sentence-transformers":
        return SentenceTransformerProvider(config.embedding_model, config.embedding_dimensions)
    if config.embedding_backend == "command":
        return CommandEmbeddingProvider(
            config.embedding_command,
            dimensions=config.embedding_dimensions,
            timeout=config.embedding_timeout,
        )
    return NullEmbeddingProvider(config.embedding_dimensions)
