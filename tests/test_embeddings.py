"""Tests for goldfish.embeddings module."""

import json
import subprocess
from datetime import UTC, datetime
from unittest.mock import MagicMock, patch

import numpy as np
import pytest

from goldfish.checkpoints import Checkpoint
from goldfish.config import GoldfishConfig
from goldfish.embeddings import (
    CommandEmbeddingProvider,
    NullEmbeddingProvider,
    SentenceTransformerProvider,
    build_embedding_text,
    cosine_similarity,
    cosine_similarity_matrix,
    create_provider,
)


def _completed(stdout: str = "", returncode: int = 0, stderr: str = "") -> MagicMock:
    return MagicMock(stdout=stdout, returncode=returncode, stderr=stderr)


class TestBuildEmbeddingText:
    def test_description_tags_branch(self):
        """Embedding text joins description, tags and branch."""
        cp = Checkpoint(
            timestamp=datetime(2025, 10, 14, tzinfo=UTC),
            description="Fixed auth",
            tags=("bug", "jwt"),
            git_branch="main",
            files=("ignored.py",),
        )
        assert build_embedding_text(cp) == "Fixed auth bug jwt main"

    def test_description_only(self):
        """A bare checkpoint embeds its description alone."""
        cp = Checkpoint(timestamp=datetime(2025, 10, 14, tzinfo=UTC), description="Plain")
        assert build_embedding_text(cp) == "Plain"


class TestCosineSimilarity:
    def test_identical_vectors(self):
        """Identical vectors have similarity 1."""
        v = np.array([1.0, 2.0, 3.0])
        assert cosine_similarity(v, v) == pytest.approx(1.0)

    def test_orthogonal_vectors(self):
        """Orthogonal vectors have similarity 0."""
        assert cosine_similarity(np.array([1.0, 0.0]), np.array([0.0, 1.0])) == pytest.approx(0.0)

    def test_zero_vector(self):
        """A zero vector has similarity 0."""
        assert cosine_similarity(np.zeros(3), np.ones(3)) == 0.0

    def test_dimension_mismatch(self):
        """Vectors of different sizes are rejected."""
        with pytest.raises(ValueError):
            cosine_similarity(np.ones(2), np.ones(3))

    def test_matrix(self):
        """Similarity against a matrix gives one score per row."""
        query = np.array([1.0, 0.0])
        matrix = np.array([[1.0, 0.0], [0.0, 1.0], [0.0, 0.0]])

        sims = cosine_similarity_matrix(query, matrix)

        assert sims.tolist() == pytest.approx([1.0, 0.0, 0.0])


class TestCommandEmbeddingProvider:
    """Tests for the external embedder provider."""

    def test_substitutes_text_into_argv(self):
        """The text replaces the placeholder in the command."""
        provider = CommandEmbeddingProvider(["embedder", "--text", "{text}"], dimensions=3)
        with patch(
            "goldfish.embeddings.subprocess.run", return_value=_completed(json.dumps([0.1, 0.2, 0.3]))
        ) as run:
            result = provider.embed("hello world")

        assert result.is_ok()
        assert result.unwrap().dtype == np.float32
        assert run.call_args[0][0] == ["embedder", "--text", "hello world"]
        assert run.call_args[1]["timeout"] == 30.0

    def test_wrong_dimensions(self):
        """Output of the wrong size is an error."""
        provider = CommandEmbeddingProvider(["embedder"], dimensions=384)
        with patch("goldfish.embeddings.subprocess.run", return_value=_completed("[1.0, 2.0]")):
            result = provider.embed("text")

        assert result.is_err()
        assert result.unwrap_err().code == "embedding_dimension_mismatch"

    def test_invalid_json(self):
        """Non-JSON output is an error."""
        provider = CommandEmbeddingProvider(["embedder"], dimensions=3)
        with patch("goldfish.embeddings.subprocess.run", return_value=_completed("not json")):
            assert provider.embed("text").unwrap_err().code == "embedding_invalid_output"

    def test_non_numeric_output(self):
        """Non-numeric output is an error."""
        provider = CommandEmbeddingProvider(["embedder"], dimensions=1)
        with patch("goldfish.embeddings.subprocess.run", return_value=_completed('["a"]')):
            assert provider.embed("text").unwrap_err().code == "embedding_invalid_output"

    def test_nonzero_exit(self):
        """A failing command is an error."""
        provider = CommandEmbeddingProvider(["embedder"], dimensions=3)
        with patch(
            "goldfish.embeddings.subprocess.run",
            return_value=_completed(returncode=1, stderr="model missing"),
        ):
            error = provider.embed("text").unwrap_err()

        assert error.code == "embedding_failed"
        assert "model missing" in error.message

    def test_timeout(self):
        """A hung command is an error."""
        provider = CommandEmbeddingProvider(["embedder"], dimensions=3, timeout=0.5)
        with patch(
            "goldfish.embeddings.subprocess.run",
            side_effect=subprocess.TimeoutExpired(cmd="embedder", timeout=0.5),
        ):
            assert provider.embed("text").unwrap_err().code == "embedding_timeout"

    def test_missing_executable(self):
        """A missing executable is an error."""
        provider = CommandEmbeddingProvider(["embedder"], dimensions=3)
        with patch("goldfish.embeddings.subprocess.run", side_effect=FileNotFoundError()):
            assert provider.embed("text").unwrap_err().code == "embedding_unavailable"

    def test_empty_text_not_sent(self):
        """Empty text is rejected without running the command."""
        provider = CommandEmbeddingProvider(["embedder"], dimensions=3)
        with patch("goldfish.embeddings.subprocess.run") as run:
            assert provider.embed("  ").is_err()
        run.assert_not_called()

    def test_probe_is_cached(self):
        """Availability is checked once."""
        provider = CommandEmbeddingProvider(["embedder"])
        with patch("goldfish.embeddings.shutil.which", return_value=None) as which:
            assert provider.probe() is False
            assert provider.probe() is False
        assert which.call_count == 1

    def test_empty_command_rejected(self):
        """An empty command is rejected up front."""
        with pytest.raises(ValueError):
            CommandEmbeddingProvider([])


class TestSentenceTransformerProvider:
    def test_batch_uses_model(self):
        """Batches go through the model in one call."""
        provider = SentenceTransformerProvider("bge-small", dimensions=2)
        model = MagicMock()
        model.encode.return_value = np.array([[0.6, 0.8], [1.0, 0.0]])
        provider._model = model

        results = provider.embed_batch(["a", "b"])

        assert [r.is_ok() for r in results] == [True, True]
        assert model.encode.call_count == 1

    def test_encode_failure_fails_every_item(self):
        """A failed batch encode fails every item."""
        provider = SentenceTransformerProvider("bge-small", dimensions=2)
        model = MagicMock()
        model.encode.side_effect = RuntimeError("oom")
        provider._model = model

        results = provider.embed_batch(["a", "b"])

        assert all(r.is_err() for r in results)


class TestCreateProvider:
    def test_backends(self, tmp_path):
        """Each backend name builds its provider."""
        assert isinstance(
            create_provider(GoldfishConfig(root=tmp_path)), CommandEmbeddingProvider
        )
        assert isinstance(
            create_provider(GoldfishConfig(root=tmp_path, embedding_backend="sentence-transformers")),
            SentenceTransformerProvider,
        )
        assert isinstance(
            create_provider(GoldfishConfig(root=tmp_path, embedding_backend="none")),
            NullEmbeddingProvider,
        )

    def test_null_provider_is_never_available(self):
        """The null provider is never available."""
        provider = NullEmbeddingProvider()
        assert provider.probe() is False
        assert provider.embed("x").is_err()
