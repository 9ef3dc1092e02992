"""Shared fixtures for Goldfish tests."""

import hashlib
import re
from datetime import timedelta
from pathlib import Path

import numpy as np
import pytest

from goldfish.checkpoints import CheckpointLog, create_checkpoint, utc_now
from goldfish.config import GoldfishConfig
from goldfish.core import Goldfish
from goldfish.errors import GoldfishError, err, ok
from goldfish.git import GitContext


class FakeProvider:
    """Deterministic bag-of-words embedder that counts its calls."""

    name = "fake"

    def __init__(self, dimensions: int = 384, available: bool = True, fail_on: str | None = None):
        self.dimensions = dimensions
        self.available = available
        self.fail_on = fail_on
        self.calls = 0
        self.texts: list[str] = []

    def probe(self) -> bool:
        return self.available

    def embed(self, text: str):
        self.calls += 1
        self.texts.append(text)
        if self.fail_on and self.fail_on in text:
            return err(GoldfishError(code="embedding_failed", message="boom"))
        vector = np.zeros(self.dimensions, dtype=np.float32)
        for word in re.findall(r"[a-z0-9]+", text.lower()):
            bucket = int(hashlib.md5(word.encode()).hexdigest(), 16) % self.dimensions
            vector[bucket] += 1.0
        return ok(vector)

    def embed_batch(self, texts):
        return [self.embed(t) for t in texts]


@pytest.fixture
def root(tmp_path: Path) -> Path:
    return tmp_path / "goldfish"


@pytest.fixture
def config(root: Path) -> GoldfishConfig:
    return GoldfishConfig(root=root, embedding_backend="none")


@pytest.fixture
def log(root: Path) -> CheckpointLog:
    return CheckpointLog(root)


@pytest.fixture
def provider() -> FakeProvider:
    return FakeProvider()


@pytest.fixture
def runtime(config: GoldfishConfig):
    """Runtime with semantic search off."""
    gf = Goldfish(config, provider=FakeProvider(available=False), background=False)
    yield gf
    gf.close()


@pytest.fixture
def semantic_runtime(config: GoldfishConfig, provider: FakeProvider):
    """Runtime with the fake embedder and no background worker."""
    gf = Goldfish(config, provider=provider, background=False)
    yield gf
    gf.close()


def add_checkpoint(log: CheckpointLog, workspace: str, description: str, minutes_ago: int = 0, **kwargs):
    """Append a checkpoint stamped ``minutes_ago`` minutes before now."""
    git = GitContext(
        branch=kwargs.pop("branch", None),
        commit=kwargs.pop("commit", None),
        files=tuple(kwargs.pop("files", ())) or None,
    )
    checkpoint = create_checkpoint(
        description,
        tags=kwargs.pop("tags", None),
        git_context=git,
        timestamp=utc_now() - timedelta(minutes=minutes_ago),
    )
    log.append(workspace, checkpoint)
    return checkpoint
