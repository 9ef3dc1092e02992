"""Configuration management for Goldfish.

Storage Structure
-----------------
Everything lives under a single user-level root (never inside a project)::

    ~/.goldfish/                       # or $GOLDFISH_HOME
    ├── config.yaml                    # Tuning and external tool settings
    ├── index.db                       # Global embedding store (all workspaces)
    ├── goldfish.log                   # Operations log
    └── <workspace>/
        ├── checkpoints/YYYY-MM-DD.md  # Daily append-only logs
        ├── plans/<id>.md              # Plan files
        └── .active-plan               # Active plan ID

Configuration
-------------
**GoldfishConfig** is loaded from ``<root>/config.yaml``. Unknown keys are
ignored, missing keys fall back to defaults, and a few environment variables
override the file:

- ``GOLDFISH_HOME``: storage root
- ``GOLDFISH_EMBEDDING_BACKEND``: command | sentence-transformers | none
- ``GOLDFISH_DISTILL_PROVIDER``: auto | claude | gemini | none
"""

import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any

import yaml

DEFAULT_ROOT = Path.home() / ".goldfish"
CONFIG_FILENAME = "config.yaml"
INDEX_FILENAME = "index.db"

DEFAULT_EMBEDDING_COMMAND = [
    "julie-semantic",
    "query",
    "--text",
    "{text}",
    "--model",
    "bge-small",
    "--format",
    "json",
]

EMBEDDING_BACKENDS = ("command", "sentence-transformers", "none")
DISTILL_PROVIDERS = ("auto", "claude", "gemini", "none")


def get_root() -> Path:
    """Resolve the storage root, honoring ``GOLDFISH_HOME``."""
    if env_root := os.environ.get("GOLDFISH_HOME"):
        return Path(env_root).expanduser()
    return DEFAULT_ROOT


@dataclass
class GoldfishConfig:
    """User-configurable settings for storage, recall and external tools."""

    root: Path = field(default_factory=get_root)

    # Recall defaults
    default_limit: int = 10
    default_days: int = 2
    min_similarity: float = 0.0

    # Embedding generation
    embedding_backend: str = "command"
    embedding_command: list[str] = field(default_factory=lambda: list(DEFAULT_EMBEDDING_COMMAND))
    embedding_model: str = "bge-small"
    embedding_dimensions: int = 384
    embedding_timeout: float = 30.0
    embedding_batch_size: int = 100

    # Distillation
    distill_provider: str = "auto"
    distill_timeout: float = 30.0
    distill_max_tokens: int = 500

    # Background embedding worker
    background_queue_size: int = 64

    @property
    def index_path(self) -> Path:
        return self.root / INDEX_FILENAME

    @property
    def config_path(self) -> Path:
        return self.root / CONFIG_FILENAME

    @classmethod
    def load(cls, root: Path | None = None) -> "GoldfishConfig":
        """Load config from ``<root>/config.yaml`` plus environment overrides.

        Args:
            root: Storage root. Defaults to ``GOLDFISH_HOME`` or ~/.goldfish.

        Returns:
            GoldfishConfig with values from file, or defaults if not found
        """
        root = Path(root) if root is not None else get_root()
        overrides: dict[str, Any] = {}

        config_path = root / CONFIG_FILENAME
        if config_path.exists():
            with open(config_path) as f:
                try:
                    data = yaml.safe_load(f) or {}
                except yaml.YAMLError as e:
                    raise ValueError(f"Invalid {config_path}: {e}") from e
            if not isinstance(data, dict):
                raise ValueError(f"Invalid {config_path}: expected a mapping of settings")
            # Only apply known fields - use dataclass fields, not hasattr (security)
            valid_fields = {f.name for f in fields(cls)} - {"root"}
            overrides = {k: v for k, v in data.items() if k in valid_fields}

        if backend := os.environ.get("GOLDFISH_EMBEDDING_BACKEND"):
            overrides["embedding_backend"] = backend
        if provider := os.environ.get("GOLDFISH_DISTILL_PROVIDER"):
            overrides["distill_provider"] = provider

        config = cls(root=root, **overrides)
        config.validate()
        return config

    def validate(self) -> None:
        """Reject settings that would break recall or embedding."""
        if self.embedding_backend not in EMBEDDING_BACKENDS:
            raise ValueError(
                f"Unknown embedding_backend {self.embedding_backend!r} "
                f"(expected one of {', '.join(EMBEDDING_BACKENDS)})"
            )
        if self.distill_provider not in DISTILL_PROVIDERS:
            raise ValueError(
                f"Unknown distill_provider {self.distill_provider!r} "
                f"(expected one of {', '.join(DISTILL_PROVIDERS)})"
            )
        if self.embedding_dimensions <= 0:
            raise ValueError("embedding_dimensions must be positive")

    def save(self) -> Path:
        """Save non-default settings to ``<root>/config.yaml``.

        Returns:
            Path to saved config file
        """
        self.root.mkdir(parents=True, exist_ok=True)

        # Only save non-default values to keep file clean
        defaults = GoldfishConfig(root=self.root)
        data = {}
        for key, value in self.to_dict().items():
            if getattr(defaults, key) != value:
                data[key] = value

        if not data:
            data = {"_version": 1}  # Marker that config was explicitly saved

        with open(self.config_path, "w") as f:
            yaml.safe_dump(data, f, default_flow_style=False)
        self.config_path.chmod(0o600)

        return self.config_path

    def to_dict(self) -> dict[str, Any]:
        """Convert config to dictionary (root excluded)."""
        return {f.name: getattr(self, f.name) for f in fields(self) if f.name != "root"}
