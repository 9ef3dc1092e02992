"""Goldfish: checkpoint memory for AI coding agents."""

__version__ = "0.1.0"

from goldfish.checkpoints import Checkpoint
from goldfish.config import GoldfishConfig
from goldfish.core import Goldfish
from goldfish.memories import Memory, MemoryEntry
from goldfish.recall import RecallOptions, RecallResult
from goldfish.sync import SyncStats

__all__ = [
    "__version__",
    "Checkpoint",
    "Goldfish",
    "GoldfishConfig",
    "Memory",
    "MemoryEntry",
    "RecallOptions",
    "RecallResult",
    "SyncStats",
]
