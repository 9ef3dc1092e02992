"""Workspace detection and normalization.

A workspace is the namespace for one project's checkpoints, plans and
embeddings. Each workspace gets its own directory under the storage root,
named by a normalized slug.

Examples:
    /Users/murphy/source/goldfish -> goldfish
    C:\\source\\goldfish            -> goldfish
    @coa/goldfish-mcp             -> coa-goldfish-mcp
    My Project!                   -> my-project
"""

import re
from pathlib import Path

DEFAULT_WORKSPACE = "default"

# Reserved scope names accepted by recall
SCOPE_CURRENT = "current"
SCOPE_ALL = "all"


def normalize_workspace(path_or_name: str) -> str:
    """Normalize a path or package name to a workspace slug."""
    name = path_or_name.strip()

    # Package names (@org/name -> org-name) before the path check
    if name.startswith("@"):
        name = name[1:].replace("/", "-")
    elif "/" in name or "\\" in name:
        name = re.split(r"[/\\]", name.rstrip("/\\"))[-1]

    name = re.sub(r"[^a-z0-9]+", "-", name.lower()).strip("-")
    return name or DEFAULT_WORKSPACE


def current_workspace(cwd: Path | None = None) -> str:
    """Workspace for the current (or given) working directory."""
    return normalize_workspace(str(cwd or Path.cwd()))


def resolve_workspace(workspace: str | None, cwd: Path | None = None) -> str:
    """Map ``None``/``"current"`` to the current workspace, normalize the rest."""
    if not workspace or workspace == SCOPE_CURRENT:
        return current_workspace(cwd)
    return normalize_workspace(workspace)


def workspace_path(root: Path, workspace: str) -> Path:
    """Storage directory for a workspace."""
    return root / normalize_workspace(workspace)


def checkpoints_dir(root: Path, workspace: str) -> Path:
    return workspace_path(root, workspace) / "checkpoints"


def plans_dir(root: Path, workspace: str) -> Path:
    return workspace_path(root, workspace) / "plans"


def memories_dir(root: Path, workspace: str) -> Path:
    return workspace_path(root, workspace) / "memories"


def ensure_workspace_dir(root: Path, workspace: str) -> Path:
    """Create ``checkpoints/`` and ``plans/`` for a workspace; return its path."""
    base = workspace_path(root, workspace)
    (base / "checkpoints").mkdir(parents=True, exist_ok=True, mode=0o700)
    (base / "plans").mkdir(parents=True, exist_ok=True, mode=0o700)
    return base


def list_workspaces(root: Path) -> list[str]:
    """All workspace directories under the root, sorted by name."""
    try:
        entries = list(root.iterdir())
    except FileNotFoundError:
        return []
    return sorted(
        entry.name for entry in entries if entry.is_dir() and not entry.name.startswith(".")
    )
