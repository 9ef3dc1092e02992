"""Plan storage.

Plans are longer-lived than checkpoints: one Markdown file per plan with
YAML frontmatter, under ``<root>/<workspace>/plans/<id>.md``. The active
plan's ID is kept in ``<root>/<workspace>/.active-plan``.

Every mutation holds the lock primitive on the plan file (or on the
pointer file) and publishes with an atomic rename, the same way checkpoint
appends do. A delete therefore waits for an outstanding writer.
"""

import logging
import re
from dataclasses import dataclass, field, replace
from datetime import datetime
from pathlib import Path

import yaml

from goldfish.atomic import atomic_write_or_raise
from goldfish.checkpoints import format_timestamp, utc_now
from goldfish.errors import PlanExistsError, PlanNotFoundError, ValidationError
from goldfish.lock import file_lock
from goldfish.workspace import ensure_workspace_dir, plans_dir, workspace_path

logger = logging.getLogger(__name__)

ACTIVE_PLAN_FILENAME = ".active-plan"
PLAN_STATUSES = ("active", "completed", "archived")
MAX_PLAN_ID_LENGTH = 50


@dataclass(frozen=True)
class Plan:
    id: str
    title: str
    content: str
    status: str = "active"
    created: str = ""
    updated: str = ""
    tags: tuple[str, ...] = field(default=())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "title": self.title,
            "content": self.content,
            "status": self.status,
            "created": self.created,
            "updated": self.updated,
            "tags": list(self.tags),
        }


def generate_plan_id(title: str) -> str:
    """Slug of a title, at most 50 characters."""
    slug = re.sub(r"[^a-z0-9]+", "-", title.lower()).strip("-")
    return slug[:MAX_PLAN_ID_LENGTH]


def _validate_id(plan_id: str) -> str:
    # IDs become file names
    if not plan_id or not re.fullmatch(r"[a-z0-9][a-z0-9_-]*", plan_id):
        raise ValidationError(f"Invalid plan ID: {plan_id!r}")
    return plan_id


def plan_path(root: Path, workspace: str, plan_id: str) -> Path:
    return plans_dir(root, workspace) / f"{_validate_id(plan_id)}.md"


def active_plan_path(root: Path, workspace: str) -> Path:
    return workspace_path(root, workspace) / ACTIVE_PLAN_FILENAME


# ============================================================================
# Serialization
# ============================================================================


def format_plan(plan: Plan) -> str:
    """Plan as Markdown with YAML frontmatter."""
    frontmatter = {
        "id": plan.id,
        "title": plan.title,
        "status": plan.status,
        "created": plan.created,
        "updated": plan.updated,
        "tags": list(plan.tags),
    }
    fm_yaml = yaml.safe_dump(
        frontmatter, default_flow_style=False, sort_keys=False, allow_unicode=True
    )
    return f"---\n{fm_yaml}---\n\n{plan.content}"


def _as_timestamp(value) -> str:
    if isinstance(value, datetime):
        return format_timestamp(value)
    return str(value) if value is not None else ""


def parse_plan(content: str) -> Plan:
    """Parse a plan file.

    Raises:
        ValidationError: if the frontmatter is missing or not valid YAML
    """
    if not content.startswith("---\n"):
        raise ValidationError("Invalid plan file: missing YAML frontmatter")
    end_idx = content.find("\n---\n", 3)
    if end_idx == -1:
        raise ValidationError("Invalid plan file: missing YAML frontmatter")

    fm_text = content[4:end_idx]
    body = content[end_idx + 5 :]
    if body.startswith("\n"):
        body = body[1:]

    try:
        fm = yaml.safe_load(fm_text) or {}
    except yaml.YAMLError as e:
        raise ValidationError(f"Invalid plan file: YAML parsing failed - {e}") from e

    return Plan(
        id=str(fm.get("id", "")),
        title=str(fm.get("title", "")),
        content=body,
        status=str(fm.get("status", "active")),
        created=_as_timestamp(fm.get("created")),
        updated=_as_timestamp(fm.get("updated")),
        tags=tuple(str(t) for t in fm.get("tags") or ()),
    )


# ============================================================================
# Operations
# ============================================================================


def _check_status(status: str) -> None:
    if status not in PLAN_STATUSES:
        raise ValidationError(
            f"Invalid plan status {status!r} (expected one of {', '.join(PLAN_STATUSES)})"
        )


def save_plan(
    root: Path,
    workspace: str,
    title: str,
    content: str,
    plan_id: str | None = None,
    status: str = "active",
    tags: list[str] | None = None,
    activate: bool = False,
) -> Plan:
    """Create a new plan.

    Raises:
        ValidationError: empty title or invalid status
        PlanExistsError: a plan with the same ID already exists
    """
    if not title or not title.strip():
        raise ValidationError("Plan title is required")
    _check_status(status)

    plan_id = plan_id or generate_plan_id(title)
    path = plan_path(root, workspace, plan_id)
    ensure_workspace_dir(root, workspace)

    now = format_timestamp(utc_now())
    plan = Plan(
        id=plan_id,
        title=title.strip(),
        content=content,
        status=status,
        created=now,
        updated=now,
        tags=tuple(tags or ()),
    )

    with file_lock(path):
        if path.exists():
            raise PlanExistsError(plan_id)
        atomic_write_or_raise(path, format_plan(plan))

    logger.info(f"Saved plan {plan_id} in {workspace}")
    if activate:
        set_active_plan(root, workspace, plan_id)
    return plan


def get_plan(root: Path, workspace: str, plan_id: str) -> Plan | None:
    """A plan by ID; None if it does not exist."""
    try:
        content = plan_path(root, workspace, plan_id).read_text(encoding="utf-8")
    except FileNotFoundError:
        return None
    return parse_plan(content)


def list_plans(root: Path, workspace: str) -> list[Plan]:
    """All plans of a workspace, most recently updated first."""
    directory = plans_dir(root, workspace)
    try:
        names = sorted(p.name for p in directory.iterdir())
    except FileNotFoundError:
        return []

    plans = []
    for name in names:
        if not name.endswith(".md") or name.startswith("."):
            continue
        try:
            plan = get_plan(root, workspace, name[: -len(".md")])
        except ValidationError as e:
            logger.warning(f"Skipping unreadable plan {name}: {e}")
            continue
        if plan is not None:
            plans.append(plan)

    plans.sort(key=lambda p: p.updated, reverse=True)
    return plans


def get_active_plan(root: Path, workspace: str) -> Plan | None:
    """The workspace's active plan, or None."""
    try:
        plan_id = active_plan_path(root, workspace).read_text(encoding="utf-8").strip()
    except FileNotFoundError:
        return None
    if not plan_id:
        return None
    try:
        return get_plan(root, workspace, plan_id)
    except ValidationError as e:
        logger.warning(f"Ignoring invalid active plan in {workspace}: {e}")
        return None


def set_active_plan(root: Path, workspace: str, plan_id: str) -> None:
    """Point ``.active-plan`` at an existing plan.

    Raises:
        PlanNotFoundError: the plan does not exist
    """
    if get_plan(root, workspace, plan_id) is None:
        raise PlanNotFoundError(plan_id)

    path = active_plan_path(root, workspace)
    with file_lock(path):
        atomic_write_or_raise(path, plan_id)


def update_plan(
    root: Path,
    workspace: str,
    plan_id: str,
    title: str | None = None,
    content: str | None = None,
    status: str | None = None,
    tags: list[str] | None = None,
) -> Plan:
    """Apply the given changes and bump ``updated``.

    Raises:
        PlanNotFoundError: the plan does not exist
        ValidationError: invalid status
    """
    if status is not None:
        _check_status(status)

    path = plan_path(root, workspace, plan_id)
    # The lock marker lives beside the plan; no plan file, no plans dir
    if not path.exists():
        raise PlanNotFoundError(plan_id)

    with file_lock(path):
        current = get_plan(root, workspace, plan_id)
        if current is None:
            raise PlanNotFoundError(plan_id)

        changes: dict = {"updated": format_timestamp(utc_now())}
        if title is not None:
            changes["title"] = title
        if content is not None:
            changes["content"] = content
        if status is not None:
            changes["status"] = status
        if tags is not None:
            changes["tags"] = tuple(tags)

        updated = replace(current, **changes)
        atomic_write_or_raise(path, format_plan(updated))

    return updated


def complete_plan(root: Path, workspace: str, plan_id: str) -> Plan:
    return update_plan(root, workspace, plan_id, status="completed")


def delete_plan(root: Path, workspace: str, plan_id: str) -> None:
    """Delete a plan, clearing the active pointer if it pointed at it.

    Raises:
        PlanNotFoundError: the plan does not exist
    """
    path = plan_path(root, workspace, plan_id)
    if not path.exists():
        raise PlanNotFoundError(plan_id)

    with file_lock(path):
        try:
            path.unlink()
        except FileNotFoundError:
            raise PlanNotFoundError(plan_id) from None

    pointer = active_plan_path(root, workspace)
    with file_lock(pointer):
        try:
            active_id = pointer.read_text(encoding="utf-8").strip()
        except FileNotFoundError:
            return
        if active_id == plan_id:
            pointer.unlink(missing_ok=True)
    logger.info(f"Deleted plan {plan_id} from {workspace}")
