"""Checkpoint storage and retrieval.

Checkpoints are stored in daily, append-only Markdown logs:
<root>/<workspace>/checkpoints/YYYY-MM-DD.md

Format (one block per entry, after a date header):

    # Checkpoints for 2025-10-14

    ## 15:30 - Fixed JWT validation bug
      (continuation lines of a multi-line description, indented two spaces)

    <!--
    summary: Fixed JWT validation bug
    charCount: 214
    -->

    - **Tags**: bug-fix, auth
    - **Branch**: main
    - **Commit**: a3f2b1c
    - **Files**: src/auth.py, tests/test_auth.py

The heading carries minute precision; the full timestamp is rebuilt from the
file's date and the heading's time. All times are UTC.

Writers serialize per daily file through the lock primitive and publish
with an atomic rename, so readers never need a lock.
"""

import logging
import re
from collections.abc import Iterable
from dataclasses import dataclass, field, replace
from datetime import UTC, date, datetime, time, timedelta
from pathlib import Path

from goldfish.atomic import atomic_write_or_raise
from goldfish.errors import ValidationError
from goldfish.git import GitContext
from goldfish.lock import file_lock
from goldfish.summary import generate_summary
from goldfish.workspace import checkpoints_dir, ensure_workspace_dir

logger = logging.getLogger(__name__)

HEADER_PREFIX = "# Checkpoints for "
CONTINUATION_INDENT = "  "

_DAY_FILE = re.compile(r"^(\d{4}-\d{2}-\d{2})\.md$")
_HEADING = re.compile(r"^(\d{2}):(\d{2}) - (.+)$")
_HEADER_DATE = re.compile(r"^# Checkpoints for (\d{4}-\d{2}-\d{2})", re.MULTILINE)
_SECTION_SPLIT = re.compile(r"^## ", re.MULTILINE)
_SUMMARY_LINE = re.compile(r"^summary:\s*(.+)$")
_CHAR_COUNT_LINE = re.compile(r"^charCount:\s*(\d+)$")
_TAGS_LINE = re.compile(r"^- \*\*Tags\*\*: (.+)$")
_BRANCH_LINE = re.compile(r"^- \*\*Branch\*\*: (.+)$")
_COMMIT_LINE = re.compile(r"^- \*\*Commit\*\*: (.+)$")
_FILES_LINE = re.compile(r"^- \*\*Files\*\*: (.+)$")


@dataclass(frozen=True)
class Checkpoint:
    """One immutable, timestamped progress note."""

    timestamp: datetime
    description: str
    summary: str | None = None
    char_count: int | None = None
    tags: tuple[str, ...] = ()
    git_branch: str | None = None
    git_commit: str | None = None
    files: tuple[str, ...] = ()

    @property
    def date(self) -> str:
        """UTC date of the checkpoint as YYYY-MM-DD (its daily log name)."""
        return self.timestamp.astimezone(UTC).strftime("%Y-%m-%d")

    def to_dict(self) -> dict:
        """Serialize with camelCase keys, omitting empty optional fields."""
        data: dict = {
            "timestamp": format_timestamp(self.timestamp),
            "description": self.description,
        }
        if self.summary:
            data["summary"] = self.summary
        if self.char_count:
            data["charCount"] = self.char_count
        if self.tags:
            data["tags"] = list(self.tags)
        if self.git_branch:
            data["gitBranch"] = self.git_branch
        if self.git_commit:
            data["gitCommit"] = self.git_commit
        if self.files:
            data["files"] = list(self.files)
        return data


@dataclass(frozen=True)
class LogEntry:
    """A checkpoint together with where it lives in the log."""

    workspace: str
    date: str  # YYYY-MM-DD, the daily file name
    position: int  # 1-based index of the entry within its daily file
    checkpoint: Checkpoint = field(compare=False)

    @property
    def file_path(self) -> str:
        """Path of the daily log relative to the workspace directory."""
        return f"checkpoints/{self.date}.md"


def format_timestamp(ts: datetime) -> str:
    """ISO 8601 UTC with a trailing Z, second precision."""
    return ts.astimezone(UTC).strftime("%Y-%m-%dT%H:%M:%SZ")


def utc_now() -> datetime:
    return datetime.now(UTC).replace(microsecond=0)


# ============================================================================
# Markdown Serialization
# ============================================================================


def format_header(day: str) -> str:
    return f"{HEADER_PREFIX}{day}\n\n"


def format_checkpoint(checkpoint: Checkpoint) -> str:
    """Format a checkpoint as a Markdown block (ends with a blank line)."""
    hhmm = checkpoint.timestamp.astimezone(UTC).strftime("%H:%M")
    first_line, *rest = checkpoint.description.split("\n")

    lines = [f"## {hhmm} - {first_line}"]
    lines.extend(f"{CONTINUATION_INDENT}{line}" for line in rest)
    lines.append("")

    # Metadata comment (long descriptions only)
    if checkpoint.summary or checkpoint.char_count:
        lines.append("<!--")
        if checkpoint.summary:
            lines.append(f"summary: {checkpoint.summary}")
        if checkpoint.char_count:
            lines.append(f"charCount: {checkpoint.char_count}")
        lines.append("-->")
        lines.append("")

    if checkpoint.tags:
        lines.append(f"- **Tags**: {', '.join(checkpoint.tags)}")
    if checkpoint.git_branch:
        lines.append(f"- **Branch**: {checkpoint.git_branch}")
    if checkpoint.git_commit:
        lines.append(f"- **Commit**: {checkpoint.git_commit}")
    if checkpoint.files:
        lines.append(f"- **Files**: {', '.join(checkpoint.files)}")

    lines.append("")
    return "\n".join(lines) + "\n"


def _split_list(value: str) -> tuple[str, ...]:
    return tuple(item.strip() for item in value.split(", ") if item.strip())


def _parse_section(section: str, day: str) -> Checkpoint | None:
    """Parse one ``## `` block (heading marker already stripped)."""
    lines = section.split("\n")
    match = _HEADING.match(lines[0].rstrip("\r"))
    if not match:
        return None

    hour, minute, first_line = match.groups()
    try:
        timestamp = datetime.combine(
            date.fromisoformat(day), time(int(hour), int(minute)), tzinfo=UTC
        )
    except ValueError:
        return None

    body = lines[1:]
    description_lines = [first_line]
    while body and body[0].startswith(CONTINUATION_INDENT):
        description_lines.append(body.pop(0)[len(CONTINUATION_INDENT) :])

    summary: str | None = None
    char_count: int | None = None
    tags: tuple[str, ...] = ()
    git_branch: str | None = None
    git_commit: str | None = None
    files: tuple[str, ...] = ()

    in_comment = False
    for raw in body:
        line = raw.rstrip("\r")
        stripped = line.strip()
        if stripped == "<!--":
            in_comment = True
            continue
        if stripped == "-->":
            in_comment = False
            continue

        if in_comment:
            if m := _SUMMARY_LINE.match(line):
                summary = m.group(1).strip()
            elif m := _CHAR_COUNT_LINE.match(line):
                char_count = int(m.group(1))
            continue

        if m := _TAGS_LINE.match(line):
            tags = _split_list(m.group(1))
        elif m := _BRANCH_LINE.match(line):
            git_branch = m.group(1).strip()
        elif m := _COMMIT_LINE.match(line):
            git_commit = m.group(1).strip()
        elif m := _FILES_LINE.match(line):
            files = _split_list(m.group(1))

    return Checkpoint(
        timestamp=timestamp,
        description="\n".join(description_lines),
        summary=summary or None,
        char_count=char_count or None,
        tags=tags,
        git_branch=git_branch or None,
        git_commit=git_commit or None,
        files=files,
    )


def parse_checkpoint_file(content: str, day: str | None = None) -> list[Checkpoint]:
    """Parse a daily log into checkpoints, in file order.

    Args:
        content: File content
        day: YYYY-MM-DD of the file. Read from the header when omitted.

    Blocks whose heading does not match ``HH:MM - description`` are skipped.
    """
    if not content.strip():
        return []

    if day is None:
        header = _HEADER_DATE.search(content)
        day = header.group(1) if header else utc_now().strftime("%Y-%m-%d")

    checkpoints = []
    # Skip content before the first heading
    for section in _SECTION_SPLIT.split(content)[1:]:
        checkpoint = _parse_section(section, day)
        if checkpoint is None:
            logger.debug(f"Skipping malformed checkpoint block in {day}: {section[:40]!r}")
            continue
        checkpoints.append(checkpoint)
    return checkpoints


# ============================================================================
# Log Store
# ============================================================================


def _as_date(value: date | datetime | str) -> date:
    if isinstance(value, datetime):
        return value.astimezone(UTC).date()
    if isinstance(value, date):
        return value
    return date.fromisoformat(value)


def list_day_files(directory: Path) -> list[tuple[str, Path]]:
    """``(YYYY-MM-DD, path)`` for every daily log in a directory, sorted."""
    try:
        names = sorted(p.name for p in directory.iterdir())
    except FileNotFoundError:
        return []
    files = []
    for name in names:
        if match := _DAY_FILE.match(name):
            files.append((match.group(1), directory / name))
    return files


def read_day_file(path: Path, workspace: str, day: str) -> list[LogEntry]:
    """Entries of one daily log; a missing file reads as empty."""
    try:
        content = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return []
    return [
        LogEntry(workspace=workspace, date=day, position=i, checkpoint=cp)
        for i, cp in enumerate(parse_checkpoint_file(content, day), start=1)
    ]


def read_log_dir(directory: Path, workspace: str) -> list[LogEntry]:
    """Every entry of every daily log in ``directory``, in file order."""
    entries: list[LogEntry] = []
    for day, path in list_day_files(directory):
        entries.extend(read_day_file(path, workspace, day))
    return entries


class CheckpointLog:
    """Append-only daily checkpoint logs under a storage root."""

    def __init__(self, root: Path):
        self.root = Path(root)

    def directory(self, workspace: str) -> Path:
        return checkpoints_dir(self.root, workspace)

    def day_path(self, workspace: str, day: date | datetime | str) -> Path:
        return self.directory(workspace) / f"{_as_date(day).isoformat()}.md"

    def append(self, workspace: str, checkpoint: Checkpoint) -> Path:
        """Append a checkpoint to its daily log.

        Holds the lock for the daily file while reading the current content,
        appending the new block and renaming a temp file over the log.

        Raises:
            LockTimeoutError: if another writer holds the lock too long
            OSError: on filesystem errors
        """
        ensure_workspace_dir(self.root, workspace)
        day = checkpoint.date
        path = self.day_path(workspace, day)

        with file_lock(path):
            try:
                existing = path.read_text(encoding="utf-8")
            except FileNotFoundError:
                existing = format_header(day)
            atomic_write_or_raise(path, existing + format_checkpoint(checkpoint))

        logger.debug(f"Appended checkpoint to {path}")
        return path

    def read_day(self, workspace: str, day: date | datetime | str) -> list[Checkpoint]:
        """Checkpoints for one day, in write order."""
        day_str = _as_date(day).isoformat()
        path = self.day_path(workspace, day_str)
        return [entry.checkpoint for entry in read_day_file(path, workspace, day_str)]

    def iter_entries(
        self,
        workspace: str,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> list[LogEntry]:
        """Entries with ``start <= timestamp <= end``, sorted ascending.

        Daily files are pre-filtered by name; the timestamp check is
        authoritative.
        """
        first_day = _as_date(start) if start is not None else None
        last_day = _as_date(end) if end is not None else None

        entries: list[LogEntry] = []
        for day, path in list_day_files(self.directory(workspace)):
            file_day = date.fromisoformat(day)
            if first_day is not None and file_day < first_day:
                continue
            if last_day is not None and file_day > last_day:
                continue
            entries.extend(read_day_file(path, workspace, day))

        filtered = [
            e
            for e in entries
            if (start is None or e.checkpoint.timestamp >= start)
            and (end is None or e.checkpoint.timestamp <= end)
        ]
        # Stable: entries sharing a minute keep their write order
        filtered.sort(key=lambda e: e.checkpoint.timestamp)
        return filtered

    def read_range(self, workspace: str, start: datetime, end: datetime) -> list[Checkpoint]:
        """Checkpoints in ``[start, end]`` sorted ascending by timestamp."""
        return [entry.checkpoint for entry in self.iter_entries(workspace, start, end)]


# ============================================================================
# Saving
# ============================================================================


def _clean_tags(tags: Iterable[str] | None) -> tuple[str, ...]:
    """Split comma-joined tags and collapse whitespace.

    Tags are stored comma-separated on a single line, so "a, b" can only
    ever read back as two tags.
    """
    cleaned: list[str] = []
    for tag in tags or ():
        for part in (tag or "").split(","):
            part = " ".join(part.split())
            if part:
                cleaned.append(part)
    return tuple(cleaned)


def _clean_files(files: Iterable[str] | None) -> tuple[str, ...]:
    kept: list[str] = []
    for name in files or ():
        if ", " in name or "\n" in name:
            logger.warning(f"Leaving out file name the log cannot store: {name!r}")
            continue
        kept.append(name)
    return tuple(kept)


def create_checkpoint(
    description: str,
    tags: Iterable[str] | None = None,
    git_context: GitContext | None = None,
    timestamp: datetime | None = None,
) -> Checkpoint:
    """Build a new checkpoint, validating input and deriving the summary.

    Raises:
        ValidationError: if the description is empty
    """
    if not description or not description.strip():
        raise ValidationError("Description is required")
    description = description.strip()

    checkpoint = Checkpoint(
        timestamp=timestamp or utc_now(),
        description=description,
        tags=_clean_tags(tags),
    )

    if git_context is not None:
        checkpoint = replace(
            checkpoint,
            git_branch=git_context.branch or None,
            git_commit=git_context.commit or None,
            files=_clean_files(git_context.files),
        )

    # Generated once, never regenerated
    if summary := generate_summary(description):
        checkpoint = replace(checkpoint, summary=summary, char_count=len(description))

    return checkpoint


def save_checkpoint(
    log: CheckpointLog,
    workspace: str,
    description: str,
    tags: Iterable[str] | None = None,
    git_context: GitContext | None = None,
) -> Checkpoint:
    """Create a checkpoint stamped now and append it to today's log.

    Raises:
        ValidationError: empty description
        LockTimeoutError: lock contention beyond the retry budget
        OSError: filesystem errors
    """
    checkpoint = create_checkpoint(description, tags=tags, git_context=git_context)
    log.append(workspace, checkpoint)
    return checkpoint


def day_bounds(day: date) -> tuple[datetime, datetime]:
    """First and last instant of a UTC day."""
    start = datetime.combine(day, time(0, 0), tzinfo=UTC)
    return start, start + timedelta(days=1) - timedelta(microseconds=1)
