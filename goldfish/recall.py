"""Recall: query checkpoints by time window, search text and workspace.

Pipeline:
1. Resolve the time window (from+to, since, from, to, days - in that order)
2. Load entries from one workspace, or from every workspace concurrently
3. Search: semantic (vector) when requested and available, falling back to
   fuzzy text matching when it yields nothing
4. Present: newest first, limit, summary substitution, provenance stripping
5. Optionally distill the results with an LLM CLI
"""

from __future__ import annotations

import logging
import re
from collections.abc import Sequence
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field, replace
from datetime import UTC, date, datetime, timedelta
from difflib import SequenceMatcher
from typing import TYPE_CHECKING

import numpy as np

from goldfish.checkpoints import Checkpoint, LogEntry, day_bounds, format_timestamp, utc_now
from goldfish.distill import calculate_token_reduction, distill_checkpoints
from goldfish.embeddings import EmbeddingProvider, cosine_similarity
from goldfish.errors import TimeWindowError, ValidationError
from goldfish.index import EmbeddingIndex, entry_id
from goldfish.plans import Plan, get_active_plan
from goldfish.workspace import SCOPE_ALL, list_workspaces, resolve_workspace

if TYPE_CHECKING:
    from goldfish.core import Goldfish

logger = logging.getLogger(__name__)

DEFAULT_LIMIT = 10
DEFAULT_DAYS = 2
TO_ONLY_WINDOW_DAYS = 7

SEARCH_SEMANTIC = "semantic"
SEARCH_FUZZY = "fuzzy"
SEARCH_NONE = "none"

# Fuzzy matching: field weights and the per-field similarity a match needs
FIELD_WEIGHTS = {
    "description": 2.0,
    "tags": 1.0,
    "branch": 0.5,
    "files": 0.3,
}
MATCH_THRESHOLD = 0.6
MIN_TOKEN_LENGTH = 2

_RELATIVE = re.compile(r"^(\d+)([mhd])$")
_UNIT_SECONDS = {"m": 60, "h": 3600, "d": 86400}
_WORD = re.compile(r"[a-z0-9]+")


# ============================================================================
# Options and results
# ============================================================================


@dataclass
class RecallOptions:
    workspace: str | None = "current"  # current | all | <name>
    since: str | None = None  # "2h", "30m", "3d", a date or an ISO timestamp
    days: int | None = None
    from_: str | None = None
    to: str | None = None
    search: str | None = None
    limit: int | None = None
    full: bool = False
    semantic: bool = False
    min_similarity: float | None = None
    distill: bool = False
    distill_provider: str | None = None
    distill_max_tokens: int | None = None


@dataclass(frozen=True)
class WorkspaceSummary:
    name: str
    checkpoint_count: int
    last_activity: datetime | None = None

    def to_dict(self) -> dict:
        data: dict = {"name": self.name, "checkpointCount": self.checkpoint_count}
        if self.last_activity is not None:
            data["lastActivity"] = format_timestamp(self.last_activity)
        return data


@dataclass(frozen=True)
class SearchHit:
    """A search match: where it lives, how well it matched, its rank."""

    entry: LogEntry
    score: float
    rank: int = 0


@dataclass
class RecallResult:
    entries: list[LogEntry] = field(default_factory=list)
    active_plan: Plan | None = None
    workspaces: list[WorkspaceSummary] | None = None
    search_method: str | None = None
    search_results: list[SearchHit] | None = None
    distilled: dict | None = None

    @property
    def checkpoints(self) -> list[Checkpoint]:
        return [e.checkpoint for e in self.entries]

    def to_dict(self) -> dict:
        cross_workspace = self.workspaces is not None
        checkpoints = []
        for entry in self.entries:
            item = entry.checkpoint.to_dict()
            if cross_workspace:
                item["workspace"] = entry.workspace
            checkpoints.append(item)

        data: dict = {"checkpoints": checkpoints}
        if self.active_plan is not None:
            data["activePlan"] = self.active_plan.to_dict()
        if self.workspaces is not None:
            data["workspaces"] = [w.to_dict() for w in self.workspaces]
        if self.search_method is not None:
            data["searchMethod"] = self.search_method
        if self.search_results is not None:
            data["searchResults"] = [
                {
                    "workspace": hit.entry.workspace,
                    "timestamp": format_timestamp(hit.entry.checkpoint.timestamp),
                    "similarity": round(hit.score, 4),
                    "rank": hit.rank,
                }
                for hit in self.search_results
            ]
        if self.distilled is not None:
            data["distilled"] = self.distilled
        return data


# ============================================================================
# Time window
# ============================================================================


def _parse_instant(value: str, end_of_day: bool = False) -> datetime:
    """Parse a date or ISO timestamp; naive values are UTC."""
    text = value.strip()
    try:
        if "T" in text or " " in text:
            parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
            if parsed.tzinfo is None:
                parsed = parsed.replace(tzinfo=UTC)
            return parsed.astimezone(UTC)
        start, end = day_bounds(date.fromisoformat(text))
        return end if end_of_day else start
    except ValueError:
        raise TimeWindowError(value, "expected YYYY-MM-DD or an ISO timestamp") from None


def parse_since(expression: str, now: datetime | None = None) -> datetime:
    """Resolve a since expression to an instant.

    Formats:
    - "30m", "2h", "3d": that long before now
    - "2025-10-14" or "2025-10-14T15:30:00Z": passed through

    Raises:
        TimeWindowError: for anything else
    """
    now = now or utc_now()
    text = expression.strip()

    if "T" in text or "-" in text:
        return _parse_instant(text)

    match = _RELATIVE.match(text)
    if not match:
        raise TimeWindowError(expression, 'expected "2h", "30m", "3d", or ISO timestamp')

    amount, unit = match.groups()
    return now - timedelta(seconds=int(amount) * _UNIT_SECONDS[unit])


def resolve_time_window(
    options: RecallOptions,
    now: datetime | None = None,
    default_days: int = DEFAULT_DAYS,
) -> tuple[datetime, datetime]:
    """``(start, end)`` of the recall window.

    Priority:
    1. from + to (explicit range; a date-only ``to`` covers that whole day)
    2. since (relative or absolute)
    3. from alone (from that point to now)
    4. to alone (the 7 days ending at that point)
    5. days (last N days, default 2)
    """
    now = now or utc_now()

    if options.from_ and options.to:
        return _parse_instant(options.from_), _parse_instant(options.to, end_of_day=True)

    if options.since:
        return parse_since(options.since, now), now

    if options.from_:
        return _parse_instant(options.from_), now

    if options.to:
        end = _parse_instant(options.to, end_of_day=True)
        return end - timedelta(days=TO_ONLY_WINDOW_DAYS), end

    if options.days is not None and options.days < 0:
        raise ValidationError(f"days must be positive, got {options.days}")
    days = options.days or default_days
    return now - timedelta(days=days), now


# ============================================================================
# Fuzzy search
# ============================================================================


def _query_tokens(query: str) -> list[str]:
    tokens = [t for t in _WORD.findall(query.lower()) if len(t) >= MIN_TOKEN_LENGTH]
    if not tokens and len(query.strip()) >= MIN_TOKEN_LENGTH:
        tokens = [query.strip().lower()]
    return tokens


def _token_similarity(token: str, text: str, words: list[str]) -> float:
    if token in text:
        return 1.0
    best = 0.0
    for word in words:
        ratio = SequenceMatcher(None, token, word).ratio()
        if ratio > best:
            best = ratio
    return best


def _field_similarity(tokens: list[str], value: str) -> float:
    if not value:
        return 0.0
    text = value.lower()
    words = _WORD.findall(text)
    return sum(_token_similarity(t, text, words) for t in tokens) / len(tokens)


def _fields(checkpoint: Checkpoint) -> dict[str, str]:
    return {
        "description": checkpoint.description,
        "tags": " ".join(checkpoint.tags),
        "branch": checkpoint.git_branch or "",
        "files": " ".join(checkpoint.files),
    }


def fuzzy_score(query: str, checkpoint: Checkpoint) -> float:
    """Weighted match quality in [0, 1]; 0 means no field matched.

    Each query token is compared with every word of a field
    (``SequenceMatcher`` ratio, substring hits count as exact), so near-miss
    spellings still match. A field matches when its mean token similarity
    reaches 0.6.
    """
    tokens = _query_tokens(query)
    if not tokens:
        return 0.0

    total_weight = sum(FIELD_WEIGHTS.values())
    score = 0.0
    for name, value in _fields(checkpoint).items():
        similarity = _field_similarity(tokens, value)
        if similarity >= MATCH_THRESHOLD:
            score += FIELD_WEIGHTS[name] * similarity
    return score / total_weight


def fuzzy_search(query: str, entries: Sequence[LogEntry]) -> list[SearchHit]:
    """Entries matching ``query``, best match first."""
    hits = []
    for entry in entries:
        score = fuzzy_score(query, entry.checkpoint)
        if score > 0:
            hits.append(SearchHit(entry=entry, score=score))
    # Stable: ties keep chronological order
    hits.sort(key=lambda h: h.score, reverse=True)
    return hits


# ============================================================================
# Semantic search
# ============================================================================


def semantic_search(
    query: str,
    entries: Sequence[LogEntry],
    index: EmbeddingIndex,
    provider: EmbeddingProvider,
    min_similarity: float = 0.0,
    workspace: str = SCOPE_ALL,
) -> list[SearchHit]:
    """Entries ranked by cosine similarity to the query embedding.

    Entries without a stored vector are left out. An embedding failure reads
    as no results.
    """
    if not entries:
        return []

    query_result = provider.embed(query)
    if query_result.is_err():
        logger.warning(f"Query embedding failed: {query_result.unwrap_err().message}")
        return []
    query_vector = query_result.unwrap()

    ids = {entry_id(e.workspace, e.date, e.position): e for e in entries}
    vectors = index.get_vectors(list(ids), workspace)

    hits = []
    for rid, vector in vectors.items():
        if vector.shape != query_vector.shape:
            continue
        similarity = cosine_similarity(np.asarray(query_vector, dtype=np.float32), vector)
        if similarity >= min_similarity:
            hits.append(SearchHit(entry=ids[rid], score=similarity))
    hits.sort(key=lambda h: h.score, reverse=True)
    return hits


# ============================================================================
# Presentation
# ============================================================================


def _present(checkpoint: Checkpoint, full: bool, searched: bool) -> Checkpoint:
    description = checkpoint.description
    if not full and not searched and checkpoint.summary:
        description = checkpoint.summary

    presented = replace(checkpoint, description=description, summary=None, char_count=None)
    if not full:
        presented = replace(presented, git_branch=None, git_commit=None, files=())
    return presented


def _effective_limit(limit: int | None, default: int) -> int:
    if limit is None or limit < 0:
        return default
    return limit


def _workspace_summaries(entries: Sequence[LogEntry]) -> list[WorkspaceSummary]:
    grouped: dict[str, list[LogEntry]] = {}
    for entry in entries:
        grouped.setdefault(entry.workspace, []).append(entry)
    return [
        WorkspaceSummary(
            name=name,
            checkpoint_count=len(group),
            last_activity=max(e.checkpoint.timestamp for e in group),
        )
        for name, group in sorted(grouped.items())
    ]


# ============================================================================
# Recall
# ============================================================================


def _load_all(runtime: Goldfish, start: datetime, end: datetime) -> list[LogEntry]:
    workspaces = list_workspaces(runtime.root)
    if not workspaces:
        return []
    with ThreadPoolExecutor(max_workers=len(workspaces)) as executor:
        results = executor.map(lambda ws: runtime.log.iter_entries(ws, start, end), workspaces)
        merged = [entry for entries in results for entry in entries]
    merged.sort(key=lambda e: e.checkpoint.timestamp)
    return merged


def _search(
    runtime: Goldfish,
    options: RecallOptions,
    query: str,
    entries: list[LogEntry],
    scope: str,
) -> tuple[list[SearchHit], str]:
    if options.semantic:
        if runtime.semantic_available:
            min_similarity = (
                options.min_similarity
                if options.min_similarity is not None
                else runtime.config.min_similarity
            )
            hits = semantic_search(
                query, entries, runtime.index, runtime.provider, min_similarity, scope
            )
            if hits:
                return hits, SEARCH_SEMANTIC
            logger.debug("Semantic search found nothing, falling back to fuzzy search")
        else:
            logger.debug("Semantic search unavailable, using fuzzy search")
    return fuzzy_search(query, entries), SEARCH_FUZZY


def recall(runtime: Goldfish, options: RecallOptions | None = None) -> RecallResult:
    """Run a recall query against the runtime's storage.

    Raises:
        TimeWindowError: malformed since/from/to
        ValidationError: invalid parameters
    """
    options = options or RecallOptions()
    config = runtime.config
    start, end = resolve_time_window(options, default_days=config.default_days)

    cross_workspace = options.workspace == SCOPE_ALL
    if cross_workspace:
        scope = SCOPE_ALL
        entries = _load_all(runtime, start, end)
    else:
        scope = resolve_workspace(options.workspace)
        entries = runtime.log.iter_entries(scope, start, end)

    query = (options.search or "").strip()
    hits: list[SearchHit] | None = None
    search_method = SEARCH_NONE
    if query:
        hits, search_method = _search(runtime, options, query, entries, scope)
        entries = [hit.entry for hit in hits]

    workspaces = _workspace_summaries(entries) if cross_workspace else None

    # Newest first, then limit; within a minute the later write wins
    entries = sorted(entries, key=lambda e: (e.checkpoint.timestamp, e.position), reverse=True)
    entries = entries[: _effective_limit(options.limit, config.default_limit)]

    search_results = None
    if hits is not None:
        kept = set(entries)
        search_results = [
            replace(hit, rank=rank)
            for rank, hit in enumerate((h for h in hits if h.entry in kept), start=1)
        ]

    distilled = None
    if options.distill and query and entries:
        originals = [e.checkpoint for e in entries]
        result = distill_checkpoints(
            originals,
            query,
            provider=options.distill_provider or config.distill_provider,
            timeout=config.distill_timeout,
            max_tokens=options.distill_max_tokens or config.distill_max_tokens,
        )
        distilled = {
            "summary": result.summary,
            "provider": result.provider,
            "originalCount": len(originals),
            "tokenReduction": calculate_token_reduction(originals, result),
        }

    presented = [
        replace(e, checkpoint=_present(e.checkpoint, options.full, bool(query))) for e in entries
    ]

    return RecallResult(
        entries=presented,
        active_plan=None if cross_workspace else get_active_plan(runtime.root, scope),
        workspaces=workspaces,
        search_method=search_method,
        search_results=search_results,
        distilled=distilled,
    )
