"""LLM-based distillation of recall results.

Recall can hand its ranked checkpoints to an LLM command-line tool
(``claude -p`` or ``gemini -p``) to compress them into a few bullet points
focused on the search context. External tools are optional: when none is
installed, or the call fails or times out, ``simple_extraction`` builds a
deterministic bullet list locally. Distillation never raises.
"""

import logging
import math
import shutil
import subprocess
import time
from collections.abc import Sequence
from dataclasses import dataclass

from goldfish.checkpoints import Checkpoint, format_timestamp
from goldfish.summary import first_sentence

logger = logging.getLogger(__name__)

DISTILL_TIMEOUT_SECONDS = 30.0
DEFAULT_MAX_TOKENS = 500
CHARS_PER_TOKEN = 4

# Tried in this order in "auto" mode
CLI_PROVIDERS = ("claude", "gemini")


@dataclass(frozen=True)
class DistillResult:
    summary: str
    provider: str  # claude | gemini | simple
    tokens_in: int = 0
    tokens_out: int = 0
    latency_ms: int = 0


def estimate_tokens(text: str) -> int:
    """Rough token count (1 token is about 4 characters)."""
    return math.ceil(len(text) / CHARS_PER_TOKEN)


def build_distill_prompt(
    checkpoints: Sequence[Checkpoint],
    context: str,
    max_tokens: int = DEFAULT_MAX_TOKENS,
) -> str:
    items = []
    for i, cp in enumerate(checkpoints, start=1):
        items.append(
            f"{i}. [{format_timestamp(cp.timestamp)}] {cp.description}\n"
            f"   Tags: {', '.join(cp.tags) or 'none'}\n"
            f"   Branch: {cp.git_branch or 'unknown'}\n"
            f"   Files: {', '.join(cp.files) or 'none'}"
        )
    checkpoint_list = "\n\n".join(items)

    return f"""You are helping an AI agent recall relevant work context efficiently.

Session Context: {context}

Retrieved Checkpoints ({len(checkpoints)} items):
{checkpoint_list}

Task: Distill these checkpoints into a concise summary ({max_tokens} tokens max) that:
1. Focuses on what's most relevant to the current session context
2. Preserves technical details (file names, function names, commit hashes, bug descriptions)
3. Groups related work together
4. Highlights key decisions and their rationale
5. Notes any blockers or unresolved issues

Format as 3-5 bullet points. Be concise but preserve critical details."""


def simple_extraction(checkpoints: Sequence[Checkpoint]) -> DistillResult:
    """Local fallback: one bullet per checkpoint (summary or first sentence)."""
    if not checkpoints:
        return DistillResult(summary="No checkpoints found.", provider="simple")

    lines = [cp.summary or first_sentence(cp.description) for cp in checkpoints]
    summary = "Recent work:\n- " + "\n- ".join(lines)
    return DistillResult(summary=summary, provider="simple", tokens_out=estimate_tokens(summary))


def detect_providers() -> list[str]:
    """LLM CLIs found on PATH, in preference order."""
    return [name for name in CLI_PROVIDERS if shutil.which(name)]


def _run_cli(name: str, prompt: str, timeout: float) -> DistillResult | None:
    start = time.monotonic()
    try:
        result = subprocess.run(
            [name, "-p", prompt],
            capture_output=True,
            text=True,
            timeout=timeout,
        )
    except subprocess.TimeoutExpired:
        logger.warning(f"{name} CLI timed out after {timeout}s")
        return None
    except OSError as e:
        logger.warning(f"{name} CLI error: {e}")
        return None

    if result.returncode != 0:
        logger.warning(f"{name} CLI failed: {result.stderr.strip()[:200]}")
        return None

    summary = result.stdout.strip()
    if not summary:
        logger.warning(f"{name} CLI returned no output")
        return None

    return DistillResult(
        summary=summary,
        provider=name,
        tokens_in=estimate_tokens(prompt),
        tokens_out=estimate_tokens(summary),
        latency_ms=int((time.monotonic() - start) * 1000),
    )


def distill_checkpoints(
    checkpoints: Sequence[Checkpoint],
    context: str,
    provider: str = "auto",
    timeout: float = DISTILL_TIMEOUT_SECONDS,
    max_tokens: int = DEFAULT_MAX_TOKENS,
) -> DistillResult:
    """Distill checkpoints with an LLM CLI, falling back to simple extraction.

    Args:
        checkpoints: Ranked checkpoints (already limited)
        context: Search text describing the current session
        provider: auto | claude | gemini | none
        timeout: Seconds allowed per CLI call
        max_tokens: Length hint passed in the prompt
    """
    if not checkpoints or provider == "none":
        return simple_extraction(checkpoints)

    if provider in CLI_PROVIDERS:
        candidates = [provider]
    else:
        candidates = detect_providers()

    prompt = build_distill_prompt(checkpoints, context, max_tokens)
    for name in candidates:
        if result := _run_cli(name, prompt, timeout):
            return result

    logger.debug("No LLM CLI produced a summary, using simple extraction")
    return simple_extraction(checkpoints)


def calculate_token_reduction(checkpoints: Sequence[Checkpoint], result: DistillResult) -> int:
    """Percent of tokens saved versus the full descriptions (never negative)."""
    original = sum(estimate_tokens(cp.description) for cp in checkpoints)
    if original == 0:
        return 0
    return max(0, round((original - result.tokens_out) / original * 100))
