"""Summary generation for long checkpoint descriptions."""

import re

SUMMARY_THRESHOLD = 150  # Summarize descriptions at least this long
MAX_SUMMARY_LENGTH = 150

_SENTENCE_BREAK = re.compile(r"\.(?:\s|$)|\n")


def generate_summary(description: str) -> str | None:
    """Short form of a long description, or None if it is already short.

    Strategy:
    1. Under 150 chars: no summary
    2. Take the first sentence (up to ". " or a newline)
    3. Truncate to 147 chars + "..." if the sentence is still over 150
    """
    if len(description) < SUMMARY_THRESHOLD:
        return None

    first_sentence = _SENTENCE_BREAK.split(description, maxsplit=1)[0].strip()

    if len(first_sentence) > MAX_SUMMARY_LENGTH:
        first_sentence = first_sentence[: MAX_SUMMARY_LENGTH - 3] + "..."

    return first_sentence


def first_sentence(text: str) -> str:
    """First sentence of any text (used by the local distillation fallback)."""
    return _SENTENCE_BREAK.split(text, maxsplit=1)[0].strip()
