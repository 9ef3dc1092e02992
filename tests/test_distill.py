"""Tests for goldfish.distill module."""

import subprocess
from datetime import UTC, datetime
from unittest.mock import MagicMock, patch

from goldfish.checkpoints import Checkpoint
from goldfish.distill import (
    DistillResult,
    build_distill_prompt,
    calculate_token_reduction,
    distill_checkpoints,
    simple_extraction,
)

TS = datetime(2025, 10, 14, 15, 30, tzinfo=UTC)


def _cp(description: str, **kwargs) -> Checkpoint:
    return Checkpoint(timestamp=TS, description=description, **kwargs)


class TestBuildDistillPrompt:
    def test_lists_checkpoints_with_metadata(self):
        """The prompt lists each checkpoint with its metadata."""
        prompt = build_distill_prompt(
            [_cp("Fixed auth", tags=("bug",), git_branch="main", files=("a.py",)), _cp("Docs")],
            "authentication",
            max_tokens=300,
        )

        assert "Session Context: authentication" in prompt
        assert "Retrieved Checkpoints (2 items):" in prompt
        assert "1. [2025-10-14T15:30:00Z] Fixed auth" in prompt
        assert "   Tags: bug" in prompt
        assert "   Branch: unknown" in prompt
        assert "   Files: none" in prompt
        assert "(300 tokens max)" in prompt


class TestSimpleExtraction:
    def test_uses_summary_or_first_sentence(self):
        """Extraction uses the summary, else the first sentence."""
        result = simple_extraction([_cp("Long text", summary="Short form"), _cp("First. Second.")])

        assert result.provider == "simple"
        assert result.summary == "Recent work:\n- Short form\n- First"

    def test_empty(self):
        """No checkpoints gives a placeholder summary."""
        assert simple_extraction([]).summary == "No checkpoints found."


class TestDistillCheckpoints:
    def test_provider_none_never_calls_cli(self):
        """Provider none never shells out."""
        with patch("goldfish.distill.subprocess.run") as run:
            result = distill_checkpoints([_cp("A thing.")], "ctx", provider="none")

        run.assert_not_called()
        assert result.provider == "simple"

    def test_uses_claude_output(self):
        """The CLI's output becomes the distilled text."""
        completed = MagicMock(returncode=0, stdout="- distilled\n", stderr="")
        with patch("goldfish.distill.subprocess.run", return_value=completed) as run:
            result = distill_checkpoints([_cp("A thing.")], "ctx", provider="claude", timeout=5)

        assert result.provider == "claude"
        assert result.summary == "- distilled"
        args, kwargs = run.call_args
        assert args[0][:2] == ["claude", "-p"]
        assert kwargs["timeout"] == 5

    def test_auto_tries_next_provider_on_failure(self):
        """Auto moves on when a provider fails."""
        outputs = [
            MagicMock(returncode=1, stdout="", stderr="not logged in"),
            MagicMock(returncode=0, stdout="from gemini", stderr=""),
        ]
        with (
            patch("goldfish.distill.detect_providers", return_value=["claude", "gemini"]),
            patch("goldfish.distill.subprocess.run", side_effect=outputs),
        ):
            result = distill_checkpoints([_cp("A thing.")], "ctx")

        assert result.provider == "gemini"

    def test_timeout_falls_back(self):
        """A timed-out CLI falls back to the plain listing."""
        with patch(
            "goldfish.distill.subprocess.run",
            side_effect=subprocess.TimeoutExpired(cmd="claude", timeout=30),
        ):
            result = distill_checkpoints([_cp("A thing. More.")], "ctx", provider="claude")

        assert result.provider == "simple"
        assert result.summary == "Recent work:\n- A thing"

    def test_no_cli_installed_falls_back(self):
        """A missing CLI falls back to the plain listing."""
        with patch("goldfish.distill.detect_providers", return_value=[]):
            assert distill_checkpoints([_cp("x")], "ctx").provider == "simple"


class TestTokenReduction:
    def test_percent_saved(self):
        """Savings are reported as a percentage."""
        checkpoints = [_cp("x" * 400)]  # 100 tokens
        result = DistillResult(summary="", provider="claude", tokens_out=25)

        assert calculate_token_reduction(checkpoints, result) == 75

    def test_never_negative(self):
        """Longer output reports zero savings."""
        result = DistillResult(summary="", provider="claude", tokens_out=500)
        assert calculate_token_reduction([_cp("short")], result) == 0

    def test_empty_input(self):
        """Empty input reports zero savings."""
        assert calculate_token_reduction([], DistillResult(summary="", provider="simple")) == 0
