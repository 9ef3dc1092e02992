"""Error types for Goldfish.

Two styles are used, depending on who consumes the failure:

- Result types (``Ok`` / ``Err``) for operations whose failure is expected
  and handled locally: atomic writes, embedding generation, external tools.
- Exceptions for failures that must reach the caller: invalid input,
  lock contention, missing plans.

Not-found conditions on the read path are never errors; they read as empty.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Generic, TypeVar, Union

T = TypeVar("T")
E = TypeVar("E")


@dataclass(frozen=True)
class GoldfishError:
    """Structured error carried inside an ``Err``."""

    code: str
    message: str
    context: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class Ok(Generic[T]):
    value: T

    @property
    def ok(self) -> bool:
        return True

    @property
    def error(self) -> None:
        return None

    def is_ok(self) -> bool:
        return True

    def is_err(self) -> bool:
        return False

    def unwrap(self) -> T:
        return self.value

    def unwrap_err(self):
        raise ValueError("Called unwrap_err() on an Ok result")


@dataclass(frozen=True)
class Err(Generic[E]):
    err_value: E

    @property
    def ok(self) -> bool:
        return False

    @property
    def error(self) -> E:
        return self.err_value

    def is_ok(self) -> bool:
        return False

    def is_err(self) -> bool:
        return True

    def unwrap(self):
        raise ValueError(f"Called unwrap() on an Err result: {self.err_value}")

    def unwrap_err(self) -> E:
        return self.err_value


Result = Union[Ok[T], Err[E]]


def ok(value: T) -> Ok[T]:
    """Wrap a success value."""
    return Ok(value)


def err(error: E) -> Err[E]:
    """Wrap an error value."""
    return Err(error)


def format_error(error: GoldfishError | BaseException) -> str:
    """Render an error for CLI output."""
    if isinstance(error, GoldfishError):
        return f"{error.message} [{error.code}]"
    return str(error)


# =============================================================================
# Exceptions
# =============================================================================


class ValidationError(ValueError):
    """Invalid input supplied by the caller (e.g. an empty description)."""


class TimeWindowError(ValidationError):
    """A since/from/to expression could not be parsed."""

    def __init__(self, expression: str, hint: str = ""):
        self.expression = expression
        message = f"Invalid time expression: {expression!r}"
        if hint:
            message = f"{message} ({hint})"
        super().__init__(message)


class LockTimeoutError(TimeoutError):
    """A file lock could not be acquired within the retry budget."""

    def __init__(self, path: str, attempts: int):
        self.path = path
        self.attempts = attempts
        super().__init__(f"Failed to acquire lock for {path} after {attempts} attempts")


class PlanNotFoundError(LookupError):
    """The requested plan does not exist."""

    def __init__(self, plan_id: str):
        self.plan_id = plan_id
        super().__init__(f"Plan '{plan_id}' does not exist")


class PlanExistsError(ValidationError):
    """A plan with the requested ID already exists."""

    def __init__(self, plan_id: str):
        self.plan_id = plan_id
        super().__init__(f"Plan with ID '{plan_id}' already exists")
