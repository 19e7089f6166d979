"""Error types for the staged evaluator."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from depstage.core.constraint import Constraint
    from depstage.eval.value import Value


class DepstageError(Exception):
    """Base class for errors raised while staging."""


class UnboundVariable(DepstageError):
    """Variable not found in the staging environment."""

    def __init__(self, name: str):
        self.name = name
        super().__init__(f"Unbound variable: {name}")


class TypeMismatch(DepstageError):
    """A constraint does not imply the one required by its context."""

    def __init__(self, expected: Constraint, actual: Constraint, context: str):
        self.expected = expected
        self.actual = actual
        self.context = context
        super().__init__(f"Type error in {context}: expected {expected}, got {actual}")


class StagingError(DepstageError):
    """A compile-time-only construct received a runtime value."""


class AssertionFailure(DepstageError):
    """An assertion evaluated at compile time did not hold."""

    def __init__(self, message: str, value: Value, constraint: Constraint):
        self.value = value
        self.constraint = constraint
        super().__init__(message)


class UnsupportedConstruct(DepstageError):
    """A value or expression cannot be represented in residual code."""


class ArityMismatch(DepstageError):
    """A builtin or method was called with too few arguments."""

    def __init__(self, name: str, expected: int, actual: int):
        self.name = name
        self.expected = expected
        self.actual = actual
        super().__init__(f"{name} expects {expected} argument(s), got {actual}")
