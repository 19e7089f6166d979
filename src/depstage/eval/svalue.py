"""Staged values: known now, or deferred to runtime with a residual."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Union

from depstage.core.ast import Expr
from depstage.core.constraint import Constraint
from depstage.eval.value import Value, constraint_of


@dataclass(frozen=True)
class Now:
    """Value known at compile time.

    ``residual`` is set when the value must be referenced rather than
    inlined by generated code (a named closure, an object holding one).
    """

    value: Value
    constraint: Constraint
    residual: Expr | None = None

    def __str__(self) -> str:
        return f"Now({self.value} : {self.constraint})"


@dataclass(frozen=True)
class Later:
    """Value only known at runtime.

    ``elements`` keeps the staged elements of an array literal that had at
    least one Later element, so indexing with a known position can recover
    the element's own staged value.
    """

    constraint: Constraint
    residual: Expr
    elements: tuple[SValue, ...] | None = None

    def __str__(self) -> str:
        return f"Later({self.residual} : {self.constraint})"


SValue = Union[Now, Later]


def now(value: Value, constraint: Constraint | None = None, residual: Expr | None = None) -> Now:
    return Now(value, constraint if constraint is not None else constraint_of(value), residual)


def all_now(svalues: Iterable[SValue]) -> bool:
    return all(isinstance(sv, Now) for sv in svalues)
