"""Backend surface for turning staged values into target code.

A backend receives a ``BackendContext`` alongside each staged value. The
context gives it the staging machinery, so it can stage sub-expressions
on demand, inspect constraints and recurse into nested values while it
builds its own target tree.
"""

from __future__ import annotations

from typing import Any, Generic, Protocol, TypeVar

from depstage.core.ast import Expr
from depstage.core.codec import encode_expr
from depstage.eval.env import SEnv
from depstage.eval.machine import StagedEvaluator
from depstage.eval.svalue import Now, SValue
from depstage.eval.value import VClosure

T = TypeVar("T")
T_co = TypeVar("T_co", covariant=True)


class Backend(Protocol[T_co]):
    """A code generator from staged values to a target tree."""

    name: str

    def generate(self, sv: SValue, ctx: BackendContext) -> T_co: ...


class BackendContext(Generic[T]):
    """Staging machinery handed to a backend during generation."""

    def __init__(self, evaluator: StagedEvaluator, backend: Backend[T], env: SEnv | None = None) -> None:
        self.evaluator = evaluator
        self.backend = backend
        self.env = env if env is not None else evaluator.initial_env()

    def stage(self, expr: Expr, env: SEnv | None = None) -> SValue:
        return self.evaluator.stage(expr, env if env is not None else self.env)

    def svalue_to_residual(self, sv: SValue) -> Expr:
        return self.evaluator.svalue_to_residual(sv)

    def closure_to_residual(self, closure: VClosure) -> Expr:
        return self.evaluator.closure_to_residual(closure)

    def generate(self, sv: SValue) -> T:
        return self.backend.generate(sv, self)

    def generate_expr(self, expr: Expr) -> T:
        """Stage ``expr`` in the context environment and generate code for it."""
        return self.generate(self.stage(expr))


class ResidualBackend:
    """Target code is the residual expression itself.

    Known closures are emitted with their bodies staged for unknown
    arguments rather than as their source text.
    """

    name = "residual"

    def generate(self, sv: SValue, ctx: BackendContext) -> Expr:
        if isinstance(sv, Now) and isinstance(sv.value, VClosure) and sv.residual is None:
            return ctx.closure_to_residual(sv.value)
        return ctx.svalue_to_residual(sv)


class JsonBackend:
    """Residual expressions in the JSON wire format of ``depstage.core.codec``."""

    name = "json"

    def __init__(self) -> None:
        self._residual = ResidualBackend()

    def generate(self, sv: SValue, ctx: BackendContext) -> dict[str, Any]:
        return encode_expr(self._residual.generate(sv, ctx))
