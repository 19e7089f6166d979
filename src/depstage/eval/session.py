"""Compilation session: all mutable state of one staging run.

A session owns the fresh-name counters, the closure arena, the set of
functions currently being staged, the module export cache and the static
constraint registry. Independent compilations use independent sessions;
starting a new session is how numbering and caches are reset.
"""

from __future__ import annotations

import itertools
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Iterator

from loguru import logger

from depstage.config.settings import StageSettings, load_settings
from depstage.core.ast import Expr
from depstage.core.constraint import Constraint, CVar
from depstage.core.errors import UnsupportedConstruct
from depstage.core.solve import FunctionSignature
from depstage.eval.env import SEnv
from depstage.eval.loader import ModuleExports, ModuleLoader
from depstage.eval.value import VClosure


@dataclass(frozen=True)
class ClosureInfo:
    """Staging information for a closure value."""

    params: tuple[str, ...]
    body: Expr
    env: SEnv
    name: str | None = None


class Session:
    def __init__(self, loader: ModuleLoader | None = None, settings: StageSettings | None = None) -> None:
        self.settings = settings if settings is not None else load_settings()
        self.loader = loader
        self._var_counter = itertools.count()
        self._cvar_counter = itertools.count()
        self._closures: list[ClosureInfo] = []
        self._in_progress: list[str] = []
        self._exports: dict[tuple[str, str], Constraint] = {}
        self._signatures: dict[tuple[str, str], FunctionSignature] = {}
        self._constraints: list[Constraint] = []

    # Fresh names

    def fresh_var(self, prefix: str = "v") -> str:
        return f"{prefix}{next(self._var_counter)}"

    def fresh_runtime_var(self) -> str:
        return self.fresh_var(self.settings.runtime_prefix)

    def fresh_cvar(self) -> CVar:
        return CVar(next(self._cvar_counter))

    # Closure arena

    def make_closure(self, params: tuple[str, ...], body: Expr, env: SEnv, name: str | None = None) -> VClosure:
        handle = len(self._closures)
        self._closures.append(ClosureInfo(params, body, env, name))
        return VClosure(handle, name)

    def closure_info(self, closure: VClosure) -> ClosureInfo:
        try:
            return self._closures[closure.handle]
        except IndexError:
            raise UnsupportedConstruct(f"Closure handle {closure.handle} does not belong to this session") from None

    # Coinductive recursion guard

    def is_in_progress(self, name: str) -> bool:
        return name in self._in_progress

    @contextmanager
    def staging(self, name: str | None) -> Iterator[None]:
        """Mark a named function as being staged for the duration of the block."""
        if name is None:
            yield
            return
        self._in_progress.append(name)
        try:
            yield
        finally:
            self._in_progress.pop()

    # Module exports

    def load_exports(self, module: str, names: list[str]) -> tuple[dict[str, Constraint], dict[str, FunctionSignature]]:
        """Constraints and signatures of ``names`` exported by ``module``, cached per name."""
        missing = [name for name in names if (module, name) not in self._exports]
        if missing:
            if self.loader is None:
                raise UnsupportedConstruct(f'Cannot import from "{module}": no module loader configured')
            logger.debug("import.load module={} names={}", module, ",".join(missing))
            exports: ModuleExports = self.loader.load_exports_with_signatures(module, missing)
            for name, constraint in exports.constraints.items():
                self._exports[(module, name)] = constraint
            for name, signature in exports.signatures.items():
                self._signatures[(module, name)] = signature
        constraints = {name: self._exports[(module, name)] for name in names if (module, name) in self._exports}
        signatures = {name: self._signatures[(module, name)] for name in names if (module, name) in self._signatures}
        return constraints, signatures

    # Static constraint registry

    def register_constraint(self, constraint: Constraint) -> int:
        self._constraints.append(constraint)
        return len(self._constraints) - 1

    def registered_constraint(self, constraint_id: int) -> Constraint:
        if not 0 <= constraint_id < len(self._constraints):
            raise UnsupportedConstruct(f"Constraint id {constraint_id} is not registered")
        return self._constraints[constraint_id]
