"""Staging environment and refinement context."""

from __future__ import annotations

from typing import Iterator, Mapping

from depstage.core.constraint import Constraint, narrow
from depstage.core.errors import UnboundVariable
from depstage.eval.svalue import SValue


class SEnv:
    """Persistent environment mapping names to staged values.

    Each ``extend`` creates a new scope linked to its parent, so binding
    never copies existing entries and older environments stay valid.
    """

    __slots__ = ("_frame", "_parent")

    def __init__(self, frame: Mapping[str, SValue] | None = None, parent: SEnv | None = None) -> None:
        self._frame: dict[str, SValue] = dict(frame) if frame else {}
        self._parent = parent

    @staticmethod
    def empty() -> SEnv:
        return SEnv()

    def extend(self, name: str, svalue: SValue) -> SEnv:
        return SEnv({name: svalue}, self)

    def extend_many(self, bindings: Mapping[str, SValue]) -> SEnv:
        if not bindings:
            return self
        return SEnv(bindings, self)

    def get(self, name: str) -> SValue | None:
        env: SEnv | None = self
        while env is not None:
            if name in env._frame:
                return env._frame[name]
            env = env._parent
        return None

    def lookup(self, name: str) -> SValue:
        found = self.get(name)
        if found is None:
            raise UnboundVariable(name)
        return found

    def __contains__(self, name: str) -> bool:
        return self.get(name) is not None

    def names(self) -> Iterator[str]:
        seen: set[str] = set()
        env: SEnv | None = self
        while env is not None:
            for name in env._frame:
                if name not in seen:
                    seen.add(name)
                    yield name
            env = env._parent

    def __str__(self) -> str:
        return f"SEnv({len(list(self.names()))} bindings)"


class RefinementContext:
    """Constraints learned about variables from enclosing branch conditions."""

    __slots__ = ("_refinements",)

    def __init__(self, refinements: Mapping[str, Constraint] | None = None) -> None:
        self._refinements: dict[str, Constraint] = dict(refinements) if refinements else {}

    @staticmethod
    def empty() -> RefinementContext:
        return RefinementContext()

    def get(self, name: str) -> Constraint | None:
        return self._refinements.get(name)

    def refine(self, refinements: Mapping[str, Constraint]) -> RefinementContext:
        """New context with ``refinements`` narrowed into the existing ones."""
        merged = dict(self._refinements)
        for name, c in refinements.items():
            merged[name] = narrow(merged[name], c) if name in merged else c
        return RefinementContext(merged)

    def without(self, names: set[str]) -> RefinementContext:
        """Drop refinements for names rebound in an inner scope."""
        if not names & self._refinements.keys():
            return self
        return RefinementContext({k: v for k, v in self._refinements.items() if k not in names})

    def items(self):
        return self._refinements.items()

    def __len__(self) -> int:
        return len(self._refinements)

    def __str__(self) -> str:
        inner = ", ".join(f"{k}: {v}" for k, v in self._refinements.items())
        return f"{{{inner}}}"
