"""Constraint solving and generic instantiation."""

from __future__ import annotations

import itertools
from dataclasses import dataclass, field
from typing import Callable, Iterable

from depstage.core.constraint import (
    ANY,
    And,
    AnyConstraint,
    Constraint,
    CVar,
    ElementAt,
    Elements,
    Equals,
    FnType,
    GenericFnType,
    Gt,
    Gte,
    HasField,
    IndexSig,
    Is,
    IsType,
    Length,
    Lt,
    Lte,
    NeverConstraint,
    Not,
    Or,
    Rec,
    RecVar,
    TypeParam,
    implies,
    narrow,
    or_,
    simplify,
    widen,
)


def var_key(c: CVar | TypeParam) -> str:
    """Substitution key of a solver variable or type parameter."""
    match c:
        case CVar(id):
            return f"?{id}"
        case TypeParam(name, _, id):
            return f"{name}#{id}"
    raise TypeError(f"Not a variable: {c!r}")


@dataclass(frozen=True)
class Substitution:
    """Immutable substitution from variable keys to constraints."""

    mapping: dict[str, Constraint] = field(default_factory=dict)

    @staticmethod
    def empty() -> Substitution:
        return Substitution({})

    @staticmethod
    def singleton(var: CVar | TypeParam, c: Constraint) -> Substitution:
        return Substitution({var_key(var): c})

    def lookup(self, var: CVar | TypeParam) -> Constraint | None:
        return self.mapping.get(var_key(var))

    def extend(self, var: CVar | TypeParam, c: Constraint) -> Substitution:
        return Substitution({**self.mapping, var_key(var): c})

    def apply(self, c: Constraint) -> Constraint:
        """Apply this substitution, resolving chains of bound variables."""
        return _apply(self, c, frozenset())

    def merge(self, other: Substitution) -> Substitution | None:
        """Combine two substitutions; ``None`` when they bind a key incompatibly.

        A key bound to two constraints of the same kind, such as two different
        number literals, takes their union. Bindings whose kinds exclude each
        other are a conflict.
        """
        merged = dict(self.mapping)
        for key, c in other.mapping.items():
            if key not in merged:
                merged[key] = c
                continue
            existing = merged[key]
            if implies(existing, c):
                continue
            if implies(c, existing):
                merged[key] = c
                continue
            if isinstance(narrow(widen(existing), widen(c)), NeverConstraint):
                return None
            merged[key] = simplify(or_([existing, c]))
        return Substitution(merged)

    def __len__(self) -> int:
        return len(self.mapping)

    def __str__(self) -> str:
        items = ", ".join(f"{k} -> {v}" for k, v in self.mapping.items())
        return f"{{{items}}}"


def _apply(sub: Substitution, c: Constraint, resolving: frozenset[str]) -> Constraint:
    match c:
        case CVar() | TypeParam():
            key = var_key(c)
            if key in sub.mapping and key not in resolving:
                return _apply(sub, sub.mapping[key], resolving | {key})
            if isinstance(c, TypeParam):
                return TypeParam(c.name, _apply(sub, c.bound, resolving), c.id)
            return c
        case And(operands):
            return And(tuple(_apply(sub, op, resolving) for op in operands))
        case Or(operands):
            return Or(tuple(_apply(sub, op, resolving) for op in operands))
        case Not(operand):
            return Not(_apply(sub, operand, resolving))
        case HasField(name, inner):
            return HasField(name, _apply(sub, inner, resolving))
        case Elements(inner):
            return Elements(_apply(sub, inner, resolving))
        case ElementAt(index, inner):
            return ElementAt(index, _apply(sub, inner, resolving))
        case Length(inner):
            return Length(_apply(sub, inner, resolving))
        case IndexSig(inner):
            return IndexSig(_apply(sub, inner, resolving))
        case IsType(inner):
            return IsType(_apply(sub, inner, resolving))
        case Rec(name, body):
            return Rec(name, _apply(sub, body, resolving))
        case FnType(params, result):
            return FnType(tuple(_apply(sub, p, resolving) for p in params), _apply(sub, result, resolving))
        case GenericFnType(type_params, params, result):
            return GenericFnType(
                type_params,
                tuple(_apply(sub, p, resolving) for p in params),
                _apply(sub, result, resolving),
            )
        case _:
            return c


def free_constraint_vars(c: Constraint) -> set[str]:
    """Keys of all solver variables and type parameters occurring in ``c``."""
    match c:
        case CVar():
            return {var_key(c)}
        case TypeParam(_, bound, _):
            return {var_key(c)} | free_constraint_vars(bound)
        case And(operands) | Or(operands):
            result: set[str] = set()
            for op in operands:
                result |= free_constraint_vars(op)
            return result
        case Not(inner) | HasField(_, inner) | Elements(inner) | ElementAt(_, inner) | Length(inner):
            return free_constraint_vars(inner)
        case IndexSig(inner) | IsType(inner) | Rec(_, inner):
            return free_constraint_vars(inner)
        case FnType(params, result):
            found = free_constraint_vars(result)
            for p in params:
                found |= free_constraint_vars(p)
            return found
        case GenericFnType(type_params, params, result):
            found = free_constraint_vars(FnType(params, result))
            return found - {var_key(tp) for tp in type_params}
        case _:
            return set()


def solve(a: Constraint, b: Constraint) -> Substitution | None:
    """Find a substitution under which ``a`` matches ``b``.

    ``a`` is usually the concrete side (an argument) and ``b`` the pattern
    (a parameter), but variables on either side are bound. Returns
    ``None`` when the two cannot be unified.
    """
    return _solve(a, b, Substitution.empty())


def _bind(var: CVar | TypeParam, c: Constraint, sub: Substitution) -> Substitution | None:
    if var_key(var) in free_constraint_vars(c):
        return None
    if isinstance(var, TypeParam) and not implies(c, var.bound):
        return None
    existing = sub.lookup(var)
    if existing is None:
        return sub.extend(var, c)
    return sub.merge(Substitution.singleton(var, c))


def _solve(a: Constraint, b: Constraint, sub: Substitution) -> Substitution | None:
    a = sub.apply(a)
    b = sub.apply(b)

    if a == b:
        return sub
    if isinstance(a, AnyConstraint) or isinstance(b, AnyConstraint):
        return sub
    if isinstance(a, NeverConstraint) or isinstance(b, NeverConstraint):
        return None

    if isinstance(a, CVar):
        return _bind(a, b, sub)
    if isinstance(b, CVar) or isinstance(b, TypeParam):
        return _bind(b, a, sub)
    if isinstance(a, TypeParam):
        return _bind(a, b, sub)

    match (a, b):
        case (Is(k1), Is(k2)):
            return sub if k1 == k2 else None
        case (Equals(), Equals()):
            return None
        case (Gt(x), Gt(y)) | (Gte(x), Gte(y)) | (Lt(x), Lt(y)) | (Lte(x), Lte(y)):
            return sub if x == y else None
        case (HasField(n1, c1), HasField(n2, c2)):
            return _solve(c1, c2, sub) if n1 == n2 else None
        case (ElementAt(i1, c1), ElementAt(i2, c2)):
            return _solve(c1, c2, sub) if i1 == i2 else None
        case (Elements(c1), Elements(c2)) | (Length(c1), Length(c2)) | (IndexSig(c1), IndexSig(c2)):
            return _solve(c1, c2, sub)
        case (IsType(c1), IsType(c2)) | (Not(c1), Not(c2)):
            return _solve(c1, c2, sub)
        case (Rec(n1, body1), Rec(n2, body2)):
            return _solve(body1, body2, sub) if n1 == n2 else None
        case (RecVar(n1), RecVar(n2)):
            return sub if n1 == n2 else None
        case (FnType(p1, r1), FnType(p2, r2)):
            if len(p1) != len(p2):
                return None
            for x, y in zip(p1, p2):
                next_sub = _solve(x, y, sub)
                if next_sub is None:
                    return None
                sub = next_sub
            return _solve(r1, r2, sub)
        case (Or(ops1), Or(ops2)):
            if len(ops1) != len(ops2):
                return None
            for x, y in zip(ops1, ops2):
                next_sub = _solve(x, y, sub)
                if next_sub is None:
                    return None
                sub = next_sub
            return sub
        case (And(ops1), And(ops2)):
            # Every conjunct of the pattern must be matched by some conjunct of a.
            for pattern in ops2:
                matched = _solve_any(ops1, pattern, sub)
                if matched is None:
                    return None
                sub = matched
            return sub
        case (And(ops1), _):
            return _solve_any(ops1, b, sub)
        case (_, And(ops2)):
            for pattern in ops2:
                next_sub = _solve(a, pattern, sub)
                if next_sub is None:
                    return None
                sub = next_sub
            return sub
    if implies(a, b):
        return sub
    return None


def _solve_any(candidates: Iterable[Constraint], pattern: Constraint, sub: Substitution) -> Substitution | None:
    for candidate in candidates:
        result = _solve(candidate, pattern, sub)
        if result is not None:
            return result
    return None


def substitute_type_params(c: Constraint, subs: dict[int, Constraint]) -> Constraint:
    """Replace type parameters (by id) with constraints."""
    match c:
        case TypeParam(_, _, id):
            return subs.get(id, c)
        case And(operands):
            return And(tuple(substitute_type_params(op, subs) for op in operands))
        case Or(operands):
            return or_(substitute_type_params(op, subs) for op in operands)
        case Not(operand):
            return Not(substitute_type_params(operand, subs))
        case HasField(name, inner):
            return HasField(name, substitute_type_params(inner, subs))
        case Elements(inner):
            return Elements(substitute_type_params(inner, subs))
        case ElementAt(index, inner):
            return ElementAt(index, substitute_type_params(inner, subs))
        case Length(inner):
            return Length(substitute_type_params(inner, subs))
        case IndexSig(inner):
            return IndexSig(substitute_type_params(inner, subs))
        case IsType(inner):
            return IsType(substitute_type_params(inner, subs))
        case Rec(name, body):
            return Rec(name, substitute_type_params(body, subs))
        case FnType(params, result):
            return FnType(
                tuple(substitute_type_params(p, subs) for p in params),
                substitute_type_params(result, subs),
            )
        case GenericFnType(type_params, params, result):
            # Inner generics shadow their own parameters.
            inner = {k: v for k, v in subs.items() if k not in {tp.id for tp in type_params}}
            return GenericFnType(
                type_params,
                tuple(substitute_type_params(p, inner) for p in params),
                substitute_type_params(result, inner),
            )
        case _:
            return c


@dataclass(frozen=True)
class Instantiation:
    """Result of instantiating a generic function type at a call site."""

    substitution: Substitution
    params: tuple[Constraint, ...]
    result: Constraint


def instantiate_generic_call(
    fn: GenericFnType,
    arg_constraints: list[Constraint],
    fresh_cvar: Callable[[], CVar] | None = None,
) -> Instantiation | None:
    """Instantiate ``fn`` against the constraints of the call-site arguments.

    Each type parameter gets a fresh solver variable; every argument is
    solved against its parameter (falling back to the reverse direction and
    then to the branches of a union parameter) and the per-argument
    substitutions are merged. Returns ``None`` on a conflict or when a
    solved parameter violates its bound.
    """
    if fresh_cvar is None:
        counter = itertools.count()
        fresh_cvar = lambda: CVar(next(counter))  # noqa: E731

    fresh = {tp.id: fresh_cvar() for tp in fn.type_params}
    params = tuple(substitute_type_params(p, fresh) for p in fn.params)

    substitution = Substitution.empty()
    for arg, param in zip(arg_constraints, params):
        solved = solve(arg, param)
        if solved is None:
            solved = solve(param, arg)
        if solved is None and isinstance(param, Or):
            solved = next((s for branch in param.operands if (s := solve(arg, branch)) is not None), None)
        if solved is None:
            return None
        merged = substitution.merge(solved)
        if merged is None:
            return None
        substitution = merged

    # Unsolved parameters fall back to their declared bound.
    for tp in fn.type_params:
        cvar = fresh[tp.id]
        solved = substitution.lookup(cvar)
        if solved is None:
            substitution = substitution.extend(cvar, tp.bound)
        elif not implies(substitution.apply(solved), tp.bound):
            return None

    result = simplify(substitution.apply(substitute_type_params(fn.result, fresh)))
    return Instantiation(
        substitution=substitution,
        params=tuple(simplify(substitution.apply(p)) for p in params),
        result=result,
    )


def infer_call_result(
    fn_constraint: Constraint,
    arg_constraints: list[Constraint],
    fresh_cvar: Callable[[], CVar] | None = None,
) -> Constraint:
    """Result constraint of calling a value described by ``fn_constraint``."""
    match fn_constraint:
        case GenericFnType():
            inst = instantiate_generic_call(fn_constraint, arg_constraints, fresh_cvar)
            return inst.result if inst is not None else ANY
        case FnType(_, result):
            return result
        case And(operands):
            for op in operands:
                if isinstance(op, (FnType, GenericFnType)):
                    return infer_call_result(op, arg_constraints, fresh_cvar)
    return ANY


@dataclass(frozen=True)
class FunctionSignature:
    """Declared signature of an exported function."""

    name: str
    type_params: tuple[TypeParam, ...]
    params: tuple[tuple[str, Constraint], ...]
    result: Constraint

    @property
    def is_generic(self) -> bool:
        return bool(self.type_params)

    def to_constraint(self) -> Constraint:
        param_constraints = tuple(c for _, c in self.params)
        if self.type_params:
            return GenericFnType(self.type_params, param_constraints, self.result)
        return FnType(param_constraints, self.result)
