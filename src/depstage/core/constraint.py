"""Constraint representations and the refinement algebra.

Constraints are the type language of depstage: structural, composable
descriptions of a value's shape. They are immutable and freely shareable.

The algebra provided here:
    - smart constructors ``and_`` / ``or_`` that flatten nested groups
    - ``simplify``: normalization (idempotent)
    - ``implies``: decision procedure, coinductive over ``Rec``
    - ``narrow`` / ``narrow_or`` / ``unify``
    - field and element extraction through ``And``/``Or``/``Rec``
    - ``constraint_to_string`` for diagnostics
"""

from __future__ import annotations

import json
import math
from dataclasses import dataclass
from typing import Iterable, Literal, Union

Primitive = Union[float, int, str, bool, None]

Kind = Literal["number", "string", "boolean", "null", "undefined", "object", "array", "function"]

# Pairs of classifications that can describe the same value.
_COMPATIBLE_KINDS = {
    frozenset({"object", "array"}),
    frozenset({"object", "function"}),
}


class Constraint:
    """Base class for constraints."""

    def __str__(self) -> str:
        return constraint_to_string(self)


@dataclass(frozen=True, repr=False)
class AnyConstraint(Constraint):
    """Top: satisfied by every value."""

    def __repr__(self) -> str:
        return "ANY"


@dataclass(frozen=True, repr=False)
class NeverConstraint(Constraint):
    """Bottom: satisfied by no value."""

    def __repr__(self) -> str:
        return "NEVER"


@dataclass(frozen=True)
class Is(Constraint):
    """Classification constraint: isNumber, isString, ..."""

    kind: Kind


@dataclass(frozen=True, eq=False)
class Equals(Constraint):
    """Literal singleton constraint.

    Equality distinguishes booleans from numbers, so ``Equals(True)`` and
    ``Equals(1)`` are different constraints.
    """

    value: Primitive

    def _key(self) -> tuple[str, Primitive]:
        return (literal_kind(self.value), self.value)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Equals):
            return NotImplemented
        return self._key() == other._key()

    def __hash__(self) -> int:
        return hash(("equals",) + self._key())


@dataclass(frozen=True)
class Gt(Constraint):
    bound: float


@dataclass(frozen=True)
class Gte(Constraint):
    bound: float


@dataclass(frozen=True)
class Lt(Constraint):
    bound: float


@dataclass(frozen=True)
class Lte(Constraint):
    bound: float


@dataclass(frozen=True)
class HasField(Constraint):
    """Object has field ``name`` whose value satisfies ``constraint``."""

    name: str
    constraint: Constraint


@dataclass(frozen=True)
class Elements(Constraint):
    """Every array element satisfies ``constraint``."""

    constraint: Constraint


@dataclass(frozen=True)
class ElementAt(Constraint):
    """Array element at ``index`` satisfies ``constraint`` (tuple slot)."""

    index: int
    constraint: Constraint


@dataclass(frozen=True)
class Length(Constraint):
    """Array length satisfies ``constraint``."""

    constraint: Constraint


@dataclass(frozen=True)
class IndexSig(Constraint):
    """Constraint on fields not listed by ``HasField``.

    ``IndexSig(NEVER)`` marks a closed object.
    """

    constraint: Constraint


@dataclass(frozen=True)
class And(Constraint):
    operands: tuple[Constraint, ...]


@dataclass(frozen=True)
class Or(Constraint):
    operands: tuple[Constraint, ...]


@dataclass(frozen=True)
class Not(Constraint):
    operand: Constraint


@dataclass(frozen=True)
class CVar(Constraint):
    """Solver variable, unique within a session."""

    id: int


@dataclass(frozen=True)
class IsType(Constraint):
    """Constraint of a reified type value whose described type is ``constraint``."""

    constraint: Constraint


@dataclass(frozen=True)
class Rec(Constraint):
    """Recursive binder: ``μname. body``."""

    name: str
    body: Constraint


@dataclass(frozen=True)
class RecVar(Constraint):
    """Reference to an enclosing ``Rec`` binder."""

    name: str


@dataclass(frozen=True)
class TypeParam(Constraint):
    """Generic type parameter with an upper bound."""

    name: str
    bound: Constraint
    id: int


@dataclass(frozen=True)
class FnType(Constraint):
    params: tuple[Constraint, ...]
    result: Constraint


@dataclass(frozen=True)
class GenericFnType(Constraint):
    type_params: tuple[TypeParam, ...]
    params: tuple[Constraint, ...]
    result: Constraint


ANY = AnyConstraint()
NEVER = NeverConstraint()
IS_NUMBER = Is("number")
IS_STRING = Is("string")
IS_BOOL = Is("boolean")
IS_NULL = Is("null")
IS_UNDEFINED = Is("undefined")
IS_OBJECT = Is("object")
IS_ARRAY = Is("array")
IS_FUNCTION = Is("function")


def literal_kind(value: Primitive) -> Kind:
    """Classification of a primitive literal."""
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "boolean"
    if isinstance(value, (int, float)):
        return "number"
    if isinstance(value, str):
        return "string"
    raise ValueError(f"Not a primitive literal: {value!r}")


def literal(value: Primitive) -> Constraint:
    """Constraint of a primitive literal: ``and(classification, equals(v))``."""
    return And((Is(literal_kind(value)), Equals(value)))


def tuple_constraint(element_constraints: Iterable[Constraint]) -> Constraint:
    """Fixed-length array with a constraint per slot."""
    items = list(element_constraints)
    parts: list[Constraint] = [IS_ARRAY, Length(literal(len(items)))]
    parts.extend(ElementAt(i, c) for i, c in enumerate(items))
    return And(tuple(parts))


def array_of(element: Constraint) -> Constraint:
    """Homogeneous array type."""
    return And((IS_ARRAY, Elements(element)))


def format_literal(value: Primitive) -> str:
    """Render a primitive the way the target language would write it."""
    if isinstance(value, float) and not isinstance(value, bool):
        if math.isfinite(value) and value == int(value):
            return str(int(value))
        if math.isnan(value):
            return "NaN"
        if math.isinf(value):
            return "Infinity" if value > 0 else "-Infinity"
    return json.dumps(value)


def and_(constraints: Iterable[Constraint]) -> Constraint:
    """Conjunction, flattening nested ``And``."""
    flat: list[Constraint] = []
    for c in constraints:
        if isinstance(c, And):
            flat.extend(c.operands)
        else:
            flat.append(c)
    if not flat:
        return ANY
    if len(flat) == 1:
        return flat[0]
    return And(tuple(flat))


def or_(constraints: Iterable[Constraint]) -> Constraint:
    """Disjunction, flattening nested ``Or``."""
    flat: list[Constraint] = []
    for c in constraints:
        if isinstance(c, Or):
            flat.extend(c.operands)
        else:
            flat.append(c)
    if not flat:
        return NEVER
    if len(flat) == 1:
        return flat[0]
    return Or(tuple(flat))


def _dedupe(items: Iterable[Constraint]) -> list[Constraint]:
    seen: set[Constraint] = set()
    result: list[Constraint] = []
    for item in items:
        if item not in seen:
            seen.add(item)
            result.append(item)
    return result


def simplify(c: Constraint) -> Constraint:
    """Normalize a constraint.

    Children are simplified before the parent is rebuilt, and the parent is
    flattened afterwards, so ``simplify(simplify(c)) == simplify(c)``.
    """
    match c:
        case And(operands):
            return _simplify_and([simplify(op) for op in operands])
        case Or(operands):
            return _simplify_or([simplify(op) for op in operands])
        case Not(operand):
            inner = simplify(operand)
            match inner:
                case AnyConstraint():
                    return NEVER
                case NeverConstraint():
                    return ANY
                case Not(double):
                    return double
            return Not(inner)
        case HasField(name, constraint):
            return HasField(name, simplify(constraint))
        case Elements(constraint):
            return Elements(simplify(constraint))
        case ElementAt(index, constraint):
            return ElementAt(index, simplify(constraint))
        case Length(constraint):
            return Length(simplify(constraint))
        case IndexSig(constraint):
            return IndexSig(simplify(constraint))
        case IsType(constraint):
            return IsType(simplify(constraint))
        case Rec(name, body):
            return Rec(name, simplify(body))
        case FnType(params, result):
            return FnType(tuple(simplify(p) for p in params), simplify(result))
        case _:
            return c


def _simplify_and(operands: list[Constraint]) -> Constraint:
    flat: list[Constraint] = []
    for op in operands:
        if isinstance(op, And):
            flat.extend(op.operands)
        else:
            flat.append(op)
    if any(isinstance(op, NeverConstraint) for op in flat):
        return NEVER
    items = _dedupe(op for op in flat if not isinstance(op, AnyConstraint))
    if not items:
        return ANY
    if has_contradiction(items):
        return NEVER
    if len(items) == 1:
        return items[0]
    return And(tuple(items))


def _simplify_or(operands: list[Constraint]) -> Constraint:
    flat: list[Constraint] = []
    for op in operands:
        if isinstance(op, Or):
            flat.extend(op.operands)
        else:
            flat.append(op)
    if any(isinstance(op, AnyConstraint) for op in flat):
        return ANY
    items = _dedupe(op for op in flat if not isinstance(op, NeverConstraint))
    if not items:
        return NEVER
    if len(items) == 1:
        return items[0]
    return Or(tuple(items))


def has_contradiction(items: list[Constraint]) -> bool:
    """Whether a flat list of conjuncts can never be satisfied together."""
    kinds: set[str] = set()
    literals: set[Equals] = set()
    lower: tuple[float, bool] | None = None  # (bound, strict)
    upper: tuple[float, bool] | None = None
    for item in items:
        match item:
            case Is(kind):
                kinds.add(kind)
            case Equals(value):
                literals.add(item)
                kinds.add(literal_kind(value))
            case Gt(bound) | Gte(bound):
                strict = isinstance(item, Gt)
                if lower is None or bound > lower[0] or (bound == lower[0] and strict):
                    lower = (bound, strict)
            case Lt(bound) | Lte(bound):
                strict = isinstance(item, Lt)
                if upper is None or bound < upper[0] or (bound == upper[0] and strict):
                    upper = (bound, strict)

    if len(literals) > 1:
        return True
    kind_list = sorted(kinds)
    for i, first in enumerate(kind_list):
        for second in kind_list[i + 1 :]:
            if frozenset({first, second}) not in _COMPATIBLE_KINDS:
                return True

    if lower is not None and upper is not None:
        if lower[0] > upper[0]:
            return True
        if lower[0] == upper[0] and (lower[1] or upper[1]):
            return True

    for lit in literals:
        if isinstance(lit.value, (int, float)) and not isinstance(lit.value, bool):
            if lower is not None and not _above(lit.value, lower):
                return True
            if upper is not None and not _below(lit.value, upper):
                return True

    for item in items:
        if isinstance(item, Not):
            others = [other for other in items if other is not item]
            if any(implies(other, item.operand) for other in others):
                return True
    return False


def _above(value: float, lower: tuple[float, bool]) -> bool:
    bound, strict = lower
    return value > bound if strict else value >= bound


def _below(value: float, upper: tuple[float, bool]) -> bool:
    bound, strict = upper
    return value < bound if strict else value <= bound


def substitute_rec_var(c: Constraint, name: str, replacement: Constraint) -> Constraint:
    """Replace free ``RecVar(name)`` occurrences in ``c``."""
    match c:
        case RecVar(var_name):
            return replacement if var_name == name else c
        case Rec(binder, body):
            if binder == name:
                return c
            return Rec(binder, substitute_rec_var(body, name, replacement))
        case And(operands):
            return And(tuple(substitute_rec_var(op, name, replacement) for op in operands))
        case Or(operands):
            return Or(tuple(substitute_rec_var(op, name, replacement) for op in operands))
        case Not(operand):
            return Not(substitute_rec_var(operand, name, replacement))
        case HasField(field, inner):
            return HasField(field, substitute_rec_var(inner, name, replacement))
        case Elements(inner):
            return Elements(substitute_rec_var(inner, name, replacement))
        case ElementAt(index, inner):
            return ElementAt(index, substitute_rec_var(inner, name, replacement))
        case Length(inner):
            return Length(substitute_rec_var(inner, name, replacement))
        case IndexSig(inner):
            return IndexSig(substitute_rec_var(inner, name, replacement))
        case IsType(inner):
            return IsType(substitute_rec_var(inner, name, replacement))
        case FnType(params, result):
            return FnType(
                tuple(substitute_rec_var(p, name, replacement) for p in params),
                substitute_rec_var(result, name, replacement),
            )
        case _:
            return c


def unroll(c: Rec) -> Constraint:
    """Unroll a recursive constraint one level."""
    return substitute_rec_var(c.body, c.name, c)


def implies(a: Constraint, b: Constraint) -> bool:
    """Decide whether every value satisfying ``a`` satisfies ``b``.

    Recursive constraints are compared coinductively: each (a, b) pair
    reached through a ``Rec`` unrolling is assumed to hold when revisited.
    """
    return _implies(simplify(a), simplify(b), frozenset())


def _implies(a: Constraint, b: Constraint, assumed: frozenset[tuple[Constraint, Constraint]]) -> bool:
    if a == b:
        return True
    if isinstance(a, NeverConstraint) or isinstance(b, AnyConstraint):
        return True
    if isinstance(a, AnyConstraint) or isinstance(b, NeverConstraint):
        return False

    if isinstance(a, Rec) or isinstance(b, Rec):
        pair = (a, b)
        if pair in assumed:
            return True
        assumed = assumed | {pair}
        left = unroll(a) if isinstance(a, Rec) else a
        right = unroll(b) if isinstance(b, Rec) else b
        return _implies(left, right, assumed)

    if isinstance(a, Or):
        return all(_implies(op, b, assumed) for op in a.operands)
    if isinstance(b, And):
        return all(_implies(a, op, assumed) for op in b.operands)
    if isinstance(b, Or):
        if any(_implies(a, op, assumed) for op in b.operands):
            return True
    if isinstance(a, And):
        if any(_implies(op, b, assumed) for op in a.operands):
            return True
        return _and_implies(a, b)
    if isinstance(a, TypeParam):
        return _implies(a.bound, b, assumed)
    if isinstance(b, Not):
        return _simplify_and([a, b.operand]) == NEVER

    match (a, b):
        case (Is(left), Is(right)):
            return right == "object" and left in ("array", "function")
        case (Is("null"), Equals(None)):
            return True
        case (Equals(value), Is(kind)):
            return literal_kind(value) == kind
        case (Equals(value), Gt() | Gte() | Lt() | Lte()):
            if literal_kind(value) != "number":
                return False
            return _bound_holds(value, b)
        case (Gt(x), Gt(y)) | (Gt(x), Gte(y)) | (Gte(x), Gte(y)):
            return x >= y
        case (Gte(x), Gt(y)):
            return x > y
        case (Lt(x), Lt(y)) | (Lt(x), Lte(y)) | (Lte(x), Lte(y)):
            return x <= y
        case (Lte(x), Lt(y)):
            return x < y
        case (HasField(n1, c1), HasField(n2, c2)):
            return n1 == n2 and _implies(c1, c2, assumed)
        case (Elements(c1), Elements(c2)):
            return _implies(c1, c2, assumed)
        case (ElementAt(i1, c1), ElementAt(i2, c2)):
            return i1 == i2 and _implies(c1, c2, assumed)
        case (Length(c1), Length(c2)):
            return _implies(c1, c2, assumed)
        case (IndexSig(c1), IndexSig(c2)):
            return _implies(c1, c2, assumed)
        case (IsType(c1), IsType(c2)):
            return _implies(c1, c2, assumed)
        case (FnType(p1, r1), FnType(p2, r2)):
            if len(p1) != len(p2):
                return False
            return all(_implies(y, x, assumed) for x, y in zip(p1, p2)) and _implies(r1, r2, assumed)
        case (FnType() | GenericFnType(), Is("function")):
            return True
    return False


def _and_implies(a: And, b: Constraint) -> bool:
    """Facts only the conjunction as a whole establishes."""
    if isinstance(b, Equals) and literal_kind(b.value) == "number":
        lower = [op.bound for op in a.operands if isinstance(op, Gte)]
        upper = [op.bound for op in a.operands if isinstance(op, Lte)]
        return b.value in lower and b.value in upper
    return False


def _bound_holds(value: float, bound: Constraint) -> bool:
    match bound:
        case Gt(n):
            return value > n
        case Gte(n):
            return value >= n
        case Lt(n):
            return value < n
        case Lte(n):
            return value <= n
    return False


def narrow(a: Constraint, b: Constraint) -> Constraint:
    """Constraint of a value known to satisfy both ``a`` and ``b``."""
    return simplify(and_([a, b]))


def narrow_or(c: Constraint, refinement: Constraint) -> Constraint:
    """Narrow each branch of a union separately, dropping impossible branches."""
    if not isinstance(c, Or):
        return narrow(c, refinement)
    surviving = [n for branch in c.operands if not isinstance(n := narrow(branch, refinement), NeverConstraint)]
    return simplify(or_(surviving))


def union(a: Constraint, b: Constraint) -> Constraint:
    """Constraint of a value known to satisfy ``a`` or ``b``."""
    return simplify(or_([a, b]))


def unify(a: Constraint, b: Constraint) -> Constraint:
    """Combine two constraints describing the same value.

    The result is ``NEVER`` when they are incompatible; callers decide
    whether that is an error.
    """
    if implies(a, b):
        return simplify(a)
    return narrow(a, b)


def is_closed(c: Constraint) -> bool:
    """Whether an object constraint forbids unlisted fields."""
    match c:
        case IndexSig(NeverConstraint()):
            return True
        case And(operands):
            return any(is_closed(op) for op in operands)
        case Or(operands):
            return all(is_closed(op) for op in operands)
    return False


def extract_field_constraint(c: Constraint, name: str) -> Constraint | None:
    """Constraint of field ``name`` within ``c``.

    Returns ``None`` when the field is not described at all, which is
    distinct from a field described as ``ANY``.
    """
    return _extract_field(c, name, frozenset())


def _extract_field(c: Constraint, name: str, visited: frozenset[Constraint]) -> Constraint | None:
    match c:
        case HasField(field, inner):
            return inner if field == name else None
        case And(operands):
            found = [r for op in operands if (r := _extract_field(op, name, visited)) is not None]
            if found:
                return simplify(and_(found))
            for op in operands:
                if isinstance(op, IndexSig) and not isinstance(op.constraint, NeverConstraint):
                    return op.constraint
            return None
        case Or(operands):
            results = [_extract_field(op, name, visited) for op in operands]
            if any(r is None for r in results):
                return None
            return simplify(or_(r for r in results if r is not None))
        case Rec():
            if c in visited:
                return None
            return _extract_field(unroll(c), name, visited | {c})
        case TypeParam(_, bound, _):
            return _extract_field(bound, name, visited)
    return None


def extract_all_field_names(c: Constraint) -> list[str]:
    """All field names reachable in ``c``, in first-seen order."""
    names: list[str] = []
    _collect_field_names(c, names, frozenset())
    return names


def _collect_field_names(c: Constraint, names: list[str], visited: frozenset[Constraint]) -> None:
    match c:
        case HasField(field, _):
            if field not in names:
                names.append(field)
        case And(operands) | Or(operands):
            for op in operands:
                _collect_field_names(op, names, visited)
        case Rec():
            if c not in visited:
                _collect_field_names(unroll(c), names, visited | {c})
        case TypeParam(_, bound, _):
            _collect_field_names(bound, names, visited)


def extract_element_constraint(c: Constraint, index: int | None = None) -> Constraint | None:
    """Constraint of an array element.

    A positional ``ElementAt`` wins over the homogeneous ``Elements`` when an
    index is given.
    """
    return _extract_element(c, index, frozenset())


def _extract_element(c: Constraint, index: int | None, visited: frozenset[Constraint]) -> Constraint | None:
    match c:
        case ElementAt(i, inner):
            return inner if index is not None and i == index else None
        case Elements(inner):
            return inner
        case And(operands):
            positional = [op.constraint for op in operands if isinstance(op, ElementAt) and op.index == index]
            if positional:
                return positional[0]
            for op in operands:
                found = _extract_element(op, index, visited)
                if found is not None:
                    return found
            return None
        case Or(operands):
            results = [_extract_element(op, index, visited) for op in operands]
            if any(r is None for r in results):
                return None
            return simplify(or_(r for r in results if r is not None))
        case Rec():
            if c in visited:
                return None
            return _extract_element(unroll(c), index, visited | {c})
        case TypeParam(_, bound, _):
            return _extract_element(bound, index, visited)
    return None


def widen(c: Constraint) -> Constraint:
    """Drop literal equalities, keeping the classification."""
    match c:
        case Equals(value):
            return Is(literal_kind(value))
        case And(operands):
            kept = [op for op in operands if not isinstance(op, Equals)]
            if len(kept) == len(operands):
                return c
            if not kept:
                return widen(next(op for op in operands if isinstance(op, Equals)))
            return and_(kept)
        case Or(operands):
            return simplify(or_(widen(op) for op in operands))
    return c


def constraint_to_string(c: Constraint) -> str:
    """Render a constraint as a readable type."""
    match c:
        case AnyConstraint():
            return "any"
        case NeverConstraint():
            return "never"
        case Is(kind):
            return kind
        case Equals(value):
            return format_literal(value)
        case Gt(n):
            return f"> {format_literal(n)}"
        case Gte(n):
            return f">= {format_literal(n)}"
        case Lt(n):
            return f"< {format_literal(n)}"
        case Lte(n):
            return f"<= {format_literal(n)}"
        case HasField(name, inner):
            return f"{{ {name}: {constraint_to_string(inner)} }}"
        case Elements(inner):
            inner_str = constraint_to_string(inner)
            if isinstance(inner, (Or, And)):
                inner_str = f"({inner_str})"
            return f"{inner_str}[]"
        case ElementAt(index, inner):
            return f"[{index}]: {constraint_to_string(inner)}"
        case Length(inner):
            return f"length({constraint_to_string(inner)})"
        case IndexSig(inner):
            return f"[string]: {constraint_to_string(inner)}"
        case And(operands):
            return _and_to_string(operands)
        case Or(operands):
            return " | ".join(constraint_to_string(op) for op in operands)
        case Not(operand):
            return f"not({constraint_to_string(operand)})"
        case CVar(id):
            return f"?{id}"
        case IsType(inner):
            return f"Type<{constraint_to_string(inner)}>"
        case Rec(name, body):
            return f"μ{name}. {constraint_to_string(body)}"
        case RecVar(name):
            return name
        case TypeParam(name, _, _):
            return name
        case FnType(params, result):
            return f"{_params_to_string(params)} => {constraint_to_string(result)}"
        case GenericFnType(type_params, params, result):
            tps = ", ".join(tp.name for tp in type_params)
            return f"<{tps}>{_params_to_string(params)} => {constraint_to_string(result)}"
    raise TypeError(f"Unknown constraint: {c!r}")


def _params_to_string(params: tuple[Constraint, ...]) -> str:
    return "(" + ", ".join(constraint_to_string(p) for p in params) + ")"


def _and_to_string(operands: tuple[Constraint, ...]) -> str:
    classifications = [op for op in operands if isinstance(op, Is)]
    literals = [op for op in operands if isinstance(op, Equals)]
    if len(operands) == 2 and classifications and literals:
        return format_literal(literals[0].value)

    fields = [op for op in operands if isinstance(op, HasField)]
    index_sigs = [op for op in operands if isinstance(op, IndexSig)]
    if IS_OBJECT in operands:
        if len(operands) == 1 + len(fields) + len(index_sigs) and len(index_sigs) <= 1:
            parts = [f"{f.name}: {constraint_to_string(f.constraint)}" for f in fields]
            if index_sigs and not isinstance(index_sigs[0].constraint, NeverConstraint):
                parts.append(f"[string]: {constraint_to_string(index_sigs[0].constraint)}")
            if parts:
                return "{ " + ", ".join(parts) + " }"
            if index_sigs:
                return "{ }"
    return " & ".join(constraint_to_string(op) for op in operands)
