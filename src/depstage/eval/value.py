"""Value representations for the staged evaluator."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Union

from depstage.core.constraint import (
    NEVER,
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
    IS_ARRAY,
    IS_FUNCTION,
    IS_OBJECT,
    Length,
    Lt,
    Lte,
    NeverConstraint,
    Not,
    Or,
    Rec,
    RecVar,
    TypeParam,
    and_,
    format_literal,
    implies,
    literal,
    or_,
    simplify,
    unroll,
)


@dataclass(frozen=True)
class VNumber:
    value: float

    def __str__(self) -> str:
        return format_literal(self.value)


@dataclass(frozen=True)
class VString:
    value: str

    def __str__(self) -> str:
        return format_literal(self.value)


@dataclass(frozen=True)
class VBool:
    value: bool

    def __str__(self) -> str:
        return "true" if self.value else "false"


@dataclass(frozen=True)
class VNull:
    def __str__(self) -> str:
        return "null"


@dataclass(frozen=True)
class VObject:
    """Object value with ordered fields."""

    fields: tuple[tuple[str, Value], ...]

    def get(self, name: str) -> Value | None:
        for key, value in self.fields:
            if key == name:
                return value
        return None

    def keys(self) -> list[str]:
        return [key for key, _ in self.fields]

    def __str__(self) -> str:
        if not self.fields:
            return "{}"
        inner = ", ".join(f"{k}: {v}" for k, v in self.fields)
        return f"{{ {inner} }}"


@dataclass(frozen=True)
class VArray:
    elements: tuple[Value, ...]

    def __str__(self) -> str:
        return "[" + ", ".join(str(e) for e in self.elements) + "]"


@dataclass(frozen=True)
class VClosure:
    """Function value.

    Body and captured environment live in the session's closure arena under
    ``handle``; the value itself stays backend-agnostic.
    """

    handle: int
    name: str | None = None

    def __str__(self) -> str:
        return f"<function {self.name}>" if self.name else "<function>"


@dataclass(frozen=True)
class VType:
    """Reified type value."""

    constraint: Constraint

    def __str__(self) -> str:
        return f"Type<{self.constraint}>"


@dataclass(frozen=True)
class VBuiltin:
    name: str

    def __str__(self) -> str:
        return f"<builtin {self.name}>"


Value = Union[VNumber, VString, VBool, VNull, VObject, VArray, VClosure, VType, VBuiltin]

NULL = VNull()
TRUE = VBool(True)
FALSE = VBool(False)


def array_constraint(element_constraints: list[Constraint]) -> Constraint:
    """Aggregate constraint of an array built from per-element constraints."""
    parts: list[Constraint] = [IS_ARRAY, Length(literal(len(element_constraints)))]
    parts.extend(ElementAt(i, c) for i, c in enumerate(element_constraints))
    parts.append(Elements(simplify(or_(element_constraints))))
    return And(tuple(parts))


def object_constraint(field_constraints: list[tuple[str, Constraint]]) -> Constraint:
    """Aggregate constraint of a closed object literal."""
    parts: list[Constraint] = [IS_OBJECT]
    parts.extend(HasField(name, c) for name, c in field_constraints)
    parts.append(IndexSig(NEVER))
    return And(tuple(parts))


def constraint_of(value: Value) -> Constraint:
    """The most precise constraint describing a value."""
    match value:
        case VNumber(v) | VString(v) | VBool(v):
            return literal(v)
        case VNull():
            return literal(None)
        case VObject(fields):
            return object_constraint([(k, constraint_of(v)) for k, v in fields])
        case VArray(elements):
            return array_constraint([constraint_of(e) for e in elements])
        case VClosure() | VBuiltin():
            return IS_FUNCTION
        case VType(c):
            return IsType(c)
    raise TypeError(f"Unknown value: {value!r}")


def _kind_matches(value: Value, kind: str) -> bool:
    match value:
        case VNumber():
            return kind == "number"
        case VString():
            return kind == "string"
        case VBool():
            return kind == "boolean"
        case VNull():
            return kind == "null"
        case VObject():
            return kind == "object"
        case VArray():
            return kind in ("array", "object")
        case VClosure() | VBuiltin():
            return kind in ("function", "object")
    return False


def value_satisfies(value: Value, constraint: Constraint) -> bool:
    """Check a concrete value against a constraint."""
    match constraint:
        case AnyConstraint():
            return True
        case NeverConstraint():
            return False
        case Is(kind):
            return _kind_matches(value, kind)
        case Equals():
            return isinstance(value, (VNumber, VString, VBool, VNull)) and Equals(primitive_of(value)) == constraint
        case Gt(n):
            return isinstance(value, VNumber) and value.value > n
        case Gte(n):
            return isinstance(value, VNumber) and value.value >= n
        case Lt(n):
            return isinstance(value, VNumber) and value.value < n
        case Lte(n):
            return isinstance(value, VNumber) and value.value <= n
        case HasField(name, inner):
            if not isinstance(value, VObject):
                return False
            field_value = value.get(name)
            return field_value is not None and value_satisfies(field_value, inner)
        case Elements(inner):
            return isinstance(value, VArray) and all(value_satisfies(e, inner) for e in value.elements)
        case ElementAt(index, inner):
            if not isinstance(value, VArray) or index >= len(value.elements):
                return False
            return value_satisfies(value.elements[index], inner)
        case Length(inner):
            match value:
                case VArray(elements):
                    return value_satisfies(VNumber(len(elements)), inner)
                case VString(text):
                    return value_satisfies(VNumber(len(text)), inner)
            return False
        case IndexSig(inner):
            return _index_sig_satisfied(value, inner, set())
        case And(operands):
            listed = {op.name for op in operands if isinstance(op, HasField)}
            for op in operands:
                if isinstance(op, IndexSig):
                    if not _index_sig_satisfied(value, op.constraint, listed):
                        return False
                elif not value_satisfies(value, op):
                    return False
            return True
        case Or(operands):
            return any(value_satisfies(value, op) for op in operands)
        case Not(inner):
            return not value_satisfies(value, inner)
        case IsType(inner):
            return isinstance(value, VType) and implies(value.constraint, inner)
        case Rec():
            return value_satisfies(value, unroll(constraint))
        case RecVar():
            return False
        case CVar():
            return True
        case TypeParam(_, bound, _):
            return value_satisfies(value, bound)
        case FnType() | GenericFnType():
            return isinstance(value, (VClosure, VBuiltin))
    raise TypeError(f"Unknown constraint: {constraint!r}")


def _index_sig_satisfied(value: Value, inner: Constraint, listed: set[str]) -> bool:
    if not isinstance(value, VObject):
        return False
    return all(value_satisfies(v, inner) for k, v in value.fields if k not in listed)


def primitive_of(value: Value) -> Any:
    match value:
        case VNumber(v) | VString(v) | VBool(v):
            return v
        case VNull():
            return None
    raise TypeError(f"Not a primitive value: {value}")


def values_equal(a: Value, b: Value) -> bool:
    """Equality as the ``==`` operator sees it.

    Primitives compare by value, types structurally, aggregates by identity,
    and closures are never equal.
    """
    match (a, b):
        case (VNumber(x), VNumber(y)) | (VString(x), VString(y)) | (VBool(x), VBool(y)):
            return x == y
        case (VNull(), VNull()):
            return True
        case (VType(x), VType(y)):
            return x == y
        case (VObject(), VObject()) | (VArray(), VArray()):
            return a is b
        case (VBuiltin(x), VBuiltin(y)):
            return x == y
    return False


def to_python(value: Value) -> Any:
    """Convert a first-order value to plain Python data."""
    match value:
        case VNumber(v) | VString(v) | VBool(v):
            return v
        case VNull():
            return None
        case VArray(elements):
            return [to_python(e) for e in elements]
        case VObject(fields):
            return {k: to_python(v) for k, v in fields}
    raise TypeError(f"Cannot convert {value} to a Python value")


def from_python(data: Any) -> Value:
    """Convert plain Python data to a value."""
    if data is None:
        return NULL
    if isinstance(data, bool):
        return VBool(data)
    if isinstance(data, (int, float)):
        return VNumber(data)
    if isinstance(data, str):
        return VString(data)
    if isinstance(data, (list, tuple)):
        return VArray(tuple(from_python(e) for e in data))
    if isinstance(data, dict):
        return VObject(tuple((str(k), from_python(v)) for k, v in data.items()))
    raise TypeError(f"Cannot convert {data!r} to a value")


def is_compound(value: Value) -> bool:
    """Values that are not primitives (a residual must reference them by name)."""
    return isinstance(value, (VObject, VArray, VClosure))


def and_constraint_of(c: Constraint, value: Value) -> Constraint:
    """Refine ``c`` with the exact constraint of a computed value."""
    return simplify(and_([c, constraint_of(value)]))
