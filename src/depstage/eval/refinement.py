"""Refinement extraction from branch conditions.

Given ``if (x > 0) ...`` the then-branch learns ``x: > 0`` and the
else-branch learns the negation, ``x: <= 0``.
"""

from __future__ import annotations

from depstage.core.ast import BinOp, Call, Expr, Field, Lit, Unary, Var
from depstage.core.constraint import (
    And,
    Constraint,
    Equals,
    Gt,
    Gte,
    HasField,
    IS_ARRAY,
    IS_BOOL,
    IS_FUNCTION,
    IS_NULL,
    IS_NUMBER,
    IS_OBJECT,
    IS_STRING,
    Lt,
    Lte,
    Not,
    Or,
    and_,
    or_,
)

Refinement = dict[str, Constraint]

TYPE_GUARDS: dict[str, Constraint] = {
    "isNumber": IS_NUMBER,
    "isString": IS_STRING,
    "isBool": IS_BOOL,
    "isBoolean": IS_BOOL,
    "isNull": IS_NULL,
    "isObject": IS_OBJECT,
    "isArray": IS_ARRAY,
    "isFunction": IS_FUNCTION,
}

# op -> (constraint when the variable is on the left, when it is on the right)
_COMPARISONS = {
    "<": (Lt, Gt),
    "<=": (Lte, Gte),
    ">": (Gt, Lt),
    ">=": (Gte, Lte),
}


def negate_constraint(c: Constraint) -> Constraint:
    match c:
        case Gt(n):
            return Lte(n)
        case Gte(n):
            return Lt(n)
        case Lt(n):
            return Gte(n)
        case Lte(n):
            return Gt(n)
        case Not(inner):
            return inner
        case And(operands):
            return or_(negate_constraint(op) for op in operands)
        case Or(operands):
            return and_(negate_constraint(op) for op in operands)
    return Not(c)


def negate_refinement(refinement: Refinement) -> Refinement:
    return {name: negate_constraint(c) for name, c in refinement.items()}


def merge_refinements(a: Refinement, b: Refinement) -> Refinement:
    merged = dict(a)
    for name, c in b.items():
        merged[name] = and_([merged[name], c]) if name in merged else c
    return merged


def extract_refinement(expr: Expr) -> Refinement:
    """What is learned about variables when ``expr`` evaluates to true."""
    match expr:
        case Call(Var(name), (Var(arg),)) if name in TYPE_GUARDS:
            return {arg: TYPE_GUARDS[name]}
        case BinOp(op, left, right):
            return _binary_refinement(op, left, right)
        case Unary("!", operand):
            return extract_negated_refinement(operand)
    return {}


def extract_negated_refinement(expr: Expr) -> Refinement:
    """What is learned about variables when ``expr`` evaluates to false.

    ``!(a && b)`` only says that one of the two failed, so it refines
    nothing unless both sides constrain the same single variable.
    """
    match expr:
        case BinOp("&&", left, right):
            return _either(extract_negated_refinement(left), extract_negated_refinement(right))
        case BinOp("||", left, right):
            return merge_refinements(extract_negated_refinement(left), extract_negated_refinement(right))
        case Unary("!", operand):
            return extract_refinement(operand)
    # Atomic conditions refine at most one variable.
    return negate_refinement(extract_refinement(expr))


def _either(first: Refinement, second: Refinement) -> Refinement:
    if len(first) == 1 and first.keys() == second.keys():
        (name,) = first
        return {name: or_([first[name], second[name]])}
    return {}


def _binary_refinement(op: str, left: Expr, right: Expr) -> Refinement:
    if op == "&&":
        return merge_refinements(extract_refinement(left), extract_refinement(right))
    if op == "||":
        return _either(extract_refinement(left), extract_refinement(right))

    if isinstance(right, Lit):
        subject, value, flipped = left, right.value, False
    elif isinstance(left, Lit):
        subject, value, flipped = right, left.value, True
    else:
        return {}

    if op in _COMPARISONS:
        if not isinstance(subject, Var) or isinstance(value, bool) or not isinstance(value, (int, float)):
            return {}
        on_left, on_right = _COMPARISONS[op]
        return {subject.name: (on_right if flipped else on_left)(value)}

    if op in ("==", "!="):
        learned: Constraint = Equals(value)
        if op == "!=":
            learned = Not(learned)
        match subject:
            case Var(name):
                return {name: learned}
            case Field(Var(name), field):
                return {name: HasField(field, learned)}
    return {}

