"""Binary and unary operators with constraint signatures.

Each operator declares the constraints its operands must satisfy, a rule
computing the result constraint from the operand constraints (folding
literal operands), and the concrete implementation used when every operand
is known.
"""

from __future__ import annotations

import math
import operator
from dataclasses import dataclass
from typing import Callable

from depstage.core.constraint import (
    ANY,
    And,
    Constraint,
    Equals,
    IS_ARRAY,
    IS_BOOL,
    IS_FUNCTION,
    IS_NULL,
    IS_NUMBER,
    IS_OBJECT,
    IS_STRING,
    NeverConstraint,
    Primitive,
    and_,
    implies,
    literal_kind,
    narrow,
)
from depstage.core.errors import TypeMismatch, UnsupportedConstruct
from depstage.eval.svalue import Later, SValue
from depstage.eval.value import Value, VBool, VNumber, VString, values_equal


CLASSIFICATIONS = (IS_NUMBER, IS_STRING, IS_BOOL, IS_NULL, IS_OBJECT, IS_ARRAY, IS_FUNCTION)


@dataclass(frozen=True)
class Operator:
    symbol: str
    params: tuple[Constraint, ...]
    result: Callable[[list[Constraint]], Constraint]
    impl: Callable[[list[Value]], Value]


def require_constraint(got: Constraint, expected: Constraint, context: str) -> None:
    """Raise ``TypeMismatch`` unless ``got`` implies ``expected``."""
    if not implies(got, expected):
        raise TypeMismatch(expected, got, context)


def is_classified(c: Constraint) -> bool:
    """Whether ``c`` pins down what kind of value it describes."""
    return any(implies(c, kind) for kind in CLASSIFICATIONS)


def check_operand(sv: SValue, expected: Constraint, context: str) -> None:
    """Check a staged operand against a required constraint.

    A Later operand whose constraint fixes no classification, such as the
    result of an unknown callee, is only rejected when it contradicts
    ``expected``. The rest of its check is left to the target at runtime.
    """
    if isinstance(sv, Later) and not is_classified(sv.constraint):
        if isinstance(narrow(sv.constraint, expected), NeverConstraint):
            raise TypeMismatch(expected, sv.constraint, context)
        return
    require_constraint(sv.constraint, expected, context)


def extract_literal(c: Constraint, kind: str | None = None) -> tuple[bool, Primitive]:
    """Find an ``equals`` literal in ``c``, optionally of a given kind."""
    candidates = c.operands if isinstance(c, And) else (c,)
    for sub in candidates:
        if isinstance(sub, Equals) and (kind is None or literal_kind(sub.value) == kind):
            return True, sub.value
    return False, None


def _folding(kind: str, result_kind: Constraint, fold: Callable[[Primitive, Primitive], Primitive | None]):
    def result(constraints: list[Constraint]) -> Constraint:
        found_left, left = extract_literal(constraints[0], kind)
        found_right, right = extract_literal(constraints[1], kind)
        if found_left and found_right:
            folded = fold(left, right)
            if folded is not None:
                return and_([result_kind, Equals(folded)])
        return result_kind

    return result


def js_divide(a: float, b: float) -> float:
    if b == 0:
        if a == 0 or math.isnan(a):
            return math.nan
        return math.copysign(math.inf, a) * math.copysign(1, b)
    return a / b


def js_remainder(a: float, b: float) -> float:
    if b == 0:
        return math.nan
    result = math.fmod(a, b)
    if isinstance(a, int) and isinstance(b, int):
        return int(result)
    return result


def _numeric(fn: Callable[[float, float], float]) -> Callable[[list[Value]], Value]:
    def impl(args: list[Value]) -> Value:
        a, b = args
        assert isinstance(a, VNumber) and isinstance(b, VNumber)
        return VNumber(fn(a.value, b.value))

    return impl


def _comparison(fn: Callable[[float, float], bool]) -> Callable[[list[Value]], Value]:
    def impl(args: list[Value]) -> Value:
        a, b = args
        assert isinstance(a, VNumber) and isinstance(b, VNumber)
        return VBool(fn(a.value, b.value))

    return impl


def _logical(fn: Callable[[bool, bool], bool]) -> Callable[[list[Value]], Value]:
    def impl(args: list[Value]) -> Value:
        a, b = args
        assert isinstance(a, VBool) and isinstance(b, VBool)
        return VBool(fn(a.value, b.value))

    return impl


def _nonzero_divisor(fn: Callable[[float, float], float]) -> Callable[[Primitive, Primitive], Primitive | None]:
    return lambda a, b: fn(a, b) if b != 0 else None


def _equality_result(negate: bool) -> Callable[[list[Constraint]], Constraint]:
    def result(constraints: list[Constraint]) -> Constraint:
        found_left, left = extract_literal(constraints[0])
        found_right, right = extract_literal(constraints[1])
        if found_left and found_right:
            same = Equals(left) == Equals(right)
            return and_([IS_BOOL, Equals(same != negate)])
        return IS_BOOL

    return result


def _short_circuit(absorbing: bool) -> Callable[[list[Constraint]], Constraint]:
    fold = (lambda a, b: a or b) if absorbing else (lambda a, b: a and b)

    def result(constraints: list[Constraint]) -> Constraint:
        found_left, left = extract_literal(constraints[0], "boolean")
        found_right, right = extract_literal(constraints[1], "boolean")
        if found_left and found_right:
            return and_([IS_BOOL, Equals(fold(left, right))])
        if (found_left and left is absorbing) or (found_right and right is absorbing):
            return and_([IS_BOOL, Equals(absorbing)])
        return IS_BOOL

    return result


BINARY_OPERATORS: dict[str, Operator] = {
    "+": Operator("+", (IS_NUMBER, IS_NUMBER), _folding("number", IS_NUMBER, operator.add), _numeric(operator.add)),
    "-": Operator("-", (IS_NUMBER, IS_NUMBER), _folding("number", IS_NUMBER, operator.sub), _numeric(operator.sub)),
    "*": Operator("*", (IS_NUMBER, IS_NUMBER), _folding("number", IS_NUMBER, operator.mul), _numeric(operator.mul)),
    "/": Operator(
        "/", (IS_NUMBER, IS_NUMBER), _folding("number", IS_NUMBER, _nonzero_divisor(js_divide)), _numeric(js_divide)
    ),
    "%": Operator(
        "%",
        (IS_NUMBER, IS_NUMBER),
        _folding("number", IS_NUMBER, _nonzero_divisor(js_remainder)),
        _numeric(js_remainder),
    ),
    "==": Operator(
        "==", (ANY, ANY), _equality_result(negate=False), lambda args: VBool(values_equal(args[0], args[1]))
    ),
    "!=": Operator(
        "!=", (ANY, ANY), _equality_result(negate=True), lambda args: VBool(not values_equal(args[0], args[1]))
    ),
    "<": Operator("<", (IS_NUMBER, IS_NUMBER), _folding("number", IS_BOOL, operator.lt), _comparison(operator.lt)),
    "<=": Operator("<=", (IS_NUMBER, IS_NUMBER), _folding("number", IS_BOOL, operator.le), _comparison(operator.le)),
    ">": Operator(">", (IS_NUMBER, IS_NUMBER), _folding("number", IS_BOOL, operator.gt), _comparison(operator.gt)),
    ">=": Operator(">=", (IS_NUMBER, IS_NUMBER), _folding("number", IS_BOOL, operator.ge), _comparison(operator.ge)),
    "&&": Operator("&&", (IS_BOOL, IS_BOOL), _short_circuit(absorbing=False), _logical(lambda a, b: a and b)),
    "||": Operator("||", (IS_BOOL, IS_BOOL), _short_circuit(absorbing=True), _logical(lambda a, b: a or b)),
}


def _unary_result(kind: str, result_kind: Constraint, fold: Callable[[Primitive], Primitive]):
    def result(constraints: list[Constraint]) -> Constraint:
        found, value = extract_literal(constraints[0], kind)
        if found:
            return and_([result_kind, Equals(fold(value))])
        return result_kind

    return result


def _negate_number(args: list[Value]) -> Value:
    (a,) = args
    assert isinstance(a, VNumber)
    return VNumber(-a.value)


def _logical_not(args: list[Value]) -> Value:
    (a,) = args
    assert isinstance(a, VBool)
    return VBool(not a.value)


UNARY_OPERATORS: dict[str, Operator] = {
    "-": Operator("-", (IS_NUMBER,), _unary_result("number", IS_NUMBER, operator.neg), _negate_number),
    "!": Operator("!", (IS_BOOL,), _unary_result("boolean", IS_BOOL, operator.not_), _logical_not),
}


def _concat(args: list[Value]) -> Value:
    a, b = args
    assert isinstance(a, VString) and isinstance(b, VString)
    return VString(a.value + b.value)


STRING_CONCAT = Operator("+", (IS_STRING, IS_STRING), _folding("string", IS_STRING, operator.add), _concat)


def get_binary_operator(op: str) -> Operator:
    try:
        return BINARY_OPERATORS[op]
    except KeyError:
        raise UnsupportedConstruct(f"Unknown binary operator: {op}") from None


def get_unary_operator(op: str) -> Operator:
    try:
        return UNARY_OPERATORS[op]
    except KeyError:
        raise UnsupportedConstruct(f"Unknown unary operator: {op}") from None
