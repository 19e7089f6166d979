"""Expression trees consumed and produced by the staged evaluator.

The same node types describe the input program and the residual program:
staging turns an ``Expr`` into an ``SValue`` whose residual, when present,
is again an ``Expr``.
"""

from __future__ import annotations

from dataclasses import dataclass

from depstage.core.constraint import Primitive, format_literal, literal_kind


class Expr:
    """Base class for expressions."""

    def __str__(self) -> str:
        return expr_to_string(self)


class Pattern:
    """Base class for destructuring patterns."""

    def __str__(self) -> str:
        return pattern_to_string(self)


@dataclass(frozen=True)
class VarPattern(Pattern):
    name: str


@dataclass(frozen=True)
class ArrayPattern(Pattern):
    elements: tuple[Pattern, ...]


@dataclass(frozen=True)
class ObjectPattern(Pattern):
    fields: tuple[tuple[str, Pattern], ...]


@dataclass(frozen=True, eq=False)
class Lit(Expr):
    """Primitive literal."""

    value: Primitive

    def _key(self) -> tuple[str, Primitive]:
        return (literal_kind(self.value), self.value)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Lit):
            return NotImplemented
        return self._key() == other._key()

    def __hash__(self) -> int:
        return hash(("lit",) + self._key())


@dataclass(frozen=True)
class Var(Expr):
    name: str


@dataclass(frozen=True)
class BinOp(Expr):
    op: str
    left: Expr
    right: Expr


@dataclass(frozen=True)
class Unary(Expr):
    op: str
    operand: Expr


@dataclass(frozen=True)
class If(Expr):
    cond: Expr
    then: Expr
    else_: Expr


@dataclass(frozen=True)
class Let(Expr):
    name: str
    value: Expr
    body: Expr


@dataclass(frozen=True)
class LetPattern(Expr):
    pattern: Pattern
    value: Expr
    body: Expr


@dataclass(frozen=True)
class Fn(Expr):
    """Anonymous function. Arguments arrive as the array ``args``."""

    params: tuple[str, ...]
    body: Expr


@dataclass(frozen=True)
class RecFn(Expr):
    """Named function that can refer to itself by ``name``."""

    name: str
    params: tuple[str, ...]
    body: Expr


@dataclass(frozen=True)
class Call(Expr):
    func: Expr
    args: tuple[Expr, ...]


@dataclass(frozen=True)
class Obj(Expr):
    fields: tuple[tuple[str, Expr], ...]


@dataclass(frozen=True)
class Field(Expr):
    object: Expr
    name: str


@dataclass(frozen=True)
class Array(Expr):
    elements: tuple[Expr, ...]


@dataclass(frozen=True)
class Index(Expr):
    array: Expr
    index: Expr


@dataclass(frozen=True)
class Block(Expr):
    exprs: tuple[Expr, ...]


@dataclass(frozen=True)
class Comptime(Expr):
    expr: Expr


@dataclass(frozen=True)
class Runtime(Expr):
    expr: Expr
    name: str | None = None


@dataclass(frozen=True)
class Assert(Expr):
    expr: Expr
    type_expr: Expr
    message: str | None = None


@dataclass(frozen=True)
class AssertCond(Expr):
    cond: Expr
    message: str | None = None


@dataclass(frozen=True)
class Trust(Expr):
    expr: Expr
    type_expr: Expr | None = None


@dataclass(frozen=True)
class MethodCall(Expr):
    receiver: Expr
    method: str
    args: tuple[Expr, ...]


@dataclass(frozen=True)
class Import(Expr):
    names: tuple[str, ...]
    module: str
    body: Expr


@dataclass(frozen=True)
class TypeOf(Expr):
    expr: Expr


def pattern_vars(pattern: Pattern) -> list[str]:
    """Names bound by a pattern, left to right."""
    match pattern:
        case VarPattern(name):
            return [name]
        case ArrayPattern(elements):
            return [name for p in elements for name in pattern_vars(p)]
        case ObjectPattern(fields):
            return [name for _, p in fields for name in pattern_vars(p)]
    raise TypeError(f"Unknown pattern: {pattern!r}")


def free_vars(expr: Expr) -> set[str]:
    """Variables referenced but not bound within ``expr``."""
    match expr:
        case Lit():
            return set()
        case Var(name):
            return {name}
        case BinOp(_, left, right):
            return free_vars(left) | free_vars(right)
        case Unary(_, operand):
            return free_vars(operand)
        case If(cond, then, else_):
            return free_vars(cond) | free_vars(then) | free_vars(else_)
        case Let(name, value, body):
            return free_vars(value) | (free_vars(body) - {name})
        case LetPattern(pattern, value, body):
            return free_vars(value) | (free_vars(body) - set(pattern_vars(pattern)))
        case Fn(params, body):
            return free_vars(body) - set(params) - {"args"}
        case RecFn(name, params, body):
            return free_vars(body) - set(params) - {"args", name}
        case Call(func, args):
            return free_vars(func).union(*(free_vars(a) for a in args))
        case Obj(fields):
            return set().union(*(free_vars(v) for _, v in fields))
        case Field(obj, _):
            return free_vars(obj)
        case Array(elements):
            return set().union(*(free_vars(e) for e in elements))
        case Index(array, index):
            return free_vars(array) | free_vars(index)
        case Block(exprs):
            return set().union(*(free_vars(e) for e in exprs))
        case Comptime(inner) | Runtime(inner, _) | TypeOf(inner):
            return free_vars(inner)
        case Assert(inner, type_expr, _):
            return free_vars(inner) | free_vars(type_expr)
        case AssertCond(cond, _):
            return free_vars(cond)
        case Trust(inner, type_expr):
            return free_vars(inner) | (free_vars(type_expr) if type_expr is not None else set())
        case MethodCall(receiver, _, args):
            return free_vars(receiver).union(*(free_vars(a) for a in args))
        case Import(names, _, body):
            return free_vars(body) - set(names)
    raise TypeError(f"Unknown expression: {expr!r}")


def uses_var(expr: Expr, name: str) -> bool:
    """Whether ``name`` occurs free in ``expr``."""
    return name in free_vars(expr)


def is_simple(expr: Expr) -> bool:
    """Expressions cheap enough to duplicate at every use site."""
    return isinstance(expr, (Lit, Var))


_PRECEDENCE = {
    "||": 1,
    "&&": 2,
    "==": 3,
    "!=": 3,
    "<": 4,
    "<=": 4,
    ">": 4,
    ">=": 4,
    "+": 5,
    "-": 5,
    "*": 6,
    "/": 6,
    "%": 6,
}


def _precedence(expr: Expr) -> int:
    match expr:
        case BinOp(op, _, _):
            return _PRECEDENCE.get(op, 0)
        case If() | Let() | LetPattern() | Fn() | RecFn() | Import():
            return 0
        case Unary():
            return 7
    return 8


def _wrap(expr: Expr, minimum: int) -> str:
    text = expr_to_string(expr)
    return f"({text})" if _precedence(expr) < minimum else text


def _join(exprs: tuple[Expr, ...]) -> str:
    return ", ".join(expr_to_string(e) for e in exprs)


def expr_to_string(expr: Expr) -> str:
    """Render an expression in a compact JavaScript-like syntax."""
    match expr:
        case Lit(value):
            return format_literal(value)
        case Var(name):
            return name
        case BinOp(op, left, right):
            prec = _PRECEDENCE.get(op, 0)
            return f"{_wrap(left, prec)} {op} {_wrap(right, prec + 1)}"
        case Unary(op, operand):
            return f"{op}{_wrap(operand, 7)}"
        case If(cond, then, else_):
            return f"{_wrap(cond, 1)} ? {_wrap(then, 1)} : {expr_to_string(else_)}"
        case Let(name, value, body):
            return f"let {name} = {expr_to_string(value)} in {expr_to_string(body)}"
        case LetPattern(pattern, value, body):
            return f"let {pattern_to_string(pattern)} = {expr_to_string(value)} in {expr_to_string(body)}"
        case Fn(params, body):
            return f"({', '.join(params)}) => {expr_to_string(body)}"
        case RecFn(name, params, body):
            return f"fn {name}({', '.join(params)}) => {expr_to_string(body)}"
        case Call(func, args):
            return f"{_wrap(func, 8)}({_join(args)})"
        case Obj(fields):
            if not fields:
                return "{}"
            inner = ", ".join(f"{k}: {expr_to_string(v)}" for k, v in fields)
            return f"{{ {inner} }}"
        case Field(obj, name):
            return f"{_wrap(obj, 8)}.{name}"
        case Array(elements):
            return f"[{_join(elements)}]"
        case Index(array, index):
            return f"{_wrap(array, 8)}[{expr_to_string(index)}]"
        case Block(exprs):
            return "{ " + "; ".join(expr_to_string(e) for e in exprs) + " }"
        case Comptime(inner):
            return f"comptime({expr_to_string(inner)})"
        case Runtime(inner, name):
            label = f"{name}: " if name else ""
            return f"runtime({label}{expr_to_string(inner)})"
        case Assert(inner, type_expr, _):
            return f"assert({expr_to_string(inner)}, {expr_to_string(type_expr)})"
        case AssertCond(cond, _):
            return f"assert({expr_to_string(cond)})"
        case Trust(inner, type_expr):
            if type_expr is None:
                return f"trust({expr_to_string(inner)})"
            return f"trust({expr_to_string(inner)}, {expr_to_string(type_expr)})"
        case MethodCall(receiver, method, args):
            return f"{_wrap(receiver, 8)}.{method}({_join(args)})"
        case Import(names, module, body):
            return f'import {{ {", ".join(names)} }} from "{module}"; {expr_to_string(body)}'
        case TypeOf(inner):
            return f"typeOf({expr_to_string(inner)})"
    raise TypeError(f"Unknown expression: {expr!r}")


def pattern_to_string(pattern: Pattern) -> str:
    match pattern:
        case VarPattern(name):
            return name
        case ArrayPattern(elements):
            return "[" + ", ".join(pattern_to_string(p) for p in elements) + "]"
        case ObjectPattern(fields):
            parts = [k if isinstance(p, VarPattern) and p.name == k else f"{k}: {pattern_to_string(p)}" for k, p in fields]
            return "{ " + ", ".join(parts) + " }"
    raise TypeError(f"Unknown pattern: {pattern!r}")
