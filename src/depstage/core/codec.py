"""JSON wire format for expression trees and type declarations.

Expressions are objects tagged by ``tag``::

    {"tag": "binop", "op": "+", "left": {"tag": "var", "name": "x"},
     "right": {"tag": "lit", "value": 1}}

Type descriptors, used by declaration files, are either a type name
(``"number"``, ``"string"``, ...), the name of a type parameter in scope, or
an object with one of the keys ``literal``, ``array``, ``tuple``,
``object``, ``union``, ``intersection`` or ``fn``.
"""

from __future__ import annotations

import itertools
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

from depstage.core import ast
from depstage.core.constraint import (
    ANY,
    IS_ARRAY,
    IS_BOOL,
    IS_FUNCTION,
    IS_NULL,
    IS_NUMBER,
    IS_OBJECT,
    IS_STRING,
    IS_UNDEFINED,
    NEVER,
    Constraint,
    HasField,
    TypeParam,
    and_,
    array_of,
    literal,
    or_,
    tuple_constraint,
)
from depstage.core.errors import DepstageError
from depstage.core.solve import FunctionSignature

JsonPrimitive = Union[bool, int, float, str, None]


class CodecError(DepstageError):
    """Input does not follow the wire format."""


class NodeModel(BaseModel):
    """Base model for wire nodes."""

    model_config = ConfigDict(extra="forbid", populate_by_name=True)


# =============================================================================
# Patterns
# =============================================================================


class VarPatternNode(NodeModel):
    tag: Literal["var"]
    name: str

    def to_pattern(self) -> ast.Pattern:
        return ast.VarPattern(self.name)


class ArrayPatternNode(NodeModel):
    tag: Literal["array"]
    elements: list[PatternNode]

    def to_pattern(self) -> ast.Pattern:
        return ast.ArrayPattern(tuple(p.to_pattern() for p in self.elements))


class ObjectPatternNode(NodeModel):
    tag: Literal["object"]
    fields: dict[str, PatternNode]

    def to_pattern(self) -> ast.Pattern:
        return ast.ObjectPattern(tuple((k, p.to_pattern()) for k, p in self.fields.items()))


PatternNode = Annotated[
    Union[VarPatternNode, ArrayPatternNode, ObjectPatternNode],
    Field(discriminator="tag"),
]


# =============================================================================
# Expressions
# =============================================================================


class LitNode(NodeModel):
    tag: Literal["lit"]
    value: JsonPrimitive

    def to_expr(self) -> ast.Expr:
        return ast.Lit(self.value)


class VarNode(NodeModel):
    tag: Literal["var"]
    name: str

    def to_expr(self) -> ast.Expr:
        return ast.Var(self.name)


class BinOpNode(NodeModel):
    tag: Literal["binop"]
    op: str
    left: ExprNode
    right: ExprNode

    def to_expr(self) -> ast.Expr:
        return ast.BinOp(self.op, self.left.to_expr(), self.right.to_expr())


class UnaryNode(NodeModel):
    tag: Literal["unary"]
    op: str
    operand: ExprNode

    def to_expr(self) -> ast.Expr:
        return ast.Unary(self.op, self.operand.to_expr())


class IfNode(NodeModel):
    tag: Literal["if"]
    cond: ExprNode
    then: ExprNode
    else_: ExprNode = Field(alias="else")

    def to_expr(self) -> ast.Expr:
        return ast.If(self.cond.to_expr(), self.then.to_expr(), self.else_.to_expr())


class LetNode(NodeModel):
    tag: Literal["let"]
    name: str
    value: ExprNode
    body: ExprNode

    def to_expr(self) -> ast.Expr:
        return ast.Let(self.name, self.value.to_expr(), self.body.to_expr())


class LetPatternNode(NodeModel):
    tag: Literal["letPattern"]
    pattern: PatternNode
    value: ExprNode
    body: ExprNode

    def to_expr(self) -> ast.Expr:
        return ast.LetPattern(self.pattern.to_pattern(), self.value.to_expr(), self.body.to_expr())


class FnNode(NodeModel):
    tag: Literal["fn"]
    params: list[str]
    body: ExprNode

    def to_expr(self) -> ast.Expr:
        return ast.Fn(tuple(self.params), self.body.to_expr())


class RecFnNode(NodeModel):
    tag: Literal["recfn"]
    name: str
    params: list[str]
    body: ExprNode

    def to_expr(self) -> ast.Expr:
        return ast.RecFn(self.name, tuple(self.params), self.body.to_expr())


class CallNode(NodeModel):
    tag: Literal["call"]
    func: ExprNode
    args: list[ExprNode] = []

    def to_expr(self) -> ast.Expr:
        return ast.Call(self.func.to_expr(), tuple(a.to_expr() for a in self.args))


class ObjNode(NodeModel):
    tag: Literal["obj"]
    fields: dict[str, ExprNode]

    def to_expr(self) -> ast.Expr:
        return ast.Obj(tuple((k, v.to_expr()) for k, v in self.fields.items()))


class FieldNode(NodeModel):
    tag: Literal["field"]
    object: ExprNode
    name: str

    def to_expr(self) -> ast.Expr:
        return ast.Field(self.object.to_expr(), self.name)


class ArrayNode(NodeModel):
    tag: Literal["array"]
    elements: list[ExprNode]

    def to_expr(self) -> ast.Expr:
        return ast.Array(tuple(e.to_expr() for e in self.elements))


class IndexNode(NodeModel):
    tag: Literal["index"]
    array: ExprNode
    index: ExprNode

    def to_expr(self) -> ast.Expr:
        return ast.Index(self.array.to_expr(), self.index.to_expr())


class BlockNode(NodeModel):
    tag: Literal["block"]
    exprs: list[ExprNode]

    def to_expr(self) -> ast.Expr:
        return ast.Block(tuple(e.to_expr() for e in self.exprs))


class ComptimeNode(NodeModel):
    tag: Literal["comptime"]
    expr: ExprNode

    def to_expr(self) -> ast.Expr:
        return ast.Comptime(self.expr.to_expr())


class RuntimeNode(NodeModel):
    tag: Literal["runtime"]
    expr: ExprNode
    name: str | None = None

    def to_expr(self) -> ast.Expr:
        return ast.Runtime(self.expr.to_expr(), self.name)


class AssertNode(NodeModel):
    tag: Literal["assert"]
    expr: ExprNode
    type: ExprNode
    message: str | None = None

    def to_expr(self) -> ast.Expr:
        return ast.Assert(self.expr.to_expr(), self.type.to_expr(), self.message)


class AssertCondNode(NodeModel):
    tag: Literal["assertCond"]
    cond: ExprNode
    message: str | None = None

    def to_expr(self) -> ast.Expr:
        return ast.AssertCond(self.cond.to_expr(), self.message)


class TrustNode(NodeModel):
    tag: Literal["trust"]
    expr: ExprNode
    type: ExprNode | None = None

    def to_expr(self) -> ast.Expr:
        return ast.Trust(self.expr.to_expr(), self.type.to_expr() if self.type is not None else None)


class MethodCallNode(NodeModel):
    tag: Literal["methodCall"]
    receiver: ExprNode
    method: str
    args: list[ExprNode] = []

    def to_expr(self) -> ast.Expr:
        return ast.MethodCall(self.receiver.to_expr(), self.method, tuple(a.to_expr() for a in self.args))


class ImportNode(NodeModel):
    tag: Literal["import"]
    names: list[str]
    module: str
    body: ExprNode

    def to_expr(self) -> ast.Expr:
        return ast.Import(tuple(self.names), self.module, self.body.to_expr())


class TypeOfNode(NodeModel):
    tag: Literal["typeOf"]
    expr: ExprNode

    def to_expr(self) -> ast.Expr:
        return ast.TypeOf(self.expr.to_expr())


ExprNode = Annotated[
    Union[
        LitNode,
        VarNode,
        BinOpNode,
        UnaryNode,
        IfNode,
        LetNode,
        LetPatternNode,
        FnNode,
        RecFnNode,
        CallNode,
        ObjNode,
        FieldNode,
        ArrayNode,
        IndexNode,
        BlockNode,
        ComptimeNode,
        RuntimeNode,
        AssertNode,
        AssertCondNode,
        TrustNode,
        MethodCallNode,
        ImportNode,
        TypeOfNode,
    ],
    Field(discriminator="tag"),
]

for _model in list(NodeModel.__subclasses__()):
    _model.model_rebuild()

expr_adapter: TypeAdapter[Any] = TypeAdapter(ExprNode)
expr_list_adapter: TypeAdapter[Any] = TypeAdapter(list[ExprNode])


def decode_expr(data: Any) -> ast.Expr:
    """Decode a JSON-compatible object into an expression."""
    try:
        node = expr_adapter.validate_python(data)
    except ValidationError as exc:
        raise CodecError(f"Invalid expression: {exc}") from exc
    return node.to_expr()


def decode_exprs(data: Any) -> list[ast.Expr]:
    try:
        nodes = expr_list_adapter.validate_python(data)
    except ValidationError as exc:
        raise CodecError(f"Invalid expression list: {exc}") from exc
    return [node.to_expr() for node in nodes]


def encode_pattern(pattern: ast.Pattern) -> dict[str, Any]:
    match pattern:
        case ast.VarPattern(name):
            return {"tag": "var", "name": name}
        case ast.ArrayPattern(elements):
            return {"tag": "array", "elements": [encode_pattern(p) for p in elements]}
        case ast.ObjectPattern(fields):
            return {"tag": "object", "fields": {k: encode_pattern(p) for k, p in fields}}
    raise CodecError(f"Unknown pattern: {pattern!r}")


def encode_expr(expr: ast.Expr) -> dict[str, Any]:
    """Encode an expression in the wire format accepted by ``decode_expr``."""
    match expr:
        case ast.Lit(value):
            return {"tag": "lit", "value": value}
        case ast.Var(name):
            return {"tag": "var", "name": name}
        case ast.BinOp(op, left, right):
            return {"tag": "binop", "op": op, "left": encode_expr(left), "right": encode_expr(right)}
        case ast.Unary(op, operand):
            return {"tag": "unary", "op": op, "operand": encode_expr(operand)}
        case ast.If(cond, then, else_):
            return {"tag": "if", "cond": encode_expr(cond), "then": encode_expr(then), "else": encode_expr(else_)}
        case ast.Let(name, value, body):
            return {"tag": "let", "name": name, "value": encode_expr(value), "body": encode_expr(body)}
        case ast.LetPattern(pattern, value, body):
            return {
                "tag": "letPattern",
                "pattern": encode_pattern(pattern),
                "value": encode_expr(value),
                "body": encode_expr(body),
            }
        case ast.Fn(params, body):
            return {"tag": "fn", "params": list(params), "body": encode_expr(body)}
        case ast.RecFn(name, params, body):
            return {"tag": "recfn", "name": name, "params": list(params), "body": encode_expr(body)}
        case ast.Call(func, args):
            return {"tag": "call", "func": encode_expr(func), "args": [encode_expr(a) for a in args]}
        case ast.Obj(fields):
            return {"tag": "obj", "fields": {k: encode_expr(v) for k, v in fields}}
        case ast.Field(obj, name):
            return {"tag": "field", "object": encode_expr(obj), "name": name}
        case ast.Array(elements):
            return {"tag": "array", "elements": [encode_expr(e) for e in elements]}
        case ast.Index(array, index):
            return {"tag": "index", "array": encode_expr(array), "index": encode_expr(index)}
        case ast.Block(exprs):
            return {"tag": "block", "exprs": [encode_expr(e) for e in exprs]}
        case ast.Comptime(inner):
            return {"tag": "comptime", "expr": encode_expr(inner)}
        case ast.Runtime(inner, name):
            return {"tag": "runtime", "expr": encode_expr(inner), "name": name}
        case ast.Assert(inner, type_expr, message):
            return {"tag": "assert", "expr": encode_expr(inner), "type": encode_expr(type_expr), "message": message}
        case ast.AssertCond(cond, message):
            return {"tag": "assertCond", "cond": encode_expr(cond), "message": message}
        case ast.Trust(inner, type_expr):
            encoded_type = encode_expr(type_expr) if type_expr is not None else None
            return {"tag": "trust", "expr": encode_expr(inner), "type": encoded_type}
        case ast.MethodCall(receiver, method, args):
            return {
                "tag": "methodCall",
                "receiver": encode_expr(receiver),
                "method": method,
                "args": [encode_expr(a) for a in args],
            }
        case ast.Import(names, module, body):
            return {"tag": "import", "names": list(names), "module": module, "body": encode_expr(body)}
        case ast.TypeOf(inner):
            return {"tag": "typeOf", "expr": encode_expr(inner)}
    raise CodecError(f"Unknown expression: {expr!r}")


# =============================================================================
# Type descriptors
# =============================================================================

_NAMED_TYPES: dict[str, Constraint] = {
    "any": ANY,
    "never": NEVER,
    "number": IS_NUMBER,
    "string": IS_STRING,
    "boolean": IS_BOOL,
    "null": IS_NULL,
    "undefined": IS_UNDEFINED,
    "object": IS_OBJECT,
    "array": IS_ARRAY,
    "function": IS_FUNCTION,
}


def decode_type(descriptor: Any, params: dict[str, TypeParam] | None = None) -> Constraint:
    """Decode a type descriptor into a constraint.

    ``params`` maps the names of type parameters in scope to their
    ``TypeParam`` constraints.
    """
    scope = params or {}
    match descriptor:
        case str(name) if name in scope:
            return scope[name]
        case str(name) if name in _NAMED_TYPES:
            return _NAMED_TYPES[name]
        case {"literal": value}:
            return literal(value)
        case {"array": element}:
            return array_of(decode_type(element, scope))
        case {"tuple": list(elements)}:
            return tuple_constraint(decode_type(e, scope) for e in elements)
        case {"object": dict(fields)}:
            return and_([IS_OBJECT, *(HasField(k, decode_type(v, scope)) for k, v in fields.items())])
        case {"union": list(members)}:
            return or_(decode_type(m, scope) for m in members)
        case {"intersection": list(members)}:
            return and_(decode_type(m, scope) for m in members)
        case {"fn": dict()}:
            signature = decode_signature("<anonymous>", descriptor["fn"], scope)
            return signature.to_constraint()
    raise CodecError(f"Invalid type descriptor: {descriptor!r}")


def decode_signature(
    name: str, descriptor: dict[str, Any], scope: dict[str, TypeParam] | None = None
) -> FunctionSignature:
    """Decode ``{"typeParams": [...], "params": [...], "result": ...}``."""
    ids = itertools.count(len(scope or {}))
    inner = dict(scope or {})
    type_params: list[TypeParam] = []
    for raw in descriptor.get("typeParams", []):
        match raw:
            case str(param_name):
                bound: Constraint = ANY
            case {"name": str(param_name), **rest}:
                bound = decode_type(rest["bound"], inner) if "bound" in rest else ANY
            case _:
                raise CodecError(f"Invalid type parameter: {raw!r}")
        tp = TypeParam(param_name, bound, next(ids))
        inner[param_name] = tp
        type_params.append(tp)

    params: list[tuple[str, Constraint]] = []
    for i, raw in enumerate(descriptor.get("params", [])):
        match raw:
            case {"name": str(param_name), "type": param_type}:
                params.append((param_name, decode_type(param_type, inner)))
            case _:
                params.append((f"arg{i}", decode_type(raw, inner)))

    result = decode_type(descriptor.get("result", "any"), inner)
    return FunctionSignature(name, tuple(type_params), tuple(params), result)


def decode_declaration(name: str, descriptor: Any) -> Constraint | FunctionSignature:
    """Decode one export of a declaration file.

    Function descriptors become a ``FunctionSignature``; anything else
    becomes a constraint.
    """
    if isinstance(descriptor, dict) and isinstance(descriptor.get("fn"), dict):
        return decode_signature(name, descriptor["fn"])
    return decode_type(descriptor)
