"""Staged evaluator: partial evaluation over constraint-typed values.

Every expression stages to an ``SValue``. Computation whose inputs are all
known happens now; anything touching a runtime value is kept as a residual
expression, with its constraint computed as precisely as the known parts
allow.
"""

from __future__ import annotations

from dataclasses import replace

from loguru import logger

from depstage.core.ast import (
    Array,
    ArrayPattern,
    Assert,
    AssertCond,
    BinOp,
    Block,
    Call,
    Comptime,
    Expr,
    Field,
    Fn,
    If,
    Import,
    Index,
    Let,
    LetPattern,
    Lit,
    MethodCall,
    Obj,
    ObjectPattern,
    Pattern,
    RecFn,
    Runtime,
    Trust,
    TypeOf,
    Unary,
    Var,
    VarPattern,
    is_simple,
    pattern_vars,
    uses_var,
)
from depstage.core.constraint import (
    ANY,
    And,
    Constraint,
    ElementAt,
    FnType,
    GenericFnType,
    Gte,
    HasField,
    IS_ARRAY,
    IS_BOOL,
    IS_FUNCTION,
    IS_NULL,
    IS_NUMBER,
    IS_OBJECT,
    IS_STRING,
    IsType,
    Length,
    NeverConstraint,
    and_,
    array_of,
    extract_element_constraint,
    extract_field_constraint,
    implies,
    is_closed,
    narrow_or,
    or_,
    simplify,
    tuple_constraint,
    union,
    unify,
    widen,
)
from depstage.core.errors import (
    ArityMismatch,
    AssertionFailure,
    StagingError,
    TypeMismatch,
    UnsupportedConstruct,
)
from depstage.core.solve import FunctionSignature, infer_call_result
from depstage.eval.builtins import Builtin, BuiltinRegistry, StagedBuiltin, StagedContext
from depstage.eval.env import RefinementContext, SEnv
from depstage.eval.methods import lookup_methods
from depstage.eval.operators import (
    STRING_CONCAT,
    check_operand,
    get_binary_operator,
    get_unary_operator,
)
from depstage.eval.refinement import extract_negated_refinement, extract_refinement
from depstage.eval.session import Session
from depstage.eval.svalue import Later, Now, SValue, all_now, now
from depstage.eval.value import (
    NULL,
    Value,
    VArray,
    VBool,
    VBuiltin,
    VClosure,
    VNull,
    VNumber,
    VObject,
    VString,
    VType,
    and_constraint_of,
    array_constraint,
    constraint_of,
    from_python,
    is_compound,
    object_constraint,
    value_satisfies,
)

TYPE_NAMES: dict[str, Constraint] = {
    "number": IS_NUMBER,
    "string": IS_STRING,
    "boolean": IS_BOOL,
    "null": IS_NULL,
    "object": IS_OBJECT,
    "array": IS_ARRAY,
    "function": IS_FUNCTION,
    "any": ANY,
}


def value_to_expr(value: Value, session: Session) -> Expr:
    """Expression reconstructing a compile-time value in residual code."""
    match value:
        case VNumber(v) | VString(v) | VBool(v):
            return Lit(v)
        case VNull():
            return Lit(None)
        case VObject(fields):
            return Obj(tuple((k, value_to_expr(v, session)) for k, v in fields))
        case VArray(elements):
            return Array(tuple(value_to_expr(e, session) for e in elements))
        case VClosure():
            info = session.closure_info(value)
            if info.name is not None:
                return RecFn(info.name, info.params, info.body)
            return Fn(info.params, info.body)
        case VType(c):
            raise UnsupportedConstruct(f"Cannot convert type value {c} to an expression")
        case VBuiltin(name):
            return Var(name)
    raise TypeError(f"Unknown value: {value!r}")


class StagedEvaluator:
    """Stages expressions against a compilation session."""

    def __init__(self, session: Session | None = None, builtins: BuiltinRegistry | None = None) -> None:
        self.session = session if session is not None else Session()
        self.builtins = builtins if builtins is not None else BuiltinRegistry()

    def initial_env(self) -> SEnv:
        """Environment with the type names and builtins bound."""
        bindings: dict[str, SValue] = {name: Now(VType(c), IsType(c)) for name, c in TYPE_NAMES.items()}
        for name in self.builtins.list_builtins():
            bindings[name] = Now(VBuiltin(name), IS_FUNCTION)
        return SEnv(bindings)

    # Residuals

    def svalue_to_residual(self, sv: SValue) -> Expr:
        if isinstance(sv, Later):
            return sv.residual
        if sv.residual is not None:
            return sv.residual
        return value_to_expr(sv.value, self.session)

    def closure_to_residual(self, closure: VClosure) -> Expr:
        """Function expression with its body staged for unknown arguments."""
        info = self.session.closure_info(closure)
        params = {p: Later(ANY, Var(p)) for p in info.params}
        args = Later(array_constraint([ANY] * len(params)), Var("args"), tuple(params.values()))
        logger.debug("stage.closure name={} params={}", info.name, len(params))
        with self.session.staging(info.name):
            body = self.stage(info.body, self._closure_env(closure, args, params))
        residual = self.svalue_to_residual(body)
        if info.name is not None:
            return RecFn(info.name, info.params, residual)
        return Fn(info.params, residual)

    # Staging

    def stage(self, expr: Expr, env: SEnv, ctx: RefinementContext | None = None) -> SValue:
        """Stage ``expr`` under ``env`` and the refinements in ``ctx``."""
        if ctx is None:
            ctx = RefinementContext.empty()

        match expr:
            case Lit(value):
                return now(from_python(value))

            case Var(name):
                return self._stage_var(name, env, ctx)

            case BinOp(op, left, right):
                return self._stage_binop(op, left, right, env, ctx)

            case Unary(op, operand):
                operand_sv = self.stage(operand, env, ctx)
                operator = get_unary_operator(op)
                check_operand(operand_sv, operator.params[0], f"operand of {op}")
                result = operator.result([operand_sv.constraint])
                if isinstance(operand_sv, Now):
                    return now(operator.impl([operand_sv.value]))
                return Later(result, Unary(op, operand_sv.residual))

            case If(cond, then, else_):
                return self._stage_if(cond, then, else_, env, ctx)

            case Let(name, value, body):
                return self._stage_let(name, value, body, env, ctx)

            case LetPattern(pattern, value, body):
                return self._stage_let_pattern(pattern, value, body, env, ctx)

            case Fn(params, body):
                return Now(self.session.make_closure(params, body, env), IS_FUNCTION)

            case RecFn(name, params, body):
                return Now(self.session.make_closure(params, body, env, name), IS_FUNCTION)

            case Call(func, args):
                func_sv = self.stage(func, env, ctx)
                arg_svs = [self.stage(a, env, ctx) for a in args]
                return self.apply(func_sv, arg_svs, env, ctx)

            case MethodCall(receiver, method, args):
                return self._stage_method_call(receiver, method, args, env, ctx)

            case Obj(fields):
                return self._stage_object(fields, env, ctx)

            case Array(elements):
                return self._array_svalue([self.stage(e, env, ctx) for e in elements])

            case Field(obj, name):
                return self._stage_field(self.stage(obj, env, ctx), name)

            case Index(array, index):
                return self._stage_index(self.stage(array, env, ctx), self.stage(index, env, ctx))

            case Block(exprs):
                return self._stage_block(exprs, env, ctx)

            case Comptime(inner):
                result = self.stage(inner, env, ctx)
                if isinstance(result, Later):
                    raise StagingError(f"comptime expression depends on a runtime value: {result.residual}")
                return result

            case Runtime(inner, name):
                result = self.stage(inner, env, ctx)
                var = name if name is not None else self.session.fresh_runtime_var()
                return Later(widen(result.constraint), Var(var))

            case Assert(inner, type_expr, message):
                return self._stage_assert(inner, type_expr, message, env, ctx)

            case AssertCond(cond, message):
                return self._stage_assert_cond(cond, message, env, ctx)

            case Trust(inner, type_expr):
                result = self.stage(inner, env, ctx)
                if type_expr is None:
                    return result
                target = self._type_target(self.stage(type_expr, env, ctx), "trust")
                return replace(result, constraint=unify(result.constraint, target))

            case TypeOf(inner):
                c = self.stage(inner, env, ctx).constraint
                return Now(VType(c), IsType(c))

            case Import(names, module, body):
                return self._stage_import(names, module, body, env, ctx)

        raise UnsupportedConstruct(f"Unknown expression: {expr!r}")

    def _stage_var(self, name: str, env: SEnv, ctx: RefinementContext) -> SValue:
        sv = env.lookup(name)
        refined = ctx.get(name)
        if refined is not None:
            sv = replace(sv, constraint=narrow_or(sv.constraint, refined))
        if isinstance(sv, Now) and sv.residual is None and is_compound(sv.value):
            sv = replace(sv, residual=Var(name))
        return sv

    def _stage_binop(self, op: str, left: Expr, right: Expr, env: SEnv, ctx: RefinementContext) -> SValue:
        left_sv = self.stage(left, env, ctx)

        if op in ("&&", "||") and isinstance(left_sv, Now):
            check_operand(left_sv, IS_BOOL, f"left operand of {op}")
            assert isinstance(left_sv.value, VBool)
            if left_sv.value.value == (op == "||"):
                return left_sv
            right_sv = self.stage(right, env, ctx)
            check_operand(right_sv, IS_BOOL, f"right operand of {op}")
            return right_sv

        right_sv = self.stage(right, env, ctx)
        operator = get_binary_operator(op)
        if op == "+" and (_is_string(left_sv) or _is_string(right_sv)):
            operator = STRING_CONCAT
        check_operand(left_sv, operator.params[0], f"left operand of {op}")
        check_operand(right_sv, operator.params[1], f"right operand of {op}")

        if isinstance(left_sv, Now) and isinstance(right_sv, Now):
            return now(operator.impl([left_sv.value, right_sv.value]))
        result = operator.result([left_sv.constraint, right_sv.constraint])
        return Later(result, BinOp(op, self.svalue_to_residual(left_sv), self.svalue_to_residual(right_sv)))

    def _stage_if(self, cond: Expr, then: Expr, else_: Expr, env: SEnv, ctx: RefinementContext) -> SValue:
        cond_sv = self.stage(cond, env, ctx)
        refinement = extract_refinement(cond)

        if isinstance(cond_sv, Now):
            if not isinstance(cond_sv.value, VBool):
                raise TypeMismatch(IS_BOOL, cond_sv.constraint, "if condition")
            if cond_sv.value.value:
                return self.stage(then, env, ctx.refine(refinement))
            return self.stage(else_, env, ctx.refine(extract_negated_refinement(cond)))

        check_operand(cond_sv, IS_BOOL, "if condition")
        then_sv = self.stage(then, env, ctx.refine(refinement))
        else_sv = self.stage(else_, env, ctx.refine(extract_negated_refinement(cond)))
        return Later(
            union(then_sv.constraint, else_sv.constraint),
            If(cond_sv.residual, self.svalue_to_residual(then_sv), self.svalue_to_residual(else_sv)),
        )

    def _stage_let(self, name: str, value: Expr, body: Expr, env: SEnv, ctx: RefinementContext) -> SValue:
        value_sv = self.stage(value, env, ctx)
        bound = value_sv
        if isinstance(value_sv, Later) and not is_simple(value_sv.residual):
            # Refer to the binding instead of duplicating the computation.
            bound = Later(value_sv.constraint, Var(name), value_sv.elements)

        body_sv = self.stage(body, env.extend(name, bound), ctx.without({name}))
        if isinstance(body_sv, Now):
            return body_sv
        if not uses_var(body_sv.residual, name):
            return body_sv
        value_residual = self.svalue_to_residual(value_sv)
        if value_residual == Var(name):
            return body_sv
        return Later(body_sv.constraint, Let(name, value_residual, body_sv.residual))

    def _stage_let_pattern(
        self, pattern: Pattern, value: Expr, body: Expr, env: SEnv, ctx: RefinementContext
    ) -> SValue:
        value_sv = self.stage(value, env, ctx)
        names = pattern_vars(pattern)
        bindings = self._destructure(pattern, value_sv)
        if isinstance(value_sv, Later) and value_sv.elements is None and not is_simple(value_sv.residual):
            bindings = {name: Later(sv.constraint, Var(name)) for name, sv in bindings.items()}

        body_sv = self.stage(body, env.extend_many(bindings), ctx.without(set(names)))
        if isinstance(body_sv, Now):
            return body_sv
        if any(uses_var(body_sv.residual, name) for name in names):
            residual = LetPattern(pattern, self.svalue_to_residual(value_sv), body_sv.residual)
            return Later(body_sv.constraint, residual)
        return body_sv

    def _destructure(self, pattern: Pattern, sv: SValue) -> dict[str, SValue]:
        match pattern:
            case VarPattern(name):
                return {name: sv}
            case ArrayPattern(elements):
                bindings: dict[str, SValue] = {}
                for i, sub in enumerate(elements):
                    bindings.update(self._destructure(sub, self._stage_index(sv, now(VNumber(i)))))
                return bindings
            case ObjectPattern(fields):
                bindings = {}
                for key, sub in fields:
                    bindings.update(self._destructure(sub, self._stage_field(sv, key)))
                return bindings
        raise UnsupportedConstruct(f"Unknown pattern: {pattern!r}")

    # Calls

    def apply(self, func_sv: SValue, args: list[SValue], env: SEnv, ctx: RefinementContext) -> SValue:
        """Stage a call of ``func_sv`` with already staged arguments."""
        match func_sv:
            case Now(VClosure() as closure):
                return self._call_closure(func_sv, closure, args)
            case Now(VBuiltin(name)):
                builtin = self.builtins.lookup(name)
                if builtin is None:
                    raise UnsupportedConstruct(f"Unknown builtin: {name}")
                return self._call_builtin(builtin, args, env, ctx)
            case Now():
                raise TypeMismatch(IS_FUNCTION, func_sv.constraint, "call")

        check_operand(func_sv, IS_FUNCTION, "call")
        self._check_signature(func_sv, args)
        result = infer_call_result(func_sv.constraint, [a.constraint for a in args], self.session.fresh_cvar)
        return Later(result, Call(func_sv.residual, tuple(self.svalue_to_residual(a) for a in args)))

    def invoke(self, func: Value, args: list[SValue], env: SEnv, ctx: RefinementContext) -> SValue:
        return self.apply(now(func), args, env, ctx)

    def _check_signature(self, func_sv: SValue, args: list[SValue]) -> None:
        fn_type = _function_type(func_sv.constraint)
        if not isinstance(fn_type, FnType):
            return
        if len(args) < len(fn_type.params):
            raise ArityMismatch(str(self.svalue_to_residual(func_sv)), len(fn_type.params), len(args))
        for i, (arg, param) in enumerate(zip(args, fn_type.params)):
            check_operand(arg, param, f"argument {i + 1} of {self.svalue_to_residual(func_sv)}")

    def _call_closure(self, func_sv: SValue, closure: VClosure, args: list[SValue]) -> SValue:
        info = self.session.closure_info(closure)
        runtime_args = not all_now(args)
        callee = func_sv.residual

        if info.name is not None and runtime_args and self.session.is_in_progress(info.name):
            logger.debug("stage.call.recursive name={}", info.name)
            target = callee if callee is not None else Var(info.name)
            return Later(ANY, Call(target, tuple(self.svalue_to_residual(a) for a in args)))

        if len(args) < len(info.params):
            raise ArityMismatch(info.name or "function", len(info.params), len(args))
        params = dict(zip(info.params, args))
        bound = {
            name: Later(arg.constraint, Var(name), arg.elements)
            if isinstance(arg, Later) and not is_simple(arg.residual)
            else arg
            for name, arg in params.items()
        }
        body_env = self._closure_env(closure, self._array_svalue(args), bound)
        with self.session.staging(info.name):
            result = self.stage(info.body, body_env)

        if isinstance(result, Now) or not runtime_args:
            return result
        if callee is not None:
            return Later(result.constraint, Call(callee, tuple(self.svalue_to_residual(a) for a in args)))

        # Inlined body: bind what the residual still refers to by name.
        residual = result.residual
        for name, arg in reversed(params.items()):
            if uses_var(residual, name):
                residual = Let(name, self.svalue_to_residual(arg), residual)
        if info.name is not None and uses_var(residual, info.name):
            residual = Let(info.name, value_to_expr(closure, self.session), residual)
        return Later(result.constraint, residual)

    def _closure_env(self, closure: VClosure, args: SValue, params: dict[str, SValue]) -> SEnv:
        info = self.session.closure_info(closure)
        env = info.env
        if info.name is not None:
            env = env.extend(info.name, Now(closure, IS_FUNCTION, Var(info.name)))
        return env.extend("args", args).extend_many(params)

    def _call_builtin(
        self,
        builtin: Builtin,
        args: list[SValue],
        env: SEnv,
        ctx: RefinementContext,
        method_syntax: bool = False,
    ) -> SValue:
        if len(args) < len(builtin.params):
            raise ArityMismatch(builtin.name, len(builtin.params), len(args))
        for param, arg in zip(builtin.params, args):
            check_operand(arg, param.constraint, f"argument '{param.name}' of {builtin.name}")

        if isinstance(builtin, StagedBuiltin):
            context = StagedContext(
                env=env,
                ctx=ctx,
                session=self.session,
                invoke_closure=lambda func, call_args: self.invoke(func, call_args, env, ctx),
                to_residual=self.svalue_to_residual,
            )
            return builtin.stage(args, context)

        result = builtin.result_type([a.constraint for a in args])
        if all_now(args):
            value = builtin.evaluate([a.value for a in args])  # type: ignore[union-attr]
            return Now(value, and_constraint_of(result, value))
        residuals = [self.svalue_to_residual(a) for a in args]
        if method_syntax:
            return Later(result, MethodCall(residuals[0], builtin.name, tuple(residuals[1:])))
        return Later(result, Call(Var(builtin.name), tuple(residuals)))

    def _stage_method_call(
        self, receiver: Expr, method: str, args: tuple[Expr, ...], env: SEnv, ctx: RefinementContext
    ) -> SValue:
        recv = self.stage(receiver, env, ctx)
        arg_svs = [self.stage(a, env, ctx) for a in args]

        builtin = self.builtins.lookup_method(method)
        if builtin is not None:
            return self._call_builtin(builtin, [recv, *arg_svs], env, ctx, method_syntax=True)

        candidates = lookup_methods(recv.constraint, method)
        context = f".{method}()"
        if not candidates:
            raise TypeMismatch(HasField(method, IS_FUNCTION), recv.constraint, f"method call {context}")

        for candidate in candidates:
            if not candidate.min_args <= len(arg_svs) <= len(candidate.params):
                raise ArityMismatch(context, len(candidate.params), len(arg_svs))

        if len(candidates) == 1:
            (method_def,) = candidates
            check_operand(recv, method_def.receiver, f"receiver of {context}")
            for i, (arg, param) in enumerate(zip(arg_svs, method_def.params)):
                check_operand(arg, param, f"argument {i + 1} of {context}")
            if isinstance(recv, Now) and all_now(arg_svs):
                value = method_def.impl(recv.value, [a.value for a in arg_svs])  # type: ignore[union-attr]
                return Now(value, and_constraint_of(method_def.result, value))
            result = method_def.result
        else:
            result = simplify(or_(c.result for c in candidates))

        residual = MethodCall(
            self.svalue_to_residual(recv), method, tuple(self.svalue_to_residual(a) for a in arg_svs)
        )
        return Later(result, residual)

    # Aggregates

    def _stage_object(self, fields: tuple[tuple[str, Expr], ...], env: SEnv, ctx: RefinementContext) -> SValue:
        staged = [(name, self.stage(value, env, ctx)) for name, value in fields]
        constraint = object_constraint([(name, sv.constraint) for name, sv in staged])
        if all_now(sv for _, sv in staged):
            value = VObject(tuple((name, sv.value) for name, sv in staged))  # type: ignore[union-attr]
            if any(sv.residual is not None for _, sv in staged):
                return Now(value, constraint, Obj(tuple((n, self.svalue_to_residual(sv)) for n, sv in staged)))
            return Now(value, constraint)
        return Later(constraint, Obj(tuple((n, self.svalue_to_residual(sv)) for n, sv in staged)))

    def _array_svalue(self, elements: list[SValue]) -> SValue:
        constraint = array_constraint([e.constraint for e in elements])
        if all_now(elements):
            value = VArray(tuple(e.value for e in elements))  # type: ignore[union-attr]
            if any(e.residual is not None for e in elements):
                return Now(value, constraint, Array(tuple(self.svalue_to_residual(e) for e in elements)))
            return Now(value, constraint)
        residual = Array(tuple(self.svalue_to_residual(e) for e in elements))
        return Later(constraint, residual, tuple(elements))

    def _stage_field(self, obj: SValue, name: str) -> SValue:
        if name == "length" and (_is_string(obj) or implies(obj.constraint, IS_ARRAY)):
            return self._stage_length(obj)

        context = f"field access .{name}"
        check_operand(obj, IS_OBJECT, context)

        if isinstance(obj, Now):
            value = obj.value.get(name) if isinstance(obj.value, VObject) else None
            if value is None:
                raise TypeMismatch(HasField(name, ANY), obj.constraint, context)
            found = extract_field_constraint(obj.constraint, name)
            residual = Field(obj.residual, name) if obj.residual is not None and is_compound(value) else None
            return Now(value, found if found is not None else constraint_of(value), residual)

        found = extract_field_constraint(obj.constraint, name)
        if found is None:
            if is_closed(obj.constraint):
                raise TypeMismatch(HasField(name, ANY), obj.constraint, context)
            found = ANY
        return Later(found, Field(obj.residual, name))

    def _stage_length(self, obj: SValue) -> SValue:
        match obj:
            case Now(VString(text)):
                return now(VNumber(len(text)))
            case Now(VArray(elements)) | Later(_, _, elements) if elements is not None:
                return now(VNumber(len(elements)))
        length = _length_constraint(obj.constraint)
        return Later(length, Field(self.svalue_to_residual(obj), "length"))

    def _stage_index(self, arr: SValue, idx: SValue) -> SValue:
        check_operand(arr, IS_ARRAY, "array index")
        check_operand(idx, IS_NUMBER, "array index")

        position: int | None = None
        if isinstance(idx, Now):
            assert isinstance(idx.value, VNumber)
            if idx.value.value < 0 or idx.value.value != int(idx.value.value):
                raise TypeMismatch(and_([IS_NUMBER, Gte(0)]), idx.constraint, "array index")
            position = int(idx.value.value)

        if isinstance(arr, Now) and position is not None:
            assert isinstance(arr.value, VArray)
            if position >= len(arr.value.elements):
                raise TypeMismatch(ElementAt(position, ANY), arr.constraint, "array index")
            element = arr.value.elements[position]
            found = extract_element_constraint(arr.constraint, position)
            residual = None
            if arr.residual is not None and is_compound(element):
                residual = Index(arr.residual, Lit(position))
            return Now(element, found if found is not None else constraint_of(element), residual)

        if isinstance(arr, Later) and arr.elements is not None and position is not None:
            if position >= len(arr.elements):
                raise TypeMismatch(ElementAt(position, ANY), arr.constraint, "array index")
            return arr.elements[position]

        found = extract_element_constraint(arr.constraint, position)
        return Later(
            found if found is not None else ANY,
            Index(self.svalue_to_residual(arr), self.svalue_to_residual(idx)),
        )

    def _stage_block(self, exprs: tuple[Expr, ...], env: SEnv, ctx: RefinementContext) -> SValue:
        if not exprs:
            return now(NULL)
        staged = [self.stage(e, env, ctx) for e in exprs]
        last = staged[-1]
        effects = [sv.residual for sv in staged[:-1] if isinstance(sv, Later)]
        if not effects:
            return last
        return Later(last.constraint, Block((*effects, self.svalue_to_residual(last))))

    # Assertions

    def _type_target(self, type_sv: SValue, context: str) -> Constraint:
        if isinstance(type_sv, Later):
            raise StagingError(f"{context} requires a type known at compile time, got {type_sv.residual}")
        return self._value_to_type(type_sv.value, type_sv.constraint, context)

    def _value_to_type(self, value: Value, constraint: Constraint, context: str) -> Constraint:
        match value:
            case VType(c):
                return c
            case VArray(elements):
                return tuple_constraint(self._value_to_type(e, constraint_of(e), context) for e in elements)
            case VObject():
                constraint_id = value.get("__constraintId")
                if isinstance(constraint_id, VNumber):
                    return self.session.registered_constraint(int(constraint_id.value))
                element = value.get("__arrayOf")
                if element is not None:
                    return array_of(self._value_to_type(element, constraint_of(element), context))
                return object_constraint(
                    [(k, self._value_to_type(v, constraint_of(v), context)) for k, v in value.fields]
                )
        raise TypeMismatch(IsType(ANY), constraint, f"{context} type")

    def _stage_assert(
        self, inner: Expr, type_expr: Expr, message: str | None, env: SEnv, ctx: RefinementContext
    ) -> SValue:
        value_sv = self.stage(inner, env, ctx)
        type_sv = self.stage(type_expr, env, ctx)
        target = self._type_target(type_sv, "assert")
        refined = unify(value_sv.constraint, target)

        if isinstance(value_sv, Now):
            if not value_satisfies(value_sv.value, target):
                text = message or f"Assertion failed: {value_sv.value} does not satisfy {target}"
                raise AssertionFailure(text, value_sv.value, target)
            return replace(value_sv, constraint=refined)

        if isinstance(refined, NeverConstraint):
            raise TypeMismatch(target, value_sv.constraint, "assert")
        type_residual = type_sv.residual if type_sv.residual is not None else type_expr
        return Later(refined, Assert(value_sv.residual, type_residual, message))

    def _stage_assert_cond(self, cond: Expr, message: str | None, env: SEnv, ctx: RefinementContext) -> SValue:
        cond_sv = self.stage(cond, env, ctx)
        check_operand(cond_sv, IS_BOOL, "assert condition")
        if isinstance(cond_sv, Now):
            assert isinstance(cond_sv.value, VBool)
            if not cond_sv.value.value:
                raise AssertionFailure(message or f"Assertion failed: {cond}", cond_sv.value, IS_BOOL)
            return cond_sv
        return Later(IS_BOOL, AssertCond(cond_sv.residual, message))

    # Imports

    def _stage_import(
        self, names: tuple[str, ...], module: str, body: Expr, env: SEnv, ctx: RefinementContext
    ) -> SValue:
        constraints, signatures = self.session.load_exports(module, list(names))
        bindings: dict[str, SValue] = {}
        for name in names:
            signature = signatures.get(name)
            if signature is not None and signature.is_generic:
                bindings[name] = self._generic_import(name, signature, env)
            else:
                bindings[name] = Later(constraints[name], Var(name))

        body_sv = self.stage(body, env.extend_many(bindings), ctx.without(set(names)))
        if isinstance(body_sv, Now):
            return body_sv
        used = tuple(name for name in names if uses_var(body_sv.residual, name))
        if not used:
            return body_sv
        return Later(body_sv.constraint, Import(used, module, body_sv.residual))

    def _generic_import(self, name: str, signature: FunctionSignature, env: SEnv) -> SValue:
        """Closure solving the type parameters of a generic import at each call."""
        fn_type = signature.to_constraint()
        constraint_id = self.session.register_constraint(fn_type)
        impl = f"__{name}_impl"
        closure_env = env.extend_many(
            {
                impl: Later(IS_FUNCTION, Var(name)),
                "__instantiate": Now(VBuiltin("__instantiate"), IS_FUNCTION),
            }
        )
        body = Call(Var("__instantiate"), (Lit(constraint_id), Var(impl), Var("args")))
        closure = self.session.make_closure((), body, closure_env)
        return Now(closure, fn_type, Var(name))


def _is_string(sv: SValue) -> bool:
    return not isinstance(sv.constraint, NeverConstraint) and implies(sv.constraint, IS_STRING)


def _function_type(c: Constraint) -> Constraint | None:
    match c:
        case FnType() | GenericFnType():
            return c
        case And(operands):
            for op in operands:
                if isinstance(op, (FnType, GenericFnType)):
                    return op
    return None


def _length_constraint(c: Constraint) -> Constraint:
    operands = c.operands if isinstance(c, And) else (c,)
    for op in operands:
        if isinstance(op, Length):
            return op.constraint
    return IS_NUMBER


def stage(expr: Expr, session: Session | None = None) -> SValue:
    """Stage a whole program in a fresh environment."""
    evaluator = StagedEvaluator(session)
    logger.debug("stage.start expr={}", type(expr).__name__)
    return evaluator.stage(expr, evaluator.initial_env())
