"""Builtin registry for the staged evaluator.

Builtins are named functions available in every program. A pure builtin
is a plain function over values: it runs at compile time when all of its
arguments are known and is otherwise emitted as a residual call. A staged
builtin receives staged values and decides itself what to fold and what to
leave for runtime.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Callable

from loguru import logger

from depstage.core.ast import Array, Call, Expr, MethodCall, Var
from depstage.core.constraint import (
    ANY,
    IS_ARRAY,
    IS_BOOL,
    IS_FUNCTION,
    IS_NULL,
    IS_NUMBER,
    IS_STRING,
    AnyConstraint,
    Constraint,
    Equals,
    GenericFnType,
    NeverConstraint,
    and_,
    array_of,
    extract_element_constraint,
    implies,
    narrow,
    tuple_constraint,
)
from depstage.core.errors import TypeMismatch
from depstage.core.solve import instantiate_generic_call
from depstage.eval.env import RefinementContext, SEnv
from depstage.eval.refinement import TYPE_GUARDS
from depstage.eval.session import Session
from depstage.eval.svalue import Later, Now, SValue, all_now, now
from depstage.eval.value import Value, VArray, VBool, VNumber, VString, array_constraint, value_satisfies


@dataclass(frozen=True)
class BuiltinParam:
    name: str
    constraint: Constraint


@dataclass(frozen=True)
class StagedContext:
    """What a staged builtin may use from the evaluator."""

    env: SEnv
    ctx: RefinementContext
    session: Session
    invoke_closure: Callable[[Value, list[SValue]], SValue]
    to_residual: Callable[[SValue], Expr]


class Builtin(ABC):
    """Abstract base class for builtins."""

    name: str
    params: tuple[BuiltinParam, ...]
    description: str = ""
    is_method: bool = False

    def result_type(self, arg_constraints: list[Constraint]) -> Constraint:
        return ANY


class PureBuiltin(Builtin):
    """Builtin computed directly from concrete values."""

    @abstractmethod
    def evaluate(self, args: list[Value]) -> Value: ...


class StagedBuiltin(Builtin):
    """Builtin that handles staged arguments itself."""

    @abstractmethod
    def stage(self, args: list[SValue], context: StagedContext) -> SValue: ...


class BuiltinRegistry:
    """Registry for available builtins.

    Manages builtin registration and lookup by name.
    """

    def __init__(self) -> None:
        self._builtins: dict[str, Builtin] = {}
        self._register_default_builtins()

    def _register_default_builtins(self) -> None:
        for name, kind in TYPE_GUARDS.items():
            self.register(TypeGuard(name, kind))
        self.register(PrintBuiltin())
        self.register(StringPredicate("startsWith", str.startswith))
        self.register(StringPredicate("endsWith", str.endswith))
        self.register(StringPredicate("contains", lambda text, part: part in text))
        self.register(MapBuiltin())
        self.register(FilterBuiltin())
        self.register(InstantiateBuiltin())

    def register(self, builtin: Builtin) -> None:
        """Register a builtin.

        Raises:
            ValueError: If a builtin with the same name already exists
        """
        if builtin.name in self._builtins:
            raise ValueError(f"Builtin '{builtin.name}' already registered")
        self._builtins[builtin.name] = builtin

    def lookup(self, name: str) -> Builtin | None:
        return self._builtins.get(name)

    def lookup_method(self, name: str) -> Builtin | None:
        """A builtin usable with method syntax, ``receiver.name(...)``."""
        builtin = self._builtins.get(name)
        if builtin is not None and builtin.is_method:
            return builtin
        return None

    def list_builtins(self) -> list[str]:
        return list(self._builtins.keys())

    def __contains__(self, name: str) -> bool:
        return name in self._builtins


# =============================================================================
# Pure builtins
# =============================================================================


class TypeGuard(PureBuiltin):
    """``isNumber(x)`` and friends.

    The result folds from the argument's constraint alone when the
    classification is already decided, even for runtime values.
    """

    def __init__(self, name: str, kind: Constraint) -> None:
        self.name = name
        self.kind = kind
        self.params = (BuiltinParam("value", ANY),)
        self.description = f"Whether a value satisfies {kind}"

    def result_type(self, arg_constraints: list[Constraint]) -> Constraint:
        (arg,) = arg_constraints
        if isinstance(arg, AnyConstraint):
            return IS_BOOL
        if implies(arg, self.kind):
            return and_([IS_BOOL, Equals(True)])
        if isinstance(narrow(arg, self.kind), NeverConstraint):
            return and_([IS_BOOL, Equals(False)])
        return IS_BOOL

    def evaluate(self, args: list[Value]) -> Value:
        return VBool(value_satisfies(args[0], self.kind))


class StringPredicate(PureBuiltin):
    is_method = True

    def __init__(self, name: str, predicate: Callable[[str, str], bool]) -> None:
        self.name = name
        self.predicate = predicate
        self.params = (BuiltinParam("str", IS_STRING), BuiltinParam("part", IS_STRING))

    def result_type(self, arg_constraints: list[Constraint]) -> Constraint:
        return IS_BOOL

    def evaluate(self, args: list[Value]) -> Value:
        text, part = args
        assert isinstance(text, VString) and isinstance(part, VString)
        return VBool(self.predicate(text.value, part.value))


# =============================================================================
# Staged builtins
# =============================================================================


class PrintBuiltin(StagedBuiltin):
    """Output is a runtime effect: ``print`` always leaves a residual call."""

    name = "print"
    description = "Print a value at runtime"
    params = (BuiltinParam("value", ANY),)

    def result_type(self, arg_constraints: list[Constraint]) -> Constraint:
        return IS_NULL

    def stage(self, args: list[SValue], context: StagedContext) -> SValue:
        return Later(IS_NULL, Call(Var(self.name), tuple(context.to_residual(a) for a in args)))


def _probe_callback(fn: SValue, element: Constraint, context: StagedContext) -> Constraint:
    """Result constraint of a callback applied to an element of a runtime array."""
    if isinstance(element, AnyConstraint) or not isinstance(fn, Now):
        return ANY
    probe = Later(element, Var(context.session.fresh_var("_e")))
    return context.invoke_closure(fn.value, [probe]).constraint


class MapBuiltin(StagedBuiltin):
    name = "map"
    description = "Apply a function to each element of an array"
    params = (BuiltinParam("arr", IS_ARRAY), BuiltinParam("fn", IS_FUNCTION))
    is_method = True

    def result_type(self, arg_constraints: list[Constraint]) -> Constraint:
        return array_of(ANY)

    def stage(self, args: list[SValue], context: StagedContext) -> SValue:
        arr, fn = args
        if isinstance(arr, Now) and isinstance(fn, Now):
            assert isinstance(arr.value, VArray)
            results = [context.invoke_closure(fn.value, [now(e)]) for e in arr.value.elements]
            if all_now(results):
                return now(VArray(tuple(r.value for r in results)))  # type: ignore[union-attr]
            return _array_literal(results, context)

        result = _probe_callback(fn, _element_of(arr.constraint), context)
        residual = MethodCall(context.to_residual(arr), self.name, (context.to_residual(fn),))
        return Later(array_of(result), residual)


class FilterBuiltin(StagedBuiltin):
    name = "filter"
    description = "Keep the elements of an array for which a predicate holds"
    params = (BuiltinParam("arr", IS_ARRAY), BuiltinParam("fn", IS_FUNCTION))
    is_method = True

    def result_type(self, arg_constraints: list[Constraint]) -> Constraint:
        return array_of(_element_of(arg_constraints[0]))

    def stage(self, args: list[SValue], context: StagedContext) -> SValue:
        arr, fn = args
        if isinstance(arr, Now) and isinstance(fn, Now):
            assert isinstance(arr.value, VArray)
            kept: list[Value] = []
            for element in arr.value.elements:
                verdict = context.invoke_closure(fn.value, [now(element)])
                if not isinstance(verdict, Now):
                    break
                if not isinstance(verdict.value, VBool):
                    raise TypeMismatch(IS_BOOL, verdict.constraint, "filter predicate")
                if verdict.value.value:
                    kept.append(element)
            else:
                return now(VArray(tuple(kept)))

        residual = MethodCall(context.to_residual(arr), self.name, (context.to_residual(fn),))
        return Later(self.result_type([arr.constraint, fn.constraint]), residual)


def _element_of(c: Constraint) -> Constraint:
    found = extract_element_constraint(c)
    return found if found is not None else ANY


def _array_literal(elements: list[SValue], context: StagedContext) -> SValue:
    constraint = array_constraint([e.constraint for e in elements])
    residual = Array(tuple(context.to_residual(e) for e in elements))
    return Later(constraint, residual, tuple(elements))


class InstantiateBuiltin(StagedBuiltin):
    """Call an imported generic function with its type parameters solved.

    Receives the id of the function's registered ``GenericFnType``, the
    runtime implementation and the call's argument array.
    """

    name = "__instantiate"
    params = (
        BuiltinParam("signature", IS_NUMBER),
        BuiltinParam("impl", IS_FUNCTION),
        BuiltinParam("args", IS_ARRAY),
    )

    def stage(self, args: list[SValue], context: StagedContext) -> SValue:
        signature, impl, call_args = args
        assert isinstance(signature, Now) and isinstance(signature.value, VNumber)
        fn_type = context.session.registered_constraint(int(signature.value.value))
        assert isinstance(fn_type, GenericFnType)

        arguments = _array_elements(call_args)
        arg_constraints = [a.constraint for a in arguments]
        inst = instantiate_generic_call(fn_type, arg_constraints, context.session.fresh_cvar)
        if inst is None:
            raise TypeMismatch(fn_type, tuple_constraint(arg_constraints), f"call to {impl.residual}")
        logger.debug("stage.instantiate callee={} result={}", impl.residual, inst.result)

        callee = impl.residual if impl.residual is not None else context.to_residual(impl)
        return Later(inst.result, Call(callee, tuple(context.to_residual(a) for a in arguments)))


def _array_elements(sv: SValue) -> list[SValue]:
    match sv:
        case Now(VArray(elements)):
            return [now(e) for e in elements]
        case Later(_, _, elements) if elements is not None:
            return list(elements)
    raise TypeMismatch(IS_ARRAY, sv.constraint, "argument list")
