"""Tests for the staged evaluator."""

import pytest

from depstage.core.ast import (
    Array,
    ArrayPattern,
    Assert,
    AssertCond,
    BinOp,
    Block,
    Call,
    Comptime,
    Field,
    Fn,
    If,
    Index,
    Let,
    LetPattern,
    Lit,
    Obj,
    ObjectPattern,
    RecFn,
    Runtime,
    Trust,
    TypeOf,
    Unary,
    Var,
    VarPattern,
    expr_to_string,
)
from depstage.core.constraint import (
    IS_BOOL,
    IS_NUMBER,
    IS_OBJECT,
    IS_STRING,
    NEVER,
    And,
    Equals,
    Gt,
    HasField,
    IndexSig,
    IsType,
    implies,
    literal,
)
from depstage.core.errors import (
    ArityMismatch,
    AssertionFailure,
    StagingError,
    TypeMismatch,
    UnboundVariable,
)
from depstage.eval.machine import StagedEvaluator, stage
from depstage.eval.session import Session
from depstage.eval.svalue import Later, Now
from depstage.eval.value import VArray, VBool, VClosure, VNull, VNumber, VObject, VString, VType, constraint_of


def fact_fn() -> RecFn:
    """fn fact(n) => n == 0 ? 1 : n * fact(n - 1)"""
    return RecFn(
        "fact",
        ("n",),
        If(
            BinOp("==", Var("n"), Lit(0)),
            Lit(1),
            BinOp("*", Var("n"), Call(Var("fact"), (BinOp("-", Var("n"), Lit(1)),))),
        ),
    )


# =============================================================================
# Literals and operators
# =============================================================================


class TestLiterals:
    """Literals are known now, with their exact constraint."""

    @pytest.mark.parametrize(
        ("value", "expected"),
        [(5, VNumber(5)), ("hi", VString("hi")), (True, VBool(True)), (None, VNull())],
    )
    def test_literal(self, run, value, expected):
        """Literal staging yields the value and its literal constraint."""
        result = run(Lit(value))
        assert isinstance(result, Now)
        assert result.value == expected
        assert result.constraint == constraint_of(expected)


class TestOperators:
    """Tests for binary and unary operators."""

    def test_fold_arithmetic(self, run):
        """Known operands fold."""
        result = run(BinOp("*", BinOp("+", Lit(2), Lit(3)), Lit(4)))
        assert result == Now(VNumber(20), literal(20))

    def test_string_concat(self, run):
        """Plus on strings concatenates."""
        result = run(BinOp("+", Lit("a"), Lit("b")))
        assert isinstance(result, Now)
        assert result.value == VString("ab")

    def test_runtime_operand(self, run):
        """A runtime operand leaves a residual with the operator's result kind."""
        result = run(BinOp("+", Runtime(Lit(5), "x"), Lit(3)))
        assert isinstance(result, Later)
        assert result.constraint == IS_NUMBER
        assert expr_to_string(result.residual) == "x + 3"

    def test_runtime_string_concat(self, run):
        """A runtime string keeps concatenation typed as string."""
        result = run(BinOp("+", Runtime(Lit("a"), "s"), Lit("!")))
        assert isinstance(result, Later)
        assert result.constraint == IS_STRING

    def test_comparison(self, run):
        """Comparisons of known numbers fold to booleans."""
        assert run(BinOp("<", Lit(1), Lit(2))).value == VBool(True)

    def test_runtime_comparison(self, run):
        """Comparisons with runtime operands are boolean."""
        result = run(BinOp(">", Runtime(Lit(1), "x"), Lit(0)))
        assert isinstance(result, Later)
        assert result.constraint == IS_BOOL

    def test_equality_of_mixed_kinds(self, run):
        """Equality compares without coercion."""
        assert run(BinOp("==", Lit(1), Lit("1"))).value == VBool(False)
        assert run(BinOp("!=", Lit(None), Lit(None))).value == VBool(False)

    def test_short_circuit(self, run):
        """The right operand is not staged when the left decides."""
        result = run(BinOp("||", Lit(True), Var("undefined_name")))
        assert result.value == VBool(True)
        result = run(BinOp("&&", Lit(False), Var("undefined_name")))
        assert result.value == VBool(False)

    def test_short_circuit_passes_right(self, run):
        """A neutral left operand yields the right operand."""
        result = run(BinOp("&&", Lit(True), Runtime(Lit(False), "b")))
        assert isinstance(result, Later)
        assert result.residual == Var("b")

    def test_type_mismatch(self, run):
        """Arithmetic on a string is rejected."""
        with pytest.raises(TypeMismatch):
            run(BinOp("-", Lit("a"), Lit(1)))

    def test_division(self, run):
        """Division follows floating point rules."""
        assert run(BinOp("/", Lit(7), Lit(2))).value == VNumber(3.5)
        assert run(BinOp("/", Lit(1), Lit(0))).value == VNumber(float("inf"))

    def test_unary(self, run):
        """Unary operators fold or stay residual."""
        assert run(Unary("-", Lit(3))).value == VNumber(-3)
        assert run(Unary("!", Lit(True))).value == VBool(False)
        result = run(Unary("!", Runtime(Lit(True), "b")))
        assert isinstance(result, Later)
        assert expr_to_string(result.residual) == "!b"


# =============================================================================
# Bindings and branches
# =============================================================================


class TestLet:
    """Tests for let bindings."""

    def test_folds(self, run):
        """let x = 5 in x + 1 is 6 now."""
        result = run(Let("x", Lit(5), BinOp("+", Var("x"), Lit(1))))
        assert isinstance(result, Now)
        assert result.value == VNumber(6)

    def test_dead_binding_dropped(self, run):
        """A runtime binding the body never uses disappears."""
        result = run(Let("x", Runtime(Lit(1), "r"), BinOp("+", Runtime(Lit(2), "y"), Lit(1))))
        assert isinstance(result, Later)
        assert expr_to_string(result.residual) == "y + 1"

    def test_computation_bound_once(self, run):
        """A runtime computation used twice is referenced through the binding."""
        expr = Let(
            "x",
            BinOp("+", Runtime(Lit(1), "r"), Lit(1)),
            BinOp("*", Var("x"), Var("x")),
        )
        result = run(expr)
        assert isinstance(result, Later)
        assert expr_to_string(result.residual) == "let x = r + 1 in x * x"

    def test_simple_value_inlined(self, run):
        """A runtime variable bound to a name is used directly."""
        result = run(Let("x", Runtime(Lit(1), "r"), BinOp("+", Var("x"), Lit(1))))
        assert expr_to_string(result.residual) == "r + 1"

    def test_unbound(self, run):
        """Unknown names are reported."""
        with pytest.raises(UnboundVariable):
            run(Var("nope"))

    def test_destructure_known(self, run):
        """Destructuring a known object binds its fields."""
        expr = LetPattern(
            ObjectPattern((("a", VarPattern("a")), ("b", VarPattern("b")))),
            Obj((("a", Lit(1)), ("b", Lit(2)))),
            BinOp("+", Var("a"), Var("b")),
        )
        assert run(expr).value == VNumber(3)

    def test_destructure_runtime(self, run):
        """Destructuring a runtime value reads each slot in the residual."""
        expr = LetPattern(
            ObjectPattern((("a", VarPattern("a")),)),
            Runtime(Obj((("a", Lit(1)),)), "o"),
            BinOp("+", Var("a"), Runtime(Lit(2), "y")),
        )
        result = run(expr)
        assert isinstance(result, Later)
        assert expr_to_string(result.residual) == "o.a + y"

    def test_destructure_mixed_array(self, run):
        """Known elements of a partially known array stay known."""
        expr = LetPattern(
            ArrayPattern((VarPattern("a"), VarPattern("b"))),
            Array((Lit(10), Runtime(Lit(2), "r"))),
            BinOp("+", Var("a"), Lit(1)),
        )
        result = run(expr)
        assert isinstance(result, Now)
        assert result.value == VNumber(11)


class TestIf:
    """Tests for conditionals."""

    def test_dead_branch_eliminated(self, run):
        """A known condition stages only the taken branch."""
        result = run(If(Lit(True), Lit(42), Var("unused")))
        assert result.value == VNumber(42)

    def test_runtime_condition(self, run):
        """A runtime condition keeps both branches."""
        result = run(If(Runtime(Lit(True), "c"), Lit(1), Lit(2)))
        assert isinstance(result, Later)
        assert expr_to_string(result.residual) == "c ? 1 : 2"
        assert implies(result.constraint, IS_NUMBER)

    def test_non_boolean_condition(self, run):
        """Conditions must be booleans."""
        with pytest.raises(TypeMismatch):
            run(If(Lit(1), Lit(1), Lit(2)))

    def test_refinement_in_branch(self, run):
        """A comparison refines the variable inside the branch."""
        expr = Let(
            "x",
            Runtime(Lit(5), "x"),
            If(BinOp(">", Var("x"), Lit(0)), Var("x"), Lit(0)),
        )
        result = run(expr)
        assert isinstance(result, Later)
        assert implies(result.constraint, IS_NUMBER)
        then_constraint = result.constraint.operands[0]
        assert then_constraint == And((IS_NUMBER, Gt(0)))

    def test_type_guard_refinement(self, run):
        """A type guard lets the branch use the narrowed value."""
        expr = Let(
            "v",
            Runtime(Lit(1), "v"),
            If(Call(Var("isNumber"), (Var("v"),)), BinOp("+", Var("v"), Lit(1)), Lit(0)),
        )
        result = run(expr)
        assert isinstance(result, Later)
        assert expr_to_string(result.residual) == "isNumber(v) ? v + 1 : 0"


# =============================================================================
# Functions
# =============================================================================


class TestFunctions:
    """Tests for closures and calls."""

    def test_closure_is_now(self, run):
        """A function expression is a known closure."""
        result = run(Fn(("x",), Var("x")))
        assert isinstance(result, Now)
        assert isinstance(result.value, VClosure)

    def test_call_folds(self, run):
        """Calling a known closure with known arguments folds."""
        result = run(Call(Fn(("x",), BinOp("*", Var("x"), Lit(2))), (Lit(21),)))
        assert result.value == VNumber(42)

    def test_args_array(self, run):
        """Arguments are also available as ``args``."""
        result = run(Call(Fn((), Index(Var("args"), Lit(1))), (Lit(1), Lit(2))))
        assert result.value == VNumber(2)

    def test_inline_with_runtime_argument(self, run):
        """An anonymous closure with a runtime argument is inlined."""
        result = run(Call(Fn(("x",), BinOp("+", Var("x"), Lit(1))), (Runtime(Lit(1), "r"),)))
        assert isinstance(result, Later)
        assert expr_to_string(result.residual) == "r + 1"

    def test_inline_binds_computed_argument(self, run):
        """A computed runtime argument is bound once around the inlined body."""
        double = Fn(("x",), BinOp("+", Var("x"), Var("x")))
        result = run(Call(double, (BinOp("*", Runtime(Lit(1), "r"), Lit(3)),)))
        assert isinstance(result, Later)
        assert expr_to_string(result.residual) == "let x = r * 3 in x + x"

    def test_arity(self, run):
        """Too few arguments are rejected."""
        with pytest.raises(ArityMismatch):
            run(Call(Fn(("a", "b"), Var("a")), (Lit(1),)))

    def test_call_non_function(self, run):
        """Calling a number is a type error."""
        with pytest.raises(TypeMismatch):
            run(Call(Lit(1), ()))

    def test_closure_captures_environment(self, run):
        """Closures see the bindings where they were created."""
        expr = Let(
            "k",
            Lit(10),
            Let("add", Fn(("x",), BinOp("+", Var("x"), Var("k"))), Call(Var("add"), (Lit(5),))),
        )
        assert run(expr).value == VNumber(15)


class TestRecursion:
    """Tests for recursive functions."""

    def test_fact_known(self, run):
        """fact(5) runs entirely at compile time."""
        result = run(Call(fact_fn(), (Lit(5),)))
        assert isinstance(result, Now)
        assert result.value == VNumber(120)

    def test_fact_runtime(self, run):
        """fact on a runtime argument terminates with a residual self-call."""
        result = run(Let("fact", fact_fn(), Call(Var("fact"), (Runtime(Lit(5), "k"),))))
        assert isinstance(result, Later)
        assert isinstance(result.residual, Let)
        assert result.residual.name == "fact"
        assert isinstance(result.residual.value, RecFn)
        assert expr_to_string(result.residual.body) == "fact(k)"

    def test_fact_runtime_inlined(self, run):
        """An inlined recursive body refers to the function by name."""
        result = run(Call(fact_fn(), (Runtime(Lit(5), "k"),)))
        assert isinstance(result, Later)
        assert isinstance(result.residual, Let)
        assert expr_to_string(result.residual.body) == "k == 0 ? 1 : k * fact(k - 1)"

    def test_in_progress_cleared(self, session, run):
        """The recursion guard is empty after staging."""
        run(Let("fact", fact_fn(), Call(Var("fact"), (Runtime(Lit(5), "k"),))))
        assert not session.is_in_progress("fact")


# =============================================================================
# Aggregates
# =============================================================================


class TestObjects:
    """Tests for object literals and field access."""

    def test_known_object(self, run):
        """An object of known fields is known."""
        result = run(Obj((("a", Lit(1)), ("b", Lit("x")))))
        assert isinstance(result, Now)
        assert result.value == VObject((("a", VNumber(1)), ("b", VString("x"))))

    def test_runtime_field(self, run):
        """One runtime field makes the object runtime, keeping field constraints."""
        result = run(Obj((("a", Lit(1)), ("b", Runtime(Lit(2), "y")))))
        assert isinstance(result, Later)
        assert result.constraint == And(
            (IS_OBJECT, HasField("a", literal(1)), HasField("b", IS_NUMBER), IndexSig(NEVER))
        )
        assert expr_to_string(result.residual) == "{ a: 1, b: y }"

    def test_field_of_runtime_object(self, run):
        """Field constraints survive on a runtime object."""
        expr = Let("o", Obj((("a", Lit(1)), ("b", Runtime(Lit(2), "y")))), Field(Var("o"), "b"))
        result = run(expr)
        assert isinstance(result, Later)
        assert result.constraint == IS_NUMBER

    def test_missing_field(self, run):
        """Closed objects reject unknown fields."""
        with pytest.raises(TypeMismatch):
            run(Field(Obj((("a", Lit(1)),)), "b"))

    def test_string_length(self, run):
        """String length is known for known strings."""
        assert run(Field(Lit("abc"), "length")).value == VNumber(3)


class TestArrays:
    """Tests for array literals and indexing."""

    def test_known_array(self, run):
        """An array of known elements is known."""
        result = run(Array((Lit(1), Lit(2))))
        assert result.value == VArray((VNumber(1), VNumber(2)))

    def test_index_known(self, run):
        """Indexing a known array with a known position folds."""
        assert run(Index(Array((Lit(1), Lit(2))), Lit(1))).value == VNumber(2)

    def test_index_out_of_bounds(self, run):
        """Out-of-range positions are rejected."""
        with pytest.raises(TypeMismatch):
            run(Index(Array((Lit(1),)), Lit(3)))

    def test_runtime_index(self, run):
        """A runtime index leaves a residual typed by the elements."""
        result = run(Index(Array((Lit(1), Lit(2))), Runtime(Lit(0), "i")))
        assert isinstance(result, Later)
        assert expr_to_string(result.residual) == "[1, 2][i]"
        assert implies(result.constraint, IS_NUMBER)

    def test_length_of_partially_known(self, run):
        """The length of an array literal is known even with runtime elements."""
        result = run(Field(Array((Lit(1), Runtime(Lit(2), "r"))), "length"))
        assert result.value == VNumber(2)


# =============================================================================
# Staging markers and assertions
# =============================================================================


class TestStagingMarkers:
    """Tests for comptime, runtime and typeOf."""

    def test_runtime_widens(self, run):
        """A runtime value keeps its kind and forgets its literal."""
        result = run(Runtime(Lit(5), "n"))
        assert result == Later(IS_NUMBER, Var("n"))

    def test_runtime_fresh_name(self, run):
        """Unnamed runtime values get fresh names."""
        first = run(Runtime(Lit(1)))
        second = run(Runtime(Lit(2)))
        assert first.residual == Var("rt0")
        assert second.residual == Var("rt1")

    def test_comptime_requires_known(self, run):
        """comptime rejects runtime values."""
        assert run(Comptime(BinOp("+", Lit(1), Lit(2)))).value == VNumber(3)
        with pytest.raises(StagingError):
            run(Comptime(Runtime(Lit(1), "r")))

    def test_type_of(self, run):
        """typeOf reifies the constraint."""
        result = run(TypeOf(Runtime(Lit(1), "r")))
        assert result == Now(VType(IS_NUMBER), IsType(IS_NUMBER))


class TestAssert:
    """Tests for assertions and trust."""

    def test_assert_refines(self, run):
        """A passing assertion keeps the value with the refined constraint."""
        result = run(Assert(Lit(10), Var("number")))
        assert isinstance(result, Now)
        assert result.value == VNumber(10)
        assert implies(result.constraint, IS_NUMBER)
        assert implies(result.constraint, Equals(10))

    def test_assert_fails(self, run):
        """A failing assertion on a known value is a compile-time error."""
        with pytest.raises(AssertionFailure):
            run(Assert(Lit("a"), Var("number")))

    def test_assert_runtime(self, run):
        """Assertions on runtime values stay in the residual."""
        result = run(Assert(Runtime(Lit(1), "r"), Var("number")))
        assert isinstance(result, Later)
        assert expr_to_string(result.residual) == "assert(r, number)"

    def test_assert_contradiction(self, run):
        """A runtime value that can never satisfy the type is rejected now."""
        with pytest.raises(TypeMismatch):
            run(Assert(Runtime(Lit("s"), "r"), Var("number")))

    def test_assert_object_type(self, run):
        """Object literals of types describe object shapes."""
        shape = Obj((("id", Var("number")),))
        result = run(Assert(Obj((("id", Lit(1)),)), shape))
        assert isinstance(result, Now)

    def test_assert_condition(self, run):
        """Boolean assertions pass, fail or stay residual."""
        assert run(AssertCond(BinOp("<", Lit(1), Lit(2)))).value == VBool(True)
        with pytest.raises(AssertionFailure):
            run(AssertCond(Lit(False), "nope"))
        result = run(AssertCond(Runtime(Lit(True), "b")))
        assert isinstance(result, Later)

    def test_trust(self, run):
        """trust narrows without a runtime check."""
        result = run(Trust(Runtime(Lit(1), "r"), Var("number")))
        assert result == Later(IS_NUMBER, Var("r"))


class TestBlock:
    """Tests for sequences."""

    def test_known_block(self, run):
        """A block of known values is its last value."""
        assert run(Block((Lit(1), Lit(2)))).value == VNumber(2)

    def test_empty_block(self, run):
        """An empty block is null."""
        assert run(Block(())).value == VNull()

    def test_effects_kept(self, run):
        """Earlier runtime expressions are kept as effects."""
        result = run(Block((Call(Var("print"), (Lit("hi"),)), Lit(2))))
        assert isinstance(result, Later)
        assert expr_to_string(result.residual) == '{ print("hi"); 2 }'


# =============================================================================
# Sessions
# =============================================================================


def test_reproducible_across_sessions():
    """Independent sessions number fresh names identically."""
    expr = BinOp("+", Runtime(Lit(1)), Runtime(Lit(2)))
    first = stage(expr, Session())
    second = stage(expr, Session())
    assert first == second
    assert expr_to_string(first.residual) == "rt0 + rt1"


def test_evaluator_uses_its_session(session):
    """Closures are allocated in the evaluator's session."""
    evaluator = StagedEvaluator(session)
    result = evaluator.stage(Fn(("x",), Var("x")), evaluator.initial_env())
    assert session.closure_info(result.value).params == ("x",)
