"""Tests for refinements learned from branch conditions."""

import pytest

from depstage.core.ast import BinOp, Call, Field, If, Let, Lit, Runtime, Unary, Var, expr_to_string
from depstage.core.constraint import (
    IS_NUMBER,
    IS_STRING,
    And,
    Equals,
    Gt,
    Gte,
    HasField,
    Lt,
    Lte,
    Not,
    Or,
)
from depstage.eval.refinement import (
    extract_negated_refinement,
    extract_refinement,
    merge_refinements,
    negate_constraint,
    negate_refinement,
)
from depstage.eval.svalue import Later


@pytest.mark.parametrize(
    ("cond", "expected"),
    [
        (BinOp(">", Var("x"), Lit(0)), {"x": Gt(0)}),
        (BinOp("<=", Var("x"), Lit(10)), {"x": Lte(10)}),
        (BinOp("<", Lit(0), Var("x")), {"x": Gt(0)}),
        (BinOp(">=", Lit(5), Var("x")), {"x": Lte(5)}),
        (BinOp("==", Var("x"), Lit(None)), {"x": Equals(None)}),
        (BinOp("!=", Var("s"), Lit("a")), {"s": Not(Equals("a"))}),
        (BinOp("==", Lit("circle"), Field(Var("o"), "kind")), {"o": HasField("kind", Equals("circle"))}),
        (Call(Var("isNumber"), (Var("v"),)), {"v": IS_NUMBER}),
        (Call(Var("isString"), (Var("v"),)), {"v": IS_STRING}),
    ],
)
def test_extract_refinement(cond, expected):
    """Simple conditions refine the variable they test."""
    assert extract_refinement(cond) == expected


@pytest.mark.parametrize(
    "cond",
    [
        BinOp("==", Var("x"), Var("y")),
        BinOp(">", BinOp("+", Var("x"), Lit(1)), Lit(0)),
        BinOp(">", Var("x"), Lit(True)),
        BinOp("<", Var("x"), Lit("a")),
        Call(Var("isNumber"), (Field(Var("o"), "a"),)),
        Call(Var("check"), (Var("v"),)),
        Var("flag"),
    ],
)
def test_no_refinement(cond):
    """Conditions that say nothing about a single variable refine nothing."""
    assert extract_refinement(cond) == {}


class TestConnectives:
    """Tests for conditions combined with boolean operators."""

    def test_and_merges(self):
        """Both sides of ``&&`` hold in the then-branch."""
        cond = BinOp("&&", BinOp(">", Var("x"), Lit(0)), BinOp("<", Var("y"), Lit(5)))
        assert extract_refinement(cond) == {"x": Gt(0), "y": Lt(5)}

    def test_and_same_variable(self):
        """Refinements of one variable are conjoined."""
        cond = BinOp("&&", BinOp(">", Var("x"), Lit(0)), BinOp("<", Var("x"), Lit(10)))
        assert extract_refinement(cond) == {"x": And((Gt(0), Lt(10)))}

    def test_or_same_variable(self):
        """``||`` over one variable gives a union."""
        cond = BinOp("||", BinOp("<", Var("x"), Lit(0)), BinOp(">", Var("x"), Lit(10)))
        assert extract_refinement(cond) == {"x": Or((Lt(0), Gt(10)))}

    def test_or_different_variables(self):
        """``||`` over different variables refines neither."""
        cond = BinOp("||", BinOp("<", Var("x"), Lit(0)), BinOp(">", Var("y"), Lit(10)))
        assert extract_refinement(cond) == {}

    def test_not(self):
        """Negation flips the comparison."""
        cond = Unary("!", BinOp(">", Var("x"), Lit(0)))
        assert extract_refinement(cond) == {"x": Lte(0)}


class TestNegation:
    """Tests for negating constraints for the else-branch."""

    @pytest.mark.parametrize(
        ("c", "expected"),
        [
            (Gt(1), Lte(1)),
            (Gte(1), Lt(1)),
            (Lt(1), Gte(1)),
            (Lte(1), Gt(1)),
            (Not(IS_NUMBER), IS_NUMBER),
            (IS_NUMBER, Not(IS_NUMBER)),
            (Equals("a"), Not(Equals("a"))),
        ],
    )
    def test_negate_constraint(self, c, expected):
        assert negate_constraint(c) == expected

    def test_de_morgan(self):
        """Conjunctions negate to disjunctions of negations."""
        assert negate_constraint(And((Gt(0), Lt(10)))) == Or((Lte(0), Gte(10)))
        assert negate_constraint(Or((Lt(0), Gt(10)))) == And((Gte(0), Lte(10)))

    def test_negate_refinement(self):
        """Every refined variable is negated."""
        assert negate_refinement({"x": Gt(0), "s": Equals("a")}) == {"x": Lte(0), "s": Not(Equals("a"))}


def test_merge_refinements():
    """Shared variables are conjoined, others carried over."""
    merged = merge_refinements({"x": Gt(0)}, {"x": Lt(5), "y": IS_STRING})
    assert merged == {"x": And((Gt(0), Lt(5))), "y": IS_STRING}


class TestNegatedConditions:
    """Tests for what the else-branch learns."""

    @pytest.mark.parametrize(
        ("cond", "expected"),
        [
            (BinOp(">", Var("x"), Lit(0)), {"x": Lte(0)}),
            (Call(Var("isNumber"), (Var("v"),)), {"v": Not(IS_NUMBER)}),
            (Unary("!", BinOp(">", Var("x"), Lit(0))), {"x": Gt(0)}),
            (
                BinOp("&&", BinOp(">", Var("x"), Lit(0)), BinOp("<", Var("x"), Lit(10))),
                {"x": Or((Lte(0), Gte(10)))},
            ),
            (
                BinOp("||", BinOp(">", Var("x"), Lit(0)), BinOp("<", Var("y"), Lit(5))),
                {"x": Lte(0), "y": Gte(5)},
            ),
        ],
    )
    def test_negated(self, cond, expected):
        assert extract_negated_refinement(cond) == expected

    @pytest.mark.parametrize(
        "cond",
        [
            BinOp("&&", BinOp(">", Var("x"), Lit(0)), BinOp(">", Var("y"), Lit(0))),
            BinOp("&&", Call(Var("isNumber"), (Var("x"),)), Var("flag")),
        ],
    )
    def test_failed_conjunction_refines_nothing(self, cond):
        """A false ``&&`` does not say which side failed."""
        assert extract_negated_refinement(cond) == {}

    def test_not_of_conjunction(self):
        """``!(a && b)`` in a condition is as weak as a failed conjunction."""
        cond = Unary("!", BinOp("&&", BinOp(">", Var("x"), Lit(0)), BinOp(">", Var("y"), Lit(0))))
        assert extract_refinement(cond) == {}

    def test_else_branch_of_conjunction(self, run):
        """The else-branch keeps the full type of a variable tested in a conjunction."""
        x = Runtime(If(Runtime(Lit(True), "c"), Lit(1), Lit("a")), "x")
        cond = BinOp("&&", Call(Var("isNumber"), (Var("x"),)), BinOp(">", Var("y"), Lit(0)))
        expr = Let("x", x, Let("y", Runtime(Lit(1), "y"), If(cond, Lit(0), BinOp("+", Var("x"), Lit(1)))))
        result = run(expr)
        assert isinstance(result, Later)
        assert isinstance(result.residual, If)
        assert expr_to_string(result.residual.else_) == "x + 1"
