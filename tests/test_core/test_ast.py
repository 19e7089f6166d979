"""Tests for expression trees."""

import pytest

from depstage.core.ast import (
    Array,
    ArrayPattern,
    BinOp,
    Block,
    Call,
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
    RecFn,
    Runtime,
    Unary,
    Var,
    VarPattern,
    expr_to_string,
    free_vars,
    is_simple,
    pattern_vars,
    uses_var,
)


class TestLit:
    """Tests for literal equality."""

    def test_kind_aware_equality(self):
        """Booleans and numbers are different literals."""
        assert Lit(1) != Lit(True)
        assert Lit(0) != Lit(False)
        assert Lit(1) == Lit(1.0)

    def test_hash_consistent(self):
        """Equal literals hash equally."""
        assert len({Lit(2), Lit(2.0), Lit(True)}) == 2


class TestFreeVars:
    """Tests for free variable analysis."""

    def test_let_binds_body_only(self):
        """A let binding is visible in its body, not its value."""
        expr = Let("x", Var("x"), BinOp("+", Var("x"), Var("y")))
        assert free_vars(expr) == {"x", "y"}

    def test_function_params(self):
        """Parameters and the implicit args array are bound."""
        expr = Fn(("a",), BinOp("+", Var("a"), Index(Var("args"), Var("i"))))
        assert free_vars(expr) == {"i"}

    def test_recursive_name(self):
        """A recursive function binds its own name."""
        expr = RecFn("f", ("n",), Call(Var("f"), (Var("n"),)))
        assert free_vars(expr) == set()

    def test_pattern_binding(self):
        """Destructured names are bound in the body."""
        pattern = ObjectPattern((("a", VarPattern("a")), ("b", ArrayPattern((VarPattern("c"),)))))
        expr = LetPattern(pattern, Var("o"), BinOp("+", Var("a"), Var("c")))
        assert pattern_vars(pattern) == ["a", "c"]
        assert free_vars(expr) == {"o"}

    def test_import_binds_names(self):
        """Imported names are bound in the body."""
        expr = Import(("add",), "math", Call(Var("add"), (Var("x"),)))
        assert free_vars(expr) == {"x"}

    def test_uses_var(self):
        """Occurrence checks respect shadowing."""
        assert uses_var(BinOp("*", Var("x"), Lit(2)), "x")
        assert not uses_var(Let("x", Lit(1), Var("x")), "x")

    def test_is_simple(self):
        """Only literals and variables are simple."""
        assert is_simple(Lit(1))
        assert is_simple(Var("x"))
        assert not is_simple(BinOp("+", Var("x"), Lit(1)))


@pytest.mark.parametrize(
    ("expr", "expected"),
    [
        (BinOp("+", Var("x"), Lit(3)), "x + 3"),
        (BinOp("*", BinOp("+", Var("a"), Var("b")), Var("c")), "(a + b) * c"),
        (BinOp("-", Var("a"), BinOp("-", Var("b"), Var("c"))), "a - (b - c)"),
        (Obj((("a", Lit(1)), ("b", Var("y")))), "{ a: 1, b: y }"),
        (Obj(()), "{}"),
        (If(Var("c"), Var("a"), Var("b")), "c ? a : b"),
        (Let("x", Lit(5), Var("x")), "let x = 5 in x"),
        (Fn(("x",), BinOp("+", Var("x"), Lit(1))), "(x) => x + 1"),
        (RecFn("f", ("n",), Var("n")), "fn f(n) => n"),
        (Call(Var("f"), (Lit(1), Lit("a"))), 'f(1, "a")'),
        (Field(Var("o"), "k"), "o.k"),
        (Array((Lit(1), Lit(None))), "[1, null]"),
        (Index(Var("xs"), Lit(0)), "xs[0]"),
        (Unary("!", Var("b")), "!b"),
        (MethodCall(Var("s"), "trim", ()), "s.trim()"),
        (Block((Var("a"), Var("b"))), "{ a; b }"),
        (Runtime(Lit(5), "n"), "runtime(n: 5)"),
        (Import(("add",), "math", Var("add")), 'import { add } from "math"; add'),
    ],
)
def test_expr_to_string(expr, expected):
    """Expressions render in compact JavaScript-like syntax."""
    assert expr_to_string(expr) == expected


def test_str_uses_renderer():
    """str() of an expression is its rendering."""
    assert str(BinOp("==", Var("x"), Lit(None))) == "x == null"
