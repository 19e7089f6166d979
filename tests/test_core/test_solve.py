"""Tests for constraint solving and generic instantiation."""

from depstage.core.constraint import (
    ANY,
    IS_NUMBER,
    IS_OBJECT,
    IS_STRING,
    And,
    CVar,
    FnType,
    GenericFnType,
    HasField,
    Or,
    TypeParam,
    array_of,
    literal,
)
from depstage.core.solve import (
    FunctionSignature,
    Substitution,
    free_constraint_vars,
    infer_call_result,
    instantiate_generic_call,
    solve,
    substitute_type_params,
)

T = TypeParam("T", ANY, 0)
U = TypeParam("U", ANY, 1)

IDENTITY = GenericFnType((T,), (T,), T)


class TestSubstitution:
    """Tests for substitutions."""

    def test_apply_resolves_chains(self):
        """Bound variables are followed to their final binding."""
        sub = Substitution({"?0": CVar(1), "?1": IS_NUMBER})
        assert sub.apply(CVar(0)) == IS_NUMBER

    def test_apply_inside_structure(self):
        """Variables nested in constraints are replaced."""
        sub = Substitution.singleton(CVar(0), IS_STRING)
        assert sub.apply(array_of(CVar(0))) == array_of(IS_STRING)

    def test_merge_keeps_narrower(self):
        """Compatible bindings keep the more precise one."""
        merged = Substitution.singleton(CVar(0), IS_NUMBER).merge(Substitution.singleton(CVar(0), literal(5)))
        assert merged is not None
        assert merged.lookup(CVar(0)) == literal(5)

    def test_merge_same_kind(self):
        """Different literals of one kind merge into their union."""
        merged = Substitution.singleton(CVar(0), literal(1)).merge(Substitution.singleton(CVar(0), literal(2)))
        assert merged is not None
        assert merged.lookup(CVar(0)) == Or((literal(1), literal(2)))

    def test_merge_conflict(self):
        """Incompatible bindings cannot be merged."""
        merged = Substitution.singleton(CVar(0), IS_NUMBER).merge(Substitution.singleton(CVar(0), IS_STRING))
        assert merged is None

    def test_merge_disjoint(self):
        """Bindings of different variables combine."""
        merged = Substitution.singleton(CVar(0), IS_NUMBER).merge(Substitution.singleton(CVar(1), IS_STRING))
        assert merged is not None
        assert len(merged) == 2


class TestSolve:
    """Tests for solving one constraint against another."""

    def test_bind_variable(self):
        """A variable on the pattern side is bound to the argument."""
        sub = solve(IS_NUMBER, CVar(0))
        assert sub is not None
        assert sub.lookup(CVar(0)) == IS_NUMBER

    def test_mismatch(self):
        """Different classifications do not solve."""
        assert solve(IS_NUMBER, IS_STRING) is None

    def test_structural(self):
        """Variables inside fields are bound structurally."""
        sub = solve(
            And((IS_OBJECT, HasField("x", IS_NUMBER))),
            And((IS_OBJECT, HasField("x", CVar(0)))),
        )
        assert sub is not None
        assert sub.lookup(CVar(0)) == IS_NUMBER

    def test_function_types(self):
        """Parameter and result variables are bound together."""
        sub = solve(FnType((IS_NUMBER,), IS_STRING), FnType((CVar(0),), CVar(1)))
        assert sub is not None
        assert sub.lookup(CVar(0)) == IS_NUMBER
        assert sub.lookup(CVar(1)) == IS_STRING

    def test_occurs_check(self):
        """A variable cannot be bound to a constraint containing itself."""
        assert solve(FnType((CVar(0),), IS_NUMBER), CVar(0)) is None

    def test_type_param_bound(self):
        """A type parameter only accepts constraints within its bound."""
        bounded = TypeParam("N", IS_NUMBER, 0)
        assert solve(literal(3), bounded) is not None
        assert solve(literal("a"), bounded) is None

    def test_free_vars(self):
        """Generic binders hide their own parameters."""
        assert free_constraint_vars(FnType((CVar(0),), T)) == {"?0", "T#0"}
        assert free_constraint_vars(IDENTITY) == set()


class TestInstantiation:
    """Tests for instantiating generic function types at call sites."""

    def test_identity(self):
        """The result follows the argument."""
        inst = instantiate_generic_call(IDENTITY, [literal(5)])
        assert inst is not None
        assert inst.result == literal(5)

    def test_pair(self):
        """Independent parameters are solved independently."""
        pair = GenericFnType((T, U), (T, U), And((IS_OBJECT, HasField("a", T), HasField("b", U))))
        inst = instantiate_generic_call(pair, [IS_NUMBER, IS_STRING])
        assert inst is not None
        assert inst.result == And((IS_OBJECT, HasField("a", IS_NUMBER), HasField("b", IS_STRING)))

    def test_element_type(self):
        """Type parameters are solved through array element constraints."""
        first = GenericFnType((T,), (array_of(T),), T)
        inst = instantiate_generic_call(first, [array_of(IS_STRING)])
        assert inst is not None
        assert inst.result == IS_STRING

    def test_conflicting_arguments(self):
        """One parameter cannot be both a number and a string."""
        same = GenericFnType((T,), (T, T), T)
        assert instantiate_generic_call(same, [IS_NUMBER, IS_STRING]) is None

    def test_bound_violation(self):
        """Solutions outside a parameter's bound are rejected."""
        n = TypeParam("N", IS_NUMBER, 0)
        double = GenericFnType((n,), (n,), n)
        assert instantiate_generic_call(double, [literal(2)]) is not None
        assert instantiate_generic_call(double, [literal("a")]) is None

    def test_unsolved_falls_back_to_bound(self):
        """A parameter no argument mentions takes its bound."""
        n = TypeParam("N", IS_NUMBER, 0)
        make = GenericFnType((n,), (), n)
        inst = instantiate_generic_call(make, [])
        assert inst is not None
        assert inst.result == IS_NUMBER

    def test_session_counter(self):
        """Fresh variables come from the supplied counter."""
        issued = []

        def fresh():
            var = CVar(100 + len(issued))
            issued.append(var)
            return var

        instantiate_generic_call(IDENTITY, [IS_NUMBER], fresh)
        assert issued == [CVar(100)]

    def test_substitute_type_params(self):
        """Type parameters are replaced by id."""
        assert substitute_type_params(array_of(T), {0: IS_NUMBER}) == array_of(IS_NUMBER)


class TestCallResult:
    """Tests for inferring call results from function constraints."""

    def test_plain_function(self):
        """A plain function type gives its declared result."""
        assert infer_call_result(FnType((IS_NUMBER,), IS_STRING), [IS_NUMBER]) == IS_STRING

    def test_generic_function(self):
        """A generic function type is instantiated."""
        assert infer_call_result(IDENTITY, [literal("x")]) == literal("x")

    def test_unknown_function(self):
        """Nothing is known about the result of an unclassified callee."""
        assert infer_call_result(ANY, [IS_NUMBER]) == ANY

    def test_union_parameter(self):
        """A union parameter is solved through one of its branches."""
        maybe = GenericFnType((T,), (Or((T, IS_STRING)),), T)
        assert infer_call_result(maybe, [IS_NUMBER]) == IS_NUMBER


class TestFunctionSignature:
    """Tests for declared signatures."""

    def test_plain(self):
        """A signature without type parameters is a plain function type."""
        sig = FunctionSignature("add", (), (("a", IS_NUMBER), ("b", IS_NUMBER)), IS_NUMBER)
        assert not sig.is_generic
        assert sig.to_constraint() == FnType((IS_NUMBER, IS_NUMBER), IS_NUMBER)

    def test_generic(self):
        """A signature with type parameters is a generic function type."""
        sig = FunctionSignature("identity", (T,), (("x", T),), T)
        assert sig.is_generic
        assert sig.to_constraint() == IDENTITY
