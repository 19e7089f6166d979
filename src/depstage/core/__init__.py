"""Core language: expression tree, constraints and constraint solving."""

from depstage.core.ast import Expr, Pattern, expr_to_string, free_vars, uses_var
from depstage.core.constraint import (
    ANY,
    IS_ARRAY,
    IS_BOOL,
    IS_FUNCTION,
    IS_NULL,
    IS_NUMBER,
    IS_OBJECT,
    IS_STRING,
    NEVER,
    Constraint,
    implies,
    narrow,
    simplify,
    unify,
    union,
)
from depstage.core.errors import (
    ArityMismatch,
    AssertionFailure,
    DepstageError,
    StagingError,
    TypeMismatch,
    UnboundVariable,
    UnsupportedConstruct,
)
from depstage.core.solve import FunctionSignature, Substitution, solve

__all__ = [
    # AST
    "Expr",
    "Pattern",
    "expr_to_string",
    "free_vars",
    "uses_var",
    # Constraints
    "ANY",
    "NEVER",
    "IS_ARRAY",
    "IS_BOOL",
    "IS_FUNCTION",
    "IS_NULL",
    "IS_NUMBER",
    "IS_OBJECT",
    "IS_STRING",
    "Constraint",
    "implies",
    "narrow",
    "simplify",
    "unify",
    "union",
    # Solving
    "FunctionSignature",
    "Substitution",
    "solve",
    # Errors
    "ArityMismatch",
    "AssertionFailure",
    "DepstageError",
    "StagingError",
    "TypeMismatch",
    "UnboundVariable",
    "UnsupportedConstruct",
]
