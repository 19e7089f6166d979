"""Staged evaluator for a constraint-typed expression language."""
