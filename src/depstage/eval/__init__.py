"""Staged evaluation over constraint-typed values."""

from depstage.eval.backend import Backend, BackendContext, JsonBackend, ResidualBackend
from depstage.eval.builtins import Builtin, BuiltinRegistry, PureBuiltin, StagedBuiltin
from depstage.eval.loader import JsonModuleLoader, ModuleExports, ModuleLoader, StaticModuleLoader
from depstage.eval.machine import StagedEvaluator, stage
from depstage.eval.session import Session
from depstage.eval.svalue import Later, Now, SValue

__all__ = [
    "Backend",
    "BackendContext",
    "JsonBackend",
    "ResidualBackend",
    "Builtin",
    "BuiltinRegistry",
    "PureBuiltin",
    "StagedBuiltin",
    "JsonModuleLoader",
    "ModuleExports",
    "ModuleLoader",
    "StaticModuleLoader",
    "StagedEvaluator",
    "stage",
    "Session",
    "Later",
    "Now",
    "SValue",
]
