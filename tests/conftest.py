"""Test configuration and shared fixtures."""

from collections.abc import Callable

import pytest

from depstage.config.settings import StageSettings
from depstage.core.ast import Expr
from depstage.eval.machine import StagedEvaluator
from depstage.eval.session import Session
from depstage.eval.svalue import SValue


@pytest.fixture(autouse=True)
def _isolated_env(monkeypatch: pytest.MonkeyPatch, tmp_path) -> None:
    """Keep DEPSTAGE_* variables and a stray .env out of the tests."""
    for name in (
        "DEPSTAGE_RUNTIME_PREFIX",
        "DEPSTAGE_PARAM_PREFIX",
        "DEPSTAGE_MODULE_ROOT",
        "DEPSTAGE_INDENT",
        "DEPSTAGE_LOG_FILTER",
    ):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.chdir(tmp_path)


@pytest.fixture
def settings() -> StageSettings:
    """Default settings."""
    return StageSettings()


@pytest.fixture
def session(settings: StageSettings) -> Session:
    """A fresh compilation session without a module loader."""
    return Session(settings=settings)


@pytest.fixture
def evaluator(session: Session) -> StagedEvaluator:
    """A staged evaluator bound to the session fixture."""
    return StagedEvaluator(session)


@pytest.fixture
def run(evaluator: StagedEvaluator) -> Callable[[Expr], SValue]:
    """Stage an expression in the evaluator's initial environment."""

    def _run(expr: Expr) -> SValue:
        return evaluator.stage(expr, evaluator.initial_env())

    return _run
