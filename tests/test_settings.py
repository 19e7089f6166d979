"""Tests for settings and logging configuration."""

from pathlib import Path

import pytest
from loguru import logger
from pydantic import ValidationError

from depstage.config.settings import StageSettings, load_settings
from depstage.logging_utils import configure_logging, parse_log_filter


def test_defaults():
    settings = StageSettings()
    assert settings.runtime_prefix == "rt"
    assert settings.param_prefix == "_p"
    assert settings.indent == 2
    assert settings.log_filter == "warning"
    assert settings.resolve_module_root() == Path.cwd().resolve()


def test_environment_override(monkeypatch):
    """DEPSTAGE_* variables override the defaults."""
    monkeypatch.setenv("DEPSTAGE_RUNTIME_PREFIX", "input")
    monkeypatch.setenv("DEPSTAGE_INDENT", "4")
    monkeypatch.setenv("DEPSTAGE_LOG_FILTER", "debug")
    settings = StageSettings()
    assert settings.runtime_prefix == "input"
    assert settings.indent == 4
    assert settings.log_filter == "debug"


def test_env_file(tmp_path):
    """Settings are read from a .env file in the working directory."""
    (tmp_path / ".env").write_text("DEPSTAGE_PARAM_PREFIX=arg\n", encoding="utf-8")
    assert StageSettings().param_prefix == "arg"


def test_invalid_prefix():
    with pytest.raises(ValidationError):
        StageSettings(runtime_prefix="")


def test_module_root_override(tmp_path):
    """An explicit module root wins over the working directory."""
    settings = load_settings(tmp_path / "modules")
    assert settings.resolve_module_root() == (tmp_path / "modules").resolve()


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        ("info", ("info", {})),
        ("debug,depstage.eval=debug", ("debug", {"depstage.eval": "DEBUG"})),
        ("info,depstage.cluster=false", ("info", {"depstage.cluster": False})),
        ("depstage.eval=info", ("warning", {"depstage.eval": "INFO"})),
    ],
)
def test_parse_log_filter(raw, expected):
    """Log filters name a global level and per-module overrides."""
    assert parse_log_filter(raw) == expected


class TestConfigureLogging:
    """Tests for the loguru sink used by the CLI."""

    @pytest.fixture(autouse=True)
    def _restore_logger(self):
        yield
        logger.remove()

    def test_records_go_to_stderr(self, capsys):
        """Log output never mixes with results on stdout."""
        configure_logging("warning", verbose=True)
        logger.debug("stage.test event")
        captured = capsys.readouterr()
        assert "stage.test event" in captured.err
        assert "stage.test event" not in captured.out

    def test_global_level(self, capsys):
        """Records below the global level are dropped."""
        configure_logging("warning")
        logger.info("stage.test quiet")
        assert "stage.test quiet" not in capsys.readouterr().err

    def test_module_disabled(self, capsys):
        """A module set to false logs nothing, even when verbose."""
        configure_logging(f"debug,{__name__}=false", verbose=True)
        logger.warning("stage.test hidden")
        assert "stage.test hidden" not in capsys.readouterr().err
