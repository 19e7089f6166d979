"""Configuration package."""

from depstage.config.settings import StageSettings, load_settings

__all__ = [
    "StageSettings",
    "load_settings",
]
