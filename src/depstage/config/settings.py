"""Application settings."""

from __future__ import annotations

from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class StageSettings(BaseSettings):
    """Staging and clustering settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="DEPSTAGE_",
        case_sensitive=False,
        extra="ignore",
    )

    runtime_prefix: str = Field(default="rt", min_length=1)
    param_prefix: str = Field(default="_p", min_length=1)
    module_root: str | None = Field(default=None)
    indent: int = Field(default=2, ge=0)
    log_filter: str = Field(default="warning")

    def resolve_module_root(self) -> Path:
        if self.module_root:
            return Path(self.module_root).expanduser().resolve()
        return Path.cwd().resolve()


def load_settings(module_root: Path | None = None) -> StageSettings:
    """Load settings with an optional module root override."""
    if module_root is None:
        return StageSettings()
    return StageSettings(module_root=str(module_root.resolve()))
