"""Module loaders supplying constraints for imported names."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Mapping, Protocol

from loguru import logger

from depstage.core.codec import CodecError, decode_declaration
from depstage.core.constraint import Constraint
from depstage.core.errors import DepstageError
from depstage.core.solve import FunctionSignature


class ModuleNotFound(DepstageError):
    """A module could not be located by the loader."""

    def __init__(self, module: str):
        self.module = module
        super().__init__(f"Module not found: {module}")


class MissingExport(DepstageError):
    """A module does not export a requested name."""

    def __init__(self, module: str, name: str):
        self.module = module
        self.name = name
        super().__init__(f'Module "{module}" has no export named "{name}"')


@dataclass(frozen=True)
class ModuleExports:
    constraints: dict[str, Constraint] = field(default_factory=dict)
    signatures: dict[str, FunctionSignature] = field(default_factory=dict)


class ModuleLoader(Protocol):
    """Supplies the constraints of a module's exports."""

    def load_exports_with_signatures(self, module_path: str, names: list[str]) -> ModuleExports: ...


class StaticModuleLoader:
    """Loader backed by in-memory declarations.

    Each module maps export names to either a constraint or a
    ``FunctionSignature``.
    """

    def __init__(self, modules: Mapping[str, Mapping[str, Constraint | FunctionSignature]]) -> None:
        self._modules = {name: dict(exports) for name, exports in modules.items()}

    def load_exports_with_signatures(self, module_path: str, names: list[str]) -> ModuleExports:
        if module_path not in self._modules:
            raise ModuleNotFound(module_path)
        declarations = self._modules[module_path]
        exports = ModuleExports()
        for name in names:
            if name not in declarations:
                raise MissingExport(module_path, name)
            declared = declarations[name]
            if isinstance(declared, FunctionSignature):
                exports.signatures[name] = declared
                exports.constraints[name] = declared.to_constraint()
            else:
                exports.constraints[name] = declared
        return exports


class JsonModuleLoader:
    """Loader reading ``<root>/<module>.json`` declaration files.

    A declaration file maps export names to type descriptors in the format
    understood by ``depstage.core.codec.decode_type``.
    """

    def __init__(self, root: Path) -> None:
        self.root = root

    def _path_for(self, module_path: str) -> Path:
        relative = module_path.removeprefix("./")
        candidate = self.root / relative
        if candidate.suffix != ".json":
            candidate = candidate.with_name(candidate.name + ".json")
        return candidate

    def load_exports_with_signatures(self, module_path: str, names: list[str]) -> ModuleExports:
        path = self._path_for(module_path)
        if not path.is_file():
            raise ModuleNotFound(module_path)
        logger.debug("import.read path={}", str(path))
        try:
            raw = json.loads(path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as exc:
            raise CodecError(f"{path}: invalid JSON: {exc}") from exc
        if not isinstance(raw, dict):
            raise CodecError(f"{path}: declarations must be an object")
        declarations = {name: decode_declaration(name, descriptor) for name, descriptor in raw.items()}
        return StaticModuleLoader({module_path: declarations}).load_exports_with_signatures(module_path, names)
