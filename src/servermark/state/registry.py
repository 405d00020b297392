"""Atomic read/write helpers for the servermark state directory.

The state directory (``~/.config/servermark`` by default) holds the site
registry (``sites.json``) and the backend selection (``webserver.json``).
Documents are serialised by file suffix: ``.json`` through :mod:`json`,
``.yml``/``.yaml`` through PyYAML. Writes go to a temporary file in the same
directory followed by :func:`os.replace`, so readers never observe a
half-written document.
"""
from __future__ import annotations

import json
import os
import tempfile
from collections.abc import Mapping
from copy import deepcopy
from dataclasses import dataclass
from pathlib import Path

import yaml

from ..errors import PersistenceError

_YAML_SUFFIXES = {".yml", ".yaml"}


class StateRegistryError(PersistenceError):
    """Raised when state registry operations fail."""


@dataclass(frozen=True)
class StateRegistry:
    """Read and write documents below a state directory."""

    root: Path

    def __post_init__(self) -> None:
        """Normalise the root path after initialisation."""
        object.__setattr__(self, "root", Path(self.root).expanduser())

    def ensure_root(self) -> None:
        """Create the state directory if it does not yet exist."""
        try:
            self.root.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise StateRegistryError(f"Cannot create state directory {self.root}: {exc}") from exc

    def path_for(self, name: str) -> Path:
        """Return the filesystem path for a named document."""
        return self.root / name

    def read(self, name: str, *, default: object | None = None) -> object | None:
        """Read a document, returning *default* when the file is missing."""
        path = self.path_for(name)
        if not path.exists():
            return deepcopy(default)
        try:
            text = path.read_text(encoding="utf-8")
        except OSError as exc:
            raise StateRegistryError(f"Failed to read {path}: {exc}") from exc
        if not text.strip():
            return deepcopy(default)
        try:
            if path.suffix in _YAML_SUFFIXES:
                data = yaml.safe_load(text)
            else:
                data = json.loads(text)
        except (yaml.YAMLError, json.JSONDecodeError) as exc:
            raise StateRegistryError(f"Failed to parse registry file {path}: {exc}") from exc
        return data if data is not None else deepcopy(default)

    def read_mapping(self, name: str) -> Mapping[str, object] | None:
        """Read a document that must contain a mapping; ``None`` when missing."""
        data = self.read(name)
        if data is None:
            return None
        if not isinstance(data, Mapping):
            raise StateRegistryError(
                f"Registry file {self.path_for(name)} must contain a mapping at the top level."
            )
        return data

    def write(self, name: str, payload: Mapping[str, object]) -> None:
        """Atomically write *payload* to the named document."""
        self.ensure_root()
        path = self.path_for(name)

        try:
            tmp_fd, tmp_name = tempfile.mkstemp(dir=str(self.root), prefix=f".{path.name}.")
        except OSError as exc:
            raise StateRegistryError(f"Failed to write {path}: {exc}") from exc
        tmp_path = Path(tmp_name)
        try:
            with os.fdopen(tmp_fd, "w", encoding="utf-8") as handle:
                if path.suffix in _YAML_SUFFIXES:
                    yaml.safe_dump(dict(payload), handle, sort_keys=False)
                else:
                    json.dump(payload, handle, indent=2)
                    handle.write("\n")
            os.replace(tmp_path, path)
            os.chmod(path, 0o644)
        except OSError as exc:
            raise StateRegistryError(f"Failed to write {path}: {exc}") from exc
        finally:
            tmp_path.unlink(missing_ok=True)


__all__ = ["StateRegistry", "StateRegistryError"]
