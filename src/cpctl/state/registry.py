"""Local instance registry for cpctl.

The registry directory (``~/.local/state/cpctl/registry`` by default) holds
``control-planes.yml``: the list of control plane records created by this
operator plus the ``current_control_plane`` selector. Every mutation rewrites
the whole document through a temporary file and ``os.replace`` so readers
never observe a partially written file.
"""
from __future__ import annotations

import os
import tempfile
from collections.abc import Callable, Mapping
from copy import deepcopy
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml

from ..errors import StateConflictError
from ..models import ControlPlaneInstance

CONTROL_PLANES_FILE = "control-planes.yml"

Mutator = Callable[[ControlPlaneInstance | None], ControlPlaneInstance]


class StateRegistryError(RuntimeError):
    """Raised when registry files cannot be read or written."""


@dataclass(frozen=True)
class StateRegistry:
    """Atomic YAML document storage rooted at a directory."""

    root: Path

    def __post_init__(self) -> None:
        """Normalise the root path after initialisation."""
        object.__setattr__(self, "root", self.root.expanduser())

    def ensure_root(self) -> None:
        """Create the registry directory if it does not yet exist."""
        self.root.mkdir(parents=True, exist_ok=True)

    def path_for(self, name: str) -> Path:
        """Return the filesystem path for a named registry file."""
        return self.root / name

    def read(self, name: str, *, default: object | None = None) -> object | None:
        """Read a registry file, returning *default* when missing."""
        path = self.path_for(name)
        if not path.exists():
            return deepcopy(default)
        try:
            data = yaml.safe_load(path.read_text(encoding="utf-8"))
        except yaml.YAMLError as exc:
            raise StateRegistryError(f"Failed to parse registry file {path}: {exc}") from exc
        return data if data is not None else deepcopy(default)

    def write(self, name: str, payload: Mapping[str, object]) -> None:
        """Atomically write *payload* to the given registry file."""
        self.ensure_root()
        path = self.path_for(name)

        tmp_fd, tmp_name = tempfile.mkstemp(dir=str(self.root), prefix=f".{path.name}.")
        tmp_path = Path(tmp_name)
        try:
            with os.fdopen(tmp_fd, "w", encoding="utf-8") as handle:
                yaml.safe_dump(dict(payload), handle, sort_keys=False)
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(tmp_path, path)
            os.chmod(path, 0o640)
        finally:
            tmp_path.unlink(missing_ok=True)


class InstanceRegistry:
    """Control plane records persisted in ``control-planes.yml``."""

    def __init__(self, root: Path) -> None:
        """Bind the registry to *root*."""
        self.store = StateRegistry(root)

    @property
    def path(self) -> Path:
        """Return the path of the control planes document."""
        return self.store.path_for(CONTROL_PLANES_FILE)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------
    def list(self) -> list[ControlPlaneInstance]:
        """Return every recorded control plane."""
        return [ControlPlaneInstance.from_dict(entry) for entry in self._load()["control_planes"]]

    def exists(self, name: str) -> bool:
        """Return True when a record named *name* exists."""
        return self.find(name) is not None

    def find(self, name: str) -> ControlPlaneInstance | None:
        """Return the record for *name*, or None."""
        normalized = _normalize_name(name)
        for entry in self._load()["control_planes"]:
            if entry.get("name") == normalized:
                return ControlPlaneInstance.from_dict(entry)
        return None

    def get(self, name: str) -> ControlPlaneInstance:
        """Return the record for *name*, raising when it is unknown."""
        instance = self.find(name)
        if instance is None:
            raise StateConflictError(f"control plane instance '{name}' not found in registry")
        return instance

    def check_is_genesis(self, name: str) -> bool:
        """Return the genesis flag recorded for *name*."""
        return self.get(name).genesis

    def current(self) -> str | None:
        """Return the name of the current control plane, if any."""
        value = self._load().get("current_control_plane")
        return str(value) if value else None

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------
    def upsert(self, name: str, mutator: Mutator) -> ControlPlaneInstance:
        """Apply *mutator* to the record for *name* and persist the result.

        The mutator receives a detached copy of the current record (or None
        when absent) and returns the new record. Nothing is written if it
        raises.
        """
        normalized = _normalize_name(name)
        document = self._load()
        entries: list[dict[str, Any]] = document["control_planes"]
        index = next(
            (i for i, entry in enumerate(entries) if entry.get("name") == normalized),
            None,
        )
        current = ControlPlaneInstance.from_dict(entries[index]) if index is not None else None
        updated = mutator(current)
        if updated.name != normalized:
            raise StateRegistryError(
                f"Mutator renamed control plane '{normalized}' to '{updated.name}'."
            )
        if index is None:
            entries.append(updated.to_dict())
        else:
            entries[index] = updated.to_dict()
        self._save(document)
        return updated

    def remove(self, name: str) -> None:
        """Remove the record for *name*; a missing record is not an error."""
        normalized = _normalize_name(name)
        document = self._load()
        entries = document["control_planes"]
        remaining = [entry for entry in entries if entry.get("name") != normalized]
        if len(remaining) == len(entries):
            return
        document["control_planes"] = remaining
        if document.get("current_control_plane") == normalized:
            document["current_control_plane"] = None
        self._save(document)

    def set_current(self, name: str) -> None:
        """Mark *name* as the current control plane."""
        normalized = _normalize_name(name)
        document = self._load()
        if not any(entry.get("name") == normalized for entry in document["control_planes"]):
            raise StateConflictError(f"control plane instance '{normalized}' not found in registry")
        document["current_control_plane"] = normalized
        self._save(document)

    # Internal helpers -------------------------------------------------
    def _load(self) -> dict[str, Any]:
        raw = self.store.read(
            CONTROL_PLANES_FILE,
            default={"current_control_plane": None, "control_planes": []},
        )
        if not isinstance(raw, Mapping):
            raise StateRegistryError(f"{self.path} must contain a mapping at the top level.")
        entries = raw.get("control_planes") or []
        if not isinstance(entries, list) or not all(isinstance(e, Mapping) for e in entries):
            raise StateRegistryError(f"{self.path}: control_planes must be a list of mappings.")
        return {
            "current_control_plane": raw.get("current_control_plane"),
            "control_planes": [dict(entry) for entry in entries],
        }

    def _save(self, document: Mapping[str, object]) -> None:
        self.store.write(CONTROL_PLANES_FILE, document)


def _normalize_name(name: str) -> str:
    normalized = name.strip()
    if not normalized:
        raise StateRegistryError("Control plane name must be a non-empty string.")
    return normalized


__all__ = ["InstanceRegistry", "StateRegistry", "StateRegistryError"]
