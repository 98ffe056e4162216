"""Durable record of the cloud resources created for a managed runtime.

The inventory file is the only input to teardown, so every update rewrites
the whole JSON document through a temporary file in the same directory and
swaps it in with ``os.replace``. A failed write leaves the previous snapshot
untouched.
"""
from __future__ import annotations

import json
import os
import tempfile
import threading
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any


class InventoryError(RuntimeError):
    """Raised when the inventory file cannot be read or written."""


@dataclass(frozen=True, slots=True)
class InventoryEntry:
    """One provider resource."""

    kind: str
    id: str
    region: str | None = None
    attributes: Mapping[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Return a JSON-serialisable representation."""
        return {
            "kind": self.kind,
            "id": self.id,
            "region": self.region,
            "attributes": dict(self.attributes),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> InventoryEntry:
        """Build an entry from its JSON representation."""
        attributes = data.get("attributes") or {}
        region = data.get("region")
        return cls(
            kind=str(data["kind"]),
            id=str(data["id"]),
            region=str(region) if region else None,
            attributes=dict(attributes) if isinstance(attributes, Mapping) else {},
        )


class InventoryStore:
    """Ordered, append-only inventory persisted at *path*."""

    def __init__(self, path: Path) -> None:
        """Bind the store to *path*; the file is created on first append."""
        self.path = path
        self._lock = threading.Lock()
        self._entries: list[InventoryEntry] | None = None

    def load(self) -> list[InventoryEntry]:
        """Return the entries currently on disk (empty when missing)."""
        with self._lock:
            self._entries = self._read()
            return list(self._entries)

    def append(self, entry: InventoryEntry) -> None:
        """Add *entry* and persist the full inventory."""
        with self._lock:
            entries = list(self._entries) if self._entries is not None else self._read()
            entries.append(entry)
            self._write(entries)
            self._entries = entries

    def discard(self, kind: str, resource_id: str) -> None:
        """Drop a resource that has been deleted."""
        with self._lock:
            entries = list(self._entries) if self._entries is not None else self._read()
            remaining = [e for e in entries if not (e.kind == kind and e.id == resource_id)]
            if len(remaining) != len(entries):
                self._write(remaining)
            self._entries = remaining

    def find(self, kind: str) -> list[InventoryEntry]:
        """Return the entries of *kind* in creation order."""
        entries = self._entries if self._entries is not None else self.load()
        return [entry for entry in entries if entry.kind == kind]

    def snapshot(self) -> list[dict[str, Any]]:
        """Return the inventory as plain data (for registration payloads)."""
        entries = self._entries if self._entries is not None else self.load()
        return [entry.to_dict() for entry in entries]

    def exists(self) -> bool:
        """Return True when the inventory file is present."""
        return self.path.exists()

    def remove(self) -> None:
        """Delete the inventory file; a missing file is not an error."""
        with self._lock:
            self.path.unlink(missing_ok=True)
            self._entries = []

    # ------------------------------------------------------------------
    def _read(self) -> list[InventoryEntry]:
        if not self.path.exists():
            return []
        try:
            payload = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            raise InventoryError(f"Failed to read inventory {self.path}: {exc}") from exc
        raw_entries = payload.get("resources", []) if isinstance(payload, Mapping) else []
        return [InventoryEntry.from_dict(item) for item in _mappings(raw_entries)]

    def _write(self, entries: list[InventoryEntry]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_fd, tmp_name = tempfile.mkstemp(dir=str(self.path.parent), prefix=f".{self.path.name}.")
        tmp_path = Path(tmp_name)
        try:
            with os.fdopen(tmp_fd, "w", encoding="utf-8") as handle:
                json.dump({"resources": [e.to_dict() for e in entries]}, handle, indent=2)
                handle.write("\n")
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(tmp_path, self.path)
            os.chmod(self.path, 0o600)
        except OSError as exc:
            raise InventoryError(f"Failed to write inventory {self.path}: {exc}") from exc
        finally:
            tmp_path.unlink(missing_ok=True)


def _mappings(items: object) -> Iterable[Mapping[str, Any]]:
    if not isinstance(items, list):
        return []
    return [item for item in items if isinstance(item, Mapping)]


__all__ = ["InventoryEntry", "InventoryError", "InventoryStore"]
