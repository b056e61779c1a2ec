"""Helpers for interacting with the nixosctl state registry.

The registry directory (``~/.local/state/nixosctl/registry`` by default)
stores ``resources.yml``: one entry per managed host holding the resource
name, its identity token, the last recorded attributes (including the active
``nixos_system``) and bookkeeping timestamps. Writes are atomic so an
interrupted command never leaves a half-written registry behind, and every
read-modify-write holds an exclusive lock on the registry directory so
concurrent commands for different hosts cannot drop each other's entries.
"""
from __future__ import annotations

import fcntl
import os
import tempfile
from collections.abc import Iterable, Iterator, Mapping
from contextlib import contextmanager
from copy import deepcopy
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

try:  # PyYAML is a runtime dependency declared in pyproject.toml
    import yaml
except Exception as exc:  # pragma: no cover - import failure covered by packaging
    raise RuntimeError(
        "PyYAML is required to manage nixosctl state. Install with `pip install nixosctl`."
    ) from exc

RESOURCES_FILE = "resources.yml"
REGISTRY_LOCK_FILE = ".resources.yml.lock"


class StateRegistryError(RuntimeError):
    """Raised when state registry operations fail."""


@dataclass(frozen=True)
class StateRegistry:
    """High-level interface to the YAML registry."""

    root: Path

    def __post_init__(self) -> None:
        """Normalise the root path after initialisation."""
        object.__setattr__(self, "root", Path(self.root).expanduser())

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
                yaml.safe_dump(payload, handle, sort_keys=False)
            os.replace(tmp_path, path)
            os.chmod(path, 0o640)
        finally:
            tmp_path.unlink(missing_ok=True)

    @contextmanager
    def locked(self) -> Iterator[None]:
        """Hold the registry-wide lock for a read-modify-write cycle."""
        self.ensure_root()
        lock_path = self.path_for(REGISTRY_LOCK_FILE)
        try:
            handle = lock_path.open("a+", encoding="utf-8")
        except OSError as exc:
            raise StateRegistryError(f"Failed to open registry lock {lock_path}: {exc}") from exc
        with handle:
            fcntl.flock(handle.fileno(), fcntl.LOCK_EX)
            try:
                yield
            finally:
                fcntl.flock(handle.fileno(), fcntl.LOCK_UN)

    # Resource helpers -------------------------------------------------
    def list_resources(self) -> list[dict[str, Any]]:
        """Return every recorded resource entry, sorted by name."""
        entries = _load_resource_entries(self.read(RESOURCES_FILE, default={"resources": []}))
        return sorted(entries, key=lambda entry: entry["name"])

    def get_resource(self, name: str) -> dict[str, Any] | None:
        """Return the entry recorded for *name*, or ``None``."""
        normalized = _normalize_name(name)
        for entry in self.list_resources():
            if entry["name"] == normalized:
                return deepcopy(entry)
        return None

    def upsert_resource(
        self,
        name: str,
        *,
        resource_id: str,
        attributes: Mapping[str, object],
    ) -> dict[str, Any]:
        """Insert or replace the entry for *name* and return the stored mapping."""
        normalized = _normalize_name(name)
        if not resource_id:
            raise StateRegistryError(f"Resource '{normalized}' has no identity to record.")
        now = datetime.now(UTC).isoformat(timespec="seconds")
        stored: dict[str, Any] = {
            "name": normalized,
            "id": resource_id,
            "attributes": dict(attributes),
            "created_at": now,
            "updated_at": now,
        }
        with self.locked():
            remaining: list[dict[str, Any]] = []
            for entry in self.list_resources():
                if entry["name"] == normalized:
                    if entry.get("id") != resource_id:
                        raise StateRegistryError(
                            f"Resource '{normalized}' is recorded with identity "
                            f"{entry.get('id')!r}; refusing to replace it with {resource_id!r}."
                        )
                    stored["created_at"] = entry.get("created_at") or now
                    continue
                remaining.append(entry)
            remaining.append(stored)
            self._write_resources(remaining)
        return deepcopy(stored)

    def remove_resource(self, name: str) -> dict[str, Any]:
        """Remove *name* from the registry and return the removed entry."""
        normalized = _normalize_name(name)
        with self.locked():
            entries = self.list_resources()
            removed = [entry for entry in entries if entry["name"] == normalized]
            if not removed:
                raise StateRegistryError(f"Resource '{normalized}' not found in registry")
            self._write_resources(entry for entry in entries if entry["name"] != normalized)
        return removed[0]

    def _write_resources(self, entries: Iterable[Mapping[str, object]]) -> None:
        ordered = sorted((dict(entry) for entry in entries), key=lambda entry: entry["name"])
        self.write(RESOURCES_FILE, {"resources": ordered})


def _normalize_name(name: str) -> str:
    normalized = name.strip()
    if not normalized:
        raise StateRegistryError("Resource name must be a non-empty string.")
    return normalized


def _load_resource_entries(raw: object) -> list[dict[str, Any]]:
    if not isinstance(raw, Mapping):
        raise StateRegistryError("Registry file resources.yml must contain a mapping.")
    raw_entries = raw.get("resources", [])
    if not isinstance(raw_entries, list):
        raise StateRegistryError("Registry key 'resources' must be a list.")
    entries: list[dict[str, Any]] = []
    for item in raw_entries:
        if not isinstance(item, Mapping):
            raise StateRegistryError("Resource entries must be mappings.")
        name = str(item.get("name") or "").strip()
        if not name:
            raise StateRegistryError("Resource entry missing 'name'.")
        attributes = item.get("attributes") or {}
        if not isinstance(attributes, Mapping):
            raise StateRegistryError(f"Resource '{name}' attributes must be a mapping.")
        entries.append(
            {
                "name": name,
                "id": str(item.get("id") or ""),
                "attributes": dict(attributes),
                "created_at": item.get("created_at"),
                "updated_at": item.get("updated_at"),
            }
        )
    return entries


__all__ = ["RESOURCES_FILE", "StateRegistry", "StateRegistryError"]
