"""Attribute schema for the ``nixos`` resource.

The schema is the contract between a resource manifest, the persisted
registry record and the convergence engine: which attributes exist, their
kinds and defaults, which are sensitive and which one is computed.
"""
from __future__ import annotations

import re
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Literal

import yaml

from ..config import ConfigError

FieldKind = Literal["string", "integer", "boolean"]

DEFAULT_SSH_OPTS = "-o StrictHostKeyChecking=accept-new -o BatchMode=yes"
DEFAULT_SSH_TIMEOUT = 180
UNKNOWN_SYSTEM = "unknown"
NIX_PATH_ENV = "NIX_PATH"
SSH_OPTS_ENV = "NIX_SSHOPTS"
SENSITIVE_MASK = "(sensitive)"

RESOURCE_NAME_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")


@dataclass(frozen=True, slots=True)
class FieldSpec:
    """Declaration of a single resource attribute."""

    name: str
    kind: FieldKind
    default: object | None = None
    required: bool = False
    sensitive: bool = False
    computed: bool = False

    def zero(self) -> object:
        """Return the value used when neither a value nor a default exists."""
        if self.kind == "integer":
            return 0
        if self.kind == "boolean":
            return False
        return ""


SCHEMA: tuple[FieldSpec, ...] = (
    FieldSpec("target_host", "string", required=True),
    FieldSpec("target_user", "string", default="root"),
    FieldSpec("build_host", "string", default="localhost"),
    FieldSpec("nixos_config", "string", required=True),
    FieldSpec("ssh_opts", "string", default=DEFAULT_SSH_OPTS),
    FieldSpec("nix_path", "string"),
    FieldSpec("ssh_timeout", "integer", default=DEFAULT_SSH_TIMEOUT),
    FieldSpec("collect_garbage", "boolean", default=True),
    FieldSpec("nixos_system", "string", computed=True),
    FieldSpec("pre_switch_hook", "string", default="", sensitive=True),
    FieldSpec("post_switch_hook", "string", default="", sensitive=True),
)

FIELDS: dict[str, FieldSpec] = {spec.name: spec for spec in SCHEMA}
COMPUTED_FIELD = "nixos_system"
CONFIG_FIELDS: tuple[str, ...] = tuple(spec.name for spec in SCHEMA if not spec.computed)
SENSITIVE_FIELDS = frozenset(spec.name for spec in SCHEMA if spec.sensitive)
# A change to any of these triggers activation during apply.
TRACKED_FIELDS: tuple[str, ...] = (
    "nixos_system",
    "target_host",
    "pre_switch_hook",
    "post_switch_hook",
)


def field_spec(name: str) -> FieldSpec:
    """Return the field definition for *name* or raise :class:`KeyError`."""
    try:
        return FIELDS[name]
    except KeyError:
        raise KeyError(f"Unknown resource attribute '{name}'") from None


def default_for(name: str) -> object:
    """Return the value an unset attribute takes."""
    spec = field_spec(name)
    return spec.default if spec.default is not None else spec.zero()


def normalise_attributes(
    raw: Mapping[str, object],
    label: str,
    *,
    allow_computed: bool = False,
) -> dict[str, object]:
    """Validate *raw* against the schema and coerce scalar values.

    Keys that are absent stay absent: explicit-set status matters to the
    resolver, so defaults are only applied on read.
    """
    if not isinstance(raw, Mapping):
        raise ConfigError(f"Resource '{label}' must be a mapping of attributes.")
    unknown = sorted(str(key) for key in raw if key not in FIELDS)
    if unknown:
        raise ConfigError(
            f"Unknown attributes for resource '{label}': {', '.join(unknown)}."
        )
    normalised: dict[str, object] = {}
    for key, value in raw.items():
        spec = FIELDS[str(key)]
        if spec.computed and not allow_computed:
            raise ConfigError(
                f"Attribute '{spec.name}' of resource '{label}' is computed and cannot be set."
            )
        if value is None:
            continue
        normalised[spec.name] = _coerce(spec, value, label)
    return normalised


def _coerce(spec: FieldSpec, value: object, label: str) -> object:
    where = f"{label}.{spec.name}"
    if spec.kind == "string":
        if isinstance(value, bool) or not isinstance(value, (str, int, float)):
            raise ConfigError(f"Expected {where} to be a string. Got {type(value).__name__}.")
        return str(value)
    if spec.kind == "integer":
        if isinstance(value, bool):
            raise ConfigError(f"Expected {where} to be an integer. Got boolean {value!r}.")
        if isinstance(value, int):
            return value
        if isinstance(value, str):
            try:
                return int(value.strip(), 10)
            except ValueError as exc:
                raise ConfigError(f"Invalid integer for {where}: {value!r}.") from exc
        raise ConfigError(f"Expected {where} to be an integer. Got {type(value).__name__}.")
    if isinstance(value, bool):
        return value
    if isinstance(value, str) and value.strip().lower() in {"true", "false"}:
        return value.strip().lower() == "true"
    raise ConfigError(f"Expected {where} to be a boolean. Got {value!r}.")


def mask_attributes(attributes: Mapping[str, object]) -> dict[str, object]:
    """Return a copy of *attributes* with non-empty sensitive values masked."""
    return {
        key: SENSITIVE_MASK if key in SENSITIVE_FIELDS and value else value
        for key, value in attributes.items()
    }


def load_manifest(path: Path) -> dict[str, dict[str, object]]:
    """Load and validate the resource manifest at *path*.

    The manifest is a YAML mapping::

        resources:
          web-1:
            target_host: 10.0.0.5
            nixos_config: ./hosts/web-1.nix
    """
    if not path.exists():
        raise ConfigError(f"Resource manifest {path} does not exist.")
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:
        raise ConfigError(f"Failed to parse resource manifest {path}: {exc}") from exc
    if not isinstance(data, Mapping):
        raise ConfigError(f"Resource manifest {path} must contain a mapping at the top level.")
    unknown = sorted(str(key) for key in data if key != "resources")
    if unknown:
        raise ConfigError(f"Unknown manifest keys in {path}: {', '.join(unknown)}.")
    resources = data.get("resources") or {}
    if not isinstance(resources, Mapping):
        raise ConfigError(f"'resources' in {path} must be a mapping of name to attributes.")

    manifest: dict[str, dict[str, object]] = {}
    for name, attributes in resources.items():
        if not isinstance(name, str) or not RESOURCE_NAME_PATTERN.match(name):
            raise ConfigError(
                f"Invalid resource name {name!r} in {path}. Use letters, digits, '.', '_' or '-'."
            )
        manifest[name] = normalise_attributes(attributes or {}, name)
    return manifest


__all__ = [
    "COMPUTED_FIELD",
    "CONFIG_FIELDS",
    "DEFAULT_SSH_OPTS",
    "DEFAULT_SSH_TIMEOUT",
    "FIELDS",
    "FieldSpec",
    "NIX_PATH_ENV",
    "SCHEMA",
    "SENSITIVE_FIELDS",
    "SENSITIVE_MASK",
    "SSH_OPTS_ENV",
    "TRACKED_FIELDS",
    "UNKNOWN_SYSTEM",
    "default_for",
    "field_spec",
    "load_manifest",
    "mask_attributes",
    "normalise_attributes",
]
