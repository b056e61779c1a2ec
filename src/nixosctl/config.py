"""Configuration loader for nixosctl.

Settings for the tool itself (where state and logs live, how long to wait for
locks, how to pace reachability probes and which Nix executables to call) are
merged from several sources, lowest precedence first:

1. Built-in defaults.
2. ``/etc/nixosctl/config.yml`` (or the path in ``NIXOSCTL_CONFIG_FILE``).
3. Environment variables prefixed with ``NIXOSCTL_``.
4. Explicit overrides supplied programmatically (CLI flags).

Environment keys use double underscores to express nesting, e.g.::

    export NIXOSCTL_PROBE__MAX_DELAY=5
    export NIXOSCTL_NIX__SSH_BIN=/run/current-system/sw/bin/ssh

Values are coerced via PyYAML's ``safe_load`` so that booleans and numbers are
parsed naturally. Resource attributes (target hosts, configuration paths) are
not part of this file; they come from the resource manifest and are resolved
by :mod:`nixosctl.resource.settings`.
"""
from __future__ import annotations

import os
from collections.abc import Mapping, MutableMapping
from dataclasses import dataclass
from pathlib import Path
from typing import cast

try:  # PyYAML is a runtime dependency (declared in pyproject.toml).
    import yaml
except Exception as exc:  # pragma: no cover - import failure covered by packaging
    raise RuntimeError(
        "PyYAML is required to load nixosctl configuration. Install with "
        "`pip install nixosctl` or ensure PyYAML>=6.0 is available."
    ) from exc


ENV_PREFIX = "NIXOSCTL_"
CONFIG_ENV_VAR = f"{ENV_PREFIX}CONFIG_FILE"
RESERVED_ENV_KEYS = {CONFIG_ENV_VAR}


class ConfigError(RuntimeError):
    """Raised when configuration or resource attributes cannot be resolved."""


@dataclass(frozen=True)
class ProbeConfig:
    """Pacing for reachability probes."""

    initial_delay: float = 1.0
    max_delay: float = 10.0
    connect_timeout: int = 10

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "initial_delay": self.initial_delay,
            "max_delay": self.max_delay,
            "connect_timeout": self.connect_timeout,
        }


@dataclass(frozen=True)
class NixConfig:
    """Executables and paths used by the Nix toolchain provider."""

    ssh_bin: str = "ssh"
    nix_build_bin: str = "nix-build"
    nix_instantiate_bin: str = "nix-instantiate"
    nix_copy_closure_bin: str = "nix-copy-closure"
    shell_bin: str = "sh"
    system_profile: str = "/nix/var/nix/profiles/system"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "ssh_bin": self.ssh_bin,
            "nix_build_bin": self.nix_build_bin,
            "nix_instantiate_bin": self.nix_instantiate_bin,
            "nix_copy_closure_bin": self.nix_copy_closure_bin,
            "shell_bin": self.shell_bin,
            "system_profile": self.system_profile,
        }


@dataclass(frozen=True)
class AppConfig:
    """Resolved configuration values for nixosctl."""

    config_file: Path
    state_dir: Path
    registry_dir: Path
    logs_dir: Path
    runtime_dir: Path
    manifest_file: Path
    lock_timeout: float
    probe: ProbeConfig
    nix: NixConfig

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation of the config."""
        return {
            "config_file": str(self.config_file),
            "state_dir": str(self.state_dir),
            "registry_dir": str(self.registry_dir),
            "logs_dir": str(self.logs_dir),
            "runtime_dir": str(self.runtime_dir),
            "manifest_file": str(self.manifest_file),
            "lock_timeout": self.lock_timeout,
            "probe": self.probe.to_dict(),
            "nix": self.nix.to_dict(),
        }


DEFAULTS: dict[str, object] = {
    "config_file": "/etc/nixosctl/config.yml",
    "state_dir": "~/.local/state/nixosctl",
    "registry_dir": None,  # derived from state_dir when absent
    "logs_dir": None,  # derived from state_dir when absent
    "runtime_dir": None,  # derived from state_dir when absent
    "manifest_file": "nixos.yml",
    "lock_timeout": 30.0,
    "probe": {
        "initial_delay": 1.0,
        "max_delay": 10.0,
        "connect_timeout": 10,
    },
    "nix": {
        "ssh_bin": "ssh",
        "nix_build_bin": "nix-build",
        "nix_instantiate_bin": "nix-instantiate",
        "nix_copy_closure_bin": "nix-copy-closure",
        "shell_bin": "sh",
        "system_profile": "/nix/var/nix/profiles/system",
    },
}

ALLOWED_TOP_LEVEL_KEYS = set(DEFAULTS.keys())
ALLOWED_PROBE_KEYS = {"initial_delay", "max_delay", "connect_timeout"}
ALLOWED_NIX_KEYS = set(NixConfig().to_dict().keys())


def load_config(
    config_file: str | os.PathLike[str] | None = None,
    *,
    env: Mapping[str, str] | None = None,
    overrides: Mapping[str, object] | None = None,
) -> AppConfig:
    """Load and merge configuration sources into an :class:`AppConfig`."""
    merged: dict[str, object] = _deep_copy(DEFAULTS)
    resolved_env = dict(os.environ if env is None else env)

    config_default = _expect_str(merged["config_file"], "config_file")
    config_path = _determine_config_path(config_default, config_file, resolved_env)

    file_values = _load_yaml_file(config_path)
    if file_values:
        _deep_merge(merged, file_values)

    env_values = _build_env_overrides(resolved_env)
    if env_values:
        _deep_merge(merged, env_values)

    if overrides:
        _deep_merge(merged, dict(overrides))

    merged["config_file"] = str(config_path)

    _validate_structure(merged)

    return _build_app_config(merged)


def _determine_config_path(
    default_path: str,
    cli_override: str | os.PathLike[str] | None,
    env: Mapping[str, str],
) -> Path:
    if cli_override:
        return Path(cli_override)
    if CONFIG_ENV_VAR in env:
        return Path(env[CONFIG_ENV_VAR])
    return Path(default_path)


def _load_yaml_file(path: Path) -> dict[str, object]:
    if not path.exists():
        return {}
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:
        raise ConfigError(f"Failed to parse config file {path}: {exc}") from exc
    if not isinstance(data, Mapping):
        raise ConfigError(f"Config file {path} must contain a mapping at the top level.")
    return _as_dict(data, f"file:{path}")


def _validate_structure(raw: Mapping[str, object]) -> None:
    unknown_keys = set(raw.keys()) - ALLOWED_TOP_LEVEL_KEYS
    if unknown_keys:
        joined = ", ".join(sorted(unknown_keys))
        raise ConfigError(f"Unknown configuration keys: {joined}.")

    probe = raw.get("probe")
    if probe is not None:
        unknown = set(_as_dict(probe, "probe").keys()) - ALLOWED_PROBE_KEYS
        if unknown:
            joined = ", ".join(sorted(unknown))
            raise ConfigError(f"Unknown probe configuration keys: {joined}.")

    nix = raw.get("nix")
    if nix is not None:
        unknown = set(_as_dict(nix, "nix").keys()) - ALLOWED_NIX_KEYS
        if unknown:
            joined = ", ".join(sorted(unknown))
            raise ConfigError(f"Unknown nix configuration keys: {joined}.")


def _build_app_config(raw: Mapping[str, object]) -> AppConfig:
    state_dir = _to_path(raw.get("state_dir"))

    def _derived(key: str, child: str) -> Path:
        value = raw.get(key)
        return _to_path(value) if value else state_dir / child

    probe_mapping = _as_dict(raw.get("probe"), "probe")
    defaults = ProbeConfig()
    initial_delay = _expect_positive_float(
        probe_mapping.get("initial_delay"),
        "probe.initial_delay",
        default=defaults.initial_delay,
    )
    max_delay = _expect_positive_float(
        probe_mapping.get("max_delay"),
        "probe.max_delay",
        default=defaults.max_delay,
    )
    if max_delay < initial_delay:
        raise ConfigError(
            f"probe.max_delay ({max_delay}) must be >= probe.initial_delay ({initial_delay})."
        )
    connect_timeout = _expect_int(
        probe_mapping.get("connect_timeout"),
        "probe.connect_timeout",
        default=defaults.connect_timeout,
    )
    if connect_timeout <= 0:
        raise ConfigError("probe.connect_timeout must be greater than zero.")

    nix_mapping = _as_dict(raw.get("nix"), "nix")
    nix_defaults = NixConfig().to_dict()
    nix_values: dict[str, str] = {}
    for key, default in nix_defaults.items():
        value = str(nix_mapping.get(key, default) or "").strip()
        if not value:
            raise ConfigError(f"nix.{key} must be a non-empty string.")
        nix_values[key] = value

    return AppConfig(
        config_file=_to_path(raw.get("config_file")),
        state_dir=state_dir,
        registry_dir=_derived("registry_dir", "registry"),
        logs_dir=_derived("logs_dir", "logs"),
        runtime_dir=_derived("runtime_dir", "run"),
        manifest_file=_to_path(raw.get("manifest_file")),
        lock_timeout=_expect_positive_float(
            raw.get("lock_timeout"), "lock_timeout", default=30.0
        ),
        probe=ProbeConfig(
            initial_delay=initial_delay,
            max_delay=max_delay,
            connect_timeout=connect_timeout,
        ),
        nix=NixConfig(**nix_values),
    )


def _build_env_overrides(env: Mapping[str, str]) -> dict[str, object]:
    overrides: dict[str, object] = {}
    for key, value in env.items():
        if key in RESERVED_ENV_KEYS or not key.startswith(ENV_PREFIX):
            continue
        suffix = key[len(ENV_PREFIX) :]
        path_segments = [segment.lower() for segment in suffix.split("__") if segment]
        if path_segments:
            _assign_nested(overrides, path_segments, _coerce_value(value))
    return overrides


def _assign_nested(tree: MutableMapping[str, object], path: list[str], value: object) -> None:
    current: MutableMapping[str, object] = tree
    for segment in path[:-1]:
        existing = current.get(segment)
        if existing is None:
            child: MutableMapping[str, object] = {}
            current[segment] = child
            current = child
        elif isinstance(existing, MutableMapping):
            current = cast(MutableMapping[str, object], existing)
        else:
            raise ConfigError(
                "Environment overrides conflict with existing scalar value at "
                f"{'.'.join(path)}"
            )
    current[path[-1]] = value


def _deep_merge(target: MutableMapping[str, object], overrides: Mapping[str, object]) -> None:
    for key, value in overrides.items():
        existing = target.get(key)
        if isinstance(existing, MutableMapping) and isinstance(value, Mapping):
            _deep_merge(existing, _as_dict(value, f"merge.{key}"))
        else:
            target[key] = value


def _deep_copy(source: Mapping[str, object]) -> dict[str, object]:
    return {
        key: _deep_copy(_as_dict(value, f"copy.{key}")) if isinstance(value, Mapping) else value
        for key, value in source.items()
    }


def _coerce_value(raw: str) -> object:
    raw = raw.strip()
    try:
        return yaml.safe_load(raw)
    except yaml.YAMLError:
        return raw


def _to_path(value: object) -> Path:
    if isinstance(value, Path):
        return value.expanduser()
    if isinstance(value, str) and value.strip():
        return Path(value).expanduser()
    raise ConfigError(f"Cannot convert value {value!r} to Path.")


def _expect_int(value: object | None, label: str, *, default: int) -> int:
    if value is None:
        return default
    if isinstance(value, bool):
        raise ConfigError(f"Expected {label} to be an integer. Got boolean {value!r}.")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value, 0)
        except ValueError as exc:
            raise ConfigError(f"Invalid integer for {label}: {value!r}.") from exc
    raise ConfigError(f"Expected {label} to be an integer. Got {type(value).__name__}.")


def _expect_str(value: object, key: str) -> str:
    if isinstance(value, str):
        return value
    raise ConfigError(f"Expected {key} to resolve to a string. Got {value!r}.")


def _expect_positive_float(value: object | None, label: str, *, default: float) -> float:
    if value is None:
        return float(default)
    if isinstance(value, bool):
        raise ConfigError(f"Expected {label} to be a number. Got boolean {value!r}.")
    if isinstance(value, (int, float)):
        numeric = float(value)
    elif isinstance(value, str):
        try:
            numeric = float(value)
        except ValueError as exc:
            raise ConfigError(f"Invalid number for {label}: {value!r}.") from exc
    else:
        raise ConfigError(f"Expected {label} to be numeric. Got {type(value).__name__}.")
    if numeric <= 0:
        raise ConfigError(f"{label} must be greater than zero. Got {numeric}.")
    return numeric


def _as_dict(value: object | None, label: str) -> dict[str, object]:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ConfigError(f"Expected {label} to be a mapping. Got {type(value).__name__}.")
    result: dict[str, object] = {}
    for key, item in value.items():
        if not isinstance(key, str):
            raise ConfigError(f"Mapping {label} must use string keys. Got {key!r}.")
        result[key] = item
    return result


__all__ = [
    "AppConfig",
    "ConfigError",
    "NixConfig",
    "ProbeConfig",
    "load_config",
]
