"""Resolve resource attributes into a :class:`DeploymentConfig`.

Resolution is a pure function of a :class:`FieldSource`, the environment and
the working directory. An explicit value always wins. ``nix_path`` and
``ssh_opts`` fall back to ``NIX_PATH`` and ``NIX_SSHOPTS`` when unset; every
other attribute falls back to its schema default. ``nixos_config`` is always
made absolute before it is used.
"""
from __future__ import annotations

import os
import shlex
from collections.abc import Mapping
from dataclasses import dataclass, field

from ..config import ConfigError
from .schema import (
    DEFAULT_SSH_OPTS,
    NIX_PATH_ENV,
    SENSITIVE_MASK,
    SSH_OPTS_ENV,
)
from .views import FieldSource


@dataclass(frozen=True, slots=True)
class RebuildView:
    """The subset of a deployment the build and activation toolchain needs."""

    target_host: str
    target_user: str
    build_host: str
    nixos_config: str
    nix_path: str
    ssh_opts: str
    pre_switch_hook: str = field(default="", repr=False)
    post_switch_hook: str = field(default="", repr=False)

    @property
    def target(self) -> str:
        """Return the ``user@host`` ssh destination."""
        return f"{self.target_user}@{self.target_host}" if self.target_user else self.target_host


@dataclass(frozen=True, slots=True)
class DeploymentConfig:
    """Fully resolved attributes for one invocation; never persisted."""

    target_host: str
    target_user: str
    build_host: str
    nixos_config: str
    ssh_opts: str
    nix_path: str
    ssh_timeout: float
    collect_garbage: bool
    pre_switch_hook: str = field(default="", repr=False)
    post_switch_hook: str = field(default="", repr=False)

    def rebuild_view(self) -> RebuildView:
        """Project the fields the toolchain needs; orchestration knobs stay here."""
        return RebuildView(
            target_host=self.target_host,
            target_user=self.target_user,
            build_host=self.build_host,
            nixos_config=self.nixos_config,
            nix_path=self.nix_path,
            ssh_opts=self.ssh_opts,
            pre_switch_hook=self.pre_switch_hook,
            post_switch_hook=self.post_switch_hook,
        )

    def to_dict(self) -> dict[str, object]:
        """Return a log-safe representation; hooks are masked."""
        return {
            "target_host": self.target_host,
            "target_user": self.target_user,
            "build_host": self.build_host,
            "nixos_config": self.nixos_config,
            "ssh_opts": self.ssh_opts,
            "nix_path": self.nix_path,
            "ssh_timeout": self.ssh_timeout,
            "collect_garbage": self.collect_garbage,
            "pre_switch_hook": SENSITIVE_MASK if self.pre_switch_hook else "",
            "post_switch_hook": SENSITIVE_MASK if self.post_switch_hook else "",
        }


def resolve_config(
    source: FieldSource,
    *,
    env: Mapping[str, str] | None = None,
    cwd: str | os.PathLike[str] | None = None,
) -> DeploymentConfig:
    """Resolve *source* into a :class:`DeploymentConfig`.

    Raises:
        ConfigError: A required attribute is empty, the timeout is negative
            or the configuration path cannot be made absolute.
    """
    environ = os.environ if env is None else env

    target_host = str(source.get("target_host")).strip()
    if not target_host:
        raise ConfigError("target_host is required and must not be empty.")

    raw_config = str(source.get("nixos_config")).strip()
    if not raw_config:
        raise ConfigError("nixos_config is required and must not be empty.")

    if source.has_value("nix_path"):
        nix_path = str(source.get("nix_path"))
    else:
        nix_path = environ.get(NIX_PATH_ENV, "")

    if source.has_value("ssh_opts"):
        ssh_opts = str(source.get("ssh_opts"))
    else:
        ssh_opts = environ.get(SSH_OPTS_ENV) or DEFAULT_SSH_OPTS
    try:
        shlex.split(ssh_opts)
    except ValueError as exc:
        raise ConfigError(f"ssh_opts cannot be parsed as shell words: {exc}") from exc

    timeout = source.get("ssh_timeout")
    if isinstance(timeout, bool) or not isinstance(timeout, int):
        raise ConfigError(f"ssh_timeout must be an integer number of seconds. Got {timeout!r}.")
    if timeout < 0:
        raise ConfigError(f"ssh_timeout must be zero or greater. Got {timeout}.")

    return DeploymentConfig(
        target_host=target_host,
        target_user=str(source.get("target_user")),
        build_host=str(source.get("build_host")),
        nixos_config=absolute_config_path(raw_config, cwd=cwd),
        ssh_opts=ssh_opts,
        nix_path=nix_path,
        ssh_timeout=float(timeout),
        collect_garbage=bool(source.get("collect_garbage")),
        pre_switch_hook=str(source.get("pre_switch_hook")),
        post_switch_hook=str(source.get("post_switch_hook")),
    )


def absolute_config_path(
    value: str,
    *,
    cwd: str | os.PathLike[str] | None = None,
) -> str:
    """Return *value* as a normalised absolute path.

    Applying the function to its own output returns the same string.
    """
    try:
        expanded = os.path.expanduser(value)
        if cwd is not None and not os.path.isabs(expanded):
            expanded = os.path.join(os.fspath(cwd), expanded)
        resolved = os.path.abspath(expanded)
    except (OSError, ValueError) as exc:
        raise ConfigError(f"Unable to resolve nixos_config path {value!r}: {exc}") from exc
    if "\x00" in resolved:
        raise ConfigError(f"Unable to resolve nixos_config path {value!r}: embedded NUL byte.")
    return resolved


__all__ = ["DeploymentConfig", "RebuildView", "absolute_config_path", "resolve_config"]
