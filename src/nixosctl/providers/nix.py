"""Nix toolchain provider driving ``nix-build``, ``nix-copy-closure`` and ssh."""
from __future__ import annotations

import logging
import os
import shlex
import subprocess
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field

from ..config import NixConfig, ProbeConfig
from ..reachability import ProbeReport, ReachabilityProbe
from ..resource.schema import NIX_PATH_ENV, SSH_OPTS_ENV
from ..resource.settings import RebuildView
from .base import (
    ActivationError,
    BuildError,
    CleanupError,
    QueryError,
    Toolchain,
    ToolchainError,
)

log = logging.getLogger(__name__)

LOCAL_BUILD_HOSTS = frozenset({"", "localhost", "127.0.0.1", "::1"})
NIXOS_EXPRESSION = "<nixpkgs/nixos>"
CURRENT_SYSTEM_LINK = "/run/current-system"


def _destination(user: str, host: str) -> str:
    return f"{user}@{host}" if user else host


def _last_line(output: str | None) -> str:
    lines = [line.strip() for line in (output or "").splitlines() if line.strip()]
    return lines[-1] if lines else ""


@dataclass(slots=True)
class NixToolchain(Toolchain):
    """Build NixOS systems and activate them on remote hosts over ssh."""

    nix: NixConfig = field(default_factory=NixConfig)
    probe_config: ProbeConfig = field(default_factory=ProbeConfig)
    reachability: ReachabilityProbe | None = None
    base_env: Mapping[str, str] | None = None

    # ------------------------------------------------------------------
    # Toolchain interface
    # ------------------------------------------------------------------
    def probe(self, user: str, host: str, ssh_opts: str, timeout: float) -> ProbeReport:
        """Wait until ``ssh user@host true`` succeeds or *timeout* elapses."""
        destination = _destination(user, host)
        connect_cap = self.probe_config.connect_timeout

        def _attempt(budget: float) -> bool:
            connect = max(1, min(int(budget), connect_cap))
            args = self._ssh_args(ssh_opts, destination, ["true"], connect_timeout=connect)
            try:
                result = subprocess.run(  # noqa: S603
                    args,
                    capture_output=True,
                    text=True,
                    check=False,
                    timeout=budget,
                    env=self._child_env(),
                )
            except subprocess.TimeoutExpired:
                return False
            except FileNotFoundError as exc:
                raise ToolchainError(f"{args[0]} not found: {exc}") from exc
            except OSError as exc:
                raise ToolchainError(f"{args[0]} could not be run: {exc}") from exc
            return result.returncode == 0

        return self._reachability().wait(_attempt, timeout, target=destination)

    def collect_garbage(self, user: str, host: str, ssh_opts: str) -> None:
        """Run ``nix-collect-garbage`` on the target."""
        destination = _destination(user, host)
        log.info("collecting garbage on %s", destination)
        self._run(
            self._ssh_args(ssh_opts, destination, ["nix-collect-garbage"]),
            error=CleanupError,
            error_prefix=f"nix-collect-garbage on {destination}",
            env=self._child_env(),
        )

    def build_image(self, view: RebuildView) -> str:
        """Build the system closure for *view* and return its store path."""
        env = self._child_env(view)
        config_arg = f"nixos-config={view.nixos_config}"
        if view.build_host.strip() in LOCAL_BUILD_HOSTS:
            log.info("building %s locally", view.nixos_config)
            result = self._run(
                [
                    self.nix.nix_build_bin,
                    NIXOS_EXPRESSION,
                    "-A",
                    "system",
                    "--no-out-link",
                    "-I",
                    config_arg,
                ],
                error=BuildError,
                error_prefix=f"nix-build {view.nixos_config}",
                env=env,
            )
            return self._require_path(result.stdout, BuildError, "nix-build")

        log.info("building %s on %s", view.nixos_config, view.build_host)
        instantiated = self._run(
            [self.nix.nix_instantiate_bin, NIXOS_EXPRESSION, "-A", "system", "-I", config_arg],
            error=BuildError,
            error_prefix=f"nix-instantiate {view.nixos_config}",
            env=env,
        )
        derivation = self._require_path(instantiated.stdout, BuildError, "nix-instantiate")
        self._run(
            [self.nix.nix_copy_closure_bin, "--to", view.build_host, derivation],
            error=BuildError,
            error_prefix=f"nix-copy-closure --to {view.build_host}",
            env=env,
        )
        realised = self._run(
            self._ssh_args(
                view.ssh_opts,
                view.build_host,
                ["nix-store", "--realise", derivation],
            ),
            error=BuildError,
            error_prefix=f"nix-store --realise on {view.build_host}",
            env=env,
        )
        return self._require_path(realised.stdout, BuildError, "nix-store --realise")

    def activate_image(self, view: RebuildView, image: str) -> None:
        """Copy *image* to the target, set the system profile and switch to it."""
        env = self._child_env(view)
        target = view.target
        if view.build_host.strip() not in LOCAL_BUILD_HOSTS:
            self._run(
                [self.nix.nix_copy_closure_bin, "--from", view.build_host, image],
                error=ActivationError,
                error_prefix=f"nix-copy-closure --from {view.build_host}",
                env=env,
            )
        log.info("copying %s to %s", image, target)
        self._run(
            [self.nix.nix_copy_closure_bin, "--to", target, image],
            error=ActivationError,
            error_prefix=f"nix-copy-closure --to {target}",
            env=env,
        )
        self._run_hook("pre-switch", view.pre_switch_hook, view, image)
        self._run(
            self._ssh_args(
                view.ssh_opts,
                target,
                ["nix-env", "-p", self.nix.system_profile, "--set", image],
            ),
            error=ActivationError,
            error_prefix=f"nix-env --set on {target}",
            env=env,
        )
        log.info("switching %s to %s", target, image)
        self._run(
            self._ssh_args(
                view.ssh_opts,
                target,
                [f"{image}/bin/switch-to-configuration", "switch"],
            ),
            error=ActivationError,
            error_prefix=f"switch-to-configuration on {target}",
            env=env,
        )
        self._run_hook("post-switch", view.post_switch_hook, view, image)

    def query_active_image(self, view: RebuildView) -> str:
        """Return the store path ``/run/current-system`` points at."""
        result = self._run(
            self._ssh_args(view.ssh_opts, view.target, ["readlink", "-f", CURRENT_SYSTEM_LINK]),
            error=QueryError,
            error_prefix=f"readlink {CURRENT_SYSTEM_LINK} on {view.target}",
            env=self._child_env(view),
        )
        return self._require_path(result.stdout, QueryError, "readlink")

    # ------------------------------------------------------------------
    def _reachability(self) -> ReachabilityProbe:
        if self.reachability is not None:
            return self.reachability
        return ReachabilityProbe(
            initial_delay=self.probe_config.initial_delay,
            max_delay=self.probe_config.max_delay,
        )

    def _ssh_args(
        self,
        ssh_opts: str,
        destination: str,
        remote: Sequence[str],
        *,
        connect_timeout: int | None = None,
    ) -> list[str]:
        args: list[str] = [self.nix.ssh_bin, *shlex.split(ssh_opts)]
        if connect_timeout is not None:
            args.extend(["-o", f"ConnectTimeout={connect_timeout}"])
        args.extend([destination, "--", *remote])
        return args

    def _child_env(self, view: RebuildView | None = None) -> dict[str, str]:
        env = dict(os.environ if self.base_env is None else self.base_env)
        if view is not None:
            env[SSH_OPTS_ENV] = view.ssh_opts
            if view.nix_path:
                env[NIX_PATH_ENV] = view.nix_path
        return env

    def _run_hook(self, label: str, hook: str, view: RebuildView, image: str) -> None:
        if not hook.strip():
            return
        env = self._child_env(view)
        env.update(
            {
                "TARGET_HOST": view.target_host,
                "TARGET_USER": view.target_user,
                "NIXOS_SYSTEM": image,
            }
        )
        log.info("running %s hook for %s", label, view.target_host)
        self._run(
            [self.nix.shell_bin, "-c", hook],
            error=ActivationError,
            error_prefix=f"{label} hook",
            env=env,
            redact_output=True,
        )

    @staticmethod
    def _require_path(output: str | None, error: type[ToolchainError], label: str) -> str:
        path = _last_line(output)
        if not path:
            raise error(f"{label} did not report a store path.")
        return path

    def _run(
        self,
        args: Sequence[str],
        *,
        error: type[ToolchainError],
        error_prefix: str,
        env: Mapping[str, str],
        redact_output: bool = False,
    ) -> subprocess.CompletedProcess[str]:
        try:
            result = subprocess.run(  # noqa: S603
                list(args),
                capture_output=True,
                text=True,
                check=False,
                env=dict(env),
            )
        except FileNotFoundError as exc:
            raise ToolchainError(f"{args[0]} not found: {exc.strerror or exc}") from exc
        except OSError as exc:
            raise ToolchainError(f"{args[0]} could not be run: {exc.strerror or exc}") from exc
        if result.returncode != 0:
            if redact_output:
                raise error(f"{error_prefix} failed (exit {result.returncode}).")
            stdout = getattr(result, "stdout", "") or ""
            stderr = getattr(result, "stderr", "") or ""
            message = stderr.strip() or stdout.strip() or "no output"
            raise error(f"{error_prefix} failed (exit {result.returncode}): {message}")
        return result


__all__ = ["LOCAL_BUILD_HOSTS", "NixToolchain"]
