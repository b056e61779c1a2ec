"""Tests for resolving resource attributes into a deployment configuration."""
from __future__ import annotations

import os
from pathlib import Path

import pytest

from nixosctl.config import ConfigError
from nixosctl.resource.schema import DEFAULT_SSH_OPTS, SENSITIVE_MASK
from nixosctl.resource.settings import absolute_config_path, resolve_config
from nixosctl.resource.views import PlanView

BASE = {"target_host": "10.0.0.5", "nixos_config": "/etc/nixos/web.nix"}


def test_resolve_applies_defaults() -> None:
    """Unset attributes take their defaults."""
    config = resolve_config(PlanView(BASE), env={})

    assert config.target_user == "root"
    assert config.build_host == "localhost"
    assert config.ssh_opts == DEFAULT_SSH_OPTS
    assert config.nix_path == ""
    assert config.ssh_timeout == 180.0
    assert config.collect_garbage is True
    assert config.pre_switch_hook == ""


@pytest.mark.parametrize(
    ("attributes", "env", "expected"),
    [
        ({"ssh_opts": "-o Port=2222"}, {"NIX_SSHOPTS": "-o Port=22"}, "-o Port=2222"),
        ({}, {"NIX_SSHOPTS": "-o Port=22"}, "-o Port=22"),
        ({}, {"NIX_SSHOPTS": ""}, DEFAULT_SSH_OPTS),
        ({"ssh_opts": ""}, {}, DEFAULT_SSH_OPTS),
    ],
)
def test_ssh_opts_precedence(
    attributes: dict[str, str],
    env: dict[str, str],
    expected: str,
) -> None:
    """Explicit value, then ``NIX_SSHOPTS``, then the fixed default."""
    config = resolve_config(PlanView({**BASE, **attributes}), env=env)

    assert config.ssh_opts == expected


@pytest.mark.parametrize(
    ("attributes", "env", "expected"),
    [
        ({"nix_path": "nixpkgs=/src"}, {"NIX_PATH": "nixpkgs=/other"}, "nixpkgs=/src"),
        ({}, {"NIX_PATH": "nixpkgs=/other"}, "nixpkgs=/other"),
        ({}, {}, ""),
    ],
)
def test_nix_path_precedence(
    attributes: dict[str, str],
    env: dict[str, str],
    expected: str,
) -> None:
    """Explicit value, then ``NIX_PATH``, then empty."""
    config = resolve_config(PlanView({**BASE, **attributes}), env=env)

    assert config.nix_path == expected


def test_other_attributes_ignore_environment() -> None:
    """Only the two documented attributes fall back to the environment."""
    env = {"TARGET_USER": "deploy", "NIX_SSHOPTS": "-o Port=22"}

    config = resolve_config(PlanView(BASE), env=env)

    assert config.target_user == "root"


def test_relative_config_joined_to_cwd(tmp_path: Path) -> None:
    """Relative configuration paths resolve against the supplied directory."""
    config = resolve_config(
        PlanView({**BASE, "nixos_config": "hosts/../hosts/web.nix"}),
        env={},
        cwd=tmp_path,
    )

    assert config.nixos_config == str(tmp_path / "hosts" / "web.nix")


def test_config_path_resolution_is_idempotent(tmp_path: Path) -> None:
    """Resolving an already resolved path returns it unchanged."""
    once = absolute_config_path("./hosts//web.nix", cwd=tmp_path)

    assert absolute_config_path(once) == once
    assert absolute_config_path(once, cwd="/somewhere/else") == once
    assert os.path.isabs(once)


def test_absolute_path_independent_of_working_directory(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """An absolute path resolves the same from any working directory."""
    target = str(tmp_path / "web.nix")
    results = []
    for directory in (tmp_path, Path("/")):
        monkeypatch.chdir(directory)
        results.append(absolute_config_path(target))

    assert results == [target, target]


def test_home_directory_is_expanded(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """``~`` expands to the home directory."""
    monkeypatch.setenv("HOME", str(tmp_path))

    assert absolute_config_path("~/nixos/web.nix") == str(tmp_path / "nixos" / "web.nix")


def test_nul_byte_in_path_is_rejected() -> None:
    """Paths that cannot exist raise ``ConfigError``."""
    with pytest.raises(ConfigError):
        absolute_config_path("/etc/nixos/\x00web.nix")


@pytest.mark.parametrize(
    "attributes",
    [
        {"target_host": ""},
        {"target_host": "   "},
        {"nixos_config": ""},
        {"ssh_timeout": -1},
        {"ssh_opts": "-o 'ProxyCommand=ssh jump"},
    ],
)
def test_invalid_attributes_raise_config_error(attributes: dict[str, object]) -> None:
    """Resolution rejects values the toolchain could not use."""
    with pytest.raises(ConfigError):
        resolve_config(PlanView({**BASE, **attributes}), env={})


def test_zero_timeout_is_allowed() -> None:
    """A zero timeout still permits a single probe attempt."""
    config = resolve_config(PlanView({**BASE, "ssh_timeout": 0}), env={})

    assert config.ssh_timeout == 0.0


def test_rebuild_view_projection_and_secrecy() -> None:
    """The rebuild view drops orchestration knobs and hides hooks."""
    config = resolve_config(
        PlanView({**BASE, "pre_switch_hook": "echo s3cr3t", "target_user": "deploy"}),
        env={},
    )

    view = config.rebuild_view()

    assert view.target == "deploy@10.0.0.5"
    assert view.pre_switch_hook == "echo s3cr3t"
    assert not hasattr(view, "ssh_timeout")
    assert not hasattr(view, "collect_garbage")
    assert "s3cr3t" not in repr(view)
    assert "s3cr3t" not in repr(config)
    assert config.to_dict()["pre_switch_hook"] == SENSITIVE_MASK
    assert config.to_dict()["post_switch_hook"] == ""
