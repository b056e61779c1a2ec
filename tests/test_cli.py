"""Tests for the nixosctl command line."""
from __future__ import annotations

import json
from pathlib import Path
from typing import Any

import pytest
import yaml
from conftest import IMAGE_A, IMAGE_B, FakeToolchain
from typer.testing import CliRunner

from nixosctl import __version__, cli
from nixosctl.cli import app
from nixosctl.locking import LockManager
from nixosctl.providers.base import BuildError, CleanupError, ToolchainError
from nixosctl.state import StateRegistry

runner = CliRunner()

WEB = {
    "target_host": "10.0.0.5",
    "nixos_config": "hosts/web.nix",
    "post_switch_hook": "curl -fsS https://hooks.example/s3cr3t",
}


@pytest.fixture
def fake(monkeypatch: pytest.MonkeyPatch) -> FakeToolchain:
    """Route every command through one fake toolchain."""
    toolchain = FakeToolchain()
    monkeypatch.setattr(cli, "_build_toolchain", lambda config: toolchain)
    return toolchain


def _prepare_environment(
    tmp_path: Path,
    resources: dict[str, dict[str, Any]] | None = None,
) -> tuple[dict[str, str], Path]:
    manifest = tmp_path / "nixos.yml"
    manifest.write_text(
        yaml.safe_dump({"resources": resources if resources is not None else {"web": WEB}}),
        encoding="utf-8",
    )
    env = {
        "NIXOSCTL_CONFIG_FILE": str(tmp_path / "config.yml"),
        "NIXOSCTL_STATE_DIR": str(tmp_path / "state"),
        "NIX_SSHOPTS": "",
    }
    return env, manifest


def _registry(tmp_path: Path) -> StateRegistry:
    return StateRegistry(tmp_path / "state" / "registry")


def _last_operation(tmp_path: Path) -> dict[str, Any]:
    lines = (tmp_path / "state" / "logs" / "operations.jsonl").read_text(encoding="utf-8")
    return json.loads(lines.splitlines()[-1])


def test_version_flag(tmp_path: Path, fake: FakeToolchain) -> None:
    """``--version`` reports the package version."""
    env, _ = _prepare_environment(tmp_path)

    result = runner.invoke(app, ["--version"], env=env)

    assert result.exit_code == 0
    assert f"nixosctl {__version__}" in result.stdout


def test_plan_new_resource_reports_create(tmp_path: Path, fake: FakeToolchain) -> None:
    """Planning a new resource builds it and touches nothing else."""
    env, manifest = _prepare_environment(tmp_path)

    result = runner.invoke(app, ["plan", "--file", str(manifest), "--json"], env=env)

    assert result.exit_code == 0, result.stdout
    (entry,) = json.loads(result.stdout)["resources"]
    assert entry["action"] == "create"
    assert entry["system"] == {"recorded": None, "desired": IMAGE_A, "pending": True}
    assert entry["changes"]["nixos_config"]["to"] == str(tmp_path / "hosts" / "web.nix")
    assert entry["changes"]["post_switch_hook"]["to"] == "(sensitive)"
    assert fake.calls == ["build_image"]
    assert _registry(tmp_path).list_resources() == []


def test_plan_build_failure_is_not_an_error(tmp_path: Path, fake: FakeToolchain) -> None:
    """A configuration that does not evaluate yet still plans."""
    env, manifest = _prepare_environment(tmp_path)
    fake.fail("build_image", BuildError("error: attribute 'web' missing"))

    result = runner.invoke(app, ["plan", "-f", str(manifest), "--json"], env=env)

    assert result.exit_code == 0, result.stdout
    (entry,) = json.loads(result.stdout)["resources"]
    assert entry["system"]["desired"] is None
    assert entry["system"]["pending"] is True
    record = _last_operation(tmp_path)
    assert record["result"]["status"] == "success"
    expected = {
        "name": "web.build",
        "status": "warning",
        "detail": "error: attribute 'web' missing",
    }
    assert expected in record["steps"]


def test_plan_without_usable_nix_build_still_succeeds(
    tmp_path: Path,
    fake: FakeToolchain,
) -> None:
    """A missing ``nix-build`` leaves the plan pending instead of failing it."""
    env, manifest = _prepare_environment(tmp_path)
    fake.fail("build_image", ToolchainError("nix-build not found: No such file or directory"))

    result = runner.invoke(app, ["plan", "--file", str(manifest), "--json"], env=env)

    assert result.exit_code == 0, result.stdout
    (entry,) = json.loads(result.stdout)["resources"]
    assert entry["action"] == "create"
    assert entry["system"] == {"recorded": None, "desired": None, "pending": True}


def test_apply_creates_and_persists_record(tmp_path: Path, fake: FakeToolchain) -> None:
    """A first apply activates the host and records the result."""
    env, manifest = _prepare_environment(tmp_path)

    result = runner.invoke(app, ["apply", "--file", str(manifest), "--json"], env=env)

    assert result.exit_code == 0, result.stdout
    (entry,) = json.loads(result.stdout)["resources"]
    assert entry["action"] == "create"
    assert entry["nixos_system"] == IMAGE_A
    assert "activate_image" in entry["calls"]
    stored = _registry(tmp_path).get_resource("web")
    assert stored is not None
    assert stored["id"] == entry["id"]
    assert len(stored["id"]) == 16
    assert stored["attributes"]["nixos_system"] == IMAGE_A
    assert stored["attributes"]["nixos_config"] == str(tmp_path / "hosts" / "web.nix")
    assert (tmp_path / "state" / "run" / "locks" / "10.0.0.5.lock").exists()


def test_second_apply_without_changes_is_a_no_op(tmp_path: Path, fake: FakeToolchain) -> None:
    """Unchanged resources are planned and skipped."""
    env, manifest = _prepare_environment(tmp_path)
    runner.invoke(app, ["apply", "--file", str(manifest)], env=env)
    stored = _registry(tmp_path).get_resource("web")

    result = runner.invoke(app, ["apply", "--file", str(manifest), "--json"], env=env)

    assert result.exit_code == 0, result.stdout
    (entry,) = json.loads(result.stdout)["resources"]
    assert entry["action"] == "no-op"
    assert len(fake.activations) == 1
    assert _registry(tmp_path).get_resource("web") == stored


def test_apply_new_system_updates_record(tmp_path: Path, fake: FakeToolchain) -> None:
    """A changed build is activated and the identity is kept."""
    env, manifest = _prepare_environment(tmp_path)
    runner.invoke(app, ["apply", "--file", str(manifest)], env=env)
    first = _registry(tmp_path).get_resource("web")
    fake.image = IMAGE_B

    result = runner.invoke(app, ["apply", "--file", str(manifest)], env=env)

    assert result.exit_code == 0, result.stdout
    stored = _registry(tmp_path).get_resource("web")
    assert stored is not None and first is not None
    assert stored["id"] == first["id"]
    assert stored["attributes"]["nixos_system"] == IMAGE_B
    assert "web: updated" in result.stdout


def test_apply_cleanup_failure_exits_with_provider_code(
    tmp_path: Path,
    fake: FakeToolchain,
) -> None:
    """A failed garbage collection aborts before activation and records nothing."""
    env, manifest = _prepare_environment(tmp_path)
    fake.fail("collect_garbage", CleanupError("nix-collect-garbage on root@10.0.0.5 failed"))

    result = runner.invoke(app, ["apply", "--file", str(manifest)], env=env)

    assert result.exit_code == 4
    assert fake.activations == []
    assert _registry(tmp_path).list_resources() == []
    record = _last_operation(tmp_path)
    assert record["result"]["status"] == "error"
    assert record["result"]["rc"] == 4
    assert {"name": "web.cleanup", "status": "error", "detail": (
        "nix-collect-garbage on root@10.0.0.5 failed"
    )} in record["steps"]


def test_apply_unreachable_host_exits_with_environment_code(
    tmp_path: Path,
    fake: FakeToolchain,
) -> None:
    """The apply probe failing is an environment error."""
    env, manifest = _prepare_environment(tmp_path)
    fake.reachable = False

    result = runner.invoke(app, ["apply", "--file", str(manifest)], env=env)

    assert result.exit_code == 3
    assert fake.calls == ["build_image", "probe"]


def test_apply_waits_for_target_lock(tmp_path: Path, fake: FakeToolchain) -> None:
    """A held host lock makes apply fail once the lock timeout elapses."""
    env, manifest = _prepare_environment(tmp_path)
    locks = LockManager(tmp_path / "state" / "run")

    with locks.target_lock("10.0.0.5"):
        result = runner.invoke(
            app,
            ["--lock-timeout", "0.1", "apply", "--file", str(manifest)],
            env=env,
        )

    assert result.exit_code == 3
    assert "probe" not in fake.calls


def test_apply_invalid_resource_exits_with_validation_code(
    tmp_path: Path,
    fake: FakeToolchain,
) -> None:
    """Resolution failures are validation errors."""
    env, manifest = _prepare_environment(
        tmp_path, {"web": {"target_host": "", "nixos_config": "/etc/nixos/web.nix"}}
    )

    result = runner.invoke(app, ["apply", "--file", str(manifest)], env=env)

    assert result.exit_code == 2
    assert fake.calls == []


def test_unknown_resource_name_is_rejected(tmp_path: Path, fake: FakeToolchain) -> None:
    """Selecting a resource that is not in the manifest fails validation."""
    env, manifest = _prepare_environment(tmp_path)

    result = runner.invoke(app, ["plan", "db", "--file", str(manifest)], env=env)

    assert result.exit_code == 2
    assert "db" in result.stdout


def test_missing_manifest_is_rejected(tmp_path: Path, fake: FakeToolchain) -> None:
    """Without a manifest there is nothing to plan."""
    env, _ = _prepare_environment(tmp_path)

    result = runner.invoke(app, ["plan", "--file", str(tmp_path / "absent.yml")], env=env)

    assert result.exit_code == 2


def test_refresh_unreachable_records_unknown(tmp_path: Path, fake: FakeToolchain) -> None:
    """Refreshing an unreachable host succeeds with the unknown sentinel."""
    env, manifest = _prepare_environment(tmp_path)
    runner.invoke(app, ["apply", "--file", str(manifest)], env=env)
    fake.reachable = False

    result = runner.invoke(app, ["refresh", "--json"], env=env)

    assert result.exit_code == 0, result.stdout
    (entry,) = json.loads(result.stdout)["resources"]
    assert entry == {"name": "web", "previous": IMAGE_A, "nixos_system": "unknown"}
    stored = _registry(tmp_path).get_resource("web")
    assert stored is not None
    assert stored["attributes"]["nixos_system"] == "unknown"


def test_destroy_forgets_without_contacting_host(tmp_path: Path, fake: FakeToolchain) -> None:
    """Destroy removes the record and issues no toolchain calls."""
    env, manifest = _prepare_environment(tmp_path)
    runner.invoke(app, ["apply", "--file", str(manifest)], env=env)
    calls_before = list(fake.calls)

    result = runner.invoke(app, ["destroy", "web"], env=env)

    assert result.exit_code == 0, result.stdout
    assert fake.calls == calls_before
    assert _registry(tmp_path).list_resources() == []

    missing = runner.invoke(app, ["destroy", "web"], env=env)
    assert missing.exit_code == 2


def test_show_and_list_mask_hooks(tmp_path: Path, fake: FakeToolchain) -> None:
    """Recorded hooks are masked in every rendering."""
    env, manifest = _prepare_environment(tmp_path)
    runner.invoke(app, ["apply", "--file", str(manifest)], env=env)

    show_result = runner.invoke(app, ["show", "web", "--json"], env=env)
    list_result = runner.invoke(app, ["list", "--json"], env=env)
    table_result = runner.invoke(app, ["show", "web"], env=env)

    assert show_result.exit_code == 0
    payload = json.loads(show_result.stdout)["resource"]
    assert payload["attributes"]["post_switch_hook"] == "(sensitive)"
    assert payload["attributes"]["nixos_system"] == IMAGE_A
    listing = json.loads(list_result.stdout)["resources"]
    assert listing[0]["name"] == "web"
    assert listing[0]["nixos_system"] == IMAGE_A
    assert "s3cr3t" not in table_result.stdout


def test_show_unknown_resource(tmp_path: Path, fake: FakeToolchain) -> None:
    """``show`` fails validation for unrecorded names."""
    env, _ = _prepare_environment(tmp_path)

    result = runner.invoke(app, ["show", "nope"], env=env)

    assert result.exit_code == 2


def test_hook_text_never_reaches_output_or_logs(tmp_path: Path, fake: FakeToolchain) -> None:
    """Sensitive hook values stay out of stdout and the operation log."""
    env, manifest = _prepare_environment(tmp_path)

    outputs = [
        runner.invoke(app, ["plan", "--file", str(manifest)], env=env).stdout,
        runner.invoke(app, ["plan", "--file", str(manifest), "--json"], env=env).stdout,
        runner.invoke(app, ["apply", "--file", str(manifest), "--json"], env=env).stdout,
    ]

    assert all("s3cr3t" not in output for output in outputs)
    log_text = (tmp_path / "state" / "logs" / "operations.jsonl").read_text(encoding="utf-8")
    assert "s3cr3t" not in log_text


def test_config_show_json(tmp_path: Path, fake: FakeToolchain) -> None:
    """The effective configuration is rendered as JSON."""
    env, _ = _prepare_environment(tmp_path)

    result = runner.invoke(app, ["config", "show", "--json"], env=env)

    assert result.exit_code == 0
    payload = json.loads(result.stdout)
    assert payload["registry_dir"] == str(tmp_path / "state" / "registry")
    assert payload["probe"]["max_delay"] == 10.0
