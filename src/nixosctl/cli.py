"""Typer-powered command line for ``nixosctl``.

Commands read the desired resources from a YAML manifest, run the
convergence engine for each of them and keep the outcome in the state
registry. Every invocation is recorded in the structured operation log.
"""
from __future__ import annotations

import json
import textwrap
from collections.abc import Callable, Iterable, Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Any, NoReturn, cast

import typer
from rich.console import Console
from rich.table import Table

from . import __version__
from .config import AppConfig, ConfigError, load_config
from .exit_codes import ExitCode
from .locking import LockManager, LockTimeoutError
from .logging import OperationScope, StructuredLogger
from .providers import ReachabilityTimeoutError, Toolchain, ToolchainError
from .providers.nix import NixToolchain
from .resource import Plan, ResourceEngine, ResourceRecord, absolute_config_path
from .resource.schema import (
    COMPUTED_FIELD,
    load_manifest,
    mask_attributes,
    normalise_attributes,
)
from .state import StateRegistry, StateRegistryError

console = Console()

CONFIG_FILE_OPTION = typer.Option(
    None,
    "--config-file",
    dir_okay=False,
    help="Override the path to nixosctl's YAML config file.",
)

MANIFEST_OPTION = typer.Option(
    None,
    "--file",
    "-f",
    dir_okay=False,
    help="Resource manifest to read (defaults to manifest_file from the config).",
)

JSON_OPTION = typer.Option(
    False,
    "--json",
    help="Emit the result as JSON instead of a table.",
)

NAMES_ARGUMENT = typer.Argument(
    None,
    help="Resources to act on. Defaults to every resource.",
)

_HANDLED_ERRORS = (ConfigError, ToolchainError, LockTimeoutError, StateRegistryError)

app = typer.Typer(
    add_completion=False,
    help=textwrap.dedent(
        """
        Converge NixOS hosts to the system described by a resource manifest.

        `plan` builds each desired system and reports what would change,
        `apply` activates it over ssh, `refresh` re-reads the active system
        and `destroy` forgets a host without touching it.
        """
    ).strip(),
)


@dataclass
class RuntimeContext:
    """Aggregated runtime objects shared by commands."""

    config: AppConfig
    registry: StateRegistry
    locks: LockManager
    logger: StructuredLogger
    toolchain: Toolchain
    engine: ResourceEngine


def _build_toolchain(config: AppConfig) -> Toolchain:
    return NixToolchain(nix=config.nix, probe_config=config.probe)


def _ensure_runtime(
    ctx: typer.Context,
    config_file: Path | None,
    lock_timeout_override: float | None = None,
) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime

    overrides: dict[str, object] = {}
    if lock_timeout_override is not None:
        overrides["lock_timeout"] = lock_timeout_override

    try:
        config = load_config(config_file=config_file, overrides=overrides)
    except ConfigError as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(code=ExitCode.VALIDATION) from exc
    registry = StateRegistry(config.registry_dir)
    locks = LockManager(config.runtime_dir, config.lock_timeout)
    logger = StructuredLogger(config.logs_dir)
    toolchain = _build_toolchain(config)
    runtime = RuntimeContext(
        config=config,
        registry=registry,
        locks=locks,
        logger=logger,
        toolchain=toolchain,
        engine=ResourceEngine(toolchain),
    )
    ctx.obj = runtime
    return runtime


def _get_runtime(ctx: typer.Context) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime
    return _ensure_runtime(ctx, None, None)


@app.callback(invoke_without_command=True)
def _root(  # noqa: D401 - Typer displays help for us, docstring optional.
    ctx: typer.Context,
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        help="Show the nixosctl version and exit.",
    ),
    config_file: Path | None = CONFIG_FILE_OPTION,
    lock_timeout: float | None = typer.Option(
        None,
        "--lock-timeout",
        help="Override lock acquisition timeout in seconds.",
    ),
) -> None:
    """Entry point callback invoked for every CLI execution."""
    if version:
        runtime = _ensure_runtime(ctx, config_file, lock_timeout)
        with runtime.logger.operation(
            "root --version",
            args={"version": True},
            target={"kind": "meta", "scope": "version"},
        ) as op:
            console.print(f"nixosctl {__version__}")
            op.success("Reported CLI version.", changed=0)
        raise typer.Exit(code=0)

    _ensure_runtime(ctx, config_file, lock_timeout)

    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())
        raise typer.Exit(code=0)


def _command_error(
    op: OperationScope,
    message: str,
    *,
    rc: int = ExitCode.VALIDATION,
    errors: Sequence[str] | None = None,
) -> NoReturn:
    """Emit a structured error and terminate the command."""
    console.print(f"[red]{message}[/red]")
    op.error(message, errors=list(errors or [message]), rc=int(rc))
    raise typer.Exit(code=int(rc))


def _exit_code_for(exc: Exception) -> ExitCode:
    if isinstance(exc, ConfigError):
        return ExitCode.VALIDATION
    if isinstance(exc, (ReachabilityTimeoutError, LockTimeoutError, StateRegistryError)):
        return ExitCode.ENVIRONMENT
    return ExitCode.PROVIDER


def _fail(op: OperationScope, exc: Exception, *, resource: str | None = None) -> NoReturn:
    prefix = f"{resource}: " if resource else ""
    _command_error(op, f"{prefix}{exc}", rc=_exit_code_for(exc), errors=[str(exc)])


def _step_recorder(op: OperationScope, resource: str) -> Callable[[str, str, str | None], None]:
    def _record(name: str, status: str, detail: str | None) -> None:
        op.add_step(f"{resource}.{name}", status, detail)

    return _record


def _manifest_path(runtime: RuntimeContext, manifest: Path | None) -> Path:
    return (manifest or runtime.config.manifest_file).expanduser().absolute()


def _load_desired(
    runtime: RuntimeContext,
    manifest: Path | None,
    names: Sequence[str] | None,
) -> dict[str, dict[str, object]]:
    """Return the selected manifest resources with ``nixos_config`` made absolute.

    Relative configuration paths are taken relative to the manifest so that
    recorded attributes do not depend on where the command was run.
    """
    path = _manifest_path(runtime, manifest)
    resources = load_manifest(path)
    selected = _select(resources, names, source=str(path))
    for attributes in selected.values():
        raw_config = attributes.get("nixos_config")
        if isinstance(raw_config, str) and raw_config.strip():
            attributes["nixos_config"] = absolute_config_path(raw_config, cwd=path.parent)
    return selected


def _select(
    resources: Mapping[str, Any],
    names: Sequence[str] | None,
    *,
    source: str,
) -> dict[str, Any]:
    if not names:
        return dict(resources)
    missing = [name for name in names if name not in resources]
    if missing:
        raise ConfigError(f"Unknown resource(s) in {source}: {', '.join(missing)}.")
    return {name: resources[name] for name in names}


def _record_from_entry(entry: Mapping[str, Any]) -> ResourceRecord:
    name = str(entry["name"])
    try:
        attributes = normalise_attributes(
            entry.get("attributes") or {}, name, allow_computed=True
        )
    except ConfigError as exc:
        raise StateRegistryError(f"Recorded attributes for '{name}' are invalid: {exc}") from exc
    return ResourceRecord(id=str(entry["id"]), attributes=attributes)


def _recorded(runtime: RuntimeContext, name: str) -> ResourceRecord | None:
    entry = runtime.registry.get_resource(name)
    return _record_from_entry(entry) if entry else None


def _persist(runtime: RuntimeContext, name: str, record: ResourceRecord) -> dict[str, Any]:
    runtime.registry.ensure_root()
    return runtime.registry.upsert_resource(
        name, resource_id=record.id, attributes=record.attributes
    )


def _lock_key(name: str, attributes: Mapping[str, object]) -> str:
    host = str(attributes.get("target_host") or "").strip()
    return host or name


def _describe_plan(
    name: str,
    plan: Plan,
    desired: Mapping[str, object],
    recorded: ResourceRecord | None,
) -> dict[str, object]:
    before = mask_attributes(recorded.attributes) if recorded else {}
    after = mask_attributes(desired)
    if plan.creating:
        action = "create"
    elif plan.has_changes:
        action = "update"
    else:
        action = "no-op"
    return {
        "name": name,
        "action": action,
        "changes": {
            field: {"from": before.get(field), "to": after.get(field)}
            for field in plan.changed_fields
        },
        "system": {
            "recorded": recorded.nixos_system if recorded else None,
            "desired": plan.desired_system,
            "pending": plan.pending,
        },
    }


def _render_plan_table(entries: Iterable[Mapping[str, Any]]) -> None:
    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("Resource", style="bold")
    table.add_column("Action")
    table.add_column("Changes")
    table.add_column("System")

    rows = list(entries)
    if not rows:
        table.add_row("(none)", "", "", "")
    for entry in rows:
        system = entry["system"]
        if system["desired"] is None:
            rendered_system = "(known after apply)"
        else:
            rendered_system = str(system["desired"])
        if system["pending"] and system["recorded"]:
            rendered_system = f"{system['recorded']} -> {rendered_system}"
        table.add_row(
            entry["name"],
            entry["action"],
            ", ".join(entry["changes"]) or "-",
            rendered_system,
        )
    console.print(table)


@app.command()
def plan(
    ctx: typer.Context,
    names: list[str] | None = NAMES_ARGUMENT,
    manifest: Path | None = MANIFEST_OPTION,
    json_output: bool = JSON_OPTION,
) -> None:
    """Build each desired system and report what `apply` would change."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "plan",
        args={"names": list(names or []), "file": manifest, "json": json_output},
        target={"kind": "resources", "names": list(names or [])},
    ) as op:
        entries: list[dict[str, object]] = []
        current: str | None = None
        try:
            desired = _load_desired(runtime, manifest, names)
            for current, attributes in desired.items():
                recorded = _recorded(runtime, current)
                planned = runtime.engine.diff(
                    attributes, recorded, on_step=_step_recorder(op, current)
                )
                entries.append(_describe_plan(current, planned, attributes, recorded))
        except _HANDLED_ERRORS as exc:
            _fail(op, exc, resource=current)

        pending = [entry["name"] for entry in entries if entry["action"] != "no-op"]
        if json_output:
            console.print_json(data={"resources": entries})
        else:
            _render_plan_table(entries)
        op.success(
            f"Planned {len(entries)} resource(s); {len(pending)} with changes.",
            changed=0,
            context={"pending": pending},
        )


@app.command()
def apply(
    ctx: typer.Context,
    names: list[str] | None = NAMES_ARGUMENT,
    manifest: Path | None = MANIFEST_OPTION,
    json_output: bool = JSON_OPTION,
) -> None:
    """Converge every selected host whose plan has changes."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "apply",
        args={"names": list(names or []), "file": manifest, "json": json_output},
        target={"kind": "resources", "names": list(names or [])},
    ) as op:
        results: list[dict[str, object]] = []
        lock_wait_ms = 0
        current: str | None = None
        try:
            desired = _load_desired(runtime, manifest, names)
            for current, attributes in desired.items():
                on_step = _step_recorder(op, current)
                recorded = _recorded(runtime, current)
                planned = runtime.engine.diff(attributes, recorded, on_step=on_step)
                if not planned.has_changes:
                    on_step("apply", "skipped", "No changes.")
                    results.append(
                        {
                            "name": current,
                            "action": "no-op",
                            "id": recorded.id if recorded else None,
                            "nixos_system": recorded.nixos_system if recorded else None,
                            "calls": [],
                        }
                    )
                    continue
                with runtime.locks.target_lock(_lock_key(current, attributes)) as handle:
                    lock_wait_ms += handle.wait_ms
                    outcome = runtime.engine.apply(
                        attributes, recorded, plan=planned, on_step=on_step
                    )
                    applied = cast(ResourceRecord, outcome.record)
                    _persist(runtime, current, applied)
                results.append(
                    {
                        "name": current,
                        "action": "create" if planned.creating else "update",
                        "id": applied.id,
                        "nixos_system": applied.nixos_system,
                        "calls": list(outcome.calls),
                    }
                )
        except _HANDLED_ERRORS as exc:
            op.set_lock_wait_ms(lock_wait_ms)
            _fail(op, exc, resource=current)
        op.set_lock_wait_ms(lock_wait_ms)

        changed = sum(1 for entry in results if entry["action"] != "no-op")
        if json_output:
            console.print_json(data={"resources": results})
        else:
            for entry in results:
                if entry["action"] == "no-op":
                    console.print(f"[dim]{entry['name']}: no changes.[/dim]")
                else:
                    console.print(
                        f"[green]{entry['name']}: {entry['action']}d, "
                        f"system {entry['nixos_system']}.[/green]"
                    )
        op.success(f"Applied {changed} resource(s).", changed=changed)


@app.command()
def refresh(
    ctx: typer.Context,
    names: list[str] | None = NAMES_ARGUMENT,
    json_output: bool = JSON_OPTION,
) -> None:
    """Re-read the active system of recorded hosts."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "refresh",
        args={"names": list(names or []), "json": json_output},
        target={"kind": "resources", "names": list(names or [])},
    ) as op:
        results: list[dict[str, object]] = []
        current: str | None = None
        try:
            entries = {entry["name"]: entry for entry in runtime.registry.list_resources()}
            for current, entry in _select(entries, names, source="the registry").items():
                record = _record_from_entry(entry)
                outcome = runtime.engine.read(record, on_step=_step_recorder(op, current))
                refreshed = cast(ResourceRecord, outcome.record)
                _persist(runtime, current, refreshed)
                results.append(
                    {
                        "name": current,
                        "previous": record.nixos_system,
                        "nixos_system": refreshed.nixos_system,
                    }
                )
        except _HANDLED_ERRORS as exc:
            _fail(op, exc, resource=current)

        changed = sum(1 for entry in results if entry["previous"] != entry["nixos_system"])
        if json_output:
            console.print_json(data={"resources": results})
        else:
            table = Table(show_header=True, header_style="bold magenta")
            table.add_column("Resource", style="bold")
            table.add_column("System")
            if not results:
                table.add_row("(none)", "")
            for entry in results:
                table.add_row(str(entry["name"]), str(entry["nixos_system"]))
            console.print(table)
        op.success(f"Refreshed {len(results)} resource(s).", changed=changed)


@app.command()
def destroy(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Recorded resource to forget."),
) -> None:
    """Forget a host. The host itself is left exactly as it is."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "destroy",
        args={"name": name},
        target={"kind": "resource", "name": name},
    ) as op:
        try:
            record = _recorded(runtime, name)
            if record is None:
                _command_error(
                    op, f"Resource '{name}' not found in registry.", rc=ExitCode.VALIDATION
                )
            runtime.engine.destroy(record, on_step=_step_recorder(op, name))
            runtime.registry.remove_resource(name)
        except _HANDLED_ERRORS as exc:
            _fail(op, exc, resource=name)
        console.print(f"[green]Forgot resource '{name}'; the host was not modified.[/green]")
        op.success(f"Released resource '{name}'.", changed=1, context={"id": record.id})


@app.command()
def show(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Recorded resource to display."),
    json_output: bool = JSON_OPTION,
) -> None:
    """Display the recorded attributes of a resource."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "show",
        args={"name": name, "json": json_output},
        target={"kind": "resource", "name": name},
    ) as op:
        try:
            entry = runtime.registry.get_resource(name)
        except StateRegistryError as exc:
            _fail(op, exc, resource=name)
        if entry is None:
            _command_error(op, f"Resource '{name}' not found in registry.", rc=ExitCode.VALIDATION)
        payload = dict(entry)
        payload["attributes"] = mask_attributes(entry.get("attributes") or {})

        if json_output:
            console.print_json(data={"resource": payload})
            op.success("Rendered resource as JSON.", changed=0)
            return

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Key", style="bold")
        table.add_column("Value")
        for key in ("name", "id", "created_at", "updated_at"):
            table.add_row(key, str(payload.get(key) or ""))
        for key, value in sorted(payload["attributes"].items()):
            table.add_row(key, str(value))
        console.print(table)
        op.success("Rendered resource table.", changed=0)


@app.command("list")
def list_resources(
    ctx: typer.Context,
    json_output: bool = JSON_OPTION,
) -> None:
    """List recorded resources."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "list",
        args={"json": json_output},
        target={"kind": "resources"},
    ) as op:
        try:
            entries = runtime.registry.list_resources()
        except StateRegistryError as exc:
            _fail(op, exc)
        rows = [
            {
                "name": entry["name"],
                "id": entry["id"],
                "target_host": (entry.get("attributes") or {}).get("target_host"),
                COMPUTED_FIELD: (entry.get("attributes") or {}).get(COMPUTED_FIELD),
                "updated_at": entry.get("updated_at"),
            }
            for entry in entries
        ]
        if json_output:
            console.print_json(data={"resources": rows})
            op.success("Reported resources as JSON.", changed=0)
            return

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Resource", style="bold")
        table.add_column("Target")
        table.add_column("System")
        table.add_column("Updated")
        if not rows:
            table.add_row("(none)", "", "", "")
        for row in rows:
            table.add_row(
                str(row["name"]),
                str(row["target_host"] or ""),
                str(row[COMPUTED_FIELD] or ""),
                str(row["updated_at"] or ""),
            )
        console.print(table)
        op.success("Reported resources.", changed=0)


config_app = typer.Typer(help="Inspect global configuration.")
app.add_typer(config_app, name="config")


@config_app.command("show")
def config_show(
    ctx: typer.Context,
    json_output: bool = typer.Option(
        False,
        "--json",
        help="Emit configuration as JSON instead of a table.",
    ),
) -> None:
    """Display the effective configuration after merges."""
    runtime = _get_runtime(ctx)
    data = runtime.config.to_dict()

    with runtime.logger.operation(
        "config show",
        args={"json": json_output},
        target={"kind": "config"},
    ) as op:
        if json_output:
            console.print_json(data=data)
            op.success("Rendered configuration as JSON.", changed=0)
            return

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Key", style="bold")
        table.add_column("Value")

        for key, value in data.items():
            if isinstance(value, dict):
                rendered = json.dumps(value, indent=2, sort_keys=True)
            else:
                rendered = str(value)
            table.add_row(key, rendered)

        console.print(table)
        op.success("Rendered configuration table.", changed=0)


__all__ = ["app"]
