"""Convergence engine for the ``nixos`` resource.

Each lifecycle phase maps a recorded resource and a desired attribute set to
a new record plus the ordered list of toolchain calls it issued:

* ``plan``: build the desired system without touching the target and report
  whether applying would change anything. Build failures are logged and
  turned into a pending marker, never into an error.
* ``apply``: assign an identity, resolve, probe (fatal), collect garbage
  when enabled (fatal, gates activation), build and activate when a tracked
  attribute changed, then refresh.
* ``read``: resolve and probe; an unreachable host records ``unknown``.
* ``destroy``: release the record locally; the host is never contacted.

The engine takes no locks. Callers that may run concurrently against one
host must serialise themselves.
"""
from __future__ import annotations

import logging
import os
import secrets
from collections.abc import Callable, Iterator, Mapping
from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import Enum

from ..providers.base import ReachabilityTimeoutError, Toolchain, ToolchainError
from ..reachability import ProbeReport
from .schema import COMPUTED_FIELD, TRACKED_FIELDS, UNKNOWN_SYSTEM
from .settings import DeploymentConfig, RebuildView, resolve_config
from .views import ApplyView, PlanView, ResourceRecord

log = logging.getLogger(__name__)

StepCallback = Callable[[str, str, str | None], None]


class Phase(str, Enum):
    """Lifecycle phases the engine can run."""

    PLAN = "plan"
    APPLY = "apply"
    READ = "read"
    DESTROY = "destroy"


@dataclass(frozen=True)
class Plan:
    """Result of the planning phase."""

    desired_system: str | None
    pending: bool
    changed_fields: tuple[str, ...] = ()
    creating: bool = False

    @property
    def has_changes(self) -> bool:
        """Return ``True`` when applying would do anything."""
        return self.creating or self.pending or bool(self.changed_fields)


@dataclass(frozen=True)
class PhaseOutcome:
    """New persisted record and the toolchain calls a phase issued."""

    phase: Phase
    record: ResourceRecord | None
    calls: tuple[str, ...] = ()
    plan: Plan | None = None


def new_identity() -> str:
    """Return a fresh opaque identity token."""
    return secrets.token_hex(8)


def _no_step(name: str, status: str, detail: str | None) -> None:
    return None


@contextmanager
def _step(on_step: StepCallback, name: str) -> Iterator[None]:
    try:
        yield
    except Exception as exc:
        on_step(name, "error", str(exc))
        raise


class _RecordingToolchain(Toolchain):
    """Delegate to a toolchain while recording the order of calls."""

    def __init__(self, inner: Toolchain) -> None:
        self._inner = inner
        self.calls: list[str] = []

    def probe(self, user: str, host: str, ssh_opts: str, timeout: float) -> ProbeReport:
        self.calls.append("probe")
        return self._inner.probe(user, host, ssh_opts, timeout)

    def collect_garbage(self, user: str, host: str, ssh_opts: str) -> None:
        self.calls.append("collect_garbage")
        self._inner.collect_garbage(user, host, ssh_opts)

    def build_image(self, view: RebuildView) -> str:
        self.calls.append("build_image")
        return self._inner.build_image(view)

    def activate_image(self, view: RebuildView, image: str) -> None:
        self.calls.append("activate_image")
        self._inner.activate_image(view, image)

    def query_active_image(self, view: RebuildView) -> str:
        self.calls.append("query_active_image")
        return self._inner.query_active_image(view)


@dataclass
class PlanDiffer:
    """Decide whether the desired system differs from the recorded one."""

    toolchain: Toolchain
    env: Mapping[str, str] | None = None
    cwd: str | os.PathLike[str] | None = None

    def diff(self, view: PlanView, *, on_step: StepCallback = _no_step) -> Plan:
        """Build the desired system and compare it with the recorded system.

        Never activates anything. Any failure to build, including a missing
        or unusable toolchain, is logged and the computed attribute is
        reported as pending. Resolution errors still propagate.
        """
        config = resolve_config(view, env=self.env, cwd=self.cwd)
        on_step("resolve", "success", None)
        changed = view.changed_fields()
        recorded = str(view.get(COMPUTED_FIELD))
        try:
            image = self.toolchain.build_image(config.rebuild_view())
        except (ToolchainError, OSError) as exc:
            log.warning(
                "Build of %s failed during plan; system will be determined on apply: %s",
                config.nixos_config,
                exc,
            )
            on_step("build", "warning", str(exc))
            return Plan(None, True, changed, view.creating)
        pending = image != recorded
        on_step("build", "success", image)
        log.debug("planned system %s (recorded %s, pending=%s)", image, recorded or "-", pending)
        return Plan(image, pending, changed, view.creating)


@dataclass
class StateReader:
    """Refresh the recorded system from the target."""

    toolchain: Toolchain
    env: Mapping[str, str] | None = None
    cwd: str | os.PathLike[str] | None = None

    def read(self, view: ApplyView, *, on_step: StepCallback = _no_step) -> ResourceRecord:
        """Record the active system, or ``unknown`` when the host is unreachable."""
        config = resolve_config(view, env=self.env, cwd=self.cwd)
        try:
            self.toolchain.probe(
                config.target_user, config.target_host, config.ssh_opts, config.ssh_timeout
            )
        except ReachabilityTimeoutError as exc:
            log.info(
                "%s is unreachable; recording system as %s", config.target_host, UNKNOWN_SYSTEM
            )
            on_step("probe", "warning", str(exc))
            view.set(COMPUTED_FIELD, UNKNOWN_SYSTEM)
            return view.to_record()
        on_step("probe", "success", None)
        with _step(on_step, "query"):
            image = self.toolchain.query_active_image(config.rebuild_view())
        on_step("query", "success", image)
        view.set(COMPUTED_FIELD, image)
        return view.to_record()


@dataclass
class Converger:
    """Run the ordered apply sequence for one resource."""

    toolchain: Toolchain
    reader: StateReader
    env: Mapping[str, str] | None = None
    cwd: str | os.PathLike[str] | None = None
    id_factory: Callable[[], str] = new_identity

    def converge(self, view: ApplyView, *, on_step: StepCallback = _no_step) -> ResourceRecord:
        """Bring the target to the desired system and return the refreshed record."""
        if view.assign_id(self.id_factory):
            on_step("identity", "success", view.id)

        config = resolve_config(view, env=self.env, cwd=self.cwd)
        on_step("resolve", "success", None)

        with _step(on_step, "probe"):
            report = self.toolchain.probe(
                config.target_user, config.target_host, config.ssh_opts, config.ssh_timeout
            )
        on_step("probe", "success", f"reachable after {report.attempts} attempt(s)")

        self._cleanup(config, on_step)

        changed = [name for name in TRACKED_FIELDS if view.has_change(name)]
        if changed:
            rebuild = config.rebuild_view()
            with _step(on_step, "build"):
                image = self.toolchain.build_image(rebuild)
            on_step("build", "success", image)
            with _step(on_step, "activate"):
                self.toolchain.activate_image(rebuild, image)
            log.info("activated %s on %s (changed: %s)", image, rebuild.target, ", ".join(changed))
            on_step("activate", "success", f"changed: {', '.join(changed)}")
        else:
            on_step("activate", "skipped", "No tracked attribute changed.")

        return self.reader.read(view, on_step=on_step)

    def _cleanup(self, config: DeploymentConfig, on_step: StepCallback) -> None:
        if not config.collect_garbage:
            on_step("cleanup", "skipped", None)
            return
        with _step(on_step, "cleanup"):
            self.toolchain.collect_garbage(config.target_user, config.target_host, config.ssh_opts)
        on_step("cleanup", "success", None)


def release(record: ResourceRecord, *, on_step: StepCallback = _no_step) -> None:
    """Release *record* locally; the target host is left untouched."""
    log.info("releasing resource %s; target host is not modified", record.id)
    on_step("release", "success", record.id)


def _planned_attributes(
    desired: Mapping[str, object],
    recorded: ResourceRecord | None,
) -> dict[str, object]:
    planned = {key: value for key, value in desired.items() if key != COMPUTED_FIELD}
    if recorded is not None and recorded.nixos_system:
        planned[COMPUTED_FIELD] = recorded.nixos_system
    return planned


@dataclass
class ResourceEngine:
    """Facade running lifecycle phases against an injectable toolchain."""

    toolchain: Toolchain
    env: Mapping[str, str] | None = None
    cwd: str | os.PathLike[str] | None = None
    id_factory: Callable[[], str] = field(default=new_identity, repr=False)

    def diff(
        self,
        desired: Mapping[str, object],
        recorded: ResourceRecord | None = None,
        *,
        on_step: StepCallback = _no_step,
    ) -> Plan:
        """Return the :class:`Plan` for *desired* against *recorded*."""
        differ = PlanDiffer(self.toolchain, env=self.env, cwd=self.cwd)
        return differ.diff(PlanView(desired, recorded), on_step=on_step)

    def plan(
        self,
        desired: Mapping[str, object],
        recorded: ResourceRecord | None = None,
        *,
        on_step: StepCallback = _no_step,
    ) -> PhaseOutcome:
        """Compute a :class:`Plan`; the recorded record is returned unchanged."""
        recording = _RecordingToolchain(self.toolchain)
        differ = PlanDiffer(recording, env=self.env, cwd=self.cwd)
        plan = differ.diff(PlanView(desired, recorded), on_step=on_step)
        return PhaseOutcome(Phase.PLAN, recorded, tuple(recording.calls), plan)

    def apply(
        self,
        desired: Mapping[str, object],
        recorded: ResourceRecord | None = None,
        *,
        plan: Plan | None = None,
        on_step: StepCallback = _no_step,
    ) -> PhaseOutcome:
        """Converge the target, planning first when no *plan* is supplied."""
        recording = _RecordingToolchain(self.toolchain)
        if plan is None:
            differ = PlanDiffer(recording, env=self.env, cwd=self.cwd)
            plan = differ.diff(PlanView(desired, recorded), on_step=on_step)
        view = ApplyView(
            _planned_attributes(desired, recorded),
            recorded,
            pending=(COMPUTED_FIELD,) if plan.pending else (),
        )
        reader = StateReader(recording, env=self.env, cwd=self.cwd)
        converger = Converger(
            recording, reader, env=self.env, cwd=self.cwd, id_factory=self.id_factory
        )
        record = converger.converge(view, on_step=on_step)
        return PhaseOutcome(Phase.APPLY, record, tuple(recording.calls), plan)

    def read(
        self,
        recorded: ResourceRecord,
        *,
        on_step: StepCallback = _no_step,
    ) -> PhaseOutcome:
        """Refresh the active system of a recorded resource."""
        recording = _RecordingToolchain(self.toolchain)
        reader = StateReader(recording, env=self.env, cwd=self.cwd)
        record = reader.read(ApplyView.for_record(recorded), on_step=on_step)
        return PhaseOutcome(Phase.READ, record, tuple(recording.calls))

    def destroy(
        self,
        recorded: ResourceRecord,
        *,
        on_step: StepCallback = _no_step,
    ) -> PhaseOutcome:
        """Forget *recorded* without contacting the target."""
        release(recorded, on_step=on_step)
        return PhaseOutcome(Phase.DESTROY, None, ())

    def run(
        self,
        phase: Phase | str,
        *,
        desired: Mapping[str, object] | None = None,
        recorded: ResourceRecord | None = None,
        on_step: StepCallback = _no_step,
    ) -> PhaseOutcome:
        """Dispatch to the handler for *phase*."""
        phase = Phase(phase)
        if phase in (Phase.PLAN, Phase.APPLY):
            if desired is None:
                raise ValueError(f"The {phase.value} phase needs desired attributes.")
            if phase is Phase.PLAN:
                return self.plan(desired, recorded, on_step=on_step)
            return self.apply(desired, recorded, on_step=on_step)
        if recorded is None:
            raise ValueError(f"The {phase.value} phase needs a recorded resource.")
        if phase is Phase.READ:
            return self.read(recorded, on_step=on_step)
        return self.destroy(recorded, on_step=on_step)


__all__ = [
    "Converger",
    "Phase",
    "PhaseOutcome",
    "Plan",
    "PlanDiffer",
    "ResourceEngine",
    "StateReader",
    "new_identity",
    "release",
]
