"""Pytest configuration helpers for the test suite."""

from __future__ import annotations

import itertools
from collections.abc import Callable
from typing import Any

import pytest

from nixosctl.providers.base import ReachabilityTimeoutError, Toolchain
from nixosctl.reachability import ProbeReport
from nixosctl.resource import ResourceEngine
from nixosctl.resource.settings import RebuildView

IMAGE_A = "/nix/store/aaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaa-nixos-system-web-24.05"
IMAGE_B = "/nix/store/bbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbb-nixos-system-web-24.05"


class FakeToolchain(Toolchain):
    """Deterministic toolchain that records call order and fails on demand."""

    def __init__(self, *, image: str = IMAGE_A, active: str = "") -> None:
        """Build *image* and report *active* until something is activated."""
        self.image = image
        self.active = active
        self.reachable = True
        self.failures: dict[str, Exception] = {}
        self.calls: list[str] = []
        self.probes: list[tuple[str, str, str, float]] = []
        self.activations: list[tuple[RebuildView, str]] = []

    def fail(self, call: str, error: Exception) -> None:
        """Make the next and every later *call* raise *error*."""
        self.failures[call] = error

    def _enter(self, call: str) -> None:
        self.calls.append(call)
        if call in self.failures:
            raise self.failures[call]

    def probe(self, user: str, host: str, ssh_opts: str, timeout: float) -> ProbeReport:
        self.probes.append((user, host, ssh_opts, timeout))
        self._enter("probe")
        if not self.reachable:
            raise ReachabilityTimeoutError(f"{user}@{host}", timeout, 3)
        return ProbeReport(attempts=1, elapsed=0.0)

    def collect_garbage(self, user: str, host: str, ssh_opts: str) -> None:
        self._enter("collect_garbage")

    def build_image(self, view: RebuildView) -> str:
        self._enter("build_image")
        return self.image

    def activate_image(self, view: RebuildView, image: str) -> None:
        self._enter("activate_image")
        self.activations.append((view, image))
        self.active = image

    def query_active_image(self, view: RebuildView) -> str:
        self._enter("query_active_image")
        return self.active


@pytest.fixture
def toolchain() -> FakeToolchain:
    """Return a fresh fake toolchain."""
    return FakeToolchain()


@pytest.fixture
def id_factory() -> Callable[[], str]:
    """Return a factory producing ``id-1``, ``id-2`` and so on."""
    counter = itertools.count(1)
    return lambda: f"id-{next(counter)}"


@pytest.fixture
def engine(toolchain: FakeToolchain, id_factory: Callable[[], str]) -> ResourceEngine:
    """Return an engine wired to the fake toolchain and an empty environment."""
    return ResourceEngine(toolchain, env={}, id_factory=id_factory)


@pytest.fixture
def desired() -> dict[str, Any]:
    """Return a minimal desired attribute set."""
    return {"target_host": "10.0.0.5", "nixos_config": "/etc/nixos/web.nix"}
