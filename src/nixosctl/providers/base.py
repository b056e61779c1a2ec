"""Toolchain interface consumed by the convergence engine.

Everything that touches a host (probing it, collecting garbage, building and
activating a system, asking which system is active) goes through a
:class:`Toolchain`. The engine only sees this interface, so the whole apply
sequence can be exercised against a deterministic fake.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from ..reachability import ProbeReport
    from ..resource.settings import RebuildView


class ToolchainError(RuntimeError):
    """Base class for failures reported by a toolchain."""


class ReachabilityTimeoutError(ToolchainError):
    """Raised when a host did not accept a session within the timeout."""

    def __init__(self, target: str, timeout: float, attempts: int) -> None:
        """Record the unreachable target and how hard we tried."""
        self.target = target
        self.timeout = timeout
        self.attempts = attempts
        super().__init__(
            f"Timed out after {timeout:g}s waiting for ssh on {target} "
            f"({attempts} attempt{'s' if attempts != 1 else ''})."
        )


class BuildError(ToolchainError):
    """Raised when the desired system cannot be built."""


class CleanupError(ToolchainError):
    """Raised when garbage collection on the target fails."""


class ActivationError(ToolchainError):
    """Raised when copying or switching to a system fails."""


class QueryError(ToolchainError):
    """Raised when the active system cannot be determined."""


class Toolchain(ABC):
    """Abstract base class for build and activation toolchains."""

    @abstractmethod
    def probe(self, user: str, host: str, ssh_opts: str, timeout: float) -> ProbeReport:
        """Block until a session to ``user@host`` succeeds.

        Raises:
            ReachabilityTimeoutError: If *timeout* seconds elapse first.
        """

    @abstractmethod
    def collect_garbage(self, user: str, host: str, ssh_opts: str) -> None:
        """Remove unreferenced store paths on the target.

        Raises:
            CleanupError: If garbage collection fails.
        """

    @abstractmethod
    def build_image(self, view: RebuildView) -> str:
        """Build the desired system and return its store path.

        Raises:
            BuildError: If evaluation or building fails.
        """

    @abstractmethod
    def activate_image(self, view: RebuildView, image: str) -> None:
        """Copy *image* to the target and switch to it, running the hooks around it.

        Raises:
            ActivationError: If copying, a hook, or the switch fails.
        """

    @abstractmethod
    def query_active_image(self, view: RebuildView) -> str:
        """Return the store path of the system currently active on the target.

        Raises:
            QueryError: If the active system cannot be read.
        """


__all__ = [
    "ActivationError",
    "BuildError",
    "CleanupError",
    "QueryError",
    "ReachabilityTimeoutError",
    "Toolchain",
    "ToolchainError",
]
