"""Toolchain providers for nixosctl.

Concrete providers live in their own modules (``nixosctl.providers.nix``);
this package exports the interface and error taxonomy the engine relies on.
"""
from __future__ import annotations

from .base import (
    ActivationError,
    BuildError,
    CleanupError,
    QueryError,
    ReachabilityTimeoutError,
    Toolchain,
    ToolchainError,
)

__all__ = [
    "ActivationError",
    "BuildError",
    "CleanupError",
    "QueryError",
    "ReachabilityTimeoutError",
    "Toolchain",
    "ToolchainError",
]
