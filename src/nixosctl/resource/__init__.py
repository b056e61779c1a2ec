"""The ``nixos`` resource: schema, views, resolution and the convergence engine."""
from __future__ import annotations

from .engine import (
    Converger,
    Phase,
    PhaseOutcome,
    Plan,
    PlanDiffer,
    ResourceEngine,
    StateReader,
    new_identity,
    release,
)
from .settings import DeploymentConfig, RebuildView, absolute_config_path, resolve_config
from .views import ApplyView, FieldSource, PlanView, ResourceRecord

__all__ = [
    "ApplyView",
    "Converger",
    "DeploymentConfig",
    "FieldSource",
    "Phase",
    "PhaseOutcome",
    "Plan",
    "PlanDiffer",
    "PlanView",
    "RebuildView",
    "ResourceEngine",
    "ResourceRecord",
    "StateReader",
    "absolute_config_path",
    "new_identity",
    "release",
    "resolve_config",
]
