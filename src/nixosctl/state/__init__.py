"""Persistent state registry for managed resources."""
from __future__ import annotations

from .registry import RESOURCES_FILE, StateRegistry, StateRegistryError

__all__ = ["RESOURCES_FILE", "StateRegistry", "StateRegistryError"]
