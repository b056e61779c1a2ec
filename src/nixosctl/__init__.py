"""nixosctl package bootstrap.

Exposes the package version used by the CLI ``--version`` flag and by the
structured operation log context.
"""
from __future__ import annotations

__all__ = ["__version__", "get_version"]

# NOTE: Keep in sync with ``version`` in ``pyproject.toml``.
__version__ = "0.1.0a0"


def get_version() -> str:
    """Return the current package version."""
    return __version__
