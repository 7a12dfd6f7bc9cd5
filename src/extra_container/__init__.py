"""extra-container package bootstrap.

Exposes version metadata that the CLI and packaging machinery rely upon.
"""
from __future__ import annotations

__all__ = ["__version__", "get_version"]

# NOTE: The version is duplicated in ``pyproject.toml`` and managed by Hatch.
__version__ = "0.2.0"


def get_version() -> str:
    """Return the current package version."""
    return __version__
