"""Installed-state helpers for extra-container."""
from __future__ import annotations

from .links import LinkRemoval, LinkRepository

__all__ = ["LinkRemoval", "LinkRepository"]
