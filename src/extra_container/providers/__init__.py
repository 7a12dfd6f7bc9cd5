"""Provider interfaces for extra-container."""
from __future__ import annotations

from .nix import BuildError, BuildRequest, NixBuilder
from .nixos_container import ContainerBackendError, NixosContainerProvider
from .systemd import SystemdError, SystemdProvider

__all__ = [
    "BuildError",
    "BuildRequest",
    "ContainerBackendError",
    "NixBuilder",
    "NixosContainerProvider",
    "SystemdError",
    "SystemdProvider",
]
