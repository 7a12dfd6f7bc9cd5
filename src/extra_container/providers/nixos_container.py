"""Wrapper around the ``nixos-container`` lifecycle backend."""
from __future__ import annotations

import logging
import subprocess
from collections.abc import Sequence
from dataclasses import dataclass

from ..reconcile.models import ContainerName

LOGGER = logging.getLogger(__name__)


class ContainerBackendError(RuntimeError):
    """Raised when ``nixos-container`` fails."""


@dataclass(slots=True)
class NixosContainerProvider:
    """Delegate persistent container state to ``nixos-container``."""

    nixos_container_bin: str = "nixos-container"

    def destroy(self, name: ContainerName) -> subprocess.CompletedProcess[str]:
        """Tear down the persistent state of *name*."""
        args = [self.nixos_container_bin, "destroy", str(name)]
        LOGGER.debug("running %s", " ".join(args))
        try:
            result = subprocess.run(  # noqa: S603,S607
                args,
                capture_output=True,
                text=True,
                check=False,
            )
        except FileNotFoundError as exc:
            raise ContainerBackendError(f"{self.nixos_container_bin} not found: {exc}") from exc
        if result.returncode != 0:
            message = (result.stderr or "").strip() or (result.stdout or "").strip() or "no output"
            raise ContainerBackendError(
                f"{self.nixos_container_bin} destroy {name} failed "
                f"(exit {result.returncode}): {message}"
            )
        return result

    def passthrough(self, args: Sequence[str]) -> int:
        """Run ``nixos-container`` with *args* attached to the terminal."""
        command = [self.nixos_container_bin, *args]
        LOGGER.debug("passing through to %s", " ".join(command))
        try:
            result = subprocess.run(command, check=False)  # noqa: S603,S607
        except FileNotFoundError as exc:
            raise ContainerBackendError(f"{self.nixos_container_bin} not found: {exc}") from exc
        return result.returncode


__all__ = ["ContainerBackendError", "NixosContainerProvider"]
