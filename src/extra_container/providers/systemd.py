"""Systemd provider for managing ``container@`` service units."""
from __future__ import annotations

import logging
import subprocess
from collections.abc import Sequence
from dataclasses import dataclass

from ..reconcile.models import ContainerName, StopOutcome

LOGGER = logging.getLogger(__name__)

ACTIVE_STATE = "active"
STOPPED_STATES = frozenset({"inactive", "failed", "unknown"})


class SystemdError(RuntimeError):
    """Raised when systemd operations fail."""


@dataclass(slots=True)
class SystemdProvider:
    """Drive systemd for container units, batching names where systemctl allows."""

    systemctl_bin: str = "systemctl"

    def status(self, names: Sequence[ContainerName]) -> dict[ContainerName, str]:
        """Return the ActiveState for every name using a single ``is-active`` call.

        ``systemctl is-active`` exits non-zero as soon as one unit is not
        active, so the exit code is ignored and each output line is mapped to
        its unit. Names without an output line are reported as ``inactive``.
        """
        if not names:
            return {}
        result = self._systemctl(
            "is-active",
            [name.unit_name for name in names],
            check=False,
        )
        lines = [line.strip() for line in (result.stdout or "").splitlines()]
        states: dict[ContainerName, str] = {}
        for index, name in enumerate(names):
            state = lines[index] if index < len(lines) and lines[index] else "inactive"
            states[name] = state
        if result.returncode != 0:
            LOGGER.debug("is-active reported rc=%s for %d unit(s)", result.returncode, len(names))
        return states

    def active(self, names: Sequence[ContainerName]) -> set[ContainerName]:
        """Return the subset of *names* whose unit is currently active."""
        return {name for name, state in self.status(names).items() if state == ACTIVE_STATE}

    def start(self, names: Sequence[ContainerName]) -> subprocess.CompletedProcess[str]:
        """Start all *names* in one call."""
        return self._systemctl("start", [name.unit_name for name in names])

    def stop(
        self,
        names: Sequence[ContainerName],
        *,
        check: bool = True,
    ) -> subprocess.CompletedProcess[str]:
        """Stop all *names* in one call."""
        return self._systemctl("stop", [name.unit_name for name in names], check=check)

    def stop_if_running(self, name: ContainerName) -> StopOutcome:
        """Stop *name* unless systemd reports it fully stopped; never raises.

        Transitional states such as ``activating`` or ``deactivating`` still
        receive a stop.
        """
        try:
            if self.status([name])[name] in STOPPED_STATES:
                return StopOutcome.NOT_RUNNING
            self.stop([name])
        except SystemdError as exc:
            LOGGER.warning("stopping %s failed: %s", name.unit_name, exc)
            return StopOutcome.FAILED
        return StopOutcome.STOPPED

    def daemon_reload(self) -> subprocess.CompletedProcess[str]:
        """Ask systemd to re-read unit files."""
        return self._systemctl("daemon-reload")

    # ------------------------------------------------------------------
    def _systemctl(
        self,
        command: str,
        units: Sequence[str] = (),
        *,
        check: bool = True,
    ) -> subprocess.CompletedProcess[str]:
        args: list[str] = [self.systemctl_bin, command, *units]
        return self._run_command(
            args,
            check=check,
            error_prefix=f"{self.systemctl_bin} {command}",
        )

    def _run_command(
        self,
        args: Sequence[str],
        *,
        check: bool,
        error_prefix: str,
    ) -> subprocess.CompletedProcess[str]:
        LOGGER.debug("running %s", " ".join(args))
        try:
            result = subprocess.run(  # noqa: S603, S607
                list(args),
                capture_output=True,
                text=True,
                check=False,
            )
        except FileNotFoundError as exc:
            raise SystemdError(f"{args[0]} not found: {exc}") from exc
        if check and result.returncode != 0:
            stdout = getattr(result, "stdout", "") or ""
            stderr = getattr(result, "stderr", "") or ""
            message = stderr.strip() or stdout.strip() or "no output"
            raise SystemdError(f"{error_prefix} failed (exit {result.returncode}): {message}")
        return result


__all__ = ["SystemdError", "SystemdProvider"]
