"""Remove installed containers and their persistent state."""
from __future__ import annotations

from collections.abc import Callable, Sequence
from dataclasses import dataclass, field

from ..providers.nixos_container import ContainerBackendError, NixosContainerProvider
from ..providers.systemd import SystemdError, SystemdProvider
from ..state.links import LinkRemoval, LinkRepository
from .models import ContainerName, StopOutcome


@dataclass(slots=True)
class DestroyOutcome:
    """Per-container record of what :func:`destroy` did."""

    name: ContainerName
    stop: StopOutcome
    removal: LinkRemoval
    errors: list[str] = field(default_factory=list)

    @property
    def failed(self) -> bool:
        """Return ``True`` when any step for this container failed."""
        return bool(self.errors)


@dataclass(slots=True)
class DestroyReport:
    """Aggregate result across every destroyed container."""

    outcomes: list[DestroyOutcome] = field(default_factory=list)
    reloaded: bool = False
    reload_error: str | None = None

    @property
    def failures(self) -> list[DestroyOutcome]:
        """Return outcomes with at least one failed step."""
        return [outcome for outcome in self.outcomes if outcome.failed]

    @property
    def ok(self) -> bool:
        """Return ``True`` when every container and the final reload succeeded."""
        return not self.failures and self.reload_error is None


def destroy(
    targets: Sequence[ContainerName],
    *,
    repository: LinkRepository,
    systemd: SystemdProvider,
    backend: NixosContainerProvider,
    on_destroy: Callable[[ContainerName], None] | None = None,
) -> DestroyReport:
    """Stop, unlink and destroy every target, continuing past failures.

    systemd reloads its unit database once at the end when any unit link
    was removed.
    """
    report = DestroyReport()
    reload_required = False
    for name in targets:
        if on_destroy is not None:
            on_destroy(name)
        errors: list[str] = []
        stop = systemd.stop_if_running(name)
        try:
            removal = repository.unlink(name)
        except OSError as exc:
            removal = LinkRemoval(unit=not repository.unit_link(name).is_symlink())
            errors.append(f"removing links for {name} failed: {exc}")
        reload_required = reload_required or removal.reload_required
        try:
            backend.destroy(name)
        except ContainerBackendError as exc:
            errors.append(str(exc))
        report.outcomes.append(
            DestroyOutcome(name=name, stop=stop, removal=removal, errors=errors)
        )

    if reload_required:
        try:
            systemd.daemon_reload()
            report.reloaded = True
        except SystemdError as exc:
            report.reload_error = str(exc)
    return report


__all__ = ["DestroyOutcome", "DestroyReport", "destroy"]
