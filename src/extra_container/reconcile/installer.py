"""Install changed containers by re-pointing their links."""
from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field

from ..state.links import LinkRepository
from .models import ChangeClassification, ContainerName, DesiredBundle


@dataclass(slots=True)
class InstallResult:
    """Containers whose links were replaced during installation."""

    installed: list[ContainerName] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        """Return ``True`` when at least one container was (re)linked."""
        return bool(self.installed)

    @property
    def reload_required(self) -> bool:
        """Return ``True`` when systemd must reload its unit database."""
        return self.changed


def install(
    bundle: DesiredBundle,
    classification: ChangeClassification,
    repository: LinkRepository,
    *,
    on_install: Callable[[ContainerName], None] | None = None,
) -> InstallResult:
    """Link the resolved artifacts of every changed container.

    Unchanged containers and running instances are left alone.
    """
    result = InstallResult()
    for name in classification.changed:
        descriptor = bundle.get(name)
        if descriptor is None:
            continue
        if on_install is not None:
            on_install(name)
        repository.link(name, descriptor.artifacts.resolved())
        result.installed.append(name)
    return result


__all__ = ["InstallResult", "install"]
