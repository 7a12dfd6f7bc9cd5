"""Classify desired containers as changed or unchanged."""
from __future__ import annotations

from collections.abc import Iterable

from ..state.links import LinkRepository
from .models import (
    ChangeClassification,
    ChangeKind,
    ContainerName,
    DesiredBundle,
    InconsistentStateError,
)


def classify(
    bundle: DesiredBundle,
    installed: Iterable[ContainerName],
    repository: LinkRepository,
) -> ChangeClassification:
    """Compare every desired container with its installed links.

    A container is unchanged only when it is installed, both of its links
    exist, and both resolve to exactly the same paths as the freshly built
    artifacts. New containers count as changed.
    """
    installed_set = frozenset(installed)
    kinds: dict[ContainerName, ChangeKind] = {}
    for descriptor in bundle:
        name = descriptor.name
        if name not in installed_set:
            kinds[name] = ChangeKind.CHANGED
            continue
        current = repository.resolve(name)
        descriptor.installed = current
        if current is None:
            kinds[name] = ChangeKind.CHANGED
            continue
        desired = descriptor.artifacts.resolved()
        if current.unit == desired.unit and current.config == desired.config:
            kinds[name] = ChangeKind.UNCHANGED
        else:
            kinds[name] = ChangeKind.CHANGED
    return ChangeClassification(kinds=kinds)


def verify_changed_artifacts(
    bundle: DesiredBundle,
    classification: ChangeClassification,
) -> None:
    """Abort before installing anything if a changed container lacks its config."""
    missing: list[str] = []
    for name in classification.changed:
        descriptor = bundle.get(name)
        if descriptor is None or not descriptor.artifacts.config.exists():
            missing.append(str(name))
    if missing:
        joined = ", ".join(missing)
        raise InconsistentStateError(
            f"Missing container config in built bundle for: {joined}."
        )


__all__ = ["classify", "verify_changed_artifacts"]
