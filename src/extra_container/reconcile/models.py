"""Data models shared by the reconciliation pipeline."""
from __future__ import annotations

import re
from collections.abc import Iterable, Iterator, Mapping
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

UNIT_PREFIX = "container@"
UNIT_SUFFIX = ".service"
CONFIG_SUFFIX = ".conf"

_NAME_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_-]*$")


class InputError(ValueError):
    """Raised when user input or a built bundle is missing required pieces."""


class InconsistentStateError(RuntimeError):
    """Raised when a changed container lacks artifacts it needs to be installed."""


@dataclass(frozen=True, order=True, slots=True)
class ContainerName:
    """Validated container identifier.

    Built once at the boundary (CLI argument or unit filename) and passed
    around as a value afterwards.
    """

    value: str

    def __post_init__(self) -> None:
        """Reject identifiers systemd or nixos-container would not accept."""
        if not _NAME_PATTERN.match(self.value):
            raise InputError(f"Invalid container name: {self.value!r}.")

    def __str__(self) -> str:
        """Return the bare container name."""
        return self.value

    @property
    def unit_name(self) -> str:
        """Return the systemd unit name, ``container@<name>.service``."""
        return f"{UNIT_PREFIX}{self.value}{UNIT_SUFFIX}"

    @property
    def config_name(self) -> str:
        """Return the config filename, ``<name>.conf``."""
        return f"{self.value}{CONFIG_SUFFIX}"

    @classmethod
    def from_unit_filename(cls, filename: str) -> ContainerName | None:
        """Parse ``container@<name>.service``; return ``None`` for other files."""
        if not (filename.startswith(UNIT_PREFIX) and filename.endswith(UNIT_SUFFIX)):
            return None
        raw = filename[len(UNIT_PREFIX) : -len(UNIT_SUFFIX)]
        if not raw or not _NAME_PATTERN.match(raw):
            return None
        return cls(raw)


@dataclass(frozen=True, slots=True)
class ContainerArtifacts:
    """Paths of the service unit and config file for one container."""

    unit: Path
    config: Path

    def resolved(self) -> ContainerArtifacts:
        """Return a copy with both paths fully resolved through symlinks."""
        return ContainerArtifacts(
            unit=Path(self.unit).resolve(),
            config=Path(self.config).resolve(),
        )


@dataclass(slots=True)
class ContainerDescriptor:
    """A desired container along with whatever is known about its installed state."""

    name: ContainerName
    artifacts: ContainerArtifacts
    installed: ContainerArtifacts | None = None


@dataclass(frozen=True)
class DesiredBundle:
    """Every container produced by a single build."""

    root: Path
    containers: tuple[ContainerDescriptor, ...] = ()

    def __iter__(self) -> Iterator[ContainerDescriptor]:
        """Iterate over descriptors in discovery order."""
        return iter(self.containers)

    def __len__(self) -> int:
        """Return the number of desired containers."""
        return len(self.containers)

    @property
    def names(self) -> tuple[ContainerName, ...]:
        """Return desired container names in discovery order."""
        return tuple(descriptor.name for descriptor in self.containers)

    def get(self, name: ContainerName) -> ContainerDescriptor | None:
        """Return the descriptor for *name* if it is part of the bundle."""
        for descriptor in self.containers:
            if descriptor.name == name:
                return descriptor
        return None


class ChangeKind(str, Enum):
    """Whether a container's installed links already match the bundle."""

    UNCHANGED = "unchanged"
    CHANGED = "changed"


@dataclass(frozen=True)
class ChangeClassification:
    """Mapping of desired container names to their :class:`ChangeKind`."""

    kinds: Mapping[ContainerName, ChangeKind] = field(default_factory=dict)

    @property
    def changed(self) -> tuple[ContainerName, ...]:
        """Return changed (including new) containers in bundle order."""
        return tuple(name for name, kind in self.kinds.items() if kind is ChangeKind.CHANGED)

    @property
    def unchanged(self) -> tuple[ContainerName, ...]:
        """Return containers whose links already match."""
        return tuple(name for name, kind in self.kinds.items() if kind is ChangeKind.UNCHANGED)

    def is_changed(self, name: ContainerName) -> bool:
        """Return ``True`` when *name* needs (re)installation."""
        return self.kinds.get(name) is ChangeKind.CHANGED


class ActivationMode(str, Enum):
    """Policy applied after installation."""

    NONE = "none"
    START = "start"
    RESTART_CHANGED = "restart-changed"


@dataclass(frozen=True)
class ActivationPlan:
    """Disjoint sets of containers to start, restart, or leave running."""

    to_start: tuple[ContainerName, ...] = ()
    to_restart: tuple[ContainerName, ...] = ()
    unchanged_running: tuple[ContainerName, ...] = ()

    def __post_init__(self) -> None:
        """Guard against a container being both started and restarted."""
        overlap = set(self.to_start) & set(self.to_restart)
        if overlap:
            joined = ", ".join(sorted(str(name) for name in overlap))
            raise ValueError(f"Containers cannot be both started and restarted: {joined}.")

    @property
    def is_empty(self) -> bool:
        """Return ``True`` when nothing needs to be started or restarted."""
        return not self.to_start and not self.to_restart


class StopOutcome(str, Enum):
    """Result of a best-effort stop."""

    STOPPED = "stopped"
    NOT_RUNNING = "not-running"
    FAILED = "failed"


def names_from(values: Iterable[str]) -> tuple[ContainerName, ...]:
    """Build :class:`ContainerName` values from raw strings, dropping duplicates."""
    seen: dict[ContainerName, None] = {}
    for value in values:
        seen.setdefault(ContainerName(value.strip()), None)
    return tuple(seen)


__all__ = [
    "ActivationMode",
    "ActivationPlan",
    "ChangeClassification",
    "ChangeKind",
    "ContainerArtifacts",
    "ContainerDescriptor",
    "ContainerName",
    "DesiredBundle",
    "InconsistentStateError",
    "InputError",
    "StopOutcome",
    "names_from",
]
