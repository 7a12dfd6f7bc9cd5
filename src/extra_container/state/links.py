"""On-disk link layout for installed containers.

Three directories make up the installed state:

* ``unit_dir`` holds ``container@<name>.service`` links picked up by systemd.
* ``config_dir`` holds ``<name>.conf`` links read by the container unit.
* ``gcroots_dir`` holds garbage-collection roots pointing at the two links
  above so the Nix collector keeps their targets alive.

Links are replaced atomically (temporary link + ``os.replace``) so a reader
never observes a missing entry while it is being updated.
"""
from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

from ..reconcile.models import ContainerArtifacts, ContainerName


@dataclass(slots=True)
class LinkRemoval:
    """What :meth:`LinkRepository.unlink` actually removed."""

    config: bool = False
    unit: bool = False
    gcroots: list[Path] = field(default_factory=list)

    @property
    def reload_required(self) -> bool:
        """Return ``True`` when systemd must re-read its unit directory."""
        return self.unit


@dataclass(frozen=True)
class LinkRepository:
    """Read and write the links that make a container installed."""

    unit_dir: Path
    config_dir: Path
    gcroots_dir: Path

    def unit_link(self, name: ContainerName) -> Path:
        """Return the unit link path for *name*."""
        return self.unit_dir / name.unit_name

    def config_link(self, name: ContainerName) -> Path:
        """Return the config link path for *name*."""
        return self.config_dir / name.config_name

    def gcroot_links(self, name: ContainerName) -> tuple[Path, Path]:
        """Return the (unit, config) garbage-collection root paths for *name*."""
        return (
            self.gcroots_dir / name.unit_name,
            self.gcroots_dir / name.config_name,
        )

    # ------------------------------------------------------------------
    def list_installed(self) -> frozenset[ContainerName]:
        """Return containers with a unit entry in ``unit_dir``.

        A missing directory means nothing is installed.
        """
        try:
            entries = list(self.unit_dir.iterdir())
        except FileNotFoundError:
            return frozenset()
        names: set[ContainerName] = set()
        for entry in entries:
            name = ContainerName.from_unit_filename(entry.name)
            if name is not None:
                names.add(name)
        return frozenset(names)

    def resolve(self, name: ContainerName) -> ContainerArtifacts | None:
        """Return the resolved targets of both links, or ``None`` when either is absent."""
        unit = self.unit_link(name)
        config = self.config_link(name)
        if not unit.exists() or not config.exists():
            return None
        return ContainerArtifacts(unit=unit.resolve(), config=config.resolve())

    def link(self, name: ContainerName, artifacts: ContainerArtifacts) -> None:
        """Point the unit, config and gcroot links for *name* at *artifacts*."""
        self.config_dir.mkdir(parents=True, exist_ok=True)
        self.unit_dir.mkdir(parents=True, exist_ok=True)
        unit_link = self.unit_link(name)
        config_link = self.config_link(name)
        _replace_symlink(unit_link, artifacts.unit)
        _replace_symlink(config_link, artifacts.config)

        self.gcroots_dir.mkdir(parents=True, exist_ok=True)
        unit_root, config_root = self.gcroot_links(name)
        _replace_symlink(unit_root, unit_link)
        _replace_symlink(config_root, config_link)

    def unlink(self, name: ContainerName) -> LinkRemoval:
        """Remove every link owned by *name*; missing links are skipped."""
        removal = LinkRemoval()
        removal.config = _remove(self.config_link(name))
        removal.unit = _remove(self.unit_link(name))
        for root in self.gcroot_links(name):
            if _remove(root):
                removal.gcroots.append(root)
        return removal


def _replace_symlink(link: Path, target: Path) -> None:
    temp_link = link.with_name(f".{link.name}.extra-container.tmp")
    if temp_link.exists() or temp_link.is_symlink():
        temp_link.unlink()
    temp_link.symlink_to(target)
    os.replace(temp_link, link)


def _remove(path: Path) -> bool:
    try:
        path.unlink()
    except FileNotFoundError:
        return False
    return True


__all__ = ["LinkRemoval", "LinkRepository"]
