"""Locate or build the directory holding desired container artifacts.

A bundle is any directory with the layout produced by NixOS'
``system.build.etc``::

    <bundle>/etc/systemd/system/container@<name>.service
    <bundle>/etc/containers/<name>.conf
"""
from __future__ import annotations

import signal
import tempfile
import threading
from collections.abc import Iterator
from contextlib import ExitStack, contextmanager
from pathlib import Path
from types import FrameType

from ..providers.nix import BuildError, BuildRequest, NixBuilder
from .models import ContainerArtifacts, ContainerDescriptor, ContainerName, DesiredBundle

SERVICES_SUBDIR = Path("etc/systemd/system")
CONFIGS_SUBDIR = Path("etc/containers")

_CLEANUP_SIGNALS = (signal.SIGTERM, signal.SIGHUP)


def is_bundle_dir(path: Path) -> bool:
    """Return ``True`` when *path* looks like a pre-built bundle."""
    return path.is_dir() and (path / "etc").is_dir()


def locate_bundle(path: Path) -> DesiredBundle:
    """Collect every container unit and its config file under *path*."""
    root = path.expanduser()
    services_dir = root / SERVICES_SUBDIR
    if not services_dir.is_dir():
        raise BuildError(f"No services directory in bundle: {services_dir}")

    descriptors: list[ContainerDescriptor] = []
    for entry in sorted(services_dir.iterdir(), key=lambda item: item.name):
        name = ContainerName.from_unit_filename(entry.name)
        if name is None:
            continue
        descriptors.append(
            ContainerDescriptor(
                name=name,
                artifacts=ContainerArtifacts(
                    unit=entry,
                    config=root / CONFIGS_SUBDIR / name.config_name,
                ),
            )
        )
    if not descriptors:
        raise BuildError(f"No container services found in {services_dir}")
    return DesiredBundle(root=root, containers=tuple(descriptors))


@contextmanager
def _signals_raise_exit() -> Iterator[None]:
    """Turn termination signals into ``SystemExit`` so cleanup handlers run."""
    if threading.current_thread() is not threading.main_thread():
        yield
        return

    def _handler(signum: int, frame: FrameType | None) -> None:
        raise SystemExit(128 + signum)

    with ExitStack() as stack:
        for signum in _CLEANUP_SIGNALS:
            previous = signal.signal(signum, _handler)
            stack.callback(signal.signal, signum, previous)
        yield


@contextmanager
def scoped_workdir(parent: Path | None = None) -> Iterator[Path]:
    """Yield a temporary directory removed on every exit path, signals included."""
    if parent is not None:
        parent.mkdir(parents=True, exist_ok=True)
    with _signals_raise_exit():
        with tempfile.TemporaryDirectory(
            prefix="extra-container-",
            dir=str(parent) if parent is not None else None,
        ) as raw:
            yield Path(raw)


@contextmanager
def build_bundle(
    builder: NixBuilder,
    request: BuildRequest,
    *,
    tmp_dir: Path | None = None,
) -> Iterator[DesiredBundle]:
    """Build *request* and yield the resulting bundle.

    The out-link inside the working directory keeps the result alive until
    the caller has installed its own garbage-collection roots.
    """
    with scoped_workdir(tmp_dir) as workdir:
        result_path = builder.build(request, workdir)
        yield locate_bundle(result_path)


__all__ = [
    "BuildError",
    "build_bundle",
    "is_bundle_dir",
    "locate_bundle",
    "scoped_workdir",
]
