"""Pytest configuration helpers for the test suite."""

from __future__ import annotations

import os
from collections.abc import Callable, Sequence
from pathlib import Path

import pytest

from extra_container.state import LinkRepository

BundleFactory = Callable[..., Path]


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    """Skip expensive tests during mutation runs."""
    if not os.environ.get("MUTANT_UNDER_TEST"):
        return
    skip_marker = pytest.mark.skip(reason="Skipped during mutation run to avoid timeouts.")
    for item in items:
        if "mutation_timeout" in item.keywords:
            item.add_marker(skip_marker)


def write_bundle(
    root: Path,
    names: Sequence[str],
    *,
    missing_config: Sequence[str] = (),
) -> Path:
    """Create a bundle directory shaped like NixOS' ``system.build.etc``."""
    units = root / "etc" / "systemd" / "system"
    configs = root / "etc" / "containers"
    units.mkdir(parents=True, exist_ok=True)
    configs.mkdir(parents=True, exist_ok=True)
    for name in names:
        (units / f"container@{name}.service").write_text(
            f"[Unit]\nDescription=Container '{name}' ({root.name})\n",
            encoding="utf-8",
        )
        if name in missing_config:
            continue
        (configs / f"{name}.conf").write_text(
            f"PRIVATE_NETWORK=0\n# {root.name}\n",
            encoding="utf-8",
        )
    return root


@pytest.fixture
def bundle_factory(tmp_path: Path) -> BundleFactory:
    """Return a factory creating bundles under a fake Nix store."""
    store = tmp_path / "store"

    def _make(
        generation: str,
        names: Sequence[str],
        *,
        missing_config: Sequence[str] = (),
    ) -> Path:
        return write_bundle(
            store / f"{generation}-etc",
            names,
            missing_config=missing_config,
        )

    return _make


@pytest.fixture
def repository(tmp_path: Path) -> LinkRepository:
    """Return a link repository rooted in the temporary directory."""
    return LinkRepository(
        unit_dir=tmp_path / "units",
        config_dir=tmp_path / "containers",
        gcroots_dir=tmp_path / "gcroots",
    )
