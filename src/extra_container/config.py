"""Configuration loader for extra-container.

Values are merged from several sources, later sources winning:

1. Built-in defaults.
2. ``/etc/extra-container/config.yml`` (or an override path).
3. Environment variables prefixed with ``EXTRA_CONTAINER_``.
4. Explicit overrides supplied programmatically (reserved for CLI flags).

Environment keys use double underscores to express nesting, e.g.::

    export EXTRA_CONTAINER_SYSTEMD__UNIT_DIR=/etc/systemd-mutable/system
    export EXTRA_CONTAINER_ACTIVATION__RESTART_SETTLE_SECONDS=1

Values are coerced via PyYAML's ``safe_load`` so that booleans and numbers are
parsed naturally. The resulting configuration is exposed as immutable
``dataclasses``.
"""
from __future__ import annotations

import os
from collections.abc import Mapping, MutableMapping
from dataclasses import dataclass
from pathlib import Path
from typing import cast

try:  # PyYAML is a runtime dependency (declared in pyproject.toml).
    import yaml
except Exception as exc:  # pragma: no cover - import failure covered in tests
    raise RuntimeError(
        "PyYAML is required to load extra-container configuration. Install with "
        "`pip install extra-container` or ensure PyYAML>=6.0 is available."
    ) from exc


ENV_PREFIX = "EXTRA_CONTAINER_"
CONFIG_ENV_VAR = f"{ENV_PREFIX}CONFIG_FILE"
RESERVED_ENV_KEYS = {CONFIG_ENV_VAR}


class ConfigError(RuntimeError):
    """Raised when configuration parsing fails."""


@dataclass(frozen=True)
class SystemdConfig:
    """Supervisor integration values."""

    unit_dir: Path = Path("/etc/systemd-mutable/system")
    systemctl_bin: str = "systemctl"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"unit_dir": str(self.unit_dir), "systemctl_bin": self.systemctl_bin}


@dataclass(frozen=True)
class BuilderConfig:
    """Settings for building container bundles with Nix."""

    nix_build_bin: str = "nix-build"
    nixos_path: str = "<nixpkgs/nixos>"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"nix_build_bin": self.nix_build_bin, "nixos_path": self.nixos_path}


@dataclass(frozen=True)
class LifecycleConfig:
    """Settings for the per-container lifecycle backend."""

    nixos_container_bin: str = "nixos-container"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"nixos_container_bin": self.nixos_container_bin}


@dataclass(frozen=True)
class ActivationConfig:
    """Timing knobs used while restarting containers."""

    restart_settle_seconds: float = 0.5

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"restart_settle_seconds": self.restart_settle_seconds}


@dataclass(frozen=True)
class AppConfig:
    """Resolved configuration values for extra-container."""

    config_file: Path
    logs_dir: Path
    config_dir: Path
    gcroots_dir: Path
    tmp_dir: Path | None
    systemd: SystemdConfig
    builder: BuilderConfig
    lifecycle: LifecycleConfig
    activation: ActivationConfig

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation of the config."""
        return {
            "config_file": str(self.config_file),
            "logs_dir": str(self.logs_dir),
            "config_dir": str(self.config_dir),
            "gcroots_dir": str(self.gcroots_dir),
            "tmp_dir": str(self.tmp_dir) if self.tmp_dir is not None else None,
            "systemd": self.systemd.to_dict(),
            "builder": self.builder.to_dict(),
            "lifecycle": self.lifecycle.to_dict(),
            "activation": self.activation.to_dict(),
        }


DEFAULTS: dict[str, object] = {
    "config_file": "/etc/extra-container/config.yml",
    "logs_dir": "/var/log/extra-container",
    "config_dir": "/etc/containers",
    "gcroots_dir": "/nix/var/nix/gcroots/extra-container",
    "tmp_dir": None,
    "systemd": {
        "unit_dir": "/etc/systemd-mutable/system",
        "systemctl_bin": "systemctl",
    },
    "builder": {
        "nix_build_bin": "nix-build",
        "nixos_path": "<nixpkgs/nixos>",
    },
    "lifecycle": {
        "nixos_container_bin": "nixos-container",
    },
    "activation": {
        "restart_settle_seconds": 0.5,
    },
}

ALLOWED_TOP_LEVEL_KEYS = set(DEFAULTS.keys())
_ALLOWED_NESTED_KEYS: dict[str, set[str]] = {
    "systemd": {"unit_dir", "systemctl_bin"},
    "builder": {"nix_build_bin", "nixos_path"},
    "lifecycle": {"nixos_container_bin"},
    "activation": {"restart_settle_seconds"},
}


def load_config(
    config_file: str | os.PathLike[str] | None = None,
    *,
    env: Mapping[str, str] | None = None,
    overrides: Mapping[str, object] | None = None,
) -> AppConfig:
    """Load and merge configuration sources into an :class:`AppConfig`."""
    merged: dict[str, object] = _deep_copy(DEFAULTS)
    resolved_env = dict(os.environ if env is None else env)

    config_default = _expect_str(merged["config_file"], "config_file")
    config_path = _determine_config_path(config_default, config_file, resolved_env)

    file_values = _load_yaml_file(config_path)
    if file_values:
        _deep_merge(merged, file_values)

    env_values = _build_env_overrides(resolved_env)
    if env_values:
        _deep_merge(merged, env_values)

    if overrides:
        _deep_merge(merged, dict(overrides))

    merged["config_file"] = str(config_path)

    _validate_structure(merged)

    return _build_app_config(merged)


def _determine_config_path(
    default_path: str,
    cli_override: str | os.PathLike[str] | None,
    env: Mapping[str, str],
) -> Path:
    if cli_override:
        return Path(cli_override)
    if CONFIG_ENV_VAR in env:
        return Path(env[CONFIG_ENV_VAR])
    return Path(default_path)


def _load_yaml_file(path: Path) -> dict[str, object]:
    if not path.exists():
        return {}
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:  # pragma: no cover - PyYAML owns detailed error
        raise ConfigError(f"Failed to parse config file {path}: {exc}") from exc
    if not isinstance(data, Mapping):
        raise ConfigError(f"Config file {path} must contain a mapping at the top level.")
    return _as_dict(data, f"file:{path}")


def _validate_structure(raw: Mapping[str, object]) -> None:
    unknown_keys = set(raw.keys()) - ALLOWED_TOP_LEVEL_KEYS
    if unknown_keys:
        joined = ", ".join(sorted(unknown_keys))
        raise ConfigError(f"Unknown configuration keys: {joined}.")

    for section, allowed in _ALLOWED_NESTED_KEYS.items():
        section_map = _as_dict(raw.get(section), section)
        unknown = set(section_map.keys()) - allowed
        if unknown:
            joined = ", ".join(sorted(unknown))
            raise ConfigError(f"Unknown {section} configuration keys: {joined}.")


def _build_app_config(raw: Mapping[str, object]) -> AppConfig:
    tmp_dir_value = raw.get("tmp_dir")
    tmp_dir = _to_path(tmp_dir_value) if tmp_dir_value else None

    systemd_mapping = _as_dict(raw.get("systemd"), "systemd")
    systemd = SystemdConfig(
        unit_dir=_to_path(systemd_mapping.get("unit_dir", "/etc/systemd-mutable/system")),
        systemctl_bin=str(systemd_mapping.get("systemctl_bin", "systemctl")),
    )

    builder_mapping = _as_dict(raw.get("builder"), "builder")
    builder = BuilderConfig(
        nix_build_bin=str(builder_mapping.get("nix_build_bin", "nix-build")),
        nixos_path=str(builder_mapping.get("nixos_path", "<nixpkgs/nixos>")),
    )

    lifecycle_mapping = _as_dict(raw.get("lifecycle"), "lifecycle")
    lifecycle = LifecycleConfig(
        nixos_container_bin=str(
            lifecycle_mapping.get("nixos_container_bin", "nixos-container")
        ),
    )

    activation_mapping = _as_dict(raw.get("activation"), "activation")
    activation = ActivationConfig(
        restart_settle_seconds=_expect_non_negative_float(
            activation_mapping.get("restart_settle_seconds"),
            "activation.restart_settle_seconds",
            default=0.5,
        ),
    )

    return AppConfig(
        config_file=_to_path(raw.get("config_file")),
        logs_dir=_to_path(raw.get("logs_dir")),
        config_dir=_to_path(raw.get("config_dir")),
        gcroots_dir=_to_path(raw.get("gcroots_dir")),
        tmp_dir=tmp_dir,
        systemd=systemd,
        builder=builder,
        lifecycle=lifecycle,
        activation=activation,
    )


def _build_env_overrides(env: Mapping[str, str]) -> dict[str, object]:
    overrides: dict[str, object] = {}
    for key, value in env.items():
        if key in RESERVED_ENV_KEYS:
            continue
        if not key.startswith(ENV_PREFIX):
            continue
        suffix = key[len(ENV_PREFIX) :]
        path_segments = [segment.lower() for segment in suffix.split("__") if segment]
        if not path_segments:
            continue
        _assign_nested(overrides, path_segments, _coerce_value(value))
    return overrides


def _assign_nested(tree: MutableMapping[str, object], path: list[str], value: object) -> None:
    current: MutableMapping[str, object] = tree
    for segment in path[:-1]:
        existing = current.get(segment)
        if existing is None:
            new_child: MutableMapping[str, object] = {}
            current[segment] = new_child
            current = new_child
            continue
        if isinstance(existing, MutableMapping):
            current = cast(MutableMapping[str, object], existing)
            continue
        raise ConfigError(
            "Environment overrides conflict with existing scalar value at "
            f"{'.'.join(path)}"
        )
    current[path[-1]] = value


def _deep_merge(target: MutableMapping[str, object], overrides: Mapping[str, object]) -> None:
    for key, value in overrides.items():
        existing = target.get(key)
        if isinstance(existing, MutableMapping) and isinstance(value, Mapping):
            _deep_merge(existing, _as_dict(value, f"merge.{key}"))
            continue
        target[key] = value


def _deep_copy(source: Mapping[str, object]) -> dict[str, object]:
    result: dict[str, object] = {}
    for key, value in source.items():
        if isinstance(value, Mapping):
            result[key] = _deep_copy(_as_dict(value, f"copy.{key}"))
        else:
            result[key] = value
    return result


def _coerce_value(raw: str) -> object:
    raw = raw.strip()
    try:
        parsed = yaml.safe_load(raw)
    except yaml.YAMLError:  # pragma: no cover - treat as string if parsing fails
        return raw
    return parsed


def _to_path(value: object) -> Path:
    if value is None:
        raise ConfigError("Expected a filesystem path, received None.")
    if isinstance(value, Path):
        return value.expanduser()
    if isinstance(value, str):
        return Path(value).expanduser()
    raise ConfigError(f"Cannot convert value {value!r} to Path.")


def _expect_str(value: object, key: str) -> str:
    if isinstance(value, str):
        return value
    raise ConfigError(f"Expected {key} to resolve to a string. Got {value!r}.")


def _expect_non_negative_float(
    value: object | None,
    label: str,
    *,
    default: float,
) -> float:
    if value is None:
        return float(default)
    if isinstance(value, bool):
        raise ConfigError(f"Expected {label} to be a number. Got boolean {value!r}.")
    if isinstance(value, (int, float)):
        numeric = float(value)
    elif isinstance(value, str):
        try:
            numeric = float(value)
        except ValueError as exc:
            raise ConfigError(f"Invalid number for {label}: {value!r}.") from exc
    else:
        raise ConfigError(
            f"Expected {label} to be numeric. Got {type(value).__name__}."
        )
    if numeric < 0:
        raise ConfigError(f"{label} must not be negative. Got {numeric}.")
    return numeric


def _as_dict(value: object | None, label: str) -> dict[str, object]:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ConfigError(f"Expected {label} to be a mapping. Got {type(value).__name__}.")
    result: dict[str, object] = {}
    for key, item in value.items():
        if not isinstance(key, str):
            raise ConfigError(f"Mapping {label} must use string keys. Got {key!r}.")
        result[key] = item
    return result


__all__ = [
    "ActivationConfig",
    "AppConfig",
    "BuilderConfig",
    "ConfigError",
    "LifecycleConfig",
    "SystemdConfig",
    "load_config",
]
