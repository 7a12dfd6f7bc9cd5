"""End-to-end CLI tests driving the Typer app against stub binaries."""
from __future__ import annotations

import json
import os
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path

import pytest
from typer.testing import CliRunner

from extra_container import __version__, cli

runner = CliRunner()

pytestmark = pytest.mark.mutation_timeout

SYSTEMCTL_STUB = """#!/bin/sh
echo "$*" >> "{state}/systemctl.log"
cmd="$1"
shift
case "$cmd" in
  is-active)
    rc=0
    for unit in "$@"; do
      if grep -qx "$unit" "{state}/active" 2>/dev/null; then
        echo active
      else
        echo inactive
        rc=3
      fi
    done
    exit $rc
    ;;
  start)
    for unit in "$@"; do
      echo "$unit" >> "{state}/active"
    done
    ;;
  stop)
    for unit in "$@"; do
      grep -vx "$unit" "{state}/active" > "{state}/active.tmp" 2>/dev/null
      mv "{state}/active.tmp" "{state}/active"
    done
    ;;
esac
exit 0
"""

NIXOS_CONTAINER_STUB = """#!/bin/sh
echo "$*" >> "{state}/nixos-container.log"
if [ "$1" = "destroy" ] && grep -qx "$2" "{state}/fail-destroy" 2>/dev/null; then
  echo "container $2 is busy" >&2
  exit 1
fi
if [ -f "{state}/exit-code" ]; then
  exit "$(cat "{state}/exit-code")"
fi
exit 0
"""

NIX_BUILD_STUB = """#!/bin/sh
echo "$*" >> "{state}/nix-build.log"
workdir="$(dirname "$1")"
if [ -f "$workdir/stdin-config.nix" ]; then
  cp "$workdir/stdin-config.nix" "{state}/stdin-copy.nix"
fi
if [ -f "{state}/build-result" ]; then
  cat "{state}/build-result"
  exit 0
fi
echo "error: attribute 'containers' missing" >&2
exit 1
"""


@dataclass
class Environment:
    """Paths of the sandboxed installation used by a test."""

    root: Path
    config_file: Path
    state: Path
    unit_dir: Path
    config_dir: Path
    gcroots_dir: Path
    logs_dir: Path

    def invoke(self, *args: str, input: str | None = None):
        return runner.invoke(
            cli.app,
            ["--config-file", str(self.config_file), *args],
            input=input,
        )

    def log(self, binary: str) -> list[str]:
        path = self.state / f"{binary}.log"
        if not path.exists():
            return []
        return path.read_text(encoding="utf-8").splitlines()

    def active(self) -> list[str]:
        path = self.state / "active"
        if not path.exists():
            return []
        return path.read_text(encoding="utf-8").split()

    def operations(self) -> list[dict[str, object]]:
        text = (self.logs_dir / "operations.jsonl").read_text(encoding="utf-8")
        return [json.loads(line) for line in text.splitlines()]


def _write_stub(path: Path, template: str, state: Path) -> None:
    path.write_text(template.format(state=state), encoding="utf-8")
    path.chmod(0o755)


@pytest.fixture
def env(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Environment:
    """Prepare config, stub binaries and root privileges for CLI tests."""
    for key in list(os.environ):
        if key.startswith("EXTRA_CONTAINER_"):
            monkeypatch.delenv(key, raising=False)
    monkeypatch.setattr(cli, "_is_root", lambda: True)

    state = tmp_path / "state"
    bin_dir = tmp_path / "bin"
    state.mkdir()
    bin_dir.mkdir()
    _write_stub(bin_dir / "systemctl", SYSTEMCTL_STUB, state)
    _write_stub(bin_dir / "nixos-container", NIXOS_CONTAINER_STUB, state)
    _write_stub(bin_dir / "nix-build", NIX_BUILD_STUB, state)

    environment = Environment(
        root=tmp_path,
        config_file=tmp_path / "config.yml",
        state=state,
        unit_dir=tmp_path / "units",
        config_dir=tmp_path / "containers",
        gcroots_dir=tmp_path / "gcroots",
        logs_dir=tmp_path / "logs",
    )
    environment.config_file.write_text(
        "\n".join(
            [
                f"logs_dir: {environment.logs_dir}",
                f"config_dir: {environment.config_dir}",
                f"gcroots_dir: {environment.gcroots_dir}",
                f"tmp_dir: {tmp_path / 'tmp'}",
                "systemd:",
                f"  unit_dir: {environment.unit_dir}",
                f"  systemctl_bin: {bin_dir / 'systemctl'}",
                "builder:",
                f"  nix_build_bin: {bin_dir / 'nix-build'}",
                "lifecycle:",
                f"  nixos_container_bin: {bin_dir / 'nixos-container'}",
                "activation:",
                "  restart_settle_seconds: 0",
                "",
            ]
        ),
        encoding="utf-8",
    )
    return environment


def _reuse(second: Path, first: Path, name: str) -> None:
    """Make *second* carry the exact artifacts of *name* from *first*."""
    (second / "etc" / "systemd" / "system" / f"container@{name}.service").symlink_to(
        first / "etc" / "systemd" / "system" / f"container@{name}.service"
    )
    (second / "etc" / "containers" / f"{name}.conf").symlink_to(
        first / "etc" / "containers" / f"{name}.conf"
    )


def test_version_flag() -> None:
    """``--version`` prints the package version."""
    result = runner.invoke(cli.app, ["--version"])

    assert result.exit_code == 0
    assert __version__ in result.output


def test_add_start_installs_and_starts_new_containers(
    env: Environment,
    bundle_factory: Callable[..., Path],
) -> None:
    """New containers are linked, systemd is reloaded and both are started."""
    bundle = bundle_factory("gen1", ["alpha", "beta"])

    result = env.invoke("add", str(bundle), "--start")

    assert result.exit_code == 0, result.output
    assert "Installing containers:" in result.output
    assert "Starting containers:" in result.output
    assert (env.unit_dir / "container@alpha.service").is_symlink()
    assert (env.config_dir / "beta.conf").is_symlink()
    assert sorted(path.name for path in env.gcroots_dir.iterdir()) == [
        "alpha.conf",
        "beta.conf",
        "container@alpha.service",
        "container@beta.service",
    ]
    assert env.log("systemctl") == [
        "daemon-reload",
        "is-active container@alpha.service container@beta.service",
        "start container@alpha.service container@beta.service",
    ]
    assert sorted(env.active()) == ["container@alpha.service", "container@beta.service"]
    record = env.operations()[-1]
    assert record["command"] == "add"
    assert record["result"]["status"] == "success"
    assert record["result"]["context"]["started"] == ["alpha", "beta"]


def test_add_same_bundle_twice_changes_nothing(
    env: Environment,
    bundle_factory: Callable[..., Path],
) -> None:
    """A second add of an identical bundle touches neither links nor systemd."""
    bundle = bundle_factory("gen1", ["alpha", "beta"])
    assert env.invoke("add", str(bundle), "--start").exit_code == 0
    calls_before = env.log("systemctl")

    result = env.invoke("add", str(bundle), "--start")

    assert result.exit_code == 0, result.output
    assert "No containers changed." in result.output
    assert env.log("systemctl") == calls_before


def test_add_restart_changed_restarts_only_changed_running(
    env: Environment,
    bundle_factory: Callable[..., Path],
) -> None:
    """Only the changed, running container is stopped and started again."""
    first = bundle_factory("gen1", ["alpha", "beta"])
    assert env.invoke("add", str(first), "--start").exit_code == 0
    second = bundle_factory("gen2", ["beta"])
    _reuse(second, first, "alpha")
    calls_before = len(env.log("systemctl"))

    result = env.invoke("add", str(second), "--restart-changed")

    assert result.exit_code == 0, result.output
    assert "Restarting containers:" in result.output
    assert env.log("systemctl")[calls_before:] == [
        "daemon-reload",
        "is-active container@beta.service",
        "stop container@beta.service",
        "start container@beta.service",
    ]
    assert (env.unit_dir / "container@beta.service").resolve().is_relative_to(second.resolve())
    assert (env.unit_dir / "container@alpha.service").resolve().is_relative_to(first.resolve())


def test_add_restart_changed_leaves_stopped_containers_alone(
    env: Environment,
    bundle_factory: Callable[..., Path],
) -> None:
    """A changed container that is not running is installed but not started."""
    assert env.invoke("add", str(bundle_factory("gen1", ["alpha"]))).exit_code == 0

    result = env.invoke("add", str(bundle_factory("gen2", ["alpha"])), "-r")

    assert result.exit_code == 0, result.output
    assert "start container@alpha.service" not in env.log("systemctl")
    assert env.active() == []


def test_add_without_activation_only_installs(
    env: Environment,
    bundle_factory: Callable[..., Path],
) -> None:
    """Without flags the containers are linked and systemd reloaded, nothing else."""
    result = env.invoke("add", str(bundle_factory("gen1", ["alpha"])))

    assert result.exit_code == 0, result.output
    assert env.log("systemctl") == ["daemon-reload"]


def test_add_rejects_conflicting_flags(
    env: Environment,
    bundle_factory: Callable[..., Path],
) -> None:
    """--start and --restart-changed cannot be combined."""
    result = env.invoke("add", str(bundle_factory("gen1", ["alpha"])), "-s", "-r")

    assert result.exit_code == 2
    assert "mutually exclusive" in result.output
    assert env.log("systemctl") == []


def test_add_requires_root(
    env: Environment,
    bundle_factory: Callable[..., Path],
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """Installing without root privileges fails before touching anything."""
    monkeypatch.setattr(cli, "_is_root", lambda: False)

    result = env.invoke("add", str(bundle_factory("gen1", ["alpha"])))

    assert result.exit_code == 3
    assert "must be run as root" in result.output
    assert not env.unit_dir.exists()


def test_add_missing_config_aborts_without_changes(
    env: Environment,
    bundle_factory: Callable[..., Path],
) -> None:
    """A changed container without a config file leaves the system untouched."""
    bundle = bundle_factory("gen1", ["alpha", "beta"], missing_config=["beta"])

    result = env.invoke("add", str(bundle), "--start")

    assert result.exit_code == 3
    assert "Missing container config" in result.output
    assert not env.unit_dir.exists()
    assert env.log("systemctl") == []


def test_add_builds_configuration_from_stdin(
    env: Environment,
    bundle_factory: Callable[..., Path],
) -> None:
    """Piped configuration is built with nix-build and then installed."""
    bundle = bundle_factory("gen1", ["alpha"])
    (env.state / "build-result").write_text(f"{bundle}\n", encoding="utf-8")
    config = "{ containers.alpha = { config = { }; }; }"

    result = env.invoke("add", "--build-arg=--show-trace", input=config)

    assert result.exit_code == 0, result.output
    assert (env.state / "stdin-copy.nix").read_text(encoding="utf-8") == config
    (build_call,) = env.log("nix-build")
    assert "--out-link" in build_call and build_call.endswith("--show-trace")
    assert (env.unit_dir / "container@alpha.service").is_symlink()
    assert list((env.root / "tmp").iterdir()) == []


def test_add_with_empty_stdin_fails(env: Environment) -> None:
    """No source and nothing on stdin is a usage error."""
    result = env.invoke("add", input="")

    assert result.exit_code == 2
    assert "empty" in result.output


def test_build_prints_bundle_path(
    env: Environment,
    bundle_factory: Callable[..., Path],
    tmp_path: Path,
) -> None:
    """``build`` reports the resulting path and installs nothing."""
    bundle = bundle_factory("gen1", ["alpha"])
    (env.state / "build-result").write_text(f"{bundle}\n", encoding="utf-8")
    source = tmp_path / "containers.nix"
    source.write_text("{ }", encoding="utf-8")

    result = env.invoke("build", str(source), "-A", "hosts.demo")

    assert result.exit_code == 0, result.output
    assert str(bundle) in result.output.replace("\n", "")
    assert not env.unit_dir.exists()


def test_build_failure_exits_with_provider_code(env: Environment, tmp_path: Path) -> None:
    """A failing nix-build maps to exit code 4."""
    source = tmp_path / "containers.nix"
    source.write_text("{ }", encoding="utf-8")

    result = env.invoke("build", str(source))

    assert result.exit_code == 4
    assert "Build failed" in result.output


def test_list_reports_installed_containers(
    env: Environment,
    bundle_factory: Callable[..., Path],
) -> None:
    """``list`` shows installed containers as a table or JSON."""
    empty = env.invoke("list")
    assert empty.exit_code == 0
    assert "(none)" in empty.output

    env.invoke("add", str(bundle_factory("gen1", ["beta", "alpha"])))

    table = env.invoke("list")
    assert "alpha" in table.output and "beta" in table.output

    as_json = env.invoke("list", "--json")
    assert as_json.exit_code == 0
    assert json.loads(as_json.output) == {"containers": ["alpha", "beta"]}


def test_destroy_unknown_container_still_calls_backend(env: Environment) -> None:
    """Destroying a container that was never installed succeeds."""
    result = env.invoke("destroy", "ghost")

    assert result.exit_code == 0, result.output
    assert "Destroying container ghost" in result.output
    assert env.log("nixos-container") == ["destroy ghost"]
    assert "daemon-reload" not in env.log("systemctl")


def test_destroy_all_removes_everything(
    env: Environment,
    bundle_factory: Callable[..., Path],
) -> None:
    """``destroy --all`` stops, unlinks and destroys every installed container."""
    assert env.invoke("add", str(bundle_factory("gen1", ["alpha", "beta"])), "-s").exit_code == 0

    result = env.invoke("destroy", "--all")

    assert result.exit_code == 0, result.output
    assert list(env.unit_dir.iterdir()) == []
    assert list(env.config_dir.iterdir()) == []
    assert list(env.gcroots_dir.iterdir()) == []
    assert env.active() == []
    assert env.log("nixos-container") == ["destroy alpha", "destroy beta"]
    assert env.log("systemctl").count("daemon-reload") == 2


def test_destroy_continues_after_failure(
    env: Environment,
    bundle_factory: Callable[..., Path],
) -> None:
    """One failing container does not prevent the others from being destroyed."""
    env.invoke("add", str(bundle_factory("gen1", ["alpha", "beta"])))
    (env.state / "fail-destroy").write_text("alpha\n", encoding="utf-8")

    result = env.invoke("destroy", "alpha", "beta")

    assert result.exit_code == 4
    assert "Destroy failed for: alpha" in result.output
    assert env.log("nixos-container") == ["destroy alpha", "destroy beta"]
    assert list(env.unit_dir.iterdir()) == []


def test_destroy_requires_a_target(env: Environment) -> None:
    """Without names or --all the command is a usage error."""
    result = env.invoke("destroy")

    assert result.exit_code == 2
    assert "Container name required" in result.output


def test_destroy_rejects_invalid_name(env: Environment) -> None:
    """Names systemd could not address are rejected up front."""
    result = env.invoke("destroy", "../etc")

    assert result.exit_code == 2
    assert env.log("nixos-container") == []


def test_unknown_command_passes_through(env: Environment) -> None:
    """Other commands reach nixos-container verbatim with its exit code."""
    (env.state / "exit-code").write_text("3", encoding="utf-8")

    result = env.invoke("status", "alpha", "--verbose")

    assert result.exit_code == 3
    assert env.log("nixos-container") == ["status alpha --verbose"]
    assert env.operations()[-1]["command"] == "passthrough status"


def test_invalid_config_file_exits_with_environment_code(tmp_path: Path) -> None:
    """A broken config file maps to exit code 3."""
    config = tmp_path / "config.yml"
    config.write_text("bogus: 1\n", encoding="utf-8")

    result = runner.invoke(cli.app, ["--config-file", str(config), "list"])

    assert result.exit_code == 3
    assert "Unknown configuration keys" in result.output
