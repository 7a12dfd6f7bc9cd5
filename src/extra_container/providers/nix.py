"""Build container bundles with ``nix-build``."""
from __future__ import annotations

import json
import logging
import os
import subprocess
import textwrap
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path

LOGGER = logging.getLogger(__name__)

EXPRESSION_FILE = "extra-container.nix"
STDIN_SOURCE_FILE = "stdin-config.nix"
OUT_LINK_NAME = "result"


class BuildError(RuntimeError):
    """Raised when building the container bundle fails."""


@dataclass(frozen=True, slots=True)
class BuildRequest:
    """What to build and against which NixOS definitions."""

    source: Path | None = None
    stdin_text: str | None = None
    attr: str | None = None
    nixos_path: str | None = None
    build_args: tuple[str, ...] = ()

    def describe(self) -> str:
        """Return a short human-readable description of the source."""
        origin = str(self.source) if self.source is not None else "<stdin>"
        if self.attr:
            origin = f"{origin} (attr {self.attr})"
        return origin


@dataclass(slots=True)
class NixBuilder:
    """Evaluate container definitions into a directory with an ``etc`` tree."""

    nix_build_bin: str = "nix-build"
    default_nixos_path: str = "<nixpkgs/nixos>"
    env: Mapping[str, str] = field(default_factory=dict)

    def build(self, request: BuildRequest, workdir: Path) -> Path:
        """Build *request* inside *workdir* and return the resulting bundle path."""
        source = self._materialise_source(request, workdir)
        expression = workdir / EXPRESSION_FILE
        expression.write_text(
            render_expression(
                source,
                attr=request.attr,
                nixos_path=request.nixos_path or self.default_nixos_path,
            ),
            encoding="utf-8",
        )
        out_link = workdir / OUT_LINK_NAME
        cmd = [
            self.nix_build_bin,
            str(expression),
            "--out-link",
            str(out_link),
            *request.build_args,
        ]
        result = self._run_build_command(cmd)
        if result.returncode != 0:
            stderr = (result.stderr or "").strip()
            detail = stderr.splitlines()[-1] if stderr else "no output"
            raise BuildError(f"nix-build failed (exit {result.returncode}): {detail}")

        lines = [line.strip() for line in (result.stdout or "").splitlines() if line.strip()]
        if lines:
            return Path(lines[-1])
        if out_link.exists():
            return out_link.resolve()
        raise BuildError("nix-build did not report a result path.")

    def _materialise_source(self, request: BuildRequest, workdir: Path) -> Path:
        if request.source is not None:
            source = request.source.expanduser()
            if not source.exists():
                raise BuildError(f"Container configuration not found: {source}")
            return source.resolve()
        if request.stdin_text is None or not request.stdin_text.strip():
            raise BuildError("No container configuration supplied on stdin.")
        target = workdir / STDIN_SOURCE_FILE
        target.write_text(request.stdin_text, encoding="utf-8")
        return target

    def _run_build_command(self, cmd: Sequence[str]) -> subprocess.CompletedProcess[str]:
        """Execute nix-build (isolated for testing)."""
        LOGGER.debug("running %s", " ".join(cmd))
        env_vars = os.environ.copy()
        env_vars.update(self.env)
        try:
            return subprocess.run(  # noqa: S603,S607
                list(cmd),
                check=False,
                capture_output=True,
                text=True,
                env=env_vars,
            )
        except FileNotFoundError as exc:
            raise BuildError(f"{cmd[0]} not found: {exc}") from exc


def render_expression(source: Path, *, attr: str | None, nixos_path: str) -> str:
    """Return the Nix expression that builds the ``etc`` tree for *source*.

    The container configuration is imported as a module of a minimal NixOS
    system whose root filesystem is a placeholder, so it evaluates without a
    host configuration. ``attr`` selects a dotted attribute path inside the
    imported file.
    """
    attr_path = json.dumps(attr or "")
    return textwrap.dedent(
        f"""\
        let
          attrPath = builtins.filter builtins.isString (builtins.split "\\\\." {attr_path});
          imported = import {json.dumps(str(source))};
          selected = builtins.foldl' (set: key: set.${{key}}) imported
            (if {attr_path} == "" then [] else attrPath);
          system = (import {nixos_path}) {{
            configuration = {{ lib, ... }}: {{
              imports = [ selected ];
              boot.isContainer = lib.mkDefault true;
              fileSystems."/".device = lib.mkDefault "/dev/null";
              boot.loader.grub.enable = lib.mkDefault false;
            }};
          }};
        in
          system.config.system.build.etc
        """
    )


__all__ = ["BuildError", "BuildRequest", "NixBuilder", "render_expression"]
