"""Typer-powered command line for ``extra-container``.

``add`` builds (or locates) a container bundle, installs the containers whose
artifacts changed and optionally starts or restarts them. ``destroy`` removes
installed containers, ``build`` only builds, and ``list`` reports what is
installed. Any other command is handed to ``nixos-container`` unchanged.
"""
from __future__ import annotations

import os
import sys
import textwrap
from collections.abc import Sequence
from contextlib import ExitStack
from dataclasses import dataclass
from pathlib import Path
from typing import NoReturn

import click
import typer
from rich.console import Console
from rich.table import Table
from typer.core import TyperGroup

from . import get_version
from .config import AppConfig, ConfigError, load_config
from .exit_codes import ExitCode
from .logging import OperationScope, StructuredLogger
from .providers import (
    BuildError,
    BuildRequest,
    ContainerBackendError,
    NixBuilder,
    NixosContainerProvider,
    SystemdError,
    SystemdProvider,
)
from .reconcile import (
    ActivationMode,
    ContainerName,
    DesiredBundle,
    InconsistentStateError,
    InputError,
    StopOutcome,
    names_from,
)
from .reconcile.activation import apply_plan, plan_activation
from .reconcile.bundle import build_bundle, is_bundle_dir, locate_bundle
from .reconcile.destroyer import destroy as destroy_containers
from .reconcile.diff import classify, verify_changed_artifacts
from .reconcile.installer import install
from .state import LinkRepository

console = Console()
err_console = Console(stderr=True)

CONFIG_FILE_OPTION = typer.Option(
    None,
    "--config-file",
    dir_okay=False,
    help="Override the path to extra-container's YAML config file.",
)

SOURCE_ARGUMENT = typer.Argument(
    None,
    help=(
        "Nix file with container definitions, or a pre-built bundle directory. "
        "Reads the configuration from stdin when omitted."
    ),
)
ATTR_OPTION = typer.Option(
    None,
    "--attr",
    "-A",
    help="Attribute path selecting the container configuration inside SOURCE.",
)
NIXOS_PATH_OPTION = typer.Option(
    None,
    "--nixos-path",
    help="Nix expression for the NixOS definitions to build against.",
)
BUILD_ARG_OPTION = typer.Option(
    None,
    "--build-arg",
    help="Extra argument passed verbatim to nix-build (repeatable).",
)


class PassthroughGroup(TyperGroup):
    """Command group that hands unknown commands to ``nixos-container``."""

    def get_command(self, ctx: click.Context, cmd_name: str) -> click.Command | None:
        """Return the registered command, or a pass-through for anything else."""
        command = super().get_command(ctx, cmd_name)
        if command is not None:
            return command
        return _passthrough_command(cmd_name)


app = typer.Typer(
    cls=PassthroughGroup,
    add_completion=False,
    help=textwrap.dedent(
        """
        Manage declarative NixOS containers without a full system rebuild.

        Commands not listed below are passed through to nixos-container.
        """
    ).strip(),
)


@dataclass
class RuntimeContext:
    """Aggregated runtime objects shared by commands."""

    config: AppConfig
    logger: StructuredLogger
    repository: LinkRepository
    systemd: SystemdProvider
    builder: NixBuilder
    backend: NixosContainerProvider


def _ensure_runtime(ctx: click.Context, config_file: Path | None) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime

    try:
        config = load_config(config_file=config_file)
    except ConfigError as exc:
        err_console.print(f"[red]{exc}[/red]")
        raise typer.Exit(code=ExitCode.ENVIRONMENT) from exc

    runtime = RuntimeContext(
        config=config,
        logger=StructuredLogger(config.logs_dir),
        repository=LinkRepository(
            unit_dir=config.systemd.unit_dir,
            config_dir=config.config_dir,
            gcroots_dir=config.gcroots_dir,
        ),
        systemd=SystemdProvider(systemctl_bin=config.systemd.systemctl_bin),
        builder=NixBuilder(
            nix_build_bin=config.builder.nix_build_bin,
            default_nixos_path=config.builder.nixos_path,
        ),
        backend=NixosContainerProvider(
            nixos_container_bin=config.lifecycle.nixos_container_bin,
        ),
    )
    ctx.obj = runtime
    return runtime


def _get_runtime(ctx: click.Context) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime
    return _ensure_runtime(ctx, None)


@app.callback(invoke_without_command=True)
def _root(  # noqa: D401 - Typer displays help for us, docstring optional.
    ctx: typer.Context,
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        help="Show the extra-container version and exit.",
    ),
    config_file: Path | None = CONFIG_FILE_OPTION,
) -> None:
    """Entry point callback invoked for every CLI execution."""
    if version:
        console.print(f"extra-container {get_version()}")
        raise typer.Exit(code=ExitCode.OK)

    _ensure_runtime(ctx, config_file)

    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())
        raise typer.Exit(code=ExitCode.OK)


def _is_root() -> bool:
    return os.geteuid() == 0


def _command_error(
    op: OperationScope,
    message: str,
    *,
    rc: int = ExitCode.VALIDATION,
    errors: Sequence[str] | None = None,
) -> NoReturn:
    """Emit a structured error and terminate the command."""
    err_console.print(f"[red]{message}[/red]")
    op.error(message, errors=list(errors or [message]), rc=int(rc))
    raise typer.Exit(code=int(rc))


def _require_root(op: OperationScope, command: str) -> None:
    if _is_root():
        op.add_step("privileges.check", status="success", detail="root")
        return
    op.add_step("privileges.check", status="error", detail="not-root")
    _command_error(
        op,
        f"'{command}' must be run as root.",
        rc=ExitCode.ENVIRONMENT,
    )


def _print_names(heading: str, names: Sequence[ContainerName]) -> None:
    console.print(heading)
    for name in names:
        console.print(f"  {name}")


def _build_request(
    source: Path | None,
    attr: str | None,
    nixos_path: str | None,
    build_args: Sequence[str] | None,
    op: OperationScope,
) -> BuildRequest:
    """Turn CLI arguments into a :class:`BuildRequest`, reading stdin if needed."""
    if source is not None:
        if not source.exists():
            _command_error(op, f"Container configuration not found: {source}")
        return BuildRequest(
            source=source,
            attr=attr,
            nixos_path=nixos_path,
            build_args=tuple(build_args or ()),
        )
    if sys.stdin is None or sys.stdin.isatty():
        _command_error(op, "No container configuration given (pass a file or pipe it on stdin).")
    stdin_text = sys.stdin.read()
    if not stdin_text.strip():
        _command_error(op, "Container configuration on stdin is empty.")
    op.add_step("source.stdin", status="success", detail=f"{len(stdin_text)} bytes")
    return BuildRequest(
        stdin_text=stdin_text,
        attr=attr,
        nixos_path=nixos_path,
        build_args=tuple(build_args or ()),
    )


def _obtain_bundle(
    runtime: RuntimeContext,
    stack: ExitStack,
    op: OperationScope,
    *,
    source: Path | None,
    attr: str | None,
    nixos_path: str | None,
    build_args: Sequence[str] | None,
) -> DesiredBundle:
    """Return the desired bundle, building it inside *stack* when necessary."""
    try:
        if source is not None and source.is_dir():
            if not is_bundle_dir(source):
                _command_error(op, f"Directory is not a container bundle (no etc/): {source}")
            bundle = locate_bundle(source)
            op.add_step("bundle.locate", status="success", detail=str(bundle.root))
            return bundle

        request = _build_request(source, attr, nixos_path, build_args, op)
        console.print(f"Building containers from {request.describe()}")
        bundle = stack.enter_context(
            build_bundle(runtime.builder, request, tmp_dir=runtime.config.tmp_dir)
        )
    except BuildError as exc:
        op.add_step("bundle.build", status="error", detail=str(exc))
        _command_error(op, f"Build failed: {exc}", rc=ExitCode.PROVIDER)
    op.add_step("bundle.build", status="success", detail=str(bundle.root))
    return bundle


@app.command("add")
def add(
    ctx: typer.Context,
    source: Path | None = SOURCE_ARGUMENT,
    attr: str | None = ATTR_OPTION,
    nixos_path: str | None = NIXOS_PATH_OPTION,
    start: bool = typer.Option(
        False,
        "--start",
        "-s",
        help="Start new or stopped containers and restart changed running ones.",
    ),
    restart_changed: bool = typer.Option(
        False,
        "--restart-changed",
        "-r",
        help="Restart changed containers that are already running.",
    ),
    build_args: list[str] | None = BUILD_ARG_OPTION,
) -> None:
    """Install containers, touching only the ones whose definitions changed."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "add",
        args={
            "source": source,
            "attr": attr,
            "nixos_path": nixos_path,
            "start": start,
            "restart_changed": restart_changed,
        },
        target={"kind": "container", "scope": "bundle"},
    ) as op:
        if start and restart_changed:
            _command_error(op, "--start and --restart-changed are mutually exclusive.")
        _require_root(op, "add")

        mode = ActivationMode.NONE
        if start:
            mode = ActivationMode.START
        elif restart_changed:
            mode = ActivationMode.RESTART_CHANGED

        with ExitStack() as stack:
            bundle = _obtain_bundle(
                runtime,
                stack,
                op,
                source=source,
                attr=attr,
                nixos_path=nixos_path,
                build_args=build_args,
            )

            installed = runtime.repository.list_installed()
            classification = classify(bundle, installed, runtime.repository)
            op.add_step(
                "diff.classify",
                status="success",
                detail=(
                    f"changed={len(classification.changed)} "
                    f"unchanged={len(classification.unchanged)}"
                ),
            )
            try:
                verify_changed_artifacts(bundle, classification)
            except InconsistentStateError as exc:
                _command_error(op, str(exc), rc=ExitCode.ENVIRONMENT)

            if not classification.changed:
                console.print("No containers changed.")
                op.success("No containers changed.", changed=0)
                return

            _print_names("Installing containers:", classification.changed)
            result = install(bundle, classification, runtime.repository)
            op.add_step(
                "links.install",
                status="success",
                detail=", ".join(str(name) for name in result.installed),
            )

            try:
                if result.reload_required:
                    runtime.systemd.daemon_reload()
                    op.add_step("systemd.daemon-reload", status="success")

                plan = plan_activation(bundle.names, classification, runtime.systemd, mode)
                if plan.to_start:
                    _print_names("Starting containers:", plan.to_start)
                if plan.to_restart:
                    _print_names("Restarting containers:", plan.to_restart)
                activation = apply_plan(
                    plan,
                    runtime.systemd,
                    settle_seconds=runtime.config.activation.restart_settle_seconds,
                )
            except SystemdError as exc:
                _command_error(op, f"systemd failed: {exc}", rc=ExitCode.PROVIDER)

            if activation.started:
                op.add_step(
                    "systemd.start",
                    status="success",
                    detail=", ".join(str(name) for name in activation.started),
                )
            if activation.restarted:
                op.add_step(
                    "systemd.restart",
                    status="warning" if activation.stop_failed else "success",
                    detail=", ".join(str(name) for name in activation.restarted),
                )

        op.success(
            "Containers installed.",
            changed=len(result.installed),
            context={
                "mode": mode.value,
                "installed": [str(name) for name in result.installed],
                "started": [str(name) for name in activation.started],
                "restarted": [str(name) for name in activation.restarted],
            },
        )


@app.command("build")
def build(
    ctx: typer.Context,
    source: Path | None = SOURCE_ARGUMENT,
    attr: str | None = ATTR_OPTION,
    nixos_path: str | None = NIXOS_PATH_OPTION,
    build_args: list[str] | None = BUILD_ARG_OPTION,
) -> None:
    """Build the container bundle and print its path without installing."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "build",
        args={"source": source, "attr": attr, "nixos_path": nixos_path},
        target={"kind": "container", "scope": "bundle"},
    ) as op:
        request = _build_request(source, attr, nixos_path, build_args, op)
        try:
            with build_bundle(
                runtime.builder,
                request,
                tmp_dir=runtime.config.tmp_dir,
            ) as bundle:
                op.add_step("bundle.build", status="success", detail=str(bundle.root))
                console.print(str(bundle.root), soft_wrap=True)
        except BuildError as exc:
            _command_error(op, f"Build failed: {exc}", rc=ExitCode.PROVIDER)
        op.success(
            "Bundle built.",
            changed=0,
            context={"path": bundle.root, "containers": [str(n) for n in bundle.names]},
        )


@app.command("list")
def list_containers(
    ctx: typer.Context,
    json_output: bool = typer.Option(
        False,
        "--json",
        help="Emit installed containers as JSON instead of a table.",
    ),
) -> None:
    """List installed containers."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "list",
        args={"json": json_output},
        target={"kind": "container", "scope": "installed"},
    ) as op:
        names = sorted(runtime.repository.list_installed())
        if json_output:
            console.print_json(data={"containers": [str(name) for name in names]})
            op.success("Reported installed containers as JSON.", changed=0)
            return

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Name", style="bold")
        if not names:
            table.add_row("(none)")
        for name in names:
            table.add_row(str(name))
        console.print(table)
        op.success("Reported installed containers.", changed=0)


@app.command("destroy")
def destroy(
    ctx: typer.Context,
    names: list[str] | None = typer.Argument(None, help="Containers to destroy."),
    all_containers: bool = typer.Option(
        False,
        "--all",
        "-a",
        help="Destroy every installed container.",
    ),
) -> None:
    """Stop containers, remove their links and destroy their state."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "destroy",
        args={"names": list(names or []), "all": all_containers},
        target={"kind": "container", "scope": "all" if all_containers else "named"},
    ) as op:
        if not names and not all_containers:
            _command_error(op, "Container name required (or pass --all).")
        if names and all_containers:
            _command_error(op, "Pass container names or --all, not both.")
        _require_root(op, "destroy")

        if all_containers:
            targets = tuple(sorted(runtime.repository.list_installed()))
        else:
            try:
                targets = names_from(names or [])
            except InputError as exc:
                _command_error(op, str(exc))

        if not targets:
            console.print("No containers installed.")
            op.success("Nothing to destroy.", changed=0)
            return

        report = destroy_containers(
            targets,
            repository=runtime.repository,
            systemd=runtime.systemd,
            backend=runtime.backend,
            on_destroy=lambda name: console.print(f"Destroying container {name}"),
        )

        for outcome in report.outcomes:
            step_status = "error" if outcome.failed else "success"
            op.add_step(
                f"container.{outcome.name}",
                status=step_status,
                detail=(
                    f"stop={outcome.stop.value} unit={outcome.removal.unit} "
                    f"config={outcome.removal.config} gcroots={len(outcome.removal.gcroots)}"
                ),
            )
            if outcome.stop is StopOutcome.FAILED:
                err_console.print(f"[yellow]Could not stop {outcome.name}; continuing.[/yellow]")
            for error in outcome.errors:
                err_console.print(f"[red]{error}[/red]")
        if report.reloaded:
            op.add_step("systemd.daemon-reload", status="success")
        if report.reload_error:
            op.add_step("systemd.daemon-reload", status="error", detail=report.reload_error)

        if not report.ok:
            failed = [str(outcome.name) for outcome in report.failures]
            errors = [error for outcome in report.failures for error in outcome.errors]
            if report.reload_error:
                errors.append(report.reload_error)
            summary = (
                f"Destroy failed for: {', '.join(failed)}."
                if failed
                else "systemd daemon-reload failed."
            )
            _command_error(op, summary, rc=ExitCode.PROVIDER, errors=errors)

        op.success(
            "Containers destroyed.",
            changed=len(report.outcomes),
            context={"destroyed": [str(outcome.name) for outcome in report.outcomes]},
        )


def _passthrough_command(cmd_name: str) -> click.Command:
    """Return a command forwarding ``cmd_name`` and its arguments to nixos-container."""

    @click.pass_context
    def _callback(ctx: click.Context, args: tuple[str, ...]) -> None:
        runtime = _get_runtime(ctx)
        with runtime.logger.operation(
            f"passthrough {cmd_name}",
            args={"args": list(args)},
            target={"kind": "backend", "command": cmd_name},
        ) as op:
            try:
                rc = runtime.backend.passthrough([cmd_name, *args])
            except ContainerBackendError as exc:
                _command_error(op, str(exc), rc=ExitCode.ENVIRONMENT)
            if rc != 0:
                op.error(f"nixos-container {cmd_name} exited with {rc}.", rc=rc)
                raise typer.Exit(code=rc)
            op.success(f"nixos-container {cmd_name} completed.", changed=0)

    return click.Command(
        name=cmd_name,
        callback=_callback,
        params=[click.Argument(["args"], nargs=-1, type=click.UNPROCESSED)],
        context_settings={"ignore_unknown_options": True, "allow_extra_args": True},
        add_help_option=False,
        help="Pass the command through to nixos-container.",
    )


__all__ = ["app", "PassthroughGroup", "RuntimeContext"]
