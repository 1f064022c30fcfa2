"""Typer-powered command line interface for ``ethnodectl``.

Every command resolves the layered configuration, builds a
:class:`~ethnodectl.manager.NodeManager` and records a structured operation
record. Mutating commands hold the global lock plus the per-instance lock for
their whole duration.
"""
from __future__ import annotations

import json
import textwrap
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import NoReturn

import typer
from rich.console import Console
from rich.table import Table

from . import __version__
from .clients import UnknownClientError
from .config import AppConfig, ConfigError, load_config
from .envfile import EnvFileError
from .errors import (
    AllocationFailed,
    EthnodectlError,
    InstallCancelled,
    InstallError,
    InstanceNotFound,
    OperationWarning,
    ResourceConflict,
    ResourceInUse,
    RuntimeCommandError,
    RuntimeNotFound,
    RuntimeUnavailable,
)
from .exit_codes import ExitCode
from .installer import CancellationToken, signal_cancellation
from .locking import LockManager, LockTimeoutError
from .logging import OperationScope, StructuredLogger
from .manager import NodeManager
from .models import InstallRequest
from .providers import DockerRuntime
from .state import RegistryError

console = Console()

CONFIG_FILE_OPTION = typer.Option(
    None,
    "--config-file",
    dir_okay=False,
    help="Override the path to ethnodectl's YAML config file.",
)

app = typer.Typer(
    add_completion=False,
    help=textwrap.dedent(
        """
        Ethereum node instance manager.

        Installs, starts, stops and removes containerised execution and
        consensus client pairs, keeping port reservations, the shared
        validator network and monitoring configuration consistent.
        """
    ).strip(),
)


@dataclass
class RuntimeContext:
    """Aggregated runtime objects shared by commands."""

    config: AppConfig
    manager: NodeManager
    locks: LockManager
    logger: StructuredLogger


def _create_docker_runtime(config: AppConfig) -> DockerRuntime:
    return DockerRuntime(
        docker_bin=config.docker.docker_bin,
        stop_timeout=config.docker.stop_timeout,
    )


def _ensure_runtime(
    ctx: typer.Context,
    config_file: Path | None,
    lock_timeout_override: float | None = None,
) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime

    overrides: dict[str, object] = {}
    if lock_timeout_override is not None:
        overrides["lock_timeout"] = lock_timeout_override

    try:
        config = load_config(config_file=config_file, overrides=overrides)
    except ConfigError as exc:
        console.print(f"[red]Configuration error: {exc}[/red]")
        raise typer.Exit(code=ExitCode.VALIDATION) from exc

    locks = LockManager(config.runtime_dir, config.lock_timeout)
    logger = StructuredLogger(config.logs_dir)
    manager = NodeManager.from_config(config, runtime=_create_docker_runtime(config))
    runtime = RuntimeContext(config=config, manager=manager, locks=locks, logger=logger)
    ctx.obj = runtime
    return runtime


def _get_runtime(ctx: typer.Context) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime
    return _ensure_runtime(ctx, None, None)


@app.callback(invoke_without_command=True)
def _root(  # noqa: D401 - Typer displays help for us, docstring optional.
    ctx: typer.Context,
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        help="Show the ethnodectl version and exit.",
    ),
    config_file: Path | None = CONFIG_FILE_OPTION,
    lock_timeout: float | None = typer.Option(
        None,
        "--lock-timeout",
        help="Override lock acquisition timeout in seconds.",
    ),
) -> None:
    """Entry point callback invoked for every CLI execution."""
    if version:
        runtime = _ensure_runtime(ctx, config_file, lock_timeout)
        with runtime.logger.operation(
            "root --version",
            args={"version": True},
            target={"kind": "meta", "scope": "version"},
        ) as op:
            console.print(f"ethnodectl {__version__}")
            op.success("Reported CLI version.", changed=0)
        raise typer.Exit(code=0)

    _ensure_runtime(ctx, config_file, lock_timeout)

    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())
        raise typer.Exit(code=0)


def _command_error(
    op: OperationScope,
    message: str,
    *,
    rc: int = ExitCode.VALIDATION,
    errors: Sequence[str] | None = None,
) -> NoReturn:
    """Emit a structured error and terminate the command."""
    console.print(f"[red]{message}[/red]")
    op.error(message, errors=list(errors or [message]), rc=int(rc))
    raise typer.Exit(code=int(rc))


def _exit_code_for(exc: BaseException) -> ExitCode:
    """Map a failure onto the CLI exit code taxonomy."""
    if isinstance(exc, InstallCancelled):
        return ExitCode.CANCELLED
    if isinstance(exc, InstallError):
        if exc.step == "validate":
            return ExitCode.VALIDATION
        if exc.cause is not None:
            return _exit_code_for(exc.cause)
        return ExitCode.ENVIRONMENT
    if isinstance(exc, (ResourceConflict, InstanceNotFound, UnknownClientError)):
        return ExitCode.VALIDATION
    if isinstance(
        exc,
        (RuntimeUnavailable, RuntimeCommandError, ResourceInUse, RuntimeNotFound),
    ):
        return ExitCode.PROVIDER
    if isinstance(exc, AllocationFailed):
        return ExitCode.ENVIRONMENT
    return ExitCode.ENVIRONMENT


def _failure(op: OperationScope, exc: BaseException) -> NoReturn:
    message = str(exc)
    unavailable = exc.cause if isinstance(exc, InstallError) else exc
    if isinstance(unavailable, RuntimeUnavailable) and unavailable.remediation:
        message = f"{message} ({unavailable.remediation})"
    _command_error(op, message, rc=_exit_code_for(exc))


def _finish(
    op: OperationScope,
    message: str,
    warnings: Sequence[OperationWarning],
    *,
    changed: int,
    context: dict[str, object] | None = None,
) -> None:
    """Print warnings and record the result with its warning count."""
    if warnings:
        for warning in warnings:
            console.print(f"[yellow]warning[/yellow] {warning}")
        console.print(f"[green]{message}[/green] ({len(warnings)} warning(s))")
        op.warning(message, warnings=list(warnings), changed=changed, context=context)
        return
    console.print(f"[green]{message}[/green]")
    op.success(message, changed=changed, context=context)


instances_app = typer.Typer(help="Install and manage node instances.")
ports_app = typer.Typer(help="Inspect port reservations.")
network_app = typer.Typer(help="Inspect and maintain the shared validator network.")
config_app = typer.Typer(help="Inspect the effective configuration.")

app.add_typer(instances_app, name="instance")
app.add_typer(ports_app, name="ports")
app.add_typer(network_app, name="network")
app.add_typer(config_app, name="config")


@instances_app.command("list")
def instance_list(
    ctx: typer.Context,
    json_output: bool = typer.Option(
        False,
        "--json",
        help="Emit instances as JSON instead of a table.",
    ),
) -> None:
    """List installed instances."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "instance list",
        args={"json": json_output},
        target={"kind": "instance", "scope": "registry"},
    ) as op:
        instances = runtime.manager.list()
        if json_output:
            console.print_json(data={"instances": [item.to_dict() for item in instances]})
            op.success("Reported instance list as JSON.", changed=0)
            return

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Name", style="bold")
        table.add_column("Execution")
        table.add_column("Consensus")
        table.add_column("Network")
        table.add_column("RPC Port")
        table.add_column("Status")

        if not instances:
            table.add_row("(none)", "", "", "", "", "")
        else:
            for instance in instances:
                rpc_port = instance.port("EL_RPC_PORT")
                table.add_row(
                    instance.name,
                    instance.execution,
                    instance.consensus,
                    instance.network,
                    "" if rpc_port is None else str(rpc_port),
                    instance.status.value,
                )

        console.print(table)
        op.success("Reported instance list.", changed=0)


@instances_app.command("show")
def instance_show(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Name of the instance to display."),
    json_output: bool = typer.Option(
        False,
        "--json",
        help="Emit details as JSON instead of a table.",
    ),
) -> None:
    """Show details for a single instance."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "instance show",
        args={"name": name, "json": json_output},
        target={"kind": "instance", "name": name},
    ) as op:
        try:
            instance = runtime.manager.get(name)
        except InstanceNotFound as exc:
            _failure(op, exc)
        payload = instance.to_dict()
        payload["runtime"] = runtime.manager.runtime_status(name).value

        if json_output:
            console.print_json(data=payload)
            op.success("Displayed instance details as JSON.", changed=0)
            return

        table = Table(show_header=False)
        for key, value in payload.items():
            if key == "ports" or value in (None, ""):
                continue
            table.add_row(key.replace("_", " ").title(), str(value))
        for reservation in instance.ports:
            table.add_row(reservation.purpose, f"{reservation.port}/{reservation.protocol}")
        console.print(table)
        op.success("Displayed instance details.", changed=0)


@instances_app.command("incomplete")
def instance_incomplete(ctx: typer.Context) -> None:
    """List instance directories left behind by interrupted installs."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "instance incomplete",
        args={},
        target={"kind": "instance", "scope": "incomplete"},
    ) as op:
        directories = runtime.manager.incomplete()
        if not directories:
            console.print("No incomplete instance directories.")
            op.success("No incomplete directories.", changed=0)
            return
        for directory in directories:
            console.print(
                f"[yellow]{directory}[/yellow] "
                f"(reclaim with `ethnodectl instance remove {directory.name}`)"
            )
        op.warning(
            "Incomplete instance directories found.",
            warnings=[str(directory) for directory in directories],
        )


@instances_app.command("install")
def instance_install(
    ctx: typer.Context,
    name: str | None = typer.Argument(
        None,
        help="Instance name (defaults to the next free <prefix><n>).",
    ),
    execution: str = typer.Option("reth", "--execution", help="Execution client."),
    consensus: str = typer.Option("teku", "--consensus", help="Consensus client."),
    network: str = typer.Option("hoodi", "--network", help="Ethereum network."),
    execution_version: str = typer.Option(
        "latest", "--execution-version", help="Execution client image tag."
    ),
    consensus_version: str = typer.Option(
        "latest", "--consensus-version", help="Consensus client image tag."
    ),
    host_ip: str = typer.Option(
        "127.0.0.1", "--host-ip", help="Host address that published ports bind to."
    ),
    no_mevboost: bool = typer.Option(False, "--no-mevboost", help="Skip the MEV-Boost sidecar."),
    no_start: bool = typer.Option(False, "--no-start", help="Install without starting."),
) -> None:
    """Install a new node instance through a staged, all-or-nothing pipeline."""
    runtime = _get_runtime(ctx)
    request = InstallRequest(
        execution=execution,
        consensus=consensus,
        network=network,
        execution_version=execution_version,
        consensus_version=consensus_version,
        host_ip=host_ip,
        mevboost=not no_mevboost,
        start=not no_start,
    )
    with runtime.logger.operation(
        "instance install",
        args={
            "name": name,
            "execution": execution,
            "consensus": consensus,
            "network": network,
            "mevboost": not no_mevboost,
            "start": not no_start,
        },
        target={"kind": "instance", "name": name},
    ) as op:
        try:
            target = name or runtime.manager.registry.next_instance_name()
        except RegistryError as exc:
            _failure(op, exc)
        op.target["name"] = target

        def progress(step: str, detail: str) -> None:
            op.add_step(step, status="ok", detail=detail)
            console.print(f"[dim]{step}: {detail}[/dim]")

        token = CancellationToken()
        try:
            with runtime.locks.mutate_instances([target]) as bundle:
                op.set_lock_wait_ms(bundle.wait_ms)
                with signal_cancellation(token):
                    result = runtime.manager.install(
                        target, request, cancel=token, progress=progress
                    )
        except LockTimeoutError as exc:
            _command_error(op, str(exc), rc=ExitCode.ENVIRONMENT)
        except (EthnodectlError, RegistryError, EnvFileError) as exc:
            _failure(op, exc)

        instance = result.instance
        _finish(
            op,
            f"Instance '{instance.name}' installed ({instance.status.value}).",
            result.warnings,
            changed=1,
            context={
                "instance": instance.name,
                "status": instance.status.value,
                "network_created": result.network_created,
                "ports": {item.purpose: item.port for item in instance.ports},
            },
        )


@instances_app.command("update")
def instance_update(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Name of the instance to update."),
    execution_version: str | None = typer.Option(
        None, "--execution-version", help="New execution client image tag."
    ),
    consensus_version: str | None = typer.Option(
        None, "--consensus-version", help="New consensus client image tag."
    ),
    no_start: bool = typer.Option(
        False, "--no-start", help="Rewrite files without pulling or recreating containers."
    ),
) -> None:
    """Change client image versions and recreate the instance containers."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "instance update",
        args={
            "name": name,
            "execution_version": execution_version,
            "consensus_version": consensus_version,
            "start": not no_start,
        },
        target={"kind": "instance", "name": name},
    ) as op:
        if execution_version is None and consensus_version is None:
            _command_error(
                op,
                "Nothing to update; pass --execution-version or --consensus-version.",
                rc=ExitCode.VALIDATION,
            )

        def progress(step: str, detail: str) -> None:
            op.add_step(step, status="ok", detail=detail)
            console.print(f"[dim]{step}: {detail}[/dim]")

        try:
            with runtime.locks.mutate_instances([name]) as bundle:
                op.set_lock_wait_ms(bundle.wait_ms)
                result = runtime.manager.update(
                    name,
                    execution_version=execution_version,
                    consensus_version=consensus_version,
                    start=not no_start,
                    progress=progress,
                )
        except LockTimeoutError as exc:
            _command_error(op, str(exc), rc=ExitCode.ENVIRONMENT)
        except (EthnodectlError, RegistryError, EnvFileError) as exc:
            _failure(op, exc)

        instance = result.instance
        _finish(
            op,
            f"Instance '{instance.name}' updated ({instance.status.value}).",
            result.warnings,
            changed=len(result.changed_files),
            context={
                "instance": instance.name,
                "status": instance.status.value,
                "execution_version": instance.execution_version,
                "consensus_version": instance.consensus_version,
                "changed_files": list(result.changed_files),
            },
        )


@instances_app.command("remove")
def instance_remove(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Name of the instance to remove."),
) -> None:
    """Remove an instance, its containers, volumes and directory."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "instance remove",
        args={"name": name},
        target={"kind": "instance", "name": name},
    ) as op:
        try:
            with runtime.locks.mutate_instances([name]) as bundle:
                op.set_lock_wait_ms(bundle.wait_ms)
                result = runtime.manager.remove(
                    name,
                    progress=lambda step, detail: op.add_step(step, status="ok", detail=detail),
                )
        except LockTimeoutError as exc:
            _command_error(op, str(exc), rc=ExitCode.ENVIRONMENT)
        except EthnodectlError as exc:
            _failure(op, exc)

        if not result.removed:
            console.print(f"Instance '{name}' is not installed; nothing to remove.")
            op.success("Nothing to remove.", changed=0)
            return
        _finish(
            op,
            f"Instance '{name}' removed.",
            result.warnings,
            changed=1,
            context={
                "released_ports": sorted({item.port for item in result.released_ports}),
                "network_removed": result.network_removed,
            },
        )


@instances_app.command("start")
def instance_start(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Name of the instance to start."),
) -> None:
    """Start the containers of an instance."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "instance start",
        args={"name": name},
        target={"kind": "instance", "name": name},
    ) as op:
        try:
            with runtime.locks.mutate_instances([name]) as bundle:
                op.set_lock_wait_ms(bundle.wait_ms)
                instance = runtime.manager.start(name)
        except LockTimeoutError as exc:
            _command_error(op, str(exc), rc=ExitCode.ENVIRONMENT)
        except (EthnodectlError, RegistryError) as exc:
            _failure(op, exc)
        op.add_step("compose.up", status="success")
        _finish(op, f"Instance '{instance.name}' started.", (), changed=1)


@instances_app.command("stop")
def instance_stop(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Name of the instance to stop."),
) -> None:
    """Stop the containers of an instance without removing them."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "instance stop",
        args={"name": name},
        target={"kind": "instance", "name": name},
    ) as op:
        try:
            with runtime.locks.mutate_instances([name]) as bundle:
                op.set_lock_wait_ms(bundle.wait_ms)
                instance = runtime.manager.stop(name)
        except LockTimeoutError as exc:
            _command_error(op, str(exc), rc=ExitCode.ENVIRONMENT)
        except (EthnodectlError, RegistryError) as exc:
            _failure(op, exc)
        op.add_step("compose.stop", status="success")
        _finish(op, f"Instance '{instance.name}' stopped.", (), changed=1)


@ports_app.command("list")
def ports_list(
    ctx: typer.Context,
    json_output: bool = typer.Option(
        False,
        "--json",
        help="Emit port reservations as JSON instead of a table.",
    ),
) -> None:
    """List ports reserved by instances and auxiliary services."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "ports list",
        args={"json": json_output},
        target={"kind": "ports"},
    ) as op:
        reservations = runtime.manager.reservations()
        if json_output:
            console.print_json(data={"ports": [item.to_dict() for item in reservations]})
            op.success("Reported port reservations as JSON.", changed=0)
            return

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Owner", style="bold")
        table.add_column("Purpose")
        table.add_column("Port")
        table.add_column("Protocol")

        if not reservations:
            table.add_row("(none)", "", "", "")
        else:
            for item in reservations:
                table.add_row(item.owner, item.purpose, str(item.port), item.protocol)

        console.print(table)
        op.success("Reported port reservations.", changed=0)


@network_app.command("status")
def network_status(
    ctx: typer.Context,
    json_output: bool = typer.Option(
        False,
        "--json",
        help="Emit network status as JSON.",
    ),
) -> None:
    """Show the shared network, its attached containers and its consumers."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "network status",
        args={"json": json_output},
        target={"kind": "network", "name": runtime.config.network.name},
    ) as op:
        try:
            status = runtime.manager.network_status()
        except EthnodectlError as exc:
            _failure(op, exc)
        if json_output:
            console.print_json(data=status.to_dict())
            op.success("Reported network status as JSON.", changed=0)
            return

        table = Table(show_header=False)
        table.add_row("Name", status.name)
        table.add_row("Exists", "yes" if status.exists else "no")
        table.add_row("Members", ", ".join(status.members) or "(none)")
        table.add_row("Consumers", ", ".join(status.consumers) or "(none)")
        console.print(table)
        op.success("Reported network status.", changed=0)


@network_app.command("prune")
def network_prune(ctx: typer.Context) -> None:
    """Remove the shared network when no instance or service still uses it."""
    runtime = _get_runtime(ctx)
    name = runtime.config.network.name
    with runtime.logger.operation(
        "network prune",
        args={},
        target={"kind": "network", "name": name},
    ) as op:
        try:
            with runtime.locks.global_lock() as handle:
                op.set_lock_wait_ms(handle.wait_ms)
                removal = runtime.manager.prune_network()
        except LockTimeoutError as exc:
            _command_error(op, str(exc), rc=ExitCode.ENVIRONMENT)

        if removal.retained_by:
            message = f"Network '{name}' kept; used by {', '.join(removal.retained_by)}."
        elif removal.removed:
            message = f"Network '{name}' removed."
        else:
            message = f"Network '{name}' not removed."
        _finish(
            op,
            message,
            removal.warnings,
            changed=1 if removal.removed else 0,
            context={"retained_by": list(removal.retained_by)},
        )


@app.command("sync")
def sync(ctx: typer.Context) -> None:
    """Regenerate monitoring and validator configuration from installed instances."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "sync",
        args={},
        target={"kind": "sync"},
    ) as op:
        try:
            with runtime.locks.global_lock() as handle:
                op.set_lock_wait_ms(handle.wait_ms)
                report = runtime.manager.resync()
        except LockTimeoutError as exc:
            _command_error(op, str(exc), rc=ExitCode.ENVIRONMENT)
        for artifact in report.artifacts:
            op.add_step(
                f"sync.{artifact.owner}",
                status="changed" if artifact.changed else "unchanged",
                detail=artifact.to_dict(),
            )
        restarted = report.restarted
        suffix = f"; restarted {', '.join(restarted)}" if restarted else ""
        _finish(
            op,
            f"Synchronised {len(report.artifacts)} artifact(s), {report.changed} changed{suffix}.",
            report.warnings,
            changed=report.changed,
        )


@config_app.command("show")
def config_show(
    ctx: typer.Context,
    json_output: bool = typer.Option(
        False,
        "--json",
        help="Emit configuration as JSON instead of a table.",
    ),
) -> None:
    """Display the effective configuration after merges."""
    runtime = _get_runtime(ctx)
    data = runtime.config.to_dict()

    with runtime.logger.operation(
        "config show",
        args={"json": json_output},
        target={"kind": "config"},
    ) as op:
        if json_output:
            console.print_json(data=data)
            op.success("Rendered configuration as JSON.", changed=0)
            return

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Key", style="bold")
        table.add_column("Value")

        for key, value in data.items():
            if isinstance(value, (dict, list)):
                rendered = json.dumps(value, indent=2, sort_keys=True)
            else:
                rendered = str(value)
            table.add_row(key, rendered)

        console.print(table)
        op.success("Rendered configuration table.", changed=0)


def main() -> None:
    """Console script entry point."""
    app()


__all__ = ["app", "main"]
