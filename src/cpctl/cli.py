"""Typer-powered command line for ``cpctl``.

Commands load the merged configuration once per invocation, then run inside
a :meth:`~cpctl.logging.StructuredLogger.operation` scope so every outcome
lands in ``operations.jsonl``. Mutating commands additionally hold the global
and per-instance file locks for the duration of the run.
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
from .config import AppConfig, ConfigError, load_config
from .errors import (
    CpctlError,
    ProvisioningError,
    ProvisioningInterrupted,
    TeardownError,
)
from .exit_codes import ExitCode
from .locking import LockManager, LockTimeoutError
from .logging import OperationScope, StructuredLogger
from .models import ControlPlaneInstance, ProviderKind
from .orchestrator import CreateRequest, Orchestrator, describe_states
from .state.registry import InstanceRegistry, StateRegistryError

console = Console()

CONFIG_FILE_OPTION = typer.Option(
    None,
    "--config-file",
    dir_okay=False,
    help="Override the path to cpctl's YAML config file.",
)
NAME_OPTION = typer.Option(..., "--name", "-n", help="Name of the control plane instance.")
JSON_OPTION = typer.Option(False, "--json", help="Emit the result as JSON.")

SECRET_FIELDS = ("encryption_key", "client_key")

app = typer.Typer(
    add_completion=False,
    help=textwrap.dedent(
        """
        Provision and tear down genesis control planes.

        A genesis control plane is created by this CLI on a local kind
        cluster or on managed Kubernetes (EKS, OKE) and recorded in the local
        registry so later commands can find it again.
        """
    ).strip(),
)
config_app = typer.Typer(help="Inspect the effective configuration.")
app.add_typer(config_app, name="config")


@dataclass
class RuntimeContext:
    """Aggregated runtime objects shared by commands."""

    config: AppConfig
    registry: InstanceRegistry
    locks: LockManager
    logger: StructuredLogger


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
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(code=int(ExitCode.ENVIRONMENT)) from exc
    registry = InstanceRegistry(config.registry_dir)
    runtime = RuntimeContext(
        config=config,
        registry=registry,
        locks=LockManager(config.runtime_dir, config.lock_timeout),
        logger=StructuredLogger(config.logs_dir),
    )
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
        help="Show the cpctl version and exit.",
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
        console.print(f"cpctl {__version__}")
        raise typer.Exit(code=0)

    _ensure_runtime(ctx, config_file, lock_timeout)

    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())
        raise typer.Exit(code=0)


def _command_error(
    op: OperationScope,
    message: str,
    *,
    rc: int = int(ExitCode.VALIDATION),
    errors: Sequence[str] | None = None,
    context: dict[str, object] | None = None,
) -> NoReturn:
    """Emit a structured error and terminate the command."""
    console.print(f"[red]{message}[/red]")
    op.error(message, errors=list(errors or [message]), rc=rc, context=context)
    raise typer.Exit(code=rc)


def _failure_details(exc: BaseException) -> tuple[list[str], dict[str, object]]:
    """Return the error list and log context for a failed mutation."""
    errors = [str(exc)]
    context: dict[str, object] = {"error_type": type(exc).__name__}
    if isinstance(exc, ProvisioningError):
        context["step"] = exc.step
        context["state"] = exc.state
    teardown = getattr(exc, "teardown_error", None)
    if isinstance(exc, TeardownError):
        teardown = exc
    if isinstance(teardown, TeardownError):
        errors.extend(teardown.errors)
        context["teardown_errors"] = list(teardown.errors)
    return errors, context


def _progress(message: str) -> None:
    console.print(f"[cyan]»[/cyan] {message}")


def _build_orchestrator(runtime: RuntimeContext) -> Orchestrator:
    return Orchestrator(runtime.config, runtime.registry, on_progress=_progress)


def _public_view(instance: ControlPlaneInstance, current: str | None) -> dict[str, object]:
    """Return an instance record with secret material stripped."""
    data = instance.to_dict()
    for field_name in SECRET_FIELDS:
        if data.get(field_name):
            data[field_name] = "<redacted>"
    for field_name in ("ca_cert", "client_cert"):
        data[field_name] = bool(data.get(field_name))
    kube_api = data.get("kube_api")
    if isinstance(kube_api, dict):
        data["kube_api"] = {
            "endpoint": kube_api.get("endpoint"),
            "token_expiration": kube_api.get("token_expiration"),
        }
    data["current"] = instance.name == current
    return data


@app.command()
def create(
    ctx: typer.Context,
    name: str = NAME_OPTION,
    provider: str = typer.Option(
        ProviderKind.KIND.value,
        "--provider",
        "-p",
        help="Infrastructure provider: kind, eks or oke.",
    ),
    auth_enabled: bool = typer.Option(
        True,
        "--auth-enabled/--auth-disabled",
        help="Require client certificates for the control plane API (kind only may disable).",
    ),
    root_domain: str | None = typer.Option(
        None,
        "--root-domain",
        help="Root domain handed to the controllers for workload DNS records.",
    ),
    worker_nodes: int | None = typer.Option(
        None,
        "--worker-nodes",
        help="Number of worker nodes to create alongside the control plane node.",
    ),
    control_plane_only: bool = typer.Option(
        False,
        "--control-plane-only",
        help="Install onto an existing runtime instead of creating infrastructure.",
    ),
    infra_only: bool = typer.Option(
        False,
        "--infra-only",
        help="Create the infrastructure and stop before installing the control plane.",
    ),
    skip_teardown: bool = typer.Option(
        False,
        "--skip-teardown",
        help="Leave created resources in place when provisioning fails.",
    ),
    force_overwrite: bool = typer.Option(
        False,
        "--force-overwrite",
        help="Replace an existing registry record with the same name.",
    ),
    port_forwards: list[str] = typer.Option(
        [],
        "--port-forward",
        help="Expose a kind node port on the host as CONTAINER:HOST (repeatable).",
    ),
    local_registry: bool = typer.Option(
        False,
        "--local-registry",
        help="Attach a local image registry container to the kind cluster.",
    ),
    aws_profile: str = typer.Option("default", "--aws-profile", help="AWS config profile."),
    aws_region: str = typer.Option("", "--aws-region", help="AWS region override."),
    oci_profile: str = typer.Option("DEFAULT", "--oci-profile", help="OCI config profile."),
    oci_region: str = typer.Option("", "--oci-region", help="OCI region override."),
    oci_compartment_id: str = typer.Option(
        "",
        "--oci-compartment-id",
        help="OCI compartment for created resources (defaults to the tenancy).",
    ),
    json_output: bool = JSON_OPTION,
) -> None:
    """Provision a new genesis control plane."""
    runtime = _get_runtime(ctx)
    request = CreateRequest(
        name=name,
        provider=provider.strip().lower(),
        auth_enabled=auth_enabled,
        root_domain=root_domain,
        worker_nodes=worker_nodes,
        control_plane_only=control_plane_only,
        infra_only=infra_only,
        skip_teardown=skip_teardown,
        force_overwrite=force_overwrite,
        port_forwards=tuple(port_forwards),
        local_registry=local_registry,
        aws_profile=aws_profile,
        aws_region=aws_region,
        oci_profile=oci_profile,
        oci_region=oci_region,
        oci_compartment_id=oci_compartment_id,
    )

    with runtime.logger.operation(
        "create",
        args=request.to_dict(),
        target={"kind": "control-plane", "name": name},
    ) as op:
        try:
            with runtime.locks.mutate_instances([name]):
                result = _build_orchestrator(runtime).create(request)
        except ProvisioningInterrupted as exc:
            errors, context = _failure_details(exc)
            _command_error(
                op,
                f"Provisioning interrupted: {exc}",
                rc=int(exc.exit_code),
                errors=errors,
                context=context,
            )
        except CpctlError as exc:
            errors, context = _failure_details(exc)
            _command_error(op, str(exc), rc=int(exc.exit_code), errors=errors, context=context)
        except (ConfigError, LockTimeoutError) as exc:
            _command_error(op, str(exc), rc=int(ExitCode.ENVIRONMENT))
        except StateRegistryError as exc:
            _command_error(op, f"Registry error: {exc}", rc=int(ExitCode.ENVIRONMENT))

        states = describe_states(result.states)
        instance = result.instance
        if json_output:
            payload = _public_view(instance, runtime.registry.current())
            payload["state"] = result.state.value
            payload["states"] = states
            console.print_json(data=payload)
        elif instance.api_server:
            console.print(
                f"[green]Control plane '{name}' is ready at {instance.api_server}.[/green]"
            )
        else:
            console.print(
                f"[green]Infrastructure for '{name}' is ready ({result.state.value}).[/green]"
            )
        op.success(
            "Control plane created.",
            changed=len(states),
            context={"state": result.state.value, "states": states},
        )


@app.command()
def delete(
    ctx: typer.Context,
    name: str = NAME_OPTION,
) -> None:
    """Tear down a genesis control plane and its infrastructure."""
    runtime = _get_runtime(ctx)

    with runtime.logger.operation(
        "delete",
        args={"name": name},
        target={"kind": "control-plane", "name": name},
    ) as op:
        try:
            with runtime.locks.mutate_instances([name]):
                result = _build_orchestrator(runtime).delete(name)
        except CpctlError as exc:
            errors, context = _failure_details(exc)
            _command_error(op, str(exc), rc=int(exc.exit_code), errors=errors, context=context)
        except (ConfigError, LockTimeoutError) as exc:
            _command_error(op, str(exc), rc=int(ExitCode.ENVIRONMENT))
        except StateRegistryError as exc:
            _command_error(op, f"Registry error: {exc}", rc=int(ExitCode.ENVIRONMENT))
        except RuntimeError as exc:
            _command_error(op, f"Delete failed: {exc}", rc=int(ExitCode.PROVIDER))

        for warning in result.warnings:
            console.print(f"[yellow]{warning}[/yellow]")
        console.print(f"[green]Control plane '{name}' deleted.[/green]")
        if result.warnings:
            op.warning("Control plane deleted with warnings.", warnings=result.warnings, changed=1)
        else:
            op.success("Control plane deleted.", changed=1)


@app.command("list")
def list_instances(
    ctx: typer.Context,
    json_output: bool = typer.Option(
        False,
        "--json",
        help="Emit instances as JSON instead of a table.",
    ),
) -> None:
    """List control planes recorded in the local registry."""
    runtime = _get_runtime(ctx)

    with runtime.logger.operation(
        "list",
        args={"json": json_output},
        target={"kind": "control-plane", "scope": "registry"},
    ) as op:
        try:
            instances = runtime.registry.list()
            current = runtime.registry.current()
        except StateRegistryError as exc:
            _command_error(op, f"Registry error: {exc}", rc=int(ExitCode.ENVIRONMENT))

        if json_output:
            console.print_json(
                data={"control_planes": [_public_view(item, current) for item in instances]}
            )
            op.success("Reported control planes as JSON.", changed=0)
            return

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Name", style="bold")
        table.add_column("Provider")
        table.add_column("Genesis")
        table.add_column("API Server")
        table.add_column("Current")

        if not instances:
            table.add_row("(none)", "", "", "", "")
        for item in instances:
            table.add_row(
                item.name,
                item.provider.value,
                "yes" if item.genesis else "no",
                item.api_server or "",
                "*" if item.name == current else "",
            )

        console.print(table)
        op.success("Reported control planes.", changed=0)


@app.command()
def show(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Name of the control plane instance."),
    json_output: bool = JSON_OPTION,
) -> None:
    """Show one registry record without its secret material."""
    runtime = _get_runtime(ctx)

    with runtime.logger.operation(
        "show",
        args={"json": json_output},
        target={"kind": "control-plane", "name": name},
    ) as op:
        try:
            instance = runtime.registry.get(name)
            current = runtime.registry.current()
        except CpctlError as exc:
            _command_error(op, str(exc), rc=int(exc.exit_code))
        except StateRegistryError as exc:
            _command_error(op, f"Registry error: {exc}", rc=int(ExitCode.ENVIRONMENT))

        data = _public_view(instance, current)
        if json_output:
            console.print_json(data=data)
            op.success("Reported control plane as JSON.", changed=0)
            return

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Key", style="bold")
        table.add_column("Value")
        for key, value in data.items():
            if isinstance(value, dict):
                rendered = json.dumps(value, indent=2, sort_keys=True)
            else:
                rendered = "" if value is None else str(value)
            table.add_row(key, rendered)
        console.print(table)
        op.success("Reported control plane.", changed=0)


@app.command()
def use(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Name of the control plane instance."),
) -> None:
    """Select the current control plane."""
    runtime = _get_runtime(ctx)

    with runtime.logger.operation(
        "use",
        args={},
        target={"kind": "control-plane", "name": name},
    ) as op:
        try:
            with runtime.locks.mutate_instances([name]):
                runtime.registry.set_current(name)
        except CpctlError as exc:
            _command_error(op, str(exc), rc=int(exc.exit_code))
        except LockTimeoutError as exc:
            _command_error(op, str(exc), rc=int(ExitCode.ENVIRONMENT))
        except StateRegistryError as exc:
            _command_error(op, f"Registry error: {exc}", rc=int(ExitCode.ENVIRONMENT))

        console.print(f"[green]Current control plane set to '{name}'.[/green]")
        op.success("Current control plane updated.", changed=1)


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
            if isinstance(value, dict):
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
