"""Typer-powered command line interface for ``sitectl``.

Every command builds (or reuses) a :class:`RuntimeContext`, opens a structured
operation scope, delegates the work to :class:`~sitectl.orchestrator.SiteOrchestrator`
and renders the returned :class:`~sitectl.orchestrator.OperationResult` with
Rich. The orchestrator never prints; all presentation lives here.
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
from .config import (
    DATA_DIR_NAME,
    INDEX_FILE_NAME,
    AppConfig,
    BasePathError,
    ConfigError,
    load_config,
    write_base_pointer,
)
from .exit_codes import ExitCode
from .gate import ValidationGate
from .locking import LockManager
from .logging import OperationScope, StructuredLogger
from .orchestrator import (
    OperationResult,
    SiteEdit,
    SiteInput,
    SiteInputError,
    SiteOrchestrator,
    SiteView,
)
from .providers import (
    HostsError,
    HostsProvider,
    NginxProvider,
    NginxServiceController,
    ServiceController,
    ServiceError,
    SystemdProvider,
)
from .state import RenameJournal, SiteRegistry, StateRegistryError
from .templates import TemplateEngine

console = Console()

JOURNAL_FILE_NAME = "rename.journal"

CONFIG_FILE_OPTION = typer.Option(
    None,
    "--config-file",
    dir_okay=False,
    help="Override the path to sitectl's YAML config file.",
)
JSON_OPTION = typer.Option(
    False,
    "--json",
    help="Emit output as JSON instead of a table.",
)
SELECTOR_ARGUMENT = typer.Argument(
    ...,
    help="1-based index from `sitectl site list`, or the site's primary domain.",
)

app = typer.Typer(
    add_completion=False,
    help=textwrap.dedent(
        """
        Reverse-proxy site manager for nginx.

        Keeps the site registry, nginx site files, sites-enabled symlinks and
        hosts file aliases in step, validating every change with `nginx -t`
        before the service is reloaded.
        """
    ).strip(),
)
site_app = typer.Typer(help="Inspect and manage registered sites.")
config_app = typer.Typer(help="Inspect global configuration.")

app.add_typer(site_app, name="site")
app.add_typer(config_app, name="config")


@dataclass
class RuntimeContext:
    """Aggregated runtime objects shared by commands."""

    config: AppConfig
    locks: LockManager
    logger: StructuredLogger
    templates: TemplateEngine
    nginx_provider: NginxProvider
    systemd_provider: SystemdProvider
    hosts_provider: HostsProvider
    controller: ServiceController
    gate: ValidationGate


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

    locks = LockManager(config.runtime_dir, config.lock_timeout)
    logger = StructuredLogger(config.logs_dir)
    templates = TemplateEngine.with_overrides(config.templates_dir)
    nginx_config = config.nginx
    nginx_provider = NginxProvider(
        templates=templates,
        sites_available=nginx_config.sites_available,
        sites_enabled=nginx_config.sites_enabled,
        nginx_bin=nginx_config.nginx_bin,
        ln_bin=nginx_config.ln_bin,
        use_sudo=nginx_config.use_sudo,
        sudo_bin=nginx_config.sudo_bin,
    )
    systemd_provider = SystemdProvider(
        systemctl_bin=config.systemd.systemctl_bin,
        unit=config.systemd.unit,
        use_sudo=nginx_config.use_sudo,
        sudo_bin=nginx_config.sudo_bin,
    )
    hosts_provider = HostsProvider(path=config.hosts.path, marker=config.hosts.marker)
    controller = NginxServiceController(
        nginx=nginx_provider,
        systemd=systemd_provider,
        ss_bin=config.systemd.ss_bin,
    )
    runtime = RuntimeContext(
        config=config,
        locks=locks,
        logger=logger,
        templates=templates,
        nginx_provider=nginx_provider,
        systemd_provider=systemd_provider,
        hosts_provider=hosts_provider,
        controller=controller,
        gate=ValidationGate(controller),
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
        help="Show the sitectl version and exit.",
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
            console.print(f"sitectl {__version__}")
            op.success("Reported CLI version.", changed=0)
        raise typer.Exit(code=0)

    _ensure_runtime(ctx, config_file, lock_timeout)

    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())
        raise typer.Exit(code=0)


# ----------------------------------------------------------------------
# Shared helpers
# ----------------------------------------------------------------------
def _command_error(
    op: OperationScope,
    message: str,
    *,
    rc: int = int(ExitCode.VALIDATION),
    errors: Sequence[str] | None = None,
) -> NoReturn:
    """Emit a structured error and terminate the command."""
    console.print(f"[red]{message}[/red]")
    op.error(message, errors=list(errors or [message]), rc=rc)
    raise typer.Exit(code=rc)


def _build_orchestrator(runtime: RuntimeContext, op: OperationScope) -> SiteOrchestrator:
    """Resolve the storage root and wire a :class:`SiteOrchestrator`."""
    try:
        index_file = runtime.config.index_file
    except BasePathError as exc:
        _command_error(op, str(exc), rc=int(ExitCode.ENVIRONMENT))
    registry = SiteRegistry(index_file)
    try:
        registry.ensure_root()
    except StateRegistryError as exc:
        _command_error(op, str(exc), rc=int(ExitCode.ENVIRONMENT))
    return SiteOrchestrator(
        registry=registry,
        nginx=runtime.nginx_provider,
        hosts=runtime.hosts_provider,
        gate=runtime.gate,
        journal=RenameJournal(registry.root / JOURNAL_FILE_NAME),
        locks=runtime.locks,
        default_ip=runtime.config.hosts.default_ip,
        default_backend_host=runtime.config.backend_host,
    )


def _resolve_selector(orchestrator: SiteOrchestrator, selector: str, op: OperationScope) -> int:
    try:
        return orchestrator.resolve(selector)
    except SiteInputError as exc:
        _command_error(op, str(exc), rc=int(ExitCode.VALIDATION))
    except StateRegistryError as exc:
        _command_error(op, str(exc), rc=int(ExitCode.PROVIDER))


def _print_diagnostics(diagnostics: str) -> None:
    text = diagnostics.strip()
    if not text:
        return
    console.print("[bold]Configuration test output:[/bold]")
    console.print(text, markup=False, highlight=False)


def _report(op: OperationScope, result: OperationResult) -> None:
    """Render an :class:`OperationResult` and close the operation scope."""
    for warning in result.warnings:
        console.print(f"[yellow]Warning:[/yellow] {warning}", highlight=False)
    context: dict[str, object] = {}
    if result.record is not None:
        context["record"] = result.record.to_dict()
    if result.index is not None:
        context["index"] = result.index + 1

    if not result.ok:
        _print_diagnostics(result.diagnostics)
        if result.diagnostics:
            context["diagnostics"] = result.diagnostics
        console.print(f"[red]{result.message}[/red]")
        op.error(
            result.message,
            errors=result.errors or [result.message],
            rc=int(result.exit_code),
            context=context or None,
        )
        raise typer.Exit(code=int(result.exit_code))

    if result.warnings:
        console.print(f"[yellow]{result.message}[/yellow]")
        op.warning(
            result.message,
            warnings=result.warnings,
            changed=result.changed,
            context=context or None,
        )
        return
    console.print(f"[green]{result.message}[/green]")
    op.success(result.message, changed=result.changed, context=context or None)


def _status_cell(view: SiteView) -> str:
    label = view.record.status.value
    if not view.consistent:
        link = "linked" if view.enabled else "unlinked"
        return f"[yellow]{label} ({link})[/yellow]"
    if view.record.is_active:
        return f"[green]{label}[/green]"
    return f"[dim]{label}[/dim]"


def _view_payload(view: SiteView) -> dict[str, object]:
    payload = view.record.to_dict()
    payload["index"] = view.index + 1
    payload["enabled"] = view.enabled
    payload["backend_host"] = view.record.backend_host
    return payload


# ----------------------------------------------------------------------
# Top level commands
# ----------------------------------------------------------------------
@app.command("init")
def init(
    ctx: typer.Context,
    path: Path | None = typer.Argument(
        None,
        help="Storage root for the registry (prompted when omitted).",
        file_okay=False,
    ),
) -> None:
    """Create the storage root and remember it in the pointer file."""
    runtime = _get_runtime(ctx)
    if path is None:
        path = Path(typer.prompt("Enter storage path for sitectl data"))
    base = path.expanduser().resolve()

    with runtime.logger.operation(
        "init",
        args={"path": str(base)},
        target={"kind": "storage", "path": str(base)},
    ) as op:
        registry = SiteRegistry(base / DATA_DIR_NAME / INDEX_FILE_NAME)
        try:
            base.mkdir(parents=True, exist_ok=True)
            registry.ensure_root()
            pointer = write_base_pointer(runtime.config, base)
        except (OSError, StateRegistryError) as exc:
            _command_error(op, f"Failed to initialise {base}: {exc}", rc=int(ExitCode.ENVIRONMENT))
        op.add_step("registry.init", detail=str(registry.index_file))
        op.add_step("pointer.write", detail=str(pointer))

        console.print(f"[green]Storage initialised at {base}.[/green]")
        configured = runtime.config.base_path
        if configured is not None and configured.expanduser().resolve() != base:
            message = (
                f"base_path is set to {configured} in configuration and takes "
                f"precedence over {pointer}."
            )
            console.print(f"[yellow]Warning:[/yellow] {message}")
            op.warning("Storage initialised.", warnings=[message], changed=2)
            return
        op.success("Storage initialised.", changed=2)


@app.command("deploy")
def deploy(
    ctx: typer.Context,
    domain: str = typer.Argument(..., help="Server name(s); quote several to separate with spaces."),
    port: str = typer.Argument(..., help="Backend port to proxy to."),
    site_type: str = typer.Option("proxy", "--type", help="Site type (only 'proxy')."),
    backend_host: str | None = typer.Option(
        None,
        "--host",
        help="Upstream host (defaults to defaults.backend_host).",
    ),
    ip: str | None = typer.Option(
        None,
        "--ip",
        help="Address written to the hosts file alias (defaults to hosts.default_ip).",
    ),
    add_hosts: bool = typer.Option(
        False,
        "--hosts/--no-hosts",
        help="Add a hosts file alias for the domain.",
    ),
) -> None:
    """Deploy a new reverse proxy site, validate it and register it."""
    runtime = _get_runtime(ctx)
    args = {
        "domain": domain,
        "port": port,
        "type": site_type,
        "host": backend_host,
        "ip": ip,
        "hosts": add_hosts,
    }
    with runtime.logger.operation(
        "deploy",
        args=args,
        target={"kind": "site", "domain": domain},
    ) as op:
        orchestrator = _build_orchestrator(runtime, op)
        result = orchestrator.deploy(
            SiteInput(
                domain=domain,
                port=port,
                type=site_type,
                backend_host=backend_host,
                add_hosts_entry=add_hosts,
                ip=ip,
            ),
            op,
        )
        _report(op, result)


@app.command("diagnose")
def diagnose(
    ctx: typer.Context,
    json_output: bool = JSON_OPTION,
) -> None:
    """Report service status, configuration test output and listening ports."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "diagnose",
        args={"json": json_output},
        target={"kind": "service", "unit": runtime.config.systemd.unit},
    ) as op:
        controller = runtime.controller
        active = controller.query_status()
        op.add_step("service.status", detail="active" if active else "inactive")
        check = controller.check()
        op.add_step("gate.check", status="success" if check.ok else "error")
        warnings: list[str] = []
        try:
            ports = controller.list_listening_ports()
        except ServiceError as exc:
            ports = ""
            warnings.append(str(exc))
            op.add_step("service.ports", status="warning", detail=str(exc))
        else:
            op.add_step("service.ports")

        payload = {
            "service_active": active,
            "config_ok": check.ok,
            "config_output": check.diagnostics,
            "listening_ports": ports,
            "warnings": warnings,
        }
        if json_output:
            console.print_json(data=payload)
        else:
            state = "[green]active[/green]" if active else "[red]inactive[/red]"
            console.print(f"[bold]Service {runtime.config.systemd.unit}:[/bold] {state}")
            verdict = "[green]OK[/green]" if check.ok else "[red]FAILED[/red]"
            console.print(f"[bold]Configuration test:[/bold] {verdict}")
            _print_diagnostics(check.diagnostics)
            if ports:
                console.print("[bold]Listening ports:[/bold]")
                console.print(ports.rstrip(), markup=False, highlight=False)
            for warning in warnings:
                console.print(f"[yellow]Warning:[/yellow] {warning}")

        if not active or not check.ok:
            problems = []
            if not active:
                problems.append("service inactive")
            if not check.ok:
                problems.append("configuration test failed")
            op.warning("Diagnostics reported problems.", warnings=warnings, errors=problems)
            raise typer.Exit(code=int(ExitCode.PROVIDER))
        if warnings:
            op.warning("Diagnostics complete with warnings.", warnings=warnings)
            return
        op.success("Diagnostics complete.", changed=0)


# ----------------------------------------------------------------------
# Site commands
# ----------------------------------------------------------------------
@site_app.command("list")
def site_list(
    ctx: typer.Context,
    json_output: bool = JSON_OPTION,
) -> None:
    """List registered sites with their 1-based indexes."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "site list",
        args={"json": json_output},
        target={"kind": "site", "scope": "registry"},
    ) as op:
        orchestrator = _build_orchestrator(runtime, op)
        try:
            views, warnings = orchestrator.list_sites()
        except StateRegistryError as exc:
            _command_error(op, str(exc), rc=int(ExitCode.PROVIDER))

        if json_output:
            console.print_json(
                data={"sites": [_view_payload(view) for view in views], "warnings": warnings}
            )
        else:
            table = Table(show_header=True, header_style="bold magenta")
            table.add_column("#", justify="right")
            table.add_column("Domain", style="bold")
            table.add_column("Port")
            table.add_column("Backend")
            table.add_column("IP")
            table.add_column("Status")

            if not views:
                table.add_row("", "(none)", "", "", "", "")
            for view in views:
                record = view.record
                table.add_row(
                    str(view.index + 1),
                    record.domain or "(missing)",
                    record.port,
                    record.backend_host,
                    record.ip,
                    _status_cell(view),
                )
            console.print(table)
            for warning in warnings:
                console.print(f"[yellow]Warning:[/yellow] {warning}")
        pending = orchestrator.pending_rename()
        if pending is not None:
            message = (
                f"Rename {pending.old_domain} -> {pending.new_domain} is incomplete; "
                "run `sitectl site resume`."
            )
            warnings = [*warnings, message]
            if not json_output:
                console.print(f"[yellow]Warning:[/yellow] {message}")
        if warnings:
            op.warning("Reported site list with warnings.", warnings=warnings)
            return
        op.success("Reported site list.", changed=0)


@site_app.command("show")
def site_show(
    ctx: typer.Context,
    selector: str = SELECTOR_ARGUMENT,
    json_output: bool = JSON_OPTION,
) -> None:
    """Show one site's record and on-disk state."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "site show",
        args={"selector": selector, "json": json_output},
        target={"kind": "site", "selector": selector},
    ) as op:
        orchestrator = _build_orchestrator(runtime, op)
        index = _resolve_selector(orchestrator, selector, op)
        views, _ = orchestrator.list_sites()
        view = views[index]
        site_path = (
            Path(view.record.path)
            if view.record.path
            else runtime.nginx_provider.site_path(view.record.domain)
        )
        payload = _view_payload(view)
        payload["nginx"] = {
            key: str(value) if isinstance(value, Path) else value
            for key, value in runtime.nginx_provider.diagnostics(site_path).items()
        }
        warnings: list[str] = []
        try:
            payload["hosts_line"] = runtime.hosts_provider.find(view.record.domain)
        except HostsError as exc:
            payload["hosts_line"] = None
            warnings.append(str(exc))
        payload["warnings"] = warnings

        if json_output:
            console.print_json(data=payload)
        else:
            table = Table(show_header=True, header_style="bold magenta")
            table.add_column("Field", style="bold")
            table.add_column("Value")
            for key, value in payload.items():
                if key == "warnings":
                    continue
                rendered = (
                    json.dumps(value, indent=2, sort_keys=True)
                    if isinstance(value, dict)
                    else str(value if value is not None else "")
                )
                table.add_row(key, rendered)
            console.print(table)
            for warning in warnings:
                console.print(f"[yellow]Warning:[/yellow] {warning}")
        if warnings:
            op.warning("Reported site details with warnings.", warnings=warnings)
            return
        op.success("Reported site details.", changed=0)


@site_app.command("edit")
def site_edit(
    ctx: typer.Context,
    selector: str = SELECTOR_ARGUMENT,
    domain: str | None = typer.Option(None, "--domain", help="New server name(s)."),
    port: str | None = typer.Option(None, "--port", help="New backend port."),
    ip: str | None = typer.Option(None, "--ip", help="New hosts file alias address."),
    backend_host: str | None = typer.Option(None, "--host", help="New upstream host."),
) -> None:
    """Edit a site; changing the primary domain renames its files."""
    runtime = _get_runtime(ctx)
    args = {"selector": selector, "domain": domain, "port": port, "ip": ip, "host": backend_host}
    with runtime.logger.operation(
        "site edit",
        args=args,
        target={"kind": "site", "selector": selector},
    ) as op:
        orchestrator = _build_orchestrator(runtime, op)
        index = _resolve_selector(orchestrator, selector, op)
        if not any((domain, port, ip, backend_host)):
            current = orchestrator.registry.records()[index]
            domain = typer.prompt("Domain", default=current.domain)
            port = typer.prompt("Port", default=current.port)
            ip = typer.prompt("Hosts IP", default=current.ip)
            backend_host = typer.prompt("Backend host", default=current.backend_host)
        result = orchestrator.edit(
            index,
            SiteEdit(domain=domain, port=port, ip=ip, backend_host=backend_host),
            op,
        )
        _report(op, result)


@site_app.command("delete")
def site_delete(
    ctx: typer.Context,
    selector: str = SELECTOR_ARGUMENT,
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip the confirmation prompt."),
) -> None:
    """Delete a site's file, symlink, hosts alias and record."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "site delete",
        args={"selector": selector, "yes": yes},
        target={"kind": "site", "selector": selector},
    ) as op:
        orchestrator = _build_orchestrator(runtime, op)
        index = _resolve_selector(orchestrator, selector, op)
        record = orchestrator.registry.records()[index]
        if not yes and not typer.confirm(f"Delete site {record.primary_domain}?"):
            console.print("[yellow]Aborted.[/yellow]")
            op.success("Deletion aborted by user.", changed=0)
            return
        _report(op, orchestrator.delete(index, op))


@site_app.command("toggle")
def site_toggle(
    ctx: typer.Context,
    selector: str = SELECTOR_ARGUMENT,
) -> None:
    """Flip a site between active and inactive."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "site toggle",
        args={"selector": selector},
        target={"kind": "site", "selector": selector},
    ) as op:
        orchestrator = _build_orchestrator(runtime, op)
        index = _resolve_selector(orchestrator, selector, op)
        _report(op, orchestrator.toggle(index, op))


@site_app.command("resume")
def site_resume(ctx: typer.Context) -> None:
    """Finish a rename that was interrupted part way through."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "site resume",
        args={},
        target={"kind": "site", "scope": "journal"},
    ) as op:
        orchestrator = _build_orchestrator(runtime, op)
        _report(op, orchestrator.resume(op))


# ----------------------------------------------------------------------
# Config commands
# ----------------------------------------------------------------------
@config_app.command("show")
def config_show(
    ctx: typer.Context,
    json_output: bool = JSON_OPTION,
) -> None:
    """Display the effective configuration after merges."""
    runtime = _get_runtime(ctx)
    data = runtime.config.to_dict()
    try:
        data["resolved_base_path"] = str(runtime.config.data_dir.parent)
    except BasePathError:
        data["resolved_base_path"] = None

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
