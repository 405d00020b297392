"""Typer-powered command line interface for ``servermark``.

Every command runs inside a structured-logger operation. Failures raised by
the registry, script builder or executor are reported on the console, logged
with their exit code and turned into :class:`typer.Exit`.
"""
from __future__ import annotations

import json
import textwrap
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import NoReturn

import typer
from rich.console import Console
from rich.table import Table

from . import __version__
from .config import AppConfig, ConfigError, load_config
from .detection import detect_laravel_info, detect_site_type
from .errors import ScriptFailure, ServermarkError, SiteNotFound
from .logging import OperationScope, StructuredLogger
from .manager import SiteManager
from .models import Backend, Site, SiteType
from .providers.systemd import SystemdError, SystemdProvider
from .scripts import Operation, ReconcileScript
from .tls import TLSError, describe_certificate

console = Console()

CONFIG_FILE_OPTION = typer.Option(
    None,
    "--config-file",
    dir_okay=False,
    help="Override the path to servermark's YAML config file.",
)

JSON_OPTION = typer.Option(
    False,
    "--json",
    help="Emit JSON instead of a table.",
)

app = typer.Typer(
    add_completion=False,
    help=textwrap.dedent(
        """
        Local virtual hosting for development projects.

        Registers project directories as <name>.<tld> sites and keeps Caddy or
        Nginx, and the hosts file, in step with the registry. Privileged
        changes for one command are applied through a single elevation prompt.
        """
    ).strip(),
)
site_app = typer.Typer(help="Register and manage local sites.")
server_app = typer.Typer(help="Control the active web server backend.")
config_app = typer.Typer(help="Inspect configuration and registry settings.")

app.add_typer(site_app, name="site")
app.add_typer(server_app, name="server")
app.add_typer(config_app, name="config")


@dataclass
class RuntimeContext:
    """Aggregated runtime objects shared by commands."""

    config: AppConfig
    logger: StructuredLogger
    manager: SiteManager
    systemd: SystemdProvider
    dry_run: bool = False


def _ensure_runtime(
    ctx: typer.Context,
    config_file: Path | None,
    dry_run: bool = False,
) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime

    try:
        config = load_config(config_file=config_file)
    except ConfigError as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(code=int(exc.exit_code)) from exc

    logger = StructuredLogger(config.logs_dir)
    manager = SiteManager.from_config(config, dry_run=dry_run)
    systemd = SystemdProvider(
        systemctl_bin=config.systemd.systemctl_bin,
        caddy_service=config.systemd.caddy_service,
        nginx_service=config.systemd.nginx_service,
    )
    runtime = RuntimeContext(
        config=config,
        logger=logger,
        manager=manager,
        systemd=systemd,
        dry_run=dry_run,
    )
    ctx.obj = runtime
    return runtime


def _get_runtime(ctx: typer.Context) -> RuntimeContext:
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
        help="Show the servermark version and exit.",
    ),
    config_file: Path | None = CONFIG_FILE_OPTION,
    dry_run: bool = typer.Option(
        False,
        "--dry-run",
        help="Update the registry but print the privileged script instead of running it.",
    ),
) -> None:
    """Entry point callback invoked for every CLI execution."""
    if version:
        runtime = _ensure_runtime(ctx, config_file, dry_run)
        with runtime.logger.operation(
            "root --version",
            args={"version": True},
            target={"kind": "meta", "scope": "version"},
        ) as op:
            console.print(f"servermark {__version__}")
            op.success("Reported CLI version.", changed=0)
        raise typer.Exit(code=0)

    _ensure_runtime(ctx, config_file, dry_run)

    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())
        raise typer.Exit(code=0)


# ----------------------------------------------------------------------
# Helpers
# ----------------------------------------------------------------------
def _command_error(
    op: OperationScope,
    message: str,
    *,
    rc: int = 2,
    errors: Sequence[str] | None = None,
) -> NoReturn:
    """Emit a structured error and terminate the command."""
    console.print(f"[red]{message}[/red]")
    op.error(message, errors=list(errors or [message]), rc=rc)
    raise typer.Exit(code=rc)


def _fail(op: OperationScope, exc: ServermarkError) -> NoReturn:
    """Report *exc* with the exit code its class carries."""
    if isinstance(exc, ScriptFailure):
        console.print(
            "[yellow]The registry was updated but the web server was not. "
            "Run `servermark server sync` once the problem is fixed.[/yellow]"
        )
        _command_error(op, str(exc), rc=int(exc.exit_code), errors=[exc.stderr or str(exc)])
    _command_error(op, str(exc), rc=int(exc.exit_code))


def _resolve_site(runtime: RuntimeContext, reference: str) -> Site:
    """Return the site whose id, or failing that name, is *reference*."""
    document = runtime.manager.settings()
    try:
        return document.find(reference)
    except SiteNotFound:
        site = document.find_by_name(reference)
        if site is None:
            raise
        return site


def _print_script(script: ReconcileScript) -> None:
    console.print(
        script.text, markup=False, highlight=False, emoji=False, soft_wrap=True, end=""
    )


def _report_dry_run(runtime: RuntimeContext) -> None:
    """Print the script that would have run when ``--dry-run`` is active."""
    script = runtime.manager.last_script
    if runtime.dry_run and script is not None:
        console.print("[yellow]Dry run[/yellow]: privileged script not executed.")
        _print_script(script)


def _finish(
    runtime: RuntimeContext,
    op: OperationScope,
    message: str,
    *,
    changed: int,
    context: Mapping[str, object] | None = None,
) -> None:
    """Record success, surfacing best-effort warnings collected by the manager."""
    _report_dry_run(runtime)
    warnings = list(runtime.manager.warnings)
    for warning in warnings:
        console.print(f"[yellow]warning[/yellow]: {warning}")
    if warnings:
        op.warning(message, warnings=warnings, changed=changed, context=context)
    else:
        op.success(message, changed=changed, context=context)


def _site_table(sites: Sequence[Site]) -> Table:
    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("ID", style="bold")
    table.add_column("Name")
    table.add_column("URL")
    table.add_column("Type")
    table.add_column("PHP")
    table.add_column("Path")
    if not sites:
        table.add_row("(none)", "", "", "", "", "")
    for site in sites:
        table.add_row(
            site.id,
            site.name,
            site.url,
            site.site_type.value,
            site.php_version,
            site.path,
        )
    return table


# ----------------------------------------------------------------------
# site
# ----------------------------------------------------------------------
@site_app.command("list")
def site_list(ctx: typer.Context, json_output: bool = JSON_OPTION) -> None:
    """List registered sites."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "site list",
        args={"json": json_output},
        target={"kind": "site"},
    ) as op:
        try:
            sites = runtime.manager.list_sites()
        except ServermarkError as exc:
            _fail(op, exc)
        if json_output:
            console.print_json(data={"sites": [site.to_dict() for site in sites]})
            op.success("Reported sites as JSON.", changed=0)
            return
        console.print(_site_table(sites))
        op.success("Reported sites.", changed=0, context={"count": len(sites)})


@site_app.command("show")
def site_show(
    ctx: typer.Context,
    site_ref: str = typer.Argument(..., metavar="SITE", help="Site id or name."),
    json_output: bool = JSON_OPTION,
) -> None:
    """Show one site in detail."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "site show",
        args={"site": site_ref, "json": json_output},
        target={"kind": "site", "ref": site_ref},
    ) as op:
        try:
            site = _resolve_site(runtime, site_ref)
            backend = runtime.manager.active_backend()
        except ServermarkError as exc:
            _fail(op, exc)

        details: dict[str, object] = dict(site.to_dict())
        details["url"] = site.url
        details["document_root"] = site.document_root
        if site.secured and backend is Backend.NGINX:
            material = runtime.manager.builder.webservers.nginx.tls_material(site)
            try:
                details["certificate"] = describe_certificate(material.certificate).to_dict()
            except TLSError as exc:
                details["certificate"] = {"path": str(material.certificate), "error": str(exc)}

        if json_output:
            console.print_json(data=details)
            op.success("Reported site as JSON.", changed=0)
            return

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Field", style="bold")
        table.add_column("Value")
        for key, value in details.items():
            if isinstance(value, dict):
                rendered = json.dumps(value, indent=2, sort_keys=True)
            else:
                rendered = "" if value is None else str(value)
            table.add_row(key, rendered)
        console.print(table)
        op.success("Reported site.", changed=0)


@site_app.command("add")
def site_add(
    ctx: typer.Context,
    path: Path = typer.Argument(..., help="Project directory to register."),
    name: str | None = typer.Option(None, "--name", help="Site name (defaults to directory name)."),
    php: str | None = typer.Option(None, "--php", help="PHP version, e.g. 8.3."),
) -> None:
    """Register a project directory and publish it."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "site add",
        args={"path": str(path), "name": name, "php": php, "dry_run": runtime.dry_run},
        target={"kind": "site", "path": str(path)},
    ) as op:
        try:
            site = runtime.manager.add_site(path, name=name, php_version=php, op=op)
        except ServermarkError as exc:
            _fail(op, exc)
        console.print(f"[green]Added {site.name} at {site.url} ({site.id}).[/green]")
        _finish(runtime, op, "Site added.", changed=1, context=site.to_dict())


@site_app.command("remove")
def site_remove(
    ctx: typer.Context,
    site_ref: str = typer.Argument(..., metavar="SITE", help="Site id or name."),
) -> None:
    """Unregister a site and delete its web server configuration."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "site remove",
        args={"site": site_ref, "dry_run": runtime.dry_run},
        target={"kind": "site", "ref": site_ref},
    ) as op:
        try:
            site = _resolve_site(runtime, site_ref)
            runtime.manager.remove_site(site.id, op=op)
        except ServermarkError as exc:
            _fail(op, exc)
        console.print(f"[green]Removed {site.name} ({site.domain}).[/green]")
        _finish(runtime, op, "Site removed.", changed=1, context={"id": site.id})


@site_app.command("php")
def site_php(
    ctx: typer.Context,
    site_ref: str = typer.Argument(..., metavar="SITE", help="Site id or name."),
    version: str = typer.Argument(..., help="PHP version, e.g. 8.2."),
) -> None:
    """Change the PHP version serving a site."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "site php",
        args={"site": site_ref, "version": version, "dry_run": runtime.dry_run},
        target={"kind": "site", "ref": site_ref},
    ) as op:
        try:
            site = _resolve_site(runtime, site_ref)
            updated = runtime.manager.update_site_php(site.id, version, op=op)
        except ServermarkError as exc:
            _fail(op, exc)
        console.print(f"[green]{updated.name} now uses PHP {updated.php_version}.[/green]")
        _finish(runtime, op, "PHP version updated.", changed=1, context=updated.to_dict())


def _toggle_secure(ctx: typer.Context, site_ref: str, secured: bool) -> None:
    runtime = _get_runtime(ctx)
    command = "site secure" if secured else "site unsecure"
    with runtime.logger.operation(
        command,
        args={"site": site_ref, "dry_run": runtime.dry_run},
        target={"kind": "site", "ref": site_ref},
    ) as op:
        try:
            site = _resolve_site(runtime, site_ref)
            if secured:
                updated = runtime.manager.secure_site(site.id, op=op)
            else:
                updated = runtime.manager.unsecure_site(site.id, op=op)
        except ServermarkError as exc:
            _fail(op, exc)
        console.print(f"[green]{updated.name} is now served at {updated.url}.[/green]")
        _finish(runtime, op, "TLS setting updated.", changed=1, context=updated.to_dict())


@site_app.command("secure")
def site_secure(
    ctx: typer.Context,
    site_ref: str = typer.Argument(..., metavar="SITE", help="Site id or name."),
) -> None:
    """Serve a site over HTTPS."""
    _toggle_secure(ctx, site_ref, True)


@site_app.command("unsecure")
def site_unsecure(
    ctx: typer.Context,
    site_ref: str = typer.Argument(..., metavar="SITE", help="Site id or name."),
) -> None:
    """Serve a site over plain HTTP."""
    _toggle_secure(ctx, site_ref, False)


@site_app.command("detect")
def site_detect(
    ctx: typer.Context,
    path: Path = typer.Argument(..., help="Project directory to inspect."),
    json_output: bool = JSON_OPTION,
) -> None:
    """Report the framework detected for a directory without registering it."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "site detect",
        args={"path": str(path), "json": json_output},
        target={"kind": "path", "path": str(path)},
    ) as op:
        try:
            site_type = detect_site_type(path)
        except ServermarkError as exc:
            _fail(op, exc)
        framework = detect_laravel_info(path) if site_type is SiteType.LARAVEL else None
        payload: dict[str, object] = {
            "path": str(path),
            "site_type": site_type.value,
            "laravel": framework.to_dict() if framework is not None else None,
        }
        if json_output:
            console.print_json(data=payload)
        else:
            console.print(f"{path}: [bold]{site_type.value}[/bold]")
            if framework is not None and framework.constraint:
                console.print(f"  laravel/framework {framework.constraint}")
            if framework is not None and framework.php_version:
                console.print(f"  php {framework.php_version}")
        op.success("Detected site type.", changed=0, context=payload)


# ----------------------------------------------------------------------
# server
# ----------------------------------------------------------------------
@server_app.command("show")
def server_show(ctx: typer.Context, json_output: bool = JSON_OPTION) -> None:
    """Show the active backend."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "server show",
        args={"json": json_output},
        target={"kind": "backend"},
    ) as op:
        try:
            backend = runtime.manager.active_backend()
        except ServermarkError as exc:
            _fail(op, exc)
        if json_output:
            console.print_json(data={"active": backend.value})
        else:
            console.print(f"Active backend: [bold]{backend.value}[/bold]")
        op.success("Reported active backend.", changed=0, context={"active": backend.value})


@server_app.command("switch")
def server_switch(
    ctx: typer.Context,
    backend: str = typer.Argument(..., help="caddy or nginx"),
) -> None:
    """Switch to another backend and regenerate every site for it."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "server switch",
        args={"backend": backend, "dry_run": runtime.dry_run},
        target={"kind": "backend", "name": backend},
    ) as op:
        try:
            runtime.manager.switch_active_backend(backend, op=op)
            active = runtime.manager.active_backend()
        except ServermarkError as exc:
            _fail(op, exc)
        console.print(f"[green]Switched to {active.value}.[/green]")
        _finish(runtime, op, "Backend switched.", changed=1, context={"active": active.value})


@server_app.command("sync")
def server_sync(ctx: typer.Context) -> None:
    """Regenerate all fragments for the active backend and reload it."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "server sync",
        args={"dry_run": runtime.dry_run},
        target={"kind": "backend"},
    ) as op:
        try:
            runtime.manager.sync_all(op=op)
            count = len(runtime.manager.list_sites())
        except ServermarkError as exc:
            _fail(op, exc)
        console.print(f"[green]Synchronised {count} site(s).[/green]")
        _finish(runtime, op, "Sites synchronised.", changed=count, context={"sites": count})


@server_app.command("status")
def server_status(ctx: typer.Context, json_output: bool = JSON_OPTION) -> None:
    """Report whether each backend service is running and enabled."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "server status",
        args={"json": json_output},
        target={"kind": "backend"},
    ) as op:
        try:
            active = runtime.manager.active_backend()
        except ServermarkError as exc:
            _fail(op, exc)
        rows: list[dict[str, object]] = []
        errors: list[str] = []
        for backend in Backend:
            entry: dict[str, object] = {
                "backend": backend.value,
                "service": runtime.systemd.service_name(backend),
                "selected": backend is active,
            }
            try:
                entry["running"] = runtime.systemd.is_active(backend)
                entry["enabled"] = runtime.systemd.is_enabled(backend)
            except SystemdError as exc:
                entry["running"] = None
                entry["enabled"] = None
                errors.append(str(exc))
            rows.append(entry)

        if json_output:
            console.print_json(data={"backends": rows})
        else:
            table = Table(show_header=True, header_style="bold magenta")
            table.add_column("Backend", style="bold")
            table.add_column("Service")
            table.add_column("Selected")
            table.add_column("Running")
            table.add_column("Enabled")
            for row in rows:
                table.add_row(
                    str(row["backend"]),
                    str(row["service"]),
                    "yes" if row["selected"] else "",
                    _tristate(row["running"]),
                    _tristate(row["enabled"]),
                )
            console.print(table)
        if errors:
            op.warning("Service state unavailable.", warnings=errors)
        else:
            op.success("Reported service status.", changed=0)


def _tristate(value: object) -> str:
    if value is None:
        return "unknown"
    return "yes" if value else "no"


@server_app.command("script")
def server_script(
    ctx: typer.Context,
    operation: str = typer.Argument(
        ...,
        help="sync_all, add_site, update_site, remove_site or switch_server.",
    ),
    site_ref: str | None = typer.Option(None, "--site", help="Site id or name."),
) -> None:
    """Print the privileged script an operation would run."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "server script",
        args={"operation": operation, "site": site_ref},
        target={"kind": "script"},
    ) as op:
        try:
            op_kind = Operation.parse(operation)
            target = _resolve_site(runtime, site_ref).id if site_ref else None
            script = runtime.manager.preview(op_kind, target)
        except ServermarkError as exc:
            _fail(op, exc)
        _print_script(script)
        op.success(
            "Rendered script.",
            changed=0,
            context={"operation": op_kind.value, "backend": script.backend.value},
        )


# ----------------------------------------------------------------------
# config
# ----------------------------------------------------------------------
@config_app.command("show")
def config_show(ctx: typer.Context, json_output: bool = JSON_OPTION) -> None:
    """Display the effective configuration and the registry settings."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "config show",
        args={"json": json_output},
        target={"kind": "config"},
    ) as op:
        try:
            document = runtime.manager.settings()
        except ServermarkError as exc:
            _fail(op, exc)
        data = runtime.config.to_dict()
        data["registry"] = {"tld": document.tld, "sites_path": document.sites_path}

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


@config_app.command("set")
def config_set(
    ctx: typer.Context,
    tld: str | None = typer.Option(None, "--tld", help="Top-level domain for all sites."),
    sites_path: Path | None = typer.Option(
        None,
        "--sites-path",
        help="Default directory projects are created in.",
    ),
) -> None:
    """Change registry settings; a new TLD renames every site."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "config set",
        args={"tld": tld, "sites_path": str(sites_path) if sites_path else None},
        target={"kind": "registry"},
    ) as op:
        if tld is None and sites_path is None:
            _command_error(op, "Nothing to change: pass --tld and/or --sites-path.", rc=2)
        try:
            document = runtime.manager.update_settings(
                tld=tld,
                sites_path=str(sites_path) if sites_path is not None else None,
                op=op,
            )
        except ServermarkError as exc:
            _fail(op, exc)
        console.print(
            f"[green]tld={document.tld} sites_path={document.sites_path}[/green]"
        )
        _finish(
            runtime,
            op,
            "Settings updated.",
            changed=1,
            context={"tld": document.tld, "sites_path": document.sites_path},
        )


def main() -> None:
    """Console script entry point."""
    app()


__all__ = ["app", "main"]
