"""Typer-powered command line interface for ``sitectl``.

Every mutating command follows the same shape: open a structured-log
operation, take the per-site lock, resolve the site record and run the
lifecycle call inside :func:`~sitectl.guard.rollback_guard`. Errors from the
lifecycle taxonomy are printed as a single red line and mapped onto
:class:`~sitectl.exit_codes.ExitCode` values.
"""
from __future__ import annotations

import csv
import io
import textwrap
from collections.abc import Callable, Iterator, Mapping, Sequence
from contextlib import contextmanager
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import NoReturn, TypeVar

import typer
import yaml
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from . import __version__
from .backups import BackupsRegistry
from .certificates import CertificateManager, CertificateState
from .config import AppConfig, ConfigError, load_config
from .context import OperationContext
from .errors import (
    FatalInterrupt,
    OperationalFailure,
    PreconditionViolation,
    ProviderError,
    SiteNotFoundError,
)
from .exit_codes import ExitCode
from .guard import rollback_guard
from .lifecycle import SiteLifecycle, SitePaths
from .locking import LockManager, LockTimeoutError
from .logging import OperationScope, StructuredLogger
from .providers import CertbotClient, ComposeProvider, DatabaseProvider, SiteProvisioner
from .state import Site, SiteRegistry, StateRegistryError

console = Console()

T = TypeVar("T")

CONFIG_FILE_OPTION = typer.Option(
    None,
    "--config-file",
    dir_okay=False,
    help="Override the path to sitectl's YAML config file.",
)

SITE_ARGUMENT = typer.Argument(
    None,
    help="Site url. Defaults to the site containing the current directory.",
)

ALL_SERVICES_OPTION = typer.Option(False, "--all", help="Act on every service of the site.")
NGINX_OPTION = typer.Option(False, "--nginx", help="Select the nginx service.")
PHP_OPTION = typer.Option(False, "--php", help="Select the php service.")
POSTFIX_OPTION = typer.Option(False, "--postfix", help="Select the postfix service.")

app = typer.Typer(
    add_completion=False,
    help=textwrap.dedent(
        """
        Manage hosted websites built from docker compose groups.

        Sites are listed, enabled, disabled, backed up, updated to another
        type, deleted and given TLS certificates through the `site` commands.
        """
    ).strip(),
)
site_app = typer.Typer(help="Manage hosted sites.")
config_app = typer.Typer(help="Inspect sitectl configuration.")
app.add_typer(site_app, name="site")
app.add_typer(config_app, name="config")


class ListFormat(str, Enum):
    """Output formats for ``site list``."""

    TABLE = "table"
    CSV = "csv"
    YAML = "yaml"
    JSON = "json"
    COUNT = "count"
    TEXT = "text"


@dataclass
class RuntimeContext:
    """Aggregated runtime objects shared by commands."""

    config: AppConfig
    registry: SiteRegistry
    locks: LockManager
    logger: StructuredLogger
    compose: ComposeProvider
    database: DatabaseProvider
    provisioner: SiteProvisioner
    backups: BackupsRegistry
    lifecycle: SiteLifecycle
    certificates: CertificateManager


def _certbot_factory(config: AppConfig) -> Callable[[str], CertbotClient]:
    def factory(url: str) -> CertbotClient:
        return CertbotClient(
            url=url,
            acme_dir=config.acme_dir,
            certs_dir=config.certs_dir,
            webroot=config.acme.webroot,
            certbot_bin=config.acme.certbot_bin,
            renew_before_days=config.acme.renew_before_days,
            staging=config.acme.staging,
            dns_auth_hook=config.acme.dns_auth_hook,
        )

    return factory


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
        console.print(f"[red]{escape(str(exc))}[/red]")
        raise typer.Exit(code=ExitCode.ENVIRONMENT) from exc

    registry = SiteRegistry(config.registry_dir)
    locks = LockManager(config.runtime_dir, config.lock_timeout)
    logger = StructuredLogger(config.logs_dir)
    compose = ComposeProvider(
        docker_bin=config.docker.docker_bin,
        compose_bin=config.docker.compose_bin,
        label=config.docker.label,
        proxy_container=config.proxy.container,
    )
    database = DatabaseProvider(
        docker_bin=config.docker.docker_bin,
        image=config.database.image,
        global_host=config.database.global_host,
        global_network=config.database.global_network,
        local_host=config.database.local_host,
        root_user=config.database.root_user,
        root_password=config.database.root_password,
    )
    provisioner = SiteProvisioner(
        command=config.provisioner.command,
        local_db_host=config.database.local_host,
    )
    backups = BackupsRegistry(config.backups.root, config.backups.index)
    lifecycle = SiteLifecycle(
        registry=registry,
        compose=compose,
        database=database,
        provisioner=provisioner,
        backups=backups,
        paths=SitePaths(
            certs_dir=config.certs_dir,
            proxy_conf_dir=config.proxy_conf_dir,
            acme_dir=config.acme_dir,
        ),
    )
    certificates = CertificateManager(
        registry,
        _certbot_factory(config),
        compose.reload_proxy,
        email=config.acme.email,
    )
    runtime = RuntimeContext(
        config=config,
        registry=registry,
        locks=locks,
        logger=logger,
        compose=compose,
        database=database,
        provisioner=provisioner,
        backups=backups,
        lifecycle=lifecycle,
        certificates=certificates,
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
# Helpers
# ----------------------------------------------------------------------
def _command_error(
    op: OperationScope,
    message: str,
    *,
    rc: int = ExitCode.VALIDATION,
    errors: Sequence[str] | None = None,
) -> NoReturn:
    """Emit a structured error and terminate the command."""
    console.print(f"[red]Error:[/red] {escape(message)}")
    op.error(message, errors=list(errors or [message]), rc=int(rc))
    raise typer.Exit(code=int(rc))


def _success(
    op: OperationScope,
    message: str,
    *,
    changed: int = 1,
    backups: Sequence[str] | None = None,
    context: Mapping[str, object] | None = None,
) -> None:
    console.print(f"[green]Success:[/green] {escape(message)}")
    op.success(message, changed=changed, backups=backups, context=context)


def _resolve_site_name(runtime: RuntimeContext, site: str | None) -> str | None:
    """Return *site*, or the site whose root contains the working directory."""
    if site:
        return site.strip().lower()
    cwd = Path.cwd().resolve()
    try:
        sites = runtime.registry.all()
    except StateRegistryError:
        sites = []
    for entry in sites:
        root = entry.fs_path.expanduser()
        try:
            cwd.relative_to(root.resolve())
        except ValueError:
            continue
        return entry.url
    sites_root = runtime.config.sites_root.expanduser().resolve()
    try:
        relative = cwd.relative_to(sites_root)
    except ValueError:
        return None
    return relative.parts[0] if relative.parts else None


def _require_site(runtime: RuntimeContext, url: str, op: OperationScope) -> Site:
    try:
        site = runtime.registry.find(url)
    except StateRegistryError as exc:
        _command_error(op, str(exc), rc=ExitCode.ENVIRONMENT)
    if site is None:
        _command_error(op, str(SiteNotFoundError(url)), rc=ExitCode.VALIDATION)
    return site


@contextmanager
def _locked_site(
    runtime: RuntimeContext,
    op: OperationScope,
    site: str | None,
    command: str,
) -> Iterator[Site]:
    """Resolve the site, hold its lock and yield the current record."""
    url = _resolve_site_name(runtime, site)
    if not url:
        _command_error(
            op,
            f"Could not find the site you wish to run `site {command}` on. Either pass "
            "it as an argument or run the command from within the site directory.",
            rc=ExitCode.VALIDATION,
        )
    op.target["name"] = url
    try:
        with runtime.locks.mutate_sites([url]) as bundle:
            op.set_lock_wait_ms(bundle.wait_ms)
            yield _require_site(runtime, url, op)
    except LockTimeoutError as exc:
        _command_error(op, str(exc), rc=ExitCode.ENVIRONMENT)


def _guarded(
    runtime: RuntimeContext,
    op: OperationScope,
    site: Site,
    operation: str,
    action: Callable[[OperationContext], T],
) -> T:
    """Run *action* under the rollback guard, mapping taxonomy errors to exit codes."""
    octx = OperationContext(site=site, operation=operation, scope=op, console=console)
    try:
        with rollback_guard(lambda _exc: runtime.lifecycle.rollback(octx)):
            return action(octx)
    except PreconditionViolation as exc:
        _command_error(op, str(exc), rc=ExitCode.VALIDATION)
    except (OperationalFailure, ProviderError) as exc:
        _command_error(op, str(exc), rc=ExitCode.PROVIDER)
    except FatalInterrupt as exc:
        _command_error(
            op,
            f"{exc}; rolled back to level {int(octx.progress)}.",
            rc=ExitCode.INTERRUPTED,
        )
    except Exception as exc:  # noqa: BLE001 - rolled back by the guard, reported here
        _command_error(
            op,
            f"Unexpected error during {operation}: {exc}",
            rc=ExitCode.PROVIDER,
            errors=[f"{type(exc).__name__}: {exc}"],
        )


def _selected_services(nginx: bool, php: bool, postfix: bool) -> list[str]:
    flags = {"nginx": nginx, "php": php, "postfix": postfix}
    return [service for service, chosen in flags.items() if chosen]


# ----------------------------------------------------------------------
# site commands
# ----------------------------------------------------------------------
@site_app.command("list")
def site_list(
    ctx: typer.Context,
    enabled: bool = typer.Option(False, "--enabled", help="List only enabled sites."),
    disabled: bool = typer.Option(False, "--disabled", help="List only disabled sites."),
    output_format: ListFormat = typer.Option(
        ListFormat.TABLE,
        "--format",
        case_sensitive=False,
        help="Render output in a particular format.",
    ),
) -> None:
    """List the managed websites."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "site list",
        args={"enabled": enabled, "disabled": disabled, "format": output_format.value},
        target={"kind": "site", "scope": "registry"},
    ) as op:
        try:
            if enabled and not disabled:
                sites = runtime.registry.where("enabled", True)
            elif disabled and not enabled:
                sites = runtime.registry.where("enabled", False)
            else:
                sites = runtime.registry.all()
        except StateRegistryError as exc:
            _command_error(op, str(exc), rc=ExitCode.ENVIRONMENT)

        if not sites:
            _command_error(op, "No sites found!", rc=ExitCode.VALIDATION)

        rows = [
            {"site": site.url, "status": "enabled" if site.enabled else "disabled"}
            for site in sites
        ]
        if output_format is ListFormat.TEXT:
            for row in rows:
                typer.echo(row["site"])
        elif output_format is ListFormat.COUNT:
            typer.echo(str(len(rows)))
        elif output_format is ListFormat.JSON:
            console.print_json(data=rows)
        elif output_format is ListFormat.YAML:
            typer.echo(yaml.safe_dump(rows, sort_keys=False).rstrip())
        elif output_format is ListFormat.CSV:
            buffer = io.StringIO()
            writer = csv.DictWriter(buffer, fieldnames=["site", "status"], lineterminator="\n")
            writer.writeheader()
            writer.writerows(rows)
            typer.echo(buffer.getvalue().rstrip())
        else:
            table = Table(show_header=True, header_style="bold magenta")
            table.add_column("Site", style="bold")
            table.add_column("Status")
            for row in rows:
                table.add_row(row["site"], row["status"])
            console.print(table)
        op.success(f"Reported {len(rows)} site(s).", changed=0)


@site_app.command("delete")
def site_delete(
    ctx: typer.Context,
    site: str = typer.Argument(..., help="Name of website to be deleted."),
    yes: bool = typer.Option(False, "--yes", "-y", help="Do not prompt for confirmation."),
) -> None:
    """Delete a website with its containers, files, certificates and record."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "site delete",
        args={"site": site, "yes": yes},
        target={"kind": "site", "name": site},
    ) as op:
        with _locked_site(runtime, op, site, "delete") as record:
            if not yes:
                typer.confirm(f"Are you sure you want to delete {record.url}?", abort=True)
            _guarded(
                runtime,
                op,
                record,
                "delete",
                lambda octx: runtime.lifecycle.delete(
                    octx,
                    5,
                    db=runtime.lifecycle.external_database(record),
                ),
            )
            _success(op, f"Site {record.url} deleted.", changed=1)


@site_app.command("update")
def site_update(
    ctx: typer.Context,
    site: str | None = SITE_ARGUMENT,
    site_type: str | None = typer.Option(
        None,
        "--type",
        help="Update to a valid and supported site type (html, php, wp).",
    ),
) -> None:
    """Swap a site to another type, restoring the old one when that fails."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "site update",
        args={"site": site, "type": site_type},
        target={"kind": "site", "name": site},
    ) as op:
        if not site_type:
            _command_error(op, "Nothing to update. Pass --type=<type>.", rc=ExitCode.VALIDATION)
        target_type = site_type
        with _locked_site(runtime, op, site, "update") as record:
            result = _guarded(
                runtime,
                op,
                record,
                "update",
                lambda octx: runtime.lifecycle.update(octx, target_type),
            )
            if not result.updated:
                _command_error(
                    op,
                    (
                        f"Update of {record.url} to {result.new_type.value} failed "
                        f"({result.error}); the {result.old_type.value} site was restored "
                        f"from {result.backup.location}."
                    ),
                    rc=ExitCode.PROVIDER,
                )
            _success(
                op,
                "Site updated successfully",
                changed=3,
                backups=[result.backup.backup_id],
                context={"config_reverted": result.config_reverted},
            )


@site_app.command("backup")
def site_backup(
    ctx: typer.Context,
    site: str | None = SITE_ARGUMENT,
    location: Path | None = typer.Option(
        None,
        "--location",
        help="Location to create the backup in.",
        file_okay=False,
    ),
    force: bool = typer.Option(
        False,
        "--force",
        help="Force backup even if the nginx config is incorrect.",
    ),
) -> None:
    """Back up a site's files, custom config and database."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "site backup",
        args={"site": site, "location": location, "force": force},
        target={"kind": "site", "name": site},
    ) as op:
        with _locked_site(runtime, op, site, "backup") as record:
            result = _guarded(
                runtime,
                op,
                record,
                "backup",
                lambda octx: runtime.lifecycle.backup(octx, location=location, force=force),
            )
            _success(
                op,
                "Backup completed successfully. You can find your backup at "
                f"{result.location}",
                changed=1,
                backups=[result.backup_id],
            )


@site_app.command("enable")
def site_enable(
    ctx: typer.Context,
    site: str | None = SITE_ARGUMENT,
    force: bool = typer.Option(False, "--force", help="Force execution of site up."),
) -> None:
    """Start a site's containers and mark it enabled."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "site enable",
        args={"site": site, "force": force},
        target={"kind": "site", "name": site},
    ) as op:
        with _locked_site(runtime, op, site, "enable") as record:
            _guarded(
                runtime,
                op,
                record,
                "enable",
                lambda octx: runtime.lifecycle.enable(octx, force=force),
            )
            _success(op, f"Site {record.url} enabled.")


@site_app.command("disable")
def site_disable(
    ctx: typer.Context,
    site: str | None = SITE_ARGUMENT,
) -> None:
    """Stop and remove a site's containers and mark it disabled."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "site disable",
        args={"site": site},
        target={"kind": "site", "name": site},
    ) as op:
        with _locked_site(runtime, op, site, "disable") as record:
            _guarded(runtime, op, record, "disable", runtime.lifecycle.disable)
            _success(op, f"Site {record.url} disabled.")


@site_app.command("restart")
def site_restart(
    ctx: typer.Context,
    site: str | None = SITE_ARGUMENT,
    all_services: bool = ALL_SERVICES_OPTION,
    nginx: bool = NGINX_OPTION,
    php: bool = PHP_OPTION,
    postfix: bool = POSTFIX_OPTION,
) -> None:
    """Restart containers of a site (every container when none is named)."""
    runtime = _get_runtime(ctx)
    services = _selected_services(nginx, php, postfix)
    with runtime.logger.operation(
        "site restart",
        args={"site": site, "all": all_services, "services": services},
        target={"kind": "site", "name": site},
    ) as op:
        with _locked_site(runtime, op, site, "restart") as record:
            touched = _guarded(
                runtime,
                op,
                record,
                "restart",
                lambda octx: runtime.lifecycle.restart(
                    octx, services, all_services=all_services
                ),
            )
            _success(op, f"Restarted {', '.join(touched)} for {record.url}.",
                     changed=len(touched))


@site_app.command("reload")
def site_reload(
    ctx: typer.Context,
    site: str | None = SITE_ARGUMENT,
    all_services: bool = ALL_SERVICES_OPTION,
    nginx: bool = NGINX_OPTION,
    php: bool = PHP_OPTION,
    postfix: bool = POSTFIX_OPTION,
) -> None:
    """Reload services inside a site's containers without restarting them."""
    runtime = _get_runtime(ctx)
    services = _selected_services(nginx, php, postfix)
    with runtime.logger.operation(
        "site reload",
        args={"site": site, "all": all_services, "services": services},
        target={"kind": "site", "name": site},
    ) as op:
        with _locked_site(runtime, op, site, "reload") as record:
            touched = _guarded(
                runtime,
                op,
                record,
                "reload",
                lambda octx: runtime.lifecycle.reload(
                    octx, services, all_services=all_services
                ),
            )
            _success(op, f"Reloaded {', '.join(touched)} for {record.url}.",
                     changed=len(touched))


@site_app.command("ssl")
def site_ssl(
    ctx: typer.Context,
    site: str = typer.Argument(..., help="Name of website."),
    force: bool = typer.Option(False, "--force", help="Force certificate renewal."),
    ssl_type: str | None = typer.Option(
        None,
        "--type",
        help="Set up TLS for a site without it: 'le' (Let's Encrypt) or 'inherit'.",
    ),
    wildcard: bool = typer.Option(
        False,
        "--wildcard",
        help="Request a wildcard certificate (with --type=le).",
    ),
) -> None:
    """Verify the SSL challenge and issue or renew the site certificate."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "site ssl",
        args={"site": site, "force": force, "type": ssl_type, "wildcard": wildcard},
        target={"kind": "site", "name": site},
    ) as op:
        with _locked_site(runtime, op, site, "ssl") as record:
            if ssl_type is None and not record.ssl:
                _command_error(
                    op,
                    f"{record.url} does not have SSL enabled. Pass --type=le or --type=inherit.",
                    rc=ExitCode.VALIDATION,
                )
            manager = runtime.certificates
            if ssl_type != "inherit" and not manager.email:
                manager.email = typer.prompt("Enter your mail id").strip()

            def action(octx: OperationContext) -> CertificateState:
                if ssl_type is not None:
                    return manager.init_ssl(octx, ssl_type, wildcard)
                return manager.issue(octx, force=force)

            state = _guarded(runtime, op, record, "ssl", action)
            if state is CertificateState.UNREGISTERED:
                _command_error(
                    op,
                    f"Let's Encrypt registration failed; {record.url} left without SSL.",
                    rc=ExitCode.PROVIDER,
                )
            if state is CertificateState.REGISTERED:
                _command_error(
                    op,
                    f"Domain authorization failed for {record.url}.",
                    rc=ExitCode.PROVIDER,
                )
            _success(
                op,
                f"SSL for {record.url}: {state.value}.",
                changed=0 if state is CertificateState.INHERITED else 1,
                context={"state": state.value},
            )


# ----------------------------------------------------------------------
# config commands
# ----------------------------------------------------------------------
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
                rendered = yaml.safe_dump(value, sort_keys=True).rstrip()
            else:
                rendered = str(value)
            table.add_row(key, escape(rendered))
        console.print(table)
        op.success("Rendered configuration table.", changed=0)


def main() -> None:
    """Console script entry point."""
    app()


__all__ = ["ListFormat", "RuntimeContext", "app", "main"]
