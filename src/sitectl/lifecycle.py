"""Site lifecycle engine.

Every operation runs a fixed sequence of driver calls, each gated on the one
before it. Drivers answer with booleans or raise from :mod:`sitectl.errors`;
the engine decides per step whether a failure is tolerated (absence, best
effort cleanup), downgraded to a warning, or fatal for the sequence.

Persisted state is only written after the external effect it describes has
been confirmed, so the registry never claims a state the containers do not
have.
"""
from __future__ import annotations

import logging
import shutil
import tempfile
from collections.abc import Callable, Iterable, Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path

from .backups import BackupRegistryError, BackupsRegistry, build_entry
from .context import OperationContext, TeardownLevel
from .errors import (
    ExpectedAbsence,
    OperationalFailure,
    PreconditionViolation,
    ProviderError,
    SiteError,
)
from .providers.compose import ComposeProvider
from .providers.database import DatabaseProvider
from .providers.filesystem import copy_file, copy_tree, mirror, overlay, remove_tree
from .providers.provisioner import SiteProvisioner
from .state.models import DatabaseParams, Site, SiteType
from .state.registry import SiteRegistry, StateRegistryError

logger = logging.getLogger(__name__)

DEFAULT_RELOAD_COMMANDS: dict[str, tuple[str, ...]] = {
    "nginx": ("sh", "-c", "nginx -t && nginx -s reload"),
    "php": ("kill", "-USR2", "1"),
    "postfix": ("postfix", "reload"),
}


@dataclass(frozen=True, slots=True)
class SitePaths:
    """Shared locations outside a site's own root."""

    certs_dir: Path
    proxy_conf_dir: Path
    acme_dir: Path

    def redirect_conf(self, url: str) -> Path:
        """Return the proxy redirect snippet for *url*."""
        return self.proxy_conf_dir / f"{url}-redirect.conf"

    def cert_artifacts(self, url: str) -> list[Path]:
        """Return every certificate path owned by *url*."""
        return [
            self.acme_dir / "certs" / url,
            self.acme_dir / "var" / url,
            self.certs_dir / f"{url}.crt",
            self.certs_dir / f"{url}.key",
        ]


@dataclass(frozen=True, slots=True)
class BackupResult:
    """Outcome of a finished backup."""

    url: str
    location: Path
    backup_id: str
    database: bool


@dataclass(frozen=True, slots=True)
class UpdateResult:
    """Outcome of an update, including the compensation path."""

    url: str
    old_type: SiteType
    new_type: SiteType
    backup: BackupResult
    updated: bool
    restored: bool = False
    config_reverted: bool = False
    error: str | None = None


class SiteLifecycle:
    """Sequence lifecycle operations over the resource drivers."""

    def __init__(
        self,
        *,
        registry: SiteRegistry,
        compose: ComposeProvider,
        database: DatabaseProvider,
        provisioner: SiteProvisioner,
        backups: BackupsRegistry,
        paths: SitePaths,
        reload_commands: Mapping[str, Sequence[str]] | None = None,
    ) -> None:
        """Wire the engine to its drivers and stores."""
        self.registry = registry
        self.compose = compose
        self.database = database
        self.provisioner = provisioner
        self.backups = backups
        self.paths = paths
        self.reload_commands: dict[str, tuple[str, ...]] = dict(DEFAULT_RELOAD_COMMANDS)
        for service, command in (reload_commands or {}).items():
            self.reload_commands[service] = tuple(command)

    # ------------------------------------------------------------------
    # delete / rollback
    # ------------------------------------------------------------------
    def external_database(self, site: Site) -> DatabaseParams | None:
        """Return db params needing explicit cleanup (not the per-site container)."""
        if site.database is None or site.database.host == self.database.local_host:
            return None
        return site.database

    def delete(
        self,
        ctx: OperationContext,
        level: int,
        db: DatabaseParams | None = None,
    ) -> None:
        """Tear ``ctx.site`` down to *level*.

        Absent resources are skipped. Failing to remove the site root, the
        redirect snippet or the registry record raises
        :class:`OperationalFailure` and stops the sequence.
        """
        level = TeardownLevel(level)
        site = ctx.site
        if level is TeardownLevel.NONE:
            ctx.step("delete", status="skipped", detail="no cleanup required")
            return

        if level >= TeardownLevel.NETWORK:
            ctx.advance(TeardownLevel.NETWORK)
            self._best_effort(ctx, "network-disconnect", self.compose.disconnect_network, site.url)

        if level >= TeardownLevel.CONTAINERS:
            ctx.advance(min(level, TeardownLevel.CONTAINERS_STRICT))
            self._remove_containers(ctx, level)
            self._best_effort(ctx, "network-remove", self.compose.remove_network, site.url)

        ctx.advance(TeardownLevel.SITE_ROOT)
        if db is not None:
            self._best_effort(ctx, "db-drop-schema", self.database.drop_database, db)
            self._best_effort(ctx, "db-drop-user", self.database.drop_user, db)

        self._remove_path(
            ctx,
            "site-root",
            site.fs_path,
            "Could not remove site root. Please check if you have sufficient rights.",
        )
        self._remove_path(
            ctx,
            "redirect-conf",
            self.paths.redirect_conf(site.url),
            "Could not remove site redirection file. Please check if you have sufficient rights.",
        )

        if level > TeardownLevel.CONTAINERS_STRICT:
            ctx.advance(TeardownLevel.RECORD)
            if site.ssl:
                ctx.info("Removing ssl certs.")
                for artifact in self.paths.cert_artifacts(site.url):
                    try:
                        remove_tree(artifact)
                    except ExpectedAbsence as exc:
                        ctx.step("cert-remove", status="skipped", detail=str(exc))
                    except OperationalFailure as exc:
                        ctx.warn("cert-remove", str(exc))
                    else:
                        ctx.step("cert-remove", detail=str(artifact))
            self._remove_record(ctx)

        ctx.step("delete", detail=f"level {int(level)}")

    def rollback(self, ctx: OperationContext) -> None:
        """Undo partial work by deleting at ``ctx.progress``; never raises."""
        level = ctx.progress
        if level is TeardownLevel.NONE:
            ctx.step("rollback", status="skipped", detail="nothing to undo")
            return
        ctx.warn("rollback", f"An error occurred. Initiating clean-up at level {int(level)}.")
        cleanup = ctx.nested("rollback")
        try:
            self.delete(cleanup, level, db=self.external_database(ctx.site))
        except SiteError as exc:
            ctx.warn("rollback", f"Clean-up incomplete: {exc}")
            return
        ctx.step("rollback", detail=f"level {int(level)}")

    def _remove_containers(self, ctx: OperationContext, level: TeardownLevel) -> None:
        site = ctx.site
        if site.fs_path.is_dir() and self._run(ctx, "compose-down", self.compose.down,
                                               site.fs_path):
            ctx.info("Docker containers removed.")
            return
        try:
            removed = self._run(
                ctx, "containers-force-remove", self.compose.remove_site_containers, site.url
            )
        except ExpectedAbsence as exc:
            ctx.step("containers-force-remove", status="skipped", detail=str(exc))
            return
        if not removed and level > TeardownLevel.CONTAINERS:
            ctx.warn("containers-force-remove", "Error in removing docker containers.")

    def _remove_path(self, ctx: OperationContext, name: str, path: Path, message: str) -> None:
        try:
            remove_tree(path)
        except ExpectedAbsence:
            ctx.step(name, status="skipped", detail=f"{path} already absent")
            return
        except OperationalFailure as exc:
            logger.debug("removing %s failed: %s", path, exc)
            ctx.step(name, status="error", detail=str(exc))
            raise OperationalFailure(message) from exc
        ctx.step(name, detail=str(path))
        ctx.info(f"{name.replace('-', ' ')} removed.")

    def _remove_record(self, ctx: OperationContext) -> None:
        try:
            removed = self.registry.delete(ctx.site.url)
        except (StateRegistryError, OSError) as exc:
            ctx.step("record-remove", status="error", detail=str(exc))
            raise OperationalFailure("Could not remove the database entry") from exc
        if removed:
            ctx.step("record-remove")
            ctx.info("Removed database entry.")
        else:
            ctx.step("record-remove", status="skipped", detail="record already absent")

    # ------------------------------------------------------------------
    # update
    # ------------------------------------------------------------------
    def update(
        self,
        ctx: OperationContext,
        new_type: SiteType | str,
        *,
        location: Path | None = None,
    ) -> UpdateResult:
        """Swap the site implementation: backup, delete(5), create(new_type).

        When creation fails the old site is recreated and its files, custom
        config and database are restored from the backup. Restoration
        failures raise :class:`OperationalFailure` and are not retried.
        """
        site = ctx.site
        target = new_type if isinstance(new_type, SiteType) else _parse_type(new_type)
        if target is site.site_type:
            raise PreconditionViolation(f"{site.url} is already a {target.value} site.")
        create_params = self.provisioner.create_params(site, target)

        backup = self.backup(ctx, location=location)

        try:
            ctx.info("Removing old site")
            self.delete(ctx, TeardownLevel.RECORD, db=self.external_database(site))
            ctx.info(f"Creating new site of type {target.value}")
            created = self._run(ctx, "create", self.provisioner.create, site.url, target,
                                create_params)
            if not created:
                raise OperationalFailure(
                    f"Unable to create new site of type {target.value}. "
                    "Please check logs for more info"
                )
        except OperationalFailure as exc:
            ctx.warn("update", f"Encountered error while updating site: {exc} Restoring old site.")
            self._restore(ctx, site, backup)
            return UpdateResult(
                url=site.url,
                old_type=site.site_type,
                new_type=target,
                backup=backup,
                updated=False,
                restored=True,
                error=str(exc),
            )

        updated_site = self.registry.find(site.url) or site.with_updates(site_type=target)
        ctx.site = updated_site
        reverted = self._apply_custom_config(ctx, backup.location)
        return UpdateResult(
            url=site.url,
            old_type=site.site_type,
            new_type=target,
            backup=backup,
            updated=True,
            config_reverted=reverted,
        )

    def _restore(self, ctx: OperationContext, site: Site, backup: BackupResult) -> None:
        params = self.provisioner.create_params(site, site.site_type)
        if not self._run(ctx, "restore-create", self.provisioner.create, site.url,
                         site.site_type, params):
            raise OperationalFailure(
                f"Unable to recreate {site.url} as a {site.site_type.value} site. Aborting."
            )
        ctx.site = self.registry.find(site.url) or site
        location = backup.location
        copy_tree(location / "files", site.content_dir)
        copy_tree(location / "conf" / "nginx" / "custom", site.custom_nginx_dir)
        if site.site_type.has_php:
            try:
                copy_file(location / "conf" / "php-fpm" / "php.ini", site.php_ini)
            except ExpectedAbsence as exc:
                ctx.step("restore-php-ini", status="skipped", detail=str(exc))
        ctx.step("restore-files", detail=str(location))

        if site.database is not None:
            ctx.info("Restoring database")
            if not self._run(ctx, "restore-database", self.database.restore, site, location):
                raise OperationalFailure("Unable to import from mysql dump. Aborting.")
        ctx.info("Site restored successfully")

    def _apply_custom_config(self, ctx: OperationContext, location: Path) -> bool:
        """Overlay the backed up custom config; revert it if nginx rejects it."""
        site = ctx.site
        saved = Path(tempfile.mkdtemp(prefix="sitectl-config-"))
        try:
            mirror(site.config_dir, saved / "config")
            try:
                overlay(location / "conf", site.config_dir)
            except ExpectedAbsence as exc:
                ctx.step("custom-config", status="skipped", detail=str(exc))
                return False
            try:
                valid = self.compose.config_test(site.fs_path)
            except ProviderError as exc:
                logger.debug("config test failed to run: %s", exc)
                valid = False
            if valid:
                ctx.step("custom-config", detail=str(location / "conf"))
                return False
            ctx.warn(
                "custom-config",
                "Looks like your custom config causes Nginx config error. It has been "
                "removed; re-add it from the backup after correcting it.",
            )
            mirror(saved / "config", site.config_dir)
            return True
        finally:
            shutil.rmtree(saved, ignore_errors=True)

    # ------------------------------------------------------------------
    # backup
    # ------------------------------------------------------------------
    def backup(
        self,
        ctx: OperationContext,
        *,
        location: Path | None = None,
        force: bool = False,
    ) -> BackupResult:
        """Copy site files, custom config and the database dump to *location*."""
        site = ctx.site
        if force:
            ctx.step("config-test", status="skipped", detail="forced")
        elif not self._run(ctx, "config-test", self.compose.config_test, site.fs_path):
            raise OperationalFailure(
                "Looks like there is some error in your nginx config. "
                "Please fix it to continue backup."
            )

        target = (location or self.backups.location_for(site.url)).expanduser()
        ctx.info(f"Taking backup of {site.url}")
        copy_tree(site.content_dir, target / "files")
        copy_tree(site.custom_nginx_dir, target / "conf" / "nginx" / "custom")
        if site.site_type.has_php:
            try:
                copy_file(site.php_ini, target / "conf" / "php-fpm" / "php.ini")
            except ExpectedAbsence as exc:
                ctx.warn("backup-php-ini", str(exc))
        ctx.step("backup-files", detail=str(target))

        if site.database is not None:
            ctx.info("Taking backup of database.")
            if not self._run(ctx, "backup-database", self.database.dump, site, target):
                raise OperationalFailure("Unable to create mysql dump. Aborting.")

        backup_id = self.backups.generate_identifier(site.url)
        try:
            self.backups.append(
                build_entry(
                    backup_id=backup_id,
                    url=site.url,
                    location=target,
                    database=site.database is not None,
                    forced=force,
                )
            )
        except BackupRegistryError as exc:
            ctx.warn("backup-index", str(exc))
        return BackupResult(
            url=site.url,
            location=target,
            backup_id=backup_id,
            database=site.database is not None,
        )

    # ------------------------------------------------------------------
    # enable / disable
    # ------------------------------------------------------------------
    def enable(self, ctx: OperationContext, *, force: bool = False) -> Site:
        """Start the container group, then persist ``enabled=True``."""
        site = ctx.site
        if site.enabled and not force:
            raise PreconditionViolation(f"{site.url} is already enabled!")
        ctx.info(f"Enabling site {site.url}.")
        if not self._run(ctx, "compose-up", self.compose.up, site.fs_path):
            raise OperationalFailure(
                f"There was error in enabling {site.url}. Please check logs."
            )
        return self._save(ctx, site.with_updates(enabled=True))

    def disable(self, ctx: OperationContext) -> Site:
        """Stop the container group, then persist ``enabled=False``."""
        site = ctx.site
        ctx.info(f"Disabling site {site.url}.")
        if not self._run(ctx, "compose-down", self.compose.down, site.fs_path):
            raise OperationalFailure(
                f"There was error in disabling {site.url}. Please check logs."
            )
        return self._save(ctx, site.with_updates(enabled=False))

    def _save(self, ctx: OperationContext, site: Site) -> Site:
        try:
            self.registry.save(site)
        except (StateRegistryError, OSError) as exc:
            raise OperationalFailure(f"Failed to persist {site.url}: {exc}") from exc
        ctx.site = site
        ctx.step("record-save", detail=f"enabled={site.enabled}")
        return site

    # ------------------------------------------------------------------
    # restart / reload
    # ------------------------------------------------------------------
    @staticmethod
    def select_services(
        site_type: SiteType,
        services: Iterable[str] = (),
        all_services: bool = False,
    ) -> list[str]:
        """Return the services to act on for *site_type*.

        ``all_services`` or an empty selection means the whole whitelist.
        """
        whitelist = site_type.services
        requested = list(dict.fromkeys(services))
        if all_services or not requested:
            return list(whitelist)
        unknown = [service for service in requested if service not in whitelist]
        if unknown:
            allowed = ", ".join(whitelist)
            raise PreconditionViolation(
                f"Unsupported service(s) for {site_type.value} sites: "
                f"{', '.join(unknown)}. Allowed: {allowed}."
            )
        return requested

    def restart(
        self,
        ctx: OperationContext,
        services: Iterable[str] = (),
        *,
        all_services: bool = False,
    ) -> list[str]:
        """Restart the selected containers; returns the services touched."""
        site = ctx.site
        selected = self.select_services(site.site_type, services, all_services)
        failed = [
            service
            for service in selected
            if not self._run(ctx, f"restart-{service}", self.compose.restart, site.fs_path,
                             service)
        ]
        if failed:
            raise OperationalFailure(f"Failed to restart {', '.join(failed)} for {site.url}.")
        return selected

    def reload(
        self,
        ctx: OperationContext,
        services: Iterable[str] = (),
        *,
        all_services: bool = False,
    ) -> list[str]:
        """Reload services in place inside their running containers."""
        site = ctx.site
        selected = self.select_services(site.site_type, services, all_services)
        missing = [service for service in selected if service not in self.reload_commands]
        if missing:
            raise PreconditionViolation(f"No reload command known for {', '.join(missing)}.")
        failed = [
            service
            for service in selected
            if not self._run(
                ctx,
                f"reload-{service}",
                self.compose.exec,
                site.fs_path,
                service,
                self.reload_commands[service],
            )
        ]
        if failed:
            raise OperationalFailure(f"Failed to reload {', '.join(failed)} for {site.url}.")
        return selected

    # ------------------------------------------------------------------
    @staticmethod
    def _run(ctx: OperationContext, name: str, func: Callable[..., bool], *args: object) -> bool:
        """Call a driver, recording the step; driver errors abort the sequence."""
        try:
            ok = bool(func(*args))
        except ProviderError as exc:
            ctx.step(name, status="error", detail=str(exc))
            raise OperationalFailure(str(exc)) from exc
        ctx.step(name, status="success" if ok else "error")
        return ok

    @staticmethod
    def _best_effort(
        ctx: OperationContext,
        name: str,
        func: Callable[..., bool],
        *args: object,
    ) -> None:
        try:
            ok = bool(func(*args))
        except ExpectedAbsence as exc:
            ctx.step(name, status="skipped", detail=str(exc))
            return
        except ProviderError as exc:
            ctx.warn(name, str(exc))
            return
        if ok:
            ctx.step(name)
        else:
            ctx.warn(name, f"{name.replace('-', ' ')} failed.")


def _parse_type(value: str) -> SiteType:
    try:
        return SiteType.parse(value)
    except ValueError as exc:
        raise PreconditionViolation(str(exc)) from exc


__all__ = [
    "DEFAULT_RELOAD_COMMANDS",
    "BackupResult",
    "OperationContext",
    "SiteLifecycle",
    "SitePaths",
    "TeardownLevel",
    "UpdateResult",
]
