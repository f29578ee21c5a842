"""Database provider backed by a throwaway MariaDB client container."""
from __future__ import annotations

import logging
import os
import subprocess
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path

from ..errors import ProviderError
from ..state.models import DatabaseParams, Site

logger = logging.getLogger(__name__)


def dump_path(directory: Path, url: str) -> Path:
    """Return the dump file for *url* inside a backup *directory*."""
    return directory / "db" / f"{url}.sql"


@dataclass(slots=True)
class DatabaseProvider:
    """Run ``mysqldump``/``mysql`` through ``docker run`` against a site's database.

    Passwords travel through the ``MYSQL_PWD`` environment variable of the
    client container and never appear on argv.
    """

    docker_bin: str = "docker"
    image: str = "mariadb:10.11"
    global_host: str = "global-db"
    global_network: str = "sitectl-global-backend"
    local_host: str = "db"
    root_user: str = "root"
    root_password: str = ""

    def network_for(self, site: Site) -> str | None:
        """Return the docker network the client must join to reach the site db."""
        if site.database is None:
            return None
        host = site.database.host
        if host == self.global_host:
            return self.global_network
        if host == self.local_host:
            return site.url
        return None

    def dump(self, site: Site, directory: Path) -> bool:
        """Dump the site's database to ``<directory>/db/<url>.sql``."""
        params = _require_params(site)
        target = dump_path(directory, site.url)
        target.parent.mkdir(parents=True, exist_ok=True)
        command = [
            "mysqldump",
            f"--host={params.host}",
            f"--port={params.port}",
            f"--user={params.user}",
            "--single-transaction",
            f"--result-file=/backup/{target.name}",
            params.name,
        ]
        mounts = [f"{target.parent}:/backup"]
        ok = self._client(command, password=params.password, network=self.network_for(site),
                          mounts=mounts)
        return ok and target.exists()

    def restore(self, site: Site, directory: Path) -> bool:
        """Load ``<directory>/db/<url>.sql`` into the site's database."""
        params = _require_params(site)
        source = dump_path(directory, site.url)
        if not source.exists():
            logger.debug("no dump at %s; nothing to restore", source)
            return False
        command = [
            "mysql",
            f"--host={params.host}",
            f"--port={params.port}",
            f"--user={params.user}",
            params.name,
            "-e",
            f"source /backup/{source.name}",
        ]
        mounts = [f"{source.parent}:/backup:ro"]
        return self._client(command, password=params.password, network=self.network_for(site),
                            mounts=mounts)

    def drop_database(self, params: DatabaseParams) -> bool:
        """Drop the schema named in *params* (no error when absent)."""
        statement = f"DROP DATABASE IF EXISTS `{_quote_identifier(params.name)}`;"
        return self._admin(params, statement)

    def drop_user(self, params: DatabaseParams) -> bool:
        """Drop the account named in *params* (no error when absent)."""
        statement = f"DROP USER IF EXISTS '{_quote_literal(params.user)}'@'%';"
        return self._admin(params, statement)

    # ------------------------------------------------------------------
    def _admin(self, params: DatabaseParams, statement: str) -> bool:
        command = [
            "mysql",
            f"--host={params.host}",
            f"--port={params.port}",
            f"--user={self.root_user}",
            "-e",
            statement,
        ]
        network = self.global_network if params.host == self.global_host else None
        return self._client(command, password=self.root_password, network=network)

    def _client(
        self,
        command: Sequence[str],
        *,
        password: str,
        network: str | None = None,
        mounts: Sequence[str] = (),
    ) -> bool:
        args: list[str] = [self.docker_bin, "run", "--rm", "-e", "MYSQL_PWD"]
        if network:
            args.extend(["--network", network])
        for mount in mounts:
            args.extend(["-v", mount])
        args.append(self.image)
        args.extend(command)
        logger.debug("exec: %s", " ".join(args))
        try:
            result = subprocess.run(  # noqa: S603, S607
                args,
                capture_output=True,
                text=True,
                check=False,
                env=_client_env(password),
            )
        except FileNotFoundError as exc:
            raise ProviderError(f"{self.docker_bin} not found: {exc}") from exc
        if result.returncode != 0:
            message = (result.stderr or result.stdout or "no output").strip()
            logger.debug("database client exited %s: %s", result.returncode, message)
            return False
        return True


def _client_env(password: str) -> dict[str, str]:
    env = dict(os.environ)
    env["MYSQL_PWD"] = password
    return env


def _require_params(site: Site) -> DatabaseParams:
    if site.database is None:
        raise ProviderError(f"Site '{site.url}' has no database configured.")
    return site.database


def _quote_identifier(value: str) -> str:
    return value.replace("`", "``")


def _quote_literal(value: str) -> str:
    return value.replace("\\", "\\\\").replace("'", "''")


__all__ = ["DatabaseProvider", "dump_path"]
