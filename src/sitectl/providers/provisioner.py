"""Bridge to the external site creation command."""
from __future__ import annotations

import logging
import subprocess
from collections.abc import Sequence
from dataclasses import dataclass

from ..errors import ProviderError
from ..state.models import Site, SiteType

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class SiteProvisioner:
    """Invoke ``<command> <url> --type=<type> [params...]`` to create a site.

    The creation command owns container generation, config rendering and the
    registry record. sitectl only decides the arguments.
    """

    command: Sequence[str] = ("sitectl-create",)
    local_db_host: str = "db"

    def create_params(self, site: Site, site_type: SiteType) -> list[str]:
        """Return the creation flags that carry *site*'s database over to *site_type*."""
        db = site.database
        if db is None:
            return []
        params: list[str] = []
        if site_type is SiteType.PHP:
            params.append("--with-db")
        params.extend(
            [
                f"--dbname={db.name}",
                f"--dbuser={db.user}",
                f"--dbpass={db.password}",
                f"--dbhost={db.host}",
            ]
        )
        if db.host == self.local_db_host:
            params.append("--local-db")
        return params

    def create(self, url: str, site_type: SiteType, params: Sequence[str] = ()) -> bool:
        """Run the creation command and return True on success."""
        args = [*self.command, url, f"--type={site_type.value}", *params]
        logger.debug("exec: %s", " ".join(_redact(args)))
        try:
            result = subprocess.run(  # noqa: S603, S607
                args,
                capture_output=True,
                text=True,
                check=False,
            )
        except FileNotFoundError as exc:
            raise ProviderError(f"{self.command[0]} not found: {exc}") from exc
        if result.returncode != 0:
            message = (result.stderr or result.stdout or "no output").strip()
            logger.warning("site creation for %s failed: %s", url, message)
            return False
        return True


def _redact(args: Sequence[str]) -> list[str]:
    return ["--dbpass=***" if arg.startswith("--dbpass=") else arg for arg in args]


__all__ = ["SiteProvisioner"]
