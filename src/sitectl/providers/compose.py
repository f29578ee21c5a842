"""Docker compose provider for site container groups."""
from __future__ import annotations

import logging
import subprocess
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path

from ..errors import ExpectedAbsence, ProviderError

logger = logging.getLogger(__name__)

_ABSENCE_MARKERS = (
    "no such network",
    "not found",
    "is not connected",
    "no such container",
)


@dataclass(slots=True)
class ComposeProvider:
    """Run docker compose commands for a site's container group.

    Every call returns ``True``/``False`` for the command's exit status. The
    provider never parses container output beyond recognising "already gone"
    messages, which surface as :class:`~sitectl.errors.ExpectedAbsence`.
    """

    docker_bin: str = "docker"
    compose_bin: Sequence[str] = ("docker", "compose")
    label: str = "sitectl"
    proxy_container: str = "sitectl-nginx-proxy"
    env: Mapping[str, str] = field(default_factory=dict)

    # Container group -----------------------------------------------------
    def up(self, path: Path) -> bool:
        """Start (or recreate) the container group defined under *path*."""
        return self._compose(path, ["up", "-d"]).returncode == 0

    def down(self, path: Path) -> bool:
        """Stop and remove the container group defined under *path*."""
        return self._compose(path, ["down"]).returncode == 0

    def restart(self, path: Path, service: str) -> bool:
        """Restart a single compose *service*."""
        return self._compose(path, ["restart", service]).returncode == 0

    def exec(self, path: Path, service: str, command: Sequence[str]) -> bool:
        """Run *command* inside the running *service* container."""
        return self._compose(path, ["exec", "-T", service, *command]).returncode == 0

    def config_test(self, path: Path) -> bool:
        """Validate the site's nginx configuration inside its container."""
        return self.exec(path, "nginx", ["nginx", "-t"])

    # Site-wide fallbacks --------------------------------------------------
    def remove_site_containers(self, url: str) -> bool:
        """Force-remove every container labelled for *url*.

        Raises :class:`ExpectedAbsence` when no such containers exist.
        """
        listing = self._docker(
            [
                "ps",
                "-aq",
                "--filter",
                f"label=created_by={self.label}",
                "--filter",
                f"label=site_name={url}",
            ]
        )
        if listing.returncode != 0:
            return False
        ids = [line.strip() for line in (listing.stdout or "").splitlines() if line.strip()]
        if not ids:
            raise ExpectedAbsence(f"No containers found for {url}.")
        return self._docker(["rm", "-f", *ids]).returncode == 0

    def disconnect_network(self, network: str, container: str | None = None) -> bool:
        """Detach *container* (the shared proxy by default) from *network*."""
        target = container or self.proxy_container
        result = self._docker(["network", "disconnect", "--force", network, target])
        return self._absence_aware(result, f"{target} is not attached to {network}.")

    def remove_network(self, network: str) -> bool:
        """Remove the docker *network*."""
        result = self._docker(["network", "rm", network])
        return self._absence_aware(result, f"Network {network} does not exist.")

    def reload_proxy(self) -> bool:
        """Validate and hot-reload the shared reverse proxy."""
        check = self._docker(["exec", self.proxy_container, "nginx", "-t"])
        if check.returncode != 0:
            return False
        reload = self._docker(["exec", self.proxy_container, "nginx", "-s", "reload"])
        return reload.returncode == 0

    # ------------------------------------------------------------------
    def _absence_aware(self, result: subprocess.CompletedProcess[str], message: str) -> bool:
        if result.returncode == 0:
            return True
        output = f"{result.stderr or ''} {result.stdout or ''}".lower()
        if any(marker in output for marker in _ABSENCE_MARKERS):
            raise ExpectedAbsence(message)
        return False

    def _compose(self, path: Path, args: Sequence[str]) -> subprocess.CompletedProcess[str]:
        return self._run_command([*self.compose_bin, *args], cwd=path)

    def _docker(self, args: Sequence[str]) -> subprocess.CompletedProcess[str]:
        return self._run_command([self.docker_bin, *args])

    def _run_command(
        self,
        args: Sequence[str],
        *,
        cwd: Path | None = None,
    ) -> subprocess.CompletedProcess[str]:
        if cwd is not None and not cwd.is_dir():
            raise ProviderError(f"Site directory {cwd} does not exist.")
        logger.debug("exec: %s (cwd=%s)", " ".join(args), cwd)
        try:
            result = subprocess.run(  # noqa: S603, S607
                list(args),
                cwd=str(cwd) if cwd is not None else None,
                capture_output=True,
                text=True,
                check=False,
                env=dict(self.env) or None,
            )
        except FileNotFoundError as exc:
            raise ProviderError(f"{args[0]} not found: {exc}") from exc
        if result.returncode != 0:
            message = (result.stderr or result.stdout or "no output").strip()
            logger.debug("%s exited %s: %s", args[0], result.returncode, message)
        return result


__all__ = ["ComposeProvider"]
