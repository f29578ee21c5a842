"""Let's Encrypt client driving ``certbot`` for a single site.

Each site keeps its own certbot state:

* ``<acme_dir>/certs/<url>`` - certbot ``--config-dir`` (account, live, archive)
* ``<acme_dir>/var/<url>`` - certbot ``--work-dir`` and ``--logs-dir``

Issued material is installed for the shared proxy as
``<certs_dir>/<url>.crt`` (full chain) and ``<certs_dir>/<url>.key``.

Certbot has no separate authorisation command, so :meth:`CertbotClient.authorize`
records the intended challenge in ``authorization.json`` under the config dir
and :meth:`CertbotClient.check` validates that record before issuance. The
record outlives :meth:`CertbotClient.cleanup` so later renewals can be checked.
"""
from __future__ import annotations

import json
import logging
import os
import shutil
import subprocess
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path

from ..errors import OperationalFailure, ProviderError
from ..tls import CertificateMaterial, inspect_certificate

logger = logging.getLogger(__name__)

AUTHORIZATION_FILE = "authorization.json"
_EXISTING_ACCOUNT_MARKERS = ("existing account", "already registered")


@dataclass(slots=True)
class CertbotClient:
    """Certificate authority client for one site."""

    url: str
    acme_dir: Path
    certs_dir: Path
    webroot: Path
    certbot_bin: str = "certbot"
    renew_before_days: int = 30
    staging: bool = False
    dns_auth_hook: str | None = None

    # Paths ---------------------------------------------------------------
    @property
    def config_dir(self) -> Path:
        """Certbot configuration directory for the site."""
        return self.acme_dir / "certs" / self.url

    @property
    def work_dir(self) -> Path:
        """Certbot working directory for the site."""
        return self.acme_dir / "var" / self.url

    @property
    def authorization_path(self) -> Path:
        """Location of the recorded authorisation."""
        return self.config_dir / AUTHORIZATION_FILE

    @property
    def material(self) -> CertificateMaterial:
        """Installed certificate/key pair for the site."""
        return CertificateMaterial.for_site(self.certs_dir, self.url)

    @property
    def challenge_dir(self) -> Path:
        """Webroot directory served for http-01 challenges."""
        return self.webroot / ".well-known" / "acme-challenge"

    # Protocol steps ------------------------------------------------------
    def register(self, email: str) -> bool:
        """Register an ACME account for *email*; an existing account counts as success."""
        result = self._certbot(
            ["register", "--agree-tos", "--no-eff-email", "-m", email]
        )
        if result.returncode == 0:
            return True
        output = f"{result.stdout or ''} {result.stderr or ''}".lower()
        if any(marker in output for marker in _EXISTING_ACCOUNT_MARKERS):
            logger.debug("certbot account already present for %s", self.url)
            return True
        logger.warning("certbot registration failed for %s: %s", self.url, _output(result))
        return False

    def authorize(self, domains: Sequence[str], wildcard: bool) -> bool:
        """Record the challenge that will prove control of *domains*.

        Wildcard certificates need a DNS challenge and stay ``pending`` until
        :meth:`check` runs after DNS propagation.
        """
        challenge = "dns-01" if wildcard else "http-01"
        try:
            if not wildcard:
                self.challenge_dir.mkdir(parents=True, exist_ok=True)
            self.config_dir.mkdir(parents=True, exist_ok=True)
            self.authorization_path.write_text(
                json.dumps(
                    {
                        "domains": list(domains),
                        "wildcard": wildcard,
                        "challenge": challenge,
                        "status": "pending" if wildcard else "ready",
                        "created_at": _now_iso(),
                    },
                    indent=2,
                )
                + "\n",
                encoding="utf-8",
            )
        except OSError as exc:
            logger.warning("authorization for %s failed: %s", self.url, exc)
            return False
        return True

    def check(self, domains: Sequence[str], wildcard: bool) -> None:
        """Raise :class:`OperationalFailure` unless the recorded authorisation is usable."""
        record = self._read_authorization()
        if record is None:
            raise OperationalFailure(f"No pending authorization for {self.url}.")
        recorded = [str(item) for item in record.get("domains", [])]
        if sorted(recorded) != sorted(domains):
            raise OperationalFailure(
                f"Authorization covers {', '.join(recorded) or 'nothing'}, "
                f"expected {', '.join(domains)}."
            )
        if bool(record.get("wildcard")) != wildcard:
            raise OperationalFailure("Authorization challenge type does not match the site.")
        if wildcard and not self.dns_auth_hook:
            raise OperationalFailure(
                "Wildcard certificates need acme.dns_auth_hook to publish the DNS challenge."
            )
        record["status"] = "valid"
        record["checked_at"] = _now_iso()
        self.authorization_path.write_text(json.dumps(record, indent=2) + "\n", encoding="utf-8")

    def request(
        self,
        domain: str,
        san: Sequence[str],
        email: str,
        force: bool = False,
    ) -> bool:
        """Issue or renew the certificate when needed and install it.

        Returns True when new material was installed and False when the
        installed certificate is still good.
        """
        domains = [domain, *san]
        report = inspect_certificate(
            self.material, domains, renew_before_days=self.renew_before_days
        )
        if not force and not report.needs_renewal:
            logger.debug("certificate for %s is current; no renewal needed", domain)
            return False
        if report.needs_renewal:
            logger.debug("issuing certificate for %s: %s", domain, "; ".join(report.reasons()))

        args = [
            "certonly",
            "--agree-tos",
            "--no-eff-email",
            "-m",
            email,
            "--cert-name",
            self.url,
        ]
        for name in domains:
            args.extend(["-d", name])
        record = self._read_authorization() or {}
        if record.get("wildcard"):
            args.extend(
                [
                    "--manual",
                    "--preferred-challenges",
                    "dns",
                    "--manual-auth-hook",
                    str(self.dns_auth_hook),
                ]
            )
        else:
            args.extend(["--webroot", "-w", str(self.webroot)])
        if force:
            args.append("--force-renewal")
        result = self._certbot(args)
        if result.returncode != 0:
            raise OperationalFailure(
                f"Certificate request for {domain} failed: {_output(result)}"
            )
        self._install()
        return True

    def cleanup(self) -> None:
        """Remove challenge tokens and the work dir; the authorisation record stays."""
        if self.work_dir.exists():
            shutil.rmtree(self.work_dir, ignore_errors=True)
        if self.challenge_dir.exists():
            for entry in self.challenge_dir.iterdir():
                if entry.is_file():
                    entry.unlink(missing_ok=True)

    def artifacts(self) -> list[Path]:
        """Return every on-disk path owned by this site's certificate."""
        material = self.material
        return [material.certificate, material.key, self.config_dir, self.work_dir]

    # ------------------------------------------------------------------
    def _install(self) -> None:
        live = self.config_dir / "live" / self.url
        fullchain = live / "fullchain.pem"
        privkey = live / "privkey.pem"
        if not fullchain.is_file() or not privkey.is_file():
            raise OperationalFailure(f"certbot did not produce material under {live}.")
        material = self.material
        try:
            self.certs_dir.mkdir(parents=True, exist_ok=True)
            shutil.copyfile(fullchain, material.certificate)
            os.chmod(material.certificate, 0o644)
            shutil.copyfile(privkey, material.key)
            os.chmod(material.key, 0o600)
        except OSError as exc:
            raise OperationalFailure(f"Failed to install certificate for {self.url}: {exc}") from exc

    def _read_authorization(self) -> dict[str, object] | None:
        path = self.authorization_path
        if not path.exists():
            return None
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as exc:
            raise OperationalFailure(f"Authorization record {path} is corrupted: {exc}") from exc
        return dict(data) if isinstance(data, dict) else None

    def _certbot(self, args: Sequence[str]) -> subprocess.CompletedProcess[str]:
        command = [
            self.certbot_bin,
            *args,
            "--non-interactive",
            "--config-dir",
            str(self.config_dir),
            "--work-dir",
            str(self.work_dir),
            "--logs-dir",
            str(self.work_dir / "logs"),
        ]
        if self.staging:
            command.append("--staging")
        logger.debug("exec: %s", " ".join(command))
        try:
            return subprocess.run(  # noqa: S603, S607
                command,
                capture_output=True,
                text=True,
                check=False,
            )
        except FileNotFoundError as exc:
            raise ProviderError(f"{self.certbot_bin} not found: {exc}") from exc


def _output(result: subprocess.CompletedProcess[str]) -> str:
    return (result.stderr or result.stdout or "no output").strip()


def _now_iso() -> str:
    return datetime.now(tz=UTC).isoformat(timespec="seconds").replace("+00:00", "Z")


__all__ = ["AUTHORIZATION_FILE", "CertbotClient"]
