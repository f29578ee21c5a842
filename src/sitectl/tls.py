"""Inspection helpers for certificates installed for the shared proxy."""
from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from enum import Enum
from pathlib import Path
from typing import Protocol, cast

from cryptography import x509
from cryptography.hazmat.primitives import serialization
from cryptography.x509.oid import NameOID


class CertificateFindingSeverity(Enum):
    """Severities for certificate inspection findings."""

    OK = "ok"
    WARNING = "warning"
    ERROR = "error"


@dataclass(frozen=True)
class CertificateFinding:
    """Outcome of an individual inspection check."""

    check: str
    severity: CertificateFindingSeverity
    message: str


@dataclass(frozen=True)
class CertificateMaterial:
    """Certificate and key paths installed for a site."""

    certificate: Path
    key: Path

    @classmethod
    def for_site(cls, certs_dir: Path, url: str) -> CertificateMaterial:
        """Return the ``<url>.crt``/``<url>.key`` pair under *certs_dir*."""
        return cls(certificate=certs_dir / f"{url}.crt", key=certs_dir / f"{url}.key")

    def exists(self) -> bool:
        """Return True when both files are present."""
        return self.certificate.is_file() and self.key.is_file()


@dataclass(frozen=True)
class CertificateReport:
    """Aggregate inspection result for installed material."""

    material: CertificateMaterial
    findings: tuple[CertificateFinding, ...]
    domains: tuple[str, ...] = ()
    not_valid_after: datetime | None = None

    @property
    def has_errors(self) -> bool:
        """Return True when any finding is an error."""
        return any(f.severity is CertificateFindingSeverity.ERROR for f in self.findings)

    @property
    def needs_renewal(self) -> bool:
        """Return True when the certificate must be (re)issued."""
        return any(f.severity is not CertificateFindingSeverity.OK for f in self.findings)

    def reasons(self) -> list[str]:
        """Return messages for every non-OK finding."""
        return [
            f.message for f in self.findings if f.severity is not CertificateFindingSeverity.OK
        ]


class PublicKeyProtocol(Protocol):
    """Protocol covering public keys exposing ``public_bytes``."""

    def public_bytes(
        self,
        *,
        encoding: serialization.Encoding,
        format: serialization.PublicFormat,
    ) -> bytes:
        """Return the public key bytes in the requested encoding/format."""


class PrivateKeyProtocol(Protocol):
    """Protocol for private keys that can provide a matching public key."""

    def public_key(self) -> PublicKeyProtocol:
        """Return the associated public key object."""


def inspect_certificate(
    material: CertificateMaterial,
    domains: Iterable[str],
    *,
    renew_before_days: int = 30,
    now: datetime | None = None,
) -> CertificateReport:
    """Check *material* for presence, key match, expiry and domain coverage."""
    now = now or datetime.now(UTC)
    wanted = tuple(domains)
    findings: list[CertificateFinding] = []

    if not material.exists():
        findings.append(
            CertificateFinding(
                check="exists",
                severity=CertificateFindingSeverity.ERROR,
                message=f"Certificate or key missing under {material.certificate.parent}.",
            )
        )
        return CertificateReport(material=material, findings=tuple(findings))

    try:
        cert = load_certificate(material.certificate)
    except ValueError as exc:
        findings.append(
            CertificateFinding(
                check="parse",
                severity=CertificateFindingSeverity.ERROR,
                message=f"Failed to parse certificate: {exc}",
            )
        )
        return CertificateReport(material=material, findings=tuple(findings))

    try:
        key = load_private_key(material.key)
    except (ValueError, TypeError) as exc:
        findings.append(
            CertificateFinding(
                check="key",
                severity=CertificateFindingSeverity.ERROR,
                message=f"Failed to parse private key: {exc}",
            )
        )
    else:
        if not public_keys_match(cert, key):
            findings.append(
                CertificateFinding(
                    check="key",
                    severity=CertificateFindingSeverity.ERROR,
                    message="Certificate does not match the installed key.",
                )
            )

    covered = certificate_domains(cert)
    missing = [domain for domain in wanted if not _covers(covered, domain)]
    if missing:
        findings.append(
            CertificateFinding(
                check="domains",
                severity=CertificateFindingSeverity.ERROR,
                message=f"Certificate does not cover {', '.join(missing)}.",
            )
        )

    not_after = _as_utc(cert.not_valid_after_utc)
    if not_after <= now:
        findings.append(
            CertificateFinding(
                check="expiry",
                severity=CertificateFindingSeverity.ERROR,
                message=f"Certificate expired on {not_after.isoformat()}",
            )
        )
    elif not_after - now <= timedelta(days=renew_before_days):
        days_remaining = (not_after - now).days
        findings.append(
            CertificateFinding(
                check="expiry",
                severity=CertificateFindingSeverity.WARNING,
                message=(
                    "Certificate expires soon "
                    f"({not_after.isoformat()}, {days_remaining} day(s) remaining)"
                ),
            )
        )
    else:
        findings.append(
            CertificateFinding(
                check="expiry",
                severity=CertificateFindingSeverity.OK,
                message=f"Certificate valid until {not_after.isoformat()}",
            )
        )

    return CertificateReport(
        material=material,
        findings=tuple(findings),
        domains=tuple(covered),
        not_valid_after=not_after,
    )


def certificate_domains(cert: x509.Certificate) -> list[str]:
    """Return the DNS names in the SAN extension (falling back to the CN)."""
    try:
        extension = cert.extensions.get_extension_for_class(x509.SubjectAlternativeName)
    except x509.ExtensionNotFound:
        names = cert.subject.get_attributes_for_oid(NameOID.COMMON_NAME)
        return [str(attr.value) for attr in names]
    return list(extension.value.get_values_for_type(x509.DNSName))


def load_certificate(path: Path) -> x509.Certificate:
    """Load a PEM (or DER) encoded certificate."""
    data = path.read_bytes()
    try:
        return x509.load_pem_x509_certificate(data)
    except ValueError:
        return x509.load_der_x509_certificate(data)


def load_private_key(path: Path) -> PrivateKeyProtocol:
    """Load an unencrypted PEM private key."""
    data = path.read_bytes()
    private_key = serialization.load_pem_private_key(data, password=None)
    return cast(PrivateKeyProtocol, private_key)


def public_keys_match(cert: x509.Certificate, private_key: PrivateKeyProtocol) -> bool:
    """Return True when *private_key* belongs to *cert*."""
    cert_bytes = cert.public_key().public_bytes(
        encoding=serialization.Encoding.DER,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    )
    key_bytes = private_key.public_key().public_bytes(
        encoding=serialization.Encoding.DER,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    )
    return cert_bytes == key_bytes


def _covers(names: Iterable[str], domain: str) -> bool:
    domain = domain.lower()
    for name in names:
        name = name.lower()
        if name == domain:
            return True
        if name.startswith("*.") and not domain.startswith("*."):
            suffix = name[1:]
            head, _, rest = domain.partition(".")
            if head and f".{rest}" == suffix:
                return True
    return False


def _as_utc(moment: datetime) -> datetime:
    if moment.tzinfo is None:
        return moment.replace(tzinfo=UTC)
    return moment.astimezone(UTC)


__all__ = [
    "CertificateFinding",
    "CertificateFindingSeverity",
    "CertificateMaterial",
    "CertificateReport",
    "certificate_domains",
    "inspect_certificate",
    "load_certificate",
    "load_private_key",
    "public_keys_match",
]
