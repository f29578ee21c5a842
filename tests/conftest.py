"""Pytest configuration helpers and shared fixtures for the test suite."""

from __future__ import annotations

import os
from collections.abc import Callable, Sequence
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import NameOID

from sitectl.backups import BackupsRegistry
from sitectl.context import OperationContext
from sitectl.lifecycle import SiteLifecycle, SitePaths
from sitectl.logging import OperationScope
from sitectl.providers.provisioner import SiteProvisioner
from sitectl.state import DatabaseParams, Site, SiteRegistry, SiteType


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    """Skip expensive tests during mutation runs."""
    if not os.environ.get("MUTANT_UNDER_TEST"):
        return
    skip_marker = pytest.mark.skip(reason="Skipped during mutation run to avoid timeouts.")
    for item in items:
        if "mutation_timeout" in item.keywords:
            item.add_marker(skip_marker)


class FakeDriver:
    """Record driver calls into a shared list and answer from ``results``.

    A result may be a bool, an exception instance (raised) or a list of such
    values consumed one per call. ``hooks`` run before the result is produced.
    """

    def __init__(self, calls: list[tuple[object, ...]]) -> None:
        self.calls = calls
        self.results: dict[str, object] = {}
        self.hooks: dict[str, Callable[..., None]] = {}

    def _record(self, name: str, *args: object) -> bool:
        self.calls.append((name, *args))
        hook = self.hooks.get(name)
        if hook is not None:
            hook(*args)
        outcome = self.results.get(name, True)
        if isinstance(outcome, list):
            outcome = outcome.pop(0) if outcome else True
        if isinstance(outcome, BaseException):
            raise outcome
        return bool(outcome)


class FakeCompose(FakeDriver):
    """Stand-in for :class:`~sitectl.providers.compose.ComposeProvider`."""

    def up(self, path: Path) -> bool:
        return self._record("up", path)

    def down(self, path: Path) -> bool:
        return self._record("down", path)

    def restart(self, path: Path, service: str) -> bool:
        return self._record("restart", path, service)

    def exec(self, path: Path, service: str, command: Sequence[str]) -> bool:
        return self._record("exec", path, service, tuple(command))

    def config_test(self, path: Path) -> bool:
        return self._record("config_test", path)

    def remove_site_containers(self, url: str) -> bool:
        return self._record("remove_site_containers", url)

    def disconnect_network(self, network: str, container: str | None = None) -> bool:
        return self._record("disconnect_network", network)

    def remove_network(self, network: str) -> bool:
        return self._record("remove_network", network)

    def reload_proxy(self) -> bool:
        return self._record("reload_proxy")


class FakeDatabase(FakeDriver):
    """Stand-in for :class:`~sitectl.providers.database.DatabaseProvider`."""

    local_host = "db"

    def dump(self, site: Site, directory: Path) -> bool:
        return self._record("dump", site.url, directory)

    def restore(self, site: Site, directory: Path) -> bool:
        return self._record("restore", site.url, directory)

    def drop_database(self, params: DatabaseParams) -> bool:
        return self._record("drop_database", params.name)

    def drop_user(self, params: DatabaseParams) -> bool:
        return self._record("drop_user", params.user)


class FakeProvisioner(FakeDriver):
    """Stand-in for :class:`~sitectl.providers.provisioner.SiteProvisioner`."""

    def __init__(self, calls: list[tuple[object, ...]]) -> None:
        super().__init__(calls)
        self._params = SiteProvisioner()

    def create_params(self, site: Site, site_type: SiteType) -> list[str]:
        return self._params.create_params(site, site_type)

    def create(self, url: str, site_type: SiteType, params: Sequence[str] = ()) -> bool:
        return self._record("create", url, site_type, tuple(params))


@pytest.fixture
def calls() -> list[tuple[object, ...]]:
    """Shared, ordered record of every fake driver call."""
    return []


@pytest.fixture
def compose(calls: list[tuple[object, ...]]) -> FakeCompose:
    return FakeCompose(calls)


@pytest.fixture
def database(calls: list[tuple[object, ...]]) -> FakeDatabase:
    return FakeDatabase(calls)


@pytest.fixture
def provisioner(calls: list[tuple[object, ...]]) -> FakeProvisioner:
    return FakeProvisioner(calls)


@pytest.fixture
def registry(tmp_path: Path) -> SiteRegistry:
    """Registry rooted in the temporary directory."""
    return SiteRegistry(tmp_path / "state" / "registry")


@pytest.fixture
def backups(tmp_path: Path) -> BackupsRegistry:
    return BackupsRegistry(tmp_path / "backups", tmp_path / "backups" / "backups.json")


@pytest.fixture
def site_paths(tmp_path: Path) -> SitePaths:
    services = tmp_path / "services"
    return SitePaths(
        certs_dir=services / "nginx" / "certs",
        proxy_conf_dir=services / "nginx" / "conf.d",
        acme_dir=services / "acme-conf",
    )


@pytest.fixture
def lifecycle(
    registry: SiteRegistry,
    compose: FakeCompose,
    database: FakeDatabase,
    provisioner: FakeProvisioner,
    backups: BackupsRegistry,
    site_paths: SitePaths,
) -> SiteLifecycle:
    """Lifecycle engine wired to fake drivers."""
    return SiteLifecycle(
        registry=registry,
        compose=compose,  # type: ignore[arg-type]
        database=database,  # type: ignore[arg-type]
        provisioner=provisioner,  # type: ignore[arg-type]
        backups=backups,
        paths=site_paths,
    )


@pytest.fixture
def make_site(tmp_path: Path) -> Callable[..., Site]:
    """Return a factory creating a site record plus its on-disk layout."""

    def factory(
        url: str = "example.com",
        *,
        site_type: SiteType = SiteType.WP,
        database: DatabaseParams | None = None,
        enabled: bool = True,
        ssl: bool = False,
        ssl_wildcard: bool = False,
        with_files: bool = True,
    ) -> Site:
        site = Site(
            url=url,
            fs_path=tmp_path / "sites" / url,
            site_type=site_type,
            enabled=enabled,
            ssl=ssl,
            ssl_wildcard=ssl_wildcard,
            database=database,
        )
        if with_files:
            populate_site(site)
        return site

    return factory


def populate_site(site: Site) -> None:
    """Create the content, custom nginx config and php.ini of *site*."""
    site.content_dir.mkdir(parents=True, exist_ok=True)
    (site.content_dir / "index.html").write_text(f"<h1>{site.url}</h1>\n", encoding="utf-8")
    site.custom_nginx_dir.mkdir(parents=True, exist_ok=True)
    (site.custom_nginx_dir / "custom.conf").write_text("client_max_body_size 64m;\n",
                                                       encoding="utf-8")
    if site.site_type.has_php:
        site.php_ini.parent.mkdir(parents=True, exist_ok=True)
        site.php_ini.write_text("memory_limit = 256M\n", encoding="utf-8")


@pytest.fixture
def make_context() -> Callable[..., OperationContext]:
    """Return a factory for operation contexts that record steps in a scope."""

    def factory(site: Site, operation: str = "test") -> OperationContext:
        return OperationContext(site=site, operation=operation, scope=OperationScope(operation))

    return factory


@pytest.fixture
def issue_certificate() -> Callable[..., tuple[Path, Path]]:
    """Return a helper writing a self-signed certificate/key pair."""

    def factory(
        certificate: Path,
        key: Path,
        domains: Sequence[str],
        *,
        valid_days: int = 60,
        valid_from: datetime | None = None,
    ) -> tuple[Path, Path]:
        now = datetime.now(UTC)
        start = valid_from or (now - timedelta(days=1))
        end = now + timedelta(days=valid_days)
        if start >= end:
            start = end - timedelta(days=30)
        private_key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
        subject = issuer = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, domains[0])])
        cert = (
            x509.CertificateBuilder()
            .subject_name(subject)
            .issuer_name(issuer)
            .public_key(private_key.public_key())
            .serial_number(x509.random_serial_number())
            .not_valid_before(start)
            .not_valid_after(end)
            .add_extension(
                x509.SubjectAlternativeName([x509.DNSName(name) for name in domains]),
                critical=False,
            )
            .add_extension(x509.BasicConstraints(ca=False, path_length=None), critical=True)
            .sign(private_key, hashes.SHA256())
        )
        certificate.parent.mkdir(parents=True, exist_ok=True)
        key.parent.mkdir(parents=True, exist_ok=True)
        certificate.write_bytes(cert.public_bytes(serialization.Encoding.PEM))
        key.write_bytes(
            private_key.private_bytes(
                encoding=serialization.Encoding.PEM,
                format=serialization.PrivateFormat.TraditionalOpenSSL,
                encryption_algorithm=serialization.NoEncryption(),
            )
        )
        return certificate, key

    return factory
