"""Site records persisted in the registry."""
from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, replace
from enum import Enum
from pathlib import Path
from typing import Any


class SiteRecordError(ValueError):
    """Raised when a registry entry cannot be converted into a :class:`Site`."""


class SiteType(str, Enum):
    """Supported site implementations."""

    HTML = "html"
    PHP = "php"
    WP = "wp"

    @property
    def services(self) -> tuple[str, ...]:
        """Containers that may be restarted or reloaded for this type."""
        return SERVICE_WHITELIST[self]

    @property
    def has_php(self) -> bool:
        """Return True when the type runs a php-fpm container."""
        return self in {SiteType.PHP, SiteType.WP}

    @classmethod
    def parse(cls, value: str) -> SiteType:
        """Return the member for *value* or raise :class:`SiteRecordError`."""
        try:
            return cls(value.strip().lower())
        except ValueError as exc:
            allowed = ", ".join(member.value for member in cls)
            raise SiteRecordError(
                f"Unsupported site type '{value}'. Allowed: {allowed}."
            ) from exc


SERVICE_WHITELIST: dict[SiteType, tuple[str, ...]] = {
    SiteType.HTML: ("nginx",),
    SiteType.PHP: ("nginx", "php"),
    SiteType.WP: ("nginx", "php", "postfix"),
}


@dataclass(frozen=True, slots=True)
class DatabaseParams:
    """Connection parameters for a site's database."""

    host: str
    user: str
    password: str
    name: str
    port: int = 3306

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "host": self.host,
            "user": self.user,
            "password": self.password,
            "name": self.name,
            "port": self.port,
        }

    @classmethod
    def from_mapping(cls, data: Mapping[str, object]) -> DatabaseParams:
        """Build parameters from a registry mapping."""
        missing = [key for key in ("host", "user", "name") if not data.get(key)]
        if missing:
            raise SiteRecordError(f"Database entry missing {', '.join(missing)}.")
        port_raw = data.get("port", 3306)
        try:
            port = int(str(port_raw))
        except ValueError as exc:
            raise SiteRecordError(f"Invalid database port {port_raw!r}.") from exc
        return cls(
            host=str(data["host"]),
            user=str(data["user"]),
            password=str(data.get("password") or ""),
            name=str(data["name"]),
            port=port,
        )


@dataclass(frozen=True, slots=True)
class Site:
    """A managed website."""

    url: str
    fs_path: Path
    site_type: SiteType
    enabled: bool = True
    ssl: bool = False
    ssl_wildcard: bool = False
    database: DatabaseParams | None = None

    # Filesystem layout -------------------------------------------------
    @property
    def content_dir(self) -> Path:
        """Directory served by the site."""
        return self.fs_path / "app" / "src"

    @property
    def config_dir(self) -> Path:
        """Per-site configuration tree mounted into the containers."""
        return self.fs_path / "config"

    @property
    def custom_nginx_dir(self) -> Path:
        """User supplied nginx snippets."""
        return self.config_dir / "nginx" / "custom"

    @property
    def php_ini(self) -> Path:
        """php.ini used by the php-fpm container."""
        return self.config_dir / "php-fpm" / "php.ini"

    def with_updates(self, **changes: Any) -> Site:
        """Return a copy of the site with *changes* applied."""
        return replace(self, **changes)

    def to_dict(self) -> dict[str, object]:
        """Return the registry representation."""
        return {
            "url": self.url,
            "fs_path": str(self.fs_path),
            "type": self.site_type.value,
            "enabled": self.enabled,
            "ssl": self.ssl,
            "ssl_wildcard": self.ssl_wildcard,
            "database": self.database.to_dict() if self.database is not None else None,
        }

    @classmethod
    def from_mapping(cls, data: Mapping[str, object]) -> Site:
        """Build a site from a registry mapping."""
        url = str(data.get("url") or "").strip()
        if not url:
            raise SiteRecordError("Site entry missing 'url'.")
        fs_path = data.get("fs_path")
        if not fs_path:
            raise SiteRecordError(f"Site '{url}' missing 'fs_path'.")
        database_raw = data.get("database")
        database: DatabaseParams | None = None
        if isinstance(database_raw, Mapping) and database_raw:
            database = DatabaseParams.from_mapping(database_raw)
        return cls(
            url=url,
            fs_path=Path(str(fs_path)).expanduser(),
            site_type=SiteType.parse(str(data.get("type", "html"))),
            enabled=bool(data.get("enabled", True)),
            ssl=bool(data.get("ssl", False)),
            ssl_wildcard=bool(data.get("ssl_wildcard", False)),
            database=database,
        )


__all__ = ["SERVICE_WHITELIST", "DatabaseParams", "Site", "SiteRecordError", "SiteType"]
