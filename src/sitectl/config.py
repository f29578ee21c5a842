"""Configuration loader for sitectl.

This module centralises the logic for reading configuration values from
multiple sources:

1. Built-in defaults.
2. ``/etc/sitectl/config.yml`` (or an override path).
3. Environment variables prefixed with ``SITECTL_``.
4. Explicit overrides supplied programmatically (reserved for CLI flags).

Environment keys use double underscores to express nesting, e.g.::

    export SITECTL_ACME__EMAIL=ops@example.com
    export SITECTL_DATABASE__GLOBAL_HOST=global-db

Values are coerced via PyYAML's ``safe_load`` so that booleans and numbers are
parsed naturally. The resulting configuration is exposed as immutable
``dataclasses`` for convenient access and type safety.
"""
from __future__ import annotations

import copy
import os
from collections.abc import Mapping, MutableMapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import cast

import yaml


ENV_PREFIX = "SITECTL_"
CONFIG_ENV_VAR = f"{ENV_PREFIX}CONFIG_FILE"
RESERVED_ENV_KEYS = {CONFIG_ENV_VAR}


class ConfigError(RuntimeError):
    """Raised when configuration parsing fails."""


@dataclass(frozen=True)
class DockerConfig:
    """Container runtime binaries and labelling."""

    docker_bin: str = "docker"
    compose_bin: tuple[str, ...] = ("docker", "compose")
    label: str = "sitectl"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "docker_bin": self.docker_bin,
            "compose_bin": list(self.compose_bin),
            "label": self.label,
        }


@dataclass(frozen=True)
class DatabaseConfig:
    """Database client image and host indirection settings."""

    image: str = "mariadb:10.11"
    global_host: str = "global-db"
    global_network: str = "sitectl-global-backend"
    local_host: str = "db"
    root_user: str = "root"
    root_password: str = ""

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation (password redacted)."""
        return {
            "image": self.image,
            "global_host": self.global_host,
            "global_network": self.global_network,
            "local_host": self.local_host,
            "root_user": self.root_user,
            "root_password": "***" if self.root_password else "",
        }


@dataclass(frozen=True)
class AcmeConfig:
    """Let's Encrypt (certbot) settings."""

    email: str | None = None
    certbot_bin: str = "certbot"
    webroot: Path = Path("/opt/sitectl/services/nginx-proxy/html")
    renew_before_days: int = 30
    staging: bool = False
    dns_auth_hook: str | None = None

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "email": self.email,
            "certbot_bin": self.certbot_bin,
            "webroot": str(self.webroot),
            "renew_before_days": self.renew_before_days,
            "staging": self.staging,
            "dns_auth_hook": self.dns_auth_hook,
        }


@dataclass(frozen=True)
class ProxyConfig:
    """Shared reverse proxy container."""

    container: str = "sitectl-nginx-proxy"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"container": self.container}


@dataclass(frozen=True)
class BackupConfig:
    """Backup storage defaults."""

    root: Path
    index: Path

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"root": str(self.root), "index": str(self.index)}


@dataclass(frozen=True)
class ProvisionerConfig:
    """External command used to create sites."""

    command: tuple[str, ...] = ("sitectl-create",)

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"command": list(self.command)}


@dataclass(frozen=True)
class AppConfig:
    """Resolved configuration values for sitectl."""

    config_file: Path
    sites_root: Path
    conf_root: Path
    state_dir: Path
    registry_dir: Path
    logs_dir: Path
    runtime_dir: Path
    lock_timeout: float
    docker: DockerConfig
    database: DatabaseConfig
    acme: AcmeConfig
    proxy: ProxyConfig
    backups: BackupConfig
    provisioner: ProvisionerConfig

    @property
    def certs_dir(self) -> Path:
        """Directory holding installed certificates for the shared proxy."""
        return self.conf_root / "nginx" / "certs"

    @property
    def proxy_conf_dir(self) -> Path:
        """Directory holding per-site proxy snippets (redirects)."""
        return self.conf_root / "nginx" / "conf.d"

    @property
    def acme_dir(self) -> Path:
        """Root of the certbot configuration and working directories."""
        return self.conf_root / "acme-conf"

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation of the config."""
        return {
            "config_file": str(self.config_file),
            "sites_root": str(self.sites_root),
            "conf_root": str(self.conf_root),
            "state_dir": str(self.state_dir),
            "registry_dir": str(self.registry_dir),
            "logs_dir": str(self.logs_dir),
            "runtime_dir": str(self.runtime_dir),
            "lock_timeout": self.lock_timeout,
            "docker": self.docker.to_dict(),
            "database": self.database.to_dict(),
            "acme": self.acme.to_dict(),
            "proxy": self.proxy.to_dict(),
            "backups": self.backups.to_dict(),
            "provisioner": self.provisioner.to_dict(),
        }


DEFAULTS: dict[str, object] = {
    "config_file": "/etc/sitectl/config.yml",
    "sites_root": "/opt/sitectl/sites",
    "conf_root": "/opt/sitectl/services",
    "state_dir": "/var/lib/sitectl",
    "registry_dir": None,  # derived from state_dir when absent
    "logs_dir": "/var/log/sitectl",
    "runtime_dir": "/run/sitectl",
    "lock_timeout": 30.0,
    "docker": {
        "docker_bin": "docker",
        "compose_bin": ["docker", "compose"],
        "label": "sitectl",
    },
    "database": {
        "image": "mariadb:10.11",
        "global_host": "global-db",
        "global_network": "sitectl-global-backend",
        "local_host": "db",
        "root_user": "root",
        "root_password": "",
    },
    "acme": {
        "email": None,
        "certbot_bin": "certbot",
        "webroot": None,  # derived from conf_root when absent
        "renew_before_days": 30,
        "staging": False,
        "dns_auth_hook": None,
    },
    "proxy": {
        "container": "sitectl-nginx-proxy",
    },
    "backups": {
        "root": "/opt/sitectl/backups",
        "index": None,
    },
    "provisioner": {
        "command": ["sitectl-create"],
    },
}

ALLOWED_TOP_LEVEL_KEYS = set(DEFAULTS.keys())
_SECTION_KEYS: dict[str, set[str]] = {
    section: set(cast(Mapping[str, object], DEFAULTS[section]).keys())
    for section in ("docker", "database", "acme", "proxy", "backups", "provisioner")
}


def load_config(
    config_file: str | os.PathLike[str] | None = None,
    *,
    env: Mapping[str, str] | None = None,
    overrides: Mapping[str, object] | None = None,
) -> AppConfig:
    """Load and merge configuration sources into an :class:`AppConfig`."""
    merged: dict[str, object] = copy.deepcopy(DEFAULTS)
    resolved_env = dict(os.environ if env is None else env)

    config_path = _determine_config_path(str(DEFAULTS["config_file"]), config_file, resolved_env)

    file_values = _load_yaml_file(config_path)
    if file_values:
        _deep_merge(merged, file_values)

    env_values = _build_env_overrides(resolved_env)
    if env_values:
        _deep_merge(merged, env_values)

    if overrides:
        _deep_merge(merged, dict(overrides))

    merged["config_file"] = str(config_path)

    _validate_structure(merged)

    return _build_app_config(merged)


def _determine_config_path(
    default_path: str,
    cli_override: str | os.PathLike[str] | None,
    env: Mapping[str, str],
) -> Path:
    if cli_override:
        return Path(cli_override)
    if CONFIG_ENV_VAR in env:
        return Path(env[CONFIG_ENV_VAR])
    return Path(default_path)


def _load_yaml_file(path: Path) -> dict[str, object]:
    if not path.exists():
        return {}
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:  # pragma: no cover - PyYAML owns detailed error
        raise ConfigError(f"Failed to parse config file {path}: {exc}") from exc
    if not isinstance(data, Mapping):
        raise ConfigError(f"Config file {path} must contain a mapping at the top level.")
    return _as_dict(data, f"file:{path}")


def _validate_structure(raw: Mapping[str, object]) -> None:
    unknown_keys = set(raw.keys()) - ALLOWED_TOP_LEVEL_KEYS
    if unknown_keys:
        joined = ", ".join(sorted(unknown_keys))
        raise ConfigError(f"Unknown configuration keys: {joined}.")

    lock_timeout = raw.get("lock_timeout")
    if lock_timeout is not None:
        _expect_positive_float(lock_timeout, "lock_timeout", default=30.0)

    for section, allowed in _SECTION_KEYS.items():
        value = raw.get(section)
        if value is None:
            continue
        mapping = _as_dict(value, section)
        unknown = set(mapping.keys()) - allowed
        if unknown:
            joined = ", ".join(sorted(unknown))
            raise ConfigError(f"Unknown {section} configuration keys: {joined}.")

    acme = _as_dict(raw.get("acme"), "acme")
    renew_before = acme.get("renew_before_days")
    if renew_before is not None:
        days = _expect_int(renew_before, "acme.renew_before_days", default=30)
        if days < 0:
            raise ConfigError("acme.renew_before_days must be non-negative.")


def _build_app_config(raw: Mapping[str, object]) -> AppConfig:
    config_file = _to_path(raw.get("config_file"))
    sites_root = _to_path(raw.get("sites_root"))
    conf_root = _to_path(raw.get("conf_root"))
    state_dir = _to_path(raw.get("state_dir"))
    logs_dir = _to_path(raw.get("logs_dir"))
    runtime_dir = _to_path(raw.get("runtime_dir"))
    lock_timeout = _expect_positive_float(raw.get("lock_timeout"), "lock_timeout", default=30.0)

    registry_dir_value = raw.get("registry_dir")
    registry_dir = _to_path(registry_dir_value) if registry_dir_value else state_dir / "registry"

    docker_mapping = _as_dict(raw.get("docker"), "docker")
    docker = DockerConfig(
        docker_bin=str(docker_mapping.get("docker_bin", "docker")),
        compose_bin=_expect_command(
            docker_mapping.get("compose_bin", ["docker", "compose"]), "docker.compose_bin"
        ),
        label=str(docker_mapping.get("label", "sitectl")),
    )

    database_mapping = _as_dict(raw.get("database"), "database")
    defaults_db = DatabaseConfig()
    database = DatabaseConfig(
        image=str(database_mapping.get("image", defaults_db.image)),
        global_host=str(database_mapping.get("global_host", defaults_db.global_host)),
        global_network=str(database_mapping.get("global_network", defaults_db.global_network)),
        local_host=str(database_mapping.get("local_host", defaults_db.local_host)),
        root_user=str(database_mapping.get("root_user", defaults_db.root_user)),
        root_password=str(database_mapping.get("root_password") or ""),
    )

    acme_mapping = _as_dict(raw.get("acme"), "acme")
    email_raw = acme_mapping.get("email")
    email = str(email_raw).strip() if email_raw else None
    webroot_raw = acme_mapping.get("webroot")
    webroot = _to_path(webroot_raw) if webroot_raw else conf_root / "nginx-proxy" / "html"
    hook_raw = acme_mapping.get("dns_auth_hook")
    acme = AcmeConfig(
        email=email or None,
        certbot_bin=str(acme_mapping.get("certbot_bin", "certbot")),
        webroot=webroot,
        renew_before_days=_expect_int(
            acme_mapping.get("renew_before_days"), "acme.renew_before_days", default=30
        ),
        staging=_expect_bool(acme_mapping.get("staging"), "acme.staging", default=False),
        dns_auth_hook=str(hook_raw) if hook_raw else None,
    )

    proxy_mapping = _as_dict(raw.get("proxy"), "proxy")
    proxy = ProxyConfig(container=str(proxy_mapping.get("container", "sitectl-nginx-proxy")))

    backups_mapping = _as_dict(raw.get("backups"), "backups")
    backups_root = _to_path(backups_mapping.get("root", "/opt/sitectl/backups"))
    backups_index_value = backups_mapping.get("index")
    backups_index = (
        _to_path(backups_index_value) if backups_index_value else backups_root / "backups.json"
    )
    backups = BackupConfig(root=backups_root, index=backups_index)

    provisioner_mapping = _as_dict(raw.get("provisioner"), "provisioner")
    provisioner = ProvisionerConfig(
        command=_expect_command(
            provisioner_mapping.get("command", ["sitectl-create"]), "provisioner.command"
        ),
    )

    return AppConfig(
        config_file=config_file,
        sites_root=sites_root,
        conf_root=conf_root,
        state_dir=state_dir,
        registry_dir=registry_dir,
        logs_dir=logs_dir,
        runtime_dir=runtime_dir,
        lock_timeout=lock_timeout,
        docker=docker,
        database=database,
        acme=acme,
        proxy=proxy,
        backups=backups,
        provisioner=provisioner,
    )


def _build_env_overrides(env: Mapping[str, str]) -> dict[str, object]:
    overrides: dict[str, object] = {}
    for key, value in env.items():
        if key in RESERVED_ENV_KEYS:
            continue
        if not key.startswith(ENV_PREFIX):
            continue
        suffix = key[len(ENV_PREFIX) :]
        path_segments = [segment.lower() for segment in suffix.split("__") if segment]
        if not path_segments:
            continue
        _assign_nested(overrides, path_segments, _coerce_value(value))
    return overrides


def _assign_nested(tree: MutableMapping[str, object], path: list[str], value: object) -> None:
    current: MutableMapping[str, object] = tree
    for segment in path[:-1]:
        existing = current.get(segment)
        if existing is None:
            new_child: MutableMapping[str, object] = {}
            current[segment] = new_child
            current = new_child
            continue
        if isinstance(existing, MutableMapping):
            current = cast(MutableMapping[str, object], existing)
            continue
        raise ConfigError(
            "Environment overrides conflict with existing scalar value at "
            f"{'.'.join(path)}"
        )
    current[path[-1]] = value


def _deep_merge(target: MutableMapping[str, object], overrides: Mapping[str, object]) -> None:
    for key, value in overrides.items():
        existing = target.get(key)
        if isinstance(existing, MutableMapping) and isinstance(value, Mapping):
            _deep_merge(existing, _as_dict(value, f"merge.{key}"))
            continue
        target[key] = value


def _expect_command(value: object, label: str) -> tuple[str, ...]:
    if isinstance(value, str):
        parts = value.split()
    elif isinstance(value, Sequence):
        parts = [str(item) for item in value]
    else:
        raise ConfigError(f"Expected {label} to be a command string or list.")
    if not parts:
        raise ConfigError(f"{label} must not be empty.")
    return tuple(parts)


def _coerce_value(raw: str) -> object:
    raw = raw.strip()
    try:
        parsed = yaml.safe_load(raw)
    except yaml.YAMLError:  # pragma: no cover - treat as string if parsing fails
        return raw
    return parsed


def _to_path(value: object) -> Path:
    if value is None:
        raise ConfigError("Expected a filesystem path, received None.")
    if isinstance(value, Path):
        return value.expanduser()
    if isinstance(value, str):
        return Path(value).expanduser()
    raise ConfigError(f"Cannot convert value {value!r} to Path.")


def _expect_bool(value: object | None, label: str, *, default: bool) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    raise ConfigError(f"Expected {label} to be a boolean. Got {value!r}.")


def _expect_int(value: object | None, label: str, *, default: int) -> int:
    if value is None:
        return default
    if isinstance(value, bool):
        raise ConfigError(f"Expected {label} to be an integer. Got boolean {value!r}.")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value, 0)
        except ValueError as exc:
            raise ConfigError(f"Invalid integer for {label}: {value!r}.") from exc
    raise ConfigError(f"Expected {label} to be an integer. Got {type(value).__name__}.")


def _expect_positive_float(
    value: object | None,
    label: str,
    *,
    default: float,
) -> float:
    if value is None:
        return float(default)
    if isinstance(value, bool):
        raise ConfigError(f"Expected {label} to be a number. Got boolean {value!r}.")
    if isinstance(value, (int, float)):
        numeric = float(value)
    elif isinstance(value, str):
        try:
            numeric = float(value)
        except ValueError as exc:
            raise ConfigError(f"Invalid number for {label}: {value!r}.") from exc
    else:
        raise ConfigError(
            f"Expected {label} to be numeric. Got {type(value).__name__}."
        )
    if numeric <= 0:
        raise ConfigError(f"{label} must be greater than zero. Got {numeric}.")
    return numeric


def _as_dict(value: object | None, label: str) -> dict[str, object]:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ConfigError(f"Expected {label} to be a mapping. Got {type(value).__name__}.")
    result: dict[str, object] = {}
    for key, item in value.items():
        if not isinstance(key, str):
            raise ConfigError(f"Mapping {label} must use string keys. Got {key!r}.")
        result[key] = item
    return result


__all__ = [
    "AcmeConfig",
    "AppConfig",
    "BackupConfig",
    "ConfigError",
    "DatabaseConfig",
    "DockerConfig",
    "ProvisionerConfig",
    "ProxyConfig",
    "load_config",
]
