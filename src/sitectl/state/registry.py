"""Helpers for interacting with the sitectl site registry.

The registry directory (``/var/lib/sitectl/registry`` by default) stores
``sites.yml``, the source of truth for every managed site. Writes go through a
temporary file and ``os.replace`` so a crash mid-write never leaves a
truncated registry behind.
"""
from __future__ import annotations

import os
import tempfile
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from pathlib import Path

try:  # PyYAML is a runtime dependency declared in pyproject.toml
    import yaml
except Exception as exc:  # pragma: no cover - import failure handled in tests
    raise RuntimeError(
        "PyYAML is required to manage sitectl state. Install with `pip install sitectl`."
    ) from exc

from .models import Site, SiteRecordError

SITES_FILE = "sites.yml"
_FILTERABLE_FIELDS = {"enabled", "ssl", "ssl_wildcard", "type", "site_type"}


class StateRegistryError(RuntimeError):
    """Raised when state registry operations fail."""


@dataclass(frozen=True)
class SiteRegistry:
    """Persisted collection of :class:`Site` records keyed by url."""

    root: Path

    def __post_init__(self) -> None:
        """Normalise the root path after initialisation."""
        object.__setattr__(self, "root", self.root.expanduser())

    def ensure_root(self) -> None:
        """Create the registry directory if it does not yet exist."""
        self.root.mkdir(parents=True, exist_ok=True)

    @property
    def path(self) -> Path:
        """Return the path of ``sites.yml``."""
        return self.root / SITES_FILE

    # ------------------------------------------------------------------
    # Public helpers
    # ------------------------------------------------------------------
    def all(self) -> list[Site]:
        """Return every registered site, in registry order."""
        return [self._to_site(entry) for entry in self._read_entries()]

    def find(self, url: str) -> Site | None:
        """Return the site registered under *url*, if any."""
        for entry in self._read_entries():
            if entry.get("url") == url:
                return self._to_site(entry)
        return None

    def where(self, field: str, value: object) -> list[Site]:
        """Return sites whose *field* equals *value*."""
        if field not in _FILTERABLE_FIELDS:
            allowed = ", ".join(sorted(_FILTERABLE_FIELDS))
            raise StateRegistryError(f"Cannot filter sites by '{field}'. Allowed: {allowed}.")
        key = "type" if field == "site_type" else field
        expected = value.value if hasattr(value, "value") else value
        return [
            self._to_site(entry)
            for entry in self._read_entries()
            if entry.get(key) == expected
        ]

    def save(self, site: Site) -> None:
        """Insert or replace the record for ``site.url``."""
        entries = self._read_entries()
        payload = site.to_dict()
        for index, entry in enumerate(entries):
            if entry.get("url") == site.url:
                entries[index] = payload
                break
        else:
            entries.append(payload)
        self._write_entries(entries)

    def delete(self, url: str) -> bool:
        """Remove *url* from the registry, returning False when it was absent."""
        entries = self._read_entries()
        remaining = [entry for entry in entries if entry.get("url") != url]
        if len(remaining) == len(entries):
            return False
        self._write_entries(remaining)
        return True

    # ------------------------------------------------------------------
    def _read_entries(self) -> list[dict[str, object]]:
        path = self.path
        if not path.exists():
            return []
        try:
            data = yaml.safe_load(path.read_text(encoding="utf-8"))
        except yaml.YAMLError as exc:  # pragma: no cover - delegated to PyYAML
            raise StateRegistryError(f"Failed to parse registry file {path}: {exc}") from exc
        if data is None:
            return []
        raw_sites = data.get("sites", []) if isinstance(data, Mapping) else None
        if not isinstance(raw_sites, list):
            raise StateRegistryError(f"Registry file {path} must contain a 'sites' list.")
        return [dict(entry) for entry in raw_sites if isinstance(entry, Mapping)]

    def _write_entries(self, entries: Iterable[Mapping[str, object]]) -> None:
        self.ensure_root()
        path = self.path
        tmp_fd, tmp_name = tempfile.mkstemp(dir=str(self.root), prefix=f".{path.name}.")
        tmp_path = Path(tmp_name)
        try:
            with os.fdopen(tmp_fd, "w", encoding="utf-8") as handle:
                yaml.safe_dump({"sites": [dict(entry) for entry in entries]}, handle,
                               sort_keys=False)
            os.replace(tmp_path, path)
            os.chmod(path, 0o640)
        finally:
            tmp_path.unlink(missing_ok=True)

    @staticmethod
    def _to_site(entry: Mapping[str, object]) -> Site:
        try:
            return Site.from_mapping(entry)
        except SiteRecordError as exc:
            raise StateRegistryError(str(exc)) from exc


__all__ = ["SiteRegistry", "StateRegistryError"]
