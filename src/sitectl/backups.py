"""Index of site backups kept under the backup root.

Each finished ``site backup`` appends one entry to ``backups.json``; the
backup payload itself lives in a per-site directory beside the index.
"""
from __future__ import annotations

import json
import os
import secrets
import tempfile
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path


class BackupRegistryError(RuntimeError):
    """Raised when the backup index cannot be read or written."""


def _timestamp() -> datetime:
    return datetime.now(tz=UTC)


@dataclass(slots=True)
class BackupsRegistry:
    """JSON index of backups taken by sitectl."""

    root: Path
    index: Path

    def __post_init__(self) -> None:
        self.root = self.root.expanduser()
        self.index = self.index.expanduser()

    def location_for(self, url: str) -> Path:
        """Return the default backup location for *url*."""
        return self.root / url

    def generate_identifier(self, url: str) -> str:
        """Return a unique backup identifier for *url*."""
        stamp = _timestamp().strftime("%Y%m%d%H%M%S")
        slug = "".join(char if char.isalnum() or char in "-_" else "-" for char in url)
        return f"{stamp}-{slug}-{secrets.token_hex(3)}"

    def entries(self, url: str | None = None) -> list[dict[str, object]]:
        """Return index entries in recorded order, optionally only those for *url*."""
        try:
            raw = self.index.read_text(encoding="utf-8")
        except FileNotFoundError:
            return []
        try:
            data = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise BackupRegistryError(f"Backup index corrupted ({self.index}): {exc}") from exc
        if not isinstance(data, Mapping) or not isinstance(data.get("backups", []), list):
            raise BackupRegistryError(f"Backup index must hold a 'backups' list ({self.index}).")
        found = [dict(item) for item in data.get("backups", []) if isinstance(item, Mapping)]
        if url is None:
            return found
        return [entry for entry in found if entry.get("site") == url]

    def latest(self, url: str) -> dict[str, object] | None:
        """Return the newest entry recorded for *url*."""
        return max(
            self.entries(url),
            key=lambda entry: str(entry.get("created_at", "")),
            default=None,
        )

    def append(self, entry: Mapping[str, object]) -> None:
        """Add *entry* to the index, replacing the file atomically."""
        entries = self.entries()
        entries.append(dict(entry))
        try:
            self.root.mkdir(parents=True, exist_ok=True)
            os.chmod(self.root, 0o750)
            self.index.parent.mkdir(parents=True, exist_ok=True)
            fd, name = tempfile.mkstemp(dir=self.index.parent, prefix=f".{self.index.name}.")
        except OSError as exc:
            raise BackupRegistryError(f"Failed to prepare backup root {self.root}: {exc}") from exc
        staged = Path(name)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                json.dump({"backups": entries}, handle, indent=2)
                handle.write("\n")
            os.chmod(staged, 0o640)
            os.replace(staged, self.index)
        except OSError as exc:
            raise BackupRegistryError(f"Failed to write backup index: {exc}") from exc
        finally:
            staged.unlink(missing_ok=True)


def build_entry(
    *,
    backup_id: str,
    url: str,
    location: Path,
    database: bool,
    forced: bool = False,
) -> dict[str, object]:
    """Return the index entry for a finished backup."""
    return {
        "id": backup_id,
        "site": url,
        "created_at": _timestamp().isoformat(timespec="seconds").replace("+00:00", "Z"),
        "path": str(location),
        "database": database,
        "forced": forced,
    }


__all__ = ["BackupRegistryError", "BackupsRegistry", "build_entry"]
