"""Filesystem helpers used by the lifecycle engine."""
from __future__ import annotations

import shutil
from pathlib import Path

from ..errors import ExpectedAbsence, OperationalFailure


def mirror(source: Path, destination: Path) -> None:
    """Mirror the *source* tree into *destination*.

    Files present in *destination* but not in *source* are removed so the
    result matches *source* exactly. A missing *source* yields an empty
    *destination*.
    """
    try:
        if destination.exists():
            shutil.rmtree(destination)
        if not source.exists():
            destination.mkdir(parents=True, exist_ok=True)
            return
        destination.parent.mkdir(parents=True, exist_ok=True)
        shutil.copytree(source, destination, symlinks=True)
    except OSError as exc:
        raise OperationalFailure(f"Failed to mirror {source} to {destination}: {exc}") from exc


def copy_tree(source: Path, destination: Path) -> None:
    """Copy *source* into *destination*, keeping files already present there.

    Files found in both trees are replaced. A missing *source* yields an empty
    *destination*.
    """
    try:
        destination.mkdir(parents=True, exist_ok=True)
        if source.exists():
            shutil.copytree(source, destination, symlinks=True, dirs_exist_ok=True)
    except OSError as exc:
        raise OperationalFailure(f"Failed to copy {source} to {destination}: {exc}") from exc


def overlay(source: Path, destination: Path) -> None:
    """Copy the *source* tree over *destination*, replacing files that exist in both."""
    if not source.is_dir():
        raise ExpectedAbsence(f"{source} does not exist.")
    try:
        shutil.copytree(source, destination, symlinks=True, dirs_exist_ok=True)
    except OSError as exc:
        raise OperationalFailure(f"Failed to copy {source} over {destination}: {exc}") from exc


def copy_file(source: Path, destination: Path) -> None:
    """Copy a single file, raising :class:`ExpectedAbsence` when *source* is missing."""
    if not source.is_file():
        raise ExpectedAbsence(f"{source} does not exist.")
    try:
        destination.parent.mkdir(parents=True, exist_ok=True)
        shutil.copy2(source, destination)
    except OSError as exc:
        raise OperationalFailure(f"Failed to copy {source} to {destination}: {exc}") from exc


def remove_tree(path: Path) -> None:
    """Remove a directory tree or file.

    Raises :class:`ExpectedAbsence` when nothing exists at *path* and
    :class:`OperationalFailure` when removal is refused.
    """
    if not path.exists() and not path.is_symlink():
        raise ExpectedAbsence(f"{path} does not exist.")
    try:
        if path.is_dir() and not path.is_symlink():
            shutil.rmtree(path)
        else:
            path.unlink()
    except OSError as exc:
        raise OperationalFailure(f"Failed to remove {path}: {exc}") from exc


__all__ = ["copy_file", "copy_tree", "mirror", "overlay", "remove_tree"]
