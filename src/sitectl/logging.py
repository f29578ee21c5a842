"""Structured operation logging for sitectl.

Every CLI command runs inside an :class:`OperationScope`. When the scope
closes a single JSON record is appended to ``operations.jsonl`` describing the
command, its arguments, the steps that ran and the final result. A one-line
summary is also emitted through the standard :mod:`logging` machinery to the
human readable ``sitectl.log`` in the same directory, together with any debug
output produced by providers and the lifecycle engine.

Logging must never break a lifecycle operation: when the log directory cannot
be created, or a write fails, the logger disables itself and the command
carries on.
"""
from __future__ import annotations

import json
import logging
import secrets
import time
from collections.abc import Iterable, Iterator, Mapping
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path

from . import __version__

OPERATIONS_LOG = "operations.jsonl"
HUMAN_LOG = "sitectl.log"
_LOGGER_NAME = "sitectl"

_human_logger = logging.getLogger(f"{_LOGGER_NAME}.operations")


def _now_iso() -> str:
    return datetime.now(tz=UTC).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _sanitize(value: object) -> object:
    """Return *value* converted into JSON-safe primitives."""
    if value is None or isinstance(value, (bool, int, float, str)):
        return value
    if isinstance(value, Path):
        return str(value)
    if isinstance(value, Mapping):
        return {str(key): _sanitize(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_sanitize(item) for item in value]
    return str(value)


class OperationScope:
    """Collects steps and the final result for a single command."""

    def __init__(
        self,
        command: str,
        *,
        args: Mapping[str, object] | None = None,
        target: Mapping[str, object] | None = None,
    ) -> None:
        """Initialise an empty scope for *command*."""
        self.command = command
        self.args = dict(args or {})
        self.target = dict(target or {})
        self.id = f"op-{secrets.token_hex(6)}"
        self.started_at = _now_iso()
        self.steps: list[dict[str, object]] = []
        self.result: dict[str, object] | None = None
        self.lock_wait_ms: int | None = None
        self._started = time.monotonic()

    def add_step(self, name: str, *, status: str = "success", detail: str | None = None) -> None:
        """Record a step outcome (``success``, ``warning``, ``skipped``, ``error``)."""
        step: dict[str, object] = {"name": name, "status": status}
        if detail:
            step["detail"] = detail
        self.steps.append(step)
        level = logging.WARNING if status in {"warning", "error"} else logging.DEBUG
        _human_logger.log(level, "%s: %s [%s]%s", self.command, name, status,
                          f" {detail}" if detail else "")

    def set_lock_wait_ms(self, wait_ms: int) -> None:
        """Record how long the command waited for its locks."""
        self.lock_wait_ms = wait_ms

    def warnings(self) -> list[dict[str, object]]:
        """Return the steps recorded with ``warning`` status."""
        return [step for step in self.steps if step.get("status") == "warning"]

    def success(
        self,
        message: str,
        *,
        changed: int = 0,
        backups: Iterable[str] | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation successful."""
        self._set_result("success", message, changed=changed, backups=backups, context=context)

    def warning(
        self,
        message: str,
        *,
        warnings: Iterable[str] | None = None,
        errors: Iterable[str] | None = None,
        changed: int = 0,
        backups: Iterable[str] | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation complete with warnings."""
        self._set_result(
            "warning",
            message,
            warnings=warnings,
            errors=errors,
            changed=changed,
            backups=backups,
            context=context,
        )

    def error(
        self,
        message: str,
        *,
        errors: Iterable[str] | None = None,
        rc: int = 1,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation failed."""
        self._set_result(
            "error",
            message,
            errors=list(errors) if errors is not None else [message],
            rc=rc,
            context=context,
        )

    def _set_result(
        self,
        status: str,
        message: str,
        *,
        warnings: Iterable[str] | None = None,
        errors: Iterable[str] | None = None,
        changed: int = 0,
        backups: Iterable[str] | None = None,
        rc: int | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        result: dict[str, object] = {
            "status": status,
            "message": message,
            "changed": changed,
            "warnings": list(warnings or []),
            "errors": list(errors or []),
            "backups": list(backups or []),
        }
        if rc is not None:
            result["rc"] = rc
        if context:
            result["context"] = _sanitize(context)
        self.result = result

    def to_record(self) -> dict[str, object]:
        """Return the JSON record for this scope."""
        return {
            "id": self.id,
            "command": self.command,
            "args": _sanitize(self.args),
            "target": _sanitize(self.target),
            "started_at": self.started_at,
            "finished_at": _now_iso(),
            "duration_ms": int((time.monotonic() - self._started) * 1000),
            "lock_wait_ms": self.lock_wait_ms,
            "steps": list(self.steps),
            "result": self.result,
            "context": {"sitectl_version": __version__},
        }


class StructuredLogger:
    """Write operation records to ``operations.jsonl`` and ``sitectl.log``."""

    def __init__(self, log_dir: Path) -> None:
        """Prepare *log_dir*; disable logging when it cannot be created."""
        self._log_dir = log_dir.expanduser()
        self._operations_log_path = self._log_dir / OPERATIONS_LOG
        self._human_log_path = self._log_dir / HUMAN_LOG
        self._handler: logging.Handler | None = None
        self._enabled = True
        try:
            self._log_dir.mkdir(parents=True, exist_ok=True)
        except OSError:
            self._enabled = False
            return
        self._attach_handler()

    @property
    def enabled(self) -> bool:
        """Return True while the logger is still writing records."""
        return self._enabled

    @contextmanager
    def operation(
        self,
        command: str,
        *,
        args: Mapping[str, object] | None = None,
        target: Mapping[str, object] | None = None,
    ) -> Iterator[OperationScope]:
        """Yield an :class:`OperationScope` and persist it on exit."""
        scope = OperationScope(command, args=args, target=target)
        try:
            yield scope
        except BaseException as exc:
            if scope.result is None or scope.result.get("status") != "error":
                message = str(exc) or type(exc).__name__
                scope.error(message, errors=[f"{type(exc).__name__}: {message}"])
            raise
        finally:
            if scope.result is None:
                scope.success("Completed.")
            self._write(scope)

    def _attach_handler(self) -> None:
        root = logging.getLogger(_LOGGER_NAME)
        # One human log per process; a newer logger replaces the previous file.
        for existing in list(root.handlers):
            if getattr(existing, "_sitectl_human_log", False):
                root.removeHandler(existing)
                existing.close()
        handler = logging.FileHandler(self._human_log_path, encoding="utf-8", delay=True)
        handler._sitectl_human_log = True  # type: ignore[attr-defined]
        handler.setFormatter(
            logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s")
        )
        root.addHandler(handler)
        if root.level == logging.NOTSET or root.level > logging.DEBUG:
            root.setLevel(logging.DEBUG)
        self._handler = handler

    def _detach_handler(self) -> None:
        if self._handler is None:
            return
        logging.getLogger(_LOGGER_NAME).removeHandler(self._handler)
        self._handler.close()
        self._handler = None

    def _write(self, scope: OperationScope) -> None:
        if not self._enabled:
            return
        record = scope.to_record()
        result = record["result"] if isinstance(record["result"], Mapping) else {}
        try:
            with self._operations_log_path.open("a", encoding="utf-8") as handle:
                handle.write(json.dumps(record, sort_keys=False) + "\n")
        except OSError:
            self._enabled = False
            self._detach_handler()
            return
        _human_logger.info(
            "%s %s: %s",
            scope.command,
            result.get("status", "unknown"),
            result.get("message", ""),
        )


__all__ = ["OperationScope", "StructuredLogger"]
