"""Signal and fatal-error guard around lifecycle operations.

:func:`rollback_guard` wraps one lifecycle operation. While it is active,
SIGINT, SIGHUP, SIGUSR1 and SIGTERM raise :class:`~sitectl.errors.FatalInterrupt`
inside the guarded block. When the block exits through a fatal condition the
supplied rollback callable runs once (with those signals ignored), the previous
handlers are restored and the original exception continues to propagate.

Fatal conditions are :class:`FatalInterrupt`, :class:`KeyboardInterrupt` and
any exception outside the :class:`~sitectl.errors.SiteError` taxonomy.
Taxonomy errors are reported by the caller and never trigger rollback.
"""
from __future__ import annotations

import logging
import signal
import threading
from collections.abc import Callable, Iterable, Iterator
from contextlib import contextmanager
from types import FrameType
from typing import Any

from .errors import FatalInterrupt, SiteError

logger = logging.getLogger(__name__)

GUARDED_SIGNALS: tuple[signal.Signals, ...] = (
    signal.SIGINT,
    signal.SIGHUP,
    signal.SIGUSR1,
    signal.SIGTERM,
)


def _raise_interrupt(signum: int, _frame: FrameType | None) -> None:
    raise FatalInterrupt(signum)


def is_fatal(exc: BaseException) -> bool:
    """Return True when *exc* must trigger a rollback."""
    if isinstance(exc, (FatalInterrupt, KeyboardInterrupt)):
        return True
    if isinstance(exc, SiteError):
        return False
    return isinstance(exc, Exception)


class _HandlerSet:
    """Install and restore handlers for a group of signals."""

    def __init__(self, signals: Iterable[signal.Signals]) -> None:
        self._signals = tuple(signals)
        self._previous: dict[signal.Signals, Any] = {}
        # Only the main thread may change signal dispositions.
        self.active = threading.current_thread() is threading.main_thread()

    def install(self, handler: Any) -> None:
        if not self.active:
            return
        for signum in self._signals:
            previous = signal.signal(signum, handler)
            self._previous.setdefault(signum, previous)

    def restore(self) -> None:
        if not self.active:
            return
        for signum, previous in self._previous.items():
            signal.signal(signum, previous)
        self._previous.clear()


@contextmanager
def rollback_guard(
    rollback: Callable[[BaseException], None],
    *,
    signals: Iterable[signal.Signals] = GUARDED_SIGNALS,
) -> Iterator[None]:
    """Run the enclosed block, invoking *rollback* on any fatal exit.

    *rollback* receives the exception that ended the block. Failures raised
    by *rollback* itself are logged and do not replace the original error.
    """
    handlers = _HandlerSet(signals)
    handlers.install(_raise_interrupt)
    try:
        yield
    except BaseException as exc:
        if not is_fatal(exc):
            raise
        handlers.install(signal.SIG_IGN)
        logger.warning("fatal condition (%s); starting rollback", exc or type(exc).__name__)
        try:
            rollback(exc)
        except Exception:  # noqa: BLE001 - the original error wins
            logger.exception("rollback failed")
        raise
    finally:
        handlers.restore()


__all__ = ["GUARDED_SIGNALS", "is_fatal", "rollback_guard"]
