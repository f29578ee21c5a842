"""Error taxonomy shared by the lifecycle engine and its providers.

Drivers either report booleans or raise one of the classes below. The engine
decides, step by step, which ones are tolerated and which ones abort the
remaining sequence:

* :class:`ExpectedAbsence` - the resource is already gone. Logged, never
  escalated.
* :class:`OperationalFailure` - a command exited non-zero or the filesystem
  refused an operation. Aborts the current sequence.
* :class:`PreconditionViolation` - raised before any side effect.
* :class:`FatalInterrupt` - a termination signal arrived mid-operation. It
  derives from :class:`BaseException` so generic ``except Exception`` blocks
  cannot swallow it on its way to the rollback guard.
"""
from __future__ import annotations

import signal


class SiteError(RuntimeError):
    """Base class for handled lifecycle errors."""


class ExpectedAbsence(SiteError):
    """Raised by drivers when the targeted resource does not exist."""


class OperationalFailure(SiteError):
    """Raised when a lifecycle step fails and the sequence must halt."""


class PreconditionViolation(SiteError):
    """Raised when an operation cannot start with the current state."""


class SiteNotFoundError(PreconditionViolation):
    """Raised when a site url is not present in the registry."""

    def __init__(self, url: str) -> None:
        """Record the missing *url*."""
        super().__init__(f"Site '{url}' does not exist.")
        self.url = url


class ProviderError(SiteError):
    """Raised when an external command cannot be executed at all."""


class FatalInterrupt(BaseException):
    """Raised from signal handlers while a guarded operation is running."""

    def __init__(self, signum: int) -> None:
        """Capture the signal number that interrupted the operation."""
        try:
            name = signal.Signals(signum).name
        except ValueError:
            name = str(signum)
        super().__init__(f"Interrupted by {name}")
        self.signum = signum
        self.signal_name = name


__all__ = [
    "ExpectedAbsence",
    "FatalInterrupt",
    "OperationalFailure",
    "PreconditionViolation",
    "ProviderError",
    "SiteError",
    "SiteNotFoundError",
]
