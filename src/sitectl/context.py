"""Per-operation context threaded through lifecycle and certificate calls."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import IntEnum

from rich.console import Console
from rich.markup import escape

from .logging import OperationScope
from .state.models import Site

logger = logging.getLogger(__name__)


class TeardownLevel(IntEnum):
    """How much of a site's provisioned state must be unwound.

    Deleting at level ``L`` attempts every action of the levels below it.
    """

    NONE = 0
    SITE_ROOT = 1
    NETWORK = 2
    CONTAINERS = 3
    CONTAINERS_STRICT = 4
    RECORD = 5


@dataclass(slots=True)
class OperationContext:
    """State for a single lifecycle invocation.

    ``progress`` records the teardown level matching the work done so far and
    is what the rollback guard unwinds to. ``internal`` marks calls made by
    another lifecycle step rather than directly by the operator.
    """

    site: Site
    operation: str
    scope: OperationScope | None = None
    console: Console | None = None
    progress: TeardownLevel = TeardownLevel.NONE
    internal: bool = False

    def advance(self, level: TeardownLevel) -> None:
        """Raise ``progress`` to *level*; it never moves backwards."""
        if level > self.progress:
            self.progress = TeardownLevel(level)

    def step(self, name: str, *, status: str = "success", detail: str | None = None) -> None:
        """Record a step in the operation scope."""
        if self.scope is not None:
            self.scope.add_step(name, status=status, detail=detail)
        else:
            logger.debug("%s %s: %s [%s] %s", self.operation, self.site.url, name, status,
                         detail or "")

    def info(self, message: str) -> None:
        """Print a progress line for the operator."""
        if self.console is not None:
            self.console.print(f"[{self.site.url}] {message}", markup=False)

    def warn(self, name: str, message: str) -> None:
        """Record a warning step and print it."""
        self.step(name, status="warning", detail=message)
        if self.console is not None:
            self.console.print(f"[yellow]Warning:[/yellow] {escape(message)}")

    def nested(self, operation: str) -> OperationContext:
        """Return a context for an internal sub-operation sharing scope and console."""
        return OperationContext(
            site=self.site,
            operation=operation,
            scope=self.scope,
            console=self.console,
            progress=self.progress,
            internal=True,
        )


__all__ = ["OperationContext", "TeardownLevel"]
