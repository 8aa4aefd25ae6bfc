"""Two-stage interrupt handling."""

from __future__ import annotations

import asyncio
import logging
import signal
from enum import Enum
from typing import Awaitable, Callable

logger = logging.getLogger(__name__)


class InterruptLevel(Enum):
    """How far shutdown has progressed."""

    NONE = "running"
    REQUESTED = "interrupt requested"
    FORCING = "forcing"


# Type alias for level change callback
LevelCallback = Callable[[InterruptLevel], None]


class InterruptController:
    """Cancellation token advanced by interrupt signals.

    The first interrupt stops new jobs from being started. The second one
    asks the scheduler to terminate every running job. Further interrupts are
    ignored. Nothing here touches the slot table; the scheduler polls
    ``level`` and waits on ``wait_for_change`` from its own control flow.
    """

    SIGNALS = (signal.SIGINT, signal.SIGTERM)

    def __init__(self, on_change: LevelCallback | None = None):
        self.level = InterruptLevel.NONE
        self.on_change = on_change
        self._changed = asyncio.Event()

    @property
    def requested(self) -> bool:
        return self.level is not InterruptLevel.NONE

    @property
    def forcing(self) -> bool:
        return self.level is InterruptLevel.FORCING

    def request(self) -> InterruptLevel:
        """Advance one stage and wake anyone waiting for a change."""
        if self.level is InterruptLevel.NONE:
            self.level = InterruptLevel.REQUESTED
        elif self.level is InterruptLevel.REQUESTED:
            self.level = InterruptLevel.FORCING
        else:
            return self.level

        logger.info("Interrupt: %s", self.level.value)
        # Release current waiters and start a fresh generation
        changed, self._changed = self._changed, asyncio.Event()
        changed.set()
        if self.on_change:
            self.on_change(self.level)
        return self.level

    def wait_for_change(self) -> Awaitable[bool]:
        """Awaitable that completes at the next stage transition.

        The current generation is captured on call, so a transition that
        happens before the awaitable is first scheduled is not missed.
        """
        return self._changed.wait()

    def install(self, loop: asyncio.AbstractEventLoop) -> None:
        """Route SIGINT and SIGTERM to ``request`` on ``loop``."""
        for sig in self.SIGNALS:
            loop.add_signal_handler(sig, self.request)

    def uninstall(self, loop: asyncio.AbstractEventLoop) -> None:
        for sig in self.SIGNALS:
            loop.remove_signal_handler(sig)
