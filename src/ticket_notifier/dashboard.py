"""Push channel to connected dashboard clients.

The Socket.IO server lives outside this package; the core only sees an
``emit(event, payload)`` callable.
"""

import asyncio
import logging
import time
from collections.abc import Callable

logger = logging.getLogger(__name__)

DashboardEmit = Callable[[str, dict], None]

MEMBERS_THROTTLE_SECONDS = 1.5


def log_emitter(event: str, payload: dict) -> None:
    """Default emitter used when no dashboard is attached."""
    logger.debug("dashboard <- %s %s", event, payload)


class SafeEmitter:
    """Wraps an emitter so a failing dashboard never disturbs the caller."""

    def __init__(self, emit: DashboardEmit) -> None:
        self._emit = emit

    def __call__(self, event: str, payload: dict | None = None) -> None:
        try:
            self._emit(event, payload or {})
        except Exception:
            logger.exception("Dashboard emit failed for %s", event)


class MembersUpdateThrottle:
    """Coalesces bursts into at most one ``members:updated`` per window."""

    def __init__(
        self,
        emit: DashboardEmit,
        window: float = MEMBERS_THROTTLE_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._emit = emit
        self._window = window
        self._clock = clock
        self._last: float | None = None
        self._handle: asyncio.TimerHandle | None = None

    @property
    def pending(self) -> bool:
        return self._handle is not None

    def schedule(self) -> None:
        if self._handle is not None:
            return
        wait = 0.0
        if self._last is not None:
            wait = max(0.0, self._window - (self._clock() - self._last))
        if wait == 0:
            self._fire()
            return
        self._handle = asyncio.get_running_loop().call_later(wait, self._fire)

    def cancel(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None

    def _fire(self) -> None:
        self._handle = None
        self._last = self._clock()
        self._emit("members:updated", {"ts": time.time()})
