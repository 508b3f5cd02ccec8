"""Gateway keep-alive with missed-acknowledgement detection."""

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable

from ticket_notifier.models import Session

logger = logging.getLogger(__name__)


def random_jitter(interval: float) -> float:
    return random.uniform(0, interval)


class HeartbeatController:
    """Sends a beat every ``interval`` seconds after a random initial delay.

    Each beat clears ``session.last_ack_received``; the server's ack sets it
    again. If a beat comes due while the previous one is still
    unacknowledged the connection is considered dead and ``on_dead`` is
    awaited instead of sending.
    """

    def __init__(
        self,
        interval: float,
        session: Session,
        send_beat: Callable[[], Awaitable[None]],
        on_dead: Callable[[], Awaitable[None]],
        jitter: Callable[[float], float] = random_jitter,
    ) -> None:
        self.interval = interval
        self._session = session
        self._send_beat = send_beat
        self._on_dead = on_dead
        self._jitter = jitter
        self._task: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        self.stop()
        self._task = asyncio.create_task(self._run(), name="gateway-heartbeat")

    def stop(self) -> None:
        if self._task is not None:
            if self._task is not asyncio.current_task():
                self._task.cancel()
            self._task = None
        self._session.last_ack_received = True

    def ack(self) -> None:
        self._session.last_ack_received = True

    async def _run(self) -> None:
        await asyncio.sleep(self._jitter(self.interval))
        while True:
            if not self._session.last_ack_received:
                logger.warning("No heartbeat ACK since last beat; forcing reconnect")
                await self._on_dead()
                return
            self._session.last_ack_received = False
            try:
                await self._send_beat()
            except Exception as exc:
                logger.warning("Heartbeat send failed: %s", exc)
            await asyncio.sleep(self.interval)
