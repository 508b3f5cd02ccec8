"""Long-lived state shared by the gateway handlers.

Everything that would otherwise be a module-level global (caches, dedup
sets, the paused flag, detached tasks) hangs off one :class:`Runtime`
object that is passed explicitly to each component.
"""

import asyncio
import logging
from collections.abc import Callable, Coroutine
from typing import Any, Protocol

from ticket_notifier.archive import ArchiveStore, TicketRegistry
from ticket_notifier.config import Config
from ticket_notifier.dashboard import DashboardEmit, MembersUpdateThrottle, SafeEmitter
from ticket_notifier.dedup import BoundedIdSet
from ticket_notifier.models import HttpResult, Notification, PresenceEntry
from ticket_notifier.rest import RestClient

logger = logging.getLogger(__name__)

ContextProvider = Callable[[str], str]


class Outbox(Protocol):
    def enqueue(self, notification: Notification) -> None: ...


class BackgroundTasks:
    """Fire-and-forget task spawner whose failures end up in the log."""

    def __init__(self) -> None:
        self._tasks: set[asyncio.Task] = set()

    def __len__(self) -> int:
        return len(self._tasks)

    def spawn(self, coro: Coroutine[Any, Any, Any], name: str | None = None) -> asyncio.Task:
        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._on_done)
        return task

    def _on_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Background task %s failed", task.get_name(), exc_info=exc)

    async def wait_idle(self) -> None:
        """Wait until every spawned task (including ones spawned meanwhile) is done."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def cancel_all(self) -> None:
        for task in list(self._tasks):
            task.cancel()


class Caches:
    """Gateway entity caches keyed by snowflake. Last write wins, no TTL."""

    def __init__(self) -> None:
        self.channels: dict[str, dict] = {}
        self.roles: dict[str, dict] = {}
        self.members: dict[str, dict] = {}
        self.presences: dict[str, PresenceEntry] = {}

    def upsert_member(self, member: dict) -> bool:
        """Merge ``member`` into the cache; returns True if the user was new."""
        user_id = str(((member or {}).get("user") or {}).get("id") or "")
        if not user_id:
            return False
        existed = user_id in self.members
        merged = dict(self.members.get(user_id, {}))
        merged.update(member)
        self.members[user_id] = merged
        return not existed


class Runtime:
    def __init__(
        self,
        config: Config,
        rest: RestClient,
        outbox: Outbox,
        archive: ArchiveStore,
        registry: TicketRegistry | None = None,
        emit: DashboardEmit | None = None,
        context_provider: ContextProvider | None = None,
    ) -> None:
        self.config = config
        self.rest = rest
        self.outbox = outbox
        self.archive = archive
        self.registry = registry if registry is not None else TicketRegistry()
        self.emit = SafeEmitter(emit or (lambda event, payload: None))
        self.context_provider = context_provider or (lambda query: "")

        self.caches = Caches()
        self.tasks = BackgroundTasks()
        self.members_throttle = MembersUpdateThrottle(self.emit)
        self.processed_messages = BoundedIdSet(maxlen=2000)
        self.sent_by_self = BoundedIdSet(maxlen=500)
        self.self_user_id: str | None = None
        self.self_username: str = ""
        self.paused = False
        # Per-connection: the bulk channel scan has run.
        self.channels_scanned = False
        # Set once the gateway exists; needed for per-channel subscriptions.
        self.gateway = None

    def enqueue(self, notification: Notification) -> None:
        try:
            self.outbox.enqueue(notification)
        except Exception:
            logger.exception("Failed to enqueue notification")

    def mark_dirty(self) -> None:
        self.registry.mark_dirty()

    def is_staff(self, member: dict | None) -> bool:
        roles = (member or {}).get("roles") or []
        staff = set(self.config.staff_role_ids)
        return any(str(r) in staff for r in roles)

    async def send_message(self, channel_id: str, content: str, reply_to: str | None = None) -> HttpResult:
        """Send a chat message and tag it so the gateway echo is recognized."""
        result = await self.rest.send_message(channel_id, content, reply_to)
        if result.ok:
            try:
                message_id = (result.json() or {}).get("id")
            except (ValueError, AttributeError):
                message_id = None
            if message_id:
                self.sent_by_self.add(str(message_id))
        else:
            logger.warning(
                "Send to channel %s failed: %s %s", channel_id, result.status, result.body[:200]
            )
        return result

    async def subscribe_channels(self, channel_ids: list[str]) -> bool:
        if self.gateway is None:
            return False
        return await self.gateway.send_lazy_request(list(channel_ids))

    async def request_member_sidebar(self, channel_ids: list[str]) -> bool:
        if self.gateway is None:
            return False
        return await self.gateway.send_member_sidebar_request(list(channel_ids))

    def reset_connection_state(self) -> None:
        self.channels_scanned = False
