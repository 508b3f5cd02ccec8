"""Ticket lifecycle tracking.

:class:`TicketTracker` is the only code that writes :class:`TicketRecord`
fields. It reacts to channel create/delete and message events, keeps one
inactivity timer per ticket channel, and rebuilds records from a channel
scan after (re)connecting.
"""

import asyncio
import logging
import sqlite3
import time
from collections.abc import Callable

from ticket_notifier import notifier
from ticket_notifier.events import ChannelCreated, ChannelDeleted, MessageCreated
from ticket_notifier.models import TicketRecord, TimerType
from ticket_notifier.runtime import Runtime

logger = logging.getLogger(__name__)

STAFF_PREFIX = "[Саппорт] "
PREVIEW_LENGTH = 200
DISCORD_EPOCH_MS = 1420070400000
TEXT_CHANNEL_TYPES = (0, 5)


def snowflake_to_timestamp(snowflake: str) -> float:
    """Creation time (epoch seconds) encoded in a snowflake id."""
    return ((int(snowflake) >> 22) + DISCORD_EPOCH_MS) / 1000


def matches_prefix(name: str, prefixes: list[str]) -> bool:
    lowered = (name or "").lower()
    return any(p.lower() in lowered for p in prefixes if p)


def parse_opener(name: str, prefixes: list[str]) -> str:
    """Extract the opener's username from a channel name like ``тикет-от-user``."""
    lowered = (name or "").lower()
    for prefix in prefixes:
        if not prefix:
            continue
        idx = lowered.find(prefix.lower())
        if idx == -1:
            continue
        rest = name[idx + len(prefix):].lstrip("-_ ")
        if rest:
            return rest
    return ""


def is_closing_phrase(content: str, phrases: list[str]) -> bool:
    lowered = (content or "").lower()
    return any(p.lower() in lowered for p in phrases if p)


class TicketTracker:
    def __init__(self, runtime: Runtime, clock: Callable[[], float] = time.time, sleep=asyncio.sleep) -> None:
        self._rt = runtime
        self._clock = clock
        self._sleep = sleep
        self._timers: dict[str, asyncio.TimerHandle] = {}
        self._notified_first: set[str] = set()
        self._greeted: set[str] = set()

    @property
    def registry(self):
        return self._rt.registry

    def has_timer(self, channel_id: str) -> bool:
        return channel_id in self._timers

    def is_ticket_channel(self, name: str, parent_id: str) -> bool:
        config = self._rt.config
        if config.tickets_category_id and parent_id != config.tickets_category_id:
            return False
        return matches_prefix(name, config.ticket_prefixes)

    # ── Channel lifecycle ──

    def on_channel_created(self, event: ChannelCreated) -> TicketRecord | None:
        config = self._rt.config
        if event.guild_id != config.guild_id:
            return None
        if not self.is_ticket_channel(event.name, event.parent_id):
            return None

        record = TicketRecord(
            channel_id=event.channel_id,
            channel_name=event.name,
            guild_id=event.guild_id,
            created_at=self._clock(),
            opener_username=parse_opener(event.name, config.ticket_prefixes),
        )
        self.registry.active[event.channel_id] = record
        self.registry.total_created += 1
        self._rt.mark_dirty()
        logger.info("New ticket: #%s", event.name)

        if not self._rt.paused:
            self._rt.enqueue(notifier.build_ticket_created(event.channel_id, event.name, config))
        self._rt.emit("ticket:new", {"channelId": event.channel_id, "channelName": event.name})
        self._rt.tasks.spawn(
            self._rt.subscribe_channels([event.channel_id]), name=f"subscribe-{event.channel_id}"
        )
        return record

    def on_channel_deleted(self, event: ChannelDeleted) -> TicketRecord | None:
        if event.guild_id != self._rt.config.guild_id:
            return None
        record = self.registry.active.get(event.channel_id)
        if record is None:
            return None

        record.closed_at = self._clock()
        self.registry.total_closed += 1
        self.clear_activity_timer(event.channel_id)
        del self.registry.active[event.channel_id]
        self._notified_first.discard(event.channel_id)
        self._greeted.discard(event.channel_id)
        self._rt.mark_dirty()
        logger.info("Ticket closed: #%s", record.channel_name)

        if not self._rt.paused:
            self._rt.enqueue(
                notifier.build_ticket_closed(record, self.registry.total_created, self.registry.total_closed)
            )
        try:
            self._rt.archive.save_closed_ticket(record)
        except (sqlite3.Error, OSError):
            logger.exception("Failed to archive ticket %s", event.channel_id)
        self._rt.tasks.spawn(self._archive_history(event.channel_id), name=f"archive-{event.channel_id}")
        self._rt.emit("ticket:closed", {"channelId": event.channel_id})
        return record

    async def _archive_history(self, channel_id: str) -> None:
        messages = await self._rt.rest.fetch_messages(channel_id, limit=100)
        if not messages:
            logger.debug("No history to archive for %s", channel_id)
            return
        try:
            self._rt.archive.save_ticket_messages(channel_id, messages)
        except (sqlite3.Error, OSError):
            logger.exception("Failed to archive messages for %s", channel_id)
            return
        logger.info("Archived %d messages for %s", len(messages), channel_id)

    # ── Messages ──

    def on_message(self, event: MessageCreated) -> bool:
        """Apply a message to its ticket. Returns False if the channel is not tracked."""
        if event.guild_id != self._rt.config.guild_id:
            return False
        record = self.registry.active.get(event.channel_id)
        if record is None:
            return False

        if event.message_id in self._rt.sent_by_self:
            self._rt.emit("ticket:message", {"channelId": event.channel_id, "content": event.content})
            return True

        is_bot = event.author_is_bot
        is_staff = self._rt.is_staff(event.member)
        now = self._clock()

        if is_bot:
            self._maybe_greet(record, event)

        preview = f"{STAFF_PREFIX}{event.content}" if is_staff else event.content
        record.last_message = preview[:PREVIEW_LENGTH]
        record.last_message_at = now

        if is_staff and not is_bot and record.first_staff_reply_at is None:
            record.first_staff_reply_at = max(now, record.created_at)
        self._rt.mark_dirty()

        if is_staff and not is_bot:
            closing = is_closing_phrase(event.content, self._rt.config.closing_phrases)
            self.start_activity_timer(event.channel_id, TimerType.CLOSING if closing else TimerType.REGULAR)
        elif not is_bot:
            self.clear_activity_timer(event.channel_id)

        if not is_staff and not is_bot and not self._rt.paused:
            self._forward(record, event)

        self._rt.emit("ticket:message", {"channelId": event.channel_id, "content": event.content})
        return True

    def _forward(self, record: TicketRecord, event: MessageCreated) -> None:
        config = self._rt.config
        if event.channel_id not in self._notified_first:
            self._notified_first.add(event.channel_id)
            if not record.opener_id:
                record.opener_id = event.author_id
                record.opener_username = event.author.get("username") or record.opener_username
                self._rt.mark_dirty()
            self._rt.enqueue(notifier.build_first_message(record, event.raw, config))
        else:
            self._rt.enqueue(notifier.build_forwarded(record, event.raw, config))

    def _maybe_greet(self, record: TicketRecord, event: MessageCreated) -> None:
        """Greet the opener once per ticket when a ticket bot pings a greet role."""
        config = self._rt.config
        if not (config.auto_greet_enabled and config.auto_greet_text and config.auto_greet_role_ids):
            return
        if event.channel_id in self._greeted:
            return
        roles = set(config.auto_greet_role_ids)
        # Some bots put the ping in the text without filling mention_roles.
        mentioned = roles.intersection(event.mention_roles) or any(f"<@&{r}>" in event.content for r in roles)
        if not mentioned:
            return
        self._greeted.add(event.channel_id)
        self._rt.tasks.spawn(
            self._greet(event.channel_id, record.channel_name), name=f"auto-greet-{event.channel_id}"
        )

    async def _greet(self, channel_id: str, channel_name: str) -> None:
        delay = self._rt.config.auto_greet_delay
        if delay > 0:
            await self._sleep(delay)
        result = await self._rt.send_message(channel_id, self._rt.config.auto_greet_text)
        if result.ok:
            logger.info("Auto-greet sent in #%s", channel_name)
        else:
            logger.warning("Auto-greet failed in #%s (status %s)", channel_name, result.status)

    # ── Channel scan ──

    def register_from_scan(self, channels: list[dict], guild_name: str = "") -> int:
        """Build records for matching channels and drop records whose channel is gone."""
        config = self._rt.config
        guild_id = config.guild_id
        found = skipped_category = skipped_prefix = 0

        for ch in channels:
            channel_id = str(ch.get("id") or "")
            if not channel_id:
                continue
            self._rt.caches.channels[channel_id] = {**ch, "guild_id": guild_id}
            if ch.get("type") not in TEXT_CHANNEL_TYPES:
                continue
            if config.tickets_category_id and str(ch.get("parent_id") or "") != config.tickets_category_id:
                skipped_category += 1
                continue
            name = ch.get("name") or ""
            if not matches_prefix(name, config.ticket_prefixes):
                skipped_prefix += 1
                continue
            if channel_id in self.registry:
                continue
            self.registry.active[channel_id] = TicketRecord(
                channel_id=channel_id,
                channel_name=name,
                guild_id=guild_id,
                guild_name=guild_name,
                created_at=snowflake_to_timestamp(channel_id),
                opener_username=parse_opener(name, config.ticket_prefixes),
            )
            found += 1
            logger.debug("Found ticket channel #%s", name)

        live = {str(c.get("id")) for c in channels if c.get("type") in TEXT_CHANNEL_TYPES}
        stale = [cid for cid in self.registry.active if cid not in live]
        for channel_id in stale:
            logger.info("Removing stale ticket %s (channel no longer exists)", channel_id)
            self.clear_activity_timer(channel_id)
            del self.registry.active[channel_id]

        self._rt.mark_dirty()
        logger.info(
            "Scan result: %d found, %d skipped by category, %d skipped by prefix, %d stale, %d active",
            found, skipped_category, skipped_prefix, len(stale), len(self.registry),
        )
        return found

    # ── Activity timers ──

    def _timeout_minutes(self, timer_type: TimerType) -> float:
        config = self._rt.config
        return config.closing_check_min if timer_type is TimerType.CLOSING else config.activity_check_min

    def _cancel_timer(self, channel_id: str) -> None:
        handle = self._timers.pop(channel_id, None)
        if handle is not None:
            handle.cancel()

    def clear_activity_timer(self, channel_id: str) -> None:
        self._cancel_timer(channel_id)
        record = self.registry.get(channel_id)
        if record is not None and record.waiting_for_reply:
            record.waiting_for_reply = False
            record.last_staff_message_at = None
            record.activity_timer_type = TimerType.NONE
            self._rt.mark_dirty()

    def start_activity_timer(self, channel_id: str, timer_type: TimerType) -> None:
        minutes = self._timeout_minutes(timer_type)
        if minutes <= 0:
            return
        self.clear_activity_timer(channel_id)
        record = self.registry.get(channel_id)
        if record is None:
            return
        record.last_staff_message_at = self._clock()
        record.waiting_for_reply = True
        record.activity_timer_type = timer_type
        self._rt.mark_dirty()
        self._schedule(channel_id, timer_type, minutes, minutes * 60)
        logger.info("Timer started: #%s (%s, %g min)", record.channel_name, timer_type.value, minutes)

    def _schedule(self, channel_id: str, timer_type: TimerType, minutes: float, delay: float) -> None:
        self._cancel_timer(channel_id)
        loop = asyncio.get_running_loop()
        self._timers[channel_id] = loop.call_later(delay, self._fire, channel_id, timer_type, minutes)

    def _fire(self, channel_id: str, timer_type: TimerType, minutes: float) -> None:
        self._timers.pop(channel_id, None)
        record = self.registry.get(channel_id)
        if record is None:
            return
        record.waiting_for_reply = False
        record.activity_timer_type = TimerType.NONE
        self._rt.mark_dirty()
        logger.info("Timer fired: #%s (%s, %g min)", record.channel_name, timer_type.value, minutes)
        if self._rt.paused:
            logger.info("Paused; timer notification skipped")
            return
        self._rt.enqueue(notifier.build_activity(record, timer_type is TimerType.CLOSING, minutes))

    def restore_activity_timers(self) -> int:
        """Re-arm timers from persisted records; returns how many were restored or fired."""
        restored = 0
        now = self._clock()
        for channel_id, record in list(self.registry.active.items()):
            if (
                not record.waiting_for_reply
                and record.last_message
                and record.last_message.startswith(STAFF_PREFIX.strip())
                and record.last_message_at
            ):
                record.waiting_for_reply = True
                if record.last_staff_message_at is None:
                    record.last_staff_message_at = record.last_message_at
                content = record.last_message[len(STAFF_PREFIX.strip()):].strip()
                closing = is_closing_phrase(content, self._rt.config.closing_phrases)
                record.activity_timer_type = TimerType.CLOSING if closing else TimerType.REGULAR
                self._rt.mark_dirty()

            if not record.waiting_for_reply or not record.last_staff_message_at:
                continue
            timer_type = record.activity_timer_type
            if timer_type is TimerType.NONE:
                timer_type = TimerType.REGULAR
            minutes = self._timeout_minutes(timer_type)
            if minutes <= 0:
                continue

            remaining = minutes * 60 - (now - record.last_staff_message_at)
            if remaining <= 0:
                logger.info("Timer expired while offline: #%s", record.channel_name)
                self._fire(channel_id, timer_type, minutes)
            else:
                self._schedule(channel_id, timer_type, minutes, remaining)
            restored += 1

        if restored:
            logger.info("Restored %d activity timers", restored)
        return restored

    def cancel_all_timers(self) -> None:
        for channel_id in list(self._timers):
            self._cancel_timer(channel_id)
