"""Routes typed gateway events to caches, the ticket tracker and responders."""

import asyncio
import collections
import logging

from ticket_notifier.ai_responder import AIResponder
from ticket_notifier.autoreply import AutoReplier
from ticket_notifier.events import (
    ChannelCreated,
    ChannelDeleted,
    GuildSnapshot,
    MemberAdded,
    MemberListPage,
    MemberRemoved,
    MemberUpdated,
    MessageCreated,
    PresenceUpdated,
    Ready,
    Resumed,
    RoleCreated,
    RoleDeleted,
    RoleUpdated,
    parse_dispatch,
)
from ticket_notifier.hydration import HydrationJobs
from ticket_notifier.models import DecisionSource, PresenceEntry
from ticket_notifier.profanity import ProfanityGuard
from ticket_notifier.runtime import Runtime
from ticket_notifier.tickets import TicketTracker

logger = logging.getLogger(__name__)

BACKFILL_DELAY = 3.0
DISPATCH_LOG_LIMIT = 3


class DispatchRouter:
    def __init__(
        self,
        runtime: Runtime,
        tracker: TicketTracker,
        hydration: HydrationJobs,
        replier: AutoReplier,
        ai: AIResponder,
        profanity: ProfanityGuard,
        *,
        backfill_delay: float = BACKFILL_DELAY,
        sleep=asyncio.sleep,
    ) -> None:
        self._rt = runtime
        self._tracker = tracker
        self._hydration = hydration
        self._replier = replier
        self._ai = ai
        self._profanity = profanity
        self._backfill_delay = backfill_delay
        self._sleep = sleep
        self._counts: collections.Counter[str] = collections.Counter()
        self._handlers = {
            Ready: self._on_ready,
            Resumed: self._on_resumed,
            GuildSnapshot: self._on_guild_snapshot,
            ChannelCreated: self._tracker.on_channel_created,
            ChannelDeleted: self._tracker.on_channel_deleted,
            MessageCreated: self._on_message,
            MemberAdded: self._on_member_upsert,
            MemberUpdated: self._on_member_upsert,
            MemberRemoved: self._on_member_removed,
            PresenceUpdated: self._on_presence,
            RoleCreated: self._on_role_upsert,
            RoleUpdated: self._on_role_upsert,
            RoleDeleted: self._on_role_deleted,
            MemberListPage: self._on_member_list_page,
        }

    async def dispatch(self, name: str, data) -> None:
        self._log_dispatch(name, data)
        try:
            event = parse_dispatch(name, data)
        except (KeyError, TypeError, ValueError) as exc:
            logger.debug("Dropping malformed %s dispatch: %s", name, exc)
            return
        handler = self._handlers.get(type(event))
        if handler is not None:
            handler(event)

    def _log_dispatch(self, name: str, data) -> None:
        self._counts[name] += 1
        count = self._counts[name]
        if count <= DISPATCH_LOG_LIMIT:
            guild = data.get("guild_id") if isinstance(data, dict) else None
            logger.debug("Dispatch: %s%s", name, f" (guild {guild})" if guild else "")
        if count == DISPATCH_LOG_LIMIT:
            logger.debug("Suppressing further %s dispatch logs", name)

    def _in_guild(self, guild_id: str) -> bool:
        return bool(guild_id) and guild_id == self._rt.config.guild_id

    # ── Session ──

    def _on_ready(self, event: Ready) -> None:
        if event.user_id:
            self._rt.self_user_id = event.user_id
            self._rt.self_username = event.username
        logger.info("Gateway READY (session %s, user %s / %s)", event.session_id, event.username, event.user_id)
        self._rt.tasks.spawn(self._backfill(), name="channel-backfill")

    async def _backfill(self) -> None:
        await self._sleep(self._backfill_delay)
        await self._hydration.fetch_and_scan_channels()

    def _on_resumed(self, event: Resumed) -> None:
        logger.info("Gateway RESUMED")

    def _on_guild_snapshot(self, event: GuildSnapshot) -> None:
        if not self._in_guild(event.guild_id):
            return
        caches = self._rt.caches
        logger.info(
            "Guild snapshot: %s (%s), %d channels, %d members",
            event.name, event.guild_id, len(event.channels), len(event.members),
        )
        for role in event.roles:
            if role.get("id"):
                caches.roles[str(role["id"])] = role
        for member in event.members:
            caches.upsert_member(member)
        for presence in event.presences:
            user_id = (presence.get("user") or {}).get("id")
            if user_id:
                caches.presences[str(user_id)] = PresenceEntry.from_payload(presence)
        if event.members or event.presences:
            self._rt.members_throttle.schedule()

        if event.channels and not self._rt.channels_scanned:
            self._rt.channels_scanned = True
            self._tracker.register_from_scan(event.channels, event.name)
            self._tracker.restore_activity_timers()
            self._rt.tasks.spawn(
                self._rt.subscribe_channels(list(self._rt.registry.active)), name="subscribe-tickets"
            )

    # ── Messages ──

    def _on_message(self, event: MessageCreated) -> None:
        if not event.author_id:
            return
        if event.member and self._in_guild(event.guild_id):
            self._rt.caches.upsert_member({**event.member, "user": event.author})
            self._rt.members_throttle.schedule()

        self._auto_reply(event)
        has_profanity = self._profanity.check(event)
        self._ai.maybe_answer(event, has_profanity)
        self._tracker.on_message(event)

    def _auto_reply(self, event: MessageCreated) -> None:
        config = self._rt.config
        if event.author_is_bot or event.author_id == self._rt.self_user_id:
            return
        if not config.auto_replies or event.channel_id in config.auto_reply_exclude_channels:
            return
        if not self._rt.processed_messages.add(event.message_id):
            return
        self._replier.process(
            event.message_id,
            event.channel_id,
            event.guild_id,
            event.content,
            event.username,
            DecisionSource.GATEWAY,
        )

    # ── Members, presences, roles ──

    def _on_member_upsert(self, event: MemberAdded | MemberUpdated) -> None:
        if not self._in_guild(event.guild_id):
            return
        if (event.member.get("user") or {}).get("id"):
            self._rt.caches.upsert_member(event.member)
            self._rt.members_throttle.schedule()

    def _on_member_removed(self, event: MemberRemoved) -> None:
        if not self._in_guild(event.guild_id):
            return
        self._rt.caches.members.pop(event.user_id, None)
        self._rt.members_throttle.schedule()

    def _on_presence(self, event: PresenceUpdated) -> None:
        if not self._in_guild(event.guild_id) or not event.user_id:
            return
        self._rt.caches.presences[event.user_id] = PresenceEntry.from_payload(event.presence)
        self._rt.members_throttle.schedule()

    def _on_role_upsert(self, event: RoleCreated | RoleUpdated) -> None:
        if self._in_guild(event.guild_id) and event.role.get("id"):
            self._rt.caches.roles[str(event.role["id"])] = event.role

    def _on_role_deleted(self, event: RoleDeleted) -> None:
        if self._in_guild(event.guild_id):
            self._rt.caches.roles.pop(event.role_id, None)

    def _on_member_list_page(self, event: MemberListPage) -> None:
        if not self._in_guild(event.guild_id):
            return
        caches = self._rt.caches
        for member in event.members:
            caches.upsert_member(member)
            if member.get("presence"):
                caches.presences[str(member["user"]["id"])] = PresenceEntry.from_payload(member["presence"])
        if event.members:
            logger.info("Member list update: %d members (total %d)", len(event.members), len(caches.members))
            self._rt.members_throttle.schedule()
