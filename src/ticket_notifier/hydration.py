"""REST backfill for data the gateway does not push in every auth mode."""

import asyncio
import logging
import re
from datetime import datetime
from urllib.parse import quote

from ticket_notifier.runtime import Runtime
from ticket_notifier.tickets import TicketTracker

logger = logging.getLogger(__name__)

MEMBER_PAGE_SIZE = 1000
BOT_MEMBER_PAGES = 20
USER_MEMBER_PAGES = 2
SEARCH_BATCH_SIZE = 4
STAGNANT_BATCH_LIMIT = 5
MIN_MEMBERS_FOR_EARLY_STOP = 250
PAGE_PAUSE = 0.22
BATCH_PAUSE = 0.18
PREVIEW_PAUSE = 0.5

# A user-mode sweep that ends below this many members falls back to the sidebar.
SIDEBAR_SWEEP_THRESHOLD = 120
SIDEBAR_PASSES = 10
SIDEBAR_CHANNELS_PER_REQUEST = 2
SIDEBAR_START_DELAY = 1.5
SIDEBAR_STEP_DELAY = 0.85
VIEW_CHANNEL = 1 << 10
PUBLIC_CHANNEL_NAMES = re.compile(r"(general|chat|общ|основ|main|lobby|лобби|welcome|чат)")
STAFF_CHANNEL_NAMES = re.compile(
    r"(staff|admin|админ|mod|модер|персонал|ticket|тикет|заявк|appeal|обращ|log|лог|audit)"
)

# "" first: a broad query that some tokens are allowed to run.
MEMBER_SEARCH_QUERY_CHARS = list(dict.fromkeys(
    [""]
    + list("etaoinshrdlucmfwypvbgkjqxz")
    + list("0123456789")
    + ["_", "-", "."]
    + list("аеоинтрсвлкмдпуяыьбгчйхжшюцщэфё")
))


def _preview_text(message: dict) -> str:
    content = (message.get("content") or "")[:120]
    if content:
        return content
    embeds = message.get("embeds") or []
    if embeds:
        return embeds[0].get("title") or embeds[0].get("description") or "📎 Вложение"
    return "📎 Вложение"


def _everyone_overwrite(channel: dict | None, guild_id: str) -> dict | None:
    for ow in (channel or {}).get("permission_overwrites") or []:
        if str(ow.get("id")) == guild_id and ow.get("type") in (0, "0", "role", None):
            return ow
    return None


def _view_bit(overwrite: dict | None, key: str) -> bool:
    try:
        return bool(int((overwrite or {}).get(key) or 0) & VIEW_CHANNEL)
    except (TypeError, ValueError):
        return False


def sidebar_channel_score(channel: dict, guild_id: str, tickets_category_id: str, channels: dict) -> float:
    """Rank how likely a channel's member sidebar lists ordinary members.

    Public chat channels outside the ticket category score highest. Channels
    hidden from @everyone score lowest.
    """
    score = 0.0
    name = str(channel.get("name") or "").lower()
    parent_id = channel.get("parent_id")

    score += -3 if tickets_category_id and parent_id == tickets_category_id else 8

    own = _everyone_overwrite(channel, guild_id)
    if _view_bit(own, "allow"):
        score += 14
    if _view_bit(own, "deny"):
        score -= 26
    if own is None and parent_id:
        parent = _everyone_overwrite(channels.get(parent_id), guild_id)
        if _view_bit(parent, "allow"):
            score += 6
        if _view_bit(parent, "deny"):
            score -= 18

    if PUBLIC_CHANNEL_NAMES.search(name):
        score += 10
    if STAFF_CHANNEL_NAMES.search(name):
        score -= 10
    if isinstance(channel.get("position"), (int, float)):
        score += channel["position"] / 1000
    return score


def _parse_timestamp(value) -> float | None:
    if not value:
        return None
    try:
        return datetime.fromisoformat(str(value).replace("Z", "+00:00")).timestamp()
    except ValueError:
        return None


class HydrationJobs:
    def __init__(self, runtime: Runtime, tracker: TicketTracker, poller=None, sleep=asyncio.sleep) -> None:
        self._rt = runtime
        self._tracker = tracker
        self._poller = poller
        self._sleep = sleep

    async def fetch_and_scan_channels(self) -> bool:
        """Scan the guild's channels once per connection and kick off backfill.

        Returns False when the scan was skipped or the channel list could
        not be fetched.
        """
        rt = self._rt
        if rt.channels_scanned:
            logger.debug("Channels already scanned for this connection")
            return False
        guild_id = rt.config.guild_id
        if not guild_id:
            logger.warning("No guild_id configured; cannot fetch channels")
            return False

        channels = await rt.rest.get_json(f"/guilds/{guild_id}/channels")
        if not isinstance(channels, list):
            logger.error("Could not load channels for guild %s", guild_id)
            return False
        if rt.channels_scanned:
            return False

        logger.info("REST: %d channels loaded", len(channels))
        rt.channels_scanned = True
        self._tracker.register_from_scan(channels)
        self._tracker.restore_activity_timers()
        await rt.subscribe_channels(list(rt.registry.active))

        rt.tasks.spawn(self.load_previews(), name="ticket-previews")
        rt.tasks.spawn(self.hydrate_members(), name="member-hydration")
        await self.load_roles()
        if self._poller is not None:
            self._poller.start()
        return True

    async def load_roles(self) -> int:
        roles = await self._rt.rest.get_json(f"/guilds/{self._rt.config.guild_id}/roles")
        if not isinstance(roles, list):
            logger.warning("Could not load guild roles")
            return 0
        for role in roles:
            if role.get("id"):
                self._rt.caches.roles[str(role["id"])] = role
        logger.info("REST: %d roles loaded", len(roles))
        return len(roles)

    async def load_previews(self) -> int:
        """Fill ``last_message`` for tickets that have none yet."""
        loaded = 0
        for channel_id, record in list(self._rt.registry.active.items()):
            if record.last_message:
                continue
            messages = await self._rt.rest.fetch_messages(channel_id, limit=1)
            if messages:
                record.last_message = _preview_text(messages[0])
                record.last_message_at = _parse_timestamp(messages[0].get("timestamp"))
                loaded += 1
            await self._sleep(PREVIEW_PAUSE)
        self._rt.mark_dirty()
        self._rt.emit("ticket:updated", {})
        logger.info("Ticket previews loaded (%d)", loaded)
        return loaded

    # ── Members ──

    def _upsert(self, members) -> int:
        added = 0
        if not isinstance(members, list):
            return 0
        for member in members:
            if isinstance(member, dict) and self._rt.caches.upsert_member(member):
                added += 1
        return added

    async def _list_members(self) -> int:
        guild_id = self._rt.config.guild_id
        pages = BOT_MEMBER_PAGES if self._rt.rest.bot else USER_MEMBER_PAGES
        loaded = 0
        after = None
        for page in range(pages):
            path = f"/guilds/{guild_id}/members?limit={MEMBER_PAGE_SIZE}"
            if after:
                path += f"&after={after}"
            res = await self._rt.rest.get(path)
            if not res.ok:
                if page == 0:
                    logger.info("REST member listing unavailable (%s); using search", res.status)
                break
            try:
                members = res.json()
            except ValueError:
                logger.warning("Member listing returned malformed JSON")
                break
            if not isinstance(members, list) or not members:
                break

            added = self._upsert(members)
            loaded += added
            if added:
                self._rt.members_throttle.schedule()
            if len(members) < MEMBER_PAGE_SIZE:
                break
            after = ((members[-1] or {}).get("user") or {}).get("id")
            if not after:
                break
            await self._sleep(PAGE_PAUSE)
        return loaded

    async def _search(self, query: str) -> tuple[bool, list]:
        guild_id = self._rt.config.guild_id
        res = await self._rt.rest.get(f"/guilds/{guild_id}/members/search?query={quote(query)}&limit=100")
        if not res.ok:
            return False, []
        try:
            members = res.json()
        except ValueError:
            return False, []
        return True, members if isinstance(members, list) else []

    async def _search_sweep(self) -> tuple[int, int]:
        loaded = 0
        ok_responses = 0
        stagnant = 0
        error_logged = False
        for i in range(0, len(MEMBER_SEARCH_QUERY_CHARS), SEARCH_BATCH_SIZE):
            batch = MEMBER_SEARCH_QUERY_CHARS[i:i + SEARCH_BATCH_SIZE]
            results = await asyncio.gather(*(self._search(q) for q in batch))

            added = 0
            for query, (ok, members) in zip(batch, results):
                if not ok:
                    if not error_logged:
                        logger.warning("Member search failed for query %r", query)
                        error_logged = True
                    continue
                ok_responses += 1
                added += self._upsert(members)

            loaded += added
            if added:
                stagnant = 0
                self._rt.members_throttle.schedule()
            else:
                stagnant += 1

            if stagnant >= STAGNANT_BATCH_LIMIT and len(self._rt.caches.members) >= MIN_MEMBERS_FOR_EARLY_STOP:
                break
            await self._sleep(BATCH_PAUSE)
        return loaded, ok_responses

    async def hydrate_members(self) -> int:
        """Listing first, then the search sweep. Returns the number of known members."""
        listed = await self._list_members()
        searched, ok_responses = await self._search_sweep()
        total = len(self._rt.caches.members)
        logger.info(
            "Members hydrated: total=%d, listing=%d, search=%d, search_ok=%d",
            total, listed, searched, ok_responses,
        )
        if not self._rt.rest.bot and total < SIDEBAR_SWEEP_THRESHOLD:
            self.schedule_sidebar_sweep()
        if total:
            self._rt.members_throttle.schedule()
        return total

    def ranked_sidebar_channels(self) -> list[dict]:
        config = self._rt.config
        channels = self._rt.caches.channels
        text_channels = [
            ch for ch in channels.values() if ch.get("guild_id") == config.guild_id and ch.get("type") == 0
        ]
        return sorted(
            text_channels,
            key=lambda ch: sidebar_channel_score(ch, config.guild_id, config.tickets_category_id, channels),
            reverse=True,
        )

    def schedule_sidebar_sweep(self) -> bool:
        """Page through member sidebars of the best-ranked channels (op 14)."""
        gateway = self._rt.gateway
        if gateway is None or not gateway.lazy_subscriptions_enabled:
            return False
        self._rt.tasks.spawn(self._sidebar_sweep(), name="member-sidebar-sweep")
        return True

    async def _sidebar_sweep(self) -> int:
        await self._sleep(SIDEBAR_START_DELAY)
        requested = 0
        for n in range(SIDEBAR_PASSES):
            if n:
                await self._sleep(SIDEBAR_STEP_DELAY)
            ranked = self.ranked_sidebar_channels()
            if not ranked:
                logger.warning("Member sidebar sweep skipped: no text channels in cache")
                break
            offset = n * SIDEBAR_CHANNELS_PER_REQUEST
            selected = ranked[offset:offset + SIDEBAR_CHANNELS_PER_REQUEST] or ranked[:1]
            if await self._rt.request_member_sidebar([str(ch["id"]) for ch in selected]):
                requested += 1
        return requested
