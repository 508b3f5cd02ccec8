"""REST polling fallback for auto-replies.

User-mode sessions do not always receive message events for every channel,
so rule-scoped channels are also polled. The processed-id set is shared
with the gateway path.
"""

import asyncio
import logging

from ticket_notifier.autoreply import AutoReplier
from ticket_notifier.models import DecisionSource
from ticket_notifier.runtime import Runtime

logger = logging.getLogger(__name__)

POLL_LIMIT = 5
WILDCARD_CHANNEL_LIMIT = 5


def _snowflake(value) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return 0


class AutoReplyPoller:
    def __init__(self, runtime: Runtime, replier: AutoReplier, sleep=asyncio.sleep) -> None:
        self._rt = runtime
        self._replier = replier
        self._sleep = sleep
        self._task: asyncio.Task | None = None
        self.last_seen: dict[str, int] = {}
        self.channels: list[str] = []

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def collect_channels(self) -> list[str]:
        config = self._rt.config
        guild_id = config.guild_id
        channels: dict[str, None] = {}
        in_guild = [r for r in config.auto_replies if r.guild_id == guild_id]
        for rule in in_guild:
            if rule.channel_id:
                channels[rule.channel_id] = None
        if any(not r.channel_id for r in in_guild):
            count = 0
            for channel_id, ch in self._rt.caches.channels.items():
                if count >= WILDCARD_CHANNEL_LIMIT:
                    break
                if ch.get("guild_id") == guild_id and ch.get("type") == 0:
                    channels[channel_id] = None
                    count += 1
        for channel_id in config.poll_extra_channels:
            channels[channel_id] = None
        return list(channels)

    def start(self) -> bool:
        self.stop()
        if not self._rt.config.auto_replies:
            return False
        self.channels = self.collect_channels()
        if not self.channels:
            return False
        logger.info(
            "Auto-reply polling started: %d channels every %gs",
            len(self.channels), self._rt.config.poll_interval,
        )
        self._task = asyncio.create_task(self._run(), name="auto-reply-poller")
        return True

    def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            self._task = None

    async def _run(self) -> None:
        while True:
            await self._sleep(self._rt.config.poll_interval)
            for channel_id in self.channels:
                try:
                    await self.poll_channel(channel_id)
                except Exception:
                    logger.exception("Polling channel %s failed", channel_id)

    async def poll_channel(self, channel_id: str) -> int:
        """Poll one channel; returns how many messages were evaluated."""
        messages = await self._rt.rest.fetch_messages(channel_id, limit=POLL_LIMIT)
        if not messages:
            return 0

        baseline = self.last_seen.get(channel_id)
        newest = max((_snowflake(m.get("id")) for m in messages), default=0)
        if newest and (baseline is None or newest > baseline):
            self.last_seen[channel_id] = newest
        if baseline is None:
            # First look at this channel only records where history ends.
            return 0

        evaluated = 0
        # Newest first from the API.
        for msg in reversed(messages):
            if self._handle(channel_id, msg, baseline):
                evaluated += 1
        return evaluated

    def _handle(self, channel_id: str, msg: dict, baseline: int | None) -> bool:
        message_id = str(msg.get("id") or "")
        author = msg.get("author")
        if not message_id or not author:
            return False
        if message_id in self._rt.processed_messages:
            return False
        if baseline is not None and _snowflake(message_id) <= baseline:
            return False

        self._rt.processed_messages.add(message_id)
        if author.get("bot") or str(author.get("id")) == self._rt.self_user_id:
            return False
        if self._rt.is_staff(msg.get("member")):
            return False

        self._replier.process(
            message_id,
            channel_id,
            str(msg.get("guild_id") or self._rt.config.guild_id),
            msg.get("content") or "",
            author.get("username") or "",
            DecisionSource.POLL,
        )
        return True
