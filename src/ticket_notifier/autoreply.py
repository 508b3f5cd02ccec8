"""Runs the decision engine for a message and delivers the reply."""

import asyncio
import logging

from ticket_notifier import notifier
from ticket_notifier.decision_engine import evaluate, reply_delay
from ticket_notifier.models import Decision, DecisionAction, DecisionSource
from ticket_notifier.runtime import Runtime

logger = logging.getLogger(__name__)


class AutoReplier:
    """Shared by the gateway and the polling fallback.

    Callers mark the message id as processed before calling :meth:`process`,
    so the two paths never answer the same message twice.
    """

    def __init__(self, runtime: Runtime, sleep=asyncio.sleep) -> None:
        self._rt = runtime
        self._sleep = sleep

    def process(
        self,
        message_id: str,
        channel_id: str,
        guild_id: str,
        content: str,
        username: str,
        source: DecisionSource,
    ) -> Decision:
        config = self._rt.config
        decision = evaluate(
            config.auto_replies, content, channel_id, guild_id, source, config.heuristics
        )
        if decision.action is DecisionAction.SEND and decision.response:
            delay = reply_delay(decision, config.auto_replies, config.moderation_reply_delay)
            logger.info(
                "Auto-reply matched: %r (rule %s, %s) in channel %s, sending in %gs",
                decision.rule_name, decision.rule_id, decision.reason, channel_id, delay,
            )
            self._rt.tasks.spawn(
                self._deliver(decision, channel_id, message_id, username, content, delay),
                name=f"auto-reply-{message_id}",
            )
        else:
            logger.debug(
                "No auto-reply for %s (%s, %d rules checked)", message_id, decision.reason, decision.checked_rules
            )
        return decision

    async def _deliver(
        self, decision: Decision, channel_id: str, reply_to: str, username: str, content: str, delay: float
    ) -> None:
        if delay > 0:
            await self._sleep(delay)
        result = await self._rt.send_message(channel_id, decision.response, reply_to)
        if not result.ok:
            logger.warning("Auto-reply %s failed in channel %s", decision.rule_id, channel_id)
            return
        logger.info("Auto-reply sent: %r", decision.rule_name)
        self._rt.enqueue(notifier.build_auto_reply_sent(decision, username, content))
