"""AI answers to members who mention the account or reply to an earlier answer."""

import asyncio
import logging
import re
import time
from collections.abc import Callable

import requests

from ticket_notifier import notifier
from ticket_notifier.config import Config
from ticket_notifier.dedup import BoundedIdSet, ExpiringSet
from ticket_notifier.events import MessageCreated
from ticket_notifier.runtime import Runtime

logger = logging.getLogger(__name__)

DEDUP_SECONDS = 60
TRACKED_ANSWERS = 2000
TEMPERATURE = 0.7
MAX_TOKENS = 800

ACK_PHRASES = {
    "ок", "ok", "окей", "okay", "хорошо", "понял", "поняла", "пон", "понятно",
    "ясно", "угу", "ага", "спасибо", "спс", "благодарю", "принял", "принято",
    "ладно", "бывает", "норм", "нормально", "ок спс", "ок спасибо", "хорошо спасибо",
}
ACK_TOKENS = {
    "ок", "ok", "окей", "okay", "пон", "понял", "поняла", "ясно", "угу", "ага", "спс",
    "спасибо", "благодарю", "ладно", "принял", "принято", "норм",
}


def normalize_question(text: str) -> str:
    text = str(text or "").lower()
    text = re.sub(r"<@!?\d+>", " ", text)
    text = re.sub(r"[`*_~>|()\[\]{}]", " ", text)
    text = re.sub(r"[.,!?;:/\\'\"+-]", " ", text)
    return re.sub(r"\s+", " ", text).strip()


def should_skip_question(question: str) -> bool:
    """True for acknowledgements and fragments that are not worth an answer."""
    raw = str(question or "")
    normalized = normalize_question(raw)
    if not normalized:
        return True
    if normalized in ACK_PHRASES:
        return True
    tokens = normalized.split()
    if 0 < len(tokens) <= 2 and all(t in ACK_TOKENS for t in tokens):
        return True
    return "?" not in raw and len(tokens) <= 1 and len(normalized) <= 3


def strip_mention(content: str, user_id: str) -> str:
    text = re.sub(rf"<@!?{re.escape(user_id)}>", "", content or "")
    return re.sub(r"[,،\s]+", " ", text).strip()


def build_messages(system_prompt: str, context: str, previous_reply: str, question: str) -> list[dict]:
    messages = [{"role": "system", "content": system_prompt}]
    if context:
        messages.append({"role": "system", "content": context})
    if previous_reply:
        messages.append({"role": "assistant", "content": previous_reply})
    messages.append({"role": "user", "content": question})
    return messages


def request_completion(messages: list[dict], config: Config) -> str | None:
    """Ask the chat-completion endpoint for an answer.

    Keys are tried in order; the first usable answer wins. Returns None when
    every key fails or the response has no content.
    """
    body = {
        "model": config.ai_model,
        "messages": messages,
        "temperature": TEMPERATURE,
        "max_tokens": MAX_TOKENS,
    }
    for index, key in enumerate(config.ai_api_keys):
        try:
            resp = requests.post(
                config.ai_url,
                json=body,
                headers={"Authorization": f"Bearer {key}"},
                timeout=config.ai_timeout,
            )
            resp.raise_for_status()
            data = resp.json()
            answer = data["choices"][0]["message"]["content"]
        except requests.RequestException as exc:
            logger.warning("AI request failed with key #%d: %s", index + 1, exc)
            continue
        except (KeyError, IndexError, TypeError, ValueError) as exc:
            logger.warning("AI returned an unexpected response: %s", exc)
            continue
        if answer and str(answer).strip():
            return str(answer).strip()
    return None


class AIResponder:
    def __init__(self, runtime: Runtime, clock: Callable[[], float] = time.monotonic) -> None:
        self._rt = runtime
        self._recent = ExpiringSet(DEDUP_SECONDS, clock)
        self.answer_ids = BoundedIdSet(TRACKED_ANSWERS)

    def is_reply_to_answer(self, event: MessageCreated) -> bool:
        ref = event.referenced_message or {}
        return bool(ref.get("id")) and str(ref["id"]) in self.answer_ids

    def mentions_self(self, event: MessageCreated) -> bool:
        self_id = self._rt.self_user_id
        if not self_id:
            return False
        return f"<@{self_id}>" in event.content or f"<@!{self_id}>" in event.content

    def maybe_answer(self, event: MessageCreated, has_profanity: bool = False) -> bool:
        """Schedule an answer if the message is a question aimed at the AI."""
        config = self._rt.config
        self_id = self._rt.self_user_id
        if event.author_is_bot or has_profanity or not config.ai_api_keys or not self_id:
            return False
        if config.ai_guild_ids and event.guild_id not in config.ai_guild_ids:
            return False
        if event.channel_id in config.ai_excluded_channels:
            return False

        mentioned = self.mentions_self(event)
        is_reply = self.is_reply_to_answer(event)
        if not (mentioned or is_reply):
            return False
        if event.author_id == self_id and not mentioned:
            return False

        question = strip_mention(event.content, self_id)
        if should_skip_question(question):
            logger.debug("Skipping AI trigger %s: acknowledgement", event.message_id)
            return False
        if not self._recent.add(event.message_id):
            return False

        logger.info(
            "AI trigger [%s] from %s: %s", "reply" if is_reply else "mention", event.username, question[:100]
        )
        previous = ((event.referenced_message or {}).get("content") or "")[:500] if is_reply else ""
        self._rt.tasks.spawn(self.answer(event, question, previous), name=f"ai-{event.message_id}")
        return True

    async def answer(self, event: MessageCreated, question: str, previous_reply: str = "") -> str | None:
        config = self._rt.config
        context = self._rt.context_provider(question)
        messages = build_messages(config.system_prompt, context, previous_reply, question)
        reply = await asyncio.to_thread(request_completion, messages, config)
        if reply is None:
            logger.warning("AI produced no answer for message %s", event.message_id)
            return None

        result = await self._rt.send_message(event.channel_id, reply, event.message_id)
        if not result.ok:
            return None
        try:
            sent_id = (result.json() or {}).get("id")
        except (ValueError, AttributeError):
            sent_id = None
        if sent_id:
            self.answer_ids.add(str(sent_id))
        logger.info("AI answer sent to %s", event.channel_id)
        self._rt.enqueue(notifier.build_ai_answered(event.channel_id, event.username, question, reply))
        return reply
