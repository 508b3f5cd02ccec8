"""Profanity detection and the staff ping it triggers."""

import logging

from ticket_notifier.dedup import Cooldown
from ticket_notifier.events import MessageCreated
from ticket_notifier.runtime import Runtime

logger = logging.getLogger(__name__)

# Lookalike characters fold to Cyrillic; separators are dropped.
_CHAR_MAP = {
    "@": "а", "$": "с", "0": "о", "3": "з", "4": "ч", "6": "б", "!": "и",
    "(": "с", ")": "о", "|": "л", "¡": "и", "€": "е", "₽": "р", "№": "н",
    "a": "а", "b": "б", "c": "с", "e": "е", "h": "н", "i": "и", "k": "к",
    "m": "м", "n": "н", "o": "о", "p": "р", "r": "р", "t": "т", "u": "у",
    "x": "х", "y": "у", "w": "ш",
}
_DROPPED = set("*#.,-_ ~+=/\\`'\"^\t\n")
_TRANSLATION = {ord(k): v for k, v in _CHAR_MAP.items()}
_TRANSLATION.update({ord(ch): None for ch in _DROPPED})


def normalize(text: str) -> str:
    return (text or "").lower().translate(_TRANSLATION)


def contains_profanity(text: str, roots: list[str], whitelist=()) -> str | None:
    """Return the first matching root, or None.

    Matching runs on normalized text, so ``х у й``, ``xуй`` and ``х.у.й``
    all hit the same root. A whitelisted word anywhere in the message
    cancels a root match.
    """
    if not text or len(text) < 2:
        return None
    normalized = normalize(text)
    allowed = [normalize(w) for w in whitelist if w]
    for root in roots:
        root_norm = normalize(root)
        if root_norm and root_norm in normalized:
            if any(w in normalized for w in allowed):
                continue
            return root
    return None


class ProfanityGuard:
    """Pings the configured staff role when a member swears, once per cooldown."""

    def __init__(self, runtime: Runtime) -> None:
        self._rt = runtime
        self._cooldown = Cooldown(runtime.config.profanity_cooldown)

    def check(self, event: MessageCreated) -> bool:
        """Returns True if the message contained profanity."""
        config = self._rt.config
        if event.author_is_bot or event.guild_id != config.guild_id or not config.profanity_roots:
            return False
        if self._rt.is_staff(event.member):
            return False

        match = contains_profanity(event.content, config.profanity_roots, config.profanity_whitelist)
        if match is None:
            return False

        if config.profanity_ping_role_id and self._cooldown.hit(event.author_id):
            logger.info("Profanity from %s (match: %s); pinging staff", event.username, match)
            self._rt.tasks.spawn(
                self._rt.send_message(event.channel_id, f"<@&{config.profanity_ping_role_id}>", event.message_id),
                name=f"profanity-ping-{event.message_id}",
            )
        return True
