"""Auto-reply decision engine.

Pure functions mapping (message content, scope, configured rules) to a
:class:`Decision`. Nothing here performs I/O, so the same evaluation serves
the live gateway path, the REST polling fallback and the ``simulate`` CLI.

Evaluation order (first match wins):
  1. moderation check: built-in heuristic, short-circuits the rule scan
  2. configured rules: in list order, scope filters then keyword logic
  3. ban-appeal override: rewrites the response of the ban-appeal rule
  4. ban-appeal suppression: skips the ban-appeal rule and keeps scanning
"""

import functools
import logging
import re
from dataclasses import dataclass

from ticket_notifier.models import (
    AutoReplyRule,
    Decision,
    DecisionAction,
    DecisionSource,
    ModerationVerdict,
)

logger = logging.getLogger(__name__)

APPEAL_RESPONSE = (
    "Если Вы считаете блокировку ошибочной, подайте апелляцию:\n"
    "https://forum.funtime.su/index.php?forums/appeals/\n\n"
    "Перед подачей обязательно ознакомьтесь с FAQ:\n"
    "https://forum.funtime.su/faq_appeals"
)
SUPPORT_RESPONSE = "Обратитесь в поддержку: https://vk.com/funtime"

MODERATION_RULE_ID = "moderation_check"
MODERATION_RULE_NAME = "проверка/модерация"


@dataclass
class Heuristics:
    """Phrase lists (regular expressions) driving the built-in heuristics.

    Tuned empirically for a Russian-speaking community; every field can be
    overridden from the ``heuristics`` config section.
    """

    announcement: str = (
        r"(проходит набор|набор в|критери|pvp\s*0/10|pve\s*0/10|привилеги"
        r"|имя\(настоящее\)|играли когда то с софтами|готовы ли пройти проверку)"
    )
    check_context: str = r"(проверк|проверяющ|прова|прове|прову|анидеск|anydesk|аник|ани деск)"
    moderator_word: str = r"(модер|модерат)"
    wait_or_ignore: str = (
        r"(игнор|не отвечает|не кидает|не делают|не делает|жду|долго|нет ответа"
        r"|молчит|пропал|не пишет|ничего не делает|вызвали на пров|вызвали на провер)"
    )
    ban_context: str = r"(бан|забан|откин|блок|разбан|розбан)"
    personal_context: str = r"(^|\s)(я|меня|мне|мной|у меня|мой|моя|мои|мою|вызвали)(\s|$)"
    help_question: str = (
        r"(что делать|что мне делать|как быть|как же|что делать если|куда писать"
        r"|куда обращаться|куда идти|подскаж|помог|почему|за что|как обжал|обжал"
        r"|оспор|кто поможет|что теперь|как дальше)"
    )
    unban: str = r"(разбан|розбан)"
    purchase: str = r"(куп|покуп|оплат|донат|стоим|цена|4[.,]13|5000|5к)"
    ban_appeal_markers: tuple[str, ...] = ("ошибоч", "бан")
    simple_mention_marker: str = "простое упоминание"
    support_response: str = SUPPORT_RESPONSE
    appeal_response: str = APPEAL_RESPONSE


DEFAULT_HEURISTICS = Heuristics()

# Heuristics fields holding regular expressions; the rest are plain text.
PATTERN_FIELDS = (
    "announcement",
    "check_context",
    "moderator_word",
    "wait_or_ignore",
    "ban_context",
    "personal_context",
    "help_question",
    "unban",
    "purchase",
)


@functools.lru_cache(maxsize=128)
def _compile(pattern: str) -> re.Pattern:
    return re.compile(pattern)


def _search(pattern: str, text: str) -> bool:
    return _compile(pattern).search(text) is not None


def normalize(content) -> str:
    """Lowercase and collapse whitespace; ``None`` becomes an empty string."""
    return re.sub(r"\s+", " ", str(content or "").lower()).strip()


def has_help_question_intent(text: str, heuristics: Heuristics = DEFAULT_HEURISTICS) -> bool:
    if not text:
        return False
    if "?" in text:
        return True
    return _search(heuristics.help_question, text)


def analyze_moderation_check(
    content, heuristics: Heuristics = DEFAULT_HEURISTICS
) -> ModerationVerdict:
    """Detect "the moderator check is stuck / ignoring me" support requests."""
    text = normalize(content)
    if not text:
        return ModerationVerdict(matched=False, reason="empty")

    if _search(heuristics.announcement, text):
        return ModerationVerdict(matched=False, reason="announcement_template")

    has_check = _search(heuristics.check_context, text)
    has_moderator = _search(heuristics.moderator_word, text)
    has_wait = _search(heuristics.wait_or_ignore, text)
    has_ban = _search(heuristics.ban_context, text)
    has_personal = _search(heuristics.personal_context, text)
    has_signal = has_wait or (has_help_question_intent(text, heuristics) and has_personal)

    if not (has_check or (has_moderator and has_wait)):
        return ModerationVerdict(matched=False, reason="no_moderation_context")
    if not has_signal:
        return ModerationVerdict(matched=False, reason="no_help_signal")

    keywords = []
    confidence = 0.55
    if has_check:
        keywords.append("проверка/анидеск")
        confidence += 0.15
    if has_moderator:
        keywords.append("модератор")
        confidence += 0.06
    if has_wait:
        keywords.append("игнор/ожидание")
        confidence += 0.15
    if has_personal:
        keywords.append("личный контекст")
        confidence += 0.08
    if has_ban:
        keywords.append("бан/блок")
        confidence += 0.06

    if has_ban:
        reason, response = "moderation_issue_ban_context", heuristics.appeal_response
    else:
        reason, response = "moderation_issue_support_context", heuristics.support_response

    return ModerationVerdict(
        matched=True,
        reason=reason,
        keywords=keywords,
        confidence=round(min(confidence, 0.99), 2),
        response=response,
    )


@dataclass
class RuleMatch:
    matched: bool
    reason: str = ""
    keywords: tuple[str, ...] = ()
    confidence: float = 0.0


_NO_MATCH = RuleMatch(matched=False)


def match_rule(rule: AutoReplyRule, content, channel_id: str = "", guild_id: str = "") -> RuleMatch:
    """Apply scope filters and include/exclude keyword logic for one rule."""
    if not rule.enabled:
        return _NO_MATCH
    if rule.guild_id and rule.guild_id != guild_id:
        return _NO_MATCH
    if rule.channel_id and rule.channel_id != channel_id:
        return _NO_MATCH

    text = str(content or "").lower()
    if not text:
        return _NO_MATCH

    if any(term and term.lower() in text for term in rule.exclude_any):
        return _NO_MATCH

    hits = tuple(k for k in rule.include_any if k and k.lower() in text)
    if hits:
        return RuleMatch(matched=True, reason="include_any", keywords=hits, confidence=0.6)

    for group in rule.include_all:
        terms = [t for t in group if t]
        if terms and all(t.lower() in text for t in terms):
            return RuleMatch(
                matched=True, reason="include_all", keywords=tuple(terms), confidence=0.75
            )

    return _NO_MATCH


def _is_ban_appeal_rule(rule: AutoReplyRule, heuristics: Heuristics) -> bool:
    name = (rule.name or "").lower()
    return all(marker in name for marker in heuristics.ban_appeal_markers)


def _wants_paid_unban(text: str, heuristics: Heuristics) -> bool:
    return _search(heuristics.unban, text) and _search(heuristics.purchase, text)


def ban_appeal_override(
    rule: AutoReplyRule, content, heuristics: Heuristics = DEFAULT_HEURISTICS
) -> str | None:
    """Return the support response when a ban-appeal match is really a paid-unban question."""
    if not _is_ban_appeal_rule(rule, heuristics):
        return None
    text = normalize(content)
    if text and _wants_paid_unban(text, heuristics):
        return heuristics.support_response
    return None


def should_skip_ban_appeal(
    rule: AutoReplyRule, content, heuristics: Heuristics = DEFAULT_HEURISTICS
) -> bool:
    if not _is_ban_appeal_rule(rule, heuristics):
        return False
    text = normalize(content)
    if not text:
        return False
    if _wants_paid_unban(text, heuristics):
        return True
    if rule.simple_mention or heuristics.simple_mention_marker in (rule.name or "").lower():
        return True
    return not has_help_question_intent(text, heuristics)


def evaluate(
    rules: list[AutoReplyRule],
    content,
    channel_id: str = "",
    guild_id: str = "",
    source: DecisionSource = DecisionSource.GATEWAY,
    heuristics: Heuristics = DEFAULT_HEURISTICS,
) -> Decision:
    """Decide whether and how to auto-reply to a message. Never raises."""
    try:
        return _evaluate(rules, content, channel_id, guild_id, source, heuristics)
    except re.error:
        logger.exception("Auto-reply heuristics contain an invalid pattern")
        return Decision(action=DecisionAction.NONE, source=source, reason="heuristics_error")


def _evaluate(
    rules: list[AutoReplyRule],
    content,
    channel_id: str,
    guild_id: str,
    source: DecisionSource,
    heuristics: Heuristics,
) -> Decision:
    if not normalize(content):
        return Decision(action=DecisionAction.NONE, source=source, reason="no_rule_matched")

    moderation = analyze_moderation_check(content, heuristics)
    if moderation.matched:
        return Decision(
            action=DecisionAction.SEND,
            source=source,
            rule_id=MODERATION_RULE_ID,
            rule_name=MODERATION_RULE_NAME,
            response=moderation.response,
            reason=moderation.reason,
            keywords=list(moderation.keywords),
            confidence=moderation.confidence,
            checked_rules=0,
        )

    checked = 0
    for index, rule in enumerate(rules or []):
        checked += 1
        match = match_rule(rule, content, channel_id, guild_id)
        if not match.matched:
            continue

        rule_id = rule.id or f"rule_{index + 1}"
        rule_name = rule.name or f"Rule {index + 1}"

        override = ban_appeal_override(rule, content, heuristics)
        if override is not None:
            return Decision(
                action=DecisionAction.SEND,
                source=source,
                rule_id=rule_id,
                rule_name=rule_name,
                response=override,
                reason="ban_appeal_override_to_support",
                keywords=list(match.keywords),
                confidence=max(match.confidence, 0.7),
                checked_rules=checked,
            )

        if should_skip_ban_appeal(rule, content, heuristics):
            logger.debug("Ban-appeal rule %s suppressed for this message", rule_id)
            continue

        return Decision(
            action=DecisionAction.SEND,
            source=source,
            rule_id=rule_id,
            rule_name=rule_name,
            response=rule.response,
            reason=match.reason,
            keywords=list(match.keywords),
            confidence=match.confidence,
            checked_rules=checked,
        )

    return Decision(
        action=DecisionAction.NONE,
        source=source,
        reason="no_rule_matched",
        checked_rules=checked,
    )


def reply_delay(decision: Decision, rules: list[AutoReplyRule], moderation_delay: float) -> float:
    """Seconds the caller should wait before sending ``decision.response``."""
    if decision.rule_id == MODERATION_RULE_ID:
        return moderation_delay
    for index, rule in enumerate(rules):
        if (rule.id or f"rule_{index + 1}") == decision.rule_id:
            return rule.delay if rule.delay is not None else 2.0
    return 2.0
