"""Configuration loading and validation for ticket-notifier."""

import logging
import os
import re
from dataclasses import dataclass, field, fields

import yaml

from ticket_notifier.decision_engine import PATTERN_FIELDS, Heuristics
from ticket_notifier.models import AutoReplyRule

logger = logging.getLogger(__name__)

DEFAULT_SYSTEM_PROMPT = """\
You are Neuro, a support assistant for a game server community. Answer the
player's question briefly and politely in the language they wrote in. If you
do not know the answer, tell them to contact support.
"""

# Mild words that must never count as insults.
DEFAULT_PROFANITY_WHITELIST = (
    "обиженк", "душнил", "бедн", "бедолаг", "бот", "нытик",
    "сынок", "чушпан", "нубас", "нуб", "шкила", "школьник",
    "изич", "езз", "балбес", "шизик", "задрот", "противн",
)

KNOWN_KEYS = {
    "discord_token",
    "discord_bot_token",
    "mode_fallback",
    "lazy_subscriptions",
    "guild_id",
    "tickets_category_id",
    "ticket_prefixes",
    "staff_role_ids",
    "closing_phrases",
    "activity_check_min",
    "closing_check_min",
    "auto_greet_enabled",
    "auto_greet_text",
    "auto_greet_role_ids",
    "auto_greet_delay",
    "auto_replies",
    "auto_reply_exclude_channels",
    "moderation_reply_delay",
    "poll_interval",
    "poll_extra_channels",
    "tg_token",
    "tg_chat_id",
    "rate_limit_ms",
    "max_message_length",
    "priority_keywords",
    "ai_api_keys",
    "ai_url",
    "ai_model",
    "ai_timeout",
    "ai_guild_ids",
    "ai_excluded_channels",
    "system_prompt",
    "profanity_roots",
    "profanity_whitelist",
    "profanity_ping_role_id",
    "profanity_cooldown",
    "state_path",
    "archive_path",
    "flush_interval",
    "heuristics",
}

# Credentials may live in the environment instead of the config file.
ENV_OVERRIDES = {
    "DISCORD_TOKEN": "discord_token",
    "DISCORD_BOT_TOKEN": "discord_bot_token",
    "TELEGRAM_TOKEN": "tg_token",
}

_LIST_KEYS = {
    "ticket_prefixes",
    "staff_role_ids",
    "closing_phrases",
    "auto_reply_exclude_channels",
    "poll_extra_channels",
    "priority_keywords",
    "ai_api_keys",
    "ai_guild_ids",
    "ai_excluded_channels",
    "profanity_roots",
    "profanity_whitelist",
    "auto_greet_role_ids",
}

_BOOL_KEYS = ("mode_fallback", "lazy_subscriptions", "auto_greet_enabled")


@dataclass
class Config:
    discord_token: str = ""
    discord_bot_token: str = ""
    mode_fallback: bool = False
    lazy_subscriptions: bool = False
    guild_id: str = ""
    tickets_category_id: str = ""
    ticket_prefixes: list[str] = field(default_factory=lambda: ["тикет-от"])
    staff_role_ids: list[str] = field(default_factory=list)
    closing_phrases: list[str] = field(default_factory=lambda: ["остались вопросы"])
    activity_check_min: float = 10
    closing_check_min: float = 15
    auto_greet_enabled: bool = False
    auto_greet_text: str = ""
    auto_greet_role_ids: list[str] = field(default_factory=list)
    auto_greet_delay: float = 3
    auto_replies: list[AutoReplyRule] = field(default_factory=list)
    auto_reply_exclude_channels: list[str] = field(default_factory=list)
    moderation_reply_delay: float = 2
    poll_interval: float = 5
    poll_extra_channels: list[str] = field(default_factory=list)
    tg_token: str = ""
    tg_chat_id: str = ""
    rate_limit_ms: int = 1500
    max_message_length: int = 300
    priority_keywords: list[str] = field(
        default_factory=lambda: ["срочно", "urgent", "баг", "bug", "оплата", "payment", "помогите", "help"]
    )
    ai_api_keys: list[str] = field(default_factory=list)
    ai_url: str = "https://openrouter.ai/api/v1/chat/completions"
    ai_model: str = "stepfun/step-3.5-flash:free"
    ai_timeout: float = 30
    ai_guild_ids: list[str] = field(default_factory=list)
    ai_excluded_channels: list[str] = field(default_factory=list)
    system_prompt: str = DEFAULT_SYSTEM_PROMPT
    profanity_roots: list[str] = field(default_factory=list)
    profanity_whitelist: list[str] = field(default_factory=lambda: list(DEFAULT_PROFANITY_WHITELIST))
    profanity_ping_role_id: str = ""
    profanity_cooldown: float = 30
    state_path: str = "data/state.json"
    archive_path: str = "data/archive.sqlite3"
    flush_interval: float = 5
    heuristics: Heuristics = field(default_factory=Heuristics)

    @property
    def has_bot_token(self) -> bool:
        return bool(self.discord_bot_token)

    @property
    def gateway_token(self) -> str:
        return self.discord_bot_token or self.discord_token


def _as_list(value, field_name: str) -> list[str]:
    """Accept a list or a comma-separated string; always return stripped strings."""
    if value is None:
        return []
    if isinstance(value, str):
        return [part.strip() for part in value.split(",") if part.strip()]
    if not isinstance(value, list):
        raise ValueError(f"'{field_name}' must be a list or a comma-separated string")
    return [str(item).strip() for item in value if str(item).strip()]


def _parse_rule(entry, index: int) -> AutoReplyRule:
    if not isinstance(entry, dict):
        raise ValueError(f"auto_replies[{index}] must be a mapping")
    if "response" not in entry:
        raise ValueError(f"auto_replies[{index}] is missing required field 'response'")

    include_all = entry.get("include_all") or []
    if not isinstance(include_all, list) or not all(isinstance(g, list) for g in include_all):
        raise ValueError(f"auto_replies[{index}].include_all must be a list of lists")

    delay = entry.get("delay", 2)
    if not isinstance(delay, (int, float)) or delay < 0:
        raise ValueError(f"auto_replies[{index}].delay must be a non-negative number")

    return AutoReplyRule(
        id=str(entry.get("id") or ""),
        name=str(entry.get("name") or ""),
        guild_id=str(entry.get("guild_id") or ""),
        channel_id=str(entry.get("channel_id") or ""),
        include_any=_as_list(entry.get("include_any"), f"auto_replies[{index}].include_any"),
        include_all=[[str(t) for t in group] for group in include_all],
        exclude_any=_as_list(entry.get("exclude_any"), f"auto_replies[{index}].exclude_any"),
        response=str(entry["response"]),
        enabled=bool(entry.get("enabled", True)),
        delay=delay,
        simple_mention=bool(entry.get("simple_mention", False)),
    )


def _parse_heuristics(raw) -> Heuristics:
    if not isinstance(raw, dict):
        raise ValueError("'heuristics' must be a mapping")
    valid = {f.name for f in fields(Heuristics)}
    overrides = {}
    for key, value in raw.items():
        if key not in valid:
            logger.warning("Unknown heuristics key '%s'; ignoring", key)
            continue
        if key == "ban_appeal_markers":
            overrides[key] = tuple(_as_list(value, "heuristics.ban_appeal_markers"))
            continue
        if not isinstance(value, str):
            raise ValueError(f"heuristics.{key} must be a string, got {type(value).__name__}")
        if key in PATTERN_FIELDS:
            try:
                re.compile(value)
            except re.error as exc:
                raise ValueError(f"heuristics.{key} is not a valid regular expression: {exc}") from exc
        overrides[key] = value
    return Heuristics(**overrides)


def _validate_config(config: Config) -> None:
    """Validate config values, raising ValueError on invalid fields."""
    for name in ("activity_check_min", "closing_check_min", "poll_interval", "flush_interval", "ai_timeout"):
        value = getattr(config, name)
        if not isinstance(value, (int, float)):
            raise ValueError(f"{name} must be a number, got {type(value).__name__}")
        if value <= 0:
            raise ValueError(f"{name} must be positive, got {value}")

    for name in ("moderation_reply_delay", "profanity_cooldown", "rate_limit_ms", "auto_greet_delay"):
        value = getattr(config, name)
        if not isinstance(value, (int, float)) or value < 0:
            raise ValueError(f"{name} must be a non-negative number, got {value!r}")

    for name in _BOOL_KEYS:
        value = getattr(config, name)
        if not isinstance(value, bool):
            raise ValueError(f"{name} must be true or false, got {value!r}")

    if not config.ticket_prefixes:
        raise ValueError("ticket_prefixes must not be empty")


def load_config(path: str | None = None) -> Config:
    """Load configuration from a YAML file.

    Config path resolution order:
    1. Explicit path argument
    2. TICKET_NOTIFIER_CONFIG environment variable
    3. ~/.config/ticket-notifier/config.yaml
    """
    if path is None:
        path = os.environ.get("TICKET_NOTIFIER_CONFIG")
    if path is None:
        path = os.path.expanduser("~/.config/ticket-notifier/config.yaml")

    with open(path, encoding="utf-8") as f:
        raw = yaml.safe_load(f)

    if raw is None:
        raw = {}

    if not isinstance(raw, dict):
        raise ValueError(f"Config file must contain a YAML mapping, got {type(raw).__name__}")

    for key in raw:
        if key not in KNOWN_KEYS:
            logger.warning("Unknown config key '%s'; ignoring", key)

    config = Config()

    for key, value in raw.items():
        if key not in KNOWN_KEYS or key in ("auto_replies", "heuristics"):
            continue
        if key in _LIST_KEYS:
            setattr(config, key, _as_list(value, key))
        elif isinstance(getattr(config, key), str):
            setattr(config, key, "" if value is None else str(value))
        else:
            setattr(config, key, value)

    if "auto_replies" in raw:
        raw_rules = raw["auto_replies"] or []
        if not isinstance(raw_rules, list):
            raise ValueError("'auto_replies' must be a list")
        config.auto_replies = [_parse_rule(entry, i) for i, entry in enumerate(raw_rules)]

    if "heuristics" in raw:
        config.heuristics = _parse_heuristics(raw["heuristics"])

    for env_name, attr in ENV_OVERRIDES.items():
        if os.environ.get(env_name):
            setattr(config, attr, os.environ[env_name])
    if os.environ.get("AI_API_KEY"):
        config.ai_api_keys = _as_list(os.environ["AI_API_KEY"], "AI_API_KEY")

    _validate_config(config)

    return config
