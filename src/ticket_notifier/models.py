"""Shared data structures used across all components."""

import json
from dataclasses import asdict, dataclass, field
from enum import Enum


class AuthMode(Enum):
    USER = "user"
    BOT = "bot"


class ConnectionState(Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    HANDSHAKING = "handshaking"
    CONNECTED = "connected"
    STOPPED = "stopped"


class TimerType(Enum):
    NONE = "none"
    REGULAR = "regular"
    CLOSING = "closing"


class DecisionAction(Enum):
    SEND = "send"
    NONE = "none"


class DecisionSource(Enum):
    GATEWAY = "gateway"
    POLL = "poll"


@dataclass
class Session:
    """Resumable gateway session. Mutated by the connection and heartbeat only."""

    auth_mode: AuthMode = AuthMode.USER
    session_id: str | None = None
    resume_url: str | None = None
    last_seq: int | None = None
    heartbeat_interval_ms: int = 0
    last_ack_received: bool = True
    alt_mode_tried: bool = False

    def can_resume(self) -> bool:
        return self.session_id is not None and self.last_seq is not None

    def observe_seq(self, seq: int | None) -> None:
        if seq is None:
            return
        if self.last_seq is None or seq > self.last_seq:
            self.last_seq = seq

    def reset(self) -> None:
        self.session_id = None
        self.last_seq = None


@dataclass
class TicketRecord:
    channel_id: str
    channel_name: str
    guild_id: str
    guild_name: str = ""
    created_at: float = 0.0  # epoch seconds
    opener_id: str = ""
    opener_username: str = ""
    last_message: str | None = None
    last_message_at: float | None = None
    first_staff_reply_at: float | None = None  # set once
    last_staff_message_at: float | None = None
    waiting_for_reply: bool = False
    activity_timer_type: TimerType = TimerType.NONE
    closed_at: float | None = None

    def to_dict(self) -> dict:
        data = asdict(self)
        data["activity_timer_type"] = self.activity_timer_type.value
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "TicketRecord":
        data = dict(data)
        data["activity_timer_type"] = TimerType(data.get("activity_timer_type") or "none")
        known = set(cls.__dataclass_fields__)
        return cls(**{k: v for k, v in data.items() if k in known})


@dataclass
class AutoReplyRule:
    id: str = ""
    name: str = ""
    guild_id: str = ""  # empty = any guild
    channel_id: str = ""  # empty = any channel
    include_any: list[str] = field(default_factory=list)
    include_all: list[list[str]] = field(default_factory=list)  # OR of AND-groups
    exclude_any: list[str] = field(default_factory=list)
    response: str = ""
    enabled: bool = True
    delay: float = 2.0  # seconds, applied by the caller
    simple_mention: bool = False


@dataclass
class ModerationVerdict:
    matched: bool
    reason: str
    keywords: list[str] = field(default_factory=list)
    confidence: float = 0.0
    response: str | None = None


@dataclass
class Decision:
    """Outcome of one auto-reply evaluation, populated even when nothing is sent."""

    action: DecisionAction
    source: DecisionSource
    reason: str
    rule_id: str | None = None
    rule_name: str | None = None
    response: str | None = None
    keywords: list[str] = field(default_factory=list)
    confidence: float = 0.0
    checked_rules: int = 0

    def to_dict(self) -> dict:
        return {
            "action": self.action.value,
            "source": self.source.value,
            "ruleId": self.rule_id,
            "ruleName": self.rule_name,
            "response": self.response,
            "reason": self.reason,
            "keywords": list(self.keywords),
            "confidence": self.confidence,
            "checkedRules": self.checked_rules,
        }


@dataclass
class HttpResult:
    ok: bool
    status: int
    body: str = ""

    def json(self):
        return json.loads(self.body or "null")


@dataclass
class Notification:
    text: str
    reply_markup: dict | None = None
    channel_id: str | None = None  # ticket channel this refers to, if any
    chat_id: str | None = None  # overrides the configured chat
    retries: int = 0


@dataclass
class PresenceEntry:
    status: str = "offline"
    activities: list[dict] = field(default_factory=list)
    custom_status: str | None = None
    activity_text: str | None = None
    client_status: dict | None = None

    @classmethod
    def from_payload(cls, presence) -> "PresenceEntry":
        """Normalize a raw presence (dict, bare status string or None)."""
        if not presence:
            return cls()
        if isinstance(presence, str):
            return cls(status=presence)

        activities = presence.get("activities") or []
        custom = next((a for a in activities if int(a.get("type", -1)) == 4), None)
        primary = next((a for a in activities if int(a.get("type", -1)) != 4), None)
        custom_status = None
        if custom:
            custom_status = custom.get("state") or custom.get("name")
        activity_text = None
        if primary:
            parts = [primary.get("name"), primary.get("details"), primary.get("state")]
            activity_text = " - ".join(p for p in parts if p)

        return cls(
            status=presence.get("status") or "offline",
            activities=activities,
            custom_status=str(custom_status)[:120] if custom_status else None,
            activity_text=str(activity_text)[:120] if activity_text else None,
            client_status=presence.get("client_status"),
        )
