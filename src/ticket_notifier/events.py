"""Typed gateway dispatch events.

Each dispatch name the notifier cares about maps to one dataclass with the
fields its handlers read. Anything else becomes :class:`UnknownEvent`.
"""

from collections.abc import Callable
from dataclasses import dataclass, field


def _str(value) -> str:
    return "" if value is None else str(value)


@dataclass
class Ready:
    session_id: str
    resume_url: str
    user_id: str
    username: str


@dataclass
class Resumed:
    pass


@dataclass
class GuildSnapshot:
    guild_id: str
    name: str
    roles: list[dict] = field(default_factory=list)
    members: list[dict] = field(default_factory=list)
    presences: list[dict] = field(default_factory=list)
    channels: list[dict] = field(default_factory=list)


@dataclass
class ChannelCreated:
    channel_id: str
    guild_id: str
    name: str
    parent_id: str
    type: int


@dataclass
class ChannelDeleted:
    channel_id: str
    guild_id: str


@dataclass
class MessageCreated:
    message_id: str
    channel_id: str
    guild_id: str
    content: str
    author: dict
    member: dict | None
    referenced_message: dict | None
    raw: dict

    @property
    def author_id(self) -> str:
        return _str(self.author.get("id"))

    @property
    def author_is_bot(self) -> bool:
        return bool(self.author.get("bot"))

    @property
    def username(self) -> str:
        return self.author.get("username") or self.author.get("global_name") or self.author_id

    @property
    def mention_roles(self) -> list[str]:
        return [_str(r) for r in self.raw.get("mention_roles") or []]


@dataclass
class MemberAdded:
    guild_id: str
    member: dict


@dataclass
class MemberUpdated:
    guild_id: str
    member: dict


@dataclass
class MemberRemoved:
    guild_id: str
    user_id: str


@dataclass
class PresenceUpdated:
    guild_id: str
    user_id: str
    presence: dict


@dataclass
class RoleCreated:
    guild_id: str
    role: dict


@dataclass
class RoleUpdated:
    guild_id: str
    role: dict


@dataclass
class RoleDeleted:
    guild_id: str
    role_id: str


@dataclass
class MemberListPage:
    guild_id: str
    members: list[dict]


@dataclass
class UnknownEvent:
    name: str
    data: object = None


GatewayEvent = (
    Ready | Resumed | GuildSnapshot | ChannelCreated | ChannelDeleted | MessageCreated
    | MemberAdded | MemberUpdated | MemberRemoved | PresenceUpdated
    | RoleCreated | RoleUpdated | RoleDeleted | MemberListPage | UnknownEvent
)


def _ready(d: dict) -> Ready:
    user = d.get("user") or {}
    return Ready(
        session_id=_str(d.get("session_id")),
        resume_url=_str(d.get("resume_gateway_url")),
        user_id=_str(user.get("id")),
        username=_str(user.get("username")),
    )


def _guild_snapshot(d: dict) -> GuildSnapshot:
    return GuildSnapshot(
        guild_id=_str(d.get("id")),
        name=_str(d.get("name")),
        roles=list(d.get("roles") or []),
        members=list(d.get("members") or []),
        presences=list(d.get("presences") or []),
        channels=list(d.get("channels") or []),
    )


def _channel_created(d: dict) -> ChannelCreated:
    return ChannelCreated(
        channel_id=_str(d["id"]),
        guild_id=_str(d.get("guild_id")),
        name=_str(d.get("name")),
        parent_id=_str(d.get("parent_id")),
        type=int(d.get("type") or 0),
    )


def _message_created(d: dict) -> MessageCreated:
    return MessageCreated(
        message_id=_str(d["id"]),
        channel_id=_str(d.get("channel_id")),
        guild_id=_str(d.get("guild_id")),
        content=d.get("content") or "",
        author=d.get("author") or {},
        member=d.get("member"),
        referenced_message=d.get("referenced_message"),
        raw=d,
    )


def _member_list_page(d: dict) -> MemberListPage:
    members = []
    for op in d.get("ops") or []:
        items = op.get("items") or ([op["item"]] if op.get("item") else [])
        for item in items:
            member = (item or {}).get("member")
            if member and (member.get("user") or {}).get("id"):
                members.append(member)
    return MemberListPage(guild_id=_str(d.get("guild_id")), members=members)


_PARSERS: dict[str, Callable[[dict], GatewayEvent]] = {
    "READY": _ready,
    "RESUMED": lambda d: Resumed(),
    "GUILD_CREATE": _guild_snapshot,
    "CHANNEL_CREATE": _channel_created,
    "CHANNEL_DELETE": lambda d: ChannelDeleted(channel_id=_str(d["id"]), guild_id=_str(d.get("guild_id"))),
    "MESSAGE_CREATE": _message_created,
    "GUILD_MEMBER_ADD": lambda d: MemberAdded(guild_id=_str(d.get("guild_id")), member=d),
    "GUILD_MEMBER_UPDATE": lambda d: MemberUpdated(guild_id=_str(d.get("guild_id")), member=d),
    "GUILD_MEMBER_REMOVE": lambda d: MemberRemoved(
        guild_id=_str(d.get("guild_id")), user_id=_str((d.get("user") or {}).get("id"))
    ),
    "PRESENCE_UPDATE": lambda d: PresenceUpdated(
        guild_id=_str(d.get("guild_id")), user_id=_str((d.get("user") or {}).get("id")), presence=d
    ),
    "GUILD_ROLE_CREATE": lambda d: RoleCreated(guild_id=_str(d.get("guild_id")), role=d.get("role") or {}),
    "GUILD_ROLE_UPDATE": lambda d: RoleUpdated(guild_id=_str(d.get("guild_id")), role=d.get("role") or {}),
    "GUILD_ROLE_DELETE": lambda d: RoleDeleted(guild_id=_str(d.get("guild_id")), role_id=_str(d.get("role_id"))),
    "GUILD_MEMBER_LIST_UPDATE": _member_list_page,
}


def parse_dispatch(name: str, data) -> GatewayEvent:
    """Turn a raw dispatch into its typed variant.

    Raises ``KeyError``/``TypeError``/``ValueError`` when a known event is
    missing a required field; unknown names never raise.
    """
    parser = _PARSERS.get(name)
    if parser is None:
        return UnknownEvent(name=name, data=data)
    if not isinstance(data, dict):
        if name == "RESUMED":
            return Resumed()
        raise TypeError(f"{name} payload must be an object, got {type(data).__name__}")
    return parser(data)
