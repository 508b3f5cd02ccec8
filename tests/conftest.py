"""Shared fakes for components that sit on top of :class:`Runtime`."""

import itertools
import json

import pytest

from ticket_notifier.archive import TicketRegistry
from ticket_notifier.config import Config
from ticket_notifier.models import HttpResult
from ticket_notifier.runtime import Runtime


class FakeRest:
    """In-memory stand-in for :class:`RestClient`.

    ``responses`` maps a GET path to decoded JSON (or an ``HttpResult``);
    anything missing behaves like a 404.
    """

    def __init__(self, responses=None, *, bot=False):
        self.responses = dict(responses or {})
        self.bot = bot
        self.sent: list[tuple[str, str, str | None]] = []
        self.requested: list[str] = []
        self.fail_sends = False
        self._ids = itertools.count(9000)

    async def get(self, path):
        self.requested.append(path)
        value = self.responses.get(path)
        if isinstance(value, HttpResult):
            return value
        if value is None:
            return HttpResult(ok=False, status=404, body="")
        return HttpResult(ok=True, status=200, body=json.dumps(value))

    async def get_json(self, path):
        res = await self.get(path)
        return res.json() if res.ok else None

    async def fetch_messages(self, channel_id, limit=100):
        data = await self.get_json(f"/channels/{channel_id}/messages?limit={limit}")
        return data if isinstance(data, list) else []

    async def send_message(self, channel_id, content, reply_to=None):
        self.sent.append((channel_id, content, reply_to))
        if self.fail_sends:
            return HttpResult(ok=False, status=500, body="boom")
        return HttpResult(ok=True, status=200, body=json.dumps({"id": str(next(self._ids))}))


class FakeOutbox:
    def __init__(self):
        self.items = []

    def enqueue(self, notification):
        self.items.append(notification)

    @property
    def texts(self):
        return [n.text for n in self.items]


class FakeArchive:
    def __init__(self):
        self.closed = []
        self.messages = {}

    def save_closed_ticket(self, record):
        self.closed.append(record)

    def save_ticket_messages(self, channel_id, messages):
        self.messages[channel_id] = list(messages)


class EmitRecorder:
    def __init__(self):
        self.events: list[tuple[str, dict]] = []

    def __call__(self, event, payload):
        self.events.append((event, payload))

    def names(self):
        return [name for name, _ in self.events]


def make_config(**overrides) -> Config:
    """Create a Config for guild G1 with a staff role, overriding specific fields."""
    config = Config(
        discord_token="user-token",
        guild_id="G1",
        staff_role_ids=["STAFF"],
        ticket_prefixes=["тикет-от"],
    )
    for key, value in overrides.items():
        setattr(config, key, value)
    return config


def make_runtime(config=None, rest=None, **kwargs) -> Runtime:
    return Runtime(
        config or make_config(),
        rest or FakeRest(),
        kwargs.pop("outbox", None) or FakeOutbox(),
        kwargs.pop("archive", None) or FakeArchive(),
        registry=kwargs.pop("registry", None) or TicketRegistry(),
        emit=kwargs.pop("emit", None) or EmitRecorder(),
        **kwargs,
    )


@pytest.fixture()
def emitted():
    return EmitRecorder()


@pytest.fixture()
def runtime(emitted):
    return make_runtime(emit=emitted)
