"""Tests for routing gateway dispatches through the handler pipeline."""

import pytest
from conftest import FakeRest, make_config, make_runtime

from ticket_notifier.ai_responder import AIResponder
from ticket_notifier.autoreply import AutoReplier
from ticket_notifier.decision_engine import Heuristics
from ticket_notifier.dispatch import DispatchRouter
from ticket_notifier.hydration import HydrationJobs
from ticket_notifier.models import AutoReplyRule
from ticket_notifier.profanity import ProfanityGuard
from ticket_notifier.tickets import TicketTracker


async def no_sleep(_seconds):
    return None


def make_router(config=None, rest=None):
    runtime = make_runtime(config, rest)
    tracker = TicketTracker(runtime)
    replier = AutoReplier(runtime, sleep=no_sleep)
    hydration = HydrationJobs(runtime, tracker, sleep=no_sleep)
    router = DispatchRouter(
        runtime,
        tracker,
        hydration,
        replier,
        AIResponder(runtime),
        ProfanityGuard(runtime),
        backfill_delay=0,
        sleep=no_sleep,
    )
    return router, runtime, tracker


def greeting_config(**overrides):
    rule = AutoReplyRule(id="greet", name="Greeting", include_any=["привет"], response="Здравствуйте!", delay=0)
    return make_config(auto_replies=[rule], **overrides)


def message_payload(content="привет", *, message_id="M1", channel_id="C5", author_id="U1", bot=False, roles=()):
    return {
        "id": message_id,
        "channel_id": channel_id,
        "guild_id": "G1",
        "content": content,
        "author": {"id": author_id, "username": "bob", "bot": bot},
        "member": {"roles": list(roles)},
    }


# ── Message pipeline ───────────────────────────────────────────────


class TestMessagePipeline:
    @pytest.mark.asyncio
    async def test_auto_reply_sent_once_per_message(self):
        router, runtime, _ = make_router(greeting_config())

        await router.dispatch("MESSAGE_CREATE", message_payload())
        await router.dispatch("MESSAGE_CREATE", message_payload())
        await runtime.tasks.wait_idle()

        assert runtime.rest.sent == [("C5", "Здравствуйте!", "M1")]
        assert "M1" in runtime.processed_messages
        assert any("Авто-ответ отправлен" in t for t in runtime.outbox.texts)

    @pytest.mark.asyncio
    async def test_reply_echo_is_remembered(self):
        router, runtime, _ = make_router(greeting_config())

        await router.dispatch("MESSAGE_CREATE", message_payload())
        await runtime.tasks.wait_idle()

        assert "9000" in runtime.sent_by_self

    @pytest.mark.asyncio
    async def test_bot_and_self_messages_not_answered(self):
        router, runtime, _ = make_router(greeting_config())
        runtime.self_user_id = "SELF"

        await router.dispatch("MESSAGE_CREATE", message_payload(bot=True))
        await router.dispatch("MESSAGE_CREATE", message_payload(message_id="M2", author_id="SELF"))
        await runtime.tasks.wait_idle()

        assert runtime.rest.sent == []

    @pytest.mark.asyncio
    async def test_excluded_channel(self):
        router, runtime, _ = make_router(greeting_config(auto_reply_exclude_channels=["C5"]))

        await router.dispatch("MESSAGE_CREATE", message_payload())
        await runtime.tasks.wait_idle()

        assert runtime.rest.sent == []
        assert "M1" not in runtime.processed_messages

    @pytest.mark.asyncio
    async def test_no_match_sends_nothing(self):
        router, runtime, _ = make_router(greeting_config())

        await router.dispatch("MESSAGE_CREATE", message_payload("как задонатить"))
        await runtime.tasks.wait_idle()

        assert runtime.rest.sent == []

    @pytest.mark.asyncio
    async def test_message_member_is_cached(self):
        router, runtime, _ = make_router()

        await router.dispatch("MESSAGE_CREATE", message_payload(roles=["R1"]))

        assert runtime.caches.members["U1"]["roles"] == ["R1"]

    @pytest.mark.asyncio
    async def test_ticket_message_reaches_tracker(self):
        router, runtime, _ = make_router()
        await router.dispatch("CHANNEL_CREATE", {"id": "T1", "guild_id": "G1", "name": "тикет-от-bob", "type": 0})

        await router.dispatch("MESSAGE_CREATE", message_payload("помогите", channel_id="T1"))
        await runtime.tasks.wait_idle()

        assert runtime.registry.get("T1").last_message == "помогите"

    @pytest.mark.asyncio
    async def test_broken_heuristics_do_not_stop_ticket_updates(self):
        router, runtime, _ = make_router(greeting_config(heuristics=Heuristics(check_context="(проверк")))
        await router.dispatch("CHANNEL_CREATE", {"id": "T1", "guild_id": "G1", "name": "тикет-от-bob", "type": 0})

        await router.dispatch("MESSAGE_CREATE", message_payload("привет, помогите", channel_id="T1"))
        await runtime.tasks.wait_idle()

        assert runtime.rest.sent == []
        assert runtime.registry.get("T1").last_message == "привет, помогите"

    @pytest.mark.asyncio
    async def test_malformed_dispatch_dropped(self):
        router, runtime, _ = make_router(greeting_config())

        await router.dispatch("MESSAGE_CREATE", {"channel_id": "C5"})
        await router.dispatch("CHANNEL_CREATE", "not an object")
        await router.dispatch("SOMETHING_NEW", {"x": 1})

        assert runtime.rest.sent == []


# ── Session and guild snapshot ─────────────────────────────────────


class TestSessionEvents:
    @pytest.mark.asyncio
    async def test_ready_records_self_and_backfills(self):
        rest = FakeRest({
            "/guilds/G1/channels": [{"id": "T1", "type": 0, "name": "тикет-от-bob"}],
            "/guilds/G1/roles": [{"id": "R1", "name": "Support"}],
        })
        router, runtime, _ = make_router(rest=rest)

        await router.dispatch("READY", {"session_id": "s", "user": {"id": "SELF", "username": "helper"}})
        await runtime.tasks.wait_idle()

        assert runtime.self_user_id == "SELF"
        assert runtime.self_username == "helper"
        assert runtime.channels_scanned is True
        assert "T1" in runtime.registry
        assert "R1" in runtime.caches.roles

    @pytest.mark.asyncio
    async def test_guild_snapshot_scans_once(self):
        router, runtime, _ = make_router()
        snapshot = {
            "id": "G1",
            "name": "Server",
            "roles": [{"id": "R1"}],
            "members": [{"user": {"id": "U1"}, "roles": []}],
            "presences": [{"user": {"id": "U1"}, "status": "idle"}],
            "channels": [{"id": "T1", "type": 0, "name": "тикет-от-bob"}],
        }

        await router.dispatch("GUILD_CREATE", snapshot)
        await router.dispatch("GUILD_CREATE", {**snapshot, "channels": [{"id": "T2", "type": 0, "name": "тикет-от-eve"}]})
        await runtime.tasks.wait_idle()

        assert "T1" in runtime.registry
        assert "T2" not in runtime.registry
        assert runtime.caches.presences["U1"].status == "idle"
        assert "R1" in runtime.caches.roles
        assert "members:updated" in runtime.emit._emit.names()
        runtime.members_throttle.cancel()

    @pytest.mark.asyncio
    async def test_other_guild_snapshot_ignored(self):
        router, runtime, _ = make_router()

        await router.dispatch("GUILD_CREATE", {"id": "G2", "channels": [{"id": "T1", "type": 0, "name": "тикет-от-bob"}]})

        assert runtime.channels_scanned is False
        assert len(runtime.registry) == 0


# ── Members, presences and roles ───────────────────────────────────


class TestCacheEvents:
    @pytest.mark.asyncio
    async def test_member_lifecycle(self):
        router, runtime, _ = make_router()

        await router.dispatch("GUILD_MEMBER_ADD", {"guild_id": "G1", "user": {"id": "U1"}, "roles": []})
        await router.dispatch("GUILD_MEMBER_UPDATE", {"guild_id": "G1", "user": {"id": "U1"}, "nick": "Bobby"})
        assert runtime.caches.members["U1"]["nick"] == "Bobby"
        assert runtime.caches.members["U1"]["roles"] == []

        await router.dispatch("GUILD_MEMBER_REMOVE", {"guild_id": "G1", "user": {"id": "U1"}})
        assert "U1" not in runtime.caches.members
        runtime.members_throttle.cancel()

    @pytest.mark.asyncio
    async def test_member_without_user_ignored(self):
        router, runtime, _ = make_router()

        await router.dispatch("GUILD_MEMBER_ADD", {"guild_id": "G1", "roles": []})

        assert runtime.caches.members == {}

    @pytest.mark.asyncio
    async def test_presence_update(self):
        router, runtime, _ = make_router()

        await router.dispatch("PRESENCE_UPDATE", {
            "guild_id": "G1",
            "user": {"id": "U1"},
            "status": "dnd",
            "activities": [{"type": 4, "state": "busy"}],
        })

        entry = runtime.caches.presences["U1"]
        assert entry.status == "dnd"
        assert entry.custom_status == "busy"
        runtime.members_throttle.cancel()

    @pytest.mark.asyncio
    async def test_role_events(self):
        router, runtime, _ = make_router()

        await router.dispatch("GUILD_ROLE_CREATE", {"guild_id": "G1", "role": {"id": "R1", "name": "A"}})
        await router.dispatch("GUILD_ROLE_UPDATE", {"guild_id": "G1", "role": {"id": "R1", "name": "B"}})
        assert runtime.caches.roles["R1"]["name"] == "B"

        await router.dispatch("GUILD_ROLE_DELETE", {"guild_id": "G1", "role_id": "R1"})
        assert "R1" not in runtime.caches.roles

    @pytest.mark.asyncio
    async def test_member_list_page(self):
        router, runtime, _ = make_router()

        await router.dispatch("GUILD_MEMBER_LIST_UPDATE", {
            "guild_id": "G1",
            "ops": [{"op": "SYNC", "items": [
                {"member": {"user": {"id": "U1"}, "presence": {"status": "online"}}},
            ]}],
        })

        assert "U1" in runtime.caches.members
        assert runtime.caches.presences["U1"].status == "online"
        runtime.members_throttle.cancel()
