"""Tests for auto-reply delivery."""

import pytest
from conftest import FakeRest, make_config, make_runtime

from ticket_notifier.autoreply import AutoReplier
from ticket_notifier.models import AutoReplyRule, DecisionAction, DecisionSource


class SleepRecorder:
    def __init__(self):
        self.calls = []

    async def __call__(self, seconds):
        self.calls.append(seconds)


def make_replier(rules, rest=None, **overrides):
    runtime = make_runtime(make_config(auto_replies=rules, **overrides), rest)
    sleep = SleepRecorder()
    return AutoReplier(runtime, sleep=sleep), runtime, sleep


class TestAutoReplier:
    @pytest.mark.asyncio
    async def test_rule_delay_applied_before_send(self):
        rule = AutoReplyRule(id="greet", name="Greeting", include_any=["привет"], response="Здравствуйте!", delay=4)
        replier, runtime, sleep = make_replier([rule])

        decision = replier.process("M1", "C1", "G1", "привет", "bob", DecisionSource.GATEWAY)
        await runtime.tasks.wait_idle()

        assert decision.action is DecisionAction.SEND
        assert sleep.calls == [4]
        assert runtime.rest.sent == [("C1", "Здравствуйте!", "M1")]
        assert "Авто-ответ отправлен" in runtime.outbox.texts[0]

    @pytest.mark.asyncio
    async def test_moderation_reply_uses_configured_delay(self):
        replier, runtime, sleep = make_replier([], moderation_reply_delay=1.5)

        decision = replier.process(
            "M1", "C1", "G1", "проверка анидеск модератор не отвечает уже час, что делать?", "bob",
            DecisionSource.POLL,
        )
        await runtime.tasks.wait_idle()

        assert decision.rule_id == "moderation_check"
        assert sleep.calls == [1.5]
        assert len(runtime.rest.sent) == 1

    @pytest.mark.asyncio
    async def test_failed_send_not_reported(self):
        rest = FakeRest()
        rest.fail_sends = True
        rule = AutoReplyRule(id="greet", include_any=["привет"], response="Здравствуйте!", delay=0)
        replier, runtime, sleep = make_replier([rule], rest=rest)

        replier.process("M1", "C1", "G1", "привет", "bob", DecisionSource.GATEWAY)
        await runtime.tasks.wait_idle()

        assert sleep.calls == []
        assert runtime.outbox.items == []

    @pytest.mark.asyncio
    async def test_no_match_schedules_nothing(self):
        rule = AutoReplyRule(id="greet", include_any=["привет"], response="Здравствуйте!")
        replier, runtime, _ = make_replier([rule])

        decision = replier.process("M1", "C1", "G1", "пока", "bob", DecisionSource.GATEWAY)

        assert decision.action is DecisionAction.NONE
        assert len(runtime.tasks) == 0
