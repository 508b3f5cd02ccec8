"""Tests for Telegram message builders, the sender and the outbox."""

import asyncio
import logging

import pytest
import requests

from ticket_notifier.config import Config
from ticket_notifier.models import (
    Decision,
    DecisionAction,
    DecisionSource,
    HttpResult,
    Notification,
    TicketRecord,
)
from ticket_notifier.notifier import (
    MAX_RETRIES,
    TelegramOutbox,
    build_activity,
    build_ai_answered,
    build_auto_reply_sent,
    build_first_message,
    build_forwarded,
    build_ticket_closed,
    build_ticket_created,
    display_name,
    format_duration,
    send_telegram_message,
)


def make_config(**overrides) -> Config:
    """Create a Config with defaults, overriding specific fields."""
    config = Config(guild_id="G1", tg_token="tg-token", tg_chat_id="-100", rate_limit_ms=1000)
    for key, value in overrides.items():
        setattr(config, key, value)
    return config


def make_record(**overrides) -> TicketRecord:
    defaults = dict(channel_id="C1", channel_name="тикет-от-bob", guild_id="G1", created_at=1000.0)
    defaults.update(overrides)
    return TicketRecord(**defaults)


# ── Formatting helpers ─────────────────────────────────────────────


class TestHelpers:
    @pytest.mark.parametrize("seconds,expected", [(42, "42с"), (125, "2м 5с"), (3720, "1ч 2м")])
    def test_format_duration(self, seconds, expected):
        assert format_duration(seconds) == expected

    def test_display_name_prefers_nick(self):
        assert display_name({"nick": "Bobby"}, {"username": "bob", "global_name": "Bob"}) == "Bobby"
        assert display_name(None, {"username": "bob", "global_name": "Bob"}) == "Bob"
        assert display_name(None, {"username": "bob"}) == "bob"
        assert display_name(None, None) == "Неизвестно"


# ── Builders ───────────────────────────────────────────────────────


class TestBuilders:
    def test_ticket_created(self):
        note = build_ticket_created("C1", "тикет-от-<bob>", make_config())

        assert "НОВЫЙ ТИКЕТ" in note.text
        assert "#тикет-от-&lt;bob&gt;" in note.text
        assert "обычный" in note.text
        buttons = note.reply_markup["inline_keyboard"][0]
        assert buttons[0]["callback_data"] == "tsel_C1"
        assert buttons[1]["url"] == "https://discord.com/channels/G1/C1"

    def test_ticket_created_high_priority(self):
        note = build_ticket_created("C1", "тикет-от-bob-срочно", make_config(priority_keywords=["срочно"]))
        assert "ВЫСОКИЙ" in note.text

    def test_first_message_truncates(self):
        message = {"content": "x" * 400, "author": {"username": "bob"}}
        note = build_first_message(make_record(), message, make_config(max_message_length=300))

        assert "НОВОЕ СООБЩЕНИЕ" in note.text
        assert "x" * 300 + "…" in note.text
        assert note.channel_id == "C1"

    def test_forwarded_lists_attachments(self):
        message = {
            "content": "скрин",
            "author": {"username": "bob"},
            "attachments": [{"filename": "a.png", "url": "https://cdn/a.png"}, {"filename": "b.txt"}],
        }
        note = build_forwarded(make_record(), message, make_config())

        assert '<a href="https://cdn/a.png">a.png</a>' in note.text
        assert "📎 b.txt" in note.text

    def test_ticket_closed(self):
        note = build_ticket_closed(make_record(closed_at=1125.0), total_created=10, total_closed=7)
        assert "ТИКЕТ ЗАКРЫТ" in note.text
        assert "2м 5с" in note.text
        assert "🎫 10" in note.text
        assert "🔒 7" in note.text

    @pytest.mark.parametrize("closing,title", [(False, "НЕТ ОТВЕТА"), (True, "МОЖНО ЗАКРЫВАТЬ")])
    def test_activity(self, closing, title):
        note = build_activity(make_record(), closing, 10)
        assert title in note.text
        assert "10 мин." in note.text

    def test_auto_reply_sent(self):
        decision = Decision(
            action=DecisionAction.SEND,
            source=DecisionSource.POLL,
            reason="include_any",
            rule_id="greet",
            rule_name="Greeting",
            confidence=0.6,
        )
        note = build_auto_reply_sent(decision, "bob", "привет")
        assert "<code>greet</code>" in note.text
        assert "<code>0.60</code>" in note.text
        assert "<code>poll</code>" in note.text

    def test_ai_answered_squashes_whitespace(self):
        note = build_ai_answered("C1", "bob", "как\n\nдела?", "")
        assert "как дела?" in note.text
        assert "<i>—</i>" in note.text


# ── Sending ────────────────────────────────────────────────────────


class TestSendTelegramMessage:
    def test_posts_html_message(self, mocker):
        mock_post = mocker.patch("ticket_notifier.notifier.requests.post")
        mock_post.return_value.ok = True
        mock_post.return_value.status_code = 200
        mock_post.return_value.text = "{}"

        result = send_telegram_message("tok", "-100", "<b>hi</b>", {"inline_keyboard": []})

        assert result.ok is True
        url = mock_post.call_args.args[0]
        payload = mock_post.call_args.kwargs["json"]
        assert url == "https://api.telegram.org/bottok/sendMessage"
        assert payload["parse_mode"] == "HTML"
        assert payload["reply_markup"] == {"inline_keyboard": []}

    def test_transport_error(self, mocker):
        mocker.patch("ticket_notifier.notifier.requests.post", side_effect=requests.Timeout("slow"))

        result = send_telegram_message("tok", "-100", "hi")

        assert result.ok is False
        assert result.status == 0


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


class TestTelegramOutbox:
    @pytest.mark.asyncio
    async def test_rate_limit_between_sends(self, mocker):
        mock_send = mocker.patch(
            "ticket_notifier.notifier.send_telegram_message", return_value=HttpResult(ok=True, status=200)
        )
        sleeps = []

        async def fake_sleep(seconds):
            sleeps.append(seconds)

        outbox = TelegramOutbox(make_config(), sleep=fake_sleep, clock=FakeClock())
        outbox.enqueue(Notification(text="one"))
        outbox.enqueue(Notification(text="two"))

        await outbox.drain()

        assert mock_send.call_count == 2
        assert sleeps == [1.0]
        assert outbox.sent_count == 2

    @pytest.mark.asyncio
    async def test_retries_then_drops(self, mocker):
        mock_send = mocker.patch(
            "ticket_notifier.notifier.send_telegram_message",
            return_value=HttpResult(ok=False, status=500, body="oops"),
        )

        async def fake_sleep(seconds):
            return None

        outbox = TelegramOutbox(make_config(rate_limit_ms=0), sleep=fake_sleep)
        outbox.enqueue(Notification(text="doomed"))

        await outbox.drain()

        assert mock_send.call_count == MAX_RETRIES
        assert outbox.failed_count == 1
        assert len(outbox) == 0

    @pytest.mark.asyncio
    async def test_chat_override(self, mocker):
        mock_send = mocker.patch(
            "ticket_notifier.notifier.send_telegram_message", return_value=HttpResult(ok=True, status=200)
        )
        outbox = TelegramOutbox(make_config())
        outbox.enqueue(Notification(text="hi", chat_id="-200"))

        await outbox.drain()

        assert mock_send.call_args.args[1] == "-200"

    @pytest.mark.asyncio
    async def test_unconfigured_drops_silently(self, mocker):
        mock_send = mocker.patch("ticket_notifier.notifier.send_telegram_message")
        outbox = TelegramOutbox(make_config(tg_token=""))
        outbox.enqueue(Notification(text="hi"))

        await outbox.drain()

        mock_send.assert_not_called()
        assert outbox.sent_count == 0

    @pytest.mark.asyncio
    async def test_run_survives_crashing_delivery(self, mocker, caplog):
        mock_send = mocker.patch(
            "ticket_notifier.notifier.send_telegram_message",
            side_effect=[RuntimeError("boom"), HttpResult(ok=True, status=200)],
        )
        outbox = TelegramOutbox(make_config(rate_limit_ms=0))
        outbox.enqueue(Notification(text="first"))
        outbox.enqueue(Notification(text="second"))

        with caplog.at_level(logging.ERROR):
            task = asyncio.create_task(outbox.run())
            for _ in range(100):
                if outbox.sent_count:
                    break
                await asyncio.sleep(0.01)
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)

        assert mock_send.call_count == 2
        assert outbox.failed_count == 1
        assert outbox.sent_count == 1
        assert "Telegram delivery crashed" in caplog.text
