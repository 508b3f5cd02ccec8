"""Telegram mirror: message builders, the Bot API sender and the outbox."""

import asyncio
import html
import logging
import time
from datetime import datetime

import requests

from ticket_notifier.config import Config
from ticket_notifier.models import Decision, HttpResult, Notification, TicketRecord

logger = logging.getLogger(__name__)

TELEGRAM_API = "https://api.telegram.org/bot{token}"
MAX_RETRIES = 3


def escape(text) -> str:
    return html.escape(str(text or ""), quote=False)


def truncate(text: str, limit: int) -> str:
    return text if len(text) <= limit else text[:limit].rstrip() + "…"


def format_duration(seconds: float) -> str:
    s = int(seconds)
    if s < 60:
        return f"{s}с"
    m = s // 60
    if m < 60:
        return f"{m}м {s % 60}с"
    return f"{m // 60}ч {m % 60}м"


def _now() -> str:
    return datetime.now().strftime("%H:%M")


def channel_link(guild_id: str, channel_id: str) -> str:
    return f"https://discord.com/channels/{guild_id}/{channel_id}"


def is_high_priority(name: str, content: str, keywords: list[str]) -> bool:
    haystack = f"{name} {content}".lower()
    return any(k.lower() in haystack for k in keywords)


def _priority_line(high: bool) -> str:
    return "🔴  <b>Приоритет:</b>  ВЫСОКИЙ ⚡" if high else "🟢  <b>Приоритет:</b>  обычный"


def display_name(member: dict | None, author: dict | None) -> str:
    if member and member.get("nick"):
        return member["nick"]
    if author and author.get("global_name"):
        return author["global_name"]
    return (author or {}).get("username") or "Неизвестно"


# -- builders -----------------------------------------------------------------


def build_ticket_created(channel_id: str, channel_name: str, config: Config) -> Notification:
    high = is_high_priority(channel_name, "", config.priority_keywords)
    text = "\n".join([
        "🎫  <b>НОВЫЙ ТИКЕТ</b>",
        "",
        f"📋  <b>Канал:</b>   <code>#{escape(channel_name)}</code>",
        _priority_line(high),
        f"🕐  <b>Время:</b>   {_now()}",
        "",
        "<i>💡 Тикет ожидает ответа</i>",
    ])
    keyboard = {"inline_keyboard": [[
        {"text": "✅ Взять тикет", "callback_data": f"tsel_{channel_id}"},
        {"text": "🔗 Открыть в Discord", "url": channel_link(config.guild_id, channel_id)},
    ]]}
    return Notification(text=text, reply_markup=keyboard, channel_id=channel_id)


def build_first_message(record: TicketRecord, message: dict, config: Config) -> Notification:
    author = message.get("author") or {}
    content = message.get("content") or "(вложение без текста)"
    high = is_high_priority(record.channel_name, content, config.priority_keywords)
    text = "\n".join([
        "💬  <b>НОВОЕ СООБЩЕНИЕ</b>",
        "",
        f"📋  <b>Тикет:</b>   <code>#{escape(record.channel_name)}</code>",
        f"👤  <b>Игрок:</b>   {escape(display_name(message.get('member'), author))}"
        f"  <i>(@{escape(author.get('username') or 'Неизвестно')})</i>",
        _priority_line(high),
        f"🕐  <b>Время:</b>   {_now()}",
        "",
        "💌  <b>Сообщение:</b>",
        f"<blockquote>{escape(truncate(content, config.max_message_length))}</blockquote>",
    ])
    keyboard = {"inline_keyboard": [[
        {"text": "✅ Взять тикет", "callback_data": f"tsel_{record.channel_id}"},
        {"text": "🔗 Перейти в Discord", "url": channel_link(record.guild_id, record.channel_id)},
    ]]}
    return Notification(text=text, reply_markup=keyboard, channel_id=record.channel_id)


def build_forwarded(record: TicketRecord, message: dict, config: Config) -> Notification:
    author = message.get("author") or {}
    lines = [
        f"┌─── 💬 <b>#{escape(record.channel_name)}</b> ───",
        f"│ 👤 <b>{escape(display_name(message.get('member'), author))}</b>"
        f" <i>(@{escape(author.get('username') or 'Неизвестно')})</i>",
        f"│ 🕐 {_now()}",
        "├───────────────",
    ]
    if message.get("content"):
        lines.append(f"│ {escape(truncate(message['content'], config.max_message_length))}")
    for att in message.get("attachments") or []:
        name = escape(att.get("filename") or "файл")
        url = att.get("url") or att.get("proxy_url")
        lines.append(f'│ 📎 <a href="{url}">{name}</a>' if url else f"│ 📎 {name}")
    lines.append("└───────────────")
    return Notification(text="\n".join(lines), channel_id=record.channel_id)


def build_ticket_closed(record: TicketRecord, total_created: int, total_closed: int) -> Notification:
    lifetime = (record.closed_at or time.time()) - record.created_at
    text = "\n".join([
        "🔒  <b>ТИКЕТ ЗАКРЫТ</b>",
        "",
        f"📋  <b>Канал:</b>   <code>#{escape(record.channel_name)}</code>",
        f"⏱  <b>Жил:</b>     {format_duration(max(lifetime, 0))}",
        f"🕐  <b>Закрыт:</b>  {_now()}",
        "",
        f"📊  <b>Всего:</b>  🎫 {total_created}  ·  🔒 {total_closed}",
    ])
    return Notification(text=text)


def build_activity(record: TicketRecord, closing: bool, minutes: float) -> Notification:
    title = "МОЖНО ЗАКРЫВАТЬ" if closing else "НЕТ ОТВЕТА"
    hint = (
        "Вы можете закрывать тикет."
        if closing
        else "Возможно, стоит уточнить, остались ли у него вопросы?"
    )
    text = "\n".join([
        f"⏰  <b>{title}</b>",
        "",
        f"📋  <b>Тикет:</b>   <code>#{escape(record.channel_name)}</code>",
        f"⏱  <b>Прошло:</b>  {minutes:g} мин. без ответа игрока",
        "",
        f"<i>Игрок не отвечает {minutes:g} минут. {hint}</i>",
    ])
    keyboard = {"inline_keyboard": [[
        {"text": "🔗 Открыть тикет", "url": channel_link(record.guild_id, record.channel_id)},
    ]]}
    return Notification(text=text, reply_markup=keyboard, channel_id=record.channel_id)


def build_auto_reply_sent(decision: Decision, username: str, content: str) -> Notification:
    text = (
        "🤖 <b>Авто-ответ отправлен</b>\n\n"
        f"📋 <b>Правило:</b> {escape(decision.rule_name)}\n"
        f"🧾 <b>rule_id:</b> <code>{escape(decision.rule_id)}</code>\n"
        f"🎯 <b>confidence:</b> <code>{decision.confidence:.2f}</code>\n"
        f"🔎 <b>source:</b> <code>{decision.source.value}</code>\n"
        f"👤 <b>Игрок:</b> {escape(username or 'unknown')}\n"
        f"💬 <b>Сообщение:</b> <i>{escape((content or '')[:150])}</i>"
    )
    return Notification(text=text)


def build_ai_answered(channel_id: str, username: str, question: str, answer: str) -> Notification:
    def squash(value: str, limit: int) -> str:
        flat = " ".join(str(value or "").split())
        return truncate(flat, limit) if flat else "—"

    text = (
        "🧠 <b>Neuro ответил</b>\n\n"
        f"📍 <b>Канал:</b> <code>{escape(channel_id)}</code>\n"
        f"👤 <b>Пользователь:</b> {escape(username)}\n"
        f"❓ <b>Вопрос:</b> <i>{escape(squash(question, 180))}</i>\n"
        f"💬 <b>Ответ:</b> <i>{escape(squash(answer, 240))}</i>"
    )
    return Notification(text=text)


# -- sending ------------------------------------------------------------------


def send_telegram_message(
    token: str, chat_id: str, text: str, keyboard: dict | None = None, timeout: float = 15
) -> HttpResult:
    """Send one HTML message through the Telegram Bot API."""
    payload = {
        "chat_id": chat_id,
        "text": text,
        "parse_mode": "HTML",
        "disable_web_page_preview": True,
    }
    if keyboard:
        payload["reply_markup"] = keyboard
    try:
        resp = requests.post(f"{TELEGRAM_API.format(token=token)}/sendMessage", json=payload, timeout=timeout)
    except requests.RequestException as exc:
        return HttpResult(ok=False, status=0, body=str(exc))
    return HttpResult(ok=resp.ok, status=resp.status_code, body=resp.text)


class TelegramOutbox:
    """Rate-limited, retrying queue in front of :func:`send_telegram_message`.

    ``enqueue`` never blocks and never raises; ``run`` drains the queue
    forever and is started as a background task.
    """

    def __init__(self, config: Config, *, sleep=asyncio.sleep, clock=time.monotonic) -> None:
        self._config = config
        self._queue: asyncio.Queue[Notification] = asyncio.Queue()
        self._sleep = sleep
        self._clock = clock
        self._last_send: float | None = None
        self.sent_count = 0
        self.failed_count = 0

    def __len__(self) -> int:
        return self._queue.qsize()

    def enqueue(self, notification: Notification) -> None:
        self._queue.put_nowait(notification)

    async def run(self) -> None:
        while True:
            item = await self._queue.get()
            try:
                await self._deliver(item)
            except Exception:
                self.failed_count += 1
                logger.exception("Telegram delivery crashed; dropping notification")

    async def drain(self) -> None:
        """Deliver everything currently queued, then return."""
        while not self._queue.empty():
            await self._deliver(self._queue.get_nowait())

    async def _deliver(self, item: Notification) -> None:
        token = self._config.tg_token
        chat_id = item.chat_id or self._config.tg_chat_id
        if not token or not chat_id:
            logger.debug("Telegram not configured; dropping notification")
            return

        while True:
            if self._last_send is not None:
                wait = self._config.rate_limit_ms / 1000 - (self._clock() - self._last_send)
                if wait > 0:
                    await self._sleep(wait)
            self._last_send = self._clock()

            result = await asyncio.to_thread(
                send_telegram_message, token, chat_id, item.text, item.reply_markup
            )
            if result.ok:
                self.sent_count += 1
                return

            item.retries += 1
            logger.warning(
                "Telegram send failed (status %s, attempt %d): %s",
                result.status, item.retries, result.body[:200],
            )
            if item.retries >= MAX_RETRIES:
                self.failed_count += 1
                return
            await self._sleep(2 * item.retries)
