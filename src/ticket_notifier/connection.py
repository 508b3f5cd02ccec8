"""Gateway connection manager.

Owns exactly one socket at a time: connects, performs the identify or
resume handshake, keeps the heartbeat running, classifies close codes and
schedules the reconnect. Nothing raised by the transport escapes ``run()``.
"""

import asyncio
import json
import logging
from collections.abc import Awaitable, Callable
from enum import IntEnum

import websockets
from websockets.exceptions import WebSocketException

from ticket_notifier.config import Config
from ticket_notifier.heartbeat import HeartbeatController, random_jitter
from ticket_notifier.models import AuthMode, ConnectionState, Session

logger = logging.getLogger(__name__)

GATEWAY_URL = "wss://gateway.discord.gg/?v=9&encoding=json"

RESUMABLE_CLOSE_CODES = frozenset({4000, 4001, 4002, 4003, 4005, 4007, 4009})
INVALID_AUTH_CODE = 4004
LOCAL_RECONNECT_CODE = 4000

RESUME_DELAY = 2.0
FRESH_SESSION_DELAY = 5.0
ALT_MODE_DELAY = 1.0
BAD_AUTH_DELAY = 60.0
INVALID_SESSION_GRACE = 2.0

BOT_INTENTS = 33283
LAZY_REQUEST_BATCH = 100
SIDEBAR_MEMBER_LIMIT = 2500

DispatchHandler = Callable[[str, object], Awaitable[None]]


class Op(IntEnum):
    DISPATCH = 0
    HEARTBEAT = 1
    IDENTIFY = 2
    RESUME = 6
    RECONNECT = 7
    INVALID_SESSION = 9
    HELLO = 10
    HEARTBEAT_ACK = 11
    LAZY_REQUEST = 14


class GatewayConnection:
    def __init__(
        self,
        config: Config,
        session: Session,
        on_dispatch: DispatchHandler,
        *,
        connect=websockets.connect,
        url: str = GATEWAY_URL,
        on_disconnect: Callable[[], None] | None = None,
        on_auth_mode_change: Callable[[AuthMode], None] | None = None,
        jitter: Callable[[float], float] = random_jitter,
    ) -> None:
        self._config = config
        self.session = session
        self._on_dispatch = on_dispatch
        self._connect = connect
        self.url = url
        self._on_disconnect = on_disconnect
        self._on_auth_mode_change = on_auth_mode_change
        self._jitter = jitter

        self.state = ConnectionState.DISCONNECTED
        self._ws = None
        self._heartbeat: HeartbeatController | None = None
        self._local_close_code: int | None = None
        self._grace_task: asyncio.Task | None = None
        self._stop_event = asyncio.Event()

    # -- lifecycle -----------------------------------------------------------

    @property
    def heartbeat(self) -> HeartbeatController | None:
        return self._heartbeat

    async def run(self) -> None:
        """Connect and reconnect until :meth:`stop` is called."""
        if not self._config.gateway_token:
            logger.error("No chat token configured; gateway not started")
            return

        while not self._stop_event.is_set():
            code = await self._connect_once()
            if self._stop_event.is_set():
                break
            delay = self.handle_close(code)
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=delay)
            except asyncio.TimeoutError:
                pass

        self._stop_heartbeat()
        self.state = ConnectionState.STOPPED
        logger.info("Gateway stopped")

    async def stop(self) -> None:
        self._stop_event.set()
        await self.close(1000)

    async def _connect_once(self) -> int | None:
        self.state = ConnectionState.CONNECTING
        self._local_close_code = None
        ws = None
        logger.info("Connecting to gateway (auth: %s)", self.session.auth_mode.value)
        try:
            async with self._connect(self.url, max_size=None) as ws:
                self._ws = ws
                self.state = ConnectionState.HANDSHAKING
                logger.info("Gateway socket open")
                async for raw in ws:
                    await self.handle_frame(raw)
        except (OSError, asyncio.TimeoutError, WebSocketException) as exc:
            logger.warning("Gateway transport error: %s", exc)
        finally:
            self._ws = None

        if self._local_close_code is not None:
            return self._local_close_code
        return getattr(ws, "close_code", None)

    async def close(self, code: int) -> None:
        """Close the current socket locally; the run loop then reconnects."""
        self._local_close_code = code
        ws = self._ws
        if ws is None:
            return
        try:
            await ws.close(code=code)
        except (OSError, WebSocketException) as exc:
            logger.debug("Error while closing socket: %s", exc)

    # -- inbound -------------------------------------------------------------

    async def handle_frame(self, raw) -> None:
        try:
            frame = json.loads(raw)
        except (TypeError, ValueError):
            logger.debug("Dropping malformed frame")
            return
        if not isinstance(frame, dict) or not isinstance(frame.get("op"), int):
            logger.debug("Dropping frame without op code")
            return

        seq = frame.get("s")
        if isinstance(seq, int):
            self.session.observe_seq(seq)

        op = frame["op"]
        data = frame.get("d")

        if op == Op.HELLO:
            await self._on_hello(data)
        elif op == Op.HEARTBEAT_ACK:
            if self._heartbeat is not None:
                self._heartbeat.ack()
            else:
                self.session.last_ack_received = True
        elif op == Op.HEARTBEAT:
            await self._send_heartbeat()
        elif op == Op.RECONNECT:
            logger.info("Server requested reconnect")
            await self.close(LOCAL_RECONNECT_CODE)
        elif op == Op.INVALID_SESSION:
            logger.warning("Invalid session; re-identifying after %.0fs", INVALID_SESSION_GRACE)
            self.session.reset()
            self._grace_task = asyncio.create_task(self._close_after_grace())
        elif op == Op.DISPATCH:
            await self._on_dispatch_frame(frame.get("t"), data)

    async def _on_hello(self, data) -> None:
        interval_ms = (data or {}).get("heartbeat_interval") if isinstance(data, dict) else None
        if not isinstance(interval_ms, (int, float)) or interval_ms <= 0:
            logger.warning("HELLO without a usable heartbeat interval; dropping")
            return
        self.session.heartbeat_interval_ms = int(interval_ms)
        self._stop_heartbeat()
        self._heartbeat = HeartbeatController(
            interval_ms / 1000,
            self.session,
            self._send_heartbeat,
            self._on_heartbeat_dead,
            jitter=self._jitter,
        )
        self._heartbeat.start()
        await self.send(self.build_handshake())

    async def _on_dispatch_frame(self, event, data) -> None:
        if not isinstance(event, str):
            return
        if event == "READY" and isinstance(data, dict):
            self.session.session_id = data.get("session_id")
            self.session.resume_url = data.get("resume_gateway_url")
            self.state = ConnectionState.CONNECTED
        elif event == "RESUMED":
            self.state = ConnectionState.CONNECTED
        try:
            await self._on_dispatch(event, data)
        except Exception:
            logger.exception("Dispatch handler failed for %s; frame dropped", event)

    async def _close_after_grace(self) -> None:
        await asyncio.sleep(INVALID_SESSION_GRACE)
        await self.close(LOCAL_RECONNECT_CODE)

    # -- outbound ------------------------------------------------------------

    def build_handshake(self) -> dict:
        token = self._config.gateway_token
        if self.session.can_resume():
            return {
                "op": Op.RESUME.value,
                "d": {"token": token, "session_id": self.session.session_id, "seq": self.session.last_seq},
            }
        if self.session.auth_mode is AuthMode.BOT:
            payload = {
                "token": token,
                "intents": BOT_INTENTS,
                "properties": {"os": "linux", "browser": "ticket-notifier", "device": "ticket-notifier"},
                "compress": False,
                "large_threshold": 250,
            }
        else:
            payload = {
                "token": token,
                "properties": {"os": "Windows", "browser": "Chrome", "device": ""},
                "presence": {"status": "online", "activities": [], "since": 0, "afk": False},
                "compress": False,
                "large_threshold": 250,
            }
        return {"op": Op.IDENTIFY.value, "d": payload}

    async def send(self, payload: dict) -> bool:
        ws = self._ws
        if ws is None:
            logger.debug("Socket not open; dropping op %s", payload.get("op"))
            return False
        try:
            await ws.send(json.dumps(payload))
        except (OSError, WebSocketException) as exc:
            logger.warning("Gateway send failed: %s", exc)
            return False
        return True

    async def _send_heartbeat(self) -> None:
        await self.send({"op": Op.HEARTBEAT.value, "d": self.session.last_seq})

    async def _on_heartbeat_dead(self) -> None:
        await self.close(LOCAL_RECONNECT_CODE)

    @property
    def lazy_subscriptions_enabled(self) -> bool:
        return self.session.auth_mode is AuthMode.BOT or self._config.lazy_subscriptions

    async def send_lazy_request(self, channel_ids: list[str]) -> bool:
        """Subscribe to message events for specific channels (op 14)."""
        if not self.lazy_subscriptions_enabled or not channel_ids or not self._config.guild_id:
            return False
        sent = False
        for i in range(0, len(channel_ids), LAZY_REQUEST_BATCH):
            batch = channel_ids[i:i + LAZY_REQUEST_BATCH]
            sent = await self.send({
                "op": Op.LAZY_REQUEST.value,
                "d": {
                    "guild_id": self._config.guild_id,
                    "typing": True,
                    "threads": True,
                    "activities": True,
                    "members": [],
                    "channels": {ch: [[0, 99]] for ch in batch},
                },
            }) or sent
        if sent:
            logger.info("Lazy request: subscribed to %d channels", len(channel_ids))
        return sent

    async def send_member_sidebar_request(self, channel_ids: list[str]) -> bool:
        """Ask for the member sidebar of a few channels (op 14, full member ranges)."""
        if not self.lazy_subscriptions_enabled or not channel_ids or not self._config.guild_id:
            return False
        ranges = [[i, i + 99] for i in range(0, SIDEBAR_MEMBER_LIMIT, 100)]
        sent = await self.send({
            "op": Op.LAZY_REQUEST.value,
            "d": {
                "guild_id": self._config.guild_id,
                "typing": True,
                "threads": True,
                "activities": True,
                "members": [],
                "channels": {ch: ranges for ch in channel_ids},
            },
        })
        if sent:
            logger.info("Requested member sidebar for channels %s", ", ".join(channel_ids))
        return sent

    # -- close handling ------------------------------------------------------

    def _stop_heartbeat(self) -> None:
        if self._heartbeat is not None:
            self._heartbeat.stop()
            self._heartbeat = None

    def handle_close(self, code: int | None) -> float:
        """Tear down per-connection state and return the reconnect delay."""
        self._stop_heartbeat()
        if self._grace_task is not None:
            self._grace_task.cancel()
            self._grace_task = None
        self.state = ConnectionState.DISCONNECTED
        if self._on_disconnect is not None:
            self._on_disconnect()

        if code == INVALID_AUTH_CODE:
            return self._handle_invalid_auth()

        if code in RESUMABLE_CLOSE_CODES:
            logger.info("Gateway closed (%s), resuming in %.0fs", code, RESUME_DELAY)
            return RESUME_DELAY

        self.session.reset()
        logger.info("Gateway closed (%s), reconnecting with new session in %.0fs", code, FRESH_SESSION_DELAY)
        return FRESH_SESSION_DELAY

    def _handle_invalid_auth(self) -> float:
        self.session.reset()
        config = self._config
        can_try_alt = not config.discord_bot_token and bool(config.discord_token)
        if (
            config.mode_fallback
            and can_try_alt
            and self.session.auth_mode is AuthMode.USER
            and not self.session.alt_mode_tried
        ):
            self.session.auth_mode = AuthMode.BOT
            self.session.alt_mode_tried = True
            if self._on_auth_mode_change is not None:
                self._on_auth_mode_change(AuthMode.BOT)
            logger.warning("Gateway 4004 in user mode; retrying the token in bot mode")
            return ALT_MODE_DELAY

        if self.session.alt_mode_tried:
            logger.error("Gateway 4004 in both user and bot modes: token is invalid or revoked")
        elif config.discord_bot_token:
            logger.error("Gateway 4004 for the bot token: token is invalid or revoked")
        else:
            logger.error("Gateway 4004 for the user token: token is invalid or revoked")
        logger.error("Retrying in %.0fs", BAD_AUTH_DELAY)
        return BAD_AUTH_DELAY
