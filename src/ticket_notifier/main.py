"""Entry point and component wiring for ticket-notifier."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import signal
import sys

import websockets

from ticket_notifier.ai_responder import AIResponder
from ticket_notifier.archive import SqliteArchiveStore, TicketRegistry
from ticket_notifier.autoreply import AutoReplier
from ticket_notifier.config import Config, load_config
from ticket_notifier.connection import GatewayConnection
from ticket_notifier.dashboard import log_emitter
from ticket_notifier.decision_engine import evaluate
from ticket_notifier.dispatch import DispatchRouter
from ticket_notifier.hydration import HydrationJobs
from ticket_notifier.models import AuthMode, DecisionSource, Session
from ticket_notifier.notifier import TelegramOutbox
from ticket_notifier.polling import AutoReplyPoller
from ticket_notifier.profanity import ProfanityGuard
from ticket_notifier.rest import RestClient
from ticket_notifier.runtime import Runtime
from ticket_notifier.tickets import TicketTracker

logger = logging.getLogger(__name__)


def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="ticket-notifier",
        description="Track support tickets on a chat gateway and mirror them to Telegram.",
    )
    parser.add_argument(
        "--config",
        metavar="PATH",
        default=None,
        help="Path to config YAML (default: ~/.config/ticket-notifier/config.yaml)",
    )
    parser.add_argument(
        "--log-level",
        metavar="LEVEL",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Log level (default: INFO)",
    )
    commands = parser.add_subparsers(dest="command")
    commands.add_parser("run", help="Connect to the gateway and process events (default)")
    simulate = commands.add_parser("simulate", help="Print the auto-reply decision for a message")
    simulate.add_argument("--content", required=True, help="Message text to evaluate")
    simulate.add_argument("--guild-id", default="", help="Guild the message was posted in")
    simulate.add_argument("--channel-id", default="", help="Channel the message was posted in")

    args = parser.parse_args(argv)
    if args.command is None:
        args.command = "run"
    return args


def simulate(config: Config, content: str, guild_id: str = "", channel_id: str = "") -> dict:
    """Evaluate a message against the configured rules without sending anything."""
    decision = evaluate(
        config.auto_replies, content, channel_id, guild_id, DecisionSource.GATEWAY, config.heuristics
    )
    return decision.to_dict()


class Application:
    """Owns every long-lived component of a running notifier."""

    def __init__(self, config: Config, *, connect=websockets.connect) -> None:
        self.config = config
        bot_mode = config.has_bot_token
        self.session = Session(auth_mode=AuthMode.BOT if bot_mode else AuthMode.USER)
        self.outbox = TelegramOutbox(config)
        self.archive = SqliteArchiveStore(config.archive_path)
        self.runtime = Runtime(
            config,
            RestClient(config.gateway_token, bot=bot_mode),
            self.outbox,
            self.archive,
            TicketRegistry.load(config.state_path),
            emit=log_emitter,
        )

        self.tracker = TicketTracker(self.runtime)
        replier = AutoReplier(self.runtime)
        self.poller = AutoReplyPoller(self.runtime, replier)
        hydration = HydrationJobs(self.runtime, self.tracker, self.poller)
        self.router = DispatchRouter(
            self.runtime,
            self.tracker,
            hydration,
            replier,
            AIResponder(self.runtime),
            ProfanityGuard(self.runtime),
        )
        self.gateway = GatewayConnection(
            config,
            self.session,
            self.router.dispatch,
            connect=connect,
            on_disconnect=self.runtime.reset_connection_state,
            on_auth_mode_change=self._on_auth_mode_change,
        )
        self.runtime.gateway = self.gateway

    def _on_auth_mode_change(self, mode: AuthMode) -> None:
        self.runtime.rest.bot = mode is AuthMode.BOT

    def flush(self) -> None:
        registry = self.runtime.registry
        if not registry.dirty:
            return
        try:
            registry.save(self.config.state_path)
        except OSError:
            logger.exception("Failed to save ticket state to %s", self.config.state_path)

    async def _flush_loop(self) -> None:
        while True:
            await asyncio.sleep(self.config.flush_interval)
            self.flush()

    def request_stop(self, sig_name: str = "") -> None:
        logger.info("Received %s; shutting down", sig_name or "stop request")
        asyncio.get_running_loop().create_task(self.gateway.stop())

    async def run(self) -> None:
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, self.request_stop, sig.name)

        background = [
            asyncio.create_task(self.outbox.run(), name="telegram-outbox"),
            asyncio.create_task(self._flush_loop(), name="state-flush"),
        ]
        logger.info("Starting ticket-notifier (%d active tickets)", len(self.runtime.registry))
        try:
            await self.gateway.run()
        finally:
            for task in background:
                task.cancel()
            self.poller.stop()
            self.tracker.cancel_all_timers()
            self.runtime.members_throttle.cancel()
            self.runtime.tasks.cancel_all()
            self.flush()
            self.archive.close()
            logger.info(
                "Stopped (telegram sent=%d, failed=%d)", self.outbox.sent_count, self.outbox.failed_count
            )


async def _run(config: Config) -> None:
    await Application(config).run()


def main(argv: list[str] | None = None) -> None:
    args = _parse_args(argv)

    logging.basicConfig(
        format="%(asctime)s %(levelname)-8s [%(name)s] %(message)s",
        level=getattr(logging, args.log_level),
    )

    try:
        config = load_config(args.config)
    except FileNotFoundError as exc:
        logger.error("Config file not found: %s", exc)
        sys.exit(1)
    except ValueError as exc:
        logger.error("Invalid configuration: %s", exc)
        sys.exit(1)

    logger.info("Configuration loaded successfully")

    if args.command == "simulate":
        result = simulate(config, args.content, args.guild_id, args.channel_id)
        print(json.dumps(result, ensure_ascii=False, indent=2))
        return

    if not config.gateway_token:
        logger.error("No chat token configured (discord_token or discord_bot_token)")
        sys.exit(1)

    asyncio.run(_run(config))
