"""Ticket registry persistence and the closed-ticket archive."""

import json
import logging
import os
import sqlite3
from typing import Protocol

from ticket_notifier.models import TicketRecord

logger = logging.getLogger(__name__)


class TicketRegistry:
    """Active tickets plus lifetime counters, flushed to JSON when dirty."""

    def __init__(self) -> None:
        self.active: dict[str, TicketRecord] = {}
        self.total_created = 0
        self.total_closed = 0
        self.dirty = False

    def __len__(self) -> int:
        return len(self.active)

    def __contains__(self, channel_id: str) -> bool:
        return channel_id in self.active

    def get(self, channel_id: str) -> TicketRecord | None:
        return self.active.get(channel_id)

    def mark_dirty(self) -> None:
        self.dirty = True

    def to_dict(self) -> dict:
        return {
            "total_created": self.total_created,
            "total_closed": self.total_closed,
            "active": [r.to_dict() for r in self.active.values()],
        }

    def save(self, path: str) -> None:
        directory = os.path.dirname(path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        tmp = f"{path}.tmp"
        with open(tmp, "w", encoding="utf-8") as f:
            json.dump(self.to_dict(), f, ensure_ascii=False, indent=2)
        os.replace(tmp, path)
        self.dirty = False

    @classmethod
    def load(cls, path: str) -> "TicketRegistry":
        registry = cls()
        if not os.path.exists(path):
            return registry
        try:
            with open(path, encoding="utf-8") as f:
                raw = json.load(f)
            registry.total_created = int(raw.get("total_created", 0))
            registry.total_closed = int(raw.get("total_closed", 0))
            for item in raw.get("active", []):
                record = TicketRecord.from_dict(item)
                registry.active[record.channel_id] = record
        except (OSError, ValueError, TypeError, KeyError) as exc:
            logger.warning("Could not load ticket state from %s: %s", path, exc)
            return cls()
        logger.info("Loaded %d active tickets from %s", len(registry), path)
        return registry


class ArchiveStore(Protocol):
    def save_closed_ticket(self, record: TicketRecord) -> None: ...

    def save_ticket_messages(self, channel_id: str, messages: list[dict]) -> None: ...


class SqliteArchiveStore:
    """Closed tickets and their message history in a local SQLite file."""

    def __init__(self, path: str) -> None:
        directory = os.path.dirname(path)
        if directory and path != ":memory:":
            os.makedirs(directory, exist_ok=True)
        self._conn = sqlite3.connect(path)
        self._conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS closed_tickets (
                channel_id TEXT PRIMARY KEY,
                channel_name TEXT,
                opener_id TEXT,
                opener_username TEXT,
                created_at REAL,
                closed_at REAL,
                first_staff_reply_at REAL
            );
            CREATE TABLE IF NOT EXISTS ticket_messages (
                message_id TEXT PRIMARY KEY,
                channel_id TEXT NOT NULL,
                payload TEXT NOT NULL
            );
            """
        )

    def save_closed_ticket(self, record: TicketRecord) -> None:
        with self._conn:
            self._conn.execute(
                "INSERT OR REPLACE INTO closed_tickets VALUES (?, ?, ?, ?, ?, ?, ?)",
                (
                    record.channel_id,
                    record.channel_name,
                    record.opener_id,
                    record.opener_username,
                    record.created_at,
                    record.closed_at,
                    record.first_staff_reply_at,
                ),
            )

    def save_ticket_messages(self, channel_id: str, messages: list[dict]) -> None:
        rows = [
            (str(m["id"]), channel_id, json.dumps(m, ensure_ascii=False))
            for m in messages
            if m.get("id")
        ]
        with self._conn:
            self._conn.executemany("INSERT OR REPLACE INTO ticket_messages VALUES (?, ?, ?)", rows)

    def closed_tickets(self) -> list[dict]:
        cur = self._conn.execute(
            "SELECT channel_id, channel_name, opener_id, opener_username, created_at, closed_at,"
            " first_staff_reply_at FROM closed_tickets ORDER BY closed_at DESC"
        )
        cols = [c[0] for c in cur.description]
        return [dict(zip(cols, row)) for row in cur.fetchall()]

    def ticket_messages(self, channel_id: str) -> list[dict]:
        cur = self._conn.execute(
            "SELECT payload FROM ticket_messages WHERE channel_id = ? ORDER BY rowid", (channel_id,)
        )
        return [json.loads(row[0]) for row in cur.fetchall()]

    def close(self) -> None:
        self._conn.close()
