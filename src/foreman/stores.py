"""Mail and metrics stores: small SQLite-backed append/query logs.

Agents talk to each other through typed mail rows in ``.foreman/mail.db``;
each finished session leaves a summary row in ``.foreman/metrics.db``.
Both databases run in WAL mode so hook commands in many agents can write
while ``foreman status`` reads.
"""

from __future__ import annotations

import logging
from datetime import datetime
from pathlib import Path
from typing import Any

import aiosqlite

from foreman.models import MailMessage, MailType, SessionMetrics

logger = logging.getLogger(__name__)


# ── Database Schema ──────────────────────────────────────────────────────────


MAIL_SCHEMA = """
CREATE TABLE IF NOT EXISTS messages (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    sender TEXT NOT NULL,
    recipient TEXT NOT NULL,
    subject TEXT NOT NULL,
    body TEXT NOT NULL DEFAULT '',
    type TEXT NOT NULL DEFAULT 'status',
    read INTEGER NOT NULL DEFAULT 0,  -- 0/1 boolean
    created_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_messages_recipient ON messages(recipient, read);
CREATE INDEX IF NOT EXISTS idx_messages_created ON messages(created_at DESC);
"""

METRICS_SCHEMA = """
CREATE TABLE IF NOT EXISTS sessions (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    agent_name TEXT NOT NULL,
    bead_id TEXT NOT NULL DEFAULT '',
    capability TEXT NOT NULL,
    parent_agent TEXT,
    started_at TEXT NOT NULL,
    completed_at TEXT NOT NULL,
    duration_ms INTEGER NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_sessions_agent ON sessions(agent_name);
CREATE INDEX IF NOT EXISTS idx_sessions_completed ON sessions(completed_at DESC);
"""


class _SqliteStore:
    schema = ""

    def __init__(self, db_path: str | Path):
        self.db_path = str(db_path)
        self._db: aiosqlite.Connection | None = None

    async def initialize(self) -> None:
        """Open database and create tables."""
        Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        self._db = await aiosqlite.connect(self.db_path)
        self._db.row_factory = aiosqlite.Row
        await self._db.execute("PRAGMA journal_mode=WAL")
        await self._db.executescript(self.schema)
        await self._db.commit()
        logger.debug("%s initialized: %s", type(self).__name__, self.db_path)

    async def close(self) -> None:
        if self._db:
            await self._db.close()
            self._db = None

    @property
    def db(self) -> aiosqlite.Connection:
        if self._db is None:
            raise RuntimeError(f"{type(self).__name__} not initialized")
        return self._db

    async def __aenter__(self):
        await self.initialize()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()


# ── Mail ─────────────────────────────────────────────────────────────────────


class MailStore(_SqliteStore):
    """Typed messages between agents."""

    schema = MAIL_SCHEMA

    async def send(self, message: MailMessage) -> MailMessage:
        cursor = await self.db.execute(
            """INSERT INTO messages (sender, recipient, subject, body, type, read, created_at)
               VALUES (?, ?, ?, ?, ?, ?, ?)""",
            (
                message.sender,
                message.recipient,
                message.subject,
                message.body,
                message.type.value,
                1 if message.read else 0,
                message.created_at.isoformat(),
            ),
        )
        await self.db.commit()
        message.id = cursor.lastrowid
        logger.info("Mail %d: %s -> %s (%s)", message.id, message.sender, message.recipient, message.type.value)
        return message

    async def get_all(
        self,
        to: str | None = None,
        sender: str | None = None,
        unread: bool | None = None,
        limit: int = 100,
    ) -> list[MailMessage]:
        """Messages matching the filters, newest first."""
        query = "SELECT * FROM messages WHERE 1=1"
        params: list[Any] = []
        if to is not None:
            query += " AND recipient = ?"
            params.append(to)
        if sender is not None:
            query += " AND sender = ?"
            params.append(sender)
        if unread is not None:
            query += " AND read = ?"
            params.append(0 if unread else 1)
        query += " ORDER BY created_at DESC, id DESC LIMIT ?"
        params.append(limit)

        async with self.db.execute(query, params) as cursor:
            rows = await cursor.fetchall()
        return [self._row_to_message(row) for row in rows]

    async def mark_read(self, message_id: int) -> bool:
        cursor = await self.db.execute("UPDATE messages SET read = 1 WHERE id = ?", (message_id,))
        await self.db.commit()
        return cursor.rowcount > 0

    @staticmethod
    def _row_to_message(row: aiosqlite.Row) -> MailMessage:
        return MailMessage(
            id=row["id"],
            sender=row["sender"],
            recipient=row["recipient"],
            subject=row["subject"],
            body=row["body"],
            type=MailType(row["type"]),
            read=bool(row["read"]),
            created_at=datetime.fromisoformat(row["created_at"]),
        )


# ── Metrics ──────────────────────────────────────────────────────────────────


class MetricsStore(_SqliteStore):
    """One summary row per finished agent session."""

    schema = METRICS_SCHEMA

    async def record_session(self, metrics: SessionMetrics) -> None:
        await self.db.execute(
            """INSERT INTO sessions
               (agent_name, bead_id, capability, parent_agent, started_at, completed_at, duration_ms)
               VALUES (?, ?, ?, ?, ?, ?, ?)""",
            (
                metrics.agent_name,
                metrics.bead_id,
                metrics.capability.value,
                metrics.parent_agent,
                metrics.started_at.isoformat(),
                metrics.completed_at.isoformat(),
                metrics.duration_ms,
            ),
        )
        await self.db.commit()
        logger.debug("Recorded metrics for %s (%d ms)", metrics.agent_name, metrics.duration_ms)

    async def get_recent_sessions(self, limit: int = 20, agent_name: str | None = None) -> list[SessionMetrics]:
        query = "SELECT * FROM sessions"
        params: list[Any] = []
        if agent_name is not None:
            query += " WHERE agent_name = ?"
            params.append(agent_name)
        query += " ORDER BY completed_at DESC, id DESC LIMIT ?"
        params.append(limit)

        async with self.db.execute(query, params) as cursor:
            rows = await cursor.fetchall()
        return [
            SessionMetrics(
                agent_name=row["agent_name"],
                bead_id=row["bead_id"],
                capability=row["capability"],
                parent_agent=row["parent_agent"],
                started_at=datetime.fromisoformat(row["started_at"]),
                completed_at=datetime.fromisoformat(row["completed_at"]),
            )
            for row in rows
        ]
