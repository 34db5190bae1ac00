"""SQLite database connection manager with schema migration."""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator

import aiosqlite

from relay_agent.log import get_logger

logger = get_logger(__name__)

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS conversations (
    id                   TEXT    PRIMARY KEY,
    title                TEXT    NOT NULL DEFAULT 'New Conversation',
    created_at           TEXT    NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%f','now')),
    updated_at           TEXT    NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%f','now')),
    token_count          INTEGER NOT NULL DEFAULT 0,
    input_token_count    INTEGER NOT NULL DEFAULT 0,
    output_token_count   INTEGER NOT NULL DEFAULT 0,
    message_count        INTEGER NOT NULL DEFAULT 0,
    tool_execution_count INTEGER NOT NULL DEFAULT 0,
    estimated_cost       REAL    NOT NULL DEFAULT 0.0,
    summary              TEXT,
    summarized_at        TEXT,
    times_summarized     INTEGER NOT NULL DEFAULT 0,
    metadata_json        TEXT    NOT NULL DEFAULT '{}'
);

CREATE INDEX IF NOT EXISTS idx_conversations_updated
    ON conversations(updated_at DESC);

CREATE TABLE IF NOT EXISTS messages (
    id                  INTEGER PRIMARY KEY AUTOINCREMENT,
    conversation_id     TEXT    NOT NULL REFERENCES conversations(id) ON DELETE CASCADE,
    role                TEXT    NOT NULL CHECK(role IN ('user','assistant','system')),
    content             TEXT    NOT NULL,
    token_count         INTEGER NOT NULL DEFAULT 0,
    streaming_group_id  TEXT,
    stopped             INTEGER NOT NULL DEFAULT 0,
    stop_reason         TEXT,
    is_summary          INTEGER NOT NULL DEFAULT 0,
    messages_summarized INTEGER NOT NULL DEFAULT 0,
    context_start_id    INTEGER,
    metadata_json       TEXT    NOT NULL DEFAULT '{}',
    created_at          TEXT    NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%f','now'))
);

CREATE INDEX IF NOT EXISTS idx_messages_conversation
    ON messages(conversation_id, id);

CREATE INDEX IF NOT EXISTS idx_messages_summary
    ON messages(conversation_id, is_summary, id DESC);

CREATE TABLE IF NOT EXISTS tool_executions (
    id               INTEGER PRIMARY KEY AUTOINCREMENT,
    message_id       INTEGER NOT NULL REFERENCES messages(id) ON DELETE CASCADE,
    conversation_id  TEXT    NOT NULL REFERENCES conversations(id) ON DELETE CASCADE,
    call_id          TEXT,
    tool_name        TEXT    NOT NULL,
    input_json       TEXT    NOT NULL DEFAULT '{}',
    output_json      TEXT,
    duration_ms      INTEGER NOT NULL DEFAULT 0,
    success          INTEGER NOT NULL DEFAULT 1,
    error            TEXT,
    created_at       TEXT    NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%f','now'))
);

CREATE INDEX IF NOT EXISTS idx_tools_message
    ON tool_executions(message_id);

CREATE INDEX IF NOT EXISTS idx_tools_conversation
    ON tool_executions(conversation_id);
"""


class Database:
    """Async SQLite database manager.

    All writes go through :meth:`transaction`, which serializes writers on the
    single shared connection so a child insert and the parent counter update
    commit (or roll back) together.
    """

    def __init__(self, db_path: str):
        self._db_path = db_path
        self._conn: aiosqlite.Connection | None = None
        self._write_lock = asyncio.Lock()

    async def initialize(self) -> None:
        """Open connection and run migrations."""
        if self._db_path != ":memory:":
            Path(self._db_path).parent.mkdir(parents=True, exist_ok=True)
        self._conn = await aiosqlite.connect(self._db_path)
        self._conn.row_factory = aiosqlite.Row
        await self._conn.execute("PRAGMA journal_mode=WAL")
        await self._conn.execute("PRAGMA foreign_keys=ON")
        await self._conn.executescript(SCHEMA_SQL)
        await self._conn.commit()
        logger.info("database_initialized", path=self._db_path)

    @property
    def conn(self) -> aiosqlite.Connection:
        if self._conn is None:
            raise RuntimeError("Database not initialized. Call initialize() first.")
        return self._conn

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[aiosqlite.Connection]:
        """Run a group of statements atomically."""
        async with self._write_lock:
            conn = self.conn
            try:
                yield conn
            except BaseException:
                await conn.rollback()
                raise
            else:
                await conn.commit()

    async def close(self) -> None:
        if self._conn:
            await self._conn.close()
            self._conn = None
            logger.info("database_closed")
