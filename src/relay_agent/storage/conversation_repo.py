"""Conversation store: append-only log of conversations, messages and tool executions."""

from __future__ import annotations

import json
import math
import uuid
from datetime import datetime
from typing import Any, Optional

import aiosqlite

from relay_agent.config import PricingConfig
from relay_agent.core.errors import ConversationNotFoundError, PersistenceError
from relay_agent.core.types import Role
from relay_agent.log import get_logger
from relay_agent.storage.database import Database
from relay_agent.storage.models import (
    ConversationRecord,
    MessageRecord,
    ToolExecutionRecord,
    utcnow,
)

logger = get_logger(__name__)

SUMMARY_HEADER = "[Conversation Summary - {count} messages]"


def estimate_tokens(text: str | None) -> int:
    """Rough token estimate: four characters per token."""
    if not text:
        return 0
    return math.ceil(len(text) / 4)


def _loads(raw: str | None, default: Any) -> Any:
    if raw is None:
        return default
    try:
        return json.loads(raw)
    except (json.JSONDecodeError, TypeError):
        return default


def _parse_ts(raw: str | None) -> Optional[datetime]:
    return datetime.fromisoformat(raw) if raw else None


class ConversationRepository:
    """Access layer over the three conversation tables.

    Every insert of a child row updates the parent conversation's counters in
    the same transaction. Nothing is deleted except whole conversations.
    """

    def __init__(self, db: Database, pricing: PricingConfig | None = None):
        self._db = db
        self._pricing = pricing or PricingConfig()

    # -- conversations -----------------------------------------------------

    async def create_conversation(
        self, title: str = "New Conversation", metadata: dict | None = None
    ) -> ConversationRecord:
        conversation_id = uuid.uuid4().hex
        try:
            async with self._db.transaction() as conn:
                await conn.execute(
                    "INSERT INTO conversations (id, title, metadata_json) VALUES (?, ?, ?)",
                    (conversation_id, title, json.dumps(metadata or {})),
                )
        except aiosqlite.Error as e:
            raise PersistenceError(f"Failed to create conversation: {e}") from e
        logger.info("conversation_created", conversation_id=conversation_id)
        record = await self.get_conversation(conversation_id)
        if record is None:
            raise PersistenceError(f"Conversation {conversation_id} missing after insert")
        return record

    async def get_conversation(self, conversation_id: str) -> ConversationRecord | None:
        cursor = await self._db.conn.execute(
            "SELECT * FROM conversations WHERE id = ?", (conversation_id,)
        )
        row = await cursor.fetchone()
        return self._row_to_conversation(row) if row else None

    async def list_conversations(self, limit: int = 100) -> list[ConversationRecord]:
        cursor = await self._db.conn.execute(
            "SELECT * FROM conversations ORDER BY updated_at DESC LIMIT ?", (limit,)
        )
        rows = await cursor.fetchall()
        return [self._row_to_conversation(row) for row in rows]

    async def rename_conversation(self, conversation_id: str, title: str) -> ConversationRecord | None:
        try:
            async with self._db.transaction() as conn:
                await conn.execute(
                    """UPDATE conversations
                       SET title = ?, updated_at = strftime('%Y-%m-%dT%H:%M:%f','now')
                       WHERE id = ?""",
                    (title, conversation_id),
                )
        except aiosqlite.Error as e:
            raise PersistenceError(f"Failed to rename conversation {conversation_id}: {e}") from e
        return await self.get_conversation(conversation_id)

    async def delete_conversation(self, conversation_id: str) -> bool:
        """Delete a conversation; messages and tool executions cascade."""
        try:
            async with self._db.transaction() as conn:
                cursor = await conn.execute(
                    "DELETE FROM conversations WHERE id = ?", (conversation_id,)
                )
        except aiosqlite.Error as e:
            raise PersistenceError(f"Failed to delete conversation {conversation_id}: {e}") from e
        deleted = cursor.rowcount > 0
        if deleted:
            logger.info("conversation_deleted", conversation_id=conversation_id)
        return deleted

    # -- messages ----------------------------------------------------------

    async def add_message(
        self,
        conversation_id: str,
        role: Role,
        content: str,
        *,
        streaming_group_id: str | None = None,
        stopped: bool = False,
        stop_reason: str | None = None,
        metadata: dict | None = None,
    ) -> MessageRecord:
        """Append a message and bump the conversation counters atomically."""
        record = MessageRecord(
            conversation_id=conversation_id,
            role=Role(role),
            content=content,
            token_count=estimate_tokens(content),
            streaming_group_id=streaming_group_id,
            stopped=stopped,
            stop_reason=stop_reason,
            metadata=metadata or {},
        )
        try:
            async with self._db.transaction() as conn:
                record.id = await self._insert_message(conn, record)
        except aiosqlite.Error as e:
            raise PersistenceError(f"Failed to add message: {e}") from e
        return record

    async def get_message(self, message_id: int) -> MessageRecord | None:
        cursor = await self._db.conn.execute(
            "SELECT * FROM messages WHERE id = ?", (message_id,)
        )
        row = await cursor.fetchone()
        if row is None:
            return None
        message = self._row_to_message(row)
        message.tool_executions = await self.get_tool_executions(message_id)
        return message

    async def mark_message_stopped(self, message_id: int, reason: str) -> MessageRecord | None:
        """Flag a message as stopped. Content is left untouched."""
        message = await self.get_message(message_id)
        if message is None:
            return None
        metadata = {**message.metadata, "stopReason": reason, "stoppedAt": utcnow().isoformat()}
        try:
            async with self._db.transaction() as conn:
                await conn.execute(
                    "UPDATE messages SET stopped = 1, stop_reason = ?, metadata_json = ? WHERE id = ?",
                    (reason, json.dumps(metadata), message_id),
                )
        except aiosqlite.Error as e:
            raise PersistenceError(f"Failed to mark message {message_id} stopped: {e}") from e
        message.stopped = True
        message.stop_reason = reason
        message.metadata = metadata
        return message

    async def get_messages(self, conversation_id: str, limit: int = 10000) -> list[MessageRecord]:
        """All messages of a conversation in insertion order, with tool executions."""
        cursor = await self._db.conn.execute(
            "SELECT * FROM messages WHERE conversation_id = ? ORDER BY id ASC LIMIT ?",
            (conversation_id, limit),
        )
        rows = await cursor.fetchall()
        return await self._attach_tool_executions(
            conversation_id, [self._row_to_message(row) for row in rows]
        )

    async def get_context_messages(self, conversation_id: str) -> list[MessageRecord]:
        """Messages that make up the live context window.

        Returns the latest summary marker followed by every non-summary message
        from the marker's context start onward. Without a marker, the whole
        conversation.
        """
        cursor = await self._db.conn.execute(
            """SELECT * FROM messages
               WHERE conversation_id = ? AND is_summary = 1
               ORDER BY id DESC LIMIT 1""",
            (conversation_id,),
        )
        summary_row = await cursor.fetchone()
        if summary_row is None:
            return await self.get_messages(conversation_id)

        summary = self._row_to_message(summary_row)
        start_id = summary.context_start_id or (summary.id + 1)  # type: ignore[operator]
        cursor = await self._db.conn.execute(
            """SELECT * FROM messages
               WHERE conversation_id = ? AND is_summary = 0 AND id >= ?
               ORDER BY id ASC""",
            (conversation_id, start_id),
        )
        rows = await cursor.fetchall()
        return await self._attach_tool_executions(
            conversation_id, [summary, *(self._row_to_message(row) for row in rows)]
        )

    # -- tool executions ---------------------------------------------------

    async def add_tool_execution(self, record: ToolExecutionRecord) -> ToolExecutionRecord:
        try:
            async with self._db.transaction() as conn:
                cursor = await conn.execute(
                    """INSERT INTO tool_executions
                       (message_id, conversation_id, call_id, tool_name, input_json,
                        output_json, duration_ms, success, error)
                       VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                    (
                        record.message_id,
                        record.conversation_id,
                        record.call_id,
                        record.tool_name,
                        json.dumps(record.tool_input),
                        json.dumps(record.tool_output),
                        record.duration_ms,
                        1 if record.success else 0,
                        record.error,
                    ),
                )
                record.id = cursor.lastrowid
                await conn.execute(
                    """UPDATE conversations
                       SET tool_execution_count = tool_execution_count + 1,
                           updated_at = strftime('%Y-%m-%dT%H:%M:%f','now')
                       WHERE id = ?""",
                    (record.conversation_id,),
                )
        except aiosqlite.Error as e:
            raise PersistenceError(f"Failed to add tool execution: {e}") from e
        return record

    async def get_tool_executions(self, message_id: int) -> list[ToolExecutionRecord]:
        cursor = await self._db.conn.execute(
            "SELECT * FROM tool_executions WHERE message_id = ? ORDER BY id ASC",
            (message_id,),
        )
        rows = await cursor.fetchall()
        return [self._row_to_tool_execution(row) for row in rows]

    # -- summaries ---------------------------------------------------------

    async def add_summary(
        self,
        conversation_id: str,
        summary: str,
        messages_summarized: int,
        context_start_id: int | None,
        messages_to_keep: int,
    ) -> MessageRecord:
        """Append a summary marker and update the conversation summary fields."""
        content = f"{SUMMARY_HEADER.format(count=messages_summarized)}\n\n{summary.strip()}"
        record = MessageRecord(
            conversation_id=conversation_id,
            role=Role.SYSTEM,
            content=content,
            token_count=estimate_tokens(content),
            is_summary=True,
            messages_summarized=messages_summarized,
            context_start_id=context_start_id,
            metadata={
                "type": "summary",
                "messagesSummarized": messages_summarized,
                "messagesToKeep": messages_to_keep,
            },
        )
        try:
            async with self._db.transaction() as conn:
                record.id = await self._insert_message(conn, record)
                await conn.execute(
                    """UPDATE conversations
                       SET summary = ?,
                           summarized_at = strftime('%Y-%m-%dT%H:%M:%f','now'),
                           times_summarized = times_summarized + 1
                       WHERE id = ?""",
                    (summary.strip(), conversation_id),
                )
        except aiosqlite.Error as e:
            raise PersistenceError(f"Failed to add summary: {e}") from e
        logger.info(
            "summary_added",
            conversation_id=conversation_id,
            message_id=record.id,
            messages_summarized=messages_summarized,
        )
        return record

    # -- internals ---------------------------------------------------------

    async def _insert_message(self, conn: aiosqlite.Connection, record: MessageRecord) -> int:
        cursor = await conn.execute(
            "SELECT 1 FROM conversations WHERE id = ?", (record.conversation_id,)
        )
        if await cursor.fetchone() is None:
            raise ConversationNotFoundError(record.conversation_id)

        cursor = await conn.execute(
            """INSERT INTO messages
               (conversation_id, role, content, token_count, streaming_group_id, stopped,
                stop_reason, is_summary, messages_summarized, context_start_id, metadata_json)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                record.conversation_id,
                record.role.value,
                record.content,
                record.token_count,
                record.streaming_group_id,
                1 if record.stopped else 0,
                record.stop_reason,
                1 if record.is_summary else 0,
                record.messages_summarized,
                record.context_start_id,
                json.dumps(record.metadata),
            ),
        )
        input_tokens = record.token_count if record.role == Role.USER else 0
        output_tokens = record.token_count if record.role == Role.ASSISTANT else 0
        await conn.execute(
            """UPDATE conversations
               SET message_count = message_count + 1,
                   token_count = token_count + ?,
                   input_token_count = input_token_count + ?,
                   output_token_count = output_token_count + ?,
                   estimated_cost = (input_token_count + ?) * ? / 1000000.0
                                  + (output_token_count + ?) * ? / 1000000.0,
                   updated_at = strftime('%Y-%m-%dT%H:%M:%f','now')
               WHERE id = ?""",
            (
                record.token_count,
                input_tokens,
                output_tokens,
                input_tokens,
                self._pricing.input_per_million,
                output_tokens,
                self._pricing.output_per_million,
                record.conversation_id,
            ),
        )
        return cursor.lastrowid  # type: ignore[return-value]

    async def _attach_tool_executions(
        self, conversation_id: str, messages: list[MessageRecord]
    ) -> list[MessageRecord]:
        if not messages:
            return messages
        cursor = await self._db.conn.execute(
            "SELECT * FROM tool_executions WHERE conversation_id = ? ORDER BY id ASC",
            (conversation_id,),
        )
        by_message: dict[int, list[ToolExecutionRecord]] = {}
        for row in await cursor.fetchall():
            execution = self._row_to_tool_execution(row)
            by_message.setdefault(execution.message_id, []).append(execution)
        for message in messages:
            message.tool_executions = by_message.get(message.id, [])  # type: ignore[arg-type]
        return messages

    @staticmethod
    def _row_to_conversation(row) -> ConversationRecord:
        return ConversationRecord(
            id=row["id"],
            title=row["title"],
            created_at=datetime.fromisoformat(row["created_at"]),
            updated_at=datetime.fromisoformat(row["updated_at"]),
            token_count=row["token_count"],
            input_token_count=row["input_token_count"],
            output_token_count=row["output_token_count"],
            message_count=row["message_count"],
            tool_execution_count=row["tool_execution_count"],
            estimated_cost=row["estimated_cost"],
            summary=row["summary"],
            summarized_at=_parse_ts(row["summarized_at"]),
            times_summarized=row["times_summarized"],
            metadata=_loads(row["metadata_json"], {}),
        )

    @staticmethod
    def _row_to_message(row) -> MessageRecord:
        return MessageRecord(
            id=row["id"],
            conversation_id=row["conversation_id"],
            role=Role(row["role"]),
            content=row["content"],
            token_count=row["token_count"],
            streaming_group_id=row["streaming_group_id"],
            stopped=bool(row["stopped"]),
            stop_reason=row["stop_reason"],
            is_summary=bool(row["is_summary"]),
            messages_summarized=row["messages_summarized"],
            context_start_id=row["context_start_id"],
            metadata=_loads(row["metadata_json"], {}),
            created_at=datetime.fromisoformat(row["created_at"]),
        )

    @staticmethod
    def _row_to_tool_execution(row) -> ToolExecutionRecord:
        return ToolExecutionRecord(
            id=row["id"],
            message_id=row["message_id"],
            conversation_id=row["conversation_id"],
            call_id=row["call_id"],
            tool_name=row["tool_name"],
            tool_input=_loads(row["input_json"], {}),
            tool_output=_loads(row["output_json"], None),
            duration_ms=row["duration_ms"],
            success=bool(row["success"]),
            error=row["error"],
            created_at=datetime.fromisoformat(row["created_at"]),
        )
