"""Server-side tool that lets the model compact its own conversation."""

from __future__ import annotations

from typing import Any

from relay_agent.ai.compactor import DEFAULT_MESSAGES_TO_KEEP, ContextCompactor
from relay_agent.ai.tools.base import Tool, ToolContext
from relay_agent.core.errors import ToolExecutionError
from relay_agent.server.protocol import CompactionComplete


class SummarizeConversationTool(Tool):
    def __init__(self, compactor: ContextCompactor):
        self._compactor = compactor

    @property
    def name(self) -> str:
        return "summarize_conversation"

    @property
    def description(self) -> str:
        return (
            "Summarize the conversation history to reduce token usage. Use this when "
            "the conversation is approaching its limits or when you receive a warning. "
            "Older messages are condensed into a summary; recent messages stay visible."
        )

    @property
    def input_schema(self) -> dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                "messagesToKeep": {
                    "type": "integer",
                    "minimum": 1,
                    "description": (
                        "Number of recent messages to keep visible (default: 5). Older "
                        "messages will only be accessible via the summary."
                    ),
                }
            },
        }

    async def execute(self, context: ToolContext, arguments: dict[str, Any]) -> Any:
        keep = arguments.get("messagesToKeep", DEFAULT_MESSAGES_TO_KEEP)
        if not isinstance(keep, int) or isinstance(keep, bool) or keep < 1:
            raise ToolExecutionError(self.name, "messagesToKeep must be a positive integer")

        result = await self._compactor.compact(context.conversation_id, keep)
        if not result.compacted:
            raise ToolExecutionError(self.name, "Not enough messages to summarize")

        summary = result.summary or ""
        await context.channel.send(
            CompactionComplete(
                conversation_id=context.conversation_id,
                messages_summarized=result.messages_summarized,
                messages_kept=result.messages_kept,
                summary_length=len(summary),
            ).to_dict()
        )
        return {
            "success": True,
            "messagesSummarized": result.messages_summarized,
            "messagesKept": result.messages_kept,
            "summaryLength": len(summary),
            "summary": summary[:200] + ("..." if len(summary) > 200 else ""),
        }
