"""Data models for storage layer."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional

from relay_agent.core.types import Role


def utcnow() -> datetime:
    """Naive UTC timestamp, matching what SQLite's strftime('now') stores."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


@dataclass
class ToolExecutionRecord:
    message_id: int
    conversation_id: str
    tool_name: str
    tool_input: Any = field(default_factory=dict)
    tool_output: Any = None
    call_id: Optional[str] = None  # provider-issued id, pairs tool_use with tool_result
    duration_ms: int = 0
    success: bool = True
    error: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    id: Optional[int] = None


@dataclass
class MessageRecord:
    conversation_id: str
    role: Role
    content: str
    token_count: int = 0
    streaming_group_id: Optional[str] = None
    stopped: bool = False
    stop_reason: Optional[str] = None
    is_summary: bool = False
    messages_summarized: int = 0
    context_start_id: Optional[int] = None  # summary markers only: first kept message
    metadata: dict = field(default_factory=dict)
    created_at: datetime = field(default_factory=utcnow)
    id: Optional[int] = None
    tool_executions: list[ToolExecutionRecord] = field(default_factory=list)


@dataclass
class ConversationRecord:
    id: str
    title: str = "New Conversation"
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    token_count: int = 0
    input_token_count: int = 0
    output_token_count: int = 0
    message_count: int = 0
    tool_execution_count: int = 0
    estimated_cost: float = 0.0
    summary: Optional[str] = None
    summarized_at: Optional[datetime] = None
    times_summarized: int = 0
    metadata: dict = field(default_factory=dict)

    def age_hours(self, now: datetime | None = None) -> float:
        now = now or utcnow()
        return max((now - self.created_at).total_seconds() / 3600.0, 0.0)

    def usage(self) -> dict[str, Any]:
        return {
            "tokenCount": self.token_count,
            "messageCount": self.message_count,
            "toolCount": self.tool_execution_count,
            "estimatedCost": round(self.estimated_cost, 6),
        }
