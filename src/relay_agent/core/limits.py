"""Soft-limit accounting that decides when a conversation should be compacted."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional

from relay_agent.config import LimitsConfig
from relay_agent.core.types import CompactionStatus, LimitKind
from relay_agent.storage.models import ConversationRecord

_REASONS = {
    LimitKind.TOKEN: "token_limit",
    LimitKind.MESSAGE: "message_limit",
    LimitKind.TOOL: "tool_limit",
    LimitKind.AGE: "age_limit",
}


@dataclass(frozen=True, slots=True)
class LimitUsage:
    kind: LimitKind
    current: float
    limit: float

    @property
    def ratio(self) -> float:
        return self.current / self.limit if self.limit > 0 else 0.0

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "kind": self.kind.value,
            "current": round(self.current, 2) if self.kind == LimitKind.AGE else int(self.current),
            "limit": self.limit,
            "percentage": round(self.ratio * 100),
        }
        if self.kind == LimitKind.AGE:
            data["unit"] = "hours"
        return data


@dataclass(frozen=True, slots=True)
class LimitReport:
    status: CompactionStatus
    warnings: list[LimitUsage] = field(default_factory=list)
    reason: Optional[str] = None  # set when status is MUST_COMPACT


def measure(conversation: ConversationRecord, limits: LimitsConfig, now: datetime | None = None) -> list[LimitUsage]:
    return [
        LimitUsage(LimitKind.TOKEN, conversation.token_count, limits.tokens),
        LimitUsage(LimitKind.MESSAGE, conversation.message_count, limits.messages),
        LimitUsage(LimitKind.TOOL, conversation.tool_execution_count, limits.tool_executions),
        LimitUsage(LimitKind.AGE, conversation.age_hours(now), limits.age_hours),
    ]


def evaluate(
    conversation: ConversationRecord, limits: LimitsConfig, now: datetime | None = None
) -> LimitReport:
    """Classify a conversation as OK, WARN or MUST_COMPACT.

    Tokens, messages and tool executions force compaction at 100% of their
    limit. Age only forces it when the conversation also has more than
    ``min_messages_for_age`` messages, so short old conversations merely warn.
    """
    usages = measure(conversation, limits, now)
    warnings = [u for u in usages if u.ratio >= limits.warn_ratio]

    reason: Optional[str] = None
    for usage in usages:
        if usage.ratio < 1.0:
            continue
        if usage.kind == LimitKind.AGE and conversation.message_count <= limits.min_messages_for_age:
            continue
        reason = _REASONS[usage.kind]
        break

    if reason is not None:
        return LimitReport(CompactionStatus.MUST_COMPACT, warnings, reason)
    if warnings:
        return LimitReport(CompactionStatus.WARN, warnings)
    return LimitReport(CompactionStatus.OK)
