"""Context compaction: condense older messages into a summary marker.

History is never deleted. A summary marker records which message the live
context restarts from, so ``get_context_messages`` sends the provider the
marker plus the kept tail while every original row stays queryable.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from relay_agent.ai.client import ProviderAdapter
from relay_agent.log import get_logger
from relay_agent.storage.conversation_repo import ConversationRepository
from relay_agent.storage.models import MessageRecord

logger = get_logger(__name__)

DEFAULT_MESSAGES_TO_KEEP = 5

SUMMARY_SYSTEM_PROMPT = (
    "You condense chat transcripts into compact briefings that let the "
    "conversation continue without the original messages."
)


@dataclass
class CompactionResult:
    compacted: bool
    messages_summarized: int = 0
    messages_kept: int = 0
    summary: Optional[str] = None
    summary_message_id: Optional[int] = None


def build_summary_prompt(messages: list[MessageRecord]) -> str:
    """Build the condensation request. Tool names are listed, payloads are not."""
    lines = [
        "Please provide a concise summary of the following conversation. Focus on:",
        "- Key topics discussed",
        "- Important decisions or conclusions",
        "- User goals and intentions",
        "- Any unresolved questions or ongoing tasks",
        "- Technical details or data that should be preserved",
        "",
        f"Conversation to summarize ({len(messages)} messages):",
        "",
        "---",
    ]
    for message in messages:
        entry = f"\n[{message.role.value.upper()}]: {message.content.strip()}"
        if message.tool_executions:
            names = ", ".join(t.tool_name for t in message.tool_executions)
            entry += f"\n[Tools used: {names}]"
        lines.append(entry)
    lines.extend(
        [
            "",
            "---",
            "",
            "Please provide a comprehensive summary that preserves the essential "
            "context of this conversation.",
        ]
    )
    return "\n".join(lines)


class ContextCompactor:
    """Summarizes all but the most recent messages of a conversation."""

    def __init__(self, provider: ProviderAdapter, conversation_repo: ConversationRepository):
        self._provider = provider
        self._repo = conversation_repo

    async def compact(
        self, conversation_id: str, messages_to_keep: int = DEFAULT_MESSAGES_TO_KEEP
    ) -> CompactionResult:
        """Condense every non-summary message except the last *messages_to_keep*.

        Provider failures propagate as ProviderError and leave the
        conversation untouched.
        """
        messages_to_keep = max(messages_to_keep, 0)
        history = [m for m in await self._repo.get_messages(conversation_id) if not m.is_summary]

        split = max(len(history) - messages_to_keep, 0)
        remainder, kept = history[:split], history[split:]
        if not remainder:
            logger.info(
                "compaction_skipped",
                conversation_id=conversation_id,
                message_count=len(history),
                messages_to_keep=messages_to_keep,
            )
            return CompactionResult(compacted=False, messages_kept=len(kept))

        prompt = build_summary_prompt(remainder)
        summary = (await self._provider.complete(prompt, system=SUMMARY_SYSTEM_PROMPT)).strip()

        marker = await self._repo.add_summary(
            conversation_id,
            summary,
            messages_summarized=len(remainder),
            context_start_id=kept[0].id if kept else None,
            messages_to_keep=messages_to_keep,
        )
        logger.info(
            "conversation_compacted",
            conversation_id=conversation_id,
            messages_summarized=len(remainder),
            messages_kept=len(kept),
            summary_length=len(summary),
        )
        return CompactionResult(
            compacted=True,
            messages_summarized=len(remainder),
            messages_kept=len(kept),
            summary=summary,
            summary_message_id=marker.id,
        )
