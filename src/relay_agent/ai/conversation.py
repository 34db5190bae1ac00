"""Convert stored conversation records into the outbound provider message format."""

from __future__ import annotations

import json
from typing import Any

from relay_agent.core.types import Role
from relay_agent.storage.models import MessageRecord, ToolExecutionRecord


def tool_result_content(execution: ToolExecutionRecord) -> str:
    """Serialize a tool output the way the provider expects a tool_result body."""
    output = execution.tool_output
    if output is None:
        output = {"error": execution.error} if execution.error else {}
    if isinstance(output, str):
        return output
    return json.dumps(output)


def build_messages(history: list[MessageRecord]) -> list[dict[str, Any]]:
    """Convert stored message records into provider messages.

    User and system (summary) records become plain user text. An assistant
    record with tool executions becomes an assistant message holding its text
    plus one ``tool_use`` block per execution, immediately followed by a user
    message holding the matching ``tool_result`` blocks. Executions without a
    provider call id cannot be paired and are left out.
    """
    messages: list[dict[str, Any]] = []

    for record in history:
        text = record.content.strip()

        if record.role in (Role.USER, Role.SYSTEM):
            if text:
                messages.append({"role": "user", "content": text})
            continue

        paired = [t for t in record.tool_executions if t.call_id]
        if not paired:
            if text:
                messages.append({"role": "assistant", "content": text})
            continue

        content_blocks: list[dict[str, Any]] = []
        if text:
            content_blocks.append({"type": "text", "text": text})
        for execution in paired:
            content_blocks.append(
                {
                    "type": "tool_use",
                    "id": execution.call_id,
                    "name": execution.tool_name,
                    "input": execution.tool_input or {},
                }
            )
        messages.append({"role": "assistant", "content": content_blocks})

        result_blocks: list[dict[str, Any]] = []
        for execution in paired:
            block: dict[str, Any] = {
                "type": "tool_result",
                "tool_use_id": execution.call_id,
                "content": tool_result_content(execution),
            }
            if not execution.success:
                block["is_error"] = True
            result_blocks.append(block)
        messages.append({"role": "user", "content": result_blocks})

    return messages
