"""Tool registry for discovering and managing available tools."""

from __future__ import annotations

from typing import Any

from relay_agent.ai.tools.base import Tool
from relay_agent.ai.tools.remote import RemoteTool
from relay_agent.config import ToolDeclaration
from relay_agent.executor.broker import ToolExecutionBroker
from relay_agent.log import get_logger

logger = get_logger(__name__)


class ToolRegistry:
    """Registry of all tools offered to the model."""

    def __init__(self) -> None:
        self._tools: dict[str, Tool] = {}

    def register(self, tool: Tool) -> None:
        if tool.name in self._tools:
            logger.warning("tool_replaced", tool_name=tool.name)
        self._tools[tool.name] = tool
        logger.debug("tool_registered", tool_name=tool.name)

    def register_remote(
        self,
        declarations: list[ToolDeclaration],
        broker: ToolExecutionBroker,
        timeout: float | None = None,
    ) -> None:
        for declaration in declarations:
            self.register(RemoteTool(declaration, broker, timeout=timeout))

    def get(self, name: str) -> Tool | None:
        return self._tools.get(name)

    def all_tools(self) -> list[Tool]:
        return list(self._tools.values())

    def api_definitions(self) -> list[dict[str, Any]]:
        return [t.to_api_dict() for t in self._tools.values()]

    def __len__(self) -> int:
        return len(self._tools)
