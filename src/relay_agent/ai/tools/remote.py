"""Tools whose execution happens on a connected remote executor."""

from __future__ import annotations

from typing import Any

from relay_agent.ai.tools.base import Tool, ToolContext
from relay_agent.config import ToolDeclaration
from relay_agent.executor.broker import ToolExecutionBroker


class RemoteTool(Tool):
    """Forwards calls through the broker and returns the executor's result."""

    def __init__(
        self,
        declaration: ToolDeclaration,
        broker: ToolExecutionBroker,
        timeout: float | None = None,
    ):
        self._declaration = declaration
        self._broker = broker
        self._timeout = timeout

    @property
    def name(self) -> str:
        return self._declaration.name

    @property
    def description(self) -> str:
        return self._declaration.description

    @property
    def input_schema(self) -> dict[str, Any]:
        return self._declaration.input_schema

    async def execute(self, context: ToolContext, arguments: dict[str, Any]) -> Any:
        return await self._broker.invoke(
            self.name,
            arguments,
            timeout=self._timeout,
            command=self._declaration.command or self.name,
            cancel_token=context.token,
        )
