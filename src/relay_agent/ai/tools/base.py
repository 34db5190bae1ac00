"""Abstract tool interface for model tool use."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Optional

from relay_agent.core.cancellation import CancellationToken
from relay_agent.server.protocol import Channel


@dataclass(frozen=True, slots=True)
class ToolContext:
    """Where a tool call came from."""

    conversation_id: str
    message_id: int
    call_id: str
    channel: Channel
    token: Optional[CancellationToken] = None  # the owning turn's stop flag


class Tool(ABC):
    """Base class for all model-callable tools."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Unique tool name sent to the provider."""
        ...

    @property
    @abstractmethod
    def description(self) -> str:
        ...

    @property
    @abstractmethod
    def input_schema(self) -> dict[str, Any]:
        """JSON Schema dict describing accepted parameters."""
        ...

    @abstractmethod
    async def execute(self, context: ToolContext, arguments: dict[str, Any]) -> Any:
        """Run the tool and return a JSON-serializable result.

        Failures are reported by raising ToolError subclasses.
        """
        ...

    def to_api_dict(self) -> dict[str, Any]:
        """Serialize to the provider tool definition format."""
        return {
            "name": self.name,
            "description": self.description,
            "input_schema": self.input_schema,
        }
