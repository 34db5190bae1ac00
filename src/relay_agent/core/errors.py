"""Exception hierarchy shared across the relay core.

A stopped turn is detected through its cancellation token, never through an
exception type. ToolCancelledError only reports a tool call that was abandoned
because its turn stopped.
"""

from __future__ import annotations


class RelayError(Exception):
    """Base class for all relay-agent errors."""


class ProviderError(RelayError):
    """The LLM provider call failed (network, quota, malformed request)."""


class ToolError(RelayError):
    """A single tool call failed. Always recovered into a tool result."""

    def __init__(self, tool_name: str, message: str):
        super().__init__(message)
        self.tool_name = tool_name


class ToolUnreachableError(ToolError):
    """No executor was connected when the request was broadcast."""


class ToolTimeoutError(ToolError):
    """No executor answered before the deadline."""


class ToolExecutionError(ToolError):
    """An executor answered with a failure."""


class UnknownToolError(ToolError):
    """The model asked for a tool that is not in the catalog."""


class ToolCancelledError(ToolError):
    """The turn was stopped while the call was waiting for an executor."""


class PersistenceError(RelayError):
    """A write or read against the conversation store failed."""


class ConversationNotFoundError(RelayError):
    def __init__(self, conversation_id: str):
        super().__init__(f"Conversation not found: {conversation_id}")
        self.conversation_id = conversation_id


class TurnInProgressError(RelayError):
    """A connection tried to start a second turn while one is still running."""

    def __init__(self, connection_id: str):
        super().__init__(f"A turn is already in progress for connection {connection_id}")
        self.connection_id = connection_id
