"""WebSocket frame models shared by the transport and the relay core."""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Annotated, Any, ClassVar, Literal, Optional, Protocol, Union

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, TypeAdapter, ValidationError


class Channel(Protocol):
    """One live connection. Used both as a client sink and as an executor."""

    id: str

    async def send(self, payload: dict[str, Any]) -> bool:
        """Send a frame; False when the peer has gone away."""
        ...


def _camel(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(part.title() for part in rest)


# -- outbound (core -> client) ------------------------------------------------


@dataclass(frozen=True, slots=True)
class OutboundEvent:
    type: ClassVar[str] = ""

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"type": self.type}
        payload.update({_camel(k): v for k, v in asdict(self).items()})
        payload["timestamp"] = datetime.now(timezone.utc).isoformat()
        return payload


@dataclass(frozen=True, slots=True)
class Welcome(OutboundEvent):
    type: ClassVar[str] = "welcome"
    connection_id: str
    message: str = "Connected to relay-agent"


@dataclass(frozen=True, slots=True)
class Pong(OutboundEvent):
    type: ClassVar[str] = "pong"


@dataclass(frozen=True, slots=True)
class ErrorNotice(OutboundEvent):
    type: ClassVar[str] = "error"
    message: str
    received_type: Optional[str] = None


@dataclass(frozen=True, slots=True)
class TurnCreated(OutboundEvent):
    type: ClassVar[str] = "turn_created"
    conversation_id: str
    title: str


@dataclass(frozen=True, slots=True)
class TextFragmentNotice(OutboundEvent):
    type: ClassVar[str] = "text_fragment"
    conversation_id: str
    streaming_group_id: str
    text: str


@dataclass(frozen=True, slots=True)
class ToolCallStarted(OutboundEvent):
    type: ClassVar[str] = "tool_call_started"
    conversation_id: str
    streaming_group_id: str
    call_id: str
    tool_name: str
    tool_input: Any


@dataclass(frozen=True, slots=True)
class ToolCallResult(OutboundEvent):
    type: ClassVar[str] = "tool_call_result"
    conversation_id: str
    streaming_group_id: str
    call_id: str
    tool_name: str
    tool_output: Any
    error: Optional[str] = None


@dataclass(frozen=True, slots=True)
class TurnStopped(OutboundEvent):
    type: ClassVar[str] = "turn_stopped"
    conversation_id: Optional[str]
    streaming_group_id: Optional[str]
    reason: str
    message: str = "Generation stopped"


@dataclass(frozen=True, slots=True)
class TurnError(OutboundEvent):
    type: ClassVar[str] = "turn_error"
    conversation_id: Optional[str]
    streaming_group_id: Optional[str]
    error: str


@dataclass(frozen=True, slots=True)
class TurnComplete(OutboundEvent):
    type: ClassVar[str] = "turn_complete"
    conversation_id: str
    streaming_group_id: str
    message_id: Optional[int] = None


@dataclass(frozen=True, slots=True)
class UsageUpdate(OutboundEvent):
    type: ClassVar[str] = "usage_update"
    conversation_id: str
    token_count: int
    message_count: int
    tool_count: int
    estimated_cost: float
    token_limit: int


@dataclass(frozen=True, slots=True)
class LimitWarning(OutboundEvent):
    type: ClassVar[str] = "limit_warning"
    conversation_id: str
    warnings: list[dict[str, Any]] = field(default_factory=list)


@dataclass(frozen=True, slots=True)
class CompactionSuggested(OutboundEvent):
    type: ClassVar[str] = "compaction_suggested"
    conversation_id: str
    reason: str


@dataclass(frozen=True, slots=True)
class CompactionComplete(OutboundEvent):
    type: ClassVar[str] = "compaction_complete"
    conversation_id: str
    messages_summarized: int
    messages_kept: int
    summary_length: int


# -- inbound (client / executor -> core) --------------------------------------


class _Frame(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class PromptFrame(_Frame):
    type: Literal["prompt"]
    conversation_id: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("conversationId", "conversation_id")
    )
    text: str = Field(default="", validation_alias=AliasChoices("text", "message"))


class StopFrame(_Frame):
    type: Literal["stop"]


class ToolResponseFrame(_Frame):
    type: Literal["tool_response"]
    correlation_id: str = Field(validation_alias=AliasChoices("correlationId", "correlation_id"))
    success: Optional[bool] = None
    result: Any = None
    error: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        if self.success is not None:
            return self.success
        return self.error is None


class PingFrame(_Frame):
    type: Literal["ping"]


InboundFrame = Annotated[
    Union[PromptFrame, StopFrame, ToolResponseFrame, PingFrame],
    Field(discriminator="type"),
]

_inbound_adapter: TypeAdapter = TypeAdapter(InboundFrame)

FRAME_TYPES = frozenset({"prompt", "stop", "tool_response", "ping"})

# Frame names used by earlier clients of the chat hub
LEGACY_FRAME_TYPES = {
    "llm_user_prompt": "prompt",
    "llm_stop": "stop",
    "response": "tool_response",
}


class FrameError(ValueError):
    def __init__(self, message: str, received_type: str | None = None):
        super().__init__(message)
        self.received_type = received_type


def parse_frame(raw: str | bytes) -> PromptFrame | StopFrame | ToolResponseFrame | PingFrame:
    """Decode and validate one inbound frame.

    Raises FrameError for malformed JSON, unknown types or invalid fields.
    """
    try:
        data = json.loads(raw)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise FrameError("Invalid JSON format") from e
    if not isinstance(data, dict):
        raise FrameError("Frame must be a JSON object")

    frame_type = data.get("type")
    frame_type = LEGACY_FRAME_TYPES.get(frame_type, frame_type)
    if frame_type not in FRAME_TYPES:
        raise FrameError("Unknown message type", received_type=str(frame_type))

    try:
        return _inbound_adapter.validate_python({**data, "type": frame_type})
    except ValidationError as e:
        raise FrameError(f"Invalid {frame_type} frame: {e.errors()[0]['msg']}", frame_type) from e
