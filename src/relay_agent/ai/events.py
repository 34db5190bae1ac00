"""Provider-agnostic stream events.

Every provider adapter maps its vendor stream onto these five shapes; the
orchestrator never looks at vendor-specific tags.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Union

from relay_agent.core.types import TurnEndReason


@dataclass(frozen=True, slots=True)
class TextFragment:
    text: str


@dataclass(frozen=True, slots=True)
class ToolCallStart:
    call_id: str
    name: str


@dataclass(frozen=True, slots=True)
class ToolCallArgFragment:
    partial_json: str
    call_id: Optional[str] = None  # None: the most recently started call


@dataclass(frozen=True, slots=True)
class TurnEnd:
    reason: TurnEndReason


@dataclass(frozen=True, slots=True)
class StreamEnd:
    pass


StreamEvent = Union[TextFragment, ToolCallStart, ToolCallArgFragment, TurnEnd, StreamEnd]
