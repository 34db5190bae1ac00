"""Shared types and enumerations."""

from __future__ import annotations

from enum import StrEnum


class Role(StrEnum):
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"


class TurnEndReason(StrEnum):
    """Why the provider ended a generation round."""

    TOOL_USE = "tool_use"
    END_TURN = "end_turn"
    MAX_TOKENS = "max_tokens"
    STOP_SEQUENCE = "stop_sequence"
    OTHER = "other"


class StopReason(StrEnum):
    """Why a turn was cancelled before it finished."""

    USER_REQUESTED = "user_requested"
    PEER_DISCONNECTED = "peer_disconnected"
    SHUTDOWN = "shutdown"


class TurnState(StrEnum):
    STREAMING = "streaming"
    TOOL_PHASE = "tool_phase"
    DONE = "done"
    ABORTED = "aborted"


class LimitKind(StrEnum):
    TOKEN = "token"
    MESSAGE = "message"
    TOOL = "tool"
    AGE = "age"


class CompactionStatus(StrEnum):
    OK = "ok"
    WARN = "warn"
    MUST_COMPACT = "must_compact"
