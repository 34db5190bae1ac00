"""Streaming turn driver: provider stream, tool phases, persistence, cancellation.

A turn runs as an explicit state machine. Each provider round streams text
to the client; a round that ends for tool use persists the assistant message,
runs every requested tool concurrently, records the executions and streams
again from the rebuilt context. The cancellation token is checked before each
provider event, so a stop takes effect at the next event boundary.
"""

from __future__ import annotations

import asyncio
import json
import time
import uuid
from contextlib import aclosing
from dataclasses import dataclass, field
from typing import Any, Optional

from relay_agent.ai.client import ProviderAdapter
from relay_agent.ai.conversation import build_messages
from relay_agent.ai.events import StreamEnd, TextFragment, ToolCallArgFragment, ToolCallStart, TurnEnd
from relay_agent.ai.tools.base import ToolContext
from relay_agent.ai.tools.registry import ToolRegistry
from relay_agent.config import LimitsConfig, ProviderConfig
from relay_agent.core import limits as limit_policy
from relay_agent.core.cancellation import ActiveTurn, CancellationRegistry
from relay_agent.core.errors import (
    ConversationNotFoundError,
    PersistenceError,
    ProviderError,
    ToolError,
    ToolExecutionError,
    UnknownToolError,
)
from relay_agent.core.types import CompactionStatus, Role, TurnEndReason, TurnState
from relay_agent.log import get_logger
from relay_agent.server.protocol import (
    Channel,
    CompactionSuggested,
    LimitWarning,
    TextFragmentNotice,
    ToolCallResult,
    ToolCallStarted,
    TurnComplete,
    TurnCreated,
    TurnError,
    UsageUpdate,
)
from relay_agent.storage.conversation_repo import ConversationRepository
from relay_agent.storage.models import ConversationRecord, MessageRecord, ToolExecutionRecord

logger = get_logger(__name__)

TOOL_ONLY_PLACEHOLDER = "[Tool use only]"


def new_streaming_group_id() -> str:
    return f"sg_{uuid.uuid4().hex[:16]}"


@dataclass
class PendingCall:
    """A tool call announced by the provider, arguments still accumulating."""

    call_id: str
    name: str
    chunks: list[str] = field(default_factory=list)

    def arguments(self) -> dict[str, Any]:
        raw = "".join(self.chunks).strip()
        if not raw:
            return {}
        try:
            value = json.loads(raw)
        except json.JSONDecodeError as e:
            raise ToolExecutionError(self.name, f"Invalid arguments for {self.name}: {e.msg}") from e
        if not isinstance(value, dict):
            raise ToolExecutionError(self.name, f"Arguments for {self.name} must be a JSON object")
        return value


@dataclass
class RoundBuffer:
    """Everything one provider round produced."""

    streaming_group_id: str
    text_parts: list[str] = field(default_factory=list)
    calls: list[PendingCall] = field(default_factory=list)
    end_reason: Optional[TurnEndReason] = None

    @property
    def text(self) -> str:
        return "".join(self.text_parts)

    def start_call(self, call_id: str, name: str) -> None:
        self.calls.append(PendingCall(call_id=call_id, name=name))

    def append_arguments(self, chunk: str, call_id: str | None) -> None:
        if not self.calls:
            return
        if call_id is not None:
            for call in reversed(self.calls):
                if call.call_id == call_id:
                    call.chunks.append(chunk)
                    return
        self.calls[-1].chunks.append(chunk)


@dataclass
class ToolCallOutcome:
    call_id: str
    tool_name: str
    tool_input: dict[str, Any]
    output: Any
    success: bool
    error: Optional[str] = None
    duration_ms: int = 0


@dataclass
class TurnOutcome:
    """Summary of a finished turn, returned to the transport and to tests."""

    state: TurnState
    conversation_id: Optional[str] = None
    message_id: Optional[int] = None
    rounds: int = 0
    error: Optional[str] = None


class StreamOrchestrator:
    def __init__(
        self,
        provider: ProviderAdapter,
        conversation_repo: ConversationRepository,
        tool_registry: ToolRegistry,
        cancellation: CancellationRegistry,
        provider_config: ProviderConfig,
        limits: LimitsConfig,
    ):
        self._provider = provider
        self._repo = conversation_repo
        self._tools = tool_registry
        self._cancellation = cancellation
        self._config = provider_config
        self._limits = limits

    async def run_turn(self, channel: Channel, conversation_id: str | None, text: str) -> TurnOutcome:
        """Register a turn for *channel* and drive it to completion.

        Raises TurnInProgressError if the channel already has a turn running.
        """
        turn = self._cancellation.begin(channel, conversation_id)
        return await self.drive(turn, text)

    async def drive(self, turn: ActiveTurn, text: str) -> TurnOutcome:
        """Drive an already registered turn. The registry entry is always released."""
        outcome = TurnOutcome(state=TurnState.STREAMING, conversation_id=turn.conversation_id)
        try:
            conversation = await self._open_conversation(turn)
            outcome.conversation_id = conversation.id

            prompt = text.strip()
            if prompt:
                await self._repo.add_message(conversation.id, Role.USER, prompt)
            logger.info("turn_started", conversation_id=conversation.id, connection_id=turn.connection_id)

            await self._loop(turn, conversation.id, outcome)
        except ProviderError as e:
            if turn.token.cancelled:
                outcome.state = TurnState.ABORTED
            else:
                await self._fail(turn, outcome, str(e))
        except (PersistenceError, ConversationNotFoundError) as e:
            await self._fail(turn, outcome, str(e))
        finally:
            self._cancellation.finish(turn)

        logger.info(
            "turn_finished",
            conversation_id=outcome.conversation_id,
            state=outcome.state.value,
            rounds=outcome.rounds,
            elapsed_s=round(time.monotonic() - turn.started_at, 3),
        )
        return outcome

    async def _loop(self, turn: ActiveTurn, conversation_id: str, outcome: TurnOutcome) -> None:
        while outcome.state is TurnState.STREAMING:
            if turn.token.cancelled:
                outcome.state = TurnState.ABORTED
                break
            if outcome.rounds >= self._config.max_tool_rounds:
                logger.warning("tool_round_limit_reached", conversation_id=conversation_id, rounds=outcome.rounds)
                await self._fail(turn, outcome, f"Tool round limit reached ({self._config.max_tool_rounds})")
                break

            outcome.rounds += 1
            buffer = await self._stream_round(turn, conversation_id)

            if turn.token.cancelled:
                await self._persist_partial(turn, conversation_id, buffer)
                outcome.state = TurnState.ABORTED
                break

            if buffer.end_reason is TurnEndReason.TOOL_USE and buffer.calls:
                outcome.state = TurnState.TOOL_PHASE
                message = await self._persist_assistant(conversation_id, buffer, placeholder=True)
                turn.message_id = message.id
                outcome.message_id = message.id
                await self._run_tool_phase(turn, conversation_id, message, buffer)
                outcome.state = TurnState.ABORTED if turn.token.cancelled else TurnState.STREAMING
                continue

            message = None
            if buffer.text.strip():
                message = await self._persist_assistant(conversation_id, buffer, placeholder=False)
                outcome.message_id = message.id
            if turn.token.cancelled:
                if message is not None:
                    try:
                        await self._repo.mark_message_stopped(message.id, turn.token.reason or "")  # type: ignore[arg-type]
                    except PersistenceError as e:
                        logger.error("stop_persist_failed", message_id=message.id, error=str(e))
                outcome.state = TurnState.ABORTED
                break
            await self._complete(turn, conversation_id, buffer, message)
            outcome.state = TurnState.DONE

    async def _open_conversation(self, turn: ActiveTurn) -> ConversationRecord:
        if turn.conversation_id:
            conversation = await self._repo.get_conversation(turn.conversation_id)
            if conversation is not None:
                return conversation
            logger.warning("conversation_not_found", conversation_id=turn.conversation_id)

        conversation = await self._repo.create_conversation()
        turn.conversation_id = conversation.id
        await turn.channel.send(TurnCreated(conversation_id=conversation.id, title=conversation.title).to_dict())
        return conversation

    async def _stream_round(self, turn: ActiveTurn, conversation_id: str) -> RoundBuffer:
        buffer = RoundBuffer(streaming_group_id=new_streaming_group_id())
        turn.streaming_group_id = buffer.streaming_group_id
        turn.message_id = None

        history = await self._repo.get_context_messages(conversation_id)
        messages = build_messages(history)
        tools = self._tools.api_definitions() or None

        try:
            async with aclosing(self._provider.stream(self._config.system_prompt, messages, tools)) as events:
                async for event in events:
                    if turn.token.cancelled:
                        logger.info("stream_cancelled", conversation_id=conversation_id, reason=turn.token.reason)
                        break
                    match event:
                        case TextFragment(text=fragment):
                            buffer.text_parts.append(fragment)
                            await turn.channel.send(
                                TextFragmentNotice(
                                    conversation_id=conversation_id,
                                    streaming_group_id=buffer.streaming_group_id,
                                    text=fragment,
                                ).to_dict()
                            )
                        case ToolCallStart(call_id=call_id, name=name):
                            buffer.start_call(call_id, name)
                        case ToolCallArgFragment(partial_json=chunk, call_id=call_id):
                            buffer.append_arguments(chunk, call_id)
                        case TurnEnd(reason=reason):
                            buffer.end_reason = reason
                            logger.debug("round_ended", conversation_id=conversation_id, reason=reason.value)
                            break
                        case StreamEnd():
                            break
        except ProviderError as e:
            # A stream torn down after a stop still yields its partial text
            if not turn.token.cancelled:
                raise
            logger.info("stream_error_after_stop", conversation_id=conversation_id, error=str(e))

        if buffer.end_reason is None:
            buffer.end_reason = TurnEndReason.OTHER
        return buffer

    async def _persist_assistant(
        self, conversation_id: str, buffer: RoundBuffer, placeholder: bool
    ) -> MessageRecord:
        content = buffer.text.strip()
        if not content and placeholder:
            content = TOOL_ONLY_PLACEHOLDER
        return await self._repo.add_message(
            conversation_id,
            Role.ASSISTANT,
            content,
            streaming_group_id=buffer.streaming_group_id,
        )

    async def _persist_partial(self, turn: ActiveTurn, conversation_id: str, buffer: RoundBuffer) -> None:
        """Keep whatever text was relayed before the stop, flagged as stopped."""
        content = buffer.text.strip()
        if not content:
            return
        try:
            await self._repo.add_message(
                conversation_id,
                Role.ASSISTANT,
                content,
                streaming_group_id=buffer.streaming_group_id,
                stopped=True,
                stop_reason=turn.token.reason,
            )
        except PersistenceError as e:
            logger.error("partial_persist_failed", conversation_id=conversation_id, error=str(e))

    async def _run_tool_phase(
        self, turn: ActiveTurn, conversation_id: str, message: MessageRecord, buffer: RoundBuffer
    ) -> list[ToolCallOutcome]:
        logger.info(
            "tool_phase_started",
            conversation_id=conversation_id,
            message_id=message.id,
            tools=[c.name for c in buffer.calls],
        )
        return list(
            await asyncio.gather(
                *(self._execute_call(turn, conversation_id, message, buffer, call) for call in buffer.calls)
            )
        )

    async def _execute_call(
        self,
        turn: ActiveTurn,
        conversation_id: str,
        message: MessageRecord,
        buffer: RoundBuffer,
        call: PendingCall,
    ) -> ToolCallOutcome:
        started = time.monotonic()
        arguments: dict[str, Any] = {}
        parse_error: ToolError | None = None
        try:
            arguments = call.arguments()
        except ToolError as e:
            parse_error = e
        await turn.channel.send(
            ToolCallStarted(
                conversation_id=conversation_id,
                streaming_group_id=buffer.streaming_group_id,
                call_id=call.call_id,
                tool_name=call.name,
                tool_input=arguments,
            ).to_dict()
        )

        try:
            if parse_error is not None:
                raise parse_error
            tool = self._tools.get(call.name)
            if tool is None:
                raise UnknownToolError(call.name, f"Unknown tool: {call.name}")
            context = ToolContext(
                conversation_id=conversation_id,
                message_id=message.id,  # type: ignore[arg-type]
                call_id=call.call_id,
                channel=turn.channel,
                token=turn.token,
            )
            output = await tool.execute(context, arguments)
            outcome = ToolCallOutcome(call.call_id, call.name, arguments, output, success=True)
        except ToolError as e:
            logger.warning("tool_call_failed", tool_name=call.name, call_id=call.call_id, error=str(e))
            outcome = ToolCallOutcome(
                call.call_id, call.name, arguments, {"error": str(e)}, success=False, error=str(e)
            )
        except Exception as e:
            logger.error("tool_call_error", tool_name=call.name, call_id=call.call_id, error=str(e))
            message_text = f"Error executing {call.name}: {e}"
            outcome = ToolCallOutcome(
                call.call_id, call.name, arguments, {"error": message_text}, success=False, error=message_text
            )
        outcome.duration_ms = int((time.monotonic() - started) * 1000)

        try:
            await self._repo.add_tool_execution(
                ToolExecutionRecord(
                    message_id=message.id,  # type: ignore[arg-type]
                    conversation_id=conversation_id,
                    tool_name=outcome.tool_name,
                    tool_input=outcome.tool_input,
                    tool_output=outcome.output,
                    call_id=outcome.call_id,
                    duration_ms=outcome.duration_ms,
                    success=outcome.success,
                    error=outcome.error,
                )
            )
        except PersistenceError as e:
            logger.error("tool_execution_persist_failed", call_id=call.call_id, error=str(e))

        await turn.channel.send(
            ToolCallResult(
                conversation_id=conversation_id,
                streaming_group_id=buffer.streaming_group_id,
                call_id=outcome.call_id,
                tool_name=outcome.tool_name,
                tool_output=outcome.output,
                error=outcome.error,
            ).to_dict()
        )
        return outcome

    async def _complete(
        self,
        turn: ActiveTurn,
        conversation_id: str,
        buffer: RoundBuffer,
        message: MessageRecord | None,
    ) -> None:
        await turn.channel.send(
            TurnComplete(
                conversation_id=conversation_id,
                streaming_group_id=buffer.streaming_group_id,
                message_id=message.id if message else None,
            ).to_dict()
        )

        conversation = await self._repo.get_conversation(conversation_id)
        if conversation is None:
            return
        await turn.channel.send(
            UsageUpdate(
                conversation_id=conversation_id,
                token_count=conversation.token_count,
                message_count=conversation.message_count,
                tool_count=conversation.tool_execution_count,
                estimated_cost=conversation.estimated_cost,
                token_limit=self._limits.tokens,
            ).to_dict()
        )

        report = limit_policy.evaluate(conversation, self._limits)
        if report.warnings:
            await turn.channel.send(
                LimitWarning(
                    conversation_id=conversation_id,
                    warnings=[w.to_dict() for w in report.warnings],
                ).to_dict()
            )
        if report.status is CompactionStatus.MUST_COMPACT:
            logger.info("compaction_suggested", conversation_id=conversation_id, reason=report.reason)
            await turn.channel.send(
                CompactionSuggested(conversation_id=conversation_id, reason=report.reason or "").to_dict()
            )

    async def _fail(self, turn: ActiveTurn, outcome: TurnOutcome, error: str) -> None:
        logger.error("turn_failed", conversation_id=turn.conversation_id, error=error)
        outcome.state = TurnState.DONE
        outcome.error = error
        await turn.channel.send(
            TurnError(
                conversation_id=turn.conversation_id,
                streaming_group_id=turn.streaming_group_id,
                error=error,
            ).to_dict()
        )
