"""Per-connection registry of in-flight turns and their cancellation tokens."""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Optional

from relay_agent.core.errors import PersistenceError, TurnInProgressError
from relay_agent.core.types import StopReason
from relay_agent.log import get_logger
from relay_agent.server.protocol import Channel, TurnStopped

if TYPE_CHECKING:
    from relay_agent.storage.conversation_repo import ConversationRepository

logger = get_logger(__name__)

_STOP_MESSAGES = {
    StopReason.USER_REQUESTED: "Generation stopped",
    StopReason.PEER_DISCONNECTED: "Client disconnected",
    StopReason.SHUTDOWN: "Server shutting down",
}


class CancellationToken:
    """Advisory stop flag polled by the orchestrator at event boundaries."""

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason: Optional[str] = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str) -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    async def wait(self) -> None:
        await self._event.wait()


@dataclass
class ActiveTurn:
    connection_id: str
    channel: Channel
    token: CancellationToken = field(default_factory=CancellationToken)
    conversation_id: Optional[str] = None
    streaming_group_id: Optional[str] = None
    message_id: Optional[int] = None  # persisted assistant message of the current round
    started_at: float = field(default_factory=time.monotonic)
    stopping: bool = False


class CancellationRegistry:
    """One entry per connection while that connection has a turn running.

    Stop requests and transport-close events both land here. A stopped turn
    keeps its slot until the driver calls ``finish``, so no new turn can start
    on the connection while the old one is still winding down. Flagging the
    entry as stopping before any await makes a repeated stop a no-op.
    """

    def __init__(self, conversation_repo: ConversationRepository):
        self._repo = conversation_repo
        self._active: dict[str, ActiveTurn] = {}

    def is_active(self, connection_id: str) -> bool:
        return connection_id in self._active

    def get(self, connection_id: str) -> ActiveTurn | None:
        return self._active.get(connection_id)

    def __len__(self) -> int:
        return len(self._active)

    def begin(self, channel: Channel, conversation_id: str | None = None) -> ActiveTurn:
        """Register a new in-flight turn for *channel*."""
        if channel.id in self._active:
            raise TurnInProgressError(channel.id)
        turn = ActiveTurn(connection_id=channel.id, channel=channel, conversation_id=conversation_id)
        self._active[channel.id] = turn
        return turn

    def finish(self, turn: ActiveTurn) -> None:
        """Drop *turn* if it is still the registered one."""
        if self._active.get(turn.connection_id) is turn:
            del self._active[turn.connection_id]

    async def request_stop(self, connection_id: str, reason: str = StopReason.USER_REQUESTED) -> bool:
        """Stop the connection's in-flight turn. Returns False when there is none."""
        turn = self._active.get(connection_id)
        if turn is None or turn.stopping:
            return False

        turn.stopping = True
        turn.token.cancel(reason)
        elapsed = time.monotonic() - turn.started_at
        logger.info(
            "turn_stop_requested",
            connection_id=connection_id,
            conversation_id=turn.conversation_id,
            reason=reason,
            elapsed_s=round(elapsed, 3),
        )

        if turn.message_id is not None:
            try:
                await self._repo.mark_message_stopped(turn.message_id, reason)
            except PersistenceError as e:
                logger.error("stop_persist_failed", message_id=turn.message_id, error=str(e))

        await turn.channel.send(
            TurnStopped(
                conversation_id=turn.conversation_id,
                streaming_group_id=turn.streaming_group_id,
                reason=reason,
                message=_STOP_MESSAGES.get(reason, "Generation stopped"),
            ).to_dict()
        )
        return True

    async def on_disconnect(self, connection_id: str) -> bool:
        return await self.request_stop(connection_id, StopReason.PEER_DISCONNECTED)

    async def stop_all(self, reason: str = StopReason.SHUTDOWN) -> int:
        stopped = 0
        for connection_id in list(self._active):
            if await self.request_stop(connection_id, reason):
                stopped += 1
        return stopped
