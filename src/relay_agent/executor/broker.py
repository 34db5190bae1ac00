"""Correlates tool requests broadcast to remote executors with their responses."""

from __future__ import annotations

import asyncio
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Optional, Protocol

from relay_agent.core.errors import (
    ToolCancelledError,
    ToolExecutionError,
    ToolTimeoutError,
    ToolUnreachableError,
)
from relay_agent.log import get_logger

if TYPE_CHECKING:
    from relay_agent.core.cancellation import CancellationToken

logger = get_logger(__name__)

DEFAULT_TIMEOUT = 10.0


class Executor(Protocol):
    """A connected peer able to run tool commands."""

    id: str

    async def send(self, payload: dict[str, Any]) -> bool:
        """Deliver a frame; False if the peer is no longer reachable."""
        ...


class ExecutorDirectory(Protocol):
    def reachable(self) -> list[Executor]:
        ...


@dataclass(frozen=True, slots=True)
class ExecutorResponse:
    success: bool
    result: Any = None
    error: Optional[str] = None


class ToolExecutionBroker:
    """Broadcasts tool requests and resolves them by correlation id.

    Responses are matched purely on correlation id, never on which connection
    sent them. The pending map is owned here and only mutated on the event loop.
    """

    def __init__(self, directory: ExecutorDirectory, default_timeout: float = DEFAULT_TIMEOUT):
        self._directory = directory
        self._default_timeout = default_timeout
        self._pending: dict[str, asyncio.Future[ExecutorResponse]] = {}

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    @staticmethod
    def new_correlation_id() -> str:
        return f"relay_{uuid.uuid4().hex}"

    async def invoke(
        self,
        tool_name: str,
        tool_input: dict[str, Any],
        timeout: float | None = None,
        command: str | None = None,
        cancel_token: CancellationToken | None = None,
    ) -> Any:
        """Run *tool_name* on whichever executor answers first.

        Raises ToolUnreachableError immediately when nobody is connected,
        ToolTimeoutError when the deadline passes, and ToolExecutionError when
        the executor reports a failure. If *cancel_token* fires first the call
        is abandoned with ToolCancelledError and any later response is dropped.
        """
        if cancel_token is not None and cancel_token.cancelled:
            raise ToolCancelledError(tool_name, f"Tool call {tool_name} cancelled: {cancel_token.reason}")

        deadline = self._default_timeout if timeout is None else timeout
        correlation_id = self.new_correlation_id()
        envelope = {
            "type": "tool_request",
            "correlationId": correlation_id,
            "command": command or tool_name,
            "params": tool_input,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

        future: asyncio.Future[ExecutorResponse] = asyncio.get_running_loop().create_future()
        # Register before sending so an instant reply cannot slip past us
        self._pending[correlation_id] = future
        try:
            delivered = await self._broadcast(envelope)
            if delivered == 0:
                raise ToolUnreachableError(tool_name, "No executors connected to broadcast to")

            logger.debug(
                "tool_request_sent",
                tool=tool_name,
                correlation_id=correlation_id,
                executors=delivered,
            )
            response = await self._await_response(tool_name, correlation_id, future, deadline, cancel_token)
        finally:
            self._pending.pop(correlation_id, None)

        if not response.success:
            raise ToolExecutionError(tool_name, f"Error executing {tool_name}: {response.error}")
        return response.result if response.result is not None else "Success"

    async def _await_response(
        self,
        tool_name: str,
        correlation_id: str,
        future: asyncio.Future[ExecutorResponse],
        deadline: float,
        cancel_token: CancellationToken | None,
    ) -> ExecutorResponse:
        if cancel_token is None:
            try:
                return await asyncio.wait_for(future, timeout=deadline)
            except asyncio.TimeoutError:
                logger.warning("tool_request_timeout", tool=tool_name, correlation_id=correlation_id)
                raise ToolTimeoutError(
                    tool_name,
                    f"Timeout waiting for response to {tool_name} after {deadline:g}s",
                ) from None

        stop = asyncio.ensure_future(cancel_token.wait())
        try:
            done, _ = await asyncio.wait(
                {future, stop}, timeout=deadline, return_when=asyncio.FIRST_COMPLETED
            )
        finally:
            stop.cancel()

        if future in done:
            return future.result()
        if stop in done:
            logger.info("tool_request_cancelled", tool=tool_name, correlation_id=correlation_id)
            raise ToolCancelledError(tool_name, f"Tool call {tool_name} cancelled: {cancel_token.reason}")
        logger.warning("tool_request_timeout", tool=tool_name, correlation_id=correlation_id)
        raise ToolTimeoutError(
            tool_name,
            f"Timeout waiting for response to {tool_name} after {deadline:g}s",
        )

    def resolve(self, correlation_id: str, response: ExecutorResponse) -> bool:
        """Complete the pending call for *correlation_id*.

        Returns False (and drops the response) when no call is waiting, e.g.
        after its deadline already passed.
        """
        future = self._pending.pop(correlation_id, None)
        if future is None or future.done():
            logger.debug("tool_response_dropped", correlation_id=correlation_id)
            return False
        future.set_result(response)
        return True

    def cancel_all(self, reason: str = "shutdown") -> int:
        """Fail every pending call; used on shutdown."""
        count = 0
        for correlation_id, future in list(self._pending.items()):
            if not future.done():
                future.set_exception(ToolUnreachableError("*", f"Executor link closed: {reason}"))
                count += 1
            self._pending.pop(correlation_id, None)
        return count

    async def _broadcast(self, envelope: dict[str, Any]) -> int:
        delivered = 0
        for executor in self._directory.reachable():
            if await executor.send(envelope):
                delivered += 1
        return delivered
