"""WebSocket transport: connection lifecycle and frame dispatch."""

from __future__ import annotations

import asyncio
import json
import time
import uuid
from typing import Any

from websockets.asyncio.server import Server, ServerConnection, serve
from websockets.exceptions import ConnectionClosed, ConnectionClosedError

from relay_agent.ai.orchestrator import StreamOrchestrator
from relay_agent.config import ServerConfig
from relay_agent.core.cancellation import CancellationRegistry
from relay_agent.core.errors import TurnInProgressError
from relay_agent.executor.broker import ExecutorResponse, ToolExecutionBroker
from relay_agent.log import bind_connection, clear_connection, get_logger
from relay_agent.server.protocol import (
    Channel,
    ErrorNotice,
    FrameError,
    PingFrame,
    Pong,
    PromptFrame,
    StopFrame,
    ToolResponseFrame,
    Welcome,
    parse_frame,
)

logger = get_logger(__name__)


class Connection:
    """A live WebSocket peer. Serves as both client sink and tool executor."""

    def __init__(self, websocket: ServerConnection, connection_id: str | None = None):
        self.id = connection_id or f"conn_{uuid.uuid4().hex[:12]}"
        self.connected_at = time.monotonic()
        self._ws = websocket

    @property
    def remote_address(self) -> Any:
        return self._ws.remote_address

    async def send(self, payload: dict[str, Any]) -> bool:
        try:
            await self._ws.send(json.dumps(payload, default=str))
        except ConnectionClosed:
            return False
        return True


class ConnectionHub:
    """Tracks open connections. Every open connection is a candidate executor."""

    def __init__(self, max_connections: int = 100):
        self._max_connections = max_connections
        self._connections: dict[str, Channel] = {}

    @property
    def is_full(self) -> bool:
        return len(self._connections) >= self._max_connections

    def add(self, connection: Channel) -> None:
        self._connections[connection.id] = connection

    def remove(self, connection_id: str) -> None:
        self._connections.pop(connection_id, None)

    def get(self, connection_id: str) -> Channel | None:
        return self._connections.get(connection_id)

    def reachable(self) -> list[Channel]:
        return list(self._connections.values())

    def __len__(self) -> int:
        return len(self._connections)


class RelayServer:
    """Accepts connections and routes their frames into the relay core."""

    def __init__(
        self,
        config: ServerConfig,
        hub: ConnectionHub,
        orchestrator: StreamOrchestrator,
        cancellation: CancellationRegistry,
        broker: ToolExecutionBroker,
    ):
        self._config = config
        self._hub = hub
        self._orchestrator = orchestrator
        self._cancellation = cancellation
        self._broker = broker
        self._server: Server | None = None
        self._turn_tasks: set[asyncio.Task] = set()

    async def start(self) -> None:
        self._server = await serve(self.handle, self._config.host, self._config.port)
        logger.info("server_listening", host=self._config.host, port=self._config.port)

    async def stop(self, timeout: float = 5.0) -> None:
        """Wait briefly for turns to wind down, then close every connection."""
        if self._turn_tasks:
            _, pending = await asyncio.wait(set(self._turn_tasks), timeout=timeout)
            for task in pending:
                task.cancel()
        if self._server is not None:
            self._server.close()
            await self._server.wait_closed()
            self._server = None
        logger.info("server_stopped")

    async def handle(self, websocket: ServerConnection) -> None:
        if self._hub.is_full:
            logger.warning("connection_rejected", reason="max_connections", remote=websocket.remote_address)
            await websocket.close(1013, "Server at capacity")
            return

        connection = Connection(websocket)
        self._hub.add(connection)
        bind_connection(connection.id)
        logger.info("client_connected", remote=connection.remote_address, connections=len(self._hub))
        await connection.send(Welcome(connection_id=connection.id).to_dict())

        try:
            async for raw in websocket:
                await self.dispatch(connection, raw)
        except ConnectionClosedError as e:
            logger.warning("connection_closed_abnormally", code=e.rcvd.code if e.rcvd else None)
        finally:
            self._hub.remove(connection.id)
            await self._cancellation.on_disconnect(connection.id)
            logger.info("client_disconnected", connections=len(self._hub))
            clear_connection()

    async def dispatch(self, channel: Channel, raw: str | bytes) -> None:
        """Route one inbound frame."""
        try:
            frame = parse_frame(raw)
        except FrameError as e:
            logger.warning("invalid_frame", error=str(e), received_type=e.received_type)
            await channel.send(ErrorNotice(message=str(e), received_type=e.received_type).to_dict())
            return

        match frame:
            case PingFrame():
                await channel.send(Pong().to_dict())
            case PromptFrame():
                await self._start_turn(channel, frame)
            case StopFrame():
                if not await self._cancellation.request_stop(channel.id):
                    logger.debug("stop_without_active_turn", connection_id=channel.id)
            case ToolResponseFrame():
                response = ExecutorResponse(success=frame.succeeded, result=frame.result, error=frame.error)
                self._broker.resolve(frame.correlation_id, response)

    async def _start_turn(self, channel: Channel, frame: PromptFrame) -> None:
        try:
            turn = self._cancellation.begin(channel, frame.conversation_id)
        except TurnInProgressError:
            logger.info("prompt_rejected", reason="turn_in_progress", connection_id=channel.id)
            await channel.send(ErrorNotice(message="turn_in_progress", received_type="prompt").to_dict())
            return

        task = asyncio.create_task(self._orchestrator.drive(turn, frame.text), name=f"turn-{channel.id}")
        self._turn_tasks.add(task)
        task.add_done_callback(self._on_turn_done)

    def _on_turn_done(self, task: asyncio.Task) -> None:
        self._turn_tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("turn_task_failed", task=task.get_name(), error=str(exc), exc_info=exc)
