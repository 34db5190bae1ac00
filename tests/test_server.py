"""Tests for frame dispatch and the connection hub."""

import asyncio

import pytest

from relay_agent.ai.events import StreamEnd, TextFragment, TurnEnd
from relay_agent.ai.orchestrator import StreamOrchestrator
from relay_agent.ai.tools.registry import ToolRegistry
from relay_agent.config import LimitsConfig, ProviderConfig, ServerConfig
from relay_agent.core.cancellation import CancellationRegistry
from relay_agent.core.types import TurnEndReason
from relay_agent.executor.broker import ToolExecutionBroker
from relay_agent.server.websocket import ConnectionHub, RelayServer
from relay_agent.storage.conversation_repo import ConversationRepository
from tests.conftest import FakeChannel, FakeProvider, wait_until


def _server(
    repo: ConversationRepository, cancellation: CancellationRegistry, provider: FakeProvider
) -> tuple[RelayServer, ConnectionHub, ToolExecutionBroker]:
    hub = ConnectionHub(max_connections=2)
    broker = ToolExecutionBroker(hub, default_timeout=1.0)
    orchestrator = StreamOrchestrator(
        provider=provider,
        conversation_repo=repo,
        tool_registry=ToolRegistry(),
        cancellation=cancellation,
        provider_config=ProviderConfig(),
        limits=LimitsConfig(),
    )
    server = RelayServer(ServerConfig(), hub, orchestrator, cancellation, broker)
    return server, hub, broker


class TestConnectionHub:
    """Tests for ConnectionHub."""

    def test_capacity_and_reachable(self) -> None:
        hub = ConnectionHub(max_connections=2)
        first, second = FakeChannel("a"), FakeChannel("b")
        hub.add(first)
        assert not hub.is_full
        hub.add(second)
        assert hub.is_full
        assert hub.reachable() == [first, second]

        hub.remove("a")
        hub.remove("a")
        assert hub.reachable() == [second]
        assert hub.get("b") is second


@pytest.mark.asyncio
class TestDispatch:
    """Tests for RelayServer.dispatch."""

    async def test_ping(
        self, repo: ConversationRepository, cancellation: CancellationRegistry, channel: FakeChannel
    ) -> None:
        server, _, _ = _server(repo, cancellation, FakeProvider())
        await server.dispatch(channel, '{"type": "ping"}')
        assert channel.types() == ["pong"]

    async def test_invalid_frame(
        self, repo: ConversationRepository, cancellation: CancellationRegistry, channel: FakeChannel
    ) -> None:
        server, _, _ = _server(repo, cancellation, FakeProvider())
        await server.dispatch(channel, '{"type": "warp"}')
        [error] = channel.sent
        assert error["type"] == "error"
        assert error["message"] == "Unknown message type"
        assert error["receivedType"] == "warp"

    async def test_prompt_runs_turn(
        self, repo: ConversationRepository, cancellation: CancellationRegistry, channel: FakeChannel
    ) -> None:
        provider = FakeProvider([[TextFragment("Hi!"), TurnEnd(TurnEndReason.END_TURN), StreamEnd()]])
        server, _, _ = _server(repo, cancellation, provider)

        await server.dispatch(channel, '{"type": "prompt", "text": "Hello"}')
        await wait_until(lambda: "usage_update" in channel.types())

        assert channel.types()[0] == "turn_created"
        assert "turn_complete" in channel.types()

    async def test_second_prompt_rejected_and_stop(
        self, repo: ConversationRepository, cancellation: CancellationRegistry, channel: FakeChannel
    ) -> None:
        gate = asyncio.Event()
        provider = FakeProvider(
            [[TextFragment("Long"), gate, TextFragment(" answer"), TurnEnd(TurnEndReason.END_TURN), StreamEnd()]]
        )
        server, _, _ = _server(repo, cancellation, provider)

        await server.dispatch(channel, '{"type": "prompt", "text": "Go"}')
        await wait_until(lambda: "text_fragment" in channel.types())

        await server.dispatch(channel, '{"type": "prompt", "text": "Again"}')
        assert channel.of_type("error")[0]["message"] == "turn_in_progress"

        await server.dispatch(channel, '{"type": "stop"}')
        await server.dispatch(channel, '{"type": "stop"}')

        # Still winding down: the stopped turn keeps the connection busy
        await server.dispatch(channel, '{"type": "prompt", "text": "Third"}')
        assert [e["message"] for e in channel.of_type("error")] == ["turn_in_progress", "turn_in_progress"]
        gate.set()
        await server.stop()

        assert channel.types().count("turn_stopped") == 1
        assert "turn_complete" not in channel.types()
        assert len(provider.requests) == 1

    async def test_tool_response_resolves_pending_call(
        self, repo: ConversationRepository, cancellation: CancellationRegistry
    ) -> None:
        server, hub, broker = _server(repo, cancellation, FakeProvider())
        executor = FakeChannel("exec_1")
        hub.add(executor)

        pending = asyncio.create_task(broker.invoke("add", {"param1": 1, "param2": 2}))
        await wait_until(lambda: bool(executor.sent))
        correlation_id = executor.sent[0]["correlationId"]

        await server.dispatch(
            executor, f'{{"type": "tool_response", "correlationId": "{correlation_id}", "result": 3}}'
        )
        assert await pending == 3

    async def test_late_tool_response_ignored(
        self, repo: ConversationRepository, cancellation: CancellationRegistry, channel: FakeChannel
    ) -> None:
        server, _, _ = _server(repo, cancellation, FakeProvider())
        await server.dispatch(channel, '{"type": "response", "correlationId": "relay_gone", "result": 1}')
        assert channel.sent == []
