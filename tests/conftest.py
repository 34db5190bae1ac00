"""Pytest configuration and fixtures."""

from __future__ import annotations

import asyncio
from typing import Any, AsyncIterator, Callable

import pytest
import pytest_asyncio

from relay_agent.ai.client import ProviderAdapter
from relay_agent.ai.events import StreamEvent
from relay_agent.config import LimitsConfig, ProviderConfig
from relay_agent.core.cancellation import CancellationRegistry
from relay_agent.core.errors import ProviderError
from relay_agent.executor.broker import ExecutorResponse, ToolExecutionBroker
from relay_agent.storage.conversation_repo import ConversationRepository
from relay_agent.storage.database import Database


class FakeChannel:
    """Records every frame sent to it."""

    def __init__(self, channel_id: str = "conn_test", alive: bool = True):
        self.id = channel_id
        self.alive = alive
        self.sent: list[dict[str, Any]] = []

    async def send(self, payload: dict[str, Any]) -> bool:
        if not self.alive:
            return False
        self.sent.append(payload)
        return True

    def types(self) -> list[str]:
        return [p["type"] for p in self.sent]

    def of_type(self, frame_type: str) -> list[dict[str, Any]]:
        return [p for p in self.sent if p["type"] == frame_type]


class FakeExecutor(FakeChannel):
    """Executor that answers tool requests synchronously through the broker."""

    def __init__(
        self,
        channel_id: str = "exec_test",
        handler: Callable[[str, dict], ExecutorResponse] | None = None,
    ):
        super().__init__(channel_id)
        self.broker: ToolExecutionBroker | None = None
        self.handler = handler

    async def send(self, payload: dict[str, Any]) -> bool:
        delivered = await super().send(payload)
        if delivered and self.handler is not None and payload["type"] == "tool_request":
            assert self.broker is not None
            response = self.handler(payload["command"], payload["params"])
            self.broker.resolve(payload["correlationId"], response)
        return delivered


class DelayedExecutor(FakeExecutor):
    """Executor that answers each tool request after *delay* seconds."""

    def __init__(
        self,
        delay: float,
        handler: Callable[[str, dict], ExecutorResponse],
        channel_id: str = "exec_slow",
    ):
        super().__init__(channel_id, handler)
        self.delay = delay
        self._replies: set[asyncio.Task] = set()

    async def send(self, payload: dict[str, Any]) -> bool:
        delivered = await FakeChannel.send(self, payload)
        if delivered and payload["type"] == "tool_request":
            task = asyncio.create_task(self._reply(payload))
            self._replies.add(task)
            task.add_done_callback(self._replies.discard)
        return delivered

    async def _reply(self, payload: dict[str, Any]) -> None:
        await asyncio.sleep(self.delay)
        assert self.broker is not None and self.handler is not None
        self.broker.resolve(payload["correlationId"], self.handler(payload["command"], payload["params"]))


class FakeDirectory:
    def __init__(self, *executors: FakeChannel):
        self.executors = list(executors)

    def reachable(self) -> list[FakeChannel]:
        return [e for e in self.executors if e.alive]


class FakeProvider(ProviderAdapter):
    """Provider that replays scripted rounds.

    Each round is a list of items: stream events are yielded, an
    ``asyncio.Event`` is awaited before continuing, an exception is raised.
    """

    def __init__(self, rounds: list[list[Any]] | None = None, summary: str = "Summary of the chat"):
        super().__init__(ProviderConfig(model="fake-model"))
        self.rounds = list(rounds or [])
        self.summary = summary
        self.complete_error: Exception | None = None
        self.requests: list[dict[str, Any]] = []
        self.prompts: list[str] = []
        self.closed_streams = 0

    async def stream(
        self,
        system: str,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None = None,
    ) -> AsyncIterator[StreamEvent]:
        self.requests.append({"system": system, "messages": messages, "tools": tools})
        if not self.rounds:
            raise ProviderError("No scripted round left")
        script = self.rounds.pop(0)
        try:
            for item in script:
                if isinstance(item, asyncio.Event):
                    await item.wait()
                elif isinstance(item, BaseException):
                    raise item
                else:
                    yield item
        finally:
            self.closed_streams += 1

    async def complete(self, prompt: str, system: str = "") -> str:
        self.prompts.append(prompt)
        if self.complete_error is not None:
            raise self.complete_error
        return self.summary


async def wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    """Poll *predicate* until it holds or *timeout* seconds pass."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


@pytest_asyncio.fixture
async def db(tmp_path):
    """Create a temporary database."""
    database = Database(str(tmp_path / "test.db"))
    await database.initialize()
    yield database
    await database.close()


@pytest.fixture
def repo(db: Database) -> ConversationRepository:
    return ConversationRepository(db)


@pytest.fixture
def cancellation(repo: ConversationRepository) -> CancellationRegistry:
    return CancellationRegistry(repo)


@pytest.fixture
def channel() -> FakeChannel:
    return FakeChannel()


@pytest.fixture
def limits() -> LimitsConfig:
    return LimitsConfig()
