"""Tests for the cancellation registry."""

import pytest

from relay_agent.core.cancellation import CancellationRegistry, CancellationToken
from relay_agent.core.errors import TurnInProgressError
from relay_agent.core.types import Role, StopReason
from relay_agent.storage.conversation_repo import ConversationRepository
from tests.conftest import FakeChannel


class TestCancellationToken:
    """Tests for CancellationToken."""

    def test_first_reason_wins(self) -> None:
        token = CancellationToken()
        assert token.cancelled is False
        token.cancel("user_requested")
        token.cancel("shutdown")
        assert token.cancelled is True
        assert token.reason == "user_requested"


@pytest.mark.asyncio
class TestCancellationRegistry:
    """Tests for CancellationRegistry."""

    async def test_stop_without_turn_is_noop(
        self, cancellation: CancellationRegistry, channel: FakeChannel
    ) -> None:
        assert await cancellation.request_stop(channel.id) is False
        assert await cancellation.request_stop(channel.id) is False
        assert channel.sent == []

    async def test_stop_emits_exactly_one_notice(
        self, cancellation: CancellationRegistry, channel: FakeChannel
    ) -> None:
        turn = cancellation.begin(channel, "conv_1")
        turn.streaming_group_id = "sg_1"

        assert await cancellation.request_stop(channel.id) is True
        assert await cancellation.request_stop(channel.id) is False

        assert channel.types() == ["turn_stopped"]
        notice = channel.sent[0]
        assert notice["conversationId"] == "conv_1"
        assert notice["streamingGroupId"] == "sg_1"
        assert notice["reason"] == "user_requested"
        assert turn.token.cancelled
        assert turn.token.reason == StopReason.USER_REQUESTED
        assert turn.stopping is True

        # The slot stays taken until the driver releases it
        assert cancellation.is_active(channel.id)
        cancellation.finish(turn)
        assert not cancellation.is_active(channel.id)

    async def test_second_turn_rejected(self, cancellation: CancellationRegistry, channel: FakeChannel) -> None:
        cancellation.begin(channel)
        with pytest.raises(TurnInProgressError):
            cancellation.begin(channel)

    async def test_stopped_turn_blocks_new_turn_until_finished(
        self, cancellation: CancellationRegistry, channel: FakeChannel
    ) -> None:
        stale = cancellation.begin(channel)
        await cancellation.request_stop(channel.id)

        with pytest.raises(TurnInProgressError):
            cancellation.begin(channel)

        cancellation.finish(stale)
        fresh = cancellation.begin(channel)

        # A late finish from the old turn leaves the new one registered
        cancellation.finish(stale)
        assert cancellation.get(channel.id) is fresh

        cancellation.finish(fresh)
        assert len(cancellation) == 0

    async def test_marks_in_flight_message(
        self,
        cancellation: CancellationRegistry,
        repo: ConversationRepository,
        channel: FakeChannel,
    ) -> None:
        conversation = await repo.create_conversation()
        message = await repo.add_message(conversation.id, Role.ASSISTANT, "[Tool use only]")
        turn = cancellation.begin(channel, conversation.id)
        turn.message_id = message.id

        await cancellation.request_stop(channel.id)

        stored = await repo.get_message(message.id)
        assert stored.stopped is True
        assert stored.stop_reason == "user_requested"
        assert stored.content == "[Tool use only]"

    async def test_disconnect_uses_peer_reason(
        self, cancellation: CancellationRegistry, channel: FakeChannel
    ) -> None:
        turn = cancellation.begin(channel)
        channel.alive = False

        assert await cancellation.on_disconnect(channel.id) is True
        assert turn.token.reason == "peer_disconnected"

    async def test_stop_all(self, cancellation: CancellationRegistry) -> None:
        channels = [FakeChannel(f"conn_{i}") for i in range(3)]
        turns = [cancellation.begin(c) for c in channels]

        assert await cancellation.stop_all() == 3
        assert all(t.token.reason == "shutdown" for t in turns)
        assert all(c.types() == ["turn_stopped"] for c in channels)
