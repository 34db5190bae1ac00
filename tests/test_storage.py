"""Tests for the conversation store."""

import asyncio

import pytest

from relay_agent.config import PricingConfig
from relay_agent.core.errors import ConversationNotFoundError, PersistenceError
from relay_agent.core.types import Role
from relay_agent.storage.conversation_repo import ConversationRepository, estimate_tokens
from relay_agent.storage.database import Database
from relay_agent.storage.models import ToolExecutionRecord


class TestEstimateTokens:
    """Tests for the character-based token estimate."""

    def test_rounds_up(self) -> None:
        assert estimate_tokens("abcde") == 2

    def test_empty(self) -> None:
        assert estimate_tokens("") == 0
        assert estimate_tokens(None) == 0


@pytest.mark.asyncio
class TestConversations:
    """Tests for conversation CRUD."""

    async def test_create_and_get(self, repo: ConversationRepository) -> None:
        conversation = await repo.create_conversation(title="Budget review")
        loaded = await repo.get_conversation(conversation.id)
        assert loaded is not None
        assert loaded.title == "Budget review"
        assert loaded.message_count == 0
        assert loaded.estimated_cost == 0.0

    async def test_get_missing(self, repo: ConversationRepository) -> None:
        assert await repo.get_conversation("nope") is None

    async def test_rename(self, repo: ConversationRepository) -> None:
        conversation = await repo.create_conversation()
        renamed = await repo.rename_conversation(conversation.id, "Renamed")
        assert renamed is not None
        assert renamed.title == "Renamed"

    async def test_list_most_recent_first(self, repo: ConversationRepository) -> None:
        first = await repo.create_conversation(title="first")
        second = await repo.create_conversation(title="second")
        await asyncio.sleep(0.01)
        await repo.add_message(first.id, Role.USER, "bump")
        conversations = await repo.list_conversations()
        assert [c.id for c in conversations] == [first.id, second.id]

    async def test_delete_cascades(self, repo: ConversationRepository) -> None:
        conversation = await repo.create_conversation()
        message = await repo.add_message(conversation.id, Role.ASSISTANT, "calling")
        await repo.add_tool_execution(
            ToolExecutionRecord(
                message_id=message.id,
                conversation_id=conversation.id,
                tool_name="add",
                call_id="toolu_1",
            )
        )

        assert await repo.delete_conversation(conversation.id) is True
        assert await repo.get_conversation(conversation.id) is None
        assert await repo.get_messages(conversation.id) == []
        assert await repo.get_tool_executions(message.id) == []
        assert await repo.delete_conversation(conversation.id) is False

    async def test_rejected_writes_raise_persistence_error(
        self, db: Database, repo: ConversationRepository
    ) -> None:
        conversation = await repo.create_conversation(title="Locked")
        await db.conn.executescript(
            """
            CREATE TRIGGER lock_update BEFORE UPDATE ON conversations
            BEGIN SELECT RAISE(ABORT, 'conversations are locked'); END;
            CREATE TRIGGER lock_delete BEFORE DELETE ON conversations
            BEGIN SELECT RAISE(ABORT, 'conversations are locked'); END;
            """
        )

        with pytest.raises(PersistenceError, match="Failed to rename"):
            await repo.rename_conversation(conversation.id, "Renamed")
        with pytest.raises(PersistenceError, match="Failed to delete"):
            await repo.delete_conversation(conversation.id)

        loaded = await repo.get_conversation(conversation.id)
        assert loaded is not None
        assert loaded.title == "Locked"

    async def test_create_raises_when_row_cannot_be_read_back(
        self, repo: ConversationRepository, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        async def vanished(conversation_id: str) -> None:
            return None

        monkeypatch.setattr(repo, "get_conversation", vanished)
        with pytest.raises(PersistenceError, match="missing after insert"):
            await repo.create_conversation()


@pytest.mark.asyncio
class TestMessages:
    """Tests for message persistence and derived counters."""

    async def test_counters_follow_inserts(self, repo: ConversationRepository) -> None:
        conversation = await repo.create_conversation()
        await repo.add_message(conversation.id, Role.USER, "a" * 40)
        await repo.add_message(conversation.id, Role.ASSISTANT, "b" * 80)

        loaded = await repo.get_conversation(conversation.id)
        assert loaded.message_count == 2
        assert loaded.input_token_count == 10
        assert loaded.output_token_count == 20
        assert loaded.token_count == 30

    async def test_estimated_cost(self, db: Database) -> None:
        repo = ConversationRepository(db, PricingConfig(input_per_million=3.0, output_per_million=15.0))
        conversation = await repo.create_conversation()
        await repo.add_message(conversation.id, Role.USER, "x" * 4000)
        await repo.add_message(conversation.id, Role.ASSISTANT, "y" * 4000)

        loaded = await repo.get_conversation(conversation.id)
        assert loaded.estimated_cost == pytest.approx(1000 * 3 / 1e6 + 1000 * 15 / 1e6)

    async def test_missing_conversation_rejected(self, repo: ConversationRepository) -> None:
        with pytest.raises(ConversationNotFoundError):
            await repo.add_message("nope", Role.USER, "hi")

    async def test_order_and_fields(self, repo: ConversationRepository) -> None:
        conversation = await repo.create_conversation()
        await repo.add_message(conversation.id, Role.USER, "one")
        await repo.add_message(
            conversation.id, Role.ASSISTANT, "two", streaming_group_id="sg_1", metadata={"k": 1}
        )

        messages = await repo.get_messages(conversation.id)
        assert [m.content for m in messages] == ["one", "two"]
        assert messages[0].id < messages[1].id
        assert messages[1].streaming_group_id == "sg_1"
        assert messages[1].metadata == {"k": 1}

    async def test_mark_stopped_keeps_content(self, repo: ConversationRepository) -> None:
        conversation = await repo.create_conversation()
        message = await repo.add_message(conversation.id, Role.ASSISTANT, "partial")

        updated = await repo.mark_message_stopped(message.id, "user_requested")
        assert updated.stopped is True

        loaded = await repo.get_message(message.id)
        assert loaded.content == "partial"
        assert loaded.stopped is True
        assert loaded.stop_reason == "user_requested"
        assert loaded.metadata["stopReason"] == "user_requested"
        assert "stoppedAt" in loaded.metadata

    async def test_mark_stopped_missing(self, repo: ConversationRepository) -> None:
        assert await repo.mark_message_stopped(9999, "user_requested") is None


@pytest.mark.asyncio
class TestToolExecutions:
    """Tests for tool execution rows."""

    async def test_add_and_attach(self, repo: ConversationRepository) -> None:
        conversation = await repo.create_conversation()
        message = await repo.add_message(conversation.id, Role.ASSISTANT, "[Tool use only]")
        await repo.add_tool_execution(
            ToolExecutionRecord(
                message_id=message.id,
                conversation_id=conversation.id,
                tool_name="add",
                tool_input={"param1": 2, "param2": 3},
                tool_output=5,
                call_id="toolu_1",
                duration_ms=12,
            )
        )
        await repo.add_tool_execution(
            ToolExecutionRecord(
                message_id=message.id,
                conversation_id=conversation.id,
                tool_name="divide",
                tool_input={"param1": 1, "param2": 0},
                tool_output={"error": "Division by zero"},
                call_id="toolu_2",
                success=False,
                error="Division by zero",
            )
        )

        loaded = await repo.get_conversation(conversation.id)
        assert loaded.tool_execution_count == 2

        [stored] = await repo.get_messages(conversation.id)
        assert [t.call_id for t in stored.tool_executions] == ["toolu_1", "toolu_2"]
        first, second = stored.tool_executions
        assert first.tool_input == {"param1": 2, "param2": 3}
        assert first.tool_output == 5
        assert first.success is True
        assert second.success is False
        assert second.error == "Division by zero"


@pytest.mark.asyncio
class TestContextMessages:
    """Tests for live-context reconstruction around summary markers."""

    async def test_without_summary_returns_everything(self, repo: ConversationRepository) -> None:
        conversation = await repo.create_conversation()
        for i in range(3):
            await repo.add_message(conversation.id, Role.USER, f"m{i}")
        context = await repo.get_context_messages(conversation.id)
        assert [m.content for m in context] == ["m0", "m1", "m2"]

    async def test_summary_plus_kept_tail(self, repo: ConversationRepository) -> None:
        conversation = await repo.create_conversation()
        messages = [
            await repo.add_message(conversation.id, Role.USER, f"m{i}") for i in range(6)
        ]
        await repo.add_summary(
            conversation.id,
            "They talked.",
            messages_summarized=4,
            context_start_id=messages[4].id,
            messages_to_keep=2,
        )
        await repo.add_message(conversation.id, Role.USER, "after")

        context = await repo.get_context_messages(conversation.id)
        assert context[0].is_summary is True
        assert context[0].content.startswith("[Conversation Summary - 4 messages]")
        assert [m.content for m in context[1:]] == ["m4", "m5", "after"]

        # Nothing was deleted
        assert len(await repo.get_messages(conversation.id)) == 8

        loaded = await repo.get_conversation(conversation.id)
        assert loaded.summary == "They talked."
        assert loaded.times_summarized == 1
        assert loaded.summarized_at is not None

    async def test_latest_summary_wins(self, repo: ConversationRepository) -> None:
        conversation = await repo.create_conversation()
        first = await repo.add_message(conversation.id, Role.USER, "a")
        await repo.add_summary(conversation.id, "one", 0, first.id, 1)
        second = await repo.add_message(conversation.id, Role.USER, "b")
        await repo.add_summary(conversation.id, "two", 1, second.id, 1)

        context = await repo.get_context_messages(conversation.id)
        assert context[0].content.endswith("two")
        assert [m.content for m in context[1:]] == ["b"]
        assert (await repo.get_conversation(conversation.id)).times_summarized == 2
