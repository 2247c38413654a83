"""Unit tests for the finalization coordinator."""
import pytest

from bridge.core.errors import AlreadyFinalized, InvalidState, UnknownConversation
from bridge.services.conversation.models import Channel, ConversationState
from bridge.services.registry.connections import Connection
from tests.fakes import FakeSocket, text_response


async def _bound(runtime, conversation_id, socket=None):
    connection = Connection(socket or FakeSocket(), Channel.TEXT)
    runtime.registry.register(connection)
    runtime.registry.bind_to_conversation(connection, conversation_id)
    return connection


class TestRequestEnd:
    """End-of-conversation sequence."""

    @pytest.mark.asyncio
    async def test_finalize_notifies_every_listener_and_requester(self, runtime):
        """Test all bound connections and an unbound requester get the finalization message."""
        conversation = await runtime.store.get_or_create(None, Channel.TEXT)
        first = await _bound(runtime, conversation.id)
        second = await _bound(runtime, conversation.id)
        requester = Connection(FakeSocket(), Channel.TEXT)
        runtime.registry.register(requester)

        message = await runtime.coordinator.request_end(conversation.id, requester=requester)

        assert message["type"] == "conversation.finalized"
        assert message["ok"] is True
        assert message["persisted"] is True
        for connection in (first, second, requester):
            assert connection.socket.of_type("conversation.finalized") == [message]
        assert conversation.state == ConversationState.FINALIZED

    @pytest.mark.asyncio
    async def test_bound_requester_is_notified_once(self, runtime):
        """Test a requester that is also a listener receives the message exactly once."""
        conversation = await runtime.store.get_or_create(None, Channel.TEXT)
        requester = await _bound(runtime, conversation.id)

        await runtime.coordinator.request_end(conversation.id, requester=requester)

        assert len(requester.socket.of_type("conversation.finalized")) == 1

    @pytest.mark.asyncio
    async def test_transcript_is_persisted(self, runtime, realtime_service):
        """Test the final transcript and end time are written to storage."""
        realtime_service.queue(text_response("Hi back", item_id="item_final"))
        conversation = await runtime.store.get_or_create(None, Channel.TEXT)
        await _bound(runtime, conversation.id)
        await runtime.bridge.submit_turn(conversation.id, "Hello")

        message = await runtime.coordinator.request_end(conversation.id)

        record = await runtime.persistence.get_conversation(conversation.id)
        assert record.status == "finalized"
        assert [t["content"] for t in record.transcript] == ["Hello", "Hi back"]
        assert record.ended_at.isoformat() == message["ended_at"]
        assert runtime.bridge.is_open(conversation.id) is False
        assert realtime_service.latest.closed is True

    @pytest.mark.asyncio
    async def test_second_request_is_already_finalized(self, runtime):
        """Test re-finalizing fails the same way every time and nothing changes."""
        conversation = await runtime.store.get_or_create(None, Channel.TEXT)
        listener = await _bound(runtime, conversation.id)
        await runtime.coordinator.request_end(conversation.id)
        ended_at = conversation.ended_at

        for _ in range(2):
            with pytest.raises(AlreadyFinalized):
                await runtime.coordinator.request_end(conversation.id)

        assert conversation.ended_at == ended_at
        assert len(listener.socket.of_type("conversation.finalized")) == 1

    @pytest.mark.asyncio
    async def test_unknown_conversation(self, runtime):
        """Test ending an id that was never created."""
        with pytest.raises(UnknownConversation):
            await runtime.coordinator.request_end("conv_missing")

    @pytest.mark.asyncio
    async def test_ending_conversation_rejects_second_end(self, runtime):
        """Test an end request during an in-progress end is rejected."""
        conversation = await runtime.store.get_or_create(None, Channel.TEXT)
        runtime.store.mark_ending(conversation.id)

        with pytest.raises(InvalidState):
            await runtime.coordinator.request_end(conversation.id)

    @pytest.mark.asyncio
    async def test_persistence_failure_still_finalizes(self, runtime, monkeypatch):
        """Test a storage failure is reported to the requester while the conversation still finalizes."""
        async def _broken(conversation, ended_at=None):
            raise RuntimeError("disk full")

        monkeypatch.setattr(runtime.persistence, "finalize_conversation", _broken)
        conversation = await runtime.store.get_or_create(None, Channel.TEXT)
        requester = await _bound(runtime, conversation.id)

        message = await runtime.coordinator.request_end(conversation.id, requester=requester)

        assert message["persisted"] is False
        assert conversation.state == ConversationState.FINALIZED
        errors = requester.socket.of_type("error")
        assert errors[0]["kind"] == "persistence_failure"

    @pytest.mark.asyncio
    async def test_dead_listener_does_not_block_finalization(self, runtime):
        """Test a listener whose transport fails does not stop delivery to others."""
        conversation = await runtime.store.get_or_create(None, Channel.TEXT)
        await _bound(runtime, conversation.id, FakeSocket(fail=True))
        healthy = await _bound(runtime, conversation.id)

        await runtime.coordinator.request_end(conversation.id)

        assert len(healthy.socket.of_type("conversation.finalized")) == 1

    @pytest.mark.asyncio
    async def test_end_time_is_stamped_at_finalization(self, runtime, monkeypatch):
        """Test storage receives the end time while the conversation is still ending, and it matches the broadcast."""
        seen = {}
        original = runtime.persistence.finalize_conversation

        async def _capture(conversation, ended_at=None):
            seen["state"] = conversation.state
            seen["in_memory_ended_at"] = conversation.ended_at
            seen["ended_at"] = ended_at
            return await original(conversation, ended_at=ended_at)

        monkeypatch.setattr(runtime.persistence, "finalize_conversation", _capture)
        conversation = await runtime.store.get_or_create(None, Channel.TEXT)

        message = await runtime.coordinator.request_end(conversation.id)

        assert seen["state"] == ConversationState.ENDING
        assert seen["in_memory_ended_at"] is None
        assert seen["ended_at"].isoformat() == message["ended_at"]
        assert conversation.ended_at == seen["ended_at"]
        record = await runtime.persistence.get_conversation(conversation.id)
        assert record.duration_ms is not None and record.duration_ms >= 0


class TestRequestEndAfterRestart:
    """End requests for conversations no longer held in memory."""

    @pytest.mark.asyncio
    async def test_cleared_finalized_conversation_stays_finalized(self, runtime):
        """Test a finalized conversation dropped from memory is still rejected as already finalized."""
        conversation = await runtime.store.get_or_create(None, Channel.TEXT)
        await runtime.coordinator.request_end(conversation.id)
        record = await runtime.persistence.get_conversation(conversation.id)
        ended_at = record.ended_at

        runtime.store.clear()

        with pytest.raises(AlreadyFinalized):
            await runtime.coordinator.request_end(conversation.id)
        record = await runtime.persistence.get_conversation(conversation.id)
        assert record.ended_at == ended_at

    @pytest.mark.asyncio
    async def test_cleared_open_conversation_is_unknown(self, runtime):
        """Test an open conversation dropped from memory cannot be ended."""
        conversation = await runtime.store.get_or_create(None, Channel.TEXT)
        runtime.store.clear()

        with pytest.raises(UnknownConversation):
            await runtime.coordinator.request_end(conversation.id)
