"""Unit tests for conversation persistence."""
import asyncio

import pytest
from datetime import datetime, timedelta

from bridge.services.conversation.models import Channel, Conversation, Role, Turn


class TestConversationPersistence:
    """Test conversation persistence service."""

    @pytest.mark.asyncio
    async def test_create_conversation_idempotent(self, persistence):
        """Test that creating the same conversation twice returns the existing record."""
        conversation = Conversation(channel=Channel.TEXT)

        first = await persistence.create_conversation(conversation)
        second = await persistence.create_conversation(conversation)

        assert first.id == second.id == conversation.id
        assert second.channel == "text"
        assert second.status == "open"

    @pytest.mark.asyncio
    async def test_finalize_writes_transcript(self, persistence):
        """Test finalization stores transcript, end time and duration."""
        conversation = Conversation(channel=Channel.VOICE)
        conversation.transcript.append(Turn(role=Role.USER, content="hi"))
        conversation.transcript.append(Turn(role=Role.ASSISTANT, content="hello", supervisor=True))
        conversation.ended_at = conversation.started_at + timedelta(seconds=2)
        await persistence.create_conversation(conversation)

        record = await persistence.finalize_conversation(conversation)

        assert record.status == "finalized"
        assert record.ended_at == conversation.ended_at
        assert record.duration_ms == 2000
        assert [t["content"] for t in record.transcript] == ["hi", "hello"]
        assert record.transcript[1]["supervisor"] is True

    @pytest.mark.asyncio
    async def test_finalize_creates_missing_record(self, persistence):
        """Test finalizing a conversation whose creation was never persisted."""
        conversation = Conversation(channel=Channel.TEXT, ended_at=datetime.utcnow())

        record = await persistence.finalize_conversation(conversation)

        assert record.id == conversation.id
        assert record.status == "finalized"

    @pytest.mark.asyncio
    async def test_events_get_increasing_sequence(self, persistence):
        """Test ledger events are numbered per conversation in order."""
        conversation = Conversation(channel=Channel.TEXT)
        other = Conversation(channel=Channel.TEXT)
        await persistence.create_conversation(conversation)
        await persistence.create_conversation(other)

        await persistence.add_event(conversation.id, "message_user", {"text": "hi"})
        await persistence.add_event(other.id, "message_user", {"text": "other"})
        await persistence.add_event(conversation.id, "function_call_created", {"call_id": "c1"})
        await persistence.add_event(conversation.id, "function_call_completed", {"call_id": "c1"})

        events = await persistence.list_events(conversation.id)

        assert [(e.seq, e.kind) for e in events] == [
            (1, "message_user"),
            (2, "function_call_created"),
            (3, "function_call_completed"),
        ]
        assert events[0].payload == {"text": "hi"}

    @pytest.mark.asyncio
    async def test_list_orders_by_end_or_start(self, persistence):
        """Test listing orders by COALESCE(ended_at, started_at) descending and honours the limit."""
        now = datetime.utcnow()
        old_but_recently_ended = Conversation(channel=Channel.TEXT, started_at=now - timedelta(hours=3))
        recent_open = Conversation(channel=Channel.TEXT, started_at=now - timedelta(hours=1))
        oldest = Conversation(channel=Channel.TEXT, started_at=now - timedelta(hours=5))
        for conversation in (old_but_recently_ended, recent_open, oldest):
            await persistence.create_conversation(conversation)
        old_but_recently_ended.ended_at = now
        await persistence.finalize_conversation(old_but_recently_ended)

        records = await persistence.list_conversations(limit=2)

        assert [r.id for r in records] == [old_but_recently_ended.id, recent_open.id]

    @pytest.mark.asyncio
    async def test_concurrent_events_get_distinct_sequences(self, persistence):
        """Test events written at the same time on one conversation are numbered without gaps or duplicates."""
        conversation = Conversation(channel=Channel.TEXT)
        await persistence.create_conversation(conversation)

        await asyncio.gather(
            *(persistence.add_event(conversation.id, "message_user", {"text": str(i)}) for i in range(10))
        )

        events = await persistence.list_events(conversation.id)
        assert [e.seq for e in events] == list(range(1, 11))
        assert sorted(e.payload["text"] for e in events) == sorted(str(i) for i in range(10))

    @pytest.mark.asyncio
    async def test_finalize_uses_given_end_time(self, persistence):
        """Test an explicit end time wins over the in-memory one and drives the duration."""
        conversation = Conversation(channel=Channel.TEXT)
        await persistence.create_conversation(conversation)
        ended_at = conversation.started_at + timedelta(seconds=3)

        record = await persistence.finalize_conversation(conversation, ended_at=ended_at)

        assert conversation.ended_at is None
        assert record.ended_at == ended_at
        assert record.duration_ms == 3000
