"""Conversation persistence service."""
import asyncio
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional
from sqlalchemy import select, desc, func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from bridge.db.models import ConversationRecord, ConversationEventRecord
from bridge.services.conversation.models import Conversation

logger = logging.getLogger(__name__)

SEQ_RETRY_ATTEMPTS = 3


class ConversationPersistenceService:
    """Service for persisting conversations and their event ledger."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory
        self._event_locks: Dict[str, asyncio.Lock] = {}

    async def create_conversation(self, conversation: Conversation) -> ConversationRecord:
        """Create a new conversation record or return existing one."""
        async with self.session_factory() as db:
            existing = await db.get(ConversationRecord, conversation.id)
            if existing:
                return existing

            record = ConversationRecord(
                id=conversation.id,
                channel=conversation.channel.value,
                status="open",
                started_at=conversation.started_at,
            )
            db.add(record)
            await db.commit()
            await db.refresh(record)
            return record

    async def get_conversation(self, conversation_id: str) -> Optional[ConversationRecord]:
        """Get conversation record by id."""
        async with self.session_factory() as db:
            return await db.get(ConversationRecord, conversation_id)

    async def list_conversations(self, limit: int) -> List[ConversationRecord]:
        """List the most recently started or ended conversations."""
        async with self.session_factory() as db:
            result = await db.execute(
                select(ConversationRecord)
                .order_by(desc(func.coalesce(ConversationRecord.ended_at, ConversationRecord.started_at)))
                .limit(limit)
            )
            return list(result.scalars().all())

    async def add_event(
        self, conversation_id: str, kind: str, payload: Optional[Dict[str, Any]] = None
    ) -> ConversationEventRecord:
        """
        Append an event to the conversation ledger with the next sequence number.

        Sequence numbers are assigned under a per-conversation lock. A unique
        constraint conflict from another writer is retried with a fresh number.
        """
        lock = self._event_locks.setdefault(conversation_id, asyncio.Lock())
        async with lock:
            for attempt in range(1, SEQ_RETRY_ATTEMPTS + 1):
                async with self.session_factory() as db:
                    result = await db.execute(
                        select(func.coalesce(func.max(ConversationEventRecord.seq), 0)).where(
                            ConversationEventRecord.conversation_id == conversation_id
                        )
                    )
                    next_seq = (result.scalar() or 0) + 1
                    event = ConversationEventRecord(
                        conversation_id=conversation_id,
                        seq=next_seq,
                        kind=kind,
                        payload=payload or {},
                    )
                    db.add(event)
                    try:
                        await db.commit()
                    except IntegrityError:
                        await db.rollback()
                        if attempt == SEQ_RETRY_ATTEMPTS:
                            raise
                        logger.warning(
                            f"[PERSISTENCE] Sequence {next_seq} of {conversation_id} taken, retrying "
                            f"({attempt}/{SEQ_RETRY_ATTEMPTS})"
                        )
                        continue
                    await db.refresh(event)
                    return event

    async def list_events(self, conversation_id: str) -> List[ConversationEventRecord]:
        """List ledger events for a conversation ordered by sequence."""
        async with self.session_factory() as db:
            result = await db.execute(
                select(ConversationEventRecord)
                .where(ConversationEventRecord.conversation_id == conversation_id)
                .order_by(ConversationEventRecord.seq)
            )
            return list(result.scalars().all())

    async def finalize_conversation(
        self, conversation: Conversation, ended_at: Optional[datetime] = None
    ) -> ConversationRecord:
        """Write the final transcript and end timestamp of a conversation."""
        ended_at = ended_at or conversation.ended_at or datetime.utcnow()
        transcript = [turn.model_dump(mode="json") for turn in conversation.transcript]

        async with self.session_factory() as db:
            record = await db.get(ConversationRecord, conversation.id)
            if record is None:
                logger.warning(
                    f"[PERSISTENCE] Conversation {conversation.id} missing at finalization, creating it"
                )
                record = ConversationRecord(
                    id=conversation.id,
                    channel=conversation.channel.value,
                    started_at=conversation.started_at,
                )
                db.add(record)

            record.status = "finalized"
            record.ended_at = ended_at
            record.duration_ms = int((ended_at - conversation.started_at).total_seconds() * 1000)
            record.transcript = transcript
            await db.commit()
            await db.refresh(record)
        self._event_locks.pop(conversation.id, None)

        logger.info(
            f"[PERSISTENCE] Finalized conversation {conversation.id} - "
            f"{len(transcript)} turns, ended_at: {ended_at.isoformat()}"
        )
        return record
