"""Database models."""
from datetime import datetime
from sqlalchemy import Column, Integer, String, DateTime, ForeignKey, JSON, UniqueConstraint
from sqlalchemy.orm import declarative_base, relationship

Base = declarative_base()


class ConversationRecord(Base):
    """Persisted conversation metadata and finalized transcript."""

    __tablename__ = "conversations"

    id = Column(String, primary_key=True, index=True)
    channel = Column(String, nullable=False)  # voice, text, sms
    status = Column(String, default="open", nullable=False)  # open, finalized
    started_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    ended_at = Column(DateTime, nullable=True)
    duration_ms = Column(Integer, nullable=True)
    transcript = Column(JSON, nullable=True)  # List of turn dicts, set at finalization

    # Relationships
    events = relationship(
        "ConversationEventRecord",
        back_populates="conversation",
        cascade="all, delete-orphan",
        order_by="ConversationEventRecord.seq",
    )


class ConversationEventRecord(Base):
    """Ledger entry for a conversation (messages and tool calls)."""

    __tablename__ = "conversation_events"
    __table_args__ = (UniqueConstraint("conversation_id", "seq", name="uq_conversation_events_seq"),)

    id = Column(Integer, primary_key=True, index=True)
    conversation_id = Column(String, ForeignKey("conversations.id"), nullable=False, index=True)
    seq = Column(Integer, nullable=False)
    kind = Column(String, nullable=False)  # message_user, message_assistant, function_call_created, function_call_completed
    payload = Column(JSON, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    # Relationships
    conversation = relationship("ConversationRecord", back_populates="events")
