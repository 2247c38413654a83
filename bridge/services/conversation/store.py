"""Conversation session store: the authoritative record of every conversation."""
import asyncio
import logging
from collections import OrderedDict
from datetime import datetime
from typing import Any, Dict, List, Optional

from bridge.core.errors import (
    AlreadyFinalized,
    ConversationClosed,
    InvalidState,
    UnknownConversation,
)
from bridge.services.conversation.models import (
    Channel,
    Conversation,
    ConversationState,
    Role,
    STATE_TRANSITIONS,
    ToolCall,
    Turn,
)
from bridge.services.persistence.conversations import ConversationPersistenceService

logger = logging.getLogger(__name__)


class ConversationSessionStore:
    """
    In-memory conversation store, optionally backed by durable persistence.

    Active conversations live in memory. The most recently finalized
    conversations are kept in a bounded read-only snapshot map; older ones
    are answered from storage, so late references fail with a stable error.
    Persistence writes made here are best-effort; only finalization treats a
    failed write as an error.
    """

    def __init__(
        self,
        persistence: Optional[ConversationPersistenceService] = None,
        history_limit: int = 20,
        persistence_timeout: float = 10.0,
        finalized_cache_size: int = 256,
    ):
        self.persistence = persistence
        self.history_limit = max(1, history_limit)
        self.persistence_timeout = persistence_timeout
        self.finalized_cache_size = max(1, finalized_cache_size)
        self._active: Dict[str, Conversation] = {}
        self._finalized: "OrderedDict[str, Conversation]" = OrderedDict()

    # ------------------------------------------------------------------ #
    # Lookup / creation
    # ------------------------------------------------------------------ #

    async def get_or_create(self, conversation_id: Optional[str], channel: Channel) -> Conversation:
        """
        Resolve a conversation for a client message.

        Args:
            conversation_id: Id supplied by the client, or None for a new conversation
            channel: Channel of the requesting connection (used only on creation)

        Returns:
            The existing or newly created conversation

        Raises:
            ConversationClosed: If the id refers to a finalized conversation
        """
        if conversation_id:
            if conversation_id in self._finalized:
                raise ConversationClosed(f"Conversation {conversation_id} is finalized")
            existing = self._active.get(conversation_id)
            if existing is not None:
                return existing
            if await self._is_finalized_in_storage(conversation_id):
                raise ConversationClosed(f"Conversation {conversation_id} is finalized")

        kwargs: Dict[str, Any] = {"channel": channel, "history_window": self.history_limit}
        if conversation_id:
            kwargs["id"] = conversation_id
        conversation = Conversation(**kwargs)
        self._active[conversation.id] = conversation
        logger.info(
            f"[STORE] Created conversation {conversation.id} (channel: {channel.value}) - "
            f"{len(self._active)} active"
        )

        if self.persistence is not None:
            try:
                await asyncio.wait_for(
                    self.persistence.create_conversation(conversation), self.persistence_timeout
                )
            except Exception as e:
                logger.error(
                    f"[STORE] Failed to persist creation of {conversation.id}: {type(e).__name__}: {str(e)}",
                    exc_info=True,
                )
        return conversation

    async def _is_finalized_in_storage(self, conversation_id: str) -> bool:
        if self.persistence is None:
            return False
        try:
            record = await asyncio.wait_for(
                self.persistence.get_conversation(conversation_id), self.persistence_timeout
            )
        except Exception as e:
            logger.warning(f"[STORE] Lookup of {conversation_id} failed: {type(e).__name__}: {str(e)}")
            return False
        return record is not None and record.ended_at is not None

    async def is_finalized(self, conversation_id: str) -> bool:
        """Whether a conversation was finalized, in memory or in storage."""
        if conversation_id in self._finalized:
            return True
        if conversation_id in self._active:
            return False
        return await self._is_finalized_in_storage(conversation_id)

    def find(self, conversation_id: str) -> Optional[Conversation]:
        """Get an active or finalized conversation, or None."""
        return self._active.get(conversation_id) or self._finalized.get(conversation_id)

    def get(self, conversation_id: str) -> Conversation:
        """Get a conversation or raise UnknownConversation."""
        conversation = self.find(conversation_id)
        if conversation is None:
            raise UnknownConversation(f"Unknown conversation: {conversation_id}")
        return conversation

    def list_active(self) -> List[Conversation]:
        """Conversations that are not finalized."""
        return list(self._active.values())

    # ------------------------------------------------------------------ #
    # Turns
    # ------------------------------------------------------------------ #

    def _writable(self, conversation_id: str) -> Conversation:
        conversation = self.get(conversation_id)
        if not conversation.accepts_turns:
            raise InvalidState(
                f"Conversation {conversation_id} is {conversation.state.value} and accepts no turns"
            )
        if conversation.state == ConversationState.CREATED:
            self._transition(conversation, ConversationState.ACTIVE)
        return conversation

    async def append_turn(self, conversation_id: str, turn: Turn) -> Turn:
        """
        Append a committed turn.

        Raises:
            UnknownConversation: If the conversation does not exist
            InvalidState: If the conversation is ending or finalized
        """
        conversation = self._writable(conversation_id)
        conversation.transcript.append(turn)
        logger.debug(
            f"[STORE] Appended {turn.role.value} turn to {conversation_id} "
            f"({len(conversation.transcript)} turns)"
        )
        await self.record_event(
            conversation_id,
            f"message_{turn.role.value}",
            {"text": turn.content, "channel": conversation.channel.value, "supervisor": turn.supervisor},
        )
        return turn

    def _streaming_turn(self, conversation: Conversation, item_id: str) -> Optional[Turn]:
        for turn in reversed(conversation.transcript):
            if turn.item_id == item_id:
                return turn
        return None

    def begin_streaming_turn(self, conversation_id: str, item_id: str) -> Turn:
        """Open an empty in-progress assistant turn for an upstream item (no-op if open)."""
        conversation = self._writable(conversation_id)
        turn = self._streaming_turn(conversation, item_id)
        if turn is None:
            turn = Turn(role=Role.ASSISTANT, content="", complete=False, item_id=item_id)
            conversation.transcript.append(turn)
        return turn

    def extend_streaming_turn(self, conversation_id: str, item_id: str, delta: str) -> Turn:
        """Append streamed content to the in-progress assistant turn, creating it if needed."""
        turn = self.begin_streaming_turn(conversation_id, item_id)
        if turn.complete:
            raise InvalidState(f"Turn {item_id} of {conversation_id} is already complete")
        turn.content += delta
        return turn

    async def complete_streaming_turn(
        self,
        conversation_id: str,
        item_id: str,
        text: Optional[str] = None,
        tool_calls: Optional[List[ToolCall]] = None,
        supervisor: bool = False,
    ) -> Optional[Turn]:
        """
        Commit a streamed assistant turn exactly once.

        Returns:
            The committed turn, or None if it was already committed
        """
        conversation = self._writable(conversation_id)
        turn = self.begin_streaming_turn(conversation_id, item_id)
        if turn.complete:
            return None
        if text is not None:
            turn.content = text
        turn.tool_calls = [call.model_copy() for call in (tool_calls or [])]
        turn.supervisor = supervisor
        turn.timestamp = datetime.utcnow()
        turn.complete = True
        await self.record_event(
            conversation_id,
            "message_assistant",
            {"text": turn.content, "channel": conversation.channel.value, "supervisor": supervisor},
        )
        return turn

    def trim_history_for_upstream(self, conversation_id: str) -> List[Turn]:
        """
        Return at most the last N complete turns for re-submission upstream.

        The stored transcript is not mutated; repeated calls without appends
        return identical sequences.
        """
        conversation = self.get(conversation_id)
        complete = [turn for turn in conversation.transcript if turn.complete and turn.content]
        window = min(conversation.history_window, self.history_limit)
        return [turn.model_copy(deep=True) for turn in complete[-window:]]

    # ------------------------------------------------------------------ #
    # Lifecycle (driven by the finalization coordinator)
    # ------------------------------------------------------------------ #

    def _transition(self, conversation: Conversation, target: ConversationState) -> None:
        if STATE_TRANSITIONS.get(conversation.state) != target:
            raise InvalidState(
                f"Illegal transition {conversation.state.value} -> {target.value} for {conversation.id}"
            )
        logger.info(f"[STORE] {conversation.id}: {conversation.state.value} -> {target.value}")
        conversation.state = target

    def mark_ending(self, conversation_id: str) -> Conversation:
        """
        Move a conversation to ENDING (via ACTIVE if it never received a turn).

        Raises:
            UnknownConversation: If the id is unknown
            AlreadyFinalized: If the conversation is finalized
            InvalidState: If the conversation is already ending
        """
        conversation = self.get(conversation_id)
        if conversation.state == ConversationState.FINALIZED:
            raise AlreadyFinalized(f"Conversation {conversation_id} is already finalized")
        if conversation.state == ConversationState.ENDING:
            raise InvalidState(f"Conversation {conversation_id} is already ending")
        if conversation.state == ConversationState.CREATED:
            self._transition(conversation, ConversationState.ACTIVE)
        self._transition(conversation, ConversationState.ENDING)
        return conversation

    def finalize(self, conversation_id: str, ended_at: Optional[datetime] = None) -> Conversation:
        """Move an ENDING conversation to FINALIZED and out of active memory."""
        conversation = self.get(conversation_id)
        self._transition(conversation, ConversationState.FINALIZED)
        if conversation.ended_at is None:
            conversation.ended_at = ended_at or datetime.utcnow()
        self._active.pop(conversation_id, None)
        self._finalized[conversation_id] = conversation
        while len(self._finalized) > self.finalized_cache_size:
            evicted, _ = self._finalized.popitem(last=False)
            logger.debug(f"[STORE] Evicted finalized snapshot {evicted}")
        return conversation

    # ------------------------------------------------------------------ #
    # Ledger / maintenance
    # ------------------------------------------------------------------ #

    async def record_event(
        self, conversation_id: str, kind: str, payload: Optional[Dict[str, Any]] = None
    ) -> None:
        """Best-effort ledger write; failures are logged, never raised."""
        if self.persistence is None:
            return
        try:
            await asyncio.wait_for(
                self.persistence.add_event(conversation_id, kind, payload), self.persistence_timeout
            )
        except Exception as e:
            logger.warning(
                f"[STORE] Ledger write {kind} for {conversation_id} failed: {type(e).__name__}: {str(e)}"
            )

    def clear(self) -> int:
        """Drop all in-memory conversations. Returns how many were dropped."""
        count = len(self._active) + len(self._finalized)
        self._active.clear()
        self._finalized.clear()
        logger.info(f"[STORE] Cleared {count} conversations from memory")
        return count
