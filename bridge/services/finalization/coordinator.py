"""Finalization coordinator: ends, persists and announces conversations."""
import asyncio
import logging
from datetime import datetime
from typing import Any, Dict, Optional

from bridge.core.errors import (
    AlreadyFinalized,
    PersistenceFailure,
    UnknownConversation,
    error_message,
)
from bridge.services.conversation.models import ConversationState
from bridge.services.conversation.store import ConversationSessionStore
from bridge.services.persistence.conversations import ConversationPersistenceService
from bridge.services.realtime.bridge import RealtimeBridge
from bridge.services.registry.connections import Connection, ConnectionRegistry
from bridge.services.supervisor.breadcrumbs import BreadcrumbWriter
from bridge.services.tools.router import FunctionCallRouter

logger = logging.getLogger(__name__)


class FinalizationCoordinator:
    """Runs the end-of-conversation sequence exactly once per conversation."""

    def __init__(
        self,
        store: ConversationSessionStore,
        registry: ConnectionRegistry,
        bridge: RealtimeBridge,
        router: FunctionCallRouter,
        persistence: Optional[ConversationPersistenceService] = None,
        breadcrumbs: Optional[BreadcrumbWriter] = None,
        persistence_timeout: float = 10.0,
    ):
        self.store = store
        self.registry = registry
        self.bridge = bridge
        self.router = router
        self.persistence = persistence
        self.breadcrumbs = breadcrumbs
        self.persistence_timeout = persistence_timeout

    async def request_end(
        self, conversation_id: str, requester: Optional[Connection] = None
    ) -> Dict[str, Any]:
        """
        Finalize a conversation on request from any participant.

        Args:
            conversation_id: Conversation to end
            requester: Connection that asked, notified even when not bound

        Returns:
            The ``conversation.finalized`` message that was broadcast

        Raises:
            UnknownConversation: If the id is unknown
            AlreadyFinalized: If the conversation was finalized before (every time)
            InvalidState: If another end request is already in progress
        """
        conversation = self.store.find(conversation_id)
        if conversation is None:
            if await self.store.is_finalized(conversation_id):
                raise AlreadyFinalized(f"Conversation {conversation_id} is already finalized")
            raise UnknownConversation(f"Unknown conversation: {conversation_id}")
        if conversation.state == ConversationState.FINALIZED:
            raise AlreadyFinalized(f"Conversation {conversation_id} is already finalized")

        self.store.mark_ending(conversation_id)
        logger.info(f"[FINALIZE] Ending {conversation_id} ({len(conversation.transcript)} turns)")

        await self.bridge.close_for(conversation_id)
        ended_at = datetime.utcnow()

        persisted = await self._persist(conversation_id, requester, ended_at)

        self.store.finalize(conversation_id, ended_at)
        self.router.forget(conversation_id)
        if self.breadcrumbs is not None:
            await self.breadcrumbs.end_conversation(conversation_id, conversation.ended_at)

        message = {
            "type": "conversation.finalized",
            "conversation_id": conversation_id,
            "ok": True,
            "persisted": persisted,
            "ended_at": conversation.ended_at.isoformat(),
        }
        recipients = self.registry.connections_for(conversation_id)
        await self.registry.broadcast(conversation_id, message)
        if requester is not None and requester not in recipients:
            try:
                await requester.send(message)
            except Exception as e:
                logger.warning(f"[FINALIZE] Could not notify requester {requester.id}: {type(e).__name__}: {str(e)}")

        logger.info(
            f"[FINALIZE] Finalized {conversation_id} - persisted: {persisted}, "
            f"duration_ms: {conversation.duration_ms}"
        )
        return message

    async def _persist(
        self, conversation_id: str, requester: Optional[Connection], ended_at: datetime
    ) -> bool:
        if self.persistence is None:
            return False
        conversation = self.store.get(conversation_id)
        try:
            await asyncio.wait_for(
                self.persistence.finalize_conversation(conversation, ended_at=ended_at),
                self.persistence_timeout,
            )
            return True
        except Exception as e:
            failure = PersistenceFailure(
                f"Failed to persist conversation {conversation_id}: {type(e).__name__}: {str(e)}"
            )
            logger.error(f"[FINALIZE] {failure.message}", exc_info=True)
            if requester is not None:
                try:
                    await requester.send(error_message(failure, conversation_id))
                except Exception as send_error:
                    logger.warning(f"[FINALIZE] Could not report persistence failure: {str(send_error)}")
            return False
