"""Conversation history API endpoints."""
import logging
from typing import Any, Dict, List, Optional
from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel

from bridge.core.config import settings
from bridge.core.dependencies import get_runtime
from bridge.db.models import ConversationRecord
from bridge.services.runtime import BridgeRuntime

router = APIRouter()
logger = logging.getLogger(__name__)

MAX_LIST_LIMIT = 50


class ConversationSummaryResponse(BaseModel):
    """Conversation list entry."""
    id: str
    channel: str
    status: str
    started_at: str
    ended_at: Optional[str] = None
    duration_ms: Optional[int] = None


class ConversationDetailResponse(ConversationSummaryResponse):
    """Conversation with its finalized transcript."""
    transcript: List[Dict[str, Any]] = []


class ConversationEventResponse(BaseModel):
    """Ledger event."""
    seq: int
    kind: str
    payload: Optional[Dict[str, Any]] = None
    created_at: str


def _summary_fields(record: ConversationRecord) -> Dict[str, Any]:
    return {
        "id": record.id,
        "channel": record.channel,
        "status": record.status,
        "started_at": record.started_at.isoformat() if record.started_at else "",
        "ended_at": record.ended_at.isoformat() if record.ended_at else None,
        "duration_ms": record.duration_ms,
    }


def clamp_limit(limit: Optional[int]) -> int:
    """Clamp a requested list size to 1..50, defaulting to the configured limit."""
    if limit is None:
        limit = settings.conversation_list_default_limit
    return max(1, min(MAX_LIST_LIMIT, limit))


@router.get("/api/conversations", response_model=List[ConversationSummaryResponse])
async def list_conversations(
    request: Request,
    limit: Optional[int] = None,
    runtime: BridgeRuntime = Depends(get_runtime),
):
    """Get the most recent conversations, newest first."""
    effective_limit = clamp_limit(limit)
    logger.info(
        f"[CONVERSATIONS] List request - limit: {limit} (effective {effective_limit}), "
        f"Client: {request.client.host if request.client else 'unknown'}"
    )
    try:
        records = await runtime.persistence.list_conversations(effective_limit)
    except Exception as e:
        logger.error(
            f"[CONVERSATIONS] Error listing conversations - Error: {type(e).__name__}: {str(e)}",
            exc_info=True,
        )
        raise HTTPException(status_code=500, detail=f"Error listing conversations: {str(e)}")

    logger.info(f"[CONVERSATIONS] Returning {len(records)} conversations")
    return [ConversationSummaryResponse(**_summary_fields(record)) for record in records]


@router.get("/api/conversations/{conversation_id}", response_model=ConversationDetailResponse)
async def get_conversation(conversation_id: str, runtime: BridgeRuntime = Depends(get_runtime)):
    """Get one conversation with its transcript."""
    try:
        record = await runtime.persistence.get_conversation(conversation_id)
    except Exception as e:
        logger.error(
            f"[CONVERSATIONS] Error fetching {conversation_id} - Error: {type(e).__name__}: {str(e)}",
            exc_info=True,
        )
        raise HTTPException(status_code=500, detail=f"Error fetching conversation: {str(e)}")

    if record is None:
        raise HTTPException(status_code=404, detail=f"Conversation not found: {conversation_id}")

    transcript = record.transcript
    if transcript is None:
        # Not finalized yet: serve the live transcript if this process holds it
        live = runtime.store.find(conversation_id)
        transcript = [turn.model_dump(mode="json") for turn in live.transcript] if live else []
    return ConversationDetailResponse(**_summary_fields(record), transcript=transcript)


@router.get("/api/conversations/{conversation_id}/events", response_model=List[ConversationEventResponse])
async def list_conversation_events(conversation_id: str, runtime: BridgeRuntime = Depends(get_runtime)):
    """Get the event ledger of a conversation ordered by sequence."""
    try:
        record = await runtime.persistence.get_conversation(conversation_id)
        if record is None:
            raise HTTPException(status_code=404, detail=f"Conversation not found: {conversation_id}")
        events = await runtime.persistence.list_events(conversation_id)
    except HTTPException:
        raise
    except Exception as e:
        logger.error(
            f"[CONVERSATIONS] Error fetching events for {conversation_id} - Error: {type(e).__name__}: {str(e)}",
            exc_info=True,
        )
        raise HTTPException(status_code=500, detail=f"Error fetching events: {str(e)}")

    return [
        ConversationEventResponse(
            seq=event.seq,
            kind=event.kind,
            payload=event.payload,
            created_at=event.created_at.isoformat() if event.created_at else "",
        )
        for event in events
    ]
