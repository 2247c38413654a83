"""Session reset endpoint."""
import logging
from typing import Optional
from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field

from bridge.core.dependencies import get_runtime
from bridge.services.runtime import BridgeRuntime

router = APIRouter()
logger = logging.getLogger(__name__)


class SessionResetRequest(BaseModel):
    """Which in-memory state to clear."""
    chat_history: bool = Field(True, alias="chatHistory")
    connections: bool = True


class SessionResetResponse(BaseModel):
    """Reset outcome."""
    status: str = "ok"
    chatHistoryCleared: bool = False
    connectionsClosed: bool = False


@router.post("/session/reset", response_model=SessionResetResponse)
async def reset_session(
    body: Optional[SessionResetRequest] = None,
    runtime: BridgeRuntime = Depends(get_runtime),
):
    """
    Clear in-memory conversation state and/or close tracked connections.

    Persisted conversations are not touched.
    """
    body = body or SessionResetRequest()
    logger.info(
        f"[SESSION RESET] Request - chatHistory: {body.chat_history}, connections: {body.connections}"
    )
    result = SessionResetResponse()
    try:
        await runtime.registry.broadcast_all(
            {"type": "session.reset", "chatHistory": body.chat_history, "connections": body.connections}
        )
        if body.connections:
            bridges = await runtime.bridge.close_all()
            closed = await runtime.registry.close_all()
            logger.info(f"[SESSION RESET] Closed {bridges} upstream sessions and {closed} connections")
            result.connectionsClosed = True
        if body.chat_history:
            # Upstream sessions replay history, so they cannot outlive it
            await runtime.bridge.close_all()
            cleared = runtime.store.clear()
            runtime.router.clear()
            runtime.sms_threads.clear()
            logger.info(f"[SESSION RESET] Cleared {cleared} conversations")
            result.chatHistoryCleared = True
    except Exception as e:
        logger.error(f"[SESSION RESET] Error - {type(e).__name__}: {str(e)}", exc_info=True)
        raise HTTPException(status_code=500, detail=f"Error resetting session: {str(e)}")
    return result
