"""Twilio SMS webhook: inbound texts join the chat pipeline."""
import asyncio
import logging
from typing import Optional
from fastapi import APIRouter, Depends, Form, Request
from fastapi.responses import Response

from bridge.core.config import settings
from bridge.core.dependencies import get_runtime
from bridge.core.errors import BridgeError
from bridge.services.conversation.models import Channel, Conversation, Turn
from bridge.services.runtime import BridgeRuntime

router = APIRouter()
logger = logging.getLogger(__name__)


def messaging_twiml(text: Optional[str]) -> str:
    """
    TwiML answering an inbound SMS.

    Args:
        text: Reply body, or None to acknowledge without replying

    Returns:
        TwiML XML string
    """
    if not text:
        return """<?xml version="1.0" encoding="UTF-8"?>
<Response></Response>"""

    escaped_text = (
        text.replace("&", "&amp;")
        .replace("<", "&lt;")
        .replace(">", "&gt;")
        .replace('"', "&quot;")
        .replace("'", "&apos;")
    )

    return f"""<?xml version="1.0" encoding="UTF-8"?>
<Response>
    <Message>{escaped_text}</Message>
</Response>"""


async def sms_conversation(runtime: BridgeRuntime, sender: str) -> Conversation:
    """Conversation for a sender: the one still open for that number, or a new one."""
    conversation_id = runtime.sms_threads.get(sender) if sender else None
    conversation = runtime.store.find(conversation_id) if conversation_id else None
    if conversation is not None and conversation.accepts_turns:
        return conversation

    conversation = await runtime.store.get_or_create(None, Channel.SMS)
    if sender:
        runtime.sms_threads[sender] = conversation.id
    logger.info(f"[SMS] Started conversation {conversation.id} for {sender or 'unknown sender'}")
    return conversation


async def run_sms_turn(runtime: BridgeRuntime, conversation_id: str, content: str) -> Optional[Turn]:
    """Submit an SMS turn; failures are logged and answer with no reply."""
    try:
        return await runtime.bridge.submit_turn(conversation_id, content)
    except BridgeError as e:
        logger.warning(f"[SMS] Turn failed for {conversation_id} - {e.kind.value}: {e.message}")
        return None


@router.post("/webhooks/sms")
async def handle_incoming_sms(
    request: Request,
    Body: str = Form(""),
    From: str = Form(""),
    To: str = Form(""),
    runtime: BridgeRuntime = Depends(get_runtime),
):
    """
    Handle an inbound SMS from Twilio.

    The text is submitted as a user turn of the sender's conversation. The
    answer is returned as a TwiML ``<Message>`` when it is ready within the
    reply timeout; otherwise the turn keeps running and the webhook is
    acknowledged with an empty response.
    """
    logger.info(
        f"[SMS] Received message webhook - From: {From}, To: {To}, length: {len(Body)}, "
        f"Client: {request.client.host if request.client else 'unknown'}"
    )

    content = Body.strip()
    if not content:
        logger.info(f"[SMS] Empty message from {From}, acknowledging")
        return Response(content=messaging_twiml(None), media_type="application/xml")

    try:
        conversation = await sms_conversation(runtime, From)
    except BridgeError as e:
        logger.error(f"[SMS] Could not resolve conversation for {From} - {e.kind.value}: {e.message}")
        return Response(content=messaging_twiml(None), media_type="application/xml")

    task = runtime.spawn(run_sms_turn(runtime, conversation.id, content))
    try:
        turn = await asyncio.wait_for(asyncio.shield(task), settings.sms_reply_timeout_seconds)
    except asyncio.TimeoutError:
        logger.warning(
            f"[SMS] No answer for {conversation.id} within {settings.sms_reply_timeout_seconds}s, "
            f"acknowledging without reply"
        )
        turn = None

    reply = turn.content if turn is not None else None
    logger.info(f"[SMS] Replying to {From} for {conversation.id} (length: {len(reply or '')})")
    return Response(content=messaging_twiml(reply), media_type="application/xml")
