"""Client websocket endpoints: browser chat and Twilio media streams."""
import json
import logging
from typing import Any, Dict, Optional
from fastapi import APIRouter, Depends, WebSocket, WebSocketDisconnect

from bridge.api.history import replay_history
from bridge.core.config import settings
from bridge.core.dependencies import get_runtime
from bridge.core.errors import BridgeError, MissingConversationId, classify_error, error_message
from bridge.services.conversation.models import Channel
from bridge.services.realtime.bridge import chat_response_message
from bridge.services.registry.connections import Connection, TwilioMediaConnection
from bridge.services.runtime import BridgeRuntime

router = APIRouter()
logger = logging.getLogger(__name__)


async def _receive(websocket: WebSocket) -> Optional[Dict[str, Any]]:
    """Read one JSON object frame; None for frames that are not JSON objects."""
    text = await websocket.receive_text()
    try:
        message = json.loads(text)
    except json.JSONDecodeError:
        return None
    return message if isinstance(message, dict) else None


async def _report(connection: Connection, err: BridgeError, conversation_id: Optional[str]) -> None:
    """Send an error to the requesting connection unless listeners already received it."""
    if err.announced and connection.conversation_id == conversation_id:
        return
    await connection.send(error_message(err, conversation_id))


async def run_chat_turn(
    runtime: BridgeRuntime, connection: Connection, conversation_id: Optional[str], content: str
) -> None:
    """
    Resolve the conversation for a chat message and submit the turn.

    A message without a conversation id always starts a new conversation.
    The requester gets the answer even if it was rebound to another
    conversation while the turn ran.
    """
    try:
        conversation = await runtime.store.get_or_create(conversation_id, Channel.TEXT)
        conversation_id = conversation.id
        runtime.registry.bind_to_conversation(connection, conversation_id)
        turn = await runtime.bridge.submit_turn(conversation_id, content)
    except BridgeError as e:
        logger.warning(
            f"[CHAT WS] Turn failed for {conversation_id} on {connection.id} - {e.kind.value}: {e.message}"
        )
        try:
            await _report(connection, e, conversation_id)
        except Exception as send_error:
            logger.debug(f"[CHAT WS] Could not report failure to {connection.id}: {str(send_error)}")
        return

    if turn is not None and connection.conversation_id != conversation_id:
        try:
            await connection.send(chat_response_message(conversation_id, turn))
        except Exception as e:
            logger.warning(
                f"[CHAT WS] Could not deliver answer for {conversation_id} to {connection.id}: "
                f"{type(e).__name__}: {str(e)}"
            )


async def handle_end_request(runtime: BridgeRuntime, connection: Connection, message: Dict[str, Any]) -> None:
    """Handle ``conversation.end``; failures are answered with ``conversation.end.rejected``."""
    conversation_id = message.get("conversation_id")
    try:
        if not conversation_id:
            raise MissingConversationId("conversation.end requires a conversation_id")
        await runtime.coordinator.request_end(conversation_id, requester=connection)
    except BridgeError as e:
        logger.info(f"[FINALIZE] End request rejected for {conversation_id} - {e.kind.value}: {e.message}")
        verdict = classify_error(e)
        await connection.send(
            {
                "type": "conversation.end.rejected",
                "conversation_id": conversation_id,
                "kind": verdict.kind.value,
                "reason": type(e).__name__,
                "message": e.message,
            }
        )


@router.websocket("/chat")
async def chat_socket(websocket: WebSocket, runtime: BridgeRuntime = Depends(get_runtime)):
    """
    Browser text chat.

    Client messages: ``chat.message`` and ``conversation.end``.
    """
    await websocket.accept()
    connection = Connection(websocket, channel=Channel.TEXT)
    runtime.registry.register(connection)
    logger.info(f"[CHAT WS] Client connected: {connection.id}")
    if settings.history_replay_on_connect:
        await replay_history(runtime, connection)

    try:
        while True:
            message = await _receive(websocket)
            if message is None:
                await connection.send({"type": "error", "kind": "invalid_message", "message": "Expected a JSON object"})
                continue

            message_type = message.get("type")
            if message_type == "chat.message":
                content = str(message.get("content") or "").strip()
                if not content:
                    await connection.send({"type": "error", "kind": "invalid_message", "message": "Empty message"})
                    continue
                logger.info(f"[CHAT WS] Message from {connection.id} ({len(content)} chars)")
                runtime.spawn(run_chat_turn(runtime, connection, message.get("conversation_id"), content))
            elif message_type == "conversation.end":
                await handle_end_request(runtime, connection, message)
            else:
                logger.debug(f"[CHAT WS] Ignoring message type {message_type} from {connection.id}")
    except WebSocketDisconnect:
        logger.info(f"[CHAT WS] Client disconnected: {connection.id}")
    finally:
        runtime.registry.deregister(connection)


@router.websocket("/call")
async def call_socket(websocket: WebSocket, runtime: BridgeRuntime = Depends(get_runtime)):
    """
    Twilio media stream.

    Twilio events: ``start``, ``media``, ``stop``. A ``stop`` ends the media
    stream but never finalizes the conversation.
    """
    await websocket.accept()
    connection = TwilioMediaConnection(websocket)
    runtime.registry.register(connection)
    logger.info(f"[CALL WS] Media stream connected: {connection.id}")

    try:
        while True:
            message = await _receive(websocket)
            if message is None:
                continue
            event = message.get("event") or message.get("type")

            if event == "start":
                start = message.get("start") or {}
                connection.stream_sid = start.get("streamSid")
                requested_id = (start.get("customParameters") or {}).get("conversation_id")
                try:
                    conversation = await runtime.store.get_or_create(requested_id, Channel.VOICE)
                    runtime.registry.bind_to_conversation(connection, conversation.id)
                    await runtime.bridge.open_for(conversation.id)
                    logger.info(
                        f"[CALL WS] Stream {connection.stream_sid} started for {conversation.id}"
                    )
                except BridgeError as e:
                    logger.error(f"[CALL WS] Could not start stream {connection.stream_sid} - {e.kind.value}: {e.message}")

            elif event == "media":
                if not connection.conversation_id:
                    continue
                payload = (message.get("media") or {}).get("payload")
                if not payload:
                    continue
                try:
                    await runtime.bridge.submit_audio(connection.conversation_id, payload)
                except BridgeError as e:
                    logger.warning(f"[CALL WS] Dropped audio for {connection.conversation_id}: {e.message}")

            elif event == "stop":
                logger.info(f"[CALL WS] Stream {connection.stream_sid} stopped ({connection.conversation_id})")
                break

            elif event == "conversation.end":
                await handle_end_request(runtime, connection, message)

    except WebSocketDisconnect:
        logger.info(f"[CALL WS] Media stream disconnected: {connection.id}")
    finally:
        runtime.registry.deregister(connection)
