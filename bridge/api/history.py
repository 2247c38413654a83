"""History replay for newly connected chat clients."""
import json
import logging
from typing import Any, Dict, List, Optional

from bridge.core.config import settings
from bridge.db.models import ConversationEventRecord
from bridge.services.registry.connections import Connection
from bridge.services.runtime import BridgeRuntime

logger = logging.getLogger(__name__)


def _as_text(value: Any) -> Optional[str]:
    if value is None or isinstance(value, str):
        return value
    return json.dumps(value)


def ledger_event_frames(
    event: ConversationEventRecord, conversation_id: str, replay: bool
) -> List[Dict[str, Any]]:
    """
    Map one ledger event to the chat frames a client renders.

    Args:
        event: Stored ledger event
        conversation_id: Conversation the event belongs to
        replay: True for conversations that already ended

    Returns:
        Zero or more client frames (event kinds without a rendering map to none)
    """
    payload = event.payload or {}
    frame: Dict[str, Any] = {"conversation_id": conversation_id}
    if replay:
        frame["replay"] = True
    if event.created_at is not None:
        frame["timestamp"] = event.created_at.isoformat()

    if event.kind in ("message_user", "message_assistant"):
        frame["type"] = "conversation.item.created"
        frame["item"] = {
            "id": f"ti_{event.seq}",
            "type": "message",
            "role": "user" if event.kind == "message_user" else "assistant",
            "content": [{"type": "text", "text": str(payload.get("text") or "")}],
            "channel": payload.get("channel") or "text",
            "supervisor": bool(payload.get("supervisor")),
        }
        return [frame]

    if event.kind in ("function_call_created", "function_call_completed"):
        call_id = str(payload.get("call_id") or f"call_{event.seq}")
        item = {
            "id": call_id,
            "type": "function_call",
            "name": payload.get("name") or "tool",
            "call_id": call_id,
            "arguments": _as_text(payload.get("arguments")) or "{}",
        }
        if event.kind == "function_call_created":
            frame["type"] = "conversation.item.created"
            item["status"] = "created"
        else:
            frame["type"] = "conversation.item.completed"
            item["status"] = "completed"
            item["result"] = _as_text(payload.get("result"))
        frame["item"] = item
        return [frame]

    return []


async def replay_history(runtime: BridgeRuntime, connection: Connection) -> int:
    """
    Send recent conversations to a freshly connected client.

    Ended conversations are replayed under a ``history.header`` frame and
    flagged ``replay``; the open conversation, if any, is replayed live.
    The connection is not bound to any of them. Failures are logged and
    never close the socket.

    Returns:
        Number of frames sent
    """
    sent = 0
    try:
        records = await runtime.persistence.list_conversations(settings.conversation_list_default_limit)
        ended = [record for record in records if record.ended_at is not None]
        open_record = next((record for record in records if record.ended_at is None), None)

        await connection.send({"type": "history.header", "count": len(ended)})
        sent += 1

        replayed = [(record, True) for record in ended]
        if open_record is not None:
            replayed.append((open_record, False))
        for record, replay in replayed:
            for event in await runtime.persistence.list_events(record.id):
                for frame in ledger_event_frames(event, record.id, replay):
                    await connection.send(frame)
                    sent += 1
    except Exception as e:
        logger.warning(
            f"[HISTORY] Replay to {connection.id} failed after {sent} frames: {type(e).__name__}: {str(e)}"
        )
        return sent

    logger.info(f"[HISTORY] Replayed {sent} frames to {connection.id}")
    return sent
