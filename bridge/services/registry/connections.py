"""Connection registry: tracks open client connections per conversation."""
import asyncio
import logging
import uuid
from typing import Any, Dict, List, Optional

from bridge.services.conversation.models import Channel

logger = logging.getLogger(__name__)


class Connection:
    """
    A client transport tracked by the registry.

    The registry only tracks the transport; the websocket endpoint that
    accepted it owns its lifecycle.
    """

    def __init__(self, socket: Any, channel: Optional[Channel] = None):
        self.id = f"conn_{uuid.uuid4().hex[:12]}"
        self.socket = socket
        self.channel = channel
        self.conversation_id: Optional[str] = None
        self._send_lock = asyncio.Lock()

    async def send(self, message: Dict[str, Any]) -> None:
        """Send one JSON message frame."""
        async with self._send_lock:
            await self.socket.send_json(message)

    async def close(self) -> None:
        """Close the underlying transport."""
        await self.socket.close()

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.id} channel={self.channel} conversation={self.conversation_id}>"


class TwilioMediaConnection(Connection):
    """
    Telephony media-stream connection.

    Translates assistant audio deltas into Twilio ``media`` frames for the
    active stream and drops streamed text the carrier cannot use. Control
    frames (finalization, rejected end requests, errors) pass through as-is.
    """

    CONTROL_FRAMES = {"conversation.finalized", "conversation.end.rejected", "error"}

    def __init__(self, socket: Any):
        super().__init__(socket, channel=Channel.VOICE)
        self.stream_sid: Optional[str] = None

    async def send(self, message: Dict[str, Any]) -> None:
        if message.get("type") in self.CONTROL_FRAMES:
            await super().send(message)
            return
        if not self.stream_sid:
            return
        message_type = message.get("type")
        if message_type == "response.audio.delta":
            await super().send(
                {"event": "media", "streamSid": self.stream_sid, "media": {"payload": message["delta"]}}
            )
            await super().send({"event": "mark", "streamSid": self.stream_sid, "mark": {"name": "response"}})
        elif message_type == "input_audio_buffer.speech_started":
            await super().send({"event": "clear", "streamSid": self.stream_sid})


class ConnectionRegistry:
    """Tracks every open client connection and the conversation it belongs to."""

    def __init__(self):
        self._connections: Dict[str, Connection] = {}

    def register(self, connection: Connection) -> None:
        """Start tracking a connection."""
        self._connections[connection.id] = connection
        logger.info(
            f"[REGISTRY] Registered {connection.id} (channel: {connection.channel}) - "
            f"{len(self._connections)} open connections"
        )

    def deregister(self, connection: Connection) -> None:
        """
        Stop tracking a connection.

        Never finalizes the conversation, even when this was its last listener.
        """
        if self._connections.pop(connection.id, None) is None:
            return
        logger.info(
            f"[REGISTRY] Deregistered {connection.id} (conversation: {connection.conversation_id}) - "
            f"{len(self._connections)} open connections"
        )

    def bind_to_conversation(self, connection: Connection, conversation_id: str) -> None:
        """Associate a connection with a conversation (at most one at a time)."""
        if connection.conversation_id and connection.conversation_id != conversation_id:
            logger.info(
                f"[REGISTRY] Rebinding {connection.id} from {connection.conversation_id} to {conversation_id}"
            )
        connection.conversation_id = conversation_id

    def connections_for(self, conversation_id: str) -> List[Connection]:
        """Connections currently bound to a conversation."""
        return [c for c in self._connections.values() if c.conversation_id == conversation_id]

    def all_connections(self) -> List[Connection]:
        """Every tracked connection."""
        return list(self._connections.values())

    def __len__(self) -> int:
        return len(self._connections)

    async def _deliver(self, connections: List[Connection], message: Dict[str, Any]) -> int:
        delivered = 0
        for connection in connections:
            try:
                await connection.send(message)
                delivered += 1
            except Exception as e:
                # One dead listener must not block delivery to the rest
                logger.warning(
                    f"[REGISTRY] Failed to deliver {message.get('type')} to {connection.id}: "
                    f"{type(e).__name__}: {str(e)}"
                )
        return delivered

    async def broadcast(self, conversation_id: str, message: Dict[str, Any]) -> int:
        """Send a message to every connection bound to a conversation."""
        return await self._deliver(self.connections_for(conversation_id), message)

    async def broadcast_all(self, message: Dict[str, Any]) -> int:
        """Send a message to every tracked connection."""
        return await self._deliver(self.all_connections(), message)

    async def close_all(self) -> int:
        """Close and drop every tracked connection."""
        connections = self.all_connections()
        self._connections.clear()
        for connection in connections:
            try:
                await connection.close()
            except Exception as e:
                logger.debug(f"[REGISTRY] Close failed for {connection.id}: {type(e).__name__}: {str(e)}")
        if connections:
            logger.info(f"[REGISTRY] Closed {len(connections)} connections")
        return len(connections)
