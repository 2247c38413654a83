"""Websocket client for the upstream realtime service."""
import asyncio
import json
import logging
from typing import Any, AsyncIterator, Dict, Optional

import websockets
from websockets.exceptions import ConnectionClosed

from bridge.core.config import settings
from bridge.core.errors import TransportFault, UpstreamTimeout
from bridge.services.realtime.events import RealtimeEvent, decode_event

logger = logging.getLogger(__name__)


class OpenAIRealtimeConnection:
    """
    One upstream realtime websocket.

    ``events()`` is the single consumer of inbound frames; sends are
    serialized with a lock so concurrent senders never interleave frames.
    """

    def __init__(
        self,
        url: Optional[str] = None,
        model: Optional[str] = None,
        api_key: Optional[str] = None,
        organization: Optional[str] = None,
        connect_timeout: Optional[float] = None,
    ):
        self.url = url or settings.realtime_url
        self.model = model or settings.realtime_model
        self.api_key = api_key or settings.openai_api_key
        self.organization = organization if organization is not None else settings.openai_organization
        self.connect_timeout = connect_timeout or settings.upstream_connect_timeout_seconds
        self.websocket = None
        self.session_id: Optional[str] = None
        self._send_lock = asyncio.Lock()
        self._closing = False

    def _build_url(self) -> str:
        separator = "&" if "?" in self.url else "?"
        return f"{self.url}{separator}model={self.model}"

    async def connect(self) -> None:
        """
        Open the websocket and wait for ``session.created``.

        Raises:
            UpstreamTimeout: If the handshake does not finish in time
            TransportFault: If the connection cannot be established
        """
        headers = [
            ("Authorization", f"Bearer {self.api_key}"),
            ("OpenAI-Beta", "realtime=v1"),
        ]
        if self.organization:
            headers.append(("OpenAI-Organization", self.organization))

        url = self._build_url()
        logger.info(f"[BRIDGE] Connecting upstream: {url}")
        try:
            self.websocket = await asyncio.wait_for(
                websockets.connect(url, additional_headers=headers), self.connect_timeout
            )
            first_message = await asyncio.wait_for(self.websocket.recv(), self.connect_timeout)
        except asyncio.TimeoutError as e:
            await self.close()
            raise UpstreamTimeout("Timed out connecting to the realtime service") from e
        except (OSError, ConnectionClosed, websockets.InvalidHandshake) as e:
            await self.close()
            raise TransportFault(f"Could not connect to the realtime service: {e}") from e

        first_event = json.loads(first_message)
        if first_event.get("type") == "session.created":
            self.session_id = (first_event.get("session") or {}).get("id")
            logger.info(f"[BRIDGE] Upstream session ready: {self.session_id}")
        else:
            logger.warning(f"[BRIDGE] Expected session.created, got {first_event.get('type')}")

    async def send(self, payload: Dict[str, Any]) -> None:
        """Send one JSON frame upstream."""
        if self.websocket is None:
            raise TransportFault("Realtime connection is not open")
        payload_type = payload.get("type", "")
        if not payload_type.startswith("input_audio_buffer."):
            logger.debug(f"[BRIDGE] Upstream send: {payload_type}")
        try:
            async with self._send_lock:
                await self.websocket.send(json.dumps(payload))
        except ConnectionClosed as e:
            raise TransportFault(f"Realtime connection closed: {e}") from e

    async def events(self) -> AsyncIterator[RealtimeEvent]:
        """
        Iterate decoded upstream events until the connection closes.

        Raises:
            TransportFault: If the connection drops without ``close()`` being called
        """
        if self.websocket is None:
            raise TransportFault("Realtime connection is not open")
        try:
            async for message in self.websocket:
                if isinstance(message, bytes):
                    continue
                try:
                    raw = json.loads(message)
                except json.JSONDecodeError:
                    logger.warning(f"[BRIDGE] Failed to decode upstream payload: {message[:64]!r}")
                    continue
                event = decode_event(raw)
                if event is not None:
                    yield event
        except ConnectionClosed as e:
            if not self._closing:
                raise TransportFault(f"Realtime connection lost: {e}") from e
            return
        if not self._closing:
            raise TransportFault("Realtime connection closed by the remote end")

    async def close(self) -> None:
        """Close the websocket; safe to call more than once."""
        self._closing = True
        websocket, self.websocket = self.websocket, None
        if websocket is None:
            return
        try:
            await websocket.close()
        except Exception as e:
            logger.debug(f"[BRIDGE] Upstream close failed: {type(e).__name__}: {str(e)}")
