"""Test doubles: scripted upstream realtime service, client sockets and supervisor responses."""
import asyncio
import json
from types import SimpleNamespace
from typing import Any, Callable, Dict, List, Union

from bridge.core.errors import TransportFault
from bridge.services.realtime.events import decode_event

_DROP = object()


def text_response(text: str, item_id: str = "item_1", chunks: int = 2) -> List[Dict[str, Any]]:
    """Raw upstream events for a streamed text answer."""
    size = max(1, len(text) // chunks)
    pieces = [text[i:i + size] for i in range(0, len(text), size)] or [""]
    events: List[Dict[str, Any]] = [{"type": "response.created", "response": {"id": f"resp_{item_id}"}}]
    events.extend(
        {"type": "response.output_text.delta", "item_id": item_id, "delta": piece} for piece in pieces
    )
    events.append({"type": "response.output_text.done", "item_id": item_id, "text": text})
    events.append({"type": "response.done", "response": {"id": f"resp_{item_id}", "status": "completed", "output": []}})
    return events


def tool_call_response(call_id: str, name: str, arguments: Dict[str, Any]) -> List[Dict[str, Any]]:
    """Raw upstream events for a streamed function call."""
    encoded = json.dumps(arguments)
    half = len(encoded) // 2
    return [
        {"type": "response.created", "response": {"id": f"resp_{call_id}"}},
        {
            "type": "response.output_item.added",
            "item": {"type": "function_call", "call_id": call_id, "name": name},
        },
        {"type": "response.function_call_arguments.delta", "call_id": call_id, "delta": encoded[:half]},
        {"type": "response.function_call_arguments.delta", "call_id": call_id, "delta": encoded[half:]},
        {"type": "response.function_call_arguments.done", "call_id": call_id, "name": name, "arguments": encoded},
        {
            "type": "response.done",
            "response": {
                "id": f"resp_{call_id}",
                "status": "completed",
                "output": [{"type": "function_call", "call_id": call_id, "name": name}],
            },
        },
    ]


Script = Union[List[Dict[str, Any]], Callable[["FakeRealtimeConnection"], List[Dict[str, Any]]]]


class FakeRealtimeConnection:
    """In-process stand-in for the upstream websocket, driven by ``response.create``."""

    def __init__(self, service: "FakeRealtimeService"):
        self.service = service
        self.sent: List[Dict[str, Any]] = []
        self.connected = False
        self.closed = False
        self._queue: asyncio.Queue = asyncio.Queue()

    async def connect(self) -> None:
        if self.service.fail_connects > 0:
            self.service.fail_connects -= 1
            raise TransportFault("connection refused")
        self.connected = True

    async def send(self, payload: Dict[str, Any]) -> None:
        if self.closed:
            raise TransportFault("Realtime connection closed")
        self.sent.append(payload)
        if payload.get("type") == "response.create":
            for raw in self.service.next_response(self):
                self._queue.put_nowait(raw)

    async def events(self):
        while True:
            raw = await self._queue.get()
            if raw is _DROP:
                raise TransportFault("Realtime connection lost")
            if raw is None:
                return
            event = decode_event(raw)
            if event is not None:
                yield event

    def push(self, raw: Dict[str, Any]) -> None:
        """Inject an unsolicited upstream event."""
        self._queue.put_nowait(raw)

    def drop(self) -> None:
        """Simulate the remote end going away."""
        self._queue.put_nowait(_DROP)

    async def close(self) -> None:
        if not self.closed:
            self.closed = True
            self._queue.put_nowait(None)

    def sent_of_type(self, frame_type: str) -> List[Dict[str, Any]]:
        return [frame for frame in self.sent if frame.get("type") == frame_type]


class FakeRealtimeService:
    """Connection factory handing out scripted fake connections."""

    def __init__(self):
        self.connections: List[FakeRealtimeConnection] = []
        self.scripts: List[Script] = []
        self.fail_connects = 0
        self.responses = 0

    def __call__(self) -> FakeRealtimeConnection:
        connection = FakeRealtimeConnection(self)
        self.connections.append(connection)
        return connection

    def queue(self, *scripts: Script) -> None:
        self.scripts.extend(scripts)

    def next_response(self, connection: FakeRealtimeConnection) -> List[Dict[str, Any]]:
        self.responses += 1
        script = self.scripts.pop(0) if self.scripts else text_response("OK", item_id=f"item_default_{self.responses}")
        return script(connection) if callable(script) else script

    @property
    def latest(self) -> FakeRealtimeConnection:
        return self.connections[-1]


class FakeSocket:
    """Client transport double recording every JSON frame."""

    def __init__(self, fail: bool = False):
        self.messages: List[Dict[str, Any]] = []
        self.fail = fail
        self.closed = False

    async def send_json(self, message: Dict[str, Any]) -> None:
        if self.fail:
            raise RuntimeError("socket is closed")
        self.messages.append(message)

    async def close(self) -> None:
        self.closed = True

    def of_type(self, message_type: str) -> List[Dict[str, Any]]:
        return [m for m in self.messages if m.get("type") == message_type]


def supervisor_response(text: str, response_id: str = "resp_sup_1", calls: List[Any] = None) -> SimpleNamespace:
    """Shape of an OpenAI Responses API result as read by the supervisor."""
    return SimpleNamespace(id=response_id, output=calls or [], output_text=text)


def supervisor_function_call(name: str, arguments: Dict[str, Any], call_id: str = "fc_1") -> SimpleNamespace:
    return SimpleNamespace(type="function_call", name=name, arguments=json.dumps(arguments), call_id=call_id)

