"""Realtime bridge: one upstream session per conversation."""
import asyncio
import logging
from typing import Any, Callable, Dict, List, Optional

from bridge.core.config import settings
from bridge.core.errors import (
    BridgeError,
    InvalidState,
    TransportFault,
    UpstreamTimeout,
    classify_error,
    error_message,
    to_exception,
)
from bridge.services.conversation.models import Channel, Role, ToolCall, Turn
from bridge.services.conversation.store import ConversationSessionStore
from bridge.services.realtime.client import OpenAIRealtimeConnection
from bridge.services.realtime.events import (
    AudioDelta,
    ContentDelta,
    ContentDone,
    InputTranscript,
    RealtimeEvent,
    ResponseCreated,
    ResponseDone,
    SpeechStarted,
    ToolCallDelta,
    ToolCallDone,
    UpstreamErrorEvent,
)
from bridge.services.registry.connections import ConnectionRegistry
from bridge.services.tools.router import FunctionCallRouter

logger = logging.getLogger(__name__)


class UpstreamSession:
    """State of one conversation's upstream connection."""

    def __init__(self, conversation_id: str, connection: Any):
        self.conversation_id = conversation_id
        self.connection = connection
        self.consumer: Optional[asyncio.Task] = None
        self.pending: Optional[asyncio.Future] = None
        self.last_turn: Optional[Turn] = None
        self.tool_calls: List[ToolCall] = []
        self.tool_outputs_pending = False
        self.response_id: Optional[str] = None

    def start_turn(self) -> asyncio.Future:
        self.pending = asyncio.get_running_loop().create_future()
        self.last_turn = None
        self.tool_calls = []
        self.tool_outputs_pending = False
        self.response_id = None
        return self.pending

    def end_cycle(self) -> None:
        """Forget the state of a completed response cycle."""
        self.last_turn = None
        self.tool_calls = []
        self.response_id = None

    def resolve(self, turn: Optional[Turn]) -> None:
        if self.pending is not None and not self.pending.done():
            self.pending.set_result(turn)

    def fail(self, exc: BaseException) -> None:
        if self.pending is not None and not self.pending.done():
            self.pending.set_exception(exc)


def history_item(turn: Turn) -> Dict[str, Any]:
    """``conversation.item.create`` frame replaying a stored turn."""
    content_type = "input_text" if turn.role == Role.USER else "text"
    return {
        "type": "conversation.item.create",
        "item": {
            "type": "message",
            "role": turn.role.value,
            "content": [{"type": content_type, "text": turn.content}],
        },
    }


def chat_response_message(conversation_id: str, turn: Turn) -> Dict[str, Any]:
    """``chat.response`` frame announcing a committed assistant turn."""
    return {
        "type": "chat.response",
        "conversation_id": conversation_id,
        "item_id": turn.item_id,
        "content": turn.content,
        "supervisor": turn.supervisor,
        "timestamp": turn.timestamp.isoformat(),
    }


class RealtimeBridge:
    """
    Streams conversation turns to the upstream realtime service.

    Turns within a conversation are serialized by a per-conversation gate.
    Each upstream connection has a single consumer task that decodes events,
    feeds tool calls to the router and broadcasts output to clients.
    A lost transport drops the session; the next turn reconnects and replays
    the trimmed history.
    """

    def __init__(
        self,
        store: ConversationSessionStore,
        registry: ConnectionRegistry,
        router: FunctionCallRouter,
        connection_factory: Optional[Callable[[], Any]] = None,
        instructions: Optional[str] = None,
        voice: Optional[str] = None,
        turn_timeout: Optional[float] = None,
    ):
        self.store = store
        self.registry = registry
        self.router = router
        self.connection_factory = connection_factory or OpenAIRealtimeConnection
        self.instructions = instructions or settings.agent_instructions
        self.voice = voice or settings.realtime_voice
        self.turn_timeout = turn_timeout or settings.upstream_turn_timeout_seconds
        self._sessions: Dict[str, UpstreamSession] = {}
        self._gates: Dict[str, asyncio.Lock] = {}
        self._open_locks: Dict[str, asyncio.Lock] = {}

    def is_open(self, conversation_id: str) -> bool:
        return conversation_id in self._sessions

    def _gate(self, conversation_id: str) -> asyncio.Lock:
        return self._gates.setdefault(conversation_id, asyncio.Lock())

    def _session_config(self, channel: Channel) -> Dict[str, Any]:
        config: Dict[str, Any] = {
            "instructions": self.instructions,
            "tools": self.router.tool_schemas(),
            "tool_choice": "auto",
        }
        if channel == Channel.VOICE:
            config.update(
                {
                    "modalities": ["text", "audio"],
                    "voice": self.voice,
                    "input_audio_format": "g711_ulaw",
                    "output_audio_format": "g711_ulaw",
                    "turn_detection": {"type": "server_vad"},
                    "input_audio_transcription": {"model": "whisper-1"},
                }
            )
        else:
            config["modalities"] = ["text"]
        return config

    async def open_for(self, conversation_id: str) -> UpstreamSession:
        """
        Open (or return) the upstream session for a conversation.

        Configures the session, replays the trimmed history and starts the
        consumer loop.
        """
        lock = self._open_locks.setdefault(conversation_id, asyncio.Lock())
        async with lock:
            session = self._sessions.get(conversation_id)
            if session is not None:
                return session

            conversation = self.store.get(conversation_id)
            if not conversation.accepts_turns:
                raise InvalidState(f"Conversation {conversation_id} is {conversation.state.value}")

            connection = self.connection_factory()
            await connection.connect()
            try:
                await connection.send({"type": "session.update", "session": self._session_config(conversation.channel)})
                history = self.store.trim_history_for_upstream(conversation_id)
                for turn in history:
                    await connection.send(history_item(turn))
            except Exception:
                await connection.close()
                raise

            session = UpstreamSession(conversation_id, connection)
            session.consumer = asyncio.create_task(self._consume(session))
            self._sessions[conversation_id] = session
            logger.info(
                f"[BRIDGE] Opened upstream for {conversation_id} "
                f"(channel: {conversation.channel.value}, replayed {len(history)} turns)"
            )
            return session

    async def submit_turn(self, conversation_id: str, content: str) -> Optional[Turn]:
        """
        Send a user turn and wait for the response cycle to complete.

        Returns:
            The committed assistant turn, or None if the model produced no text

        Raises:
            InvalidState: If the conversation no longer accepts turns
            UpstreamTimeout: If the response does not complete in time
            TransportFault: If the upstream connection is lost mid-turn
            QuotaOrRateLimit, UpstreamError: If upstream reports an error
        """
        async with self._gate(conversation_id):
            conversation = self.store.get(conversation_id)
            if not conversation.accepts_turns:
                raise InvalidState(f"Conversation {conversation_id} is {conversation.state.value}")

            session = await self.open_for(conversation_id)
            await self.store.append_turn(conversation_id, Turn(role=Role.USER, content=content))
            pending = session.start_turn()
            try:
                await session.connection.send(
                    {
                        "type": "conversation.item.create",
                        "item": {
                            "type": "message",
                            "role": "user",
                            "content": [{"type": "input_text", "text": content}],
                        },
                    }
                )
                await session.connection.send({"type": "response.create"})
            except TransportFault:
                await self._drop(session)
                raise

            try:
                return await asyncio.wait_for(pending, self.turn_timeout)
            except asyncio.TimeoutError as e:
                logger.error(f"[BRIDGE] Turn for {conversation_id} timed out after {self.turn_timeout}s")
                # A late answer would otherwise complete the next turn
                try:
                    await session.connection.send({"type": "response.cancel"})
                except TransportFault as cancel_error:
                    logger.debug(f"[BRIDGE] Could not cancel response for {conversation_id}: {cancel_error.message}")
                await self._drop(session)
                raise UpstreamTimeout(f"No response within {self.turn_timeout}s") from e
            finally:
                if session.pending is pending:
                    session.pending = None

    async def submit_audio(self, conversation_id: str, payload: str) -> None:
        """Forward a base64 audio frame for a voice conversation."""
        session = self._sessions.get(conversation_id)
        if session is None:
            session = await self.open_for(conversation_id)
        await session.connection.send({"type": "input_audio_buffer.append", "audio": payload})

    # ------------------------------------------------------------------ #
    # Consumer loop
    # ------------------------------------------------------------------ #

    async def _consume(self, session: UpstreamSession) -> None:
        conversation_id = session.conversation_id
        try:
            async for event in session.connection.events():
                try:
                    await self._handle(session, event)
                except BridgeError as e:
                    logger.warning(f"[BRIDGE] Dropped {event.kind} for {conversation_id}: {e.message}")
        except asyncio.CancelledError:
            raise
        except TransportFault as e:
            await self._on_transport_lost(session, e)
        except Exception as e:
            logger.error(
                f"[BRIDGE] Consumer for {conversation_id} crashed: {type(e).__name__}: {str(e)}",
                exc_info=True,
            )
            await self._on_transport_lost(session, TransportFault(str(e)))

    async def _handle(self, session: UpstreamSession, event: RealtimeEvent) -> None:
        conversation_id = session.conversation_id

        if isinstance(event, ContentDelta):
            self.store.extend_streaming_turn(conversation_id, event.item_id, event.delta)
            await self.registry.broadcast(
                conversation_id,
                {
                    "type": "response.output_text.delta",
                    "conversation_id": conversation_id,
                    "item_id": event.item_id,
                    "delta": event.delta,
                },
            )

        elif isinstance(event, ContentDone):
            supervisor = any(call.name == self.router.escalation_tool_name for call in session.tool_calls)
            turn = await self.store.complete_streaming_turn(
                conversation_id, event.item_id, event.text, tool_calls=session.tool_calls, supervisor=supervisor
            )
            if turn is None:
                return
            session.last_turn = turn
            await self.registry.broadcast(conversation_id, chat_response_message(conversation_id, turn))

        elif isinstance(event, AudioDelta):
            await self.registry.broadcast(
                conversation_id,
                {
                    "type": "response.audio.delta",
                    "conversation_id": conversation_id,
                    "item_id": event.item_id,
                    "delta": event.delta,
                },
            )

        elif isinstance(event, SpeechStarted):
            await self.registry.broadcast(
                conversation_id, {"type": "input_audio_buffer.speech_started", "conversation_id": conversation_id}
            )

        elif isinstance(event, InputTranscript):
            if not event.transcript.strip():
                return
            turn = await self.store.append_turn(conversation_id, Turn(role=Role.USER, content=event.transcript))
            await self.registry.broadcast(
                conversation_id,
                {
                    "type": "conversation.item.input_audio_transcription.completed",
                    "conversation_id": conversation_id,
                    "item_id": event.item_id,
                    "transcript": turn.content,
                },
            )

        elif isinstance(event, ToolCallDelta):
            await self.router.record_delta(conversation_id, event.call_id, event.name, event.fragment)

        elif isinstance(event, ToolCallDone):
            result = await self.router.handle_call(conversation_id, event.call_id, event.name, event.arguments)
            if result is None:
                return
            call = self.router.get_call(conversation_id, event.call_id)
            if call is not None:
                session.tool_calls.append(call.model_copy())
            await session.connection.send(
                {
                    "type": "conversation.item.create",
                    "item": {"type": "function_call_output", "call_id": result.call_id, "output": result.output},
                }
            )
            session.tool_outputs_pending = True

        elif isinstance(event, ResponseCreated):
            session.response_id = event.response_id

        elif isinstance(event, ResponseDone):
            if event.response_id and session.response_id and event.response_id != session.response_id:
                logger.debug(
                    f"[BRIDGE] Ignoring completion of stale response {event.response_id} for {conversation_id}"
                )
                return
            if session.tool_outputs_pending:
                session.tool_outputs_pending = False
                logger.debug(f"[BRIDGE] Requesting follow-up response for {conversation_id}")
                await session.connection.send({"type": "response.create"})
            else:
                session.resolve(session.last_turn)
                session.end_cycle()

        elif isinstance(event, UpstreamErrorEvent):
            verdict = classify_error(event.error)
            logger.error(
                f"[BRIDGE] Upstream error for {conversation_id} - {verdict.kind.value}: {verdict.message}"
            )
            exc = to_exception(verdict)
            await self.registry.broadcast(conversation_id, error_message(exc, conversation_id))
            exc.announced = True
            session.fail(exc)

    async def _on_transport_lost(self, session: UpstreamSession, fault: TransportFault) -> None:
        conversation_id = session.conversation_id
        logger.warning(f"[BRIDGE] Upstream transport lost for {conversation_id}: {fault.message}")
        if self._sessions.get(conversation_id) is session:
            del self._sessions[conversation_id]
        await session.connection.close()
        await self.registry.broadcast(conversation_id, error_message(fault, conversation_id))
        fault.announced = True
        session.fail(fault)

    async def _drop(self, session: UpstreamSession) -> None:
        if self._sessions.get(session.conversation_id) is session:
            del self._sessions[session.conversation_id]
        if session.consumer is not None and session.consumer is not asyncio.current_task():
            session.consumer.cancel()
            try:
                await session.consumer
            except asyncio.CancelledError:
                pass
        await session.connection.close()

    # ------------------------------------------------------------------ #
    # Teardown
    # ------------------------------------------------------------------ #

    async def close_for(self, conversation_id: str) -> bool:
        """
        Close a conversation's upstream session.

        An in-flight turn is failed with a TransportFault.

        Returns:
            True if a session was open
        """
        session = self._sessions.get(conversation_id)
        self._gates.pop(conversation_id, None)
        self._open_locks.pop(conversation_id, None)
        if session is None:
            return False
        await self._drop(session)
        closed = TransportFault("Upstream session closed")
        # Listeners learn about the close from the finalization message
        closed.announced = True
        session.fail(closed)
        logger.info(f"[BRIDGE] Closed upstream for {conversation_id}")
        return True

    async def close_all(self) -> int:
        """Close every upstream session."""
        conversation_ids = list(self._sessions)
        for conversation_id in conversation_ids:
            await self.close_for(conversation_id)
        return len(conversation_ids)
