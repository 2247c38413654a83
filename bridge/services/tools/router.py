"""Function-call router: dispatches model-issued tool calls at most once."""
import asyncio
import json
import logging
from typing import Any, Dict, List, Optional
from pydantic import BaseModel

from bridge.core.errors import BridgeError, ToolDispatchFailure
from bridge.services.conversation.models import ToolCall, ToolCallStatus
from bridge.services.conversation.store import ConversationSessionStore
from bridge.services.registry.connections import ConnectionRegistry
from bridge.services.supervisor.engine import SupervisorEngine
from bridge.services.tools.base import ToolContext, ToolDefinition, ToolParameter
from bridge.services.tools.registry import ToolRegistry

logger = logging.getLogger(__name__)


class ToolResult(BaseModel):
    """Outcome of a dispatched tool call, fed back to the realtime model."""

    call_id: str
    name: Optional[str] = None
    output: str
    ok: bool = True


def escalation_definition(name: str) -> ToolDefinition:
    """Schema of the supervisor escalation tool exposed to the realtime model."""
    return ToolDefinition(
        name=name,
        description=(
            "Escalate complex queries to a supervisor agent with advanced reasoning capabilities. "
            "Use this for multi-step planning, complex analysis, technical questions, research "
            "or anything that needs up-to-date information."
        ),
        parameters=[
            ToolParameter(
                name="query",
                type="string",
                description="The user's query or request that needs supervisor-level reasoning",
                required=True,
            ),
            ToolParameter(
                name="context",
                type="string",
                description="Additional context from the conversation that might be relevant",
            ),
            ToolParameter(
                name="reasoning_type",
                type="string",
                description="The type of reasoning required (analysis, planning, technical, creative, problem_solving)",
                required=True,
            ),
        ],
    )


class FunctionCallRouter:
    """
    Assembles streamed tool calls and dispatches each ``call_id`` at most once.

    Built-in tools run locally; the escalation tool goes to the supervisor.
    Every failure becomes a textual result so the primary model can recover.
    """

    def __init__(
        self,
        registry: ConnectionRegistry,
        store: ConversationSessionStore,
        tools: ToolRegistry,
        supervisor: Optional[SupervisorEngine] = None,
        escalation_tool_name: str = "getNextResponseFromSupervisor",
        tool_timeout: float = 30.0,
    ):
        self.registry = registry
        self.store = store
        self.tools = tools
        self.supervisor = supervisor
        self.escalation_tool_name = escalation_tool_name
        self.tool_timeout = tool_timeout
        self._calls: Dict[str, Dict[str, ToolCall]] = {}

    def tool_schemas(self) -> List[Dict[str, Any]]:
        """Realtime tool schemas: built-ins plus the escalation tool."""
        schemas = self.tools.schemas()
        if self.supervisor is not None:
            schemas.append(escalation_definition(self.escalation_tool_name).to_function_schema())
        return schemas

    def get_call(self, conversation_id: str, call_id: str) -> Optional[ToolCall]:
        return self._calls.get(conversation_id, {}).get(call_id)

    async def record_delta(
        self, conversation_id: str, call_id: str, name: Optional[str] = None, fragment: str = ""
    ) -> Optional[ToolCall]:
        """
        Accumulate an argument fragment for a call.

        Fragments arriving after the call was dispatched are ignored.

        Returns:
            The call, or None if the fragment was ignored
        """
        calls = self._calls.setdefault(conversation_id, {})
        call = calls.get(call_id)
        if call is None:
            call = ToolCall(call_id=call_id, name=name)
            calls[call_id] = call
            logger.info(f"[ROUTER] New tool call {call_id} ({name}) in {conversation_id}")
        elif not call.is_open:
            logger.debug(f"[ROUTER] Ignoring late fragment for {call_id} ({call.status.value})")
            return None
        if name and not call.name:
            call.name = name
        if fragment:
            call.append_fragment(fragment)

        await self.registry.broadcast(
            conversation_id,
            {
                "type": "response.function_call_arguments.delta",
                "conversation_id": conversation_id,
                "call_id": call_id,
                "name": call.name,
                "delta": fragment,
            },
        )
        return call

    async def handle_call(
        self,
        conversation_id: str,
        call_id: str,
        name: Optional[str] = None,
        arguments: Optional[str] = None,
    ) -> Optional[ToolResult]:
        """
        Dispatch a completed tool call.

        Args:
            conversation_id: Owning conversation
            call_id: Upstream call identifier
            name: Tool name (falls back to the name seen in deltas)
            arguments: Complete argument JSON (falls back to the accumulated fragments)

        Returns:
            The tool result, or None if this call_id was already dispatched
        """
        calls = self._calls.setdefault(conversation_id, {})
        call = calls.get(call_id)
        if call is None:
            call = ToolCall(call_id=call_id, name=name)
            calls[call_id] = call
        elif not call.is_open:
            logger.info(f"[ROUTER] Duplicate dispatch of {call_id} ignored ({call.status.value})")
            return None

        if name:
            call.name = name
        if arguments is not None:
            call.arguments = arguments
        call.status = ToolCallStatus.DISPATCHED

        await self.store.record_event(
            conversation_id,
            "function_call_created",
            {"call_id": call_id, "name": call.name, "arguments": call.arguments},
        )
        logger.info(f"[ROUTER] Dispatching {call.name} ({call_id}) for {conversation_id}")

        try:
            output = await self._dispatch(conversation_id, call)
            call.status = ToolCallStatus.COMPLETED
        except BridgeError as e:
            call.status = ToolCallStatus.FAILED
            logger.warning(f"[ROUTER] Tool {call.name} ({call_id}) failed: {e.message}")
            output = json.dumps({"error": e.message, "escalated": False})
        except Exception as e:
            call.status = ToolCallStatus.FAILED
            logger.error(
                f"[ROUTER] Tool {call.name} ({call_id}) raised: {type(e).__name__}: {str(e)}",
                exc_info=True,
            )
            output = json.dumps({"error": f"Tool {call.name} failed: {str(e)}"})
        call.result = output

        await self.store.record_event(
            conversation_id,
            "function_call_completed",
            {"call_id": call_id, "name": call.name, "status": call.status.value, "result": output},
        )
        await self.registry.broadcast(
            conversation_id,
            {
                "type": "response.function_call_arguments.done",
                "conversation_id": conversation_id,
                "call_id": call_id,
                "name": call.name,
                "arguments": call.arguments,
                "status": call.status.value,
                "result": output,
            },
        )
        return ToolResult(
            call_id=call_id, name=call.name, output=output, ok=call.status == ToolCallStatus.COMPLETED
        )

    async def _dispatch(self, conversation_id: str, call: ToolCall) -> str:
        try:
            arguments = json.loads(call.arguments) if call.arguments else {}
        except json.JSONDecodeError as e:
            raise ToolDispatchFailure(f"Invalid arguments for {call.name}: {e}") from e
        if not isinstance(arguments, dict):
            raise ToolDispatchFailure(f"Arguments for {call.name} must be a JSON object")

        if call.name == self.escalation_tool_name and self.supervisor is not None:
            reasoning_type = str(arguments.get("reasoning_type") or "analysis")
            answer = await self.supervisor.escalate(
                reasoning_type,
                str(arguments.get("context") or ""),
                target_hint=arguments.get("query"),
                conversation_id=conversation_id,
            )
            return json.dumps(
                {
                    "response": answer,
                    "reasoning_type": reasoning_type,
                    "escalated": True,
                    "model": self.supervisor.model,
                }
            )

        tool = self.tools.get(call.name)
        if tool is None:
            raise ToolDispatchFailure(f"Unknown tool: {call.name}")
        try:
            result = await asyncio.wait_for(
                tool.execute(arguments, ToolContext(conversation_id=conversation_id, call_id=call.call_id)),
                self.tool_timeout,
            )
        except asyncio.TimeoutError as e:
            raise ToolDispatchFailure(f"Tool {call.name} timed out after {self.tool_timeout}s") from e
        except ValueError as e:
            raise ToolDispatchFailure(str(e)) from e
        return json.dumps(result, default=str)

    def forget(self, conversation_id: str) -> None:
        """Drop tool-call state for a conversation."""
        self._calls.pop(conversation_id, None)

    def clear(self) -> None:
        """Drop all tool-call state."""
        self._calls.clear()
