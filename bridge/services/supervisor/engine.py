"""Supervisor escalation engine: a secondary reasoning pass with its own tools."""
import asyncio
import json
import logging
from typing import Any, Dict, List, Optional

from openai import AsyncOpenAI

from bridge.core.config import settings
from bridge.core.errors import EscalationTimeout, ToolDispatchFailure, classify_error
from bridge.services.registry.connections import ConnectionRegistry
from bridge.services.supervisor.breadcrumbs import BreadcrumbWriter
from bridge.services.tools.base import ToolContext
from bridge.services.tools.registry import ToolRegistry

logger = logging.getLogger(__name__)

NO_ANSWER_TEXT = "The supervisor could not produce an answer."


class SupervisorEngine:
    """
    Runs escalated requests through the OpenAI Responses API.

    Function calls issued by the supervisor are executed through its own tool
    registry and fed back with ``previous_response_id`` until the model
    answers in text or the iteration limit is reached.
    """

    def __init__(
        self,
        client: AsyncOpenAI,
        tools: Optional[ToolRegistry] = None,
        registry: Optional[ConnectionRegistry] = None,
        breadcrumbs: Optional[BreadcrumbWriter] = None,
        model: Optional[str] = None,
        instructions: Optional[str] = None,
        max_iterations: Optional[int] = None,
        web_search: Optional[bool] = None,
        timeout: Optional[float] = None,
        tool_timeout: Optional[float] = None,
    ):
        self.client = client
        self.tools = tools or ToolRegistry()
        self.registry = registry
        self.breadcrumbs = breadcrumbs
        self.model = model or settings.supervisor_model
        self.instructions = instructions or settings.supervisor_instructions
        self.max_iterations = max(1, max_iterations or settings.supervisor_max_iterations)
        self.web_search = settings.supervisor_web_search if web_search is None else web_search
        self.timeout = timeout or settings.supervisor_timeout_seconds
        self.tool_timeout = tool_timeout or settings.tool_timeout_seconds

    def _tool_specs(self) -> List[Dict[str, Any]]:
        specs: List[Dict[str, Any]] = []
        if self.web_search:
            specs.append({"type": "web_search"})
        specs.extend(self.tools.schemas())
        return specs

    async def escalate(
        self,
        reasoning_type: str,
        context: str,
        target_hint: Optional[str] = None,
        conversation_id: Optional[str] = None,
    ) -> str:
        """
        Run one escalation and return the finished answer text.

        Args:
            reasoning_type: Kind of reasoning requested (analysis, planning, ...)
            context: Conversation context supplied by the primary model
            target_hint: The user's request, when the primary model supplied one
            conversation_id: Conversation the escalation belongs to (for breadcrumbs)

        Raises:
            EscalationTimeout: If the pass does not finish within the supervisor timeout
            ToolDispatchFailure: If the supervisor request fails
        """
        query = target_hint or context
        logger.info(
            f"[SUPERVISOR] Escalating for {conversation_id} - type: {reasoning_type}, "
            f"query: {query[:100]}"
        )
        await self._breadcrumb(
            conversation_id, "supervisor.started", {"reasoning_type": reasoning_type, "query": query}
        )
        try:
            answer = await asyncio.wait_for(
                self._run(reasoning_type, context, query, conversation_id), self.timeout
            )
        except asyncio.TimeoutError as e:
            logger.error(f"[SUPERVISOR] Escalation for {conversation_id} timed out after {self.timeout}s")
            await self._breadcrumb(conversation_id, "supervisor.error", {"error": "timeout"})
            raise EscalationTimeout(f"Supervisor timed out after {self.timeout}s") from e
        except ToolDispatchFailure:
            raise
        except Exception as e:
            verdict = classify_error(e)
            logger.error(
                f"[SUPERVISOR] Escalation for {conversation_id} failed - {verdict.kind.value}: {verdict.message}",
                exc_info=True,
            )
            await self._breadcrumb(conversation_id, "supervisor.error", {"error": verdict.message})
            raise ToolDispatchFailure(verdict.user_message, verdict=verdict) from e

        await self._breadcrumb(conversation_id, "supervisor.completed", {"chars": len(answer)})
        logger.info(f"[SUPERVISOR] Escalation for {conversation_id} answered ({len(answer)} chars)")
        return answer

    async def _run(self, reasoning_type: str, context: str, query: str, conversation_id: Optional[str]) -> str:
        instructions = self.instructions.format(
            reasoning_type=reasoning_type, context=context or "(none)", query=query
        )
        effort = "low" if self.web_search else "minimal"
        request: Dict[str, Any] = {
            "model": self.model,
            "instructions": instructions,
            "input": query,
            "tools": self._tool_specs(),
            "reasoning": {"effort": effort},
        }

        last_text = ""
        for iteration in range(1, self.max_iterations + 1):
            await self._breadcrumb(conversation_id, "supervisor.iteration", {"iteration": iteration})
            response = await self.client.responses.create(**request)
            last_text = getattr(response, "output_text", "") or last_text

            calls = [item for item in (response.output or []) if getattr(item, "type", None) == "function_call"]
            if not calls:
                return last_text or NO_ANSWER_TEXT

            outputs = []
            for call in calls:
                output = await self._execute(call, conversation_id)
                outputs.append({"type": "function_call_output", "call_id": call.call_id, "output": output})
            request = {
                "model": self.model,
                "instructions": instructions,
                "input": outputs,
                "tools": self._tool_specs(),
                "reasoning": {"effort": effort},
                "previous_response_id": response.id,
            }

        logger.warning(
            f"[SUPERVISOR] Reached {self.max_iterations} iterations for {conversation_id} without a final answer"
        )
        return last_text or NO_ANSWER_TEXT

    async def _execute(self, call: Any, conversation_id: Optional[str]) -> str:
        await self._breadcrumb(
            conversation_id, "supervisor.function_call", {"name": call.name, "arguments": call.arguments}
        )
        tool = self.tools.get(call.name)
        if tool is None:
            result: Dict[str, Any] = {"error": f"Unknown tool: {call.name}"}
        else:
            try:
                arguments = json.loads(call.arguments or "{}")
                result = await asyncio.wait_for(
                    tool.execute(arguments, ToolContext(conversation_id=conversation_id, call_id=call.call_id)),
                    self.tool_timeout,
                )
            except asyncio.TimeoutError:
                result = {"error": f"Tool {call.name} timed out"}
            except Exception as e:
                logger.warning(f"[SUPERVISOR] Tool {call.name} failed: {type(e).__name__}: {str(e)}")
                result = {"error": str(e)}
        await self._breadcrumb(conversation_id, "supervisor.function_result", {"name": call.name, "result": result})
        return json.dumps(result)

    async def _breadcrumb(self, conversation_id: Optional[str], step: str, data: Dict[str, Any]) -> None:
        record = {"type": step, "conversation_id": conversation_id, **data}
        if self.breadcrumbs is not None:
            await self.breadcrumbs.append(conversation_id, record)
        if self.registry is not None and conversation_id:
            try:
                await self.registry.broadcast(conversation_id, {"type": "supervisor.breadcrumb", "step": step, "data": data})
            except Exception as e:
                logger.debug(f"[SUPERVISOR] Breadcrumb broadcast failed: {type(e).__name__}: {str(e)}")
