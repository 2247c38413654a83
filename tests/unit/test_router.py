"""Unit tests for the function-call router and built-in tools."""
import asyncio
import json
from typing import Any, Dict

import pytest

from bridge.core.errors import EscalationTimeout
from bridge.services.conversation.models import Channel, ToolCallStatus
from bridge.services.registry.connections import Connection
from bridge.services.tools.base import Tool, ToolContext, ToolDefinition
from tests.fakes import FakeSocket


ESCALATION = "getNextResponseFromSupervisor"


async def _listen(runtime, conversation_id: str = None) -> Connection:
    """Register a recording connection bound to a fresh conversation."""
    conversation = await runtime.store.get_or_create(conversation_id, Channel.TEXT)
    connection = Connection(FakeSocket(), Channel.TEXT)
    runtime.registry.register(connection)
    runtime.registry.bind_to_conversation(connection, conversation.id)
    return connection


class SlowTool(Tool):
    """Tool that never finishes in time."""

    @property
    def definition(self) -> ToolDefinition:
        return ToolDefinition(name="slow_tool", description="Sleeps")

    async def execute(self, arguments: Dict[str, Any], context: ToolContext) -> Dict[str, Any]:
        await asyncio.sleep(10)
        return {}


class TestDispatch:
    """At-most-once dispatch and failure handling."""

    @pytest.mark.asyncio
    async def test_builtin_tool_runs_and_broadcasts(self, runtime):
        """Test a built-in call is assembled from fragments, executed and broadcast."""
        listener = await _listen(runtime)
        conversation_id = listener.conversation_id

        await runtime.router.record_delta(conversation_id, "call_1", "create_note", '{"title": "Groceries", ')
        await runtime.router.record_delta(conversation_id, "call_1", None, '"content": "milk"}')
        result = await runtime.router.handle_call(conversation_id, "call_1")

        assert result.ok is True
        assert json.loads(result.output)["status"] == "created"
        assert [n.title for n in runtime.notes.list()] == ["Groceries"]
        assert [m["type"] for m in listener.socket.messages] == [
            "response.function_call_arguments.delta",
            "response.function_call_arguments.delta",
            "response.function_call_arguments.done",
        ]
        done = listener.socket.messages[-1]
        assert done["status"] == "completed"
        assert done["name"] == "create_note"

    @pytest.mark.asyncio
    async def test_duplicate_dispatch_is_ignored(self, runtime):
        """Test a retried done event for the same call_id does not run the tool again."""
        listener = await _listen(runtime)
        conversation_id = listener.conversation_id
        arguments = json.dumps({"title": "Once", "content": "only"})

        first = await runtime.router.handle_call(conversation_id, "call_1", "create_note", arguments)
        second = await runtime.router.handle_call(conversation_id, "call_1", "create_note", arguments)

        assert first is not None
        assert second is None
        assert len(runtime.notes.list()) == 1

    @pytest.mark.asyncio
    async def test_late_fragment_is_ignored(self, runtime):
        """Test fragments after dispatch do not change the call."""
        listener = await _listen(runtime)
        conversation_id = listener.conversation_id
        await runtime.router.handle_call(conversation_id, "call_1", "list_notes", "{}")

        ignored = await runtime.router.record_delta(conversation_id, "call_1", None, "garbage")

        assert ignored is None
        assert runtime.router.get_call(conversation_id, "call_1").arguments == "{}"

    @pytest.mark.asyncio
    async def test_unknown_tool_is_a_textual_failure(self, runtime):
        """Test an unrecognized tool name yields a failure result instead of raising."""
        listener = await _listen(runtime)

        result = await runtime.router.handle_call(listener.conversation_id, "call_1", "launch_rockets", "{}")

        assert result.ok is False
        assert "Unknown tool: launch_rockets" in json.loads(result.output)["error"]
        call = runtime.router.get_call(listener.conversation_id, "call_1")
        assert call.status == ToolCallStatus.FAILED

    @pytest.mark.asyncio
    async def test_invalid_arguments_are_a_textual_failure(self, runtime):
        """Test malformed JSON arguments are reported back, not raised."""
        listener = await _listen(runtime)

        result = await runtime.router.handle_call(listener.conversation_id, "call_1", "create_note", "{not json")

        assert result.ok is False
        assert "Invalid arguments" in json.loads(result.output)["error"]

    @pytest.mark.asyncio
    async def test_tool_timeout(self, runtime):
        """Test a slow tool is bounded by the tool timeout."""
        runtime.router.tools.register(SlowTool())
        runtime.router.tool_timeout = 0.05
        listener = await _listen(runtime)

        result = await runtime.router.handle_call(listener.conversation_id, "call_1", "slow_tool", "{}")

        assert result.ok is False
        assert "timed out" in json.loads(result.output)["error"]

    @pytest.mark.asyncio
    async def test_ledger_records_created_and_completed(self, runtime):
        """Test tool calls are written to the conversation ledger."""
        listener = await _listen(runtime)

        await runtime.router.handle_call(listener.conversation_id, "call_1", "list_notes", "{}")

        events = await runtime.persistence.list_events(listener.conversation_id)
        assert [e.kind for e in events] == ["function_call_created", "function_call_completed"]

    @pytest.mark.asyncio
    async def test_forget_resets_call_state(self, runtime):
        """Test forget drops tool-call state for a conversation."""
        listener = await _listen(runtime)
        await runtime.router.handle_call(listener.conversation_id, "call_1", "list_notes", "{}")

        runtime.router.forget(listener.conversation_id)

        assert runtime.router.get_call(listener.conversation_id, "call_1") is None


class TestEscalation:
    """Escalation tool routing."""

    @pytest.mark.asyncio
    async def test_escalation_goes_to_supervisor(self, runtime, mock_openai):
        """Test the escalation tool is answered by the supervisor."""
        listener = await _listen(runtime)
        arguments = json.dumps({"query": "Latest news?", "context": "User asked", "reasoning_type": "analysis"})

        result = await runtime.router.handle_call(listener.conversation_id, "call_1", ESCALATION, arguments)

        payload = json.loads(result.output)
        assert result.ok is True
        assert payload["response"] == "Supervisor answer"
        assert payload["escalated"] is True
        mock_openai.responses.create.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_escalation_failure_is_textual(self, runtime, monkeypatch):
        """Test a supervisor timeout becomes a failure result fed back to the model."""
        async def _timeout(*args, **kwargs):
            raise EscalationTimeout("Supervisor timed out after 1s")

        monkeypatch.setattr(runtime.supervisor, "escalate", _timeout)
        listener = await _listen(runtime)

        result = await runtime.router.handle_call(
            listener.conversation_id, "call_1", ESCALATION, json.dumps({"query": "q", "reasoning_type": "analysis"})
        )

        payload = json.loads(result.output)
        assert result.ok is False
        assert payload["escalated"] is False
        assert "timed out" in payload["error"]

    def test_schemas_include_builtins_and_escalation(self, runtime):
        """Test the realtime tool list exposes built-ins and the escalation tool."""
        names = [schema["name"] for schema in runtime.router.tool_schemas()]

        assert {"get_current_time", "create_note", "list_notes", ESCALATION} <= set(names)
        escalation = next(s for s in runtime.router.tool_schemas() if s["name"] == ESCALATION)
        assert escalation["parameters"]["required"] == ["query", "reasoning_type"]


class TestBuiltinTools:
    """Built-in tool behaviour."""

    @pytest.mark.asyncio
    async def test_current_time_in_zone(self, runtime):
        """Test get_current_time honours a time zone and rejects unknown ones."""
        tool = runtime.router.tools.get("get_current_time")

        paris = await tool.execute({"timezone": "Europe/Paris"}, ToolContext())
        unknown = await tool.execute({"timezone": "Mars/Olympus"}, ToolContext())

        assert paris["timezone"] == "Europe/Paris"
        assert "error" in unknown

    @pytest.mark.asyncio
    async def test_notes_lifecycle(self, runtime):
        """Test create, search, update and delete of notes."""
        tools = runtime.router.tools
        created = await tools.get("create_note").execute({"title": "Trip", "content": "Pack boots"}, ToolContext())
        await tools.get("create_note").execute({"title": "Work", "content": "Call Sam"}, ToolContext())

        found = await tools.get("list_notes").execute({"query": "boots"}, ToolContext())
        updated = await tools.get("update_note").execute(
            {"note_id": created["note_id"], "title": "Hike"}, ToolContext()
        )
        deleted = await tools.get("delete_note").execute({"note_id": created["note_id"]}, ToolContext())
        missing = await tools.get("delete_note").execute({"note_id": created["note_id"]}, ToolContext())

        assert found["notes"] == [{"id": created["note_id"], "title": "Trip"}]
        assert updated["title"] == "Hike"
        assert deleted["status"] == "deleted"
        assert missing["status"] == "not_found"
