"""Built-in tools executed locally by the router."""
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError
from pydantic import BaseModel, Field

from bridge.services.tools.base import Tool, ToolContext, ToolDefinition, ToolParameter


class Note(BaseModel):
    """A note created by the assistant."""

    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    title: str
    content: str
    created_at: datetime = Field(default_factory=datetime.utcnow)


class NoteStore:
    """In-memory note store shared by the note tools."""

    def __init__(self):
        self._notes: Dict[str, Note] = {}

    def create(self, title: str, content: str) -> Note:
        note = Note(title=title, content=content)
        self._notes[note.id] = note
        return note

    def list(self, query: Optional[str] = None) -> List[Note]:
        notes = sorted(self._notes.values(), key=lambda n: n.created_at)
        if query:
            needle = query.lower()
            notes = [n for n in notes if needle in n.title.lower() or needle in n.content.lower()]
        return notes

    def update(self, note_id: str, title: Optional[str] = None, content: Optional[str] = None) -> Optional[Note]:
        note = self._notes.get(note_id)
        if note is None:
            return None
        if title is not None:
            note.title = title
        if content is not None:
            note.content = content
        return note

    def delete(self, note_id: str) -> bool:
        return self._notes.pop(note_id, None) is not None

    def clear(self) -> None:
        self._notes.clear()


class GetCurrentTimeTool(Tool):
    """Report the current time, optionally in a named time zone."""

    @property
    def definition(self) -> ToolDefinition:
        return ToolDefinition(
            name="get_current_time",
            description="Get the current date and time, optionally in an IANA time zone.",
            parameters=[
                ToolParameter(
                    name="timezone",
                    type="string",
                    description="IANA time zone name such as 'Europe/Paris'. Defaults to UTC.",
                ),
            ],
        )

    async def execute(self, arguments: Dict[str, Any], context: ToolContext) -> Dict[str, Any]:
        zone_name = arguments.get("timezone") or "UTC"
        try:
            zone = timezone.utc if zone_name == "UTC" else ZoneInfo(zone_name)
        except (ZoneInfoNotFoundError, ValueError):
            return {"error": f"Unknown time zone: {zone_name}"}
        now = datetime.now(zone)
        return {"timezone": zone_name, "iso": now.isoformat(), "weekday": now.strftime("%A")}


class CreateNoteTool(Tool):
    """Create a note."""

    def __init__(self, notes: NoteStore):
        self.notes = notes

    @property
    def definition(self) -> ToolDefinition:
        return ToolDefinition(
            name="create_note",
            description="Create a new note with a title and content.",
            parameters=[
                ToolParameter(name="title", type="string", description="Short note title", required=True),
                ToolParameter(name="content", type="string", description="Note body", required=True),
            ],
        )

    async def execute(self, arguments: Dict[str, Any], context: ToolContext) -> Dict[str, Any]:
        self.validate_arguments(arguments)
        note = self.notes.create(str(arguments["title"]), str(arguments["content"]))
        return {"status": "created", "note_id": note.id, "title": note.title, "content": note.content}


class ListNotesTool(Tool):
    """List notes, optionally filtered by a search query."""

    def __init__(self, notes: NoteStore):
        self.notes = notes

    @property
    def definition(self) -> ToolDefinition:
        return ToolDefinition(
            name="list_notes",
            description="List note titles, optionally filtered by a search query (matches title or content).",
            parameters=[
                ToolParameter(name="query", type="string", description="Full text search within note title/content."),
            ],
        )

    async def execute(self, arguments: Dict[str, Any], context: ToolContext) -> Dict[str, Any]:
        notes = self.notes.list(arguments.get("query"))
        return {"notes": [{"id": n.id, "title": n.title} for n in notes]}


class UpdateNoteTool(Tool):
    """Update an existing note."""

    def __init__(self, notes: NoteStore):
        self.notes = notes

    @property
    def definition(self) -> ToolDefinition:
        return ToolDefinition(
            name="update_note",
            description="Update an existing note's title and/or content.",
            parameters=[
                ToolParameter(name="note_id", type="string", description="Note identifier", required=True),
                ToolParameter(name="title", type="string", description="New title"),
                ToolParameter(name="content", type="string", description="New content"),
            ],
        )

    async def execute(self, arguments: Dict[str, Any], context: ToolContext) -> Dict[str, Any]:
        self.validate_arguments(arguments)
        note = self.notes.update(arguments["note_id"], arguments.get("title"), arguments.get("content"))
        if note is None:
            return {"error": "not_found"}
        return {"status": "updated", "note_id": note.id, "title": note.title, "content": note.content}


class DeleteNoteTool(Tool):
    """Delete a note."""

    def __init__(self, notes: NoteStore):
        self.notes = notes

    @property
    def definition(self) -> ToolDefinition:
        return ToolDefinition(
            name="delete_note",
            description="Delete a note by its identifier.",
            parameters=[
                ToolParameter(name="note_id", type="string", description="Note identifier", required=True),
            ],
        )

    async def execute(self, arguments: Dict[str, Any], context: ToolContext) -> Dict[str, Any]:
        self.validate_arguments(arguments)
        return {"status": "deleted" if self.notes.delete(arguments["note_id"]) else "not_found"}


def builtin_tools(notes: NoteStore) -> List[Tool]:
    """Instantiate every built-in tool around a shared note store."""
    return [
        GetCurrentTimeTool(),
        CreateNoteTool(notes),
        ListNotesTool(notes),
        UpdateNoteTool(notes),
        DeleteNoteTool(notes),
    ]
