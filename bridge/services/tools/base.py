"""Base classes for tools callable by the realtime model or the supervisor."""
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional
from pydantic import BaseModel


class ToolParameter(BaseModel):
    """Definition of a tool parameter."""

    name: str
    type: str  # "string", "integer", "boolean", "number", "array", "object"
    description: str
    required: bool = False
    enum: Optional[List[str]] = None

    def to_schema(self) -> Dict[str, Any]:
        """JSON-schema fragment for this parameter."""
        schema: Dict[str, Any] = {"type": self.type, "description": self.description}
        if self.enum:
            schema["enum"] = self.enum
        return schema


class ToolDefinition(BaseModel):
    """Provider-agnostic tool definition."""

    name: str
    description: str
    parameters: List[ToolParameter] = []

    def to_function_schema(self) -> Dict[str, Any]:
        """
        Convert to the flat function-tool format.

        Both the realtime ``session.update`` tools list and the Responses API
        accept this shape:
        {"type": "function", "name": ..., "description": ..., "parameters": {...}}
        """
        return {
            "type": "function",
            "name": self.name,
            "description": self.description,
            "parameters": {
                "type": "object",
                "properties": {p.name: p.to_schema() for p in self.parameters},
                "required": [p.name for p in self.parameters if p.required],
            },
        }


class ToolContext(BaseModel):
    """Per-call context handed to a tool."""

    conversation_id: Optional[str] = None
    call_id: Optional[str] = None


class Tool(ABC):
    """Abstract base class for all tools."""

    @property
    @abstractmethod
    def definition(self) -> ToolDefinition:
        """Return tool definition with metadata and parameters."""

    @abstractmethod
    async def execute(self, arguments: Dict[str, Any], context: ToolContext) -> Dict[str, Any]:
        """
        Execute the tool.

        Args:
            arguments: Parsed call arguments
            context: Conversation and call identifiers

        Returns:
            JSON-serializable result
        """

    @property
    def name(self) -> str:
        return self.definition.name

    def validate_arguments(self, arguments: Dict[str, Any]) -> None:
        """
        Check required parameters are present.

        Raises:
            ValueError: If a required parameter is missing
        """
        missing = [p.name for p in self.definition.parameters if p.required and p.name not in arguments]
        if missing:
            raise ValueError(f"Missing required parameter(s) for {self.name}: {', '.join(missing)}")
