"""Tool registry: the set of tools a router or supervisor may dispatch to."""
import logging
from typing import Any, Dict, List, Optional

from bridge.services.tools.base import Tool

logger = logging.getLogger(__name__)


class ToolRegistry:
    """Registry of tool instances keyed by name."""

    def __init__(self, tools: Optional[List[Tool]] = None):
        self._tools: Dict[str, Tool] = {}
        for tool in tools or []:
            self.register(tool)

    def register(self, tool: Tool) -> None:
        """
        Register a tool instance.

        Args:
            tool: Tool to expose; replaces any tool with the same name
        """
        if tool.name in self._tools:
            logger.warning(f"[TOOLS] Tool {tool.name} already registered, overwriting")
        self._tools[tool.name] = tool
        logger.info(f"[TOOLS] Registered tool: {tool.name}")

    def get(self, name: Optional[str]) -> Optional[Tool]:
        """Get tool by name, or None if not registered."""
        if not name:
            return None
        return self._tools.get(name)

    def names(self) -> List[str]:
        return list(self._tools)

    def schemas(self) -> List[Dict[str, Any]]:
        """Function-tool schemas for every registered tool."""
        return [tool.definition.to_function_schema() for tool in self._tools.values()]

    def __contains__(self, name: str) -> bool:
        return name in self._tools

    def __len__(self) -> int:
        return len(self._tools)
