from __future__ import annotations

from typing import Any, Dict

from ..contracts import ToolDefinition, ToolResult
from ..handlers.base import Tool

SKIP_ITEM_TOOL = "skip_item"


class SkipItemTool(Tool):
    """Lets the AI decline to act on the current item."""

    name = SKIP_ITEM_TOOL
    description = (
        "Skip the current item without publishing, for example when it is a "
        "duplicate or irrelevant. Provide a short reason."
    )
    parameters = {
        "type": "object",
        "properties": {
            "reason": {"type": "string", "description": "Why the item is skipped"}
        },
        "required": ["reason"],
    }
    ends_conversation = True

    async def handle_tool_call(
        self, parameters: Dict[str, Any], tool_def: ToolDefinition
    ) -> ToolResult:
        reason = str(parameters.get("reason") or "").strip() or "unspecified"
        return ToolResult.ok({"skipped": True, "reason": reason}, tool_name=self.name)


BUILTIN_TOOLS = (SkipItemTool,)
