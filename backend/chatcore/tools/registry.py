from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Iterable, Optional

from chatcore.tools.base import BaseTool, ToolResult
from chatcore.utils.json_extract import extract_first_balanced_object

logger = logging.getLogger(__name__)

MAX_TOOL_CALL_CHARS = 8000


@dataclass(frozen=True)
class ToolCall:
    """A tool request parsed out of model output."""

    title: str
    arguments: dict[str, Any]


class ToolRegistry:
    """Registered tools and the subset currently enabled."""

    def __init__(self, tools: Iterable[BaseTool] = (), enabled: Optional[Iterable[str]] = None) -> None:
        self._tools: dict[str, BaseTool] = {}
        self._enabled: set[str] = set()
        for tool in tools:
            self.register(tool)
        if enabled is not None:
            self._enabled = {tool_id for tool_id in enabled if tool_id in self._tools}

    def register(self, tool: BaseTool, enabled: bool = True) -> None:
        if not tool.id:
            raise ValueError("Tool id must not be empty")
        self._tools[tool.id] = tool
        if enabled:
            self._enabled.add(tool.id)

    def set_enabled(self, tool_id: str, enabled: bool) -> None:
        if enabled and tool_id in self._tools:
            self._enabled.add(tool_id)
        else:
            self._enabled.discard(tool_id)

    def is_enabled(self, tool_id: str) -> bool:
        return tool_id in self._tools and tool_id in self._enabled

    def enabled_tools(self) -> list[BaseTool]:
        return [tool for tool_id, tool in self._tools.items() if tool_id in self._enabled]

    def system_prompt(self) -> str:
        """Instruction block describing the call format and enabled tools.

        Empty when no tool is enabled.
        """

        tools = self.enabled_tools()
        if not tools:
            return ""
        lines = [
            "You MAY call tools if (and only if) the user enabled them.",
            "When calling a tool, respond with ONLY a single line of JSON (no markdown, no extra text).",
            "Tool call format:",
            '{"title":"<tool_id>","arguments":{...}}',
            "",
        ]
        lines.extend(tool.system_prompt for tool in tools if tool.system_prompt)
        lines.extend(
            [
                "",
                "After a tool result is provided, you will be called again and should either "
                "call another tool (same JSON format) or respond normally.",
                "When you respond normally after tools, DO NOT dump raw tool JSON. "
                "Write a short synthesized answer instead.",
                "Enabled tools:",
            ]
        )
        lines.extend(f"- {tool.id}: {tool.description}" for tool in tools)
        return "\n".join(lines).strip()

    def parse_tool_call(self, text: str) -> Optional[ToolCall]:
        """Return the tool call embedded in ``text``, if it names an enabled tool."""

        raw = (text or "").strip()
        if not raw or len(raw) > MAX_TOOL_CALL_CHARS:
            return None
        parsed = extract_first_balanced_object(raw)
        if parsed is None:
            return None
        title = parsed.get("title")
        arguments = parsed.get("arguments")
        if not isinstance(title, str) or not isinstance(arguments, dict):
            return None
        if not self.is_enabled(title):
            return None
        return ToolCall(title=title, arguments=arguments)

    async def execute(self, tool_id: str, arguments: dict[str, Any]) -> ToolResult:
        """Dispatch to a tool; unknown tools and tool exceptions become failed results."""

        tool = self._tools.get(tool_id)
        if tool is None:
            return ToolResult(success=False, message=f'Tool "{tool_id}" not found')
        try:
            tool.validate_args(arguments)
            return await tool.execute(arguments)
        except Exception as exc:  # noqa: BLE001
            logger.warning("Tool %s failed: %s", tool_id, exc)
            return ToolResult(
                success=False,
                message=f"Tool execution failed: {exc or 'Unknown error'}",
                error=str(exc),
            )
