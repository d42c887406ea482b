from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Optional


@dataclass
class ToolResult:
    """Outcome of one tool execution, fed back to the model as JSON."""

    success: bool
    message: str = ""
    data: Any = None
    error: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"success": self.success, "message": self.message}
        if self.data is not None:
            payload["data"] = self.data
        if self.error:
            payload["error"] = self.error
        return payload


class BaseTool(ABC):
    """Capability the model may invoke with a ``{"title", "arguments"}`` call."""

    id: str = ""
    name: str = ""
    description: str = ""
    system_prompt: str = ""

    @abstractmethod
    async def execute(self, arguments: dict[str, Any]) -> ToolResult:
        """Run the tool."""

    def validate_args(self, arguments: Any) -> None:
        if not isinstance(arguments, dict):
            raise ValueError("Arguments must be an object")
