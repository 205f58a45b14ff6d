"""Tool interface consumed by the agent dispatcher.

Tools wrap third-party HTTP APIs.  Recoverable remote failures come back
as ``ToolResult(success=False, error=...)``; only local problems with no
sensible output (an unparseable response body) raise.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any


@dataclass
class ToolResult:
    success: bool
    output: str = ""
    error: str | None = None

    @classmethod
    def ok(cls, output: str) -> ToolResult:
        return cls(success=True, output=output)

    @classmethod
    def fail(cls, error: str) -> ToolResult:
        return cls(success=False, error=error)


class Tool(ABC):
    """Abstract base class for agent tools."""

    name: str = ""
    description: str = ""

    @abstractmethod
    def parameters_schema(self) -> dict[str, Any]:
        """JSON schema describing the accepted arguments."""
        ...

    @abstractmethod
    async def execute(self, args: dict[str, Any]) -> ToolResult:
        ...

    def get_info(self) -> dict[str, Any]:
        """Return tool metadata as a dict (function-calling schema shape)."""
        return {
            "name": self.name,
            "description": self.description,
            "parameters": self.parameters_schema(),
        }

    def __repr__(self) -> str:
        return f"<Tool {self.name}>"
