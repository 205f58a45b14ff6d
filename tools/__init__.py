"""Agent tools available to the dispatcher."""

from tools.base import Tool, ToolResult
from tools.weather import WeatherApiTool


def load_tools() -> dict[str, Tool]:
    """Instantiate every built-in tool, keyed by name."""
    tools: list[Tool] = [WeatherApiTool()]
    return {tool.name: tool for tool in tools}


__all__ = ["Tool", "ToolResult", "WeatherApiTool", "load_tools"]
