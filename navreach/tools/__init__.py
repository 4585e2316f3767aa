"""Tools package for the NavReach engine."""

from navreach.tools.pacing import ToolPacer
from navreach.tools.registry import (
    FunctionTool,
    Tool,
    ToolContext,
    ToolProvider,
    ToolRegistry,
    ToolResult,
)

__all__ = [
    "FunctionTool",
    "Tool",
    "ToolContext",
    "ToolPacer",
    "ToolProvider",
    "ToolRegistry",
    "ToolResult",
]
