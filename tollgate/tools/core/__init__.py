"""Core tool infrastructure - base classes, registry, context."""

from tollgate.tools.core.base import Tool, ToolError, ToolInvocation, ToolResult
from tollgate.tools.core.context import ToolContext, ToolExecution
from tollgate.tools.core.enums import DANGEROUS_CAPABILITIES, Capability
from tollgate.tools.core.registry import ToolRegistry

__all__ = [
    "DANGEROUS_CAPABILITIES",
    "Capability",
    "Tool",
    "ToolContext",
    "ToolError",
    "ToolExecution",
    "ToolInvocation",
    "ToolRegistry",
    "ToolResult",
]
