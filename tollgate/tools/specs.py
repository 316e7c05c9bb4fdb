from tollgate.tools.bash import BashTool
from tollgate.tools.core.base import Tool
from tollgate.tools.core.registry import ToolRegistry
from tollgate.tools.files import EditFileTool, ReadFileTool, WriteFileTool
from tollgate.tools.http import HttpRequestTool
from tollgate.tools.plan import PlanTool

BUILTIN_TOOLS: list[type[Tool]] = [
    ReadFileTool,
    WriteFileTool,
    EditFileTool,
    BashTool,
    HttpRequestTool,
    PlanTool,
]


def create_registry(*extra_tools: Tool, exclude: set[str] | None = None) -> ToolRegistry:
    registry = ToolRegistry()
    for tool_cls in BUILTIN_TOOLS:
        tool = tool_cls()
        if exclude and tool.name in exclude:
            continue
        registry.register(tool)
    for tool in extra_tools:
        registry.register(tool)
    return registry
