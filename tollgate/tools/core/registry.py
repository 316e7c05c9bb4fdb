from typing import Any

import pydantic

from tollgate.errors import ToolNotFound, ValidationError
from tollgate.logging import get_logger
from tollgate.tools.core.base import Tool, ToolError, ToolInvocation
from tollgate.tools.core.context import ToolExecution
from tollgate.utils import ms_now

_logger = get_logger(__name__)


def _format_errors(exc: pydantic.ValidationError) -> list[str]:
    errors = []
    for err in exc.errors():
        loc = ".".join(str(part) for part in err.get("loc", ()))
        errors.append(f"{loc}: {err['msg']}" if loc else err["msg"])
    return errors


class ToolRegistry:
    def __init__(self):
        self._tools: dict[str, Tool] = {}

    def register(self, tool: Tool) -> None:
        if tool.name in self._tools:
            _logger.warning("Tool %s re-registered, replacing previous definition", tool.name)
        self._tools[tool.name] = tool

    def get(self, name: str) -> Tool | None:
        return self._tools.get(name)

    def resolve(self, name: str) -> Tool:
        tool = self._tools.get(name)
        if tool is None:
            raise ToolNotFound(name)
        return tool

    def validate(self, tool: Tool, params: Any) -> dict:
        """Check params against the tool's input model and return the normalized dict."""
        if not isinstance(params, dict):
            raise ValidationError(tool.name, [f"arguments must be an object, got {type(params).__name__}"])
        if tool.input_model is None:
            return dict(params)
        try:
            return tool.input_model.model_validate(params).model_dump()
        except pydantic.ValidationError as e:
            raise ValidationError(tool.name, _format_errors(e)) from e

    async def invoke(self, tool: Tool, params: dict, execution: ToolExecution) -> ToolInvocation:
        """Run a tool. Validation happens first; the tool is never called with rejected params."""
        start = ms_now()
        try:
            arguments = self.validate(tool, params)
        except ValidationError as e:
            return ToolInvocation(
                tool_name=tool.name,
                elapsed_ms=ms_now() - start,
                error=ToolError(tool.name, "; ".join(e.errors), "ValidationError"),
            )

        try:
            output = await tool.execute(execution, **arguments)
        except Exception as e:
            _logger.exception("Tool %s raised", tool.name)
            return ToolInvocation(
                tool_name=tool.name,
                elapsed_ms=ms_now() - start,
                error=ToolError(tool.name, str(e), type(e).__name__),
            )

        return ToolInvocation(tool_name=tool.name, elapsed_ms=ms_now() - start, output=output)

    def get_schemas(self, names: set[str] | None = None) -> list[dict]:
        return [tool.to_dict() for name, tool in self._tools.items() if names is None or name in names]

    @property
    def tools(self) -> dict[str, Tool]:
        return self._tools

    def __contains__(self, name: str) -> bool:
        return name in self._tools

    def __len__(self) -> int:
        return len(self._tools)
