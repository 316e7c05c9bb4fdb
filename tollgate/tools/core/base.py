from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, ClassVar

from pydantic import BaseModel

from tollgate.tools.core.context import ToolExecution
from tollgate.tools.core.enums import DANGEROUS_CAPABILITIES, Capability


def _inline_refs(schema: dict) -> dict:
    """Resolve $ref pointers by inlining definitions from $defs."""
    defs = schema.get("$defs", {})
    if not defs:
        return schema

    def _resolve(node: Any) -> Any:
        if isinstance(node, dict):
            if "$ref" in node:
                ref_name = node["$ref"].rsplit("/", 1)[-1]
                if ref_name in defs:
                    return _resolve(defs[ref_name])
                return node
            return {k: _resolve(v) for k, v in node.items() if k != "$defs"}
        if isinstance(node, list):
            return [_resolve(item) for item in node]
        return node

    return _resolve(schema)


@dataclass(frozen=True)
class ToolResult:
    content: str
    preview: str
    is_error: bool = False
    data: dict | None = None


@dataclass(frozen=True)
class ToolError:
    tool_name: str
    message: str
    error_type: str = "ToolError"

    def to_result(self) -> ToolResult:
        return ToolResult(
            content=f"Error: {self.error_type}: {self.message}",
            preview=f"Failed: {self.error_type}",
            is_error=True,
        )


@dataclass(frozen=True)
class ToolInvocation:
    tool_name: str
    elapsed_ms: int
    output: ToolResult | None = None
    error: ToolError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None and self.output is not None and not self.output.is_error

    @property
    def result(self) -> ToolResult:
        if self.error is not None:
            return self.error.to_result()
        assert self.output is not None
        return self.output


class Tool(ABC):
    name: str
    description: str
    display_name: str = ""
    capabilities: ClassVar[frozenset[Capability]] = frozenset()
    # None = derive from capabilities
    requires_approval: ClassVar[bool | None] = None
    input_model: ClassVar[type[BaseModel] | None] = None

    @property
    def dangerous(self) -> bool:
        if self.requires_approval is not None:
            return self.requires_approval
        return bool(self.capabilities & DANGEROUS_CAPABILITIES)

    @abstractmethod
    async def execute(self, execution: ToolExecution, **kwargs: Any) -> ToolResult: ...

    def describe_call(self, params: dict) -> str:
        """One-line summary shown to the user when approval is requested."""
        if not params:
            return f"{self.name}()"
        parts = [f"{k}={v!r}" for k, v in sorted(params.items())]
        return f"{self.name}({', '.join(parts)})"

    def to_dict(self) -> dict:
        schema: dict = {"name": self.name, "description": self.description}
        if self.input_model is not None:
            json_schema = _inline_refs(self.input_model.model_json_schema())
            schema["parameters"] = {
                "type": "object",
                "properties": json_schema.get("properties", {}),
                "required": json_schema.get("required", []),
            }
        else:
            schema["parameters"] = {"type": "object", "properties": {}}
        return {
            "type": "function",
            "function": schema,
        }

    def get_metadata(self) -> dict:
        return {
            "name": self.name,
            "display_name": self.display_name or self.name,
            "description": self.description,
            "capabilities": sorted(c.value for c in self.capabilities),
            "dangerous": self.dangerous,
        }
