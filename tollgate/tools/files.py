from typing import Any

from pydantic import BaseModel, Field

from tollgate.constants import DEFAULT_READ_LINES
from tollgate.tools.core.base import Tool, ToolResult
from tollgate.tools.core.context import ToolExecution
from tollgate.tools.core.enums import Capability
from tollgate.tools.core.formatting import clip_output, format_lines_with_pagination

READ_FILE_DESCRIPTION = (
    "Read content from a file. Use for code, configs, logs, etc. "
    "For large files, use offset and limit parameters to read in chunks."
)

WRITE_FILE_DESCRIPTION = (
    "Create a file or overwrite an existing one with the given content. "
    "Parent directories are created as needed. Requires user approval."
)

EDIT_FILE_DESCRIPTION = (
    "Replace an exact string in a file. old_text must appear exactly once "
    "unless replace_all is set. Read the file first. Requires user approval."
)

_DEFAULT_OFFSET = 1


class ReadFileInput(BaseModel):
    path: str = Field(description="Path to the file (relative or absolute)")
    offset: int = Field(
        default=_DEFAULT_OFFSET, ge=1, description=f"Line number to start from (1-based, default: {_DEFAULT_OFFSET})"
    )
    limit: int = Field(
        default=DEFAULT_READ_LINES, ge=1, description=f"Maximum lines to read (default: {DEFAULT_READ_LINES})"
    )


class WriteFileInput(BaseModel):
    path: str = Field(description="Path to the file (relative or absolute)")
    content: str = Field(description="Full file content to write")


class EditFileInput(BaseModel):
    path: str = Field(description="Path to the file (relative or absolute)")
    old_text: str = Field(min_length=1, description="Exact text to replace")
    new_text: str = Field(description="Replacement text")
    replace_all: bool = Field(default=False, description="Replace every occurrence instead of exactly one")


class ReadFileTool(Tool):
    name = "read_file"
    display_name = "ReadFile"
    description = READ_FILE_DESCRIPTION
    capabilities = frozenset({Capability.READ_FILES})
    input_model = ReadFileInput

    async def execute(
        self,
        execution: ToolExecution,
        path: str,
        offset: int = _DEFAULT_OFFSET,
        limit: int = DEFAULT_READ_LINES,
        **kwargs: Any,
    ) -> ToolResult:
        full_path = execution.resolve_path(path)

        if not full_path.exists():
            return ToolResult(
                content=f"File not found: {path}. Check the path or use bash(ls) to list directory.",
                preview="Not found",
                is_error=True,
            )
        if not full_path.is_file():
            return ToolResult(
                content=f"Path is a directory, not a file: {path}. Use bash(ls {path}) to list contents.",
                preview="Not a file",
                is_error=True,
            )

        try:
            content = full_path.read_text(encoding="utf-8", errors="replace")
        except PermissionError:
            return ToolResult(content=f"Permission denied: {path}", preview="Denied", is_error=True)

        formatted = format_lines_with_pagination(content, offset, limit)
        lines = len(content.split("\n"))
        return ToolResult(content=clip_output(formatted), preview=f"Read {lines} lines")


class WriteFileTool(Tool):
    name = "write_file"
    display_name = "WriteFile"
    description = WRITE_FILE_DESCRIPTION
    capabilities = frozenset({Capability.WRITE_FILES})
    input_model = WriteFileInput

    def describe_call(self, params: dict) -> str:
        return f"Write {len(params.get('content', ''))} chars to {params.get('path')}"

    async def execute(self, execution: ToolExecution, path: str, content: str, **kwargs: Any) -> ToolResult:
        full_path = execution.resolve_path(path)
        if full_path.is_dir():
            return ToolResult(content=f"Path is a directory: {path}", preview="Not a file", is_error=True)

        existed = full_path.exists()
        full_path.parent.mkdir(parents=True, exist_ok=True)
        full_path.write_text(content, encoding="utf-8")

        lines = content.count("\n") + 1 if content else 0
        verb = "Overwrote" if existed else "Created"
        return ToolResult(
            content=f"{verb} {path} ({lines} lines)",
            preview=f"{verb} {lines} lines",
            data={"path": str(full_path), "created": not existed},
        )


class EditFileTool(Tool):
    name = "edit_file"
    display_name = "EditFile"
    description = EDIT_FILE_DESCRIPTION
    capabilities = frozenset({Capability.READ_FILES, Capability.WRITE_FILES})
    input_model = EditFileInput

    def describe_call(self, params: dict) -> str:
        return f"Edit {params.get('path')}"

    async def execute(
        self,
        execution: ToolExecution,
        path: str,
        old_text: str,
        new_text: str,
        replace_all: bool = False,
        **kwargs: Any,
    ) -> ToolResult:
        full_path = execution.resolve_path(path)
        if not full_path.is_file():
            return ToolResult(content=f"File not found: {path}", preview="Not found", is_error=True)

        original = full_path.read_text(encoding="utf-8")
        occurrences = original.count(old_text)
        if occurrences == 0:
            return ToolResult(
                content=f"old_text not found in {path}. Read the file to get the exact text.",
                preview="No match",
                is_error=True,
            )
        if occurrences > 1 and not replace_all:
            return ToolResult(
                content=f"old_text appears {occurrences} times in {path}. "
                "Include more surrounding context or set replace_all.",
                preview="Ambiguous match",
                is_error=True,
            )

        updated = original.replace(old_text, new_text) if replace_all else original.replace(old_text, new_text, 1)
        full_path.write_text(updated, encoding="utf-8")

        replaced = occurrences if replace_all else 1
        return ToolResult(
            content=f"Edited {path}: {replaced} replacement(s)",
            preview=f"{replaced} replacement(s)",
        )
