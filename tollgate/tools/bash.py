import asyncio
from typing import Any

from pydantic import BaseModel, Field

from tollgate.constants import BASH_OUTPUT_LIMIT, BASH_TIMEOUT
from tollgate.tools.core.base import Tool, ToolResult
from tollgate.tools.core.context import ToolExecution
from tollgate.tools.core.enums import Capability
from tollgate.tools.core.formatting import clip_output

BLOCKED_PATTERNS = frozenset(
    {
        "rm -rf /",
        "rm -rf ~",
        "rm -rf *",
        "dd if=",
        "mkfs",
        "fdisk",
        ":(){:|:&};:",
        "> /dev/sd",
        "chmod -R 777 /",
    }
)

BASH_DESCRIPTION = """Execute a bash command in the session's working directory.

PREFER OTHER TOOLS:
- For reading files: use read_file()
- For editing files: use edit_file() or write_file()

USE bash FOR:
- Build and test commands: make, pytest, npm
- Version control: git status, git diff, git commit
- File operations: mkdir, cp, mv

SAFETY: Destructive commands (rm -rf /) are blocked. Every command requires approval."""


def is_blocked_command(command: str) -> bool:
    cmd_lower = command.lower().strip()
    return any(blocked in cmd_lower for blocked in BLOCKED_PATTERNS)


async def execute_bash(command: str, working_dir: str | None = None, timeout: int = BASH_TIMEOUT) -> str:
    proc = await asyncio.create_subprocess_shell(
        command,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
        cwd=working_dir,
    )
    try:
        stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    except TimeoutError:
        return f"Error: Command timed out after {timeout}s"
    finally:
        # Also reached when the turn is cancelled mid-command
        if proc.returncode is None:
            proc.kill()
            await proc.wait()

    output = stdout.decode(errors="replace")
    if stderr:
        if output:
            output += "\n"
        output += f"[stderr]\n{stderr.decode(errors='replace')}"

    if proc.returncode != 0:
        output += f"\n[exit code: {proc.returncode}]"

    return clip_output(output, BASH_OUTPUT_LIMIT) if output else "(no output)"


class BashInput(BaseModel):
    command: str = Field(min_length=1, description="The shell command to execute")
    working_dir: str | None = Field(default=None, description="Working directory (optional, defaults to session dir)")


class BashTool(Tool):
    name = "bash"
    display_name = "Bash"
    description = BASH_DESCRIPTION
    capabilities = frozenset({Capability.EXECUTE_COMMANDS})
    input_model = BashInput

    def __init__(self, timeout: int = BASH_TIMEOUT):
        self.timeout = timeout

    def describe_call(self, params: dict) -> str:
        return params.get("command", "")

    async def execute(
        self, execution: ToolExecution, command: str, working_dir: str | None = None, **kwargs: Any
    ) -> ToolResult:
        if is_blocked_command(command):
            return ToolResult(content=f"Blocked: {command}", preview="Blocked", is_error=True)

        cwd = str(execution.resolve_path(working_dir)) if working_dir else str(execution.ctx.working_dir)
        output = await execute_bash(command, cwd, self.timeout)
        lines = output.count("\n") + 1
        return ToolResult(content=output, preview=f"{lines} lines")
