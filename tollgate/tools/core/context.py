from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from tollgate.plan.engine import PlanEngine


@dataclass
class ToolContext:
    """Shared context for tool execution within one session."""

    session_id: str
    working_dir: Path = field(default_factory=Path.cwd)
    plans: "PlanEngine | None" = None


@dataclass(frozen=True)
class ToolExecution:
    """Per-call context. Pairs tool identity with the session context."""

    tool_id: str
    tool_name: str
    ctx: ToolContext

    def resolve_path(self, path: str) -> Path:
        candidate = Path(path).expanduser()
        if not candidate.is_absolute():
            candidate = self.ctx.working_dir / candidate
        return candidate.resolve()
