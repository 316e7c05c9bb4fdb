from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from tollgate.tools.core.base import ToolResult

if TYPE_CHECKING:
    from tollgate.approval import ApprovalRequest


@dataclass(frozen=True)
class ToolCallRequest:
    """A completed tool-use block from the stream, consumed exactly once."""

    id: str
    name: str
    params: dict
    message_id: str
    parse_error: str | None = None


@dataclass(frozen=True)
class CallOutcome:
    call: ToolCallRequest
    result: ToolResult
    duration_ms: int = 0
    approval: "ApprovalRequest | None" = None


@dataclass
class RoundState:
    """Bookkeeping for one provider round, used to close it out on interruption."""

    message_id: str
    calls: list[ToolCallRequest] = field(default_factory=list)
    outcomes: dict[str, CallOutcome] = field(default_factory=dict)
    assistant_appended: bool = False
    results_appended: bool = False
