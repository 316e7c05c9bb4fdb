import json
from dataclasses import asdict, dataclass, field
from enum import StrEnum


class EventType(StrEnum):
    """Types of events a turn emits to the presentation layer."""

    # Model output
    THINKING = "thinking"
    TEXT = "text"

    # Tool handling
    TOOL_CALL = "tool_call"  # Model requested a tool
    TOOL_INVOKED = "tool_invoked"  # Tool ran (or was refused) and its result is in the conversation

    # Approvals
    APPROVAL_REQUESTED = "approval_requested"
    APPROVAL_RESOLVED = "approval_resolved"

    # Plans
    PLAN_STATUS = "plan_status"
    TASK_STATUS = "task_status"

    # Accounting
    USAGE = "usage"

    # Completion
    DONE = "done"
    ERROR = "error"
    CANCELLED = "cancelled"


@dataclass
class SSEEvent:
    type: EventType

    def to_sse(self) -> dict:
        data = asdict(self)
        data["type"] = self.type.value
        return {"event": self.type.value, "data": json.dumps(data, default=str)}

    def to_sse_string(self) -> str:
        sse = self.to_sse()
        return f"event: {sse['event']}\ndata: {sse['data']}\n\n"


@dataclass
class ThinkingEvent(SSEEvent):
    type: EventType = field(default=EventType.THINKING, init=False)
    status: str = ""


@dataclass
class TextEvent(SSEEvent):
    type: EventType = field(default=EventType.TEXT, init=False)
    content: str = ""


@dataclass
class ToolCallEvent(SSEEvent):
    type: EventType = field(default=EventType.TOOL_CALL, init=False)
    tool_id: str
    name: str
    args: dict
    display_name: str = ""
    description: str = ""
    needs_approval: bool = False


@dataclass
class ToolInvokedEvent(SSEEvent):
    type: EventType = field(default=EventType.TOOL_INVOKED, init=False)
    tool_id: str
    name: str
    result: str
    preview: str
    is_error: bool = False
    duration_ms: int = 0
    approval: str | None = None  # decision when the call went through the gate
    data: dict | None = None


@dataclass
class ApprovalRequestedEvent(SSEEvent):
    type: EventType = field(default=EventType.APPROVAL_REQUESTED, init=False)
    request_id: str
    tool_id: str
    name: str
    summary: str
    params: dict = field(default_factory=dict)
    capabilities: list[str] = field(default_factory=list)
    deadline: str = ""


@dataclass
class ApprovalResolvedEvent(SSEEvent):
    type: EventType = field(default=EventType.APPROVAL_RESOLVED, init=False)
    request_id: str
    tool_id: str
    name: str
    decision: str
    reason: str | None = None


@dataclass
class PlanStatusEvent(SSEEvent):
    type: EventType = field(default=EventType.PLAN_STATUS, init=False)
    plan_id: str
    title: str
    status: str
    previous: str | None = None
    progress: dict = field(default_factory=dict)


@dataclass
class TaskStatusEvent(SSEEvent):
    type: EventType = field(default=EventType.TASK_STATUS, init=False)
    plan_id: str
    task_id: str
    title: str
    status: str
    previous: str


@dataclass
class UsageEvent(SSEEvent):
    type: EventType = field(default=EventType.USAGE, init=False)
    usage: dict = field(default_factory=dict)
    context_tokens: int = 0
    model: str = ""


@dataclass
class DoneEvent(SSEEvent):
    type: EventType = field(default=EventType.DONE, init=False)
    run_id: str = ""
    usage: dict = field(default_factory=dict)


@dataclass
class ErrorEvent(SSEEvent):
    type: EventType = field(default=EventType.ERROR, init=False)
    message: str = ""
    recoverable: bool = False
    error_type: str = ""
    tool_name: str | None = None
    request_id: str | None = None


@dataclass
class CancelledEvent(SSEEvent):
    type: EventType = field(default=EventType.CANCELLED, init=False)
    run_id: str = ""
