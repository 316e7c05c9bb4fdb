import asyncio
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from enum import StrEnum

from tollgate.constants import APPROVAL_TIMEOUT
from tollgate.core.models import ToolCallRequest
from tollgate.errors import ApprovalAlreadyResolved, ApprovalNotFound
from tollgate.logging import get_logger
from tollgate.tools.core.base import Tool
from tollgate.utils import new_id, utc_now

_logger = get_logger(__name__)


class ApprovalDecision(StrEnum):
    PENDING = "pending"
    APPROVED = "approved"
    DENIED = "denied"
    TIMED_OUT = "timed_out"

    @classmethod
    def parse(cls, value: "str | ApprovalDecision") -> "ApprovalDecision":
        aliases = {"approve": cls.APPROVED, "allow": cls.APPROVED, "deny": cls.DENIED, "reject": cls.DENIED}
        value = value.lower()
        decision = aliases.get(value) or cls(value)
        if decision not in (cls.APPROVED, cls.DENIED):
            raise ValueError(f"A human decision must be approve or deny, got {value}")
        return decision


@dataclass(frozen=True)
class ApprovalRequest:
    tool_call_id: str
    tool_name: str
    params: dict
    summary: str
    capabilities: tuple[str, ...]
    created_at: datetime
    deadline: datetime
    dangerous: bool = True
    decision: ApprovalDecision = ApprovalDecision.PENDING
    resolved_at: datetime | None = None
    reason: str | None = None
    id: str = field(default_factory=lambda: new_id("apr_"))

    @property
    def is_pending(self) -> bool:
        return self.decision == ApprovalDecision.PENDING

    @property
    def approved(self) -> bool:
        return self.decision == ApprovalDecision.APPROVED

    def refusal(self) -> str:
        """Tool-result text the model sees instead of the tool's output."""
        match self.decision:
            case ApprovalDecision.TIMED_OUT:
                return (
                    f"Tool call {self.tool_name} was not executed: the user did not respond before the approval "
                    "deadline. Treat it as denied and adapt your approach."
                )
            case _:
                reason = f" Reason: {self.reason}" if self.reason else ""
                return (
                    f"Tool call {self.tool_name} was denied by the user and was not executed.{reason} "
                    "Do not retry the same call; ask the user or try a different approach."
                )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "tool_call_id": self.tool_call_id,
            "tool_name": self.tool_name,
            "params": self.params,
            "summary": self.summary,
            "capabilities": list(self.capabilities),
            "dangerous": self.dangerous,
            "created_at": self.created_at.isoformat(),
            "deadline": self.deadline.isoformat(),
            "decision": self.decision.value,
            "resolved_at": self.resolved_at.isoformat() if self.resolved_at else None,
            "reason": self.reason,
        }


@dataclass
class ApprovalPolicy:
    auto_approve: set[str] = field(default_factory=set)
    skip_approvals: bool = False

    def requires_approval(self, tool: Tool) -> bool:
        if not tool.dangerous:
            return False
        if self.skip_approvals:
            return False
        return tool.name not in self.auto_approve


class ApprovalGate:
    """Approval requests of one session.

    A request moves from pending to exactly one of approved, denied or timed_out
    and never changes again. Resolved requests move to the history.
    """

    def __init__(self, timeout: float = APPROVAL_TIMEOUT, policy: ApprovalPolicy | None = None):
        self.timeout = timeout
        self.policy = policy or ApprovalPolicy()
        self._pending: dict[str, ApprovalRequest] = {}
        self._history: dict[str, ApprovalRequest] = {}
        self._signals: dict[str, asyncio.Event] = {}

    def needs_approval(self, tool: Tool) -> bool:
        return self.policy.requires_approval(tool)

    def create(self, call: ToolCallRequest, tool: Tool, now: datetime | None = None) -> ApprovalRequest:
        now = now or utc_now()
        request = ApprovalRequest(
            tool_call_id=call.id,
            tool_name=tool.name,
            params=call.params,
            summary=tool.describe_call(call.params),
            capabilities=tuple(sorted(c.value for c in tool.capabilities)),
            dangerous=tool.dangerous,
            created_at=now,
            deadline=now + timedelta(seconds=self.timeout),
        )
        self._pending[request.id] = request
        self._signals[request.id] = asyncio.Event()
        _logger.info("Approval %s requested for %s", request.id, tool.name)
        return request

    def get(self, request_id: str) -> ApprovalRequest:
        request = self._pending.get(request_id) or self._history.get(request_id)
        if request is None:
            raise ApprovalNotFound(request_id)
        return request

    def pending(self) -> list[ApprovalRequest]:
        return list(self._pending.values())

    def history(self) -> list[ApprovalRequest]:
        return list(self._history.values())

    def _finish(
        self, request: ApprovalRequest, decision: ApprovalDecision, reason: str | None, now: datetime
    ) -> ApprovalRequest:
        resolved = replace(request, decision=decision, resolved_at=now, reason=reason)
        del self._pending[request.id]
        self._history[request.id] = resolved
        if signal := self._signals.pop(request.id, None):
            signal.set()
        _logger.info("Approval %s for %s: %s", request.id, request.tool_name, decision)
        return resolved

    def resolve(
        self,
        request_id: str,
        decision: ApprovalDecision | str,
        reason: str | None = None,
        now: datetime | None = None,
    ) -> ApprovalRequest:
        decision = ApprovalDecision.parse(decision)
        now = now or utc_now()

        if request_id in self._history:
            raise ApprovalAlreadyResolved(request_id, self._history[request_id].decision)
        request = self._pending.get(request_id)
        if request is None:
            raise ApprovalNotFound(request_id)
        if now >= request.deadline:
            # A late answer never wins against the deadline
            expired = self._finish(request, ApprovalDecision.TIMED_OUT, None, now)
            raise ApprovalAlreadyResolved(request_id, expired.decision)

        return self._finish(request, decision, reason, now)

    def expire(self, now: datetime | None = None) -> list[ApprovalRequest]:
        now = now or utc_now()
        overdue = [r for r in self._pending.values() if now >= r.deadline]
        return [self._finish(r, ApprovalDecision.TIMED_OUT, None, now) for r in overdue]

    def cancel_all(self, reason: str = "cancelled", now: datetime | None = None) -> list[ApprovalRequest]:
        now = now or utc_now()
        return [self._finish(r, ApprovalDecision.DENIED, reason, now) for r in list(self._pending.values())]

    async def wait(self, request_id: str) -> ApprovalRequest:
        """Block until the request is resolved or its deadline passes."""
        request = self.get(request_id)
        signal = self._signals.get(request_id)
        if signal is None:
            return request

        remaining = (request.deadline - utc_now()).total_seconds()
        try:
            await asyncio.wait_for(signal.wait(), timeout=max(remaining, 0))
        except TimeoutError:
            current = self._pending.get(request_id)
            if current is not None:
                self._finish(current, ApprovalDecision.TIMED_OUT, None, utc_now())
        return self.get(request_id)
