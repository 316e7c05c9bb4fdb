import asyncio
from collections.abc import Callable

from tollgate.approval import ApprovalDecision, ApprovalGate, ApprovalRequest
from tollgate.channel import Channel
from tollgate.constants import TOOL_OUTPUT_LIMIT
from tollgate.core.events import ToolExecuted
from tollgate.core.models import CallOutcome, RoundState, ToolCallRequest
from tollgate.errors import ApprovalDenied, ApprovalTimedOut, ToolNotFound, ValidationError
from tollgate.events import (
    ApprovalRequestedEvent,
    ApprovalResolvedEvent,
    ErrorEvent,
    SSEEvent,
    ToolCallEvent,
    ToolInvokedEvent,
)
from tollgate.tools.core.base import Tool, ToolResult
from tollgate.tools.core.context import ToolContext, ToolExecution
from tollgate.tools.core.formatting import clip_output
from tollgate.tools.core.registry import ToolRegistry
from tollgate.utils import ms_now

CANCELLED_RESULT = "Tool call was cancelled by the user before it completed."


def cancelled_outcome(call: ToolCallRequest) -> CallOutcome:
    return CallOutcome(call=call, result=ToolResult(content=CANCELLED_RESULT, preview="Cancelled", is_error=True))


class ToolRunner:
    """Starts each tool call as its own task as soon as the stream completes it.

    Safe calls run immediately. Dangerous calls wait for their approval, then
    for the stream to finish, so nothing runs before the assistant message
    that requested it is in the conversation.
    """

    def __init__(
        self,
        registry: ToolRegistry,
        gate: ApprovalGate,
        ctx: ToolContext,
        emit: Callable[[SSEEvent], None],
        channel: Channel | None = None,
        run_id: str = "",
    ):
        self.registry = registry
        self.gate = gate
        self.ctx = ctx
        self.emit = emit
        self.channel = channel
        self.run_id = run_id
        self._tasks: dict[str, asyncio.Task[CallOutcome]] = {}

    # --- Dispatch ---

    def _prepare(self, call: ToolCallRequest) -> tuple[Tool | None, dict, Exception | None]:
        try:
            tool = self.registry.resolve(call.name)
        except ToolNotFound as e:
            return None, call.params, e
        if call.parse_error:
            return tool, call.params, ValidationError(tool.name, [call.parse_error])
        try:
            return tool, self.registry.validate(tool, call.params), None
        except ValidationError as e:
            return tool, call.params, e

    def dispatch(self, call: ToolCallRequest, round_state: RoundState, stream_done: asyncio.Event) -> None:
        tool, params, error = self._prepare(call)
        request: ApprovalRequest | None = None
        if tool is not None and error is None and self.gate.needs_approval(tool):
            request = self.gate.create(call, tool)

        self.emit(
            ToolCallEvent(
                tool_id=call.id,
                name=call.name,
                args=call.params,
                display_name=(tool.display_name or tool.name) if tool else call.name,
                description=tool.describe_call(call.params) if tool else call.name,
                needs_approval=request is not None,
            )
        )
        if request is not None:
            self.emit(
                ApprovalRequestedEvent(
                    request_id=request.id,
                    tool_id=call.id,
                    name=request.tool_name,
                    summary=request.summary,
                    params=request.params,
                    capabilities=list(request.capabilities),
                    deadline=request.deadline.isoformat(),
                )
            )

        round_state.calls.append(call)
        task = asyncio.create_task(self._run(call, tool, params, error, request, stream_done))
        task.add_done_callback(lambda t: self._record(round_state, call, t))
        self._tasks[call.id] = task

    def _record(self, round_state: RoundState, call: ToolCallRequest, task: asyncio.Task[CallOutcome]) -> None:
        if not task.cancelled() and task.exception() is None:
            round_state.outcomes[call.id] = task.result()

    async def gather(self, round_state: RoundState) -> list[CallOutcome]:
        """Outcomes in the order the model issued the calls."""
        outcomes = []
        for call in round_state.calls:
            outcomes.append(await self._tasks.pop(call.id))
        return outcomes

    async def abort(self, round_state: RoundState, reason: str) -> list[CallOutcome]:
        """Deny pending approvals, cancel running calls, and return a full set of outcomes."""
        for request in self.gate.cancel_all(reason):
            self._emit_resolution(request)

        tasks = [self._tasks.pop(call.id) for call in round_state.calls if call.id in self._tasks]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        return [round_state.outcomes.get(call.id) or cancelled_outcome(call) for call in round_state.calls]

    # --- Execution ---

    def _emit_resolution(self, request: ApprovalRequest) -> None:
        self.emit(
            ApprovalResolvedEvent(
                request_id=request.id,
                tool_id=request.tool_call_id,
                name=request.tool_name,
                decision=request.decision.value,
                reason=request.reason,
            )
        )

    def _refusal(self, request: ApprovalRequest) -> ToolResult:
        error: ApprovalDenied = (
            ApprovalTimedOut(request.tool_name, self.gate.timeout)
            if request.decision == ApprovalDecision.TIMED_OUT
            else ApprovalDenied(request.tool_name, request.reason)
        )
        self.emit(
            ErrorEvent(
                message=str(error),
                recoverable=True,
                error_type=type(error).__name__,
                tool_name=request.tool_name,
                request_id=request.id,
            )
        )
        return ToolResult(content=request.refusal(), preview=request.decision.value.replace("_", " "), is_error=True)

    async def _run(
        self,
        call: ToolCallRequest,
        tool: Tool | None,
        params: dict,
        error: Exception | None,
        request: ApprovalRequest | None,
        stream_done: asyncio.Event,
    ) -> CallOutcome:
        start_ms = ms_now()

        if error is not None:
            self.emit(
                ErrorEvent(message=str(error), recoverable=True, error_type=type(error).__name__, tool_name=call.name)
            )
            result = ToolResult(content=f"Error: {error}", preview=f"Failed: {type(error).__name__}", is_error=True)
            return self._finish(call, result, start_ms, None)

        assert tool is not None
        if request is not None:
            request = await self.gate.wait(request.id)
            self._emit_resolution(request)
            if not request.approved:
                return self._finish(call, self._refusal(request), start_ms, request)
            await stream_done.wait()

        execution = ToolExecution(call.id, tool.name, self.ctx)
        invocation = await self.registry.invoke(tool, params, execution)
        result = invocation.result
        result = ToolResult(
            content=clip_output(result.content, TOOL_OUTPUT_LIMIT),
            preview=result.preview,
            is_error=result.is_error,
            data=result.data,
        )
        return self._finish(call, result, start_ms, request)

    def _finish(
        self, call: ToolCallRequest, result: ToolResult, start_ms: int, request: ApprovalRequest | None
    ) -> CallOutcome:
        duration_ms = ms_now() - start_ms
        decision = request.decision.value if request else None
        if self.channel is not None:
            self.channel.publish(
                ToolExecuted(
                    name=call.name,
                    duration_ms=duration_ms,
                    is_error=result.is_error,
                    approval=decision,
                    run_id=self.run_id,
                )
            )
        self.emit(
            ToolInvokedEvent(
                tool_id=call.id,
                name=call.name,
                result=result.content,
                preview=result.preview,
                is_error=result.is_error,
                duration_ms=duration_ms,
                approval=decision,
                data=result.data,
            )
        )
        return CallOutcome(call=call, result=result, duration_ms=duration_ms, approval=request)
