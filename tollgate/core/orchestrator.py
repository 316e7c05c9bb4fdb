import asyncio
from collections.abc import AsyncGenerator
from contextlib import aclosing
from pathlib import Path

from tollgate.approval import ApprovalDecision, ApprovalGate, ApprovalRequest
from tollgate.channel import Channel
from tollgate.constants import AGENT_MAX_ITERATIONS
from tollgate.conversation import Conversation, Message, ToolCallBlock, ToolResultBlock
from tollgate.core.async_queue import AsyncQueue
from tollgate.core.events import RunCompleted, RunStarted
from tollgate.core.models import CallOutcome, RoundState
from tollgate.core.state import StateCallback, TurnState
from tollgate.core.stream import StreamAccumulator
from tollgate.core.tool_runner import ToolRunner
from tollgate.errors import IterationLimitExceeded, ProviderError, TollgateError, TurnInProgress
from tollgate.events import (
    CancelledEvent,
    DoneEvent,
    ErrorEvent,
    PlanStatusEvent,
    SSEEvent,
    TaskStatusEvent,
    TextEvent,
    UsageEvent,
)
from tollgate.llm.gateway import ProviderGateway
from tollgate.llm.types import (
    Done,
    StreamError,
    TextDelta,
    ToolCallEnd,
    ToolCallInputDelta,
    ToolCallStart,
    TurnConfig,
    UsageReport,
)
from tollgate.logging import get_logger
from tollgate.plan.engine import PlanEngine
from tollgate.plan.models import Plan, PlanEvent, PlanStatusChanged, TaskStatusChanged
from tollgate.session.store import SessionStore
from tollgate.tools.core.context import ToolContext
from tollgate.tools.core.registry import ToolRegistry
from tollgate.usage import CostAccumulator
from tollgate.utils import new_id

_logger = get_logger(__name__)


class Orchestrator:
    """Drives one session: user turn in, provider rounds and tool calls, events out.

    One turn runs at a time. The turn body runs as a task that feeds an event
    queue, so approval decisions and plan changes arriving from outside the
    stream still reach the presentation layer in order.
    """

    def __init__(
        self,
        session_id: str,
        gateway: ProviderGateway,
        registry: ToolRegistry,
        *,
        conversation: Conversation | None = None,
        store: SessionStore | None = None,
        plans: PlanEngine | None = None,
        gate: ApprovalGate | None = None,
        cost: CostAccumulator | None = None,
        channel: Channel | None = None,
        turn_config: TurnConfig | None = None,
        max_iterations: int = AGENT_MAX_ITERATIONS,
        working_dir: Path | None = None,
        on_state_change: StateCallback | None = None,
    ):
        self.session_id = session_id
        self.gateway = gateway
        self.registry = registry
        self.conversation = conversation or Conversation()
        self.store = store
        self.plans = plans or PlanEngine(session_id)
        self.gate = gate or ApprovalGate()
        self.cost = cost or CostAccumulator()
        self.channel = channel
        self.turn_config = turn_config or TurnConfig()
        self.max_iterations = max_iterations
        self.on_state_change = on_state_change
        self.ctx = ToolContext(session_id=session_id, working_dir=working_dir or Path.cwd(), plans=self.plans)

        self._state = TurnState.IDLE
        self._task: asyncio.Task | None = None
        self._events: AsyncQueue[SSEEvent] | None = None
        self._run_id = ""
        self._queued: list[str] = []
        self._round: RoundState | None = None
        self._runner: ToolRunner | None = None

        self.plans.subscribe(self._on_plan_event)

    # --- Pull interface ---

    @property
    def state(self) -> TurnState:
        return self._state

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def current_plan(self) -> Plan | None:
        return self.plans.current

    def pending_approvals(self) -> list[ApprovalRequest]:
        return self.gate.pending()

    # --- Human decisions ---

    def resolve_approval(
        self, request_id: str, decision: ApprovalDecision | str, reason: str | None = None
    ) -> ApprovalRequest:
        return self.gate.resolve(request_id, decision, reason)

    def queue_message(self, text: str) -> None:
        """Inject user input into the running turn before its next provider round."""
        self._queued.append(text)

    def cancel(self) -> bool:
        if not self.is_running:
            return False
        _logger.info("Cancelling turn in session %s", self.session_id)
        self._task.cancel()
        return True

    # --- Event plumbing ---

    def _emit(self, event: SSEEvent) -> None:
        if self._events is not None and not self._events.is_finished:
            self._events.enqueue(event)

    async def _set_state(self, state: TurnState) -> None:
        if state != self._state:
            self._state = state
            if self.on_state_change:
                await self.on_state_change(state)

    async def _on_plan_event(self, event: PlanEvent) -> None:
        match event:
            case PlanStatusChanged(plan=plan, previous=previous, status=status):
                self._emit(
                    PlanStatusEvent(
                        plan_id=plan.id,
                        title=plan.title,
                        status=status.value,
                        previous=previous.value if previous else None,
                        progress=plan.progress().to_dict(),
                    )
                )
            case TaskStatusChanged(plan=plan, task=task, previous=previous, status=status):
                self._emit(
                    TaskStatusEvent(
                        plan_id=plan.id,
                        task_id=task.id,
                        title=task.title,
                        status=status.value,
                        previous=previous.value,
                    )
                )
        if self.store is not None:
            await asyncio.shield(self.store.save_plan(self.session_id, event.plan))

    async def _append(self, message: Message) -> None:
        self.conversation.append(message)
        if self.store is not None:
            await asyncio.shield(self.store.append(self.session_id, message))

    # --- Turn ---

    async def run_turn(self, text: str) -> AsyncGenerator[SSEEvent]:
        async with aclosing(self.start_turn(text)) as events:
            async for event in events:
                yield event

    def start_turn(self, text: str) -> AsyncGenerator[SSEEvent]:
        """Claim the session and start the turn now; the returned stream carries its events.

        Closing the stream early cancels the turn.
        """
        if self.is_running:
            raise TurnInProgress(f"A turn is already running in session {self.session_id}")

        run_id = new_id("run_")
        events: AsyncQueue[SSEEvent] = AsyncQueue()
        self._events = events
        task = asyncio.create_task(self._drive(run_id, text, events))
        task.add_done_callback(lambda _: self._close_events(events))
        self._task = task
        return self._stream(task, events)

    async def _stream(self, task: asyncio.Task, events: AsyncQueue[SSEEvent]) -> AsyncGenerator[SSEEvent]:
        try:
            async for event in events:
                yield event
        finally:
            if not task.done():
                task.cancel()
            await asyncio.gather(task, return_exceptions=True)
            if self._events is events:
                self._events = None

    def _close_events(self, events: AsyncQueue[SSEEvent]) -> None:
        # Covers a task cancelled before its first step, which never reaches _drive's handlers
        if not events.is_finished:
            events.finish()

    async def _drive(self, run_id: str, text: str, events: AsyncQueue[SSEEvent]) -> None:
        self._run_id = run_id
        if self.channel:
            self.channel.publish(RunStarted(run_id=run_id, session_id=self.session_id))
        iterations = 0
        outcome = "completed"
        try:
            iterations = await self._turn(text)
            self._emit(DoneEvent(run_id=run_id, usage=self.cost.to_dict()))
            events.finish()
        except asyncio.CancelledError:
            outcome = "cancelled"
            asyncio.current_task().uncancel()
            await self._interrupt("cancelled")
            self._emit(CancelledEvent(run_id=run_id))
            events.finish()
        except TollgateError as e:
            outcome = "error"
            await self._interrupt(type(e).__name__)
            _logger.warning("Turn ended with %s: %s", type(e).__name__, e)
            self._emit(ErrorEvent(message=str(e), recoverable=False, error_type=type(e).__name__))
            events.fail(e)
        except Exception as e:
            outcome = "error"
            _logger.exception("Turn failed in session %s", self.session_id)
            await self._interrupt("error")
            self._emit(ErrorEvent(message=f"{type(e).__name__}: {e}", recoverable=False, error_type=type(e).__name__))
            events.fail(e)
        finally:
            await self._set_state(TurnState.IDLE)
            if self.store is not None:
                await asyncio.shield(self.store.save_cost(self.session_id, self.cost))
            if self.channel:
                total = self.cost.total
                self.channel.publish(
                    RunCompleted(
                        run_id=run_id,
                        session_id=self.session_id,
                        prompt_tokens=total.prompt_tokens,
                        completion_tokens=total.completion_tokens,
                        cache_read_tokens=total.cache_read_tokens,
                        cache_write_tokens=total.cache_write_tokens,
                        cost=total.cost,
                        iterations=iterations,
                        outcome=outcome,
                    )
                )

    async def _turn(self, text: str) -> int:
        await self._append(Message.user(text))

        iteration = 0
        while True:
            if iteration >= self.max_iterations:
                raise IterationLimitExceeded(self.max_iterations)
            iteration += 1

            for queued in self._drain_queue():
                await self._append(Message.user(queued))

            outcomes = await self._round_trip()
            if not outcomes and not self._queued:
                return iteration

    def _drain_queue(self) -> list[str]:
        queued, self._queued = self._queued, []
        return queued

    async def _round_trip(self) -> list[CallOutcome]:
        """One provider call plus the tool calls it requested. Returns the outcomes in call order."""
        round_state = RoundState(message_id=new_id("msg_"))
        runner = ToolRunner(self.registry, self.gate, self.ctx, self._emit, self.channel, self._run_id)
        self._round, self._runner = round_state, runner
        stream_done = asyncio.Event()
        acc = StreamAccumulator(round_state.message_id)

        await self._set_state(TurnState.STREAMING)
        stream = self.gateway.send(
            self.conversation,
            tools=self.registry.get_schemas(),
            config=self.turn_config,
            cost=self.cost,
        )
        async with aclosing(stream) as provider_events:
            async for event in provider_events:
                match event:
                    case TextDelta(text=chunk):
                        acc.add_text(chunk)
                        self._emit(TextEvent(content=chunk))
                    case ToolCallStart(id=call_id, name=name):
                        acc.start_call(call_id, name)
                    case ToolCallInputDelta(id=call_id, partial_json=partial):
                        acc.add_input(call_id, partial)
                    case ToolCallEnd(id=call_id):
                        if call := acc.finish_call(call_id):
                            runner.dispatch(call, round_state, stream_done)
                    case UsageReport(model=model):
                        self._emit(
                            UsageEvent(
                                usage=self.cost.to_dict(),
                                context_tokens=self.cost.context_tokens,
                                model=model,
                            )
                        )
                    case StreamError() if event.fatal:
                        raise ProviderError(event.message, event.kind, event.status, event.provider)
                    case StreamError():
                        _logger.warning("Recoverable stream error: %s", event.message)
                    case Done(stop_reason=stop_reason):
                        _logger.debug("Round finished (%s)", stop_reason)

        for call in acc.finish_open():
            runner.dispatch(call, round_state, stream_done)

        blocks = [ToolCallBlock(id=c.id, name=c.name, params=c.params) for c in round_state.calls]
        message = Message.assistant(acc.text, blocks, message_id=round_state.message_id)
        # Flag first: the in-memory append inside _append happens before its first await
        round_state.assistant_appended = True
        await self._append(message)
        stream_done.set()

        if not round_state.calls:
            return []

        await self._set_state(
            TurnState.AWAITING_APPROVAL if self.gate.pending() else TurnState.RUNNING_TOOLS
        )
        outcomes = await runner.gather(round_state)
        await self._append_results(round_state, outcomes)
        return outcomes

    async def _append_results(self, round_state: RoundState, outcomes: list[CallOutcome]) -> None:
        results = [
            ToolResultBlock(tool_call_id=o.call.id, content=o.result.content, is_error=o.result.is_error)
            for o in outcomes
        ]
        round_state.results_appended = True
        await self._append(Message.tool(results))

    async def _interrupt(self, reason: str) -> None:
        """Close out the current round so every appended tool call has a result."""
        round_state, runner = self._round, self._runner
        self._round, self._runner = None, None
        if round_state is None or runner is None:
            return
        outcomes = await runner.abort(round_state, reason)
        if round_state.assistant_appended and not round_state.results_appended and outcomes:
            await self._append_results(round_state, outcomes)
