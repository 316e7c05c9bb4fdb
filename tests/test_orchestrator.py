import asyncio

import pytest

from tollgate.approval import ApprovalGate, ApprovalPolicy
from tollgate.channel import Channel
from tollgate.conversation import Role
from tollgate.core.events import RunCompleted, RunStarted, ToolExecuted
from tollgate.core.orchestrator import Orchestrator
from tollgate.core.state import TurnState
from tollgate.core.tool_runner import CANCELLED_RESULT
from tollgate.errors import IterationLimitExceeded, ProviderError, ProviderErrorKind, TurnInProgress
from tollgate.events import (
    ApprovalRequestedEvent,
    ApprovalResolvedEvent,
    CancelledEvent,
    DoneEvent,
    ErrorEvent,
    PlanStatusEvent,
    TextEvent,
    ToolCallEvent,
    ToolInvokedEvent,
    UsageEvent,
)
from tollgate.llm.types import Done, StopReason, TextDelta, ToolCallEnd, ToolCallInputDelta, ToolCallStart
from tollgate.session.models import SessionState
from tollgate.session.store import SqliteSessionStore
from tollgate.tools.core.registry import ToolRegistry
from tollgate.tools.plan import PlanTool
from tests.conftest import DeleteTool, EchoTool, Pause, ScriptedClient, make_gateway, text_round, tool_round


def build(client: ScriptedClient, registry: ToolRegistry, **kwargs) -> Orchestrator:
    return Orchestrator("ses_test", make_gateway(client), registry, **kwargs)


async def run(orchestrator: Orchestrator, text: str, decide=None) -> list:
    """Consume a turn. `decide(event)` answers approval requests as they arrive."""
    events = []
    async for event in orchestrator.run_turn(text):
        events.append(event)
        if decide and isinstance(event, ApprovalRequestedEvent):
            decision = decide(event)
            if decision:
                orchestrator.resolve_approval(event.request_id, decision)
    return events


def of_type(events: list, cls) -> list:
    return [e for e in events if isinstance(e, cls)]


class TestTurnLoop:
    @pytest.mark.asyncio
    async def test_text_only_turn(self, registry: ToolRegistry):
        orchestrator = build(ScriptedClient([text_round("Hello there")]), registry)

        events = await run(orchestrator, "hi")

        assert [e.content for e in of_type(events, TextEvent)] == ["Hello there"]
        assert of_type(events, UsageEvent)[0].usage["prompt"] == 10
        assert isinstance(events[-1], DoneEvent)
        roles = [m.role for m in orchestrator.conversation]
        assert roles == [Role.USER, Role.ASSISTANT]
        assert orchestrator.conversation.last.text == "Hello there"
        assert orchestrator.state == TurnState.IDLE

    @pytest.mark.asyncio
    async def test_safe_tool_loop(self, registry: ToolRegistry, echo_tool: EchoTool):
        client = ScriptedClient(
            [
                tool_round(("call_1", "echo", {"text": "ping"}), text="Let me check."),
                text_round("Got pong."),
            ]
        )
        orchestrator = build(client, registry)

        events = await run(orchestrator, "echo ping")

        assert echo_tool.calls == ["ping"]
        call_event = of_type(events, ToolCallEvent)[0]
        assert call_event.args == {"text": "ping"}
        assert not call_event.needs_approval
        invoked = of_type(events, ToolInvokedEvent)[0]
        assert invoked.result == "echo: ping"
        assert invoked.approval is None
        assert not of_type(events, ApprovalRequestedEvent)

        messages = orchestrator.conversation.messages
        assert [m.role for m in messages] == [Role.USER, Role.ASSISTANT, Role.TOOL, Role.ASSISTANT]
        assert messages[1].text == "Let me check."
        assert messages[1].tool_calls[0].id == "call_1"
        assert messages[2].tool_results[0].tool_call_id == "call_1"
        assert messages[2].tool_results[0].content == "echo: ping"
        # Second provider call sees the tool result
        assert len(client.requests[1].messages) == 3

    @pytest.mark.asyncio
    async def test_missing_parameter_becomes_corrective_result(self, registry: ToolRegistry, delete_tool: DeleteTool):
        client = ScriptedClient([tool_round(("call_1", "delete_file", {})), text_round("Sorry, retrying.")])
        orchestrator = build(client, registry)

        events = await run(orchestrator, "delete something")

        errors = of_type(events, ErrorEvent)
        assert errors[0].error_type == "ValidationError"
        assert errors[0].tool_name == "delete_file"
        assert errors[0].recoverable
        assert not of_type(events, ApprovalRequestedEvent)
        result = orchestrator.conversation[2].tool_results[0]
        assert result.is_error
        assert "path: Field required" in result.content
        assert delete_tool.deleted == []
        assert isinstance(events[-1], DoneEvent)

    @pytest.mark.asyncio
    async def test_unknown_tool(self, registry: ToolRegistry):
        client = ScriptedClient([tool_round(("call_1", "teleport", {})), text_round("ok")])
        orchestrator = build(client, registry)

        events = await run(orchestrator, "go")

        assert of_type(events, ErrorEvent)[0].error_type == "ToolNotFound"
        assert "Unknown tool: teleport" in orchestrator.conversation[2].tool_results[0].content

    @pytest.mark.asyncio
    async def test_malformed_arguments(self, registry: ToolRegistry, echo_tool: EchoTool):
        broken = [
            ToolCallStart("call_1", "echo"),
            ToolCallInputDelta("call_1", '{"text": '),
            ToolCallEnd("call_1"),
            Done(StopReason.TOOL_USE),
        ]
        orchestrator = build(ScriptedClient([broken, text_round("ok")]), registry)

        await run(orchestrator, "go")

        result = orchestrator.conversation[2].tool_results[0]
        assert result.is_error
        assert "not valid JSON" in result.content
        assert echo_tool.calls == []

    @pytest.mark.asyncio
    async def test_tool_exception_is_reported(self, registry: ToolRegistry):
        orchestrator = build(ScriptedClient([tool_round(("call_1", "explode", {})), text_round("ok")]), registry)

        events = await run(orchestrator, "go")

        invoked = of_type(events, ToolInvokedEvent)[0]
        assert invoked.is_error
        assert "boom" in invoked.result
        assert isinstance(events[-1], DoneEvent)

    @pytest.mark.asyncio
    async def test_iteration_limit(self, registry: ToolRegistry):
        rounds = [tool_round((f"call_{i}", "echo", {"text": str(i)})) for i in range(3)]
        orchestrator = build(ScriptedClient(rounds), registry, max_iterations=2)

        events = []
        with pytest.raises(IterationLimitExceeded):
            async for event in orchestrator.run_turn("loop"):
                events.append(event)

        assert of_type(events, ErrorEvent)[-1].error_type == "IterationLimitExceeded"
        assert not of_type(events, DoneEvent)
        # Everything appended before the limit stays
        roles = [m.role for m in orchestrator.conversation]
        assert roles == [Role.USER, Role.ASSISTANT, Role.TOOL, Role.ASSISTANT, Role.TOOL]

    @pytest.mark.asyncio
    async def test_fatal_provider_error(self, registry: ToolRegistry):
        client = ScriptedClient(open_errors=[ProviderError("HTTP 401", ProviderErrorKind.AUTH, 401)])
        orchestrator = build(client, registry)

        events = []
        with pytest.raises(ProviderError):
            async for event in orchestrator.run_turn("hi"):
                events.append(event)

        assert of_type(events, ErrorEvent)[-1].error_type == "ProviderError"
        assert [m.role for m in orchestrator.conversation] == [Role.USER]
        assert not orchestrator.is_running

    @pytest.mark.asyncio
    async def test_state_changes(self, registry: ToolRegistry):
        states = []

        async def on_state(state: TurnState) -> None:
            states.append(state)

        client = ScriptedClient([tool_round(("call_1", "echo", {"text": "a"})), text_round("done")])
        orchestrator = build(client, registry, on_state_change=on_state)

        await run(orchestrator, "go")

        assert states == [TurnState.STREAMING, TurnState.RUNNING_TOOLS, TurnState.STREAMING, TurnState.IDLE]


class TestApprovals:
    @pytest.mark.asyncio
    async def test_approved_call_runs(self, registry: ToolRegistry, delete_tool: DeleteTool):
        client = ScriptedClient([tool_round(("call_1", "delete_file", {"path": "a.txt"})), text_round("Deleted.")])
        orchestrator = build(client, registry)

        events = await run(orchestrator, "delete a.txt", decide=lambda e: "approve")

        requested = of_type(events, ApprovalRequestedEvent)[0]
        assert requested.summary == "delete_file(path='a.txt')"
        assert requested.capabilities == ["write_files"]
        assert of_type(events, ToolCallEvent)[0].needs_approval
        assert of_type(events, ApprovalResolvedEvent)[0].decision == "approved"
        assert of_type(events, ToolInvokedEvent)[0].approval == "approved"
        assert delete_tool.deleted == ["a.txt"]
        assert orchestrator.pending_approvals() == []

    @pytest.mark.asyncio
    async def test_denied_call_gets_refusal(self, registry: ToolRegistry, delete_tool: DeleteTool):
        client = ScriptedClient([tool_round(("call_1", "delete_file", {"path": "a.txt"})), text_round("Understood.")])
        orchestrator = build(client, registry)

        events = await run(orchestrator, "delete a.txt", decide=lambda e: "deny")

        assert delete_tool.deleted == []
        error = of_type(events, ErrorEvent)[0]
        assert error.error_type == "ApprovalDenied"
        assert error.request_id == of_type(events, ApprovalRequestedEvent)[0].request_id
        result = orchestrator.conversation[2].tool_results[0]
        assert result.is_error
        assert "denied by the user" in result.content
        assert isinstance(events[-1], DoneEvent)

    @pytest.mark.asyncio
    async def test_unanswered_approval_times_out(self, registry: ToolRegistry, delete_tool: DeleteTool):
        client = ScriptedClient([tool_round(("call_1", "delete_file", {"path": "a.txt"})), text_round("Skipping.")])
        orchestrator = build(client, registry, gate=ApprovalGate(timeout=0.05))

        events = await asyncio.wait_for(run(orchestrator, "delete a.txt"), timeout=5)

        assert of_type(events, ApprovalResolvedEvent)[0].decision == "timed_out"
        assert of_type(events, ErrorEvent)[0].error_type == "ApprovalTimedOut"
        assert "approval deadline" in orchestrator.conversation[2].tool_results[0].content
        assert delete_tool.deleted == []
        assert isinstance(events[-1], DoneEvent)

    @pytest.mark.asyncio
    async def test_concurrent_approvals_keep_call_order(self, registry: ToolRegistry, delete_tool: DeleteTool):
        client = ScriptedClient(
            [
                tool_round(
                    ("call_1", "delete_file", {"path": "first.txt"}),
                    ("call_2", "delete_file", {"path": "second.txt"}),
                ),
                text_round("Done."),
            ]
        )
        orchestrator = build(client, registry)

        events = []
        async for event in orchestrator.run_turn("delete both"):
            events.append(event)
            requested = of_type(events, ApprovalRequestedEvent)
            if isinstance(event, ApprovalRequestedEvent) and len(requested) == 2:
                assert len(orchestrator.pending_approvals()) == 2
                orchestrator.resolve_approval(requested[1].request_id, "approve")
                orchestrator.resolve_approval(requested[0].request_id, "deny")

        assert delete_tool.deleted == ["second.txt"]
        results = orchestrator.conversation[2].tool_results
        assert [r.tool_call_id for r in results] == ["call_1", "call_2"]
        assert results[0].is_error
        assert not results[1].is_error

    @pytest.mark.asyncio
    async def test_auto_approved_tool_skips_gate(self, registry: ToolRegistry, delete_tool: DeleteTool):
        client = ScriptedClient([tool_round(("call_1", "delete_file", {"path": "a.txt"})), text_round("ok")])
        gate = ApprovalGate(policy=ApprovalPolicy(auto_approve={"delete_file"}))
        orchestrator = build(client, registry, gate=gate)

        events = await run(orchestrator, "delete a.txt")

        assert not of_type(events, ApprovalRequestedEvent)
        assert of_type(events, ToolInvokedEvent)[0].name == "delete_file"
        assert delete_tool.deleted == ["a.txt"]


class TestCancellation:
    @pytest.mark.asyncio
    async def test_cancel_mid_stream_discards_partial_text(self, registry: ToolRegistry):
        pause = Pause()
        client = ScriptedClient([[TextDelta("Half a sent"), pause, TextDelta("ence"), Done()]])
        orchestrator = build(client, registry)

        events = []
        async for event in orchestrator.run_turn("hi"):
            events.append(event)
            if isinstance(event, TextEvent):
                assert orchestrator.cancel()

        assert isinstance(events[-1], CancelledEvent)
        assert [m.role for m in orchestrator.conversation] == [Role.USER]
        assert not orchestrator.is_running
        assert not orchestrator.cancel()

    @pytest.mark.asyncio
    async def test_cancel_during_approval(self, registry: ToolRegistry, delete_tool: DeleteTool):
        client = ScriptedClient([tool_round(("call_1", "delete_file", {"path": "a.txt"}))])
        orchestrator = build(client, registry)

        events = []
        async for event in orchestrator.run_turn("delete a.txt"):
            events.append(event)
            if isinstance(event, ApprovalRequestedEvent):
                orchestrator.cancel()

        resolved = of_type(events, ApprovalResolvedEvent)[0]
        assert resolved.decision == "denied"
        assert resolved.reason == "cancelled"
        assert isinstance(events[-1], CancelledEvent)
        assert delete_tool.deleted == []

        # The tool call already in the conversation still gets a result
        messages = orchestrator.conversation.messages
        assert [m.role for m in messages] == [Role.USER, Role.ASSISTANT, Role.TOOL]
        assert messages[2].tool_results[0].tool_call_id == "call_1"
        assert messages[2].tool_results[0].content in (CANCELLED_RESULT, orchestrator.gate.history()[0].refusal())

    @pytest.mark.asyncio
    async def test_next_turn_after_cancel(self, registry: ToolRegistry):
        pause = Pause()
        client = ScriptedClient([[TextDelta("partial"), pause], text_round("fresh start")])
        orchestrator = build(client, registry)

        async for event in orchestrator.run_turn("first"):
            if isinstance(event, TextEvent):
                orchestrator.cancel()
        events = await run(orchestrator, "second")

        assert isinstance(events[-1], DoneEvent)
        assert [m.text for m in orchestrator.conversation] == ["first", "second", "fresh start"]


class TestQueuedInput:
    @pytest.mark.asyncio
    async def test_queued_message_injected_between_rounds(self, registry: ToolRegistry):
        client = ScriptedClient([tool_round(("call_1", "echo", {"text": "a"})), text_round("Both handled.")])
        orchestrator = build(client, registry)

        async for event in orchestrator.run_turn("first"):
            if isinstance(event, ToolCallEvent):
                orchestrator.queue_message("also this")

        messages = orchestrator.conversation.messages
        assert [m.role for m in messages] == [Role.USER, Role.ASSISTANT, Role.TOOL, Role.USER, Role.ASSISTANT]
        assert messages[3].text == "also this"

    @pytest.mark.asyncio
    async def test_queued_message_continues_finished_turn(self, registry: ToolRegistry):
        pause = Pause()
        client = ScriptedClient([[TextDelta("First answer."), pause, Done()], text_round("Second answer.")])
        orchestrator = build(client, registry)

        async for event in orchestrator.run_turn("first"):
            if isinstance(event, TextEvent) and event.content == "First answer.":
                orchestrator.queue_message("follow-up")
                pause.release.set()

        assert [m.text for m in orchestrator.conversation] == [
            "first",
            "First answer.",
            "follow-up",
            "Second answer.",
        ]

    @pytest.mark.asyncio
    async def test_second_turn_refused_while_running(self, registry: ToolRegistry):
        pause = Pause()
        client = ScriptedClient([[TextDelta("working"), pause, Done()]])
        orchestrator = build(client, registry)

        turn = orchestrator.run_turn("first")
        assert isinstance(await anext(turn), TextEvent)
        assert orchestrator.is_running

        with pytest.raises(TurnInProgress):
            await anext(orchestrator.run_turn("second"))

        pause.release.set()
        rest = [event async for event in turn]
        assert isinstance(rest[-1], DoneEvent)


class TestPlansAndPersistence:
    @pytest.mark.asyncio
    async def test_plan_events_reach_the_stream(self, registry: ToolRegistry):
        registry.register(PlanTool())
        client = ScriptedClient(
            [tool_round(("call_1", "plan", {"action": "create", "title": "Migrate"})), text_round("Plan drafted.")]
        )
        orchestrator = build(client, registry)

        events = await run(orchestrator, "plan it")

        plan_event = of_type(events, PlanStatusEvent)[0]
        assert plan_event.title == "Migrate"
        assert plan_event.status == "draft"
        assert plan_event.previous is None
        assert orchestrator.current_plan().title == "Migrate"

    @pytest.mark.asyncio
    async def test_store_mirrors_conversation(self, registry: ToolRegistry, store: SqliteSessionStore):
        registry.register(PlanTool())
        state = await store.create_session(SessionState(name="test"))
        client = ScriptedClient(
            [
                tool_round(
                    ("call_1", "echo", {"text": "a"}),
                    ("call_2", "plan", {"action": "create", "title": "Persisted"}),
                ),
                text_round("done"),
            ]
        )
        orchestrator = Orchestrator(state.session_id, make_gateway(client), registry, store=store)

        await run(orchestrator, "go")

        stored = await store.read_conversation(state.session_id)
        assert [m.id for m in stored] == [m.id for m in orchestrator.conversation]
        assert stored[2].tool_results == orchestrator.conversation[2].tool_results
        assert (await store.load_plan(state.session_id)).title == "Persisted"
        cost = await store.load_cost(state.session_id)
        assert cost.total.prompt_tokens == 30

    @pytest.mark.asyncio
    async def test_lifecycle_events_on_channel(self, registry: ToolRegistry):
        channel = Channel()
        seen = []

        async def record(event) -> None:
            seen.append(event)

        for event_type in (RunStarted, RunCompleted, ToolExecuted):
            channel.subscribe(event_type, record)

        client = ScriptedClient([tool_round(("call_1", "echo", {"text": "a"})), text_round("done")])
        orchestrator = build(client, registry, channel=channel)

        await run(orchestrator, "go")
        await channel.drain()

        assert [type(e) for e in seen] == [RunStarted, ToolExecuted, RunCompleted]
        completed = seen[-1]
        assert completed.outcome == "completed"
        assert completed.iterations == 2
        assert completed.prompt_tokens == 30


class TestReplay:
    @pytest.mark.asyncio
    async def test_same_inputs_give_the_same_conversation(self, registry: ToolRegistry):
        def script() -> list:
            return [
                tool_round(
                    ("call_1", "echo", {"text": "ping"}),
                    ("call_2", "delete_file", {"path": "a.txt"}),
                    text="Checking first.",
                ),
                tool_round(("call_3", "delete_file", {"path": "b.txt"})),
                text_round("Kept b.txt."),
            ]

        def decide(event: ApprovalRequestedEvent) -> str:
            return "approve" if event.params["path"] == "a.txt" else "deny"

        conversations = []
        for _ in range(2):
            orchestrator = build(ScriptedClient(script()), registry)
            await run(orchestrator, "tidy up", decide=decide)
            conversations.append([(m.role, m.content) for m in orchestrator.conversation])

        assert conversations[0] == conversations[1]
        assert len(conversations[0]) == 6
