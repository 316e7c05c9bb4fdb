import asyncio
import json

import pytest

from tollgate.channel import Channel
from tollgate.core.async_queue import AsyncQueue
from tollgate.core.events import ToolExecuted
from tollgate.events import ApprovalRequestedEvent, DoneEvent, EventType, TextEvent


class TestSSE:
    def test_to_sse_string(self):
        line = TextEvent(content="hi").to_sse_string()

        header, data, *_ = line.split("\n")
        assert header == "event: text"
        assert json.loads(data.removeprefix("data: ")) == {"type": "text", "content": "hi"}
        assert line.endswith("\n\n")

    def test_payload_fields(self):
        event = ApprovalRequestedEvent(
            request_id="apr_1",
            tool_id="call_1",
            name="delete_file",
            summary="delete_file(path='a.txt')",
            capabilities=["write_files"],
        )
        payload = json.loads(event.to_sse()["data"])

        assert event.type == EventType.APPROVAL_REQUESTED
        assert payload["request_id"] == "apr_1"
        assert payload["capabilities"] == ["write_files"]

    def test_done_usage(self):
        payload = json.loads(DoneEvent(run_id="run_1", usage={"total": 3}).to_sse()["data"])
        assert payload == {"type": "done", "run_id": "run_1", "usage": {"total": 3}}


class TestAsyncQueue:
    @pytest.mark.asyncio
    async def test_delivers_then_finishes(self):
        queue: AsyncQueue[int] = AsyncQueue()

        async def produce():
            for i in range(3):
                queue.enqueue(i)
                await asyncio.sleep(0)
            queue.finish()

        producer = asyncio.create_task(produce())
        assert [i async for i in queue] == [0, 1, 2]
        await producer

    @pytest.mark.asyncio
    async def test_failure_after_values(self):
        queue: AsyncQueue[str] = AsyncQueue()
        queue.enqueue("a")
        queue.fail(ValueError("broken"))

        received = []
        with pytest.raises(ValueError, match="broken"):
            async for value in queue:
                received.append(value)
        assert received == ["a"]

    def test_enqueue_after_finish(self):
        queue: AsyncQueue[int] = AsyncQueue()
        queue.finish()
        with pytest.raises(RuntimeError):
            queue.enqueue(1)

    @pytest.mark.asyncio
    async def test_single_iteration(self):
        queue: AsyncQueue[int] = AsyncQueue()
        queue.finish()
        assert [i async for i in queue] == []
        with pytest.raises(RuntimeError):
            aiter(queue)


class TestChannel:
    @pytest.mark.asyncio
    async def test_publish_reaches_subscribers(self):
        channel = Channel()
        seen: list[str] = []

        async def handler(event: ToolExecuted):
            seen.append(event.name)

        channel.subscribe(ToolExecuted, handler)
        channel.publish(ToolExecuted(name="bash", duration_ms=5, is_error=False))
        channel.publish("not a subscribed type")
        await channel.drain()

        assert seen == ["bash"]

    @pytest.mark.asyncio
    async def test_failing_handler_is_isolated(self):
        channel = Channel()
        seen: list[str] = []

        async def broken(event: ToolExecuted):
            raise RuntimeError("handler bug")

        async def working(event: ToolExecuted):
            seen.append(event.name)

        channel.subscribe(ToolExecuted, broken)
        channel.subscribe(ToolExecuted, working)
        channel.publish(ToolExecuted(name="read_file", duration_ms=1, is_error=False))
        await channel.drain()

        assert seen == ["read_file"]

    @pytest.mark.asyncio
    async def test_unsubscribe(self):
        channel = Channel()
        seen: list[str] = []

        async def handler(event: ToolExecuted):
            seen.append(event.name)

        unsubscribe = channel.subscribe(ToolExecuted, handler)
        unsubscribe()
        channel.publish(ToolExecuted(name="bash", duration_ms=1, is_error=False))
        await channel.drain()

        assert seen == []
