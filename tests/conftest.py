import asyncio
import json
from collections.abc import AsyncGenerator, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import pytest
import pytest_asyncio
from pydantic import BaseModel, Field

from tollgate.database import Database
from tollgate.errors import ProviderError
from tollgate.llm.auth import Credential
from tollgate.llm.base import StreamingClient, StreamRequest
from tollgate.llm.gateway import ProviderGateway
from tollgate.llm.models import Provider, ProviderConfig
from tollgate.llm.retry import RetryPolicy
from tollgate.llm.types import (
    Done,
    StopReason,
    StreamEvent,
    TextDelta,
    ToolCallEnd,
    ToolCallInputDelta,
    ToolCallStart,
    UsageReport,
)
from tollgate.session.store import SqliteSessionStore
from tollgate.tools.core.base import Tool, ToolResult
from tollgate.tools.core.context import ToolExecution
from tollgate.tools.core.enums import Capability
from tollgate.tools.core.registry import ToolRegistry
from tollgate.usage import Usage

FAST_RETRY = RetryPolicy(attempts=4, initial_wait=0, max_wait=0, jitter=0)


# --- Scripted provider ---


def text_round(text: str, prompt_tokens: int = 10, completion_tokens: int = 5) -> list[StreamEvent]:
    return [
        TextDelta(text),
        UsageReport(Usage(prompt_tokens=prompt_tokens, completion_tokens=completion_tokens)),
        Done(StopReason.END_TURN),
    ]


def tool_round(*calls: tuple[str, str, dict], text: str = "") -> list[StreamEvent]:
    """One assistant round requesting the given (call_id, tool_name, params) calls."""
    events: list[StreamEvent] = [TextDelta(text)] if text else []
    for call_id, name, params in calls:
        raw = json.dumps(params)
        half = len(raw) // 2
        events += [
            ToolCallStart(call_id, name),
            ToolCallInputDelta(call_id, raw[:half]),
            ToolCallInputDelta(call_id, raw[half:]),
            ToolCallEnd(call_id),
        ]
    events += [UsageReport(Usage(prompt_tokens=20, completion_tokens=8)), Done(StopReason.TOOL_USE)]
    return events


@dataclass
class Pause:
    """Marker in a scripted round: the stream stalls here until `release` is set."""

    release: asyncio.Event = field(default_factory=asyncio.Event)


class ScriptedClient(StreamingClient):
    """Plays back one scripted round per stream; `open_errors` are raised by successive opens first."""

    def __init__(
        self,
        rounds: Sequence[list[StreamEvent]] = (),
        open_errors: Sequence[ProviderError] = (),
        provider: Provider = Provider.ANTHROPIC,
    ):
        self.provider = provider
        self.rounds = list(rounds)
        self.open_errors = list(open_errors)
        self.requests: list[StreamRequest] = []
        self.open_attempts = 0
        self.closed = False

    async def _open(self, request: StreamRequest) -> list[StreamEvent]:
        self.open_attempts += 1
        if self.open_errors:
            raise self.open_errors.pop(0)
        self.requests.append(request)
        if not self.rounds:
            return text_round("(no more scripted rounds)")
        return self.rounds.pop(0)

    async def _events(self, handle: list[StreamEvent], request: StreamRequest):
        for event in handle:
            if isinstance(event, Pause):
                await event.release.wait()
                continue
            yield event

    async def close(self) -> None:
        self.closed = True


def make_gateway(*clients: ScriptedClient) -> ProviderGateway:
    by_provider = {c.provider: c for c in clients}
    configs = [
        ProviderConfig(provider=c.provider, default_model=f"{c.provider.value}-test-model", api_key="test-key")
        for c in clients
    ]

    def factory(config: ProviderConfig, credential: Credential) -> StreamingClient:
        return by_provider[config.provider]

    return ProviderGateway(configs, retry_policy=FAST_RETRY, client_factory=factory)


@pytest.fixture
def client() -> ScriptedClient:
    return ScriptedClient()


@pytest.fixture
def gateway(client: ScriptedClient) -> ProviderGateway:
    return make_gateway(client)


# --- Fake tools ---


class EchoInput(BaseModel):
    text: str = Field(description="Text to echo back")


class EchoTool(Tool):
    name = "echo"
    description = "Echo text back."
    capabilities = frozenset({Capability.READ_FILES})
    input_model = EchoInput

    def __init__(self):
        self.calls: list[str] = []

    async def execute(self, execution: ToolExecution, text: str, **kwargs: Any) -> ToolResult:
        self.calls.append(text)
        return ToolResult(content=f"echo: {text}", preview=text)


class DeleteInput(BaseModel):
    path: str = Field(description="Path to delete")


class DeleteTool(Tool):
    name = "delete_file"
    description = "Delete a file."
    capabilities = frozenset({Capability.WRITE_FILES})
    input_model = DeleteInput

    def __init__(self):
        self.deleted: list[str] = []

    async def execute(self, execution: ToolExecution, path: str, **kwargs: Any) -> ToolResult:
        self.deleted.append(path)
        return ToolResult(content=f"Deleted {path}", preview="Deleted")


class ExplodingTool(Tool):
    name = "explode"
    description = "Always raises."

    async def execute(self, execution: ToolExecution, **kwargs: Any) -> ToolResult:
        raise RuntimeError("boom")


@pytest.fixture
def echo_tool() -> EchoTool:
    return EchoTool()


@pytest.fixture
def delete_tool() -> DeleteTool:
    return DeleteTool()


@pytest.fixture
def registry(echo_tool: EchoTool, delete_tool: DeleteTool) -> ToolRegistry:
    registry = ToolRegistry()
    registry.register(echo_tool)
    registry.register(delete_tool)
    registry.register(ExplodingTool())
    return registry


# --- Storage ---


@pytest_asyncio.fixture
async def db(tmp_path: Path) -> AsyncGenerator[Database]:
    db = Database(tmp_path / "sessions.db")
    await db.connect()
    yield db
    await db.close()


@pytest_asyncio.fixture
async def store(db: Database) -> SqliteSessionStore:
    store = SqliteSessionStore(db)
    await store.init_schema()
    return store
