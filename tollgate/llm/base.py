from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from typing import Any

from tollgate.conversation import Message
from tollgate.llm.models import Provider
from tollgate.llm.retry import RetryPolicy, with_retry
from tollgate.llm.types import StreamEvent


@dataclass
class StreamRequest:
    messages: list[Message]
    model: str
    tools: list[dict] = field(default_factory=list)
    system_prompt: str | None = None
    max_tokens: int | None = None
    temperature: float | None = None
    extra: dict = field(default_factory=dict)


class StreamingClient(ABC):
    """One LLM backend.

    Opening a stream (`_open`) is the only retried step: it must raise
    `ProviderError` for failures before the first event. `_events` converts
    the backend's stream into neutral `StreamEvent`s and reports mid-stream
    failures as a `StreamError` event instead of raising.
    """

    provider: Provider

    @abstractmethod
    async def _open(self, request: StreamRequest) -> Any: ...

    @abstractmethod
    def _events(self, handle: Any, request: StreamRequest) -> AsyncIterator[StreamEvent]: ...

    async def open_stream(self, request: StreamRequest, policy: RetryPolicy | None = None) -> AsyncIterator[StreamEvent]:
        handle = await with_retry(self._open, request, policy=policy)
        return self._events(handle, request)

    @abstractmethod
    async def close(self) -> None: ...
