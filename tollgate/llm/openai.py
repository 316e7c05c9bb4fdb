import json
from collections.abc import AsyncIterator

import httpx
import openai

from tollgate.conversation import Message, Role
from tollgate.errors import ProviderError, ProviderErrorKind
from tollgate.llm.auth import Credential
from tollgate.llm.base import StreamingClient, StreamRequest
from tollgate.llm.models import Provider
from tollgate.llm.retry import kind_for_status
from tollgate.llm.types import (
    Done,
    StopReason,
    StreamError,
    StreamEvent,
    TextDelta,
    ToolCallEnd,
    ToolCallInputDelta,
    ToolCallStart,
    UsageReport,
)
from tollgate.llm.utils import split_blocks
from tollgate.usage import Usage

_STOP_REASONS = {
    "stop": StopReason.END_TURN,
    "tool_calls": StopReason.TOOL_USE,
    "function_call": StopReason.TOOL_USE,
    "length": StopReason.MAX_TOKENS,
}


def _to_provider_error(exc: Exception, provider: str) -> ProviderError:
    if isinstance(exc, openai.APIStatusError):
        return ProviderError(str(exc), kind_for_status(exc.status_code), exc.status_code, provider)
    if isinstance(exc, (openai.APIConnectionError, httpx.TransportError)):
        return ProviderError(str(exc), ProviderErrorKind.NETWORK, None, provider)
    return ProviderError(str(exc), ProviderErrorKind.STREAM, None, provider)


class OpenAIClient(StreamingClient):
    """OpenAI chat completions, also used for OpenAI-compatible custom endpoints."""

    def __init__(self, credential: Credential, base_url: str | None = None, provider: Provider = Provider.OPENAI):
        self.provider = provider
        self._client = openai.AsyncOpenAI(api_key=credential.value, base_url=base_url)

    async def _open(self, request: StreamRequest):
        try:
            return await self._client.chat.completions.create(**self._build_request(request))
        except openai.APIError as e:
            raise _to_provider_error(e, self.provider.value) from e

    async def _events(self, handle, request: StreamRequest) -> AsyncIterator[StreamEvent]:
        # OpenAI keys tool-call deltas by position; id and name arrive on the first one
        open_calls: dict[int, str] = {}
        usage = Usage()
        stop_reason = StopReason.END_TURN

        try:
            async for chunk in handle:
                if chunk.usage:
                    usage = self._parse_usage(chunk.usage)
                if not chunk.choices:
                    continue

                choice = chunk.choices[0]
                delta = choice.delta
                if delta and delta.content:
                    yield TextDelta(delta.content)

                for tc in (delta.tool_calls if delta else None) or []:
                    if tc.index not in open_calls and tc.id:
                        open_calls[tc.index] = tc.id
                        yield ToolCallStart(id=tc.id, name=tc.function.name if tc.function else "")
                    tool_id = open_calls.get(tc.index)
                    if tool_id and tc.function and tc.function.arguments:
                        yield ToolCallInputDelta(id=tool_id, partial_json=tc.function.arguments)

                if choice.finish_reason:
                    stop_reason = _STOP_REASONS.get(choice.finish_reason, StopReason.END_TURN)
                    for tool_id in open_calls.values():
                        yield ToolCallEnd(id=tool_id)
                    open_calls.clear()
        except (openai.APIError, httpx.TransportError) as e:
            err = _to_provider_error(e, self.provider.value)
            yield StreamError(kind=err.kind, message=str(err), status=err.status, provider=self.provider.value)
            return

        yield UsageReport(usage=usage, model=request.model)
        yield Done(stop_reason=stop_reason, provider=self.provider.value, model=request.model)

    async def close(self) -> None:
        await self._client.close()

    def _build_request(self, request: StreamRequest) -> dict:
        body: dict = {
            "model": request.model,
            "messages": self._convert_messages(request.messages, request.system_prompt),
            "stream": True,
            "stream_options": {"include_usage": True},
        }
        optional = {
            "tools": request.tools or None,
            "tool_choice": "auto" if request.tools else None,
            "temperature": request.temperature,
            "max_completion_tokens": request.max_tokens,
        }
        body.update({k: v for k, v in optional.items() if v is not None})
        if request.extra:
            body["extra_body"] = request.extra
        return body

    def _convert_messages(self, messages: list[Message], system_prompt: str | None) -> list[dict]:
        result: list[dict] = []
        if system_prompt:
            result.append({"role": "system", "content": system_prompt})

        for msg in messages:
            texts, calls, results = split_blocks(msg)
            text = "\n".join(b.text for b in texts)
            if msg.role == Role.USER:
                result.append({"role": "user", "content": text})
            elif msg.role == Role.ASSISTANT:
                entry: dict = {"role": "assistant", "content": text or None}
                if calls:
                    entry["tool_calls"] = [
                        {
                            "id": c.id,
                            "type": "function",
                            "function": {"name": c.name, "arguments": json.dumps(c.params)},
                        }
                        for c in calls
                    ]
                result.append(entry)
            elif msg.role == Role.TOOL:
                result.extend({"role": "tool", "tool_call_id": r.tool_call_id, "content": r.content} for r in results)
        return result

    def _parse_usage(self, raw) -> Usage:
        details = raw.prompt_tokens_details
        cache_read = (details.cached_tokens or 0) if details else 0
        return Usage(
            prompt_tokens=raw.prompt_tokens - cache_read,
            completion_tokens=raw.completion_tokens,
            cache_read_tokens=cache_read,
            cache_write_tokens=0,
        )
