from collections.abc import AsyncIterator
from dataclasses import replace

import anthropic
import httpx

from tollgate.conversation import Message, Role
from tollgate.errors import ProviderError, ProviderErrorKind
from tollgate.llm.auth import AuthScheme, Credential
from tollgate.llm.base import StreamingClient, StreamRequest
from tollgate.llm.models import Provider, max_output_tokens
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
    "end_turn": StopReason.END_TURN,
    "tool_use": StopReason.TOOL_USE,
    "max_tokens": StopReason.MAX_TOKENS,
    "stop_sequence": StopReason.STOP_SEQUENCE,
}


def _to_provider_error(exc: Exception) -> ProviderError:
    if isinstance(exc, anthropic.APIStatusError):
        return ProviderError(str(exc), kind_for_status(exc.status_code), exc.status_code, "anthropic")
    if isinstance(exc, (anthropic.APIConnectionError, httpx.TransportError)):
        return ProviderError(str(exc), ProviderErrorKind.NETWORK, None, "anthropic")
    return ProviderError(str(exc), ProviderErrorKind.STREAM, None, "anthropic")


class AnthropicClient(StreamingClient):
    provider = Provider.ANTHROPIC

    def __init__(self, credential: Credential, base_url: str | None = None):
        if credential.scheme == AuthScheme.BEARER:
            self._client = anthropic.AsyncAnthropic(
                auth_token=credential.value,
                base_url=base_url,
                default_headers=credential.extra_headers or None,
            )
        else:
            self._client = anthropic.AsyncAnthropic(api_key=credential.value, base_url=base_url)

    async def _open(self, request: StreamRequest):
        try:
            return await self._client.messages.create(**self._build_request(request), stream=True)
        except anthropic.APIError as e:
            raise _to_provider_error(e) from e

    async def _events(self, handle, request: StreamRequest) -> AsyncIterator[StreamEvent]:
        tool_ids: dict[int, str] = {}
        usage = Usage()
        stop_reason = StopReason.END_TURN

        try:
            async for event in handle:
                match event.type:
                    case "message_start":
                        u = event.message.usage
                        usage = replace(
                            usage,
                            prompt_tokens=u.input_tokens or 0,
                            cache_read_tokens=getattr(u, "cache_read_input_tokens", 0) or 0,
                            cache_write_tokens=getattr(u, "cache_creation_input_tokens", 0) or 0,
                        )
                    case "content_block_start":
                        block = event.content_block
                        if block.type == "tool_use":
                            tool_ids[event.index] = block.id
                            yield ToolCallStart(id=block.id, name=block.name)
                    case "content_block_delta":
                        delta = event.delta
                        if delta.type == "text_delta":
                            yield TextDelta(delta.text)
                        elif delta.type == "input_json_delta" and event.index in tool_ids:
                            yield ToolCallInputDelta(id=tool_ids[event.index], partial_json=delta.partial_json)
                    case "content_block_stop":
                        if tool_id := tool_ids.get(event.index):
                            yield ToolCallEnd(id=tool_id)
                    case "message_delta":
                        if event.delta.stop_reason:
                            stop_reason = _STOP_REASONS.get(event.delta.stop_reason, StopReason.END_TURN)
                        if event.usage:
                            usage = replace(usage, completion_tokens=event.usage.output_tokens or 0)
        except (anthropic.APIError, httpx.TransportError) as e:
            err = _to_provider_error(e)
            yield StreamError(kind=err.kind, message=str(err), status=err.status, provider="anthropic")
            return

        yield UsageReport(usage=usage, model=request.model)
        yield Done(stop_reason=stop_reason, provider=self.provider.value, model=request.model)

    async def close(self) -> None:
        await self._client.close()

    # --- Request building ---

    def _build_request(self, request: StreamRequest) -> dict:
        body: dict = {
            "model": request.model,
            "messages": self._convert_messages(request.messages),
            "max_tokens": request.max_tokens or max_output_tokens(request.model),
        }
        optional = {
            "system": request.system_prompt,
            "temperature": request.temperature,
            "tools": self._convert_tools(request.tools) if request.tools else None,
        }
        body.update({k: v for k, v in optional.items() if v is not None})
        body.update(request.extra)
        return body

    # --- Message conversion ---

    def _convert_messages(self, messages: list[Message]) -> list[dict]:
        result: list[dict] = []
        for msg in messages:
            texts, calls, results = split_blocks(msg)
            if msg.role == Role.USER:
                result.append({"role": "user", "content": "\n".join(b.text for b in texts)})
            elif msg.role == Role.ASSISTANT:
                blocks: list[dict] = [{"type": "text", "text": b.text} for b in texts if b.text]
                blocks.extend({"type": "tool_use", "id": c.id, "name": c.name, "input": c.params} for c in calls)
                # The API rejects empty assistant content; an empty turn carries nothing to replay
                if blocks:
                    result.append({"role": "assistant", "content": blocks})
            elif msg.role == Role.TOOL:
                blocks = [
                    {
                        "type": "tool_result",
                        "tool_use_id": r.tool_call_id,
                        "content": r.content,
                        "is_error": r.is_error,
                    }
                    for r in results
                ]
                result.append({"role": "user", "content": blocks})
        return self._merge_consecutive_users(result)

    def _merge_consecutive_users(self, messages: list[dict]) -> list[dict]:
        # Queued user input can follow a tool result; the API wants alternating roles
        merged: list[dict] = []
        for msg in messages:
            if merged and msg["role"] == "user" and merged[-1]["role"] == "user":
                merged[-1]["content"] = self._as_blocks(merged[-1]["content"]) + self._as_blocks(msg["content"])
                continue
            merged.append(msg)
        return merged

    def _as_blocks(self, content: str | list) -> list[dict]:
        if isinstance(content, list):
            return content
        return [{"type": "text", "text": content}]

    def _convert_tools(self, tools: list[dict]) -> list[dict]:
        return [
            {
                "name": (fn := tool.get("function", tool))["name"],
                "description": fn.get("description", ""),
                "input_schema": fn.get("parameters", {"type": "object", "properties": {}}),
            }
            for tool in tools
        ]
