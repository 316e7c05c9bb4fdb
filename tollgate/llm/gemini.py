import copy
import json
from collections.abc import AsyncIterator
from itertools import count

import httpx
from google import genai
from google.genai import errors as genai_errors
from google.genai import types

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
from tollgate.llm.utils import split_blocks, tool_name_map
from tollgate.usage import Usage

_STOP_REASONS = {
    "STOP": StopReason.END_TURN,
    "MAX_TOKENS": StopReason.MAX_TOKENS,
}


# google-genai talks to the API over httpx (or aiohttp, whose connection errors are OSErrors)
_TRANSPORT_ERRORS = (genai_errors.APIError, httpx.HTTPError, OSError)


def _to_provider_error(exc: Exception) -> ProviderError:
    if isinstance(exc, genai_errors.APIError):
        return ProviderError(str(exc), kind_for_status(exc.code), exc.code, "google")
    return ProviderError(str(exc), ProviderErrorKind.NETWORK, None, "google")


async def _chain(
    first: types.GenerateContentResponse | None,
    rest: AsyncIterator[types.GenerateContentResponse],
) -> AsyncIterator[types.GenerateContentResponse]:
    if first is None:
        return
    yield first
    async for chunk in rest:
        yield chunk


class GeminiClient(StreamingClient):
    """Gemini streams function calls whole, so each becomes start / one delta / end."""

    provider = Provider.GOOGLE

    def __init__(self, credential: Credential, base_url: str | None = None):
        http_options = types.HttpOptions(base_url=base_url) if base_url else None
        self._client = genai.Client(api_key=credential.value, http_options=http_options)

    async def _open(self, request: StreamRequest):
        contents = self._convert_messages(request.messages)
        config_kwargs: dict = {}
        if request.temperature is not None:
            config_kwargs["temperature"] = request.temperature
        if request.max_tokens is not None:
            config_kwargs["max_output_tokens"] = request.max_tokens
        if request.tools:
            config_kwargs["tools"] = self._convert_tools(request.tools)
        config = types.GenerateContentConfig(
            system_instruction=request.system_prompt,
            **config_kwargs,
        )
        try:
            stream = await self._client.aio.models.generate_content_stream(
                model=request.model,
                contents=contents,
                config=config,
            )
            # The request goes out on first iteration; pull it here so failures stay retryable
            first = await anext(stream, None)
        except _TRANSPORT_ERRORS as e:
            raise _to_provider_error(e) from e
        return _chain(first, stream)

    async def _events(self, handle, request: StreamRequest) -> AsyncIterator[StreamEvent]:
        usage = Usage()
        stop_reason = StopReason.END_TURN
        call_seq = count()
        saw_tool_call = False

        try:
            async for chunk in handle:
                if chunk.usage_metadata:
                    usage = self._parse_usage(chunk.usage_metadata)
                if not chunk.candidates:
                    continue
                candidate = chunk.candidates[0]
                for part in (candidate.content.parts if candidate.content else None) or []:
                    if part.text:
                        yield TextDelta(part.text)
                    elif part.function_call is not None:
                        fc = part.function_call
                        tool_id = fc.id or f"call_{fc.name}_{next(call_seq)}"
                        saw_tool_call = True
                        yield ToolCallStart(id=tool_id, name=fc.name)
                        yield ToolCallInputDelta(id=tool_id, partial_json=json.dumps(dict(fc.args or {})))
                        yield ToolCallEnd(id=tool_id)
                if candidate.finish_reason:
                    name = getattr(candidate.finish_reason, "name", str(candidate.finish_reason))
                    stop_reason = _STOP_REASONS.get(name, StopReason.END_TURN)
        except _TRANSPORT_ERRORS as e:
            err = _to_provider_error(e)
            yield StreamError(kind=err.kind, message=str(err), status=err.status, provider="google")
            return

        if saw_tool_call:
            stop_reason = StopReason.TOOL_USE
        yield UsageReport(usage=usage, model=request.model)
        yield Done(stop_reason=stop_reason, provider=self.provider.value, model=request.model)

    async def close(self) -> None:
        pass  # google-genai client doesn't need explicit cleanup

    # --- Message conversion ---

    def _convert_messages(self, messages: list[Message]) -> list[types.Content]:
        contents: list[types.Content] = []
        names = tool_name_map(messages)

        for msg in messages:
            texts, calls, results = split_blocks(msg)
            if msg.role == Role.USER:
                part = types.Part(text="\n".join(b.text for b in texts))
                self._append_user_part(contents, part)
            elif msg.role == Role.ASSISTANT:
                parts = [types.Part(text=b.text) for b in texts if b.text]
                parts.extend(
                    types.Part(function_call=types.FunctionCall(id=c.id, name=c.name, args=c.params)) for c in calls
                )
                if parts:
                    contents.append(types.Content(role="model", parts=parts))
            elif msg.role == Role.TOOL:
                for r in results:
                    part = types.Part(
                        function_response=types.FunctionResponse(
                            id=r.tool_call_id,
                            name=names.get(r.tool_call_id, "unknown"),
                            response={"error": r.content} if r.is_error else {"result": r.content},
                        )
                    )
                    self._append_user_part(contents, part)

        return contents

    def _append_user_part(self, contents: list[types.Content], part: types.Part) -> None:
        if contents and contents[-1].role == "user" and contents[-1].parts is not None:
            contents[-1].parts.append(part)
            return
        contents.append(types.Content(role="user", parts=[part]))

    # --- Tool schema ---

    def _convert_tools(self, tools: list[dict]) -> list[types.Tool]:
        declarations = []
        for tool in tools:
            fn = tool.get("function", tool)
            params = fn.get("parameters")
            if params:
                params = self._clean_schema(params)
            declarations.append(
                types.FunctionDeclaration(
                    name=fn["name"],
                    description=fn.get("description", ""),
                    parameters=params,
                )
            )
        return [types.Tool(function_declarations=declarations)]

    def _clean_schema(self, schema: dict) -> dict:
        schema = copy.deepcopy(schema)
        self._clean_schema_recursive(schema)
        return schema

    def _clean_schema_recursive(self, schema: dict) -> None:
        for key in (
            "default",
            "exclusiveMaximum",
            "exclusiveMinimum",
            "additionalProperties",
            "$schema",
            "$defs",
            "title",
        ):
            schema.pop(key, None)

        for prop in (schema.get("properties") or {}).values():
            if isinstance(prop, dict):
                self._clean_schema_recursive(prop)

        if isinstance(schema.get("items"), dict):
            self._clean_schema_recursive(schema["items"])

        for key in ("anyOf", "allOf", "oneOf"):
            for item in schema.get(key) or []:
                if isinstance(item, dict):
                    self._clean_schema_recursive(item)

    def _parse_usage(self, usage_meta) -> Usage:
        total_prompt = usage_meta.prompt_token_count or 0
        cache_read = usage_meta.cached_content_token_count or 0
        return Usage(
            prompt_tokens=total_prompt - cache_read,
            completion_tokens=usage_meta.candidates_token_count or 0,
            cache_read_tokens=cache_read,
            cache_write_tokens=0,
        )
