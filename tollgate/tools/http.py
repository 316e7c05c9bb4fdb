from typing import Any, Literal

import httpx
from pydantic import BaseModel, Field

from tollgate.constants import HTTP_BODY_LIMIT, HTTP_TIMEOUT
from tollgate.tools.core.base import Tool, ToolResult
from tollgate.tools.core.context import ToolExecution
from tollgate.tools.core.enums import Capability
from tollgate.tools.core.formatting import clip_output

HTTP_REQUEST_DESCRIPTION = (
    "Send an HTTP request and return the status, headers and body. "
    "Use for calling APIs or fetching raw pages. Requires user approval."
)


class HttpRequestInput(BaseModel):
    url: str = Field(pattern=r"^https?://", description="Absolute http(s) URL")
    method: Literal["GET", "POST", "PUT", "PATCH", "DELETE", "HEAD"] = Field(default="GET", description="HTTP method")
    headers: dict[str, str] = Field(default_factory=dict, description="Request headers")
    body: str | None = Field(default=None, description="Raw request body")


class HttpRequestTool(Tool):
    name = "http_request"
    display_name = "HttpRequest"
    description = HTTP_REQUEST_DESCRIPTION
    capabilities = frozenset({Capability.NETWORK})
    input_model = HttpRequestInput

    def __init__(self, timeout: float = HTTP_TIMEOUT, transport: httpx.AsyncBaseTransport | None = None):
        self.timeout = timeout
        self._transport = transport

    def describe_call(self, params: dict) -> str:
        return f"{params.get('method', 'GET')} {params.get('url')}"

    async def execute(
        self,
        execution: ToolExecution,
        url: str,
        method: str = "GET",
        headers: dict[str, str] | None = None,
        body: str | None = None,
        **kwargs: Any,
    ) -> ToolResult:
        try:
            async with httpx.AsyncClient(
                timeout=self.timeout, follow_redirects=True, transport=self._transport
            ) as client:
                response = await client.request(method, url, headers=headers or {}, content=body)
        except httpx.HTTPError as e:
            return ToolResult(
                content=f"Request failed: {type(e).__name__}: {e}",
                preview="Request failed",
                is_error=True,
            )

        header_lines = "\n".join(f"{k}: {v}" for k, v in response.headers.items())
        content = f"HTTP {response.status_code} {response.reason_phrase}\n{header_lines}\n\n{response.text}"
        return ToolResult(
            content=clip_output(content, HTTP_BODY_LIMIT),
            preview=f"HTTP {response.status_code}",
            is_error=response.status_code >= 400,
            data={"status": response.status_code},
        )
