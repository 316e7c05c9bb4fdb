import json
from dataclasses import dataclass, field

from tollgate.core.models import ToolCallRequest
from tollgate.logging import get_logger

_logger = get_logger(__name__)


def parse_tool_arguments(raw: str) -> tuple[dict, str | None]:
    """Parse accumulated tool-call JSON. Returns (params, error); params is {} on error."""
    if not raw.strip():
        return {}, None
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError as e:
        _logger.warning("Malformed tool arguments: %.200s", raw)
        return {}, f"arguments are not valid JSON ({e.msg} at position {e.pos})"
    if not isinstance(parsed, dict):
        return {}, f"arguments must be a JSON object, got {type(parsed).__name__}"
    return parsed, None


@dataclass
class _OpenCall:
    name: str
    chunks: list[str] = field(default_factory=list)


class StreamAccumulator:
    """Assembles one assistant message from stream events.

    Text is kept in arrival order; tool calls are completed in the order their
    end markers arrive, which is the order the model issued them.
    """

    def __init__(self, message_id: str):
        self.message_id = message_id
        self._text: list[str] = []
        self._open: dict[str, _OpenCall] = {}
        self.calls: list[ToolCallRequest] = []

    @property
    def text(self) -> str:
        return "".join(self._text)

    def add_text(self, text: str) -> None:
        self._text.append(text)

    def start_call(self, call_id: str, name: str) -> None:
        self._open[call_id] = _OpenCall(name=name)

    def add_input(self, call_id: str, partial_json: str) -> None:
        call = self._open.get(call_id)
        if call is None:
            _logger.warning("Input delta for unknown tool call %s", call_id)
            return
        call.chunks.append(partial_json)

    def finish_call(self, call_id: str) -> ToolCallRequest | None:
        call = self._open.pop(call_id, None)
        if call is None:
            _logger.warning("End marker for unknown tool call %s", call_id)
            return None
        params, error = parse_tool_arguments("".join(call.chunks))
        request = ToolCallRequest(
            id=call_id,
            name=call.name,
            params=params,
            message_id=self.message_id,
            parse_error=error,
        )
        self.calls.append(request)
        return request

    def finish_open(self) -> list[ToolCallRequest]:
        """Close calls whose end marker never arrived (stream ended first)."""
        return [request for call_id in list(self._open) if (request := self.finish_call(call_id))]
