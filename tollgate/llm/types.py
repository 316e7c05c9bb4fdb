from dataclasses import dataclass, field
from enum import StrEnum

from tollgate.errors import ProviderErrorKind
from tollgate.usage import Usage


class StopReason(StrEnum):
    END_TURN = "end_turn"
    TOOL_USE = "tool_use"
    MAX_TOKENS = "max_tokens"
    STOP_SEQUENCE = "stop_sequence"
    CANCELLED = "cancelled"
    ERROR = "error"


@dataclass(frozen=True)
class TextDelta:
    text: str


@dataclass(frozen=True)
class ToolCallStart:
    id: str
    name: str


@dataclass(frozen=True)
class ToolCallInputDelta:
    id: str
    partial_json: str


@dataclass(frozen=True)
class ToolCallEnd:
    id: str


@dataclass(frozen=True)
class UsageReport:
    usage: Usage
    model: str = ""


@dataclass(frozen=True)
class StreamError:
    kind: ProviderErrorKind
    message: str
    status: int | None = None
    provider: str | None = None
    fatal: bool = True


@dataclass(frozen=True)
class Done:
    stop_reason: StopReason = StopReason.END_TURN
    provider: str = ""
    model: str = ""


type StreamEvent = TextDelta | ToolCallStart | ToolCallInputDelta | ToolCallEnd | UsageReport | StreamError | Done


@dataclass
class TurnConfig:
    """Per-call request options. `model` overrides the provider default."""

    system_prompt: str | None = None
    model: str | None = None
    max_tokens: int | None = None
    temperature: float | None = None
    extra: dict = field(default_factory=dict)
