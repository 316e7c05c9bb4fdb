from collections.abc import Iterator, Sequence
from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from typing import Any

from tollgate.utils import new_id, utc_now


class Role(StrEnum):
    USER = "user"
    ASSISTANT = "assistant"
    TOOL = "tool"


@dataclass(frozen=True)
class TextBlock:
    text: str
    type: str = field(default="text", init=False)


@dataclass(frozen=True)
class ToolCallBlock:
    id: str
    name: str
    params: dict
    type: str = field(default="tool_call", init=False)


@dataclass(frozen=True)
class ToolResultBlock:
    tool_call_id: str
    content: str
    is_error: bool = False
    type: str = field(default="tool_result", init=False)


type ContentBlock = TextBlock | ToolCallBlock | ToolResultBlock


@dataclass(frozen=True)
class Message:
    role: Role
    content: tuple[ContentBlock, ...]
    timestamp: datetime = field(default_factory=utc_now)
    id: str = field(default_factory=lambda: new_id("msg_"))

    @classmethod
    def user(cls, text: str) -> "Message":
        return cls(role=Role.USER, content=(TextBlock(text),))

    @classmethod
    def assistant(
        cls, text: str, tool_calls: Sequence[ToolCallBlock] = (), message_id: str | None = None
    ) -> "Message":
        blocks: list[ContentBlock] = [TextBlock(text)] if text else []
        blocks.extend(tool_calls)
        if message_id is None:
            return cls(role=Role.ASSISTANT, content=tuple(blocks))
        return cls(role=Role.ASSISTANT, content=tuple(blocks), id=message_id)

    @classmethod
    def tool(cls, results: Sequence[ToolResultBlock]) -> "Message":
        return cls(role=Role.TOOL, content=tuple(results))

    @property
    def text(self) -> str:
        return "\n".join(b.text for b in self.content if isinstance(b, TextBlock))

    @property
    def tool_calls(self) -> list[ToolCallBlock]:
        return [b for b in self.content if isinstance(b, ToolCallBlock)]

    @property
    def tool_results(self) -> list[ToolResultBlock]:
        return [b for b in self.content if isinstance(b, ToolResultBlock)]

    def to_dict(self) -> dict[str, Any]:
        blocks = []
        for block in self.content:
            match block:
                case TextBlock():
                    blocks.append({"type": block.type, "text": block.text})
                case ToolCallBlock():
                    blocks.append({"type": block.type, "id": block.id, "name": block.name, "params": block.params})
                case ToolResultBlock():
                    blocks.append(
                        {
                            "type": block.type,
                            "tool_call_id": block.tool_call_id,
                            "content": block.content,
                            "is_error": block.is_error,
                        }
                    )
        return {
            "id": self.id,
            "role": self.role.value,
            "content": blocks,
            "timestamp": self.timestamp.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Message":
        blocks: list[ContentBlock] = []
        for raw in data["content"]:
            match raw["type"]:
                case "text":
                    blocks.append(TextBlock(raw["text"]))
                case "tool_call":
                    blocks.append(ToolCallBlock(id=raw["id"], name=raw["name"], params=raw.get("params") or {}))
                case "tool_result":
                    blocks.append(
                        ToolResultBlock(
                            tool_call_id=raw["tool_call_id"],
                            content=raw["content"],
                            is_error=raw.get("is_error", False),
                        )
                    )
                case other:
                    raise ValueError(f"Unknown content block type: {other}")
        return cls(
            role=Role(data["role"]),
            content=tuple(blocks),
            timestamp=datetime.fromisoformat(data["timestamp"]),
            id=data["id"],
        )


class Conversation:
    """Append-only, ordered message log. Messages are never edited or removed."""

    def __init__(self, messages: Sequence[Message] = ()):
        self._messages: list[Message] = list(messages)

    def append(self, message: Message) -> None:
        if not isinstance(message, Message):
            raise TypeError(f"Expected Message, got {type(message).__name__}")
        self._messages.append(message)

    @property
    def messages(self) -> tuple[Message, ...]:
        return tuple(self._messages)

    @property
    def last(self) -> Message | None:
        return self._messages[-1] if self._messages else None

    def __iter__(self) -> Iterator[Message]:
        return iter(tuple(self._messages))

    def __len__(self) -> int:
        return len(self._messages)

    def __getitem__(self, index: int) -> Message:
        return self._messages[index]
