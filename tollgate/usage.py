from dataclasses import dataclass, field, fields


@dataclass(frozen=True)
class Pricing:
    """USD per million tokens."""

    input: float = 0
    output: float = 0
    cache_read: float = 0
    cache_write: float = 0


@dataclass(frozen=True)
class Usage:
    """Token counts of one or more provider calls. `prompt_tokens` excludes cached input."""

    prompt_tokens: int = 0
    completion_tokens: int = 0
    cache_read_tokens: int = 0
    cache_write_tokens: int = 0
    cost: float = 0.0

    @property
    def input_tokens(self) -> int:
        return self.prompt_tokens + self.cache_read_tokens + self.cache_write_tokens

    def priced(self, pricing: Pricing) -> "Usage":
        cost = (
            self.prompt_tokens * pricing.input
            + self.completion_tokens * pricing.output
            + self.cache_read_tokens * pricing.cache_read
            + self.cache_write_tokens * pricing.cache_write
        ) / 1_000_000
        return Usage(
            prompt_tokens=self.prompt_tokens,
            completion_tokens=self.completion_tokens,
            cache_read_tokens=self.cache_read_tokens,
            cache_write_tokens=self.cache_write_tokens,
            cost=cost,
        )

    def __add__(self, other: "Usage") -> "Usage":
        return Usage(**{f.name: getattr(self, f.name) + getattr(other, f.name) for f in fields(self)})

    def to_dict(self) -> dict:
        return {
            "prompt": self.prompt_tokens,
            "completion": self.completion_tokens,
            "total": self.prompt_tokens + self.completion_tokens,
            "cache_read": self.cache_read_tokens,
            "cache_write": self.cache_write_tokens,
            "cost": self.cost,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Usage":
        return cls(
            prompt_tokens=data.get("prompt", 0),
            completion_tokens=data.get("completion", 0),
            cache_read_tokens=data.get("cache_read", 0),
            cache_write_tokens=data.get("cache_write", 0),
            cost=data.get("cost", 0.0),
        )


@dataclass
class CostAccumulator:
    """Session-wide spend. `context_tokens` is the last call's input size, not a sum."""

    total: Usage = field(default_factory=Usage)
    context_tokens: int = 0
    calls: int = 0

    def add(self, usage: Usage) -> None:
        self.total = self.total + usage
        self.context_tokens = usage.input_tokens
        self.calls += 1

    @property
    def cost(self) -> float:
        return self.total.cost

    def to_dict(self) -> dict:
        return {**self.total.to_dict(), "context_tokens": self.context_tokens, "calls": self.calls}

    @classmethod
    def from_dict(cls, data: dict) -> "CostAccumulator":
        return cls(
            total=Usage.from_dict(data),
            context_tokens=data.get("context_tokens", 0),
            calls=data.get("calls", 0),
        )
