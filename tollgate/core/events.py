from dataclasses import dataclass


@dataclass(frozen=True)
class ToolExecuted:
    name: str
    duration_ms: int
    is_error: bool
    approval: str | None = None
    run_id: str = ""


@dataclass(frozen=True)
class RunStarted:
    run_id: str
    session_id: str


@dataclass(frozen=True)
class RunCompleted:
    run_id: str
    session_id: str
    prompt_tokens: int
    completion_tokens: int
    cache_read_tokens: int
    cache_write_tokens: int
    cost: float
    iterations: int
    outcome: str
