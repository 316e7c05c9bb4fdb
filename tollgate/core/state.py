from collections.abc import Awaitable, Callable
from enum import Enum


class TurnState(Enum):
    IDLE = "idle"
    STREAMING = "streaming"
    AWAITING_APPROVAL = "awaiting_approval"
    RUNNING_TOOLS = "running_tools"


# Callback type for state changes
StateCallback = Callable[[TurnState], Awaitable[None]]
