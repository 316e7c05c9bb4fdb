from enum import StrEnum


class TollgateError(Exception):
    pass


# --- Providers ---


class ProviderErrorKind(StrEnum):
    NETWORK = "network"
    SERVER = "server"
    RATE_LIMIT = "rate_limit"
    AUTH = "auth"
    INVALID_REQUEST = "invalid_request"
    CONFIGURATION = "configuration"
    STREAM = "stream"


class ProviderError(TollgateError):
    def __init__(
        self,
        message: str,
        kind: ProviderErrorKind = ProviderErrorKind.SERVER,
        status: int | None = None,
        provider: str | None = None,
    ):
        super().__init__(message)
        self.kind = kind
        self.status = status
        self.provider = provider

    @property
    def retryable(self) -> bool:
        return self.kind in (ProviderErrorKind.NETWORK, ProviderErrorKind.SERVER, ProviderErrorKind.RATE_LIMIT)


# --- Tools ---


class ToolNotFound(TollgateError):
    def __init__(self, name: str):
        super().__init__(f"Unknown tool: {name}")
        self.name = name


class ValidationError(TollgateError):
    """Tool input did not match the declared schema. Reported back to the model."""

    def __init__(self, tool_name: str, errors: list[str]):
        super().__init__(f"Invalid arguments for {tool_name}: {'; '.join(errors)}")
        self.tool_name = tool_name
        self.errors = errors


# --- Approvals ---


class ApprovalDenied(TollgateError):
    def __init__(self, tool_name: str, reason: str | None = None):
        super().__init__(f"User denied {tool_name}" + (f": {reason}" if reason else ""))
        self.tool_name = tool_name
        self.reason = reason


class ApprovalTimedOut(ApprovalDenied):
    def __init__(self, tool_name: str, timeout: float):
        super().__init__(tool_name, f"no decision within {timeout:g}s")
        self.timeout = timeout


class ApprovalNotFound(TollgateError):
    def __init__(self, request_id: str):
        super().__init__(f"No approval request {request_id}")
        self.request_id = request_id


class ApprovalAlreadyResolved(TollgateError):
    def __init__(self, request_id: str, decision: str):
        super().__init__(f"Approval request {request_id} already resolved ({decision})")
        self.request_id = request_id
        self.decision = decision


# --- Plans ---


class PlanIntegrityError(TollgateError):
    def __init__(self, dangling: dict[str, list[str]] | None = None, cycle: list[str] | None = None):
        self.dangling = dangling or {}
        self.cycle = cycle or []
        parts = []
        if self.dangling:
            refs = ", ".join(f"{task} -> {', '.join(deps)}" for task, deps in self.dangling.items())
            parts.append(f"unknown dependencies ({refs})")
        if self.cycle:
            parts.append(f"dependency cycle ({' -> '.join(self.cycle)})")
        super().__init__("Plan is not valid: " + "; ".join(parts))


class BlockedByDependency(TollgateError):
    def __init__(self, task_id: str, unmet: list[str]):
        super().__init__(f"Task {task_id} is blocked by unfinished dependencies: {', '.join(unmet)}")
        self.task_id = task_id
        self.unmet = unmet


class InvalidTransition(TollgateError):
    def __init__(self, subject: str, current: str, target: str):
        super().__init__(f"{subject} cannot move from {current} to {target}")
        self.subject = subject
        self.current = current
        self.target = target


class PlanNotFound(TollgateError):
    pass


# --- Turns / sessions ---


class IterationLimitExceeded(TollgateError):
    def __init__(self, limit: int):
        super().__init__(f"Stopped: reached max iterations ({limit})")
        self.limit = limit


class TurnInProgress(TollgateError):
    pass


class SessionNotFound(TollgateError):
    def __init__(self, session_id: str):
        super().__init__(f"Session not found: {session_id}")
        self.session_id = session_id
