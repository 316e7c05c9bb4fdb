from typing import Literal

from pydantic import BaseModel, Field

# --- Sessions ---


class CreateSessionRequest(BaseModel):
    name: str | None = None


class SessionResponse(BaseModel):
    session_id: str
    name: str | None = None
    created_at: str
    last_activity: str
    archived_at: str | None = None


# --- Chat / run ---


class ChatRequest(BaseModel):
    message: str = Field(min_length=1)


class QueuedResponse(BaseModel):
    status: Literal["queued"] = "queued"
    session_id: str


# --- Decisions ---


class ApprovalDecisionRequest(BaseModel):
    decision: Literal["approved", "denied", "approve", "deny", "allow", "reject"]
    reason: str | None = None


class PlanDecisionRequest(BaseModel):
    plan_id: str | None = None
    action: Literal["approve", "reject", "request_changes", "start"]
    feedback: str | None = None
