from collections.abc import AsyncGenerator
from contextlib import aclosing, asynccontextmanager

from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse

from tollgate.errors import (
    ApprovalAlreadyResolved,
    ApprovalNotFound,
    BlockedByDependency,
    InvalidTransition,
    PlanIntegrityError,
    PlanNotFound,
    SessionNotFound,
    TollgateError,
    TurnInProgress,
)
from tollgate.events import ThinkingEvent
from tollgate.logging import configure_logging, get_logger
from tollgate.server.runtime import get_runtime, get_runtime_async, reset_runtime
from tollgate.server.schemas import (
    ApprovalDecisionRequest,
    ChatRequest,
    CreateSessionRequest,
    PlanDecisionRequest,
    QueuedResponse,
    SessionResponse,
)

_logger = get_logger(__name__)

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}

ERROR_STATUS: dict[type[TollgateError], int] = {
    SessionNotFound: 404,
    ApprovalNotFound: 404,
    PlanNotFound: 404,
    ApprovalAlreadyResolved: 409,
    InvalidTransition: 409,
    TurnInProgress: 409,
    PlanIntegrityError: 422,
    BlockedByDependency: 422,
}


@asynccontextmanager
async def lifespan(app: FastAPI):
    runtime = await get_runtime_async()
    configure_logging(runtime.config.log_level)
    yield
    await reset_runtime()


app = FastAPI(
    title="tollgate",
    description="Tool-call orchestration and approval engine - API server",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(TollgateError)
async def tollgate_error_handler(request: Request, exc: TollgateError) -> JSONResponse:
    status = next((code for cls, code in ERROR_STATUS.items() if isinstance(exc, cls)), 400)
    return JSONResponse(status_code=status, content={"detail": str(exc), "error_type": type(exc).__name__})


@app.get("/health")
async def health():
    return {"status": "ok"}


@app.get("/tools")
async def list_tools():
    runtime = get_runtime()
    return {"tools": [tool.get_metadata() for tool in runtime.registry.tools.values()]}


# --- Sessions ---


@app.post("/sessions", status_code=201)
async def create_session(request: CreateSessionRequest) -> SessionResponse:
    runtime = get_runtime()
    state = await runtime.sessions.create(request.name)
    return SessionResponse(**state.to_dict())


@app.get("/sessions")
async def list_sessions(limit: int = 20, include_archived: bool = False):
    runtime = get_runtime()
    return {"sessions": await runtime.sessions.list_sessions(limit=limit, include_archived=include_archived)}


@app.get("/sessions/{session_id}")
async def get_session(session_id: str) -> SessionResponse:
    runtime = get_runtime()
    state = await runtime.sessions.get(session_id)
    return SessionResponse(**state.to_dict())


@app.delete("/sessions/{session_id}")
async def delete_session(session_id: str):
    runtime = get_runtime()
    await runtime.forget(session_id)
    if not await runtime.sessions.delete(session_id):
        raise HTTPException(status_code=404, detail=f"Session not found: {session_id}")
    return {"status": "deleted"}


@app.get("/sessions/{session_id}/messages")
async def get_messages(session_id: str):
    runtime = get_runtime()
    await runtime.sessions.get(session_id)
    conversation = await runtime.store.read_conversation(session_id)
    return {"messages": [m.to_dict() for m in conversation]}


# --- Chat ---


@app.post("/sessions/{session_id}/chat", response_model=None)
async def chat(session_id: str, request: ChatRequest) -> StreamingResponse | QueuedResponse:
    runtime = get_runtime()
    orchestrator = await runtime.orchestrator(session_id)

    if orchestrator.is_running:
        orchestrator.queue_message(request.message)
        return QueuedResponse(session_id=session_id)

    # Started before responding so a second request arriving meanwhile sees the turn and queues
    turn = orchestrator.start_turn(request.message)

    async def event_generator() -> AsyncGenerator[str]:
        yield ThinkingEvent(status="processing...").to_sse_string()
        try:
            async with aclosing(turn) as events:
                async for event in events:
                    yield event.to_sse_string()
        except TollgateError as e:
            # The turn already emitted its ErrorEvent before failing
            _logger.info("Stream for session %s ended with %s", session_id, type(e).__name__)
        except Exception:
            _logger.exception("Stream for session %s failed", session_id)

    return StreamingResponse(event_generator(), media_type="text/event-stream", headers=SSE_HEADERS)


@app.post("/sessions/{session_id}/cancel")
async def cancel(session_id: str):
    runtime = get_runtime()
    orchestrator = await runtime.orchestrator(session_id)
    return {"status": "cancelled" if orchestrator.cancel() else "idle"}


# --- Approvals ---


@app.get("/sessions/{session_id}/approvals")
async def list_approvals(session_id: str):
    runtime = get_runtime()
    orchestrator = await runtime.orchestrator(session_id)
    return {"approvals": [r.to_dict() for r in orchestrator.pending_approvals()]}


@app.post("/approvals/{request_id}")
async def resolve_approval(request_id: str, request: ApprovalDecisionRequest):
    runtime = get_runtime()
    orchestrator = runtime.find_approval_owner(request_id)
    resolved = orchestrator.resolve_approval(request_id, request.decision, request.reason)
    return resolved.to_dict()


# --- Plans ---


@app.get("/sessions/{session_id}/plan")
async def get_plan(session_id: str):
    runtime = get_runtime()
    orchestrator = await runtime.orchestrator(session_id)
    plan = orchestrator.current_plan()
    if plan is None:
        return {"plan": None}
    return {"plan": plan.to_dict(), "progress": plan.progress().to_dict()}


@app.post("/sessions/{session_id}/plan/decision")
async def decide_plan(session_id: str, request: PlanDecisionRequest):
    runtime = get_runtime()
    orchestrator = await runtime.orchestrator(session_id)
    plans = orchestrator.plans

    plan_id = request.plan_id
    if plan_id is None:
        current = orchestrator.current_plan()
        if current is None:
            raise PlanNotFound(f"Session {session_id} has no open plan")
        plan_id = current.id

    match request.action:
        case "approve":
            plan = await plans.approve(plan_id)
        case "reject":
            plan = await plans.reject(plan_id, request.feedback)
        case "request_changes":
            if not request.feedback:
                raise HTTPException(status_code=422, detail="request_changes needs feedback")
            plan = await plans.request_changes(plan_id, request.feedback)
        case "start":
            plan = await plans.start(plan_id)
    return {"plan": plan.to_dict(), "progress": plan.progress().to_dict()}
