import asyncio

from tollgate.channel import Channel
from tollgate.config import Config, get_config
from tollgate.core.events import RunCompleted, ToolExecuted
from tollgate.core.factory import create_gateway, create_orchestrator
from tollgate.core.orchestrator import Orchestrator
from tollgate.database import Database
from tollgate.errors import ApprovalNotFound
from tollgate.llm.gateway import ProviderGateway
from tollgate.logging import get_logger
from tollgate.session.service import SessionService
from tollgate.session.store import SqliteSessionStore
from tollgate.tools.core.registry import ToolRegistry
from tollgate.tools.specs import create_registry

_logger = get_logger(__name__)


class Runtime:
    """Process-wide wiring: one database, one gateway, one orchestrator per live session."""

    def __init__(
        self,
        config: Config | None = None,
        gateway: ProviderGateway | None = None,
        registry: ToolRegistry | None = None,
    ):
        self.config = config or get_config()
        self.channel = Channel()
        self.db = Database(self.config.db_path)
        self.gateway = gateway or create_gateway(self.config)
        self.registry = registry or create_registry()

        self.store: SqliteSessionStore | None = None
        self.sessions: SessionService | None = None
        self.orchestrators: dict[str, Orchestrator] = {}
        self._load_lock = asyncio.Lock()
        self._connected = False

        self.channel.subscribe(ToolExecuted, self._on_tool_executed)
        self.channel.subscribe(RunCompleted, self._on_run_completed)

    async def connect(self) -> None:
        if self._connected:
            return
        await self.db.connect()
        self.store = SqliteSessionStore(self.db)
        await self.store.init_schema()
        self.sessions = SessionService(self.store)
        self._connected = True
        _logger.info("Runtime connected (%d tools, db=%s)", len(self.registry), self.config.db_path)

    async def close(self) -> None:
        for orchestrator in self.orchestrators.values():
            orchestrator.cancel()
        await self.channel.drain()
        await self.gateway.close()
        await self.db.close()
        self.orchestrators.clear()
        self._connected = False

    # --- Orchestrators ---

    async def orchestrator(self, session_id: str) -> Orchestrator:
        """The live orchestrator for a session, loading it from the store on first use."""
        if orchestrator := self.orchestrators.get(session_id):
            return orchestrator
        async with self._load_lock:
            if orchestrator := self.orchestrators.get(session_id):
                return orchestrator
            session = await self.sessions.load(session_id)
            orchestrator = create_orchestrator(
                config=self.config,
                session=session,
                gateway=self.gateway,
                registry=self.registry,
                store=self.store,
                channel=self.channel,
            )
            self.orchestrators[session_id] = orchestrator
            return orchestrator

    async def forget(self, session_id: str) -> None:
        if orchestrator := self.orchestrators.pop(session_id, None):
            orchestrator.cancel()

    def find_approval_owner(self, request_id: str) -> Orchestrator:
        for orchestrator in self.orchestrators.values():
            if any(r.id == request_id for r in orchestrator.gate.pending() + orchestrator.gate.history()):
                return orchestrator
        raise ApprovalNotFound(request_id)

    # --- Channel handlers ---

    async def _on_tool_executed(self, event: ToolExecuted) -> None:
        _logger.debug(
            "Tool %s finished in %dms (error=%s, approval=%s)",
            event.name,
            event.duration_ms,
            event.is_error,
            event.approval,
        )

    async def _on_run_completed(self, event: RunCompleted) -> None:
        _logger.info(
            "Run %s %s after %d iterations (%d in / %d out tokens, $%.4f)",
            event.run_id,
            event.outcome,
            event.iterations,
            event.prompt_tokens,
            event.completion_tokens,
            event.cost,
        )


_runtime: Runtime | None = None
_runtime_lock = asyncio.Lock()


async def get_runtime_async() -> Runtime:
    global _runtime
    async with _runtime_lock:
        if _runtime is None:
            _runtime = Runtime()
            await _runtime.connect()
    return _runtime


def get_runtime() -> Runtime:
    if _runtime is None:
        raise RuntimeError("Runtime not initialized. Call get_runtime_async() first.")
    if not _runtime._connected:
        raise RuntimeError("Runtime not connected. Call await runtime.connect() first.")
    return _runtime


def set_runtime(runtime: Runtime | None) -> None:
    global _runtime
    _runtime = runtime


async def reset_runtime() -> None:
    global _runtime
    if _runtime is not None:
        await _runtime.close()
        _runtime = None
