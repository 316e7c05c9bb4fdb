from tollgate.constants import SESSION_LIST_LIMIT
from tollgate.errors import SessionNotFound
from tollgate.logging import get_logger
from tollgate.session.models import SessionData, SessionState
from tollgate.session.store import SqliteSessionStore

_logger = get_logger(__name__)


class SessionService:
    def __init__(self, store: SqliteSessionStore):
        self.store = store

    async def create(self, name: str | None = None) -> SessionState:
        state = await self.store.create_session(SessionState(name=name))
        _logger.info("Created session %s", state.session_id)
        return state

    async def get(self, session_id: str) -> SessionState:
        state = await self.store.get_session(session_id)
        if state is None:
            raise SessionNotFound(session_id)
        return state

    async def load(self, session_id: str) -> SessionData:
        state = await self.get(session_id)
        return SessionData(
            state=state,
            conversation=await self.store.read_conversation(session_id),
            plans=await self.store.load_plans(session_id),
            cost=await self.store.load_cost(session_id),
        )

    async def list_sessions(self, limit: int = SESSION_LIST_LIMIT, include_archived: bool = False) -> list[dict]:
        return await self.store.list_sessions(limit=limit, include_archived=include_archived)

    async def archive(self, session_id: str) -> bool:
        return await self.store.archive_session(session_id)

    async def delete(self, session_id: str) -> bool:
        deleted = await self.store.delete_session(session_id)
        if deleted:
            _logger.info("Deleted session %s", session_id)
        return deleted
