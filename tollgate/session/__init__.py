from tollgate.session.models import SessionData, SessionState
from tollgate.session.service import SessionService
from tollgate.session.store import SessionStore, SqliteSessionStore

__all__ = ["SessionData", "SessionService", "SessionState", "SessionStore", "SqliteSessionStore"]
