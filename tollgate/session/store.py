import json
from datetime import UTC, datetime
from typing import Protocol

import aiosqlite

from tollgate.constants import SESSION_LIST_LIMIT
from tollgate.conversation import Conversation, Message
from tollgate.database import Database
from tollgate.errors import SessionNotFound
from tollgate.plan.models import Plan
from tollgate.session.models import SessionState
from tollgate.usage import CostAccumulator
from tollgate.utils import utc_now

SCHEMA = """
CREATE TABLE IF NOT EXISTS sessions (
    session_id TEXT PRIMARY KEY,
    name TEXT,
    created_at TEXT NOT NULL,
    last_activity TEXT NOT NULL,
    cost TEXT,
    archived_at TEXT
);

CREATE INDEX IF NOT EXISTS idx_sessions_activity ON sessions(last_activity);

CREATE TABLE IF NOT EXISTS messages (
    seq INTEGER PRIMARY KEY AUTOINCREMENT,
    session_id TEXT NOT NULL REFERENCES sessions(session_id) ON DELETE CASCADE,
    message_id TEXT NOT NULL UNIQUE,
    role TEXT NOT NULL,
    data TEXT NOT NULL,
    created_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_messages_session ON messages(session_id, seq);

CREATE TABLE IF NOT EXISTS plans (
    plan_id TEXT PRIMARY KEY,
    session_id TEXT NOT NULL REFERENCES sessions(session_id) ON DELETE CASCADE,
    status TEXT NOT NULL,
    data TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_plans_session ON plans(session_id, updated_at);
"""

SQL_CREATE_SESSION = """
INSERT INTO sessions (session_id, name, created_at, last_activity, cost, archived_at)
VALUES (?, ?, ?, ?, NULL, NULL)
"""

SQL_GET_SESSION = "SELECT * FROM sessions WHERE session_id = ?"

SQL_TOUCH_SESSION = "UPDATE sessions SET last_activity = ? WHERE session_id = ?"

SQL_APPEND_MESSAGE = """
INSERT INTO messages (session_id, message_id, role, data, created_at)
VALUES (?, ?, ?, ?, ?)
"""

SQL_READ_CONVERSATION = "SELECT data FROM messages WHERE session_id = ? ORDER BY seq"

SQL_SAVE_PLAN = """
INSERT INTO plans (plan_id, session_id, status, data, updated_at)
VALUES (?, ?, ?, ?, ?)
ON CONFLICT(plan_id) DO UPDATE SET
    status = excluded.status,
    data = excluded.data,
    updated_at = excluded.updated_at
"""

SQL_LOAD_PLANS = "SELECT data FROM plans WHERE session_id = ? ORDER BY updated_at, rowid"

SQL_LOAD_LATEST_PLAN = """
SELECT data FROM plans WHERE session_id = ?
ORDER BY updated_at DESC, rowid DESC LIMIT 1
"""

SQL_SAVE_COST = "UPDATE sessions SET cost = ? WHERE session_id = ?"

SQL_LIST_SESSIONS = """
SELECT s.session_id, s.name, s.created_at, s.last_activity, s.archived_at,
       (SELECT COUNT(*) FROM messages m WHERE m.session_id = s.session_id) AS message_count
FROM sessions s
WHERE (? OR s.archived_at IS NULL)
ORDER BY s.last_activity DESC
LIMIT ?
"""


class SessionStore(Protocol):
    """Persistence contract the orchestrator writes through. Each session owns disjoint keys."""

    async def append(self, session_id: str, message: Message) -> None: ...

    async def read_conversation(self, session_id: str) -> Conversation: ...

    async def save_plan(self, session_id: str, plan: Plan) -> None: ...

    async def load_plan(self, session_id: str) -> Plan | None: ...

    async def save_cost(self, session_id: str, cost: CostAccumulator) -> None: ...


def _parse_dt(value: str | None) -> datetime | None:
    if value is None:
        return None
    parsed = datetime.fromisoformat(value)
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=UTC)


def _row_to_state(row: aiosqlite.Row) -> SessionState:
    return SessionState(
        session_id=row["session_id"],
        name=row["name"],
        created_at=_parse_dt(row["created_at"]),
        last_activity=_parse_dt(row["last_activity"]),
        archived_at=_parse_dt(row["archived_at"]),
    )


class SqliteSessionStore:
    def __init__(self, db: Database):
        self.db = db

    @property
    def conn(self) -> aiosqlite.Connection:
        return self.db.conn

    async def init_schema(self) -> None:
        async with self.db.transaction() as conn:
            await conn.executescript(SCHEMA)

    # --- Sessions ---

    async def create_session(self, state: SessionState) -> SessionState:
        async with self.db.transaction() as conn:
            await conn.execute(
                SQL_CREATE_SESSION,
                (state.session_id, state.name, state.created_at.isoformat(), state.last_activity.isoformat()),
            )
        return state

    async def get_session(self, session_id: str) -> SessionState | None:
        rows = await self.conn.execute_fetchall(SQL_GET_SESSION, (session_id,))
        return _row_to_state(rows[0]) if rows else None

    async def _require_session(self, session_id: str) -> None:
        rows = await self.conn.execute_fetchall("SELECT 1 FROM sessions WHERE session_id = ?", (session_id,))
        if not rows:
            raise SessionNotFound(session_id)

    async def list_sessions(self, limit: int = SESSION_LIST_LIMIT, include_archived: bool = False) -> list[dict]:
        rows = await self.conn.execute_fetchall(SQL_LIST_SESSIONS, (include_archived, limit))
        return [
            {
                "session_id": row["session_id"],
                "name": row["name"],
                "created_at": row["created_at"],
                "last_activity": row["last_activity"],
                "archived_at": row["archived_at"],
                "message_count": row["message_count"],
            }
            for row in rows
        ]

    async def archive_session(self, session_id: str) -> bool:
        async with self.db.transaction() as conn:
            cursor = await conn.execute(
                "UPDATE sessions SET archived_at = ? WHERE session_id = ? AND archived_at IS NULL",
                (utc_now().isoformat(), session_id),
            )
        return cursor.rowcount > 0

    async def delete_session(self, session_id: str) -> bool:
        async with self.db.transaction() as conn:
            await conn.execute("DELETE FROM messages WHERE session_id = ?", (session_id,))
            await conn.execute("DELETE FROM plans WHERE session_id = ?", (session_id,))
            cursor = await conn.execute("DELETE FROM sessions WHERE session_id = ?", (session_id,))
        return cursor.rowcount > 0

    # --- Conversation ---

    async def append(self, session_id: str, message: Message) -> None:
        """Message row and activity touch land together or not at all."""
        await self._require_session(session_id)
        async with self.db.transaction() as conn:
            await conn.execute(
                SQL_APPEND_MESSAGE,
                (
                    session_id,
                    message.id,
                    message.role.value,
                    json.dumps(message.to_dict()),
                    message.timestamp.isoformat(),
                ),
            )
            await conn.execute(SQL_TOUCH_SESSION, (utc_now().isoformat(), session_id))

    async def read_conversation(self, session_id: str) -> Conversation:
        rows = await self.conn.execute_fetchall(SQL_READ_CONVERSATION, (session_id,))
        return Conversation([Message.from_dict(json.loads(row["data"])) for row in rows])

    # --- Plans ---

    async def save_plan(self, session_id: str, plan: Plan) -> None:
        await self._require_session(session_id)
        async with self.db.transaction() as conn:
            await conn.execute(
                SQL_SAVE_PLAN,
                (plan.id, session_id, plan.status.value, json.dumps(plan.to_dict()), plan.updated_at.isoformat()),
            )

    async def load_plan(self, session_id: str) -> Plan | None:
        rows = await self.conn.execute_fetchall(SQL_LOAD_LATEST_PLAN, (session_id,))
        return Plan.from_dict(json.loads(rows[0]["data"])) if rows else None

    async def load_plans(self, session_id: str) -> list[Plan]:
        rows = await self.conn.execute_fetchall(SQL_LOAD_PLANS, (session_id,))
        return [Plan.from_dict(json.loads(row["data"])) for row in rows]

    # --- Cost ---

    async def save_cost(self, session_id: str, cost: CostAccumulator) -> None:
        async with self.db.transaction() as conn:
            await conn.execute(SQL_SAVE_COST, (json.dumps(cost.to_dict()), session_id))

    async def load_cost(self, session_id: str) -> CostAccumulator:
        rows = await self.conn.execute_fetchall("SELECT cost FROM sessions WHERE session_id = ?", (session_id,))
        if not rows or not rows[0]["cost"]:
            return CostAccumulator()
        return CostAccumulator.from_dict(json.loads(rows[0]["cost"]))
