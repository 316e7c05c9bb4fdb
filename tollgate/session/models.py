from dataclasses import dataclass, field
from datetime import datetime

from tollgate.conversation import Conversation
from tollgate.plan.models import Plan
from tollgate.usage import CostAccumulator
from tollgate.utils import new_id, utc_now


@dataclass
class SessionState:
    session_id: str = field(default_factory=lambda: new_id("ses_"))
    name: str | None = None
    created_at: datetime = field(default_factory=utc_now)
    last_activity: datetime = field(default_factory=utc_now)
    archived_at: datetime | None = None

    def to_dict(self) -> dict:
        return {
            "session_id": self.session_id,
            "name": self.name,
            "created_at": self.created_at.isoformat(),
            "last_activity": self.last_activity.isoformat(),
            "archived_at": self.archived_at.isoformat() if self.archived_at else None,
        }


@dataclass
class SessionData:
    state: SessionState
    conversation: Conversation
    plans: list[Plan] = field(default_factory=list)
    cost: CostAccumulator = field(default_factory=CostAccumulator)
