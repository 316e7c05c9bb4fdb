from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum

from tollgate.utils import new_id, utc_now


class PlanStatus(StrEnum):
    DRAFT = "draft"
    PENDING_APPROVAL = "pending_approval"
    APPROVED = "approved"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    REJECTED = "rejected"


class TaskStatus(StrEnum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    SKIPPED = "skipped"
    FAILED = "failed"
    BLOCKED = "blocked"


class TaskType(StrEnum):
    RESEARCH = "research"
    EDIT = "edit"
    CREATE = "create"
    DELETE = "delete"
    TEST = "test"
    REFACTOR = "refactor"
    DOCUMENTATION = "documentation"
    CONFIGURATION = "configuration"
    BUILD = "build"
    OTHER = "other"


PLAN_TRANSITIONS: dict[PlanStatus, frozenset[PlanStatus]] = {
    PlanStatus.DRAFT: frozenset({PlanStatus.PENDING_APPROVAL}),
    PlanStatus.PENDING_APPROVAL: frozenset({PlanStatus.APPROVED, PlanStatus.REJECTED, PlanStatus.DRAFT}),
    PlanStatus.APPROVED: frozenset({PlanStatus.IN_PROGRESS}),
    PlanStatus.IN_PROGRESS: frozenset({PlanStatus.COMPLETED}),
    PlanStatus.COMPLETED: frozenset(),
    PlanStatus.REJECTED: frozenset(),
}

TASK_TRANSITIONS: dict[TaskStatus, frozenset[TaskStatus]] = {
    TaskStatus.PENDING: frozenset({TaskStatus.IN_PROGRESS, TaskStatus.SKIPPED, TaskStatus.BLOCKED}),
    TaskStatus.IN_PROGRESS: frozenset(
        {TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.SKIPPED, TaskStatus.BLOCKED}
    ),
    TaskStatus.BLOCKED: frozenset({TaskStatus.IN_PROGRESS, TaskStatus.SKIPPED}),
    TaskStatus.COMPLETED: frozenset(),
    TaskStatus.SKIPPED: frozenset(),
    TaskStatus.FAILED: frozenset(),
}

# A dependency in one of these states no longer holds its dependents back
SATISFIED_STATES = frozenset({TaskStatus.COMPLETED, TaskStatus.SKIPPED})
TERMINAL_TASK_STATES = frozenset({TaskStatus.COMPLETED, TaskStatus.SKIPPED, TaskStatus.FAILED})


@dataclass
class Task:
    id: str
    title: str
    description: str = ""
    type: TaskType = TaskType.OTHER
    dependencies: set[str] = field(default_factory=set)
    complexity: int = 1
    status: TaskStatus = TaskStatus.PENDING
    notes: str = ""

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_TASK_STATES

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "type": self.type.value,
            "dependencies": sorted(self.dependencies),
            "complexity": self.complexity,
            "status": self.status.value,
            "notes": self.notes,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Task":
        return cls(
            id=data["id"],
            title=data["title"],
            description=data.get("description", ""),
            type=TaskType(data.get("type", TaskType.OTHER)),
            dependencies=set(data.get("dependencies", [])),
            complexity=data.get("complexity", 1),
            status=TaskStatus(data.get("status", TaskStatus.PENDING)),
            notes=data.get("notes", ""),
        )


@dataclass(frozen=True)
class PlanProgress:
    total: int
    completed: int
    skipped: int
    failed: int
    in_progress: int
    blocked: int
    pending: int

    @property
    def done(self) -> int:
        return self.completed + self.skipped + self.failed

    @property
    def percent(self) -> int:
        if not self.total:
            return 100
        return round(100 * self.done / self.total)

    def to_dict(self) -> dict:
        return {
            "total": self.total,
            "completed": self.completed,
            "skipped": self.skipped,
            "failed": self.failed,
            "in_progress": self.in_progress,
            "blocked": self.blocked,
            "pending": self.pending,
            "percent": self.percent,
        }


@dataclass
class Plan:
    session_id: str
    title: str
    description: str = ""
    tasks: list[Task] = field(default_factory=list)
    status: PlanStatus = PlanStatus.DRAFT
    feedback: str | None = None
    id: str = field(default_factory=lambda: new_id("plan_"))
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)

    def get_task(self, task_id: str) -> Task | None:
        return next((t for t in self.tasks if t.id == task_id), None)

    @property
    def task_ids(self) -> list[str]:
        return [t.id for t in self.tasks]

    def progress(self) -> PlanProgress:
        counts = {status: 0 for status in TaskStatus}
        for task in self.tasks:
            counts[task.status] += 1
        return PlanProgress(
            total=len(self.tasks),
            completed=counts[TaskStatus.COMPLETED],
            skipped=counts[TaskStatus.SKIPPED],
            failed=counts[TaskStatus.FAILED],
            in_progress=counts[TaskStatus.IN_PROGRESS],
            blocked=counts[TaskStatus.BLOCKED],
            pending=counts[TaskStatus.PENDING],
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "session_id": self.session_id,
            "title": self.title,
            "description": self.description,
            "tasks": [t.to_dict() for t in self.tasks],
            "status": self.status.value,
            "feedback": self.feedback,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Plan":
        return cls(
            id=data["id"],
            session_id=data["session_id"],
            title=data["title"],
            description=data.get("description", ""),
            tasks=[Task.from_dict(t) for t in data.get("tasks", [])],
            status=PlanStatus(data["status"]),
            feedback=data.get("feedback"),
            created_at=datetime.fromisoformat(data["created_at"]),
            updated_at=datetime.fromisoformat(data["updated_at"]),
        )


# --- Change notifications ---


@dataclass(frozen=True)
class PlanStatusChanged:
    plan: Plan
    previous: PlanStatus | None
    status: PlanStatus


@dataclass(frozen=True)
class TaskStatusChanged:
    plan: Plan
    task: Task
    previous: TaskStatus
    status: TaskStatus


@dataclass(frozen=True)
class PlanEdited:
    plan: Plan


type PlanEvent = PlanStatusChanged | TaskStatusChanged | PlanEdited
