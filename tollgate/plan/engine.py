import asyncio
from collections import defaultdict
from collections.abc import Awaitable, Callable, Iterable
from contextlib import asynccontextmanager

from tollgate.constants import TASK_MAX_COMPLEXITY, TASK_MIN_COMPLEXITY
from tollgate.errors import BlockedByDependency, InvalidTransition, PlanIntegrityError, PlanNotFound
from tollgate.logging import get_logger
from tollgate.plan.models import (
    PLAN_TRANSITIONS,
    SATISFIED_STATES,
    TASK_TRANSITIONS,
    Plan,
    PlanEdited,
    PlanEvent,
    PlanProgress,
    PlanStatus,
    PlanStatusChanged,
    Task,
    TaskStatus,
    TaskStatusChanged,
    TaskType,
)
from tollgate.utils import utc_now

_logger = get_logger(__name__)

type PlanListener = Callable[[PlanEvent], Awaitable[None]]

_EDITABLE_FIELDS = frozenset({"title", "description", "type", "dependencies", "complexity"})


# --- Graph checks ---


def find_dangling(tasks: Iterable[Task]) -> dict[str, list[str]]:
    tasks = list(tasks)
    known = {t.id for t in tasks}
    dangling = {}
    for task in tasks:
        missing = sorted(d for d in task.dependencies if d not in known)
        if missing:
            dangling[task.id] = missing
    return dangling


def find_cycle(tasks: Iterable[Task]) -> list[str]:
    """Return one dependency cycle as a closed path (first id repeated at the end), or []."""
    graph = {t.id: sorted(t.dependencies) for t in tasks}
    visiting: set[str] = set()
    done: set[str] = set()
    path: list[str] = []

    def visit(node: str) -> list[str]:
        visiting.add(node)
        path.append(node)
        for dep in graph.get(node, ()):
            if dep not in graph or dep in done:
                continue
            if dep in visiting:
                return path[path.index(dep) :] + [dep]
            if cycle := visit(dep):
                return cycle
        visiting.discard(node)
        done.add(node)
        path.pop()
        return []

    for node in graph:
        if node not in done and (cycle := visit(node)):
            return cycle
    return []


def topological_order(tasks: list[Task]) -> list[Task]:
    """Dependencies before dependents; ties keep insertion order."""
    dangling = find_dangling(tasks)
    cycle = find_cycle(tasks)
    if dangling or cycle:
        raise PlanIntegrityError(dangling=dangling, cycle=cycle)

    position = {t.id: i for i, t in enumerate(tasks)}
    remaining = {t.id: set(t.dependencies) for t in tasks}
    by_id = {t.id: t for t in tasks}
    ordered: list[Task] = []
    while remaining:
        ready = sorted((tid for tid, deps in remaining.items() if not deps), key=position.__getitem__)
        for tid in ready:
            ordered.append(by_id[tid])
            del remaining[tid]
        for deps in remaining.values():
            deps.difference_update(ready)
    return ordered


# --- Engine ---


class PlanEngine:
    """Plan and task state machines for one session.

    Every mutation runs under the plan's lock, so transitions on the same plan
    are serialized even when requested from concurrent tool calls.
    """

    def __init__(self, session_id: str, plans: Iterable[Plan] = ()):
        self.session_id = session_id
        self._plans: dict[str, Plan] = {p.id: p for p in plans}
        self._locks: defaultdict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._listeners: list[PlanListener] = []

    def subscribe(self, listener: PlanListener) -> None:
        self._listeners.append(listener)

    async def _emit(self, event: PlanEvent) -> None:
        for listener in self._listeners:
            try:
                await listener(event)
            except Exception:
                _logger.exception("Plan listener failed")

    # --- Lookup ---

    @property
    def plans(self) -> list[Plan]:
        return list(self._plans.values())

    @property
    def current(self) -> Plan | None:
        """The plan the session is working on: in progress first, else the latest open one."""
        for plan in self._plans.values():
            if plan.status == PlanStatus.IN_PROGRESS:
                return plan
        open_plans = [p for p in self._plans.values() if p.status not in (PlanStatus.COMPLETED, PlanStatus.REJECTED)]
        if open_plans:
            return max(open_plans, key=lambda p: p.updated_at)
        return None

    def get(self, plan_id: str) -> Plan:
        plan = self._plans.get(plan_id)
        if plan is None:
            raise PlanNotFound(f"Plan not found: {plan_id}")
        return plan

    def _task(self, plan: Plan, task_id: str) -> Task:
        task = plan.get_task(task_id)
        if task is None:
            raise PlanNotFound(f"Task {task_id} not found in plan {plan.id}")
        return task

    @asynccontextmanager
    async def _locked(self, plan_id: str):
        plan = self.get(plan_id)
        async with self._locks[plan_id]:
            yield plan
            plan.updated_at = utc_now()

    # --- Plan transitions ---

    async def _transition(self, plan: Plan, target: PlanStatus, feedback: str | None = None) -> None:
        if target not in PLAN_TRANSITIONS[plan.status]:
            raise InvalidTransition(f"Plan {plan.id}", plan.status, target)
        previous = plan.status
        plan.status = target
        plan.feedback = feedback
        plan.updated_at = utc_now()
        _logger.info("Plan %s: %s -> %s", plan.id, previous, target)
        await self._emit(PlanStatusChanged(plan=plan, previous=previous, status=target))

    async def create_plan(self, title: str, description: str = "") -> Plan:
        plan = Plan(session_id=self.session_id, title=title, description=description)
        self._plans[plan.id] = plan
        await self._emit(PlanStatusChanged(plan=plan, previous=None, status=plan.status))
        return plan

    async def finalize(self, plan_id: str) -> Plan:
        async with self._locked(plan_id) as plan:
            if plan.status != PlanStatus.DRAFT:
                raise InvalidTransition(f"Plan {plan.id}", plan.status, PlanStatus.PENDING_APPROVAL)
            topological_order(plan.tasks)
            await self._transition(plan, PlanStatus.PENDING_APPROVAL)
        return plan

    async def approve(self, plan_id: str) -> Plan:
        async with self._locked(plan_id) as plan:
            await self._transition(plan, PlanStatus.APPROVED)
        return plan

    async def reject(self, plan_id: str, feedback: str | None = None) -> Plan:
        async with self._locked(plan_id) as plan:
            await self._transition(plan, PlanStatus.REJECTED, feedback)
        return plan

    async def request_changes(self, plan_id: str, feedback: str) -> Plan:
        async with self._locked(plan_id) as plan:
            if plan.status != PlanStatus.PENDING_APPROVAL:
                raise InvalidTransition(f"Plan {plan.id}", plan.status, PlanStatus.DRAFT)
            await self._transition(plan, PlanStatus.DRAFT, feedback)
        return plan

    async def start(self, plan_id: str) -> Plan:
        async with self._locked(plan_id) as plan:
            running = next(
                (p for p in self._plans.values() if p.status == PlanStatus.IN_PROGRESS and p.id != plan.id),
                None,
            )
            if running is not None:
                raise InvalidTransition(
                    f"Plan {plan.id} (plan {running.id} is already in progress)",
                    plan.status,
                    PlanStatus.IN_PROGRESS,
                )
            await self._transition(plan, PlanStatus.IN_PROGRESS)
            await self._complete_if_done(plan)
        return plan

    async def _complete_if_done(self, plan: Plan) -> None:
        if plan.status == PlanStatus.IN_PROGRESS and all(t.is_terminal for t in plan.tasks):
            await self._transition(plan, PlanStatus.COMPLETED)

    # --- Draft editing ---

    def _require_draft(self, plan: Plan, action: str) -> None:
        if plan.status != PlanStatus.DRAFT:
            raise InvalidTransition(f"Plan {plan.id}", plan.status, action)

    def _check_complexity(self, complexity: int) -> None:
        if not TASK_MIN_COMPLEXITY <= complexity <= TASK_MAX_COMPLEXITY:
            raise ValueError(f"complexity must be between {TASK_MIN_COMPLEXITY} and {TASK_MAX_COMPLEXITY}")

    def _next_task_id(self, plan: Plan) -> str:
        n = len(plan.tasks) + 1
        while plan.get_task(f"t{n}") is not None:
            n += 1
        return f"t{n}"

    async def add_task(
        self,
        plan_id: str,
        title: str,
        description: str = "",
        task_type: TaskType = TaskType.OTHER,
        dependencies: Iterable[str] = (),
        complexity: int = 1,
        task_id: str | None = None,
    ) -> Task:
        async with self._locked(plan_id) as plan:
            self._require_draft(plan, "add task")
            self._check_complexity(complexity)
            if task_id is not None and plan.get_task(task_id) is not None:
                raise ValueError(f"Task id already exists: {task_id}")
            task = Task(
                id=task_id or self._next_task_id(plan),
                title=title,
                description=description,
                type=TaskType(task_type),
                dependencies=set(dependencies),
                complexity=complexity,
            )
            plan.tasks.append(task)
        await self._emit(PlanEdited(plan=plan))
        return task

    async def update_task(self, plan_id: str, task_id: str, **changes) -> Task:
        unknown = set(changes) - _EDITABLE_FIELDS
        if unknown:
            raise ValueError(f"Cannot update task fields: {', '.join(sorted(unknown))}")
        async with self._locked(plan_id) as plan:
            self._require_draft(plan, "update task")
            task = self._task(plan, task_id)
            if "complexity" in changes:
                self._check_complexity(changes["complexity"])
            if "type" in changes:
                changes["type"] = TaskType(changes["type"])
            if "dependencies" in changes:
                changes["dependencies"] = set(changes["dependencies"])
            for name, value in changes.items():
                setattr(task, name, value)
        await self._emit(PlanEdited(plan=plan))
        return task

    async def remove_task(self, plan_id: str, task_id: str) -> Task:
        async with self._locked(plan_id) as plan:
            self._require_draft(plan, "remove task")
            task = self._task(plan, task_id)
            plan.tasks.remove(task)
        await self._emit(PlanEdited(plan=plan))
        return task

    # --- Task transitions ---

    async def _move_task(self, plan_id: str, task_id: str, target: TaskStatus, notes: str | None = None) -> Task:
        async with self._locked(plan_id) as plan:
            if plan.status != PlanStatus.IN_PROGRESS:
                raise InvalidTransition(f"Plan {plan.id}", plan.status, f"task {target}")
            task = self._task(plan, task_id)
            if target not in TASK_TRANSITIONS[task.status]:
                raise InvalidTransition(f"Task {task.id}", task.status, target)
            if target == TaskStatus.IN_PROGRESS:
                unmet = self._unmet_dependencies(plan, task)
                if unmet:
                    raise BlockedByDependency(task.id, unmet)

            previous = task.status
            task.status = target
            if notes:
                task.notes = notes
            _logger.info("Task %s/%s: %s -> %s", plan.id, task.id, previous, target)
            await self._emit(TaskStatusChanged(plan=plan, task=task, previous=previous, status=target))
            await self._complete_if_done(plan)
        return task

    def _unmet_dependencies(self, plan: Plan, task: Task) -> list[str]:
        unmet = []
        for dep_id in sorted(task.dependencies):
            dep = plan.get_task(dep_id)
            if dep is None or dep.status not in SATISFIED_STATES:
                unmet.append(dep_id)
        return unmet

    async def start_task(self, plan_id: str, task_id: str) -> Task:
        return await self._move_task(plan_id, task_id, TaskStatus.IN_PROGRESS)

    async def complete_task(self, plan_id: str, task_id: str, notes: str | None = None) -> Task:
        return await self._move_task(plan_id, task_id, TaskStatus.COMPLETED, notes)

    async def skip_task(self, plan_id: str, task_id: str, notes: str | None = None) -> Task:
        return await self._move_task(plan_id, task_id, TaskStatus.SKIPPED, notes)

    async def fail_task(self, plan_id: str, task_id: str, notes: str | None = None) -> Task:
        return await self._move_task(plan_id, task_id, TaskStatus.FAILED, notes)

    async def block_task(self, plan_id: str, task_id: str, notes: str | None = None) -> Task:
        return await self._move_task(plan_id, task_id, TaskStatus.BLOCKED, notes)

    # --- Queries ---

    def ready_tasks(self, plan_id: str) -> list[Task]:
        plan = self.get(plan_id)
        return [
            t
            for t in topological_order(plan.tasks)
            if t.status == TaskStatus.PENDING and not self._unmet_dependencies(plan, t)
        ]

    def progress(self, plan_id: str) -> PlanProgress:
        return self.get(plan_id).progress()
