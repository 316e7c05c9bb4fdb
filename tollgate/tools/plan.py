from typing import Any, Literal

from pydantic import BaseModel, Field

from tollgate.constants import TASK_MAX_COMPLEXITY, TASK_MIN_COMPLEXITY
from tollgate.errors import BlockedByDependency, InvalidTransition, PlanIntegrityError, PlanNotFound
from tollgate.plan.engine import PlanEngine
from tollgate.plan.models import Plan, PlanStatus, TaskStatus, TaskType
from tollgate.tools.core.base import Tool, ToolResult
from tollgate.tools.core.context import ToolExecution
from tollgate.tools.core.enums import Capability

PLAN_DESCRIPTION = """Manage a multi-step execution plan for the current task.

WORKFLOW:
1. create (title, description) starts a draft plan
2. add_task / update_task / remove_task edit the draft (dependencies are task ids)
3. finalize submits the plan for user approval; wait for the user to approve it
4. start begins execution of an approved plan
5. start_task / complete_task / skip_task / fail_task / block_task track progress
6. status shows the plan, ready tasks and progress

A task can only start when all of its dependencies are completed or skipped.
Only the user can approve or reject a plan."""

_STATUS_MARKS = {
    TaskStatus.PENDING: "[ ]",
    TaskStatus.IN_PROGRESS: "[~]",
    TaskStatus.COMPLETED: "[x]",
    TaskStatus.SKIPPED: "[-]",
    TaskStatus.FAILED: "[!]",
    TaskStatus.BLOCKED: "[#]",
}

type PlanAction = Literal[
    "create",
    "add_task",
    "update_task",
    "remove_task",
    "finalize",
    "start",
    "start_task",
    "complete_task",
    "skip_task",
    "fail_task",
    "block_task",
    "status",
]


class PlanInput(BaseModel):
    action: PlanAction = Field(description="Operation to perform")
    plan_id: str | None = Field(default=None, description="Plan id (defaults to the current plan)")
    title: str | None = Field(default=None, description="Plan or task title")
    description: str | None = Field(default=None, description="Plan or task description")
    task_id: str | None = Field(default=None, description="Task id for task operations")
    task_type: TaskType | None = Field(default=None, description="Kind of work the task involves")
    dependencies: list[str] | None = Field(default=None, description="Ids of tasks that must finish first")
    complexity: int | None = Field(
        default=None,
        ge=TASK_MIN_COMPLEXITY,
        le=TASK_MAX_COMPLEXITY,
        description=f"Estimated complexity {TASK_MIN_COMPLEXITY}-{TASK_MAX_COMPLEXITY}",
    )
    notes: str | None = Field(default=None, description="Outcome notes for completed, skipped, failed or blocked tasks")


def format_plan(plan: Plan, engine: PlanEngine | None = None) -> str:
    lines = [f"Plan {plan.id}: {plan.title} [{plan.status}]"]
    if plan.description:
        lines.append(plan.description)
    if plan.feedback:
        lines.append(f"User feedback: {plan.feedback}")
    lines.append("")
    for task in plan.tasks:
        deps = f" (after {', '.join(sorted(task.dependencies))})" if task.dependencies else ""
        lines.append(f"{_STATUS_MARKS[task.status]} {task.id} {task.title} <{task.type}, c{task.complexity}>{deps}")
        if task.notes:
            lines.append(f"      {task.notes}")
    if not plan.tasks:
        lines.append("(no tasks)")

    progress = plan.progress()
    lines.append("")
    lines.append(f"Progress: {progress.done}/{progress.total} ({progress.percent}%)")
    if engine is not None and plan.status == PlanStatus.IN_PROGRESS:
        ready = engine.ready_tasks(plan.id)
        if ready:
            lines.append(f"Ready: {', '.join(t.id for t in ready)}")
    return "\n".join(lines)


class PlanTool(Tool):
    name = "plan"
    display_name = "Plan"
    description = PLAN_DESCRIPTION
    capabilities = frozenset({Capability.PLANNING})
    input_model = PlanInput

    async def execute(self, execution: ToolExecution, action: str, **kwargs: Any) -> ToolResult:
        engine = execution.ctx.plans
        if engine is None:
            return ToolResult(content="Planning is not available in this session.", preview="Unavailable", is_error=True)

        try:
            return await self._dispatch(engine, action, **kwargs)
        except (PlanIntegrityError, BlockedByDependency, InvalidTransition, PlanNotFound, ValueError) as e:
            return ToolResult(content=f"Error: {e}", preview=type(e).__name__, is_error=True)

    def _resolve_plan(self, engine: PlanEngine, plan_id: str | None) -> Plan:
        if plan_id:
            return engine.get(plan_id)
        plan = engine.current
        if plan is None:
            raise PlanNotFound("No active plan. Use action=create first.")
        return plan

    def _require(self, value: Any, name: str, action: str) -> Any:
        if value is None:
            raise ValueError(f"{name} is required for {action}")
        return value

    async def _dispatch(
        self,
        engine: PlanEngine,
        action: str,
        plan_id: str | None = None,
        title: str | None = None,
        description: str | None = None,
        task_id: str | None = None,
        task_type: TaskType | None = None,
        dependencies: list[str] | None = None,
        complexity: int | None = None,
        notes: str | None = None,
        **kwargs: Any,
    ) -> ToolResult:
        if action == "create":
            plan = await engine.create_plan(self._require(title, "title", action), description or "")
            return ToolResult(content=format_plan(plan), preview=f"Created {plan.id}", data={"plan_id": plan.id})

        plan = self._resolve_plan(engine, plan_id)

        match action:
            case "add_task":
                task = await engine.add_task(
                    plan.id,
                    self._require(title, "title", action),
                    description=description or "",
                    task_type=task_type or TaskType.OTHER,
                    dependencies=dependencies or (),
                    complexity=complexity or TASK_MIN_COMPLEXITY,
                    task_id=task_id,
                )
                preview = f"Added {task.id}"
            case "update_task":
                changes = {
                    "title": title,
                    "description": description,
                    "type": task_type,
                    "dependencies": dependencies,
                    "complexity": complexity,
                }
                task = await engine.update_task(
                    plan.id,
                    self._require(task_id, "task_id", action),
                    **{k: v for k, v in changes.items() if v is not None},
                )
                preview = f"Updated {task.id}"
            case "remove_task":
                task = await engine.remove_task(plan.id, self._require(task_id, "task_id", action))
                preview = f"Removed {task.id}"
            case "finalize":
                await engine.finalize(plan.id)
                preview = "Awaiting approval"
            case "start":
                await engine.start(plan.id)
                preview = "Started"
            case "start_task":
                task = await engine.start_task(plan.id, self._require(task_id, "task_id", action))
                preview = f"Started {task.id}"
            case "complete_task":
                task = await engine.complete_task(plan.id, self._require(task_id, "task_id", action), notes)
                preview = f"Completed {task.id}"
            case "skip_task":
                task = await engine.skip_task(plan.id, self._require(task_id, "task_id", action), notes)
                preview = f"Skipped {task.id}"
            case "fail_task":
                task = await engine.fail_task(plan.id, self._require(task_id, "task_id", action), notes)
                preview = f"Failed {task.id}"
            case "block_task":
                task = await engine.block_task(plan.id, self._require(task_id, "task_id", action), notes)
                preview = f"Blocked {task.id}"
            case "status":
                preview = f"{plan.status}"
            case _:
                raise ValueError(f"Unknown action: {action}")

        return ToolResult(content=format_plan(plan, engine), preview=preview, data={"plan_id": plan.id})
