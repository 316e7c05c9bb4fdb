from tollgate.plan.engine import PlanEngine, find_cycle, find_dangling, topological_order
from tollgate.plan.models import Plan, PlanProgress, PlanStatus, Task, TaskStatus, TaskType

__all__ = [
    "Plan",
    "PlanEngine",
    "PlanProgress",
    "PlanStatus",
    "Task",
    "TaskStatus",
    "TaskType",
    "find_cycle",
    "find_dangling",
    "topological_order",
]
