"""
Derived statistics over task lists: project breakdowns, member workload,
deadlines and the calendar.
"""

from datetime import date, datetime, timezone
from typing import Dict, Iterable, List, Optional

from pydantic import BaseModel

from .models import Task, TaskStatus


class ProjectStats(BaseModel):
    by_status: Dict[str, int]
    by_assignee: Dict[str, int]
    total: int


class MemberStats(BaseModel):
    completed: int = 0
    in_progress: int = 0
    todo: int = 0
    overdue: int = 0
    total_estimated_hours: float = 0.0


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _is_overdue(task: Task, now: datetime) -> bool:
    if task.due_date is None or task.is_completed:
        return False
    due = task.due_date
    if due.tzinfo is None:
        due = due.replace(tzinfo=timezone.utc)
    return due < now


def project_stats(tasks: Iterable[Task]) -> ProjectStats:
    """
    Per-status counts, and per-assignee counts over assigned tasks.

    Assignees are keyed by display name, falling back to the profile id.
    """
    by_status = {status.value: 0 for status in TaskStatus}
    by_assignee: Dict[str, int] = {}
    total = 0
    for task in tasks:
        total += 1
        by_status[task.status.value] += 1
        if task.assigned_to is None:
            continue
        name = task.assignee_name or task.assigned_to
        by_assignee[name] = by_assignee.get(name, 0) + 1
    return ProjectStats(by_status=by_status, by_assignee=by_assignee, total=total)


def member_stats(tasks: Iterable[Task], now: Optional[datetime] = None) -> MemberStats:
    """Workload summary of one member's assigned tasks."""
    now = now or _utc_now()
    stats = MemberStats()
    for task in tasks:
        if task.status == TaskStatus.COMPLETED:
            stats.completed += 1
        elif task.status == TaskStatus.IN_PROGRESS:
            stats.in_progress += 1
        else:
            stats.todo += 1
        if _is_overdue(task, now):
            stats.overdue += 1
        stats.total_estimated_hours += task.estimated_hours or 0
    return stats


def upcoming_deadlines(tasks: Iterable[Task], limit: int = 5) -> List[Task]:
    """Non-completed tasks with a due date, soonest first."""
    dated = [t for t in tasks if t.due_date is not None and not t.is_completed]
    dated.sort(key=lambda t: t.due_date)
    return dated[:limit]


def overdue_tasks(tasks: Iterable[Task], now: Optional[datetime] = None) -> List[Task]:
    now = now or _utc_now()
    return [t for t in tasks if _is_overdue(t, now)]


def tasks_due_on(tasks: Iterable[Task], day: date) -> List[Task]:
    """Tasks whose due calendar date is ``day``."""
    return [t for t in tasks if t.due_day == day]
