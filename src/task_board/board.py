"""
Board Projection: pure derivation of the kanban columns.

The view-state (filters and dialog flags) is an explicit serializable model
passed in; nothing here reads shared mutable state. Recompute whenever the
Row Store contents or the view-state change.
"""

from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, field_validator

from .models import BOARD_COLUMNS, Task, TaskStatus

ALL = "all"
UNASSIGNED = "unassigned"


class BoardViewState(BaseModel):
    """
    Filter inputs and dialog flags of a project board view.

    ``status_filter`` is ``all`` or a task status; ``assignee_filter`` is
    ``all``, ``unassigned`` or a profile id.
    """

    model_config = ConfigDict(frozen=True)

    search_query: str = ""
    status_filter: str = ALL
    assignee_filter: str = ALL
    create_task_dialog_open: bool = False
    edit_project_dialog_open: bool = False

    @field_validator("status_filter")
    @classmethod
    def validate_status_filter(cls, v):
        if v != ALL and v not in {status.value for status in TaskStatus}:
            raise ValueError(f"Unknown status filter '{v}'")
        return v


def matches_search(task: Task, query: str) -> bool:
    """Case-insensitive substring match on title or description."""
    needle = query.lower()
    if needle in task.title.lower():
        return True
    return task.description is not None and needle in task.description.lower()


def matches_assignee(task: Task, assignee_filter: str) -> bool:
    if assignee_filter == ALL:
        return True
    if assignee_filter == UNASSIGNED:
        return task.assigned_to is None
    return task.assigned_to == assignee_filter


def filter_tasks(tasks: Iterable[Task], view: BoardViewState) -> List[Task]:
    """Apply search, status and assignee filters, preserving order."""
    result = []
    for task in tasks:
        if view.search_query and not matches_search(task, view.search_query):
            continue
        if view.status_filter != ALL and task.status.value != view.status_filter:
            continue
        if not matches_assignee(task, view.assignee_filter):
            continue
        result.append(task)
    return result


@dataclass(frozen=True)
class BoardProjection:
    """Filtered tasks partitioned into the three board columns."""

    todo: Tuple[Task, ...] = ()
    in_progress: Tuple[Task, ...] = ()
    completed: Tuple[Task, ...] = ()

    def column(self, status: TaskStatus) -> Tuple[Task, ...]:
        return getattr(self, TaskStatus(status).value)

    def columns(self) -> Dict[TaskStatus, Tuple[Task, ...]]:
        return {status: self.column(status) for status in BOARD_COLUMNS}

    def all_tasks(self) -> Tuple[Task, ...]:
        return self.todo + self.in_progress + self.completed

    def find(self, task_id: str) -> Optional[Task]:
        for task in self.all_tasks():
            if task.id == task_id:
                return task
        return None

    def __len__(self) -> int:
        return len(self.todo) + len(self.in_progress) + len(self.completed)


def project_board(tasks: Iterable[Task], view: Optional[BoardViewState] = None) -> BoardProjection:
    """
    Derive the board columns from the Row Store snapshot.

    Args:
        tasks: Records in Row Store order
        view: Active filters (defaults to no filtering)

    Returns:
        BoardProjection with disjoint columns whose union is the filtered set
    """
    view = view or BoardViewState()
    partitions: Dict[TaskStatus, List[Task]] = {status: [] for status in BOARD_COLUMNS}
    for task in filter_tasks(tasks, view):
        partitions[task.status].append(task)
    return BoardProjection(
        todo=tuple(partitions[TaskStatus.TODO]),
        in_progress=tuple(partitions[TaskStatus.IN_PROGRESS]),
        completed=tuple(partitions[TaskStatus.COMPLETED]),
    )
