"""
Drag Interaction Controller.

State machine: Idle -> Dragging(active_task_id, candidate) -> Idle. The
candidate column is tracked with a closest-corners collision strategy while
the pointer moves; on release the controller decides whether the drop
becomes a status change and issues it through the Mutation Gateway.

The board does not move the card optimistically. After a successful drop
the card moves once the confirmed row reaches the Row Store.
"""

import logging
import math
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Mapping, Optional, Tuple

from .auth import AuthorizationContext
from .errors import TaskBoardError, ValidationError
from .gateway import MutationGateway
from .models import BOARD_COLUMNS, Task, TaskStatus
from .row_store import RowStore
from .toasts import ToastSink

logger = logging.getLogger(__name__)

_SENTINEL = object()


@dataclass(frozen=True)
class Rect:
    left: float
    top: float
    width: float
    height: float

    @property
    def right(self) -> float:
        return self.left + self.width

    @property
    def bottom(self) -> float:
        return self.top + self.height

    def corners(self) -> Tuple[Tuple[float, float], ...]:
        return (
            (self.left, self.top),
            (self.right, self.top),
            (self.left, self.bottom),
            (self.right, self.bottom),
        )


def closest_corners(active: Rect, targets: Mapping[str, Rect]) -> Optional[str]:
    """
    Pick the target whose corners are nearest the dragged rect's corners.

    The score of a target is the sum of the distances between matching
    corners; ties go to the first target in iteration order.
    """
    best_id = None
    best_score = math.inf
    for target_id, rect in targets.items():
        score = sum(
            math.dist(a, b) for a, b in zip(active.corners(), rect.corners())
        )
        if score < best_score:
            best_id, best_score = target_id, score
    return best_id


class DragState(str, Enum):
    IDLE = "idle"
    DRAGGING = "dragging"


class DropResult(str, Enum):
    NO_TARGET = "no_target"
    UNCHANGED = "unchanged"
    UNAUTHORIZED = "unauthorized"
    REJECTED = "rejected"
    FAILED = "failed"
    MOVED = "moved"


@dataclass(frozen=True)
class DropOutcome:
    result: DropResult
    task_id: Optional[str] = None
    target: Optional[TaskStatus] = None

    @property
    def issued_request(self) -> bool:
        return self.result in (DropResult.FAILED, DropResult.MOVED)


class DragController:
    """
    Args:
        store: Row Store holding the project's tasks
        gateway: Mutation Gateway used for the status update
        auth: Acting user's authorization context
        toasts: Sink receiving the drop feedback
    """

    def __init__(self, store: RowStore, gateway: MutationGateway,
                 auth: AuthorizationContext, toasts: ToastSink):
        self.store = store
        self.gateway = gateway
        self.auth = auth
        self.toasts = toasts
        self.state = DragState.IDLE
        self.active_task_id: Optional[str] = None
        self.candidate: Optional[str] = None

    @property
    def active_task(self) -> Optional[Task]:
        """Record rendered in the drag overlay."""
        if self.active_task_id is None:
            return None
        return self.store.get(self.active_task_id)

    def start(self, task_id: str) -> None:
        self.state = DragState.DRAGGING
        self.active_task_id = task_id
        self.candidate = None

    def move(self, active_rect: Rect, column_rects: Dict[str, Rect]) -> Optional[str]:
        """Update the candidate column from the pointer geometry."""
        if self.state != DragState.DRAGGING:
            return None
        self.candidate = closest_corners(active_rect, column_rects)
        return self.candidate

    def cancel(self) -> None:
        self._reset()

    def _reset(self) -> None:
        self.state = DragState.IDLE
        self.active_task_id = None
        self.candidate = None

    async def release(self, over=_SENTINEL) -> DropOutcome:
        """
        Finish the drag over ``over`` (defaults to the tracked candidate).

        At most one status update is issued, and only when a project manager
        drops a non-completed task on a different column.
        """
        task_id = self.active_task_id
        target_id = self.candidate if over is _SENTINEL else over
        self._reset()

        if task_id is None or target_id is None:
            return DropOutcome(DropResult.NO_TARGET, task_id)
        try:
            target = TaskStatus(target_id)
        except ValueError:
            logger.debug(f"Ignoring drop of {task_id} on unknown column '{target_id}'")
            return DropOutcome(DropResult.NO_TARGET, task_id)
        if target not in BOARD_COLUMNS:
            return DropOutcome(DropResult.NO_TARGET, task_id)

        task = self.store.get(task_id)
        if task is None:
            return DropOutcome(DropResult.NO_TARGET, task_id, target)

        if task.status == target:
            return DropOutcome(DropResult.UNCHANGED, task_id, target)

        if not self.auth.can_move_tasks:
            self.toasts.error("Permission denied", "Only project managers can move tasks")
            return DropOutcome(DropResult.UNAUTHORIZED, task_id, target)

        if task.is_completed:
            self.toasts.error("Task completed", "Completed tasks cannot be moved")
            return DropOutcome(DropResult.REJECTED, task_id, target)

        try:
            await self.gateway.update_status(task, target)
        except ValidationError as e:
            self.toasts.report(e)
            return DropOutcome(DropResult.REJECTED, task_id, target)
        except TaskBoardError as e:
            self.toasts.report(e, "Failed to update task status")
            return DropOutcome(DropResult.FAILED, task_id, target)

        self.toasts.success("Task moved", f"Task moved to {target.value.replace('_', ' ')}")
        logger.info(f"Task {task_id} dropped on {target.value}")
        return DropOutcome(DropResult.MOVED, task_id, target)
