"""
Authorization context: who is acting and whether they hold the elevated role.

These checks gate client affordances only. Enforcement, if any, belongs to
the backend.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from .errors import AuthorizationError
from .models import TaskRow, UserRole

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AuthorizationContext:
    user_id: Optional[str]
    role: UserRole = UserRole.MEMBER

    @property
    def is_project_manager(self) -> bool:
        return self.role == UserRole.PROJECT_MANAGER

    @property
    def can_move_tasks(self) -> bool:
        return self.is_project_manager

    @property
    def can_manage_projects(self) -> bool:
        return self.is_project_manager

    @property
    def can_reassign(self) -> bool:
        return self.is_project_manager

    @property
    def can_delete_tasks(self) -> bool:
        return self.is_project_manager

    def can_edit_task(self, task: TaskRow) -> bool:
        """Project managers and the assignee may edit a task until it is completed."""
        if task.is_completed:
            return False
        return self.is_project_manager or (
            self.user_id is not None and task.assigned_to == self.user_id
        )

    def require(self, allowed: bool, message: str) -> None:
        """
        Raises:
            AuthorizationError: If ``allowed`` is false
        """
        if not allowed:
            logger.info(f"Denied for user {self.user_id}: {message}")
            raise AuthorizationError(message)


async def resolve_authorization(backend, user_id: Optional[str]) -> AuthorizationContext:
    """Read the acting user's role; no role row means member."""
    if user_id is None:
        return AuthorizationContext(user_id=None)
    role = await backend.fetch_role(user_id)
    return AuthorizationContext(user_id=user_id, role=role or UserRole.MEMBER)
