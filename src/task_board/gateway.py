"""
Mutation Gateway: the outbound create/update/delete path.

Each operation validates its input (ValidationError naming the first
violated rule), checks the actor's role where required (AuthorizationError),
then issues a single backend request. Backend failures surface as
BackendError and are never retried.

The Row Store is never written speculatively. When a store is bound, the
server-confirmed row returned by a successful task mutation is applied to
it. The change notification that follows re-applies the same row, which the
store treats as a no-op.
"""

import logging
from typing import Any, Dict, Optional, Union

from .auth import AuthorizationContext
from .backend import Backend
from .config import Settings
from .errors import AuthorizationError, BackendError, NotFoundError, ValidationError
from .models import (
    Comment, CommentCreate, Project, ProjectEdit, Task, TaskCreate, TaskEdit,
    TaskStatus, UserRole, parse_input,
)
from .row_store import RowStore
from .storage import AttachmentFile, BlobStorage, attachment_path, check_attachment_size

logger = logging.getLogger(__name__)

FormData = Union[Dict[str, Any], Any]


class MutationGateway:
    """
    Args:
        backend: Backend to issue requests against
        auth: Acting user's authorization context
        storage: Blob storage for comment attachments
        settings: Runtime settings (attachment ceiling)
    """

    def __init__(self, backend: Backend, auth: AuthorizationContext,
                 storage: Optional[BlobStorage] = None,
                 settings: Optional[Settings] = None):
        self.backend = backend
        self.auth = auth
        self.storage = storage
        self.settings = settings or Settings()
        self._store: Optional[RowStore] = None
        self._store_project_id: Optional[str] = None

    def bind_store(self, store: Optional[RowStore], project_id: Optional[str] = None) -> None:
        """Reflect confirmed task mutations of ``project_id`` into ``store``."""
        self._store = store
        self._store_project_id = project_id if store is not None else None

    def _reflects(self, task: Task) -> bool:
        return self._store is not None and task.project_id == self._store_project_id

    def _require_user(self, action: str) -> str:
        if self.auth.user_id is None:
            raise AuthorizationError(f"Sign in to {action}")
        return self.auth.user_id

    async def _update(self, task: Task, values: Dict[str, Any]) -> Task:
        updated = await self.backend.update_task(task.id, values, self.auth.user_id)
        if updated is None:
            raise NotFoundError(f"Task {task.id} no longer exists",
                                redirect_to=f"/projects/{task.project_id}")
        if self._reflects(updated):
            self._store.apply_update(updated)
        return updated

    # Tasks

    async def create_task(self, project_id: str, data: FormData) -> Task:
        """Create a task in ``project_id`` from a TaskCreate form."""
        form = parse_input(TaskCreate, data)
        self._require_user("create tasks")
        values = form.model_dump(mode="json", exclude_none=True)
        task = await self.backend.insert_task(project_id, values, self.auth.user_id)
        if self._reflects(task):
            self._store.apply_insert(task)
        logger.info(f"Created task {task.id} in project {project_id}")
        return task

    async def create_subtask(self, parent: Task, data: FormData) -> Task:
        form = parse_input(TaskCreate, data)
        form = form.model_copy(update={"parent_task_id": parent.id})
        return await self.create_task(parent.project_id, form)

    async def update_status(self, task: Task, status: Union[TaskStatus, str]) -> Task:
        """
        Move a task to another status.

        Raises:
            ValidationError: Unknown status, or the task is already completed
        """
        try:
            status = TaskStatus(status)
        except ValueError:
            raise ValidationError(f"Unknown status '{status}'", rule="status")
        if task.is_completed:
            raise ValidationError("Completed tasks cannot change status", rule="status")
        if task.status == status:
            return task
        updated = await self._update(task, {"status": status.value})
        logger.info(f"Task {task.id} status {task.status.value} -> {status.value}")
        return updated

    async def reassign(self, task: Task, assignee_id: Optional[str]) -> Task:
        self.auth.require(self.auth.can_reassign, "Only project managers can reassign tasks")
        return await self._update(task, {"assigned_to": assignee_id or None})

    async def edit_task(self, task: Task, data: FormData) -> Task:
        """Apply a TaskEdit form; only explicitly set fields are written."""
        if task.is_completed:
            raise ValidationError("Completed tasks cannot be edited", rule="status")
        self.auth.require(self.auth.can_edit_task(task),
                          "Only project managers or the assignee can edit this task")
        form = parse_input(TaskEdit, data)
        changes = form.changes()
        if not changes:
            return task
        return await self._update(task, changes)

    async def update_estimated_hours(self, task: Task, hours: Union[None, str, float]) -> Task:
        form = parse_input(TaskEdit, {"estimated_hours": hours})
        return await self._update(task, {"estimated_hours": form.estimated_hours})

    async def delete_task(self, task: Task) -> str:
        """
        Delete a task.

        Returns:
            Path of the view to navigate to afterwards
        """
        self.auth.require(self.auth.can_delete_tasks, "Only project managers can delete tasks")
        if not await self.backend.delete_task(task.id):
            raise NotFoundError(f"Task {task.id} no longer exists",
                                redirect_to=f"/projects/{task.project_id}")
        if self._reflects(task):
            self._store.apply_delete(task.id)
        logger.info(f"Deleted task {task.id}")
        return f"/projects/{task.project_id}"

    # Projects

    async def create_project(self, data: FormData) -> Project:
        self.auth.require(self.auth.can_manage_projects, "Only project managers can create projects")
        form = parse_input(ProjectEdit, data)
        project = await self.backend.insert_project(form.model_dump(mode="json"), self.auth.user_id)
        logger.info(f"Created project {project.id}")
        return project

    async def update_project(self, project_id: str, data: FormData) -> Project:
        self.auth.require(self.auth.can_manage_projects, "Only project managers can edit projects")
        form = parse_input(ProjectEdit, data)
        project = await self.backend.update_project(project_id, form.model_dump(mode="json"))
        if project is None:
            raise NotFoundError(f"Project {project_id} no longer exists")
        return project

    async def delete_project(self, project_id: str) -> str:
        self.auth.require(self.auth.can_manage_projects, "Only project managers can delete projects")
        if not await self.backend.delete_project(project_id):
            raise NotFoundError(f"Project {project_id} no longer exists")
        logger.info(f"Deleted project {project_id}")
        return "/"

    # Comments

    async def add_comment(self, task_id: str, data: FormData,
                          attachment: Optional[AttachmentFile] = None) -> Comment:
        """
        Append a comment, uploading ``attachment`` first when given.

        Raises:
            ValidationError: Blank content or attachment over the size ceiling
            BackendError: Upload or insert failure
        """
        form = parse_input(CommentCreate, data)
        user_id = self._require_user("comment")
        if attachment is not None:
            check_attachment_size(attachment.size, self.settings.attachment_max_mb)
            if self.storage is None:
                raise BackendError("No blob storage configured for attachments")
            url = await self.storage.upload(attachment_path(user_id, attachment), attachment.data)
            form = form.model_copy(update={"attachment_url": url,
                                           "attachment_name": attachment.name})
        return await self.backend.insert_comment(task_id, form.model_dump(mode="json"), user_id)

    # Roles

    async def set_role(self, user_id: str, role: Union[UserRole, str]) -> UserRole:
        self.auth.require(self.auth.is_project_manager, "Only project managers can change roles")
        try:
            role = UserRole(role)
        except ValueError:
            raise ValidationError(f"Unknown role '{role}'", rule="role")
        if not await self.backend.set_role(user_id, role):
            raise NotFoundError(f"User {user_id} not found", redirect_to="/admin/users")
        logger.info(f"User {user_id} is now {role.value}")
        return role
