"""
Page-level view models.

Each view owns its Row Stores and live channels, runs user actions through
the Mutation Gateway and reports every outcome as a toast. Actions catch
TaskBoardError, toast it and return None; lifecycle calls (open_*) toast and
re-raise so the caller can navigate away.
"""

import logging
from datetime import date
from typing import Any, Awaitable, Callable, Dict, List, Optional

from .auth import AuthorizationContext
from .backend import Backend
from .board import BoardProjection, BoardViewState, project_board
from .config import Settings
from .drag import DragController
from .errors import BackendError, NotFoundError, TaskBoardError
from .gateway import FormData, MutationGateway
from .mentions import extract_mentioned_user_ids
from .models import Activity, Comment, Profile, Project, Task, TaskStatus, UserRole, parse_input
from .realtime import ChangeSubscriptionAdapter
from .row_store import RowStore
from .stats import MemberStats, ProjectStats, member_stats, project_stats, tasks_due_on, upcoming_deadlines
from .storage import AttachmentFile, BlobStorage
from .toasts import ToastSink

logger = logging.getLogger(__name__)


class _View:
    """Shared wiring: backend, acting user, toast sink and gateway."""

    def __init__(self, backend: Backend, auth: AuthorizationContext,
                 toasts: Optional[ToastSink] = None,
                 storage: Optional[BlobStorage] = None,
                 settings: Optional[Settings] = None):
        self.backend = backend
        self.auth = auth
        self.toasts = toasts or ToastSink()
        self.gateway = MutationGateway(backend, auth, storage, settings)

    async def _attempt(self, action: Callable[[], Awaitable[Any]], fallback: str) -> Any:
        try:
            return await action()
        except TaskBoardError as e:
            self.toasts.report(e, fallback)
            return None


class ProjectView(_View):
    """
    Kanban board of one project.

    Every open gets a fresh Row Store, so re-fetches still in flight for a
    previous project can never land in the current board.
    """

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.project: Optional[Project] = None
        self.profiles: List[Profile] = []
        self.view_state = BoardViewState()
        self.store: RowStore[Task] = RowStore()
        self.adapter: Optional[ChangeSubscriptionAdapter] = None
        self.drag = DragController(self.store, self.gateway, self.auth, self.toasts)

    @property
    def board(self) -> BoardProjection:
        return project_board(self.store.snapshot(), self.view_state)

    @property
    def stats(self) -> ProjectStats:
        return project_stats(self.store.snapshot())

    def update_view_state(self, **changes) -> BoardViewState:
        """
        Raises:
            ValidationError: If a filter value is not allowed
        """
        self.view_state = parse_input(BoardViewState, {**self.view_state.model_dump(), **changes})
        return self.view_state

    async def open_project_view(self, project_id: str) -> Project:
        """
        Load the project and start its live task channel.

        Raises:
            NotFoundError: The project does not exist (redirects to "/")
            BackendError: The project or its tasks could not be loaded
        """
        self.close_project_view()
        try:
            project = await self.backend.fetch_project(project_id)
            if project is None:
                raise NotFoundError(f"Project {project_id} not found", redirect_to="/")
            profiles = await self.backend.list_profiles()
        except TaskBoardError as e:
            self.toasts.report(e, "Could not load the project")
            raise

        self.project = project
        self.profiles = profiles
        self.store = RowStore()
        self.drag = DragController(self.store, self.gateway, self.auth, self.toasts)
        self.adapter = ChangeSubscriptionAdapter(
            self.backend, self.store, "tasks", "project_id", project_id,
            fetch_all=lambda: self.backend.fetch_tasks(project_id),
            fetch_one=self.backend.fetch_task,
        )
        self.gateway.bind_store(self.store, project_id)
        try:
            await self.adapter.open()
        except BackendError as e:
            self.toasts.report(e, "Could not load the tasks")
            self.close_project_view()
            raise
        logger.info(f"Opened board for project {project_id}")
        return project

    def close_project_view(self) -> None:
        if self.adapter is not None:
            self.adapter.close()
            self.adapter = None
        self.gateway.bind_store(None)
        self.drag.cancel()
        self.project = None

    def _open_project(self) -> Project:
        if self.project is None:
            raise NotFoundError("No project is open", redirect_to="/")
        return self.project

    async def create_task(self, data: FormData) -> Optional[Task]:
        task = await self._attempt(lambda: self.gateway.create_task(self._open_project().id, data),
                                   "Could not create the task")
        if task is not None:
            self.update_view_state(create_task_dialog_open=False)
            self.toasts.success("Task created", f'Task "{task.title}" was created.')
        return task

    async def edit_project(self, data: FormData) -> Optional[Project]:
        project = await self._attempt(lambda: self.gateway.update_project(self._open_project().id, data),
                                      "Could not update the project")
        if project is not None:
            self.project = project
            self.update_view_state(edit_project_dialog_open=False)
            self.toasts.success("Project updated", "The project was updated.")
        return project

    async def delete_project(self) -> Optional[str]:
        """Returns the path to navigate to, or None on failure."""
        redirect = await self._attempt(lambda: self.gateway.delete_project(self._open_project().id),
                                       "Could not delete the project")
        if redirect is not None:
            self.toasts.success("Project deleted", "The project was deleted.")
            self.close_project_view()
        return redirect


class TaskDetailView(_View):
    """Single task with its activity trail, subtasks and live comment thread."""

    ACTIVITY_LIMIT = 10

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.task: Optional[Task] = None
        self.activities: List[Activity] = []
        self.subtasks: List[Task] = []
        self.profiles: List[Profile] = []
        self.comments: RowStore[Comment] = RowStore(newest_first=False)
        self.comment_feed: Optional[ChangeSubscriptionAdapter] = None

    @property
    def can_edit(self) -> bool:
        return self.task is not None and self.auth.can_edit_task(self.task)

    async def open_task_view(self, task_id: str) -> Task:
        """
        Raises:
            NotFoundError: The task does not exist (redirects to "/")
            BackendError: The task could not be loaded
        """
        self.close_task_view()
        try:
            task = await self.backend.fetch_task(task_id)
            if task is None:
                raise NotFoundError(f"Task {task_id} not found", redirect_to="/")
            self.task = task
            self.activities = await self.backend.fetch_activities(task_id, self.ACTIVITY_LIMIT)
            self.subtasks = await self.backend.fetch_subtasks(task_id)
            self.profiles = await self.backend.list_profiles()

            self.comments = RowStore(newest_first=False)
            self.comment_feed = ChangeSubscriptionAdapter(
                self.backend, self.comments, "comments", "task_id", task_id,
                fetch_all=lambda: self.backend.fetch_comments(task_id),
                fetch_one=self.backend.fetch_comment,
                on_insert=self._on_new_comment,
            )
            await self.comment_feed.open()
        except TaskBoardError as e:
            self.toasts.report(e, "Could not load the task")
            self.close_task_view()
            raise
        return task

    def close_task_view(self) -> None:
        if self.comment_feed is not None:
            self.comment_feed.close()
            self.comment_feed = None
        self.task = None

    def _open_task(self) -> Task:
        if self.task is None:
            raise NotFoundError("No task is open", redirect_to="/")
        return self.task

    def _on_new_comment(self, comment: Comment) -> None:
        author = comment.author_name or "Someone"
        self.toasts.success("New comment", f"{author} added a comment")

    async def _refresh(self, task: Task) -> Task:
        self.task = task
        try:
            self.activities = await self.backend.fetch_activities(task.id, self.ACTIVITY_LIMIT)
        except BackendError as e:
            logger.warning(f"Could not refresh activity for task {task.id}: {e}")
        return task

    async def change_status(self, status: TaskStatus) -> Optional[Task]:
        task = await self._attempt(lambda: self.gateway.update_status(self._open_task(), status),
                                   "Could not update the status")
        if task is not None:
            self.toasts.success("Status updated", "The task status was changed.")
            await self._refresh(task)
        return task

    async def reassign(self, assignee_id: Optional[str]) -> Optional[Task]:
        task = await self._attempt(lambda: self.gateway.reassign(self._open_task(), assignee_id),
                                   "Could not change the assignee")
        if task is not None:
            self.toasts.success("Assignee updated", "The task was reassigned.")
            await self._refresh(task)
        return task

    async def edit(self, data: FormData) -> Optional[Task]:
        task = await self._attempt(lambda: self.gateway.edit_task(self._open_task(), data),
                                   "Could not update the task")
        if task is not None:
            self.toasts.success("Task updated", "The task was updated.")
            await self._refresh(task)
        return task

    async def update_estimated_hours(self, hours) -> Optional[Task]:
        task = await self._attempt(lambda: self.gateway.update_estimated_hours(self._open_task(), hours),
                                   "Could not update the estimated hours")
        if task is not None:
            self.toasts.success("Estimated hours updated")
            await self._refresh(task)
        return task

    async def add_comment(self, content: str,
                          attachment: Optional[AttachmentFile] = None) -> Optional[Comment]:
        """
        Post a comment. The thread shows it once the change notification
        arrives; mentioned profile ids are logged.
        """
        comment = await self._attempt(
            lambda: self.gateway.add_comment(self._open_task().id, {"content": content}, attachment),
            "Could not add the comment",
        )
        if comment is not None:
            mentioned = extract_mentioned_user_ids(comment.content)
            if mentioned:
                logger.info(f"Comment {comment.id} mentions {mentioned}")
        return comment

    async def create_subtask(self, data: FormData) -> Optional[Task]:
        subtask = await self._attempt(lambda: self.gateway.create_subtask(self._open_task(), data),
                                      "Could not create the subtask")
        if subtask is not None:
            self.subtasks.insert(0, subtask)
            self.toasts.success("Subtask created", f'Subtask "{subtask.title}" was created.')
        return subtask

    async def delete(self) -> Optional[str]:
        """Returns ``/projects/<project_id>`` on success."""
        redirect = await self._attempt(lambda: self.gateway.delete_task(self._open_task()),
                                       "Could not delete the task")
        if redirect is not None:
            self.toasts.success("Task deleted", "The task was deleted.")
            self.close_task_view()
        return redirect


class DashboardView(_View):
    """Landing page: projects, the actor's tasks and their deadlines."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.projects: List[Project] = []
        self.my_tasks: List[Task] = []

    async def load(self) -> None:
        try:
            self.projects = await self.backend.list_projects()
            if self.auth.user_id is not None:
                self.my_tasks = await self.backend.fetch_assigned_tasks(self.auth.user_id)
            else:
                self.my_tasks = []
        except BackendError as e:
            self.toasts.report(e, "Could not load the dashboard")
            raise

    @property
    def member_stats(self) -> MemberStats:
        return member_stats(self.my_tasks)

    @property
    def upcoming_deadlines(self) -> List[Task]:
        return upcoming_deadlines(self.my_tasks)

    async def create_project(self, data: FormData) -> Optional[Project]:
        project = await self._attempt(lambda: self.gateway.create_project(data),
                                      "Could not create the project")
        if project is not None:
            self.projects.insert(0, project)
            self.toasts.success("Project created", f'Project "{project.name}" was created.')
        return project


class CalendarView(_View):
    """All dated tasks grouped by their due calendar date."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.tasks: List[Task] = []

    async def load(self) -> None:
        try:
            self.tasks = await self.backend.fetch_tasks_with_due_date()
        except BackendError as e:
            self.toasts.report(e, "Could not load the calendar")
            raise

    def tasks_on(self, day: date) -> List[Task]:
        return tasks_due_on(self.tasks, day)

    def days_with_tasks(self) -> Dict[date, int]:
        counts: Dict[date, int] = {}
        for task in self.tasks:
            counts[task.due_day] = counts.get(task.due_day, 0) + 1
        return counts


class AdminUsersView(_View):
    """Role administration, available to project managers only."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.profiles: List[Profile] = []

    async def load(self) -> None:
        """
        Raises:
            AuthorizationError: If the actor is not a project manager
        """
        try:
            self.auth.require(self.auth.is_project_manager,
                              "Only project managers can manage users")
            self.profiles = await self.backend.list_profiles()
        except TaskBoardError as e:
            self.toasts.report(e, "Could not load users")
            raise

    async def change_role(self, user_id: str, role: UserRole) -> Optional[UserRole]:
        new_role = await self._attempt(lambda: self.gateway.set_role(user_id, role),
                                       "Could not change the role")
        if new_role is not None:
            self.profiles = [
                p.model_copy(update={"role": new_role}) if p.id == user_id else p
                for p in self.profiles
            ]
            self.toasts.success("Role updated", "The user's role was changed.")
        return new_role
