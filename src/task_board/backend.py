"""
Backend query/command interface.

The client core (row store, subscription adapter, mutation gateway) only
talks to a Backend. LocalBackend runs in-process over TaskDatabase and a
ChangeFeed; RemoteBackend (client.py) talks to the HTTP service.
"""

import logging
import sqlite3
from abc import ABC, abstractmethod
from contextlib import contextmanager
from typing import Any, Dict, List, Optional

from .changes import ChangeCallback, ChangeFeed, ChangeKind, Subscription
from .database import TaskDatabase
from .errors import BackendError
from .models import Activity, Comment, Profile, Project, Task, UserRole

logger = logging.getLogger(__name__)


class Backend(ABC):
    """
    Abstract backend collaborator.

    Every method raises BackendError on network/query failure. Single-row
    reads return None when the row does not exist. Task writes return the
    joined Task view as confirmed by the backend.
    """

    # Projects

    @abstractmethod
    async def list_projects(self) -> List[Project]:
        """All projects, newest first."""

    @abstractmethod
    async def fetch_project(self, project_id: str) -> Optional[Project]:
        pass

    @abstractmethod
    async def insert_project(self, values: Dict[str, Any], owner_id: Optional[str]) -> Project:
        pass

    @abstractmethod
    async def update_project(self, project_id: str, values: Dict[str, Any]) -> Optional[Project]:
        pass

    @abstractmethod
    async def delete_project(self, project_id: str) -> bool:
        """Delete a project; its tasks cascade."""

    # Tasks

    @abstractmethod
    async def fetch_tasks(self, project_id: str) -> List[Task]:
        """Tasks of a project, newest first."""

    @abstractmethod
    async def fetch_task(self, task_id: str) -> Optional[Task]:
        pass

    @abstractmethod
    async def fetch_subtasks(self, parent_task_id: str) -> List[Task]:
        pass

    @abstractmethod
    async def fetch_assigned_tasks(self, user_id: str) -> List[Task]:
        """Tasks assigned to a user, soonest due first."""

    @abstractmethod
    async def fetch_tasks_with_due_date(self) -> List[Task]:
        pass

    @abstractmethod
    async def insert_task(self, project_id: str, values: Dict[str, Any],
                          actor_id: Optional[str]) -> Task:
        pass

    @abstractmethod
    async def update_task(self, task_id: str, values: Dict[str, Any],
                          actor_id: Optional[str]) -> Optional[Task]:
        pass

    @abstractmethod
    async def delete_task(self, task_id: str) -> bool:
        pass

    # Comments and activity

    @abstractmethod
    async def fetch_comments(self, task_id: str) -> List[Comment]:
        """Comments of a task, oldest first."""

    @abstractmethod
    async def fetch_comment(self, comment_id: str) -> Optional[Comment]:
        pass

    @abstractmethod
    async def insert_comment(self, task_id: str, values: Dict[str, Any],
                             actor_id: Optional[str]) -> Comment:
        pass

    @abstractmethod
    async def fetch_activities(self, task_id: str, limit: int = 10) -> List[Activity]:
        """Latest activity entries, newest first."""

    # Profiles and roles

    @abstractmethod
    async def list_profiles(self) -> List[Profile]:
        pass

    @abstractmethod
    async def fetch_profile(self, profile_id: str) -> Optional[Profile]:
        pass

    @abstractmethod
    async def fetch_role(self, user_id: str) -> Optional[UserRole]:
        pass

    @abstractmethod
    async def set_role(self, user_id: str, role: UserRole) -> bool:
        pass

    # Push notifications

    @abstractmethod
    def subscribe(self, table: str, column: str, value: Any,
                  callback: ChangeCallback) -> Subscription:
        """Open a change channel for rows of ``table`` where ``column == value``."""


class LocalBackend(Backend):
    """
    In-process backend over TaskDatabase.

    Every successful write publishes a ChangeEvent on the feed, including
    the task deletes cascaded from a project delete.

    Args:
        database: TaskDatabase instance for data operations
        feed: ChangeFeed for push notifications (created if omitted)
    """

    def __init__(self, database: TaskDatabase, feed: Optional[ChangeFeed] = None):
        self.db = database
        self.feed = feed or ChangeFeed()

    @contextmanager
    def _guard(self, operation: str):
        try:
            yield
        except (sqlite3.Error, ValueError) as e:
            logger.error(f"Backend failure while trying to {operation}: {e}")
            raise BackendError(f"Failed to {operation}") from e

    # Projects

    async def list_projects(self) -> List[Project]:
        with self._guard("list projects"):
            return [Project.model_validate(row) for row in self.db.list_projects()]

    async def fetch_project(self, project_id: str) -> Optional[Project]:
        with self._guard("fetch project"):
            row = self.db.get_project(project_id)
        return Project.model_validate(row) if row else None

    async def insert_project(self, values: Dict[str, Any], owner_id: Optional[str]) -> Project:
        with self._guard("create project"):
            row = self.db.create_project(values.get("name"), values.get("description"), owner_id)
        self.feed.publish("projects", ChangeKind.INSERT, row)
        return Project.model_validate(row)

    async def update_project(self, project_id: str, values: Dict[str, Any]) -> Optional[Project]:
        with self._guard("update project"):
            row = self.db.update_project(project_id, values)
        if row is None:
            return None
        self.feed.publish("projects", ChangeKind.UPDATE, row)
        return Project.model_validate(row)

    async def delete_project(self, project_id: str) -> bool:
        with self._guard("delete project"):
            deleted = self.db.delete_project(project_id)
        if deleted is None:
            return False
        for task_row in deleted["tasks"]:
            self.feed.publish("tasks", ChangeKind.DELETE, task_row)
        self.feed.publish("projects", ChangeKind.DELETE, deleted["project"])
        return True

    # Tasks

    async def fetch_tasks(self, project_id: str) -> List[Task]:
        with self._guard("fetch tasks"):
            return [Task.model_validate(row) for row in self.db.list_tasks_for_project(project_id)]

    async def fetch_task(self, task_id: str) -> Optional[Task]:
        with self._guard("fetch task"):
            row = self.db.get_task(task_id)
        return Task.model_validate(row) if row else None

    async def fetch_subtasks(self, parent_task_id: str) -> List[Task]:
        with self._guard("fetch subtasks"):
            return [Task.model_validate(row) for row in self.db.list_subtasks(parent_task_id)]

    async def fetch_assigned_tasks(self, user_id: str) -> List[Task]:
        with self._guard("fetch assigned tasks"):
            return [Task.model_validate(row) for row in self.db.list_tasks_assigned_to(user_id)]

    async def fetch_tasks_with_due_date(self) -> List[Task]:
        with self._guard("fetch tasks with due date"):
            return [Task.model_validate(row) for row in self.db.list_tasks_with_due_date()]

    async def insert_task(self, project_id: str, values: Dict[str, Any],
                          actor_id: Optional[str]) -> Task:
        with self._guard("create task"):
            row = self.db.insert_task(project_id, values, actor_id)
            view = self.db.get_task(row["id"])
        self.feed.publish("tasks", ChangeKind.INSERT, row)
        return Task.model_validate(view)

    async def update_task(self, task_id: str, values: Dict[str, Any],
                          actor_id: Optional[str]) -> Optional[Task]:
        with self._guard("update task"):
            row = self.db.update_task(task_id, values, actor_id)
            view = self.db.get_task(task_id) if row else None
        if row is None:
            return None
        self.feed.publish("tasks", ChangeKind.UPDATE, row)
        return Task.model_validate(view)

    async def delete_task(self, task_id: str) -> bool:
        with self._guard("delete task"):
            row = self.db.delete_task(task_id)
        if row is None:
            return False
        self.feed.publish("tasks", ChangeKind.DELETE, row)
        return True

    # Comments and activity

    async def fetch_comments(self, task_id: str) -> List[Comment]:
        with self._guard("fetch comments"):
            return [Comment.model_validate(row) for row in self.db.list_comments(task_id)]

    async def fetch_comment(self, comment_id: str) -> Optional[Comment]:
        with self._guard("fetch comment"):
            row = self.db.get_comment(comment_id)
        return Comment.model_validate(row) if row else None

    async def insert_comment(self, task_id: str, values: Dict[str, Any],
                             actor_id: Optional[str]) -> Comment:
        with self._guard("add comment"):
            row = self.db.insert_comment(
                task_id, actor_id, values["content"],
                values.get("attachment_url"), values.get("attachment_name"),
            )
            view = self.db.get_comment(row["id"])
        self.feed.publish("comments", ChangeKind.INSERT, row)
        return Comment.model_validate(view)

    async def fetch_activities(self, task_id: str, limit: int = 10) -> List[Activity]:
        with self._guard("fetch activity"):
            return [Activity.model_validate(row) for row in self.db.list_activities(task_id, limit)]

    # Profiles and roles

    async def list_profiles(self) -> List[Profile]:
        with self._guard("list profiles"):
            return [Profile.model_validate(row) for row in self.db.list_profiles()]

    async def fetch_profile(self, profile_id: str) -> Optional[Profile]:
        with self._guard("fetch profile"):
            row = self.db.get_profile(profile_id)
        return Profile.model_validate(row) if row else None

    async def fetch_role(self, user_id: str) -> Optional[UserRole]:
        with self._guard("fetch role"):
            role = self.db.get_user_role(user_id)
        return UserRole(role) if role else None

    async def set_role(self, user_id: str, role: UserRole) -> bool:
        with self._guard("change role"):
            return self.db.set_user_role(user_id, role)

    def subscribe(self, table: str, column: str, value: Any,
                  callback: ChangeCallback) -> Subscription:
        return self.feed.subscribe(table, column, value, callback)
