"""
Shared fixtures for the task board test suite.

Provides an isolated SQLite database seeded with a project manager, a
member and one project, a LocalBackend over it, and small helpers for
building Task records and letting change notifications settle.
"""

import asyncio
import os
import sys
from datetime import datetime, timezone
from typing import Any, Dict

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', '..', 'src'))

from task_board.auth import AuthorizationContext
from task_board.backend import LocalBackend
from task_board.database import TaskDatabase
from task_board.models import Task, TaskStatus, UserRole
from task_board.toasts import ToastSink

PM_ID = "pm-1"
MEMBER_ID = "member-1"


def make_task(task_id: str, title: str = None, status: TaskStatus = TaskStatus.TODO,
              **fields: Any) -> Task:
    """Build a Task record without touching the database."""
    data: Dict[str, Any] = {
        "id": task_id,
        "project_id": fields.pop("project_id", "project-1"),
        "title": title or f"Task {task_id}",
        "status": status,
        "created_at": datetime(2024, 1, 1, tzinfo=timezone.utc),
    }
    data.update(fields)
    return Task(**data)


async def settle(*adapters) -> None:
    """Let queued change deliveries run, then wait for their re-fetches."""
    await asyncio.sleep(0)
    for adapter in adapters:
        await adapter.drain()
    await asyncio.sleep(0)


@pytest.fixture
def temp_db(tmp_path):
    db = TaskDatabase(str(tmp_path / "task_board.db"))
    yield db
    db.close()


@pytest.fixture
def seeded(temp_db):
    """Database with a PM, a member and one empty project."""
    temp_db.create_profile("Paula Manager", "paula@example.com", profile_id=PM_ID,
                           role=UserRole.PROJECT_MANAGER)
    temp_db.create_profile("Max Member", "max@example.com", profile_id=MEMBER_ID)
    project = temp_db.create_project("Website", "Marketing site", PM_ID)
    return {"db": temp_db, "project_id": project["id"]}


@pytest.fixture
def backend(seeded):
    return LocalBackend(seeded["db"])


@pytest.fixture
def project_id(seeded):
    return seeded["project_id"]


@pytest.fixture
def pm_auth():
    return AuthorizationContext(user_id=PM_ID, role=UserRole.PROJECT_MANAGER)


@pytest.fixture
def member_auth():
    return AuthorizationContext(user_id=MEMBER_ID, role=UserRole.MEMBER)


@pytest.fixture
def toasts():
    return ToastSink()
