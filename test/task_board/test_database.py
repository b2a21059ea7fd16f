"""
Test suite for TaskDatabase.

Tests cover:
- WAL configuration and schema creation
- Joined task view vs reduced row
- Cascades from projects to tasks, comments and activity
- Activity log entries for creation, status changes and reassignment
- Role assignment
"""

import sqlite3

import pytest

import sys
import os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', '..', 'src'))

from task_board.database import TaskDatabase

from conftest import MEMBER_ID, PM_ID


class TestTaskDatabaseInitialization:
    """Test database initialization and schema creation."""

    def test_database_initialization(self, temp_db):
        """Test basic database initialization with WAL mode."""
        cursor = temp_db._connection.cursor()
        cursor.execute("PRAGMA journal_mode")
        assert cursor.fetchone()[0].upper() == 'WAL'

        cursor.execute("PRAGMA synchronous")
        assert cursor.fetchone()[0] == 1  # NORMAL

        cursor.execute("PRAGMA busy_timeout")
        assert cursor.fetchone()[0] == 5000

        cursor.execute("PRAGMA foreign_keys")
        assert cursor.fetchone()[0] == 1

    def test_schema_creation(self, temp_db):
        cursor = temp_db._connection.cursor()
        cursor.execute("SELECT name FROM sqlite_master WHERE type='table' ORDER BY name")
        tables = {row[0] for row in cursor.fetchall()}
        assert {'activity_log', 'comments', 'profiles', 'projects', 'tasks', 'user_roles'} <= tables

        cursor.execute("SELECT name FROM sqlite_master WHERE type='index' AND name LIKE 'idx_%'")
        indexes = {row[0] for row in cursor.fetchall()}
        assert {'idx_tasks_project_created', 'idx_comments_task_created'} <= indexes

    def test_reopen_keeps_data(self, tmp_path):
        path = str(tmp_path / "board.db")
        with TaskDatabase(path) as db:
            db.create_project("Persisted")
        with TaskDatabase(path) as db:
            assert [p["name"] for p in db.list_projects()] == ["Persisted"]


class TestTasks:

    def test_insert_returns_reduced_row(self, seeded):
        db = seeded["db"]
        row = db.insert_task(seeded["project_id"], {"title": "Write", "assigned_to": MEMBER_ID}, PM_ID)
        assert row["status"] == "todo"
        assert row["priority"] == "medium"
        assert row["created_by"] == PM_ID
        assert "assignee_name" not in row

        view = db.get_task(row["id"])
        assert view["assignee_name"] == "Max Member"
        assert view["project_name"] == "Website"

    def test_tags_round_trip(self, seeded):
        db = seeded["db"]
        row = db.insert_task(seeded["project_id"], {"title": "Tagged", "tags": ["ui", "api"]})
        assert db.get_task(row["id"])["tags"] == ["ui", "api"]

    def test_unknown_column_rejected(self, seeded):
        with pytest.raises(ValueError):
            seeded["db"].insert_task(seeded["project_id"], {"title": "x", "lock_holder": "a"})

    def test_invalid_status_rejected_by_schema(self, seeded):
        with pytest.raises(sqlite3.IntegrityError):
            seeded["db"].insert_task(seeded["project_id"], {"title": "x", "status": "archived"})

    def test_project_listing_newest_first(self, seeded):
        db = seeded["db"]
        first = db.insert_task(seeded["project_id"], {"title": "first"})
        second = db.insert_task(seeded["project_id"], {"title": "second"})
        ids = [t["id"] for t in db.list_tasks_for_project(seeded["project_id"])]
        assert ids == [second["id"], first["id"]]

    def test_assigned_tasks_sorted_by_due_date(self, seeded):
        db = seeded["db"]
        pid = seeded["project_id"]
        undated = db.insert_task(pid, {"title": "undated", "assigned_to": MEMBER_ID})
        later = db.insert_task(pid, {"title": "later", "assigned_to": MEMBER_ID,
                                     "due_date": "2024-06-01T00:00:00+00:00"})
        sooner = db.insert_task(pid, {"title": "sooner", "assigned_to": MEMBER_ID,
                                      "due_date": "2024-05-01T00:00:00+00:00"})
        ids = [t["id"] for t in db.list_tasks_assigned_to(MEMBER_ID)]
        assert ids == [sooner["id"], later["id"], undated["id"]]

    def test_update_missing_task(self, temp_db):
        assert temp_db.update_task("ghost", {"status": "completed"}) is None

    def test_delete_detaches_subtasks(self, seeded):
        db = seeded["db"]
        parent = db.insert_task(seeded["project_id"], {"title": "parent"})
        child = db.insert_task(seeded["project_id"], {"title": "child", "parent_task_id": parent["id"]})
        assert db.delete_task(parent["id"])["id"] == parent["id"]
        assert db.get_task(child["id"])["parent_task_id"] is None
        assert db.delete_task(parent["id"]) is None

    def test_task_counts(self, seeded):
        db = seeded["db"]
        db.insert_task(seeded["project_id"], {"title": "a"})
        db.insert_task(seeded["project_id"], {"title": "b", "status": "completed"})
        assert db.get_task_counts() == {"total": 2, "todo": 1, "in_progress": 0, "completed": 1}


class TestActivityLog:

    def test_creation_status_and_assignment_logged(self, seeded):
        db = seeded["db"]
        row = db.insert_task(seeded["project_id"], {"title": "Tracked"}, PM_ID)
        db.update_task(row["id"], {"status": "in_progress"}, PM_ID)
        db.update_task(row["id"], {"assigned_to": MEMBER_ID}, PM_ID)
        db.update_task(row["id"], {"title": "Renamed"}, PM_ID)

        activities = db.list_activities(row["id"])
        assert [a["action"] for a in activities] == ["assigned", "status_changed", "created"]
        assert activities[1]["details"] == {"from": "todo", "to": "in_progress"}
        assert activities[2]["details"] == {"title": "Tracked"}
        assert activities[0]["author_name"] == "Paula Manager"

    def test_limit(self, seeded):
        db = seeded["db"]
        row = db.insert_task(seeded["project_id"], {"title": "Busy"})
        for status in ("in_progress", "todo", "in_progress", "todo"):
            db.update_task(row["id"], {"status": status})
        assert len(db.list_activities(row["id"], limit=3)) == 3


class TestCascades:

    def test_project_delete_cascades(self, seeded):
        db = seeded["db"]
        pid = seeded["project_id"]
        task = db.insert_task(pid, {"title": "Doomed"}, PM_ID)
        db.insert_comment(task["id"], MEMBER_ID, "bye")

        deleted = db.delete_project(pid)
        assert deleted["project"]["id"] == pid
        assert [t["id"] for t in deleted["tasks"]] == [task["id"]]
        assert db.get_task(task["id"]) is None
        assert db.list_comments(task["id"]) == []
        assert db.list_activities(task["id"]) == []
        assert db.delete_project(pid) is None

    def test_comments_chronological_with_author(self, seeded):
        db = seeded["db"]
        task = db.insert_task(seeded["project_id"], {"title": "Discuss"})
        db.insert_comment(task["id"], PM_ID, "first")
        db.insert_comment(task["id"], MEMBER_ID, "second")
        comments = db.list_comments(task["id"])
        assert [c["content"] for c in comments] == ["first", "second"]
        assert [c["author_name"] for c in comments] == ["Paula Manager", "Max Member"]


class TestRoles:

    def test_roles(self, seeded):
        db = seeded["db"]
        assert db.get_user_role(PM_ID) == "project_manager"
        assert db.get_user_role(MEMBER_ID) is None
        assert db.get_profile(MEMBER_ID)["role"] == "member"

        assert db.set_user_role(MEMBER_ID, "project_manager")
        assert db.get_user_role(MEMBER_ID) == "project_manager"
        assert not db.set_user_role("ghost", "member")

    def test_invalid_role_rejected(self, seeded):
        with pytest.raises(sqlite3.IntegrityError):
            seeded["db"].set_user_role(MEMBER_ID, "owner")
