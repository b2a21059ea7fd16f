"""
Task Board Database Layer

Provides SQLite-based storage with WAL mode for the project/task tracking
backend: profiles and roles, projects, tasks, comments and the activity log.
Reads return plain dictionaries; task reads come in two shapes, the reduced
row as stored and the joined view with assignee and project names.
"""

import json
import logging
import sqlite3
import threading
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)

# Columns a client may write on a task
TASK_COLUMNS = (
    "title", "description", "status", "priority", "tags", "due_date",
    "estimated_hours", "assigned_to", "parent_task_id",
)
PROJECT_COLUMNS = ("name", "description")

_TASK_ROW_SELECT = """
    SELECT t.id, t.project_id, t.title, t.description, t.status, t.priority,
           t.tags, t.due_date, t.estimated_hours, t.assigned_to,
           t.parent_task_id, t.created_by, t.created_at
    FROM tasks t
"""

_TASK_VIEW_SELECT = """
    SELECT t.id, t.project_id, t.title, t.description, t.status, t.priority,
           t.tags, t.due_date, t.estimated_hours, t.assigned_to,
           t.parent_task_id, t.created_by, t.created_at,
           pr.full_name AS assignee_name, p.name AS project_name
    FROM tasks t
    LEFT JOIN profiles pr ON pr.id = t.assigned_to
    LEFT JOIN projects p ON p.id = t.project_id
"""


def _new_id() -> str:
    return str(uuid.uuid4())


def _db_value(value: Any) -> Any:
    """Convert enums, datetimes and lists to their stored representation."""
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, (list, tuple)):
        return json.dumps(list(value))
    return value


def _parse_json(text: Optional[str], expected: type) -> Any:
    if not text:
        return None
    try:
        value = json.loads(text)
    except (ValueError, TypeError):
        return None
    return value if isinstance(value, expected) else None


class TaskDatabase:
    """
    SQLite database backing the task board.

    Features:
    - WAL mode for concurrent read/write access
    - Single connection guarded by an RLock, usable across threads
    - ON DELETE CASCADE from projects to tasks, and from tasks to comments
      and activity
    - Activity entries written alongside task creation, status changes and
      reassignment
    """

    def __init__(self, db_path: str):
        """
        Initialize TaskDatabase with SQLite WAL mode configuration.

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = Path(db_path)
        self._connection_lock = threading.RLock()
        self._connection: Optional[sqlite3.Connection] = None

        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._initialize_database()

    def _initialize_database(self) -> None:
        """Open the connection, configure pragmas and create the schema."""
        try:
            self._connection = sqlite3.connect(
                str(self.db_path),
                isolation_level=None,  # Autocommit; explicit BEGIN in _transaction
                check_same_thread=False,
            )
            self._connection.row_factory = sqlite3.Row

            cursor = self._connection.cursor()
            cursor.execute("PRAGMA journal_mode=WAL")
            cursor.execute("PRAGMA synchronous=NORMAL")
            cursor.execute("PRAGMA busy_timeout=5000")
            cursor.execute("PRAGMA foreign_keys=ON")

            self._create_schema()
        except sqlite3.Error as e:
            raise RuntimeError(f"Failed to initialize database at {self.db_path}: {e}")

    def _create_schema(self) -> None:
        """Create database schema with indexes for the board queries."""
        cursor = self._connection.cursor()

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS profiles (
                id TEXT PRIMARY KEY,
                full_name TEXT NOT NULL,
                email TEXT,
                created_at TEXT NOT NULL
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS user_roles (
                user_id TEXT PRIMARY KEY,
                role TEXT NOT NULL CHECK (role IN ('project_manager', 'member')),
                FOREIGN KEY (user_id) REFERENCES profiles (id) ON DELETE CASCADE
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS projects (
                id TEXT PRIMARY KEY,
                name TEXT NOT NULL CHECK (length(name) BETWEEN 1 AND 100),
                description TEXT CHECK (description IS NULL OR length(description) <= 500),
                owner_id TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS tasks (
                id TEXT PRIMARY KEY,
                project_id TEXT NOT NULL,
                title TEXT NOT NULL,
                description TEXT,
                status TEXT NOT NULL DEFAULT 'todo'
                    CHECK (status IN ('todo', 'in_progress', 'completed')),
                priority TEXT NOT NULL DEFAULT 'medium'
                    CHECK (priority IN ('low', 'medium', 'high', 'urgent')),
                tags TEXT,
                due_date TEXT,
                estimated_hours REAL CHECK (estimated_hours IS NULL OR estimated_hours >= 0),
                assigned_to TEXT,
                parent_task_id TEXT,
                created_by TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                FOREIGN KEY (project_id) REFERENCES projects (id) ON DELETE CASCADE,
                FOREIGN KEY (assigned_to) REFERENCES profiles (id) ON DELETE SET NULL,
                FOREIGN KEY (parent_task_id) REFERENCES tasks (id) ON DELETE SET NULL
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS comments (
                id TEXT PRIMARY KEY,
                task_id TEXT NOT NULL,
                user_id TEXT,
                content TEXT NOT NULL,
                attachment_url TEXT,
                attachment_name TEXT,
                created_at TEXT NOT NULL,
                FOREIGN KEY (task_id) REFERENCES tasks (id) ON DELETE CASCADE
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS activity_log (
                id TEXT PRIMARY KEY,
                task_id TEXT NOT NULL,
                user_id TEXT,
                action TEXT NOT NULL,
                details TEXT CHECK (details IS NULL OR json_valid(details)),
                created_at TEXT NOT NULL,
                FOREIGN KEY (task_id) REFERENCES tasks (id) ON DELETE CASCADE
            )
        """)

        cursor.execute("CREATE INDEX IF NOT EXISTS idx_tasks_project_created ON tasks(project_id, created_at)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_tasks_assigned_to ON tasks(assigned_to)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_tasks_parent ON tasks(parent_task_id)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_tasks_due_date ON tasks(due_date)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_comments_task_created ON comments(task_id, created_at)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_activity_task_created ON activity_log(task_id, created_at)")

    @contextmanager
    def _transaction(self):
        """Context manager for explicit transaction control."""
        with self._connection_lock:
            cursor = self._connection.cursor()
            try:
                cursor.execute("BEGIN")
                yield cursor
                cursor.execute("COMMIT")
            except Exception:
                cursor.execute("ROLLBACK")
                raise

    def _get_current_time_str(self) -> str:
        """Get current UTC time as ISO string for database operations."""
        return datetime.now(timezone.utc).isoformat()

    # Row conversion

    def _task_to_dict(self, row: sqlite3.Row) -> Dict[str, Any]:
        data = dict(row)
        data["tags"] = _parse_json(data.get("tags"), list)
        return data

    def _activity_to_dict(self, row: sqlite3.Row) -> Dict[str, Any]:
        data = dict(row)
        data["details"] = _parse_json(data.get("details"), dict)
        return data

    # Profiles and roles

    def create_profile(self, full_name: str, email: Optional[str] = None,
                       profile_id: Optional[str] = None, role: Optional[str] = None) -> str:
        """
        Create a user profile, optionally with a role.

        Returns:
            The profile id
        """
        profile_id = profile_id or _new_id()
        with self._transaction() as cursor:
            cursor.execute(
                "INSERT INTO profiles (id, full_name, email, created_at) VALUES (?, ?, ?, ?)",
                (profile_id, full_name, email, self._get_current_time_str()),
            )
            if role:
                cursor.execute(
                    "INSERT INTO user_roles (user_id, role) VALUES (?, ?)",
                    (profile_id, _db_value(role)),
                )
        return profile_id

    def list_profiles(self) -> List[Dict[str, Any]]:
        """List profiles newest first, each with its role (member if unset)."""
        with self._connection_lock:
            cursor = self._connection.cursor()
            cursor.execute("""
                SELECT pr.id, pr.full_name, pr.email, pr.created_at,
                       COALESCE(ur.role, 'member') AS role
                FROM profiles pr
                LEFT JOIN user_roles ur ON ur.user_id = pr.id
                ORDER BY pr.created_at DESC, pr.rowid DESC
            """)
            return [dict(row) for row in cursor.fetchall()]

    def get_profile(self, profile_id: str) -> Optional[Dict[str, Any]]:
        with self._connection_lock:
            cursor = self._connection.cursor()
            cursor.execute("""
                SELECT pr.id, pr.full_name, pr.email, pr.created_at,
                       COALESCE(ur.role, 'member') AS role
                FROM profiles pr
                LEFT JOIN user_roles ur ON ur.user_id = pr.id
                WHERE pr.id = ?
            """, (profile_id,))
            row = cursor.fetchone()
            return dict(row) if row else None

    def get_user_role(self, user_id: str) -> Optional[str]:
        """Role assigned to a user, or None when no role row exists."""
        with self._connection_lock:
            cursor = self._connection.cursor()
            cursor.execute("SELECT role FROM user_roles WHERE user_id = ?", (user_id,))
            row = cursor.fetchone()
            return row["role"] if row else None

    def set_user_role(self, user_id: str, role: str) -> bool:
        """
        Replace a user's role.

        Returns:
            False if the profile does not exist
        """
        with self._transaction() as cursor:
            cursor.execute("SELECT 1 FROM profiles WHERE id = ?", (user_id,))
            if cursor.fetchone() is None:
                return False
            cursor.execute("DELETE FROM user_roles WHERE user_id = ?", (user_id,))
            cursor.execute(
                "INSERT INTO user_roles (user_id, role) VALUES (?, ?)",
                (user_id, _db_value(role)),
            )
        return True

    # Projects

    def create_project(self, name: str, description: Optional[str] = None,
                       owner_id: Optional[str] = None) -> Dict[str, Any]:
        """Create a project and return its row."""
        project_id = _new_id()
        now = self._get_current_time_str()
        with self._connection_lock:
            cursor = self._connection.cursor()
            cursor.execute("""
                INSERT INTO projects (id, name, description, owner_id, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?)
            """, (project_id, name, description, owner_id, now, now))
        return self.get_project(project_id)

    def get_project(self, project_id: str) -> Optional[Dict[str, Any]]:
        with self._connection_lock:
            cursor = self._connection.cursor()
            cursor.execute("""
                SELECT id, name, description, owner_id, created_at
                FROM projects WHERE id = ?
            """, (project_id,))
            row = cursor.fetchone()
            return dict(row) if row else None

    def list_projects(self) -> List[Dict[str, Any]]:
        """List all projects, most recently created first."""
        with self._connection_lock:
            cursor = self._connection.cursor()
            cursor.execute("""
                SELECT id, name, description, owner_id, created_at
                FROM projects
                ORDER BY created_at DESC, rowid DESC
            """)
            return [dict(row) for row in cursor.fetchall()]

    def update_project(self, project_id: str, values: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        """
        Update name/description of a project.

        Returns:
            Updated project row, or None if the project does not exist

        Raises:
            ValueError: For columns that are not writable
        """
        unknown = set(values) - set(PROJECT_COLUMNS)
        if unknown:
            raise ValueError(f"Unknown project columns: {sorted(unknown)}")
        if values:
            assignments = ", ".join(f"{column} = ?" for column in values)
            params = [_db_value(v) for v in values.values()]
            params.extend([self._get_current_time_str(), project_id])
            with self._connection_lock:
                cursor = self._connection.cursor()
                cursor.execute(
                    f"UPDATE projects SET {assignments}, updated_at = ? WHERE id = ?",
                    params,
                )
        return self.get_project(project_id)

    def delete_project(self, project_id: str) -> Optional[Dict[str, Any]]:
        """
        Delete a project; its tasks (and their comments/activity) cascade.

        Returns:
            Dict with the deleted ``project`` row and the cascaded ``tasks``
            rows, or None if the project did not exist
        """
        with self._transaction() as cursor:
            cursor.execute("""
                SELECT id, name, description, owner_id, created_at
                FROM projects WHERE id = ?
            """, (project_id,))
            project = cursor.fetchone()
            if project is None:
                return None
            cursor.execute(_TASK_ROW_SELECT + " WHERE t.project_id = ?", (project_id,))
            tasks = [self._task_to_dict(row) for row in cursor.fetchall()]
            cursor.execute("DELETE FROM projects WHERE id = ?", (project_id,))
        logger.info(f"Deleted project {project_id} with {len(tasks)} tasks")
        return {"project": dict(project), "tasks": tasks}

    # Tasks

    def insert_task(self, project_id: str, values: Dict[str, Any],
                    actor_id: Optional[str] = None) -> Dict[str, Any]:
        """
        Insert a task and record a ``created`` activity entry.

        Args:
            project_id: Owning project
            values: Column values (subset of TASK_COLUMNS, title required)
            actor_id: Creating user

        Returns:
            The reduced task row
        """
        unknown = set(values) - set(TASK_COLUMNS)
        if unknown:
            raise ValueError(f"Unknown task columns: {sorted(unknown)}")
        if not values.get("title"):
            raise ValueError("Task title is required")

        task_id = _new_id()
        now = self._get_current_time_str()
        columns = ["id", "project_id", "created_by", "created_at", "updated_at"]
        params = [task_id, project_id, actor_id, now, now]
        for column, value in values.items():
            columns.append(column)
            params.append(_db_value(value))

        with self._transaction() as cursor:
            placeholders = ", ".join("?" for _ in columns)
            cursor.execute(
                f"INSERT INTO tasks ({', '.join(columns)}) VALUES ({placeholders})",
                params,
            )
            self._log_activity(cursor, task_id, actor_id, "created", {"title": values["title"]})
        return self.get_task_row(task_id)

    def get_task_row(self, task_id: str) -> Optional[Dict[str, Any]]:
        """Reduced task row (no joined fields)."""
        with self._connection_lock:
            cursor = self._connection.cursor()
            cursor.execute(_TASK_ROW_SELECT + " WHERE t.id = ?", (task_id,))
            row = cursor.fetchone()
            return self._task_to_dict(row) if row else None

    def get_task(self, task_id: str) -> Optional[Dict[str, Any]]:
        """Joined task view with assignee_name and project_name."""
        with self._connection_lock:
            cursor = self._connection.cursor()
            cursor.execute(_TASK_VIEW_SELECT + " WHERE t.id = ?", (task_id,))
            row = cursor.fetchone()
            return self._task_to_dict(row) if row else None

    def list_tasks_for_project(self, project_id: str) -> List[Dict[str, Any]]:
        """Joined task views for a project, newest first."""
        with self._connection_lock:
            cursor = self._connection.cursor()
            cursor.execute(
                _TASK_VIEW_SELECT + " WHERE t.project_id = ? ORDER BY t.created_at DESC, t.rowid DESC",
                (project_id,),
            )
            return [self._task_to_dict(row) for row in cursor.fetchall()]

    def list_subtasks(self, parent_task_id: str) -> List[Dict[str, Any]]:
        with self._connection_lock:
            cursor = self._connection.cursor()
            cursor.execute(
                _TASK_VIEW_SELECT + " WHERE t.parent_task_id = ? ORDER BY t.created_at DESC, t.rowid DESC",
                (parent_task_id,),
            )
            return [self._task_to_dict(row) for row in cursor.fetchall()]

    def list_tasks_assigned_to(self, user_id: str) -> List[Dict[str, Any]]:
        """Tasks assigned to a user, soonest due first, undated last."""
        with self._connection_lock:
            cursor = self._connection.cursor()
            cursor.execute(
                _TASK_VIEW_SELECT + """
                WHERE t.assigned_to = ?
                ORDER BY t.due_date IS NULL, t.due_date ASC, t.created_at DESC
                """,
                (user_id,),
            )
            return [self._task_to_dict(row) for row in cursor.fetchall()]

    def list_tasks_with_due_date(self) -> List[Dict[str, Any]]:
        with self._connection_lock:
            cursor = self._connection.cursor()
            cursor.execute(
                _TASK_VIEW_SELECT + " WHERE t.due_date IS NOT NULL ORDER BY t.due_date ASC",
            )
            return [self._task_to_dict(row) for row in cursor.fetchall()]

    def update_task(self, task_id: str, values: Dict[str, Any],
                    actor_id: Optional[str] = None) -> Optional[Dict[str, Any]]:
        """
        Update task columns, logging status and assignee changes.

        Args:
            task_id: Task to update
            values: Column values to write (subset of TASK_COLUMNS)
            actor_id: User performing the change

        Returns:
            The updated reduced row, or None if the task does not exist
        """
        unknown = set(values) - set(TASK_COLUMNS)
        if unknown:
            raise ValueError(f"Unknown task columns: {sorted(unknown)}")

        with self._transaction() as cursor:
            cursor.execute("SELECT status, assigned_to FROM tasks WHERE id = ?", (task_id,))
            current = cursor.fetchone()
            if current is None:
                return None

            if values:
                assignments = ", ".join(f"{column} = ?" for column in values)
                params = [_db_value(v) for v in values.values()]
                params.extend([self._get_current_time_str(), task_id])
                cursor.execute(
                    f"UPDATE tasks SET {assignments}, updated_at = ? WHERE id = ?",
                    params,
                )

            new_status = _db_value(values.get("status", current["status"]))
            if new_status != current["status"]:
                self._log_activity(cursor, task_id, actor_id, "status_changed",
                                   {"from": current["status"], "to": new_status})
            if "assigned_to" in values and values["assigned_to"] != current["assigned_to"]:
                self._log_activity(cursor, task_id, actor_id, "assigned",
                                   {"from": current["assigned_to"], "to": values["assigned_to"]})
        return self.get_task_row(task_id)

    def delete_task(self, task_id: str) -> Optional[Dict[str, Any]]:
        """
        Delete a task; comments and activity cascade, subtasks are detached.

        Returns:
            The deleted reduced row, or None if it did not exist
        """
        with self._transaction() as cursor:
            cursor.execute(_TASK_ROW_SELECT + " WHERE t.id = ?", (task_id,))
            row = cursor.fetchone()
            if row is None:
                return None
            cursor.execute("DELETE FROM tasks WHERE id = ?", (task_id,))
        return self._task_to_dict(row)

    def get_task_counts(self) -> Dict[str, int]:
        """Task counts per status plus total, for metrics."""
        counts = {"total": 0, "todo": 0, "in_progress": 0, "completed": 0}
        with self._connection_lock:
            cursor = self._connection.cursor()
            cursor.execute("SELECT status, COUNT(*) AS n FROM tasks GROUP BY status")
            for row in cursor.fetchall():
                counts[row["status"]] = row["n"]
                counts["total"] += row["n"]
        return counts

    # Comments

    def insert_comment(self, task_id: str, user_id: Optional[str], content: str,
                       attachment_url: Optional[str] = None,
                       attachment_name: Optional[str] = None) -> Dict[str, Any]:
        """Append a comment and return the stored row."""
        comment_id = _new_id()
        with self._connection_lock:
            cursor = self._connection.cursor()
            cursor.execute("""
                INSERT INTO comments (id, task_id, user_id, content, attachment_url,
                                      attachment_name, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
            """, (comment_id, task_id, user_id, content, attachment_url,
                  attachment_name, self._get_current_time_str()))
            cursor.execute("""
                SELECT id, task_id, user_id, content, attachment_url, attachment_name, created_at
                FROM comments WHERE id = ?
            """, (comment_id,))
            return dict(cursor.fetchone())

    def get_comment(self, comment_id: str) -> Optional[Dict[str, Any]]:
        with self._connection_lock:
            cursor = self._connection.cursor()
            cursor.execute("""
                SELECT c.id, c.task_id, c.user_id, c.content, c.attachment_url,
                       c.attachment_name, c.created_at, pr.full_name AS author_name
                FROM comments c
                LEFT JOIN profiles pr ON pr.id = c.user_id
                WHERE c.id = ?
            """, (comment_id,))
            row = cursor.fetchone()
            return dict(row) if row else None

    def list_comments(self, task_id: str) -> List[Dict[str, Any]]:
        """Comments for a task in chronological order."""
        with self._connection_lock:
            cursor = self._connection.cursor()
            cursor.execute("""
                SELECT c.id, c.task_id, c.user_id, c.content, c.attachment_url,
                       c.attachment_name, c.created_at, pr.full_name AS author_name
                FROM comments c
                LEFT JOIN profiles pr ON pr.id = c.user_id
                WHERE c.task_id = ?
                ORDER BY c.created_at ASC, c.rowid ASC
            """, (task_id,))
            return [dict(row) for row in cursor.fetchall()]

    # Activity

    def _log_activity(self, cursor: sqlite3.Cursor, task_id: str, user_id: Optional[str],
                      action: str, details: Optional[Dict[str, Any]] = None) -> None:
        cursor.execute("""
            INSERT INTO activity_log (id, task_id, user_id, action, details, created_at)
            VALUES (?, ?, ?, ?, ?, ?)
        """, (_new_id(), task_id, user_id, action,
              json.dumps(details) if details is not None else None,
              self._get_current_time_str()))

    def list_activities(self, task_id: str, limit: int = 10) -> List[Dict[str, Any]]:
        """Latest activity entries for a task, newest first."""
        with self._connection_lock:
            cursor = self._connection.cursor()
            cursor.execute("""
                SELECT a.id, a.task_id, a.user_id, a.action, a.details, a.created_at,
                       pr.full_name AS author_name
                FROM activity_log a
                LEFT JOIN profiles pr ON pr.id = a.user_id
                WHERE a.task_id = ?
                ORDER BY a.created_at DESC, a.rowid DESC
                LIMIT ?
            """, (task_id, limit))
            return [self._activity_to_dict(row) for row in cursor.fetchall()]

    def close(self):
        """Close database connection."""
        with self._connection_lock:
            if self._connection:
                self._connection.close()
                self._connection = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
