"""
YAML Project Importer

Seeds a database with profiles, one project and its task tree from a YAML
file. Every task is validated with the same input rules the client uses
before anything is written.

Example::

    profiles:
      - id: alice
        full_name: Alice Martin
        email: alice@example.com
        role: project_manager
    project:
      name: Website relaunch
      description: Q3 marketing site
      owner: alice
    tasks:
      - title: Fix login bug
        status: in_progress
        priority: high
        tags: [auth, bug]
        due_date: 2024-05-01
        assigned_to: alice@example.com
        subtasks:
          - title: Write regression test
"""

import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from .database import TaskDatabase
from .models import ProjectEdit, TaskCreate, TaskStatus, UserRole, parse_input

logger = logging.getLogger(__name__)


def validate_project_yaml(yaml_file_path: str) -> Dict[str, Any]:
    """
    Load and sanity-check a project YAML file.

    Raises:
        FileNotFoundError: If the file does not exist
        ValueError: If the YAML is malformed or not a dictionary
    """
    path = Path(yaml_file_path)
    if not path.is_file():
        raise FileNotFoundError(f"Project file not found: {yaml_file_path}")
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ValueError(f"Invalid YAML in {yaml_file_path}: {e}")
    if not isinstance(data, dict):
        raise ValueError("Project file must contain a YAML dictionary at root level")
    return data


def _collect_tasks(entries: Any, depth: int = 0) -> List[Dict[str, Any]]:
    """Validate a task list (recursively) into prepared insert entries."""
    if entries is None:
        return []
    if not isinstance(entries, list):
        raise ValueError("YAML 'tasks' and 'subtasks' must be lists")

    prepared = []
    for entry in entries:
        if not isinstance(entry, dict):
            raise ValueError(f"Task entries must be dictionaries, got {type(entry).__name__}")
        fields = {k: v for k, v in entry.items() if k not in ("status", "subtasks", "assigned_to")}
        form = parse_input(TaskCreate, fields)
        status = TaskStatus(entry.get("status", TaskStatus.TODO.value))
        prepared.append({
            "values": form.model_dump(mode="json", exclude_none=True),
            "status": status,
            "assignee": entry.get("assigned_to"),
            "subtasks": _collect_tasks(entry.get("subtasks"), depth + 1),
            "depth": depth,
        })
    return prepared


def _resolve_profile(db: TaskDatabase, key: Optional[str]) -> Optional[str]:
    """Map a profile id or email to a profile id."""
    if not key:
        return None
    if db.get_profile(key):
        return key
    for profile in db.list_profiles():
        if profile.get("email") == key:
            return profile["id"]
    raise ValueError(f"Unknown profile '{key}'")


def import_project(db: TaskDatabase, yaml_data: Dict[str, Any]) -> Dict[str, Any]:
    """
    Import profiles, a project and its tasks.

    Existing profiles (matched by id) are kept as they are. If a task fails
    to import, the project is deleted again (tasks cascade).

    Returns:
        Dict with the new project id and import statistics

    Raises:
        ValueError: For malformed structure (before anything is written)
        ValidationError: For task or project fields breaking input rules
    """
    stats = {"project_id": None, "profiles_created": 0, "tasks_created": 0, "subtasks_created": 0}

    profiles = yaml_data.get("profiles") or []
    if not isinstance(profiles, list):
        raise ValueError("YAML 'profiles' must be a list")
    project_data = yaml_data.get("project")
    if not isinstance(project_data, dict):
        raise ValueError("YAML must contain a 'project' dictionary")
    project_form = parse_input(ProjectEdit, {k: v for k, v in project_data.items() if k != "owner"})
    tasks = _collect_tasks(yaml_data.get("tasks"))

    roles = []
    for profile in profiles:
        if not isinstance(profile, dict) or not profile.get("full_name"):
            raise ValueError("Each profile needs a 'full_name'")
        roles.append(UserRole(profile["role"]) if profile.get("role") else None)

    owner_key = project_data.get("owner")
    if owner_key and not any(owner_key in (p.get("id"), p.get("email")) for p in profiles):
        _resolve_profile(db, owner_key)

    for profile, role in zip(profiles, roles):
        if profile.get("id") and db.get_profile(profile["id"]):
            continue
        db.create_profile(profile["full_name"], profile.get("email"),
                          profile_id=profile.get("id"), role=role)
        stats["profiles_created"] += 1

    owner_id = _resolve_profile(db, owner_key)
    project = db.create_project(project_form.name, project_form.description, owner_id)
    stats["project_id"] = project["id"]

    def insert_all(entries: List[Dict[str, Any]], parent_id: Optional[str]):
        for entry in entries:
            values = dict(entry["values"])
            values["status"] = entry["status"].value
            values["assigned_to"] = _resolve_profile(db, entry["assignee"])
            if parent_id is not None:
                values["parent_task_id"] = parent_id
            row = db.insert_task(project["id"], values, owner_id)
            stats["subtasks_created" if entry["depth"] else "tasks_created"] += 1
            insert_all(entry["subtasks"], row["id"])

    try:
        insert_all(tasks, None)
    except Exception:
        logger.error(f"Import of project '{project_form.name}' failed, rolling back")
        db.delete_project(project["id"])
        raise

    logger.info(f"Imported project '{project_form.name}': {stats}")
    return stats


def import_project_from_file(db: TaskDatabase, yaml_file_path: str) -> Dict[str, Any]:
    """Load ``yaml_file_path`` with validate_project_yaml and import it."""
    return import_project(db, validate_project_yaml(yaml_file_path))
