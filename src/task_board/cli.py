"""
Command line interface for the Task Board service.

Commands:
    serve     Run the HTTP/WebSocket service with uvicorn
    import    Seed a database from a project YAML file
    add-user  Create a profile, optionally with a role
    set-role  Change a user's role
"""

import logging
import os
import socket
import sys

import click
import uvicorn

from .config import load_settings
from .database import TaskDatabase
from .errors import TaskBoardError
from .importer import import_project_from_file
from .models import UserRole

logger = logging.getLogger(__name__)


class PortConflictError(Exception):
    """Raised when the requested port is already in use."""


def check_port_available(host: str, port: int) -> bool:
    """Return True if ``port`` can be bound on ``host``."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        try:
            sock.bind((host, port))
            return True
        except OSError:
            return False


def ensure_port_available(host: str, port: int) -> None:
    """
    Raises:
        PortConflictError: If the port is already bound
    """
    if not check_port_available(host, port):
        raise PortConflictError(f"Port {port} is already in use on {host}")


def _open_database(db_path: str) -> TaskDatabase:
    try:
        return TaskDatabase(db_path)
    except RuntimeError as e:
        raise click.ClickException(str(e))


def _import_file(db: TaskDatabase, project: str) -> dict:
    try:
        return import_project_from_file(db, project)
    except (FileNotFoundError, ValueError, TaskBoardError) as e:
        raise click.ClickException(str(e))


@click.group()
@click.option("--verbose", is_flag=True, help="Enable debug logging")
def main(verbose):
    """Project task board: kanban service and admin tools."""
    settings = load_settings()
    logging.basicConfig(
        level=logging.DEBUG if verbose else getattr(logging, settings.log_level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@main.command()
@click.option("--host", default="127.0.0.1", show_default=True, help="Interface to bind")
@click.option("--port", default=8080, show_default=True, type=int, help="Port to listen on")
@click.option("--db-path", envvar="DATABASE_PATH", default="task_board.db", show_default=True,
              help="SQLite database file")
@click.option("--project", type=click.Path(), help="Project YAML to import before serving")
def serve(host, port, db_path, project):
    """Run the REST and change-channel service."""
    try:
        ensure_port_available(host, port)
    except PortConflictError as e:
        raise click.ClickException(str(e))

    if project:
        db = _open_database(db_path)
        try:
            stats = _import_file(db, project)
        finally:
            db.close()
        click.echo(f"Imported project {stats['project_id']} "
                   f"({stats['tasks_created']} tasks, {stats['subtasks_created']} subtasks)")

    os.environ["DATABASE_PATH"] = db_path
    click.echo(f"Task board listening on http://{host}:{port}")
    uvicorn.run("task_board.api:app", host=host, port=port, log_level="info")


@main.command(name="import")
@click.argument("project", type=click.Path())
@click.option("--db-path", envvar="DATABASE_PATH", default="task_board.db", show_default=True)
def import_command(project, db_path):
    """Import profiles, a project and its tasks from PROJECT."""
    db = _open_database(db_path)
    try:
        stats = _import_file(db, project)
    finally:
        db.close()
    click.echo(f"Imported project {stats['project_id']}: {stats['profiles_created']} profiles, "
               f"{stats['tasks_created']} tasks, {stats['subtasks_created']} subtasks")


@main.command(name="add-user")
@click.option("--name", "full_name", required=True, help="Full name")
@click.option("--email", default=None)
@click.option("--role", type=click.Choice([r.value for r in UserRole]), default=None)
@click.option("--db-path", envvar="DATABASE_PATH", default="task_board.db", show_default=True)
def add_user(full_name, email, role, db_path):
    """Create a profile and print its id."""
    db = _open_database(db_path)
    try:
        profile_id = db.create_profile(full_name, email, role=role)
    finally:
        db.close()
    click.echo(profile_id)


@main.command(name="set-role")
@click.argument("user_id")
@click.argument("role", type=click.Choice([r.value for r in UserRole]))
@click.option("--db-path", envvar="DATABASE_PATH", default="task_board.db", show_default=True)
def set_role(user_id, role, db_path):
    """Give USER_ID the ROLE role."""
    db = _open_database(db_path)
    try:
        updated = db.set_user_role(user_id, role)
    finally:
        db.close()
    if not updated:
        raise click.ClickException(f"User {user_id} not found")
    click.echo(f"{user_id} is now {role}")


if __name__ == "__main__":
    sys.exit(main())
