"""
Error taxonomy for the task board client and backend service.

Every failure is scoped to the single operation that raised it. Views catch
these per action and surface them as toasts; the HTTP service maps them to
status codes. Nothing here is retried.
"""

from typing import Optional


class TaskBoardError(Exception):
    """Base class for all task board failures."""

    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(TaskBoardError):
    """
    Field-level validation failure, raised before any network call.

    Args:
        message: Human readable description of the first violated rule
        rule: Name of the field or rule that failed (e.g. "title")
    """

    status_code = 422

    def __init__(self, message: str, rule: Optional[str] = None):
        super().__init__(message)
        self.rule = rule


class AuthorizationError(TaskBoardError):
    """Action attempted without the required role. No mutation is issued."""

    status_code = 403


class BackendError(TaskBoardError):
    """Network or query failure reported by the backend collaborator."""

    status_code = 500


class NotFoundError(TaskBoardError):
    """
    Requested entity no longer exists.

    Args:
        message: Description of the missing entity
        redirect_to: Safe parent view the UI should navigate to
    """

    status_code = 404

    def __init__(self, message: str, redirect_to: str = "/"):
        super().__init__(message)
        self.redirect_to = redirect_to
