"""
Pydantic models for the task board.

Provides the record types held by the client (tasks, projects, comments,
activity, profiles), the reduced row shape carried by change notifications,
input models validated before any backend request, and the response models
used by the HTTP service.
"""

from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Type, TypeVar, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic import ValidationError as PydanticValidationError

from .errors import ValidationError


class TaskStatus(str, Enum):
    """Board column a task sits in. ``completed`` is terminal."""

    TODO = "todo"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"


class TaskPriority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"


class UserRole(str, Enum):
    PROJECT_MANAGER = "project_manager"
    MEMBER = "member"


# Column order on the board
BOARD_COLUMNS = (TaskStatus.TODO, TaskStatus.IN_PROGRESS, TaskStatus.COMPLETED)


def normalize_due_date(value: Union[None, str, date, datetime]) -> Optional[datetime]:
    """
    Normalize a due date to midnight UTC of its calendar date.

    A datetime keeps its own calendar date (the date as seen in its own
    timezone), so a value picked as "May 1st" in any timezone reads back as
    May 1st.

    Args:
        value: ``date``, ``datetime``, ISO string, or None

    Returns:
        Timezone-aware datetime at 00:00 UTC, or None
    """
    if value is None:
        return None
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        try:
            value = datetime.fromisoformat(text.replace("Z", "+00:00"))
        except ValueError:
            raise ValueError(f"Invalid due date '{text}'")
    if isinstance(value, datetime):
        day = value.date()
    elif isinstance(value, date):
        day = value
    else:
        raise ValueError(f"Unsupported due date type: {type(value).__name__}")
    return datetime(day.year, day.month, day.day, tzinfo=timezone.utc)


def due_calendar_date(value: Optional[datetime]) -> Optional[date]:
    """Calendar date of a stored due timestamp, read in UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).date()


def _clean_tags(tags: Optional[List[str]]) -> Optional[List[str]]:
    """Ordered set semantics: trim, drop blanks, keep first occurrence."""
    if tags is None:
        return None
    cleaned: List[str] = []
    for tag in tags:
        if not isinstance(tag, str):
            raise ValueError("All tags must be strings")
        tag = tag.strip()
        if tag and tag not in cleaned:
            cleaned.append(tag)
    return cleaned or None


def _strip_or_none(value: Any) -> Any:
    if isinstance(value, str):
        value = value.strip()
        return value or None
    return value


# Records

class TaskRow(BaseModel):
    """Task as stored, without joined display fields (the push payload shape)."""

    model_config = ConfigDict(frozen=True)

    id: str
    project_id: str
    title: str
    description: Optional[str] = None
    status: TaskStatus = TaskStatus.TODO
    priority: TaskPriority = TaskPriority.MEDIUM
    tags: Optional[List[str]] = None
    due_date: Optional[datetime] = None
    estimated_hours: Optional[float] = Field(None, ge=0)
    assigned_to: Optional[str] = None
    parent_task_id: Optional[str] = None
    created_by: Optional[str] = None
    created_at: datetime

    @property
    def is_completed(self) -> bool:
        return self.status == TaskStatus.COMPLETED

    @property
    def due_day(self) -> Optional[date]:
        return due_calendar_date(self.due_date)


class Task(TaskRow):
    """Denormalized task view: the row plus assignee and project names."""

    assignee_name: Optional[str] = None
    project_name: Optional[str] = None


class Project(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    description: Optional[str] = None
    owner_id: Optional[str] = None
    created_at: datetime


class Comment(BaseModel):
    """Append-only comment on a task, with optional attachment."""

    model_config = ConfigDict(frozen=True)

    id: str
    task_id: str
    user_id: Optional[str] = None
    content: str
    attachment_url: Optional[str] = None
    attachment_name: Optional[str] = None
    created_at: datetime
    author_name: Optional[str] = None


class Activity(BaseModel):
    """Audit trail entry written by the backend; read-only to clients."""

    model_config = ConfigDict(frozen=True)

    id: str
    task_id: str
    action: str
    details: Optional[Dict[str, Any]] = None
    user_id: Optional[str] = None
    created_at: datetime
    author_name: Optional[str] = None


class Profile(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    full_name: str
    email: Optional[str] = None
    created_at: Optional[datetime] = None
    role: UserRole = UserRole.MEMBER


# Input models, validated before any backend request

class TaskCreate(BaseModel):
    """New task form."""

    title: str = Field(min_length=1, max_length=200)
    description: Optional[str] = Field(None, max_length=2000)
    priority: TaskPriority = TaskPriority.MEDIUM
    tags: Optional[List[str]] = None
    due_date: Optional[datetime] = None
    estimated_hours: Optional[float] = Field(None, ge=0)
    assigned_to: Optional[str] = None
    parent_task_id: Optional[str] = None

    @field_validator("title", mode="before")
    @classmethod
    def strip_title(cls, v):
        return v.strip() if isinstance(v, str) else v

    @field_validator("description", "assigned_to", "parent_task_id", mode="before")
    @classmethod
    def blank_to_none(cls, v):
        return _strip_or_none(v)

    @field_validator("tags")
    @classmethod
    def validate_tags(cls, v):
        return _clean_tags(v)

    @field_validator("due_date", mode="before")
    @classmethod
    def validate_due_date(cls, v):
        return normalize_due_date(v)

    @field_validator("estimated_hours", mode="before")
    @classmethod
    def parse_hours(cls, v):
        if isinstance(v, str):
            v = v.strip()
            if not v:
                return None
        return v


class TaskEdit(TaskCreate):
    """
    Edit form for an existing task.

    Every field is optional; only fields explicitly set are sent.
    """

    title: Optional[str] = Field(None, min_length=1, max_length=200)
    priority: Optional[TaskPriority] = None

    @field_validator("title", "priority")
    @classmethod
    def not_cleared(cls, v):
        # Optional only so it can be left out; the column is NOT NULL
        if v is None:
            raise ValueError("cannot be cleared")
        return v

    def changes(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", exclude_unset=True,
                               exclude={"assigned_to", "parent_task_id"})


class TaskUpdate(TaskEdit):
    """Partial task update accepted by the HTTP service."""

    model_config = ConfigDict(extra="forbid")

    status: Optional[TaskStatus] = None

    @field_validator("status")
    @classmethod
    def status_not_cleared(cls, v):
        if v is None:
            raise ValueError("cannot be cleared")
        return v

    def changes(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", exclude_unset=True)


class ProjectEdit(BaseModel):
    """Create/edit form for a project."""

    name: str = Field(min_length=1, max_length=100)
    description: Optional[str] = Field(None, max_length=500)

    @field_validator("name", mode="before")
    @classmethod
    def strip_name(cls, v):
        return v.strip() if isinstance(v, str) else v

    @field_validator("description", mode="before")
    @classmethod
    def blank_to_none(cls, v):
        return _strip_or_none(v)


class CommentCreate(BaseModel):
    content: str = Field(min_length=1)
    attachment_url: Optional[str] = None
    attachment_name: Optional[str] = None

    @field_validator("content", mode="before")
    @classmethod
    def strip_content(cls, v):
        return v.strip() if isinstance(v, str) else v

    @field_validator("attachment_url", "attachment_name", mode="before")
    @classmethod
    def blank_to_none(cls, v):
        return _strip_or_none(v)


class RoleUpdate(BaseModel):
    role: UserRole


M = TypeVar("M", bound=BaseModel)


def parse_input(model: Type[M], data: Union[M, Dict[str, Any]]) -> M:
    """
    Validate form input, reporting only the first violated rule.

    Raises:
        ValidationError: naming the offending field in ``rule``
    """
    if isinstance(data, model):
        return data
    try:
        return model.model_validate(data)
    except PydanticValidationError as e:
        first = e.errors()[0]
        field = ".".join(str(part) for part in first.get("loc", ())) or None
        message = f"{field}: {first['msg']}" if field else first["msg"]
        raise ValidationError(message, rule=field) from e


# Service response models

class ErrorResponse(BaseModel):
    """Standard error response model."""

    success: bool = False
    error: str
    code: Optional[int] = None
    details: Optional[Dict[str, Any]] = None


class HealthResponse(BaseModel):
    status: str
    database_connected: bool
    active_websocket_connections: int
    timestamp: str


class MetricsResponse(BaseModel):
    connections: Dict[str, Any]
    tasks: Dict[str, Any]
    performance: Dict[str, Any]
    system: Dict[str, Any]


def create_error_response(
    message: str, code: Optional[int] = None, details: Optional[Dict[str, Any]] = None
) -> Dict[str, Any]:
    """Create a standardized error response dictionary."""
    return {"success": False, "error": message, "code": code, "details": details}
