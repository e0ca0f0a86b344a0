"""
Pydantic models for Task Tracker request/response validation and storage.

Provides the task entity with its time-tracking, status-history and comment
sub-records, the authenticated principal, listing criteria, request bodies
for the HTTP surface, and the derived task values (overdue, hours spent,
days until due) that are computed on demand and never persisted.
"""

import math
import re
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Optional, Dict, Any, List, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel


class TaskStatus(str, Enum):
    """Enum for task lifecycle states."""

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    OVERDUE = "overdue"  # Derived from the due date, never requested directly


class TaskPriority(str, Enum):
    """Enum for task priority levels."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"


class UserRole(str, Enum):
    """Enum for principal roles."""

    ADMIN = "admin"
    PROJECT_MANAGER = "project_manager"
    EMPLOYEE = "employee"


class NotificationType(str, Enum):
    """Enum for task notification kinds."""

    TASK_ASSIGNED = "task_assigned"
    TASK_STARTED = "task_started"
    TASK_COMPLETED = "task_completed"


TERMINAL_STATUSES = frozenset({TaskStatus.COMPLETED, TaskStatus.CANCELLED})

# Stored statuses that become overdue once the due date passes
OVERDUE_ELIGIBLE_STATUSES = frozenset({TaskStatus.PENDING, TaskStatus.IN_PROGRESS})

PRIORITY_RANK = {
    TaskPriority.LOW: 0,
    TaskPriority.MEDIUM: 1,
    TaskPriority.HIGH: 2,
    TaskPriority.URGENT: 3,
}

PROJECT_MANAGER_DESIGNATION = "project_manager"

SORTABLE_FIELDS = frozenset({
    "created_at", "updated_at", "due_date", "title", "status", "priority",
    "completed_date", "estimated_hours", "total_time_spent",
})

MS_PER_HOUR = 60 * 60 * 1000


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Normalize a datetime to aware UTC; naive values are taken as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def new_task_id() -> str:
    return uuid.uuid4().hex


def normalize_tags(tags: Optional[List[str]]) -> List[str]:
    """Trim and lower-case tags, dropping empties and duplicates (first wins)."""
    normalized: List[str] = []
    for tag in tags or []:
        if not isinstance(tag, str):
            raise ValueError("All tags must be strings")
        value = tag.strip().lower()
        if value and value not in normalized:
            normalized.append(value)
    return normalized


def to_snake(name: str) -> str:
    return re.sub(r"(?<!^)(?=[A-Z])", "_", name).lower()


class CamelModel(BaseModel):
    """Base model serialized with camelCase keys, accepting either casing on input."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# Entity records


class TimeSession(CamelModel):
    """One contiguous start -> stop interval of tracked work."""

    start_time: datetime
    end_time: datetime
    duration: int = Field(ge=0, description="Session length in milliseconds")
    notes: str = ""

    @field_validator("start_time", "end_time")
    @classmethod
    def validate_utc(cls, v):
        return ensure_utc(v)


class TimeTracking(CamelModel):
    """Time-tracking sub-state of a task."""

    total_time_spent: int = Field(default=0, ge=0, description="Accumulated milliseconds")
    sessions: List[TimeSession] = Field(default_factory=list)
    is_active: bool = False
    current_session_start: Optional[datetime] = None

    @field_validator("current_session_start")
    @classmethod
    def validate_utc(cls, v):
        return ensure_utc(v)


class StatusChange(CamelModel):
    """Audit record appended on every status change."""

    status: TaskStatus
    changed_by: str
    changed_at: datetime
    reason: str = "Status updated"

    @field_validator("changed_at")
    @classmethod
    def validate_utc(cls, v):
        return ensure_utc(v)


class Comment(CamelModel):
    author: str
    message: str
    timestamp: datetime

    @field_validator("timestamp")
    @classmethod
    def validate_utc(cls, v):
        return ensure_utc(v)


class Task(CamelModel):
    """
    Task entity as stored by the engine.

    ``status`` holds the stored status; readers should go through
    ``effective_status`` since overdue is derived from ``due_date``.
    Every instance gets its own ``custom_fields`` mapping.
    """

    id: str = Field(default_factory=new_task_id)
    title: str
    description: str
    assigned_to: str
    assigned_by: str
    status: TaskStatus = TaskStatus.PENDING
    priority: TaskPriority = TaskPriority.MEDIUM
    due_date: datetime
    start_date: Optional[datetime] = None
    completed_date: Optional[datetime] = None
    estimated_hours: Optional[float] = Field(default=None, ge=0)
    time_tracking: TimeTracking = Field(default_factory=TimeTracking)
    status_history: List[StatusChange] = Field(default_factory=list)
    comments: List[Comment] = Field(default_factory=list)
    watchers: List[str] = Field(default_factory=list)
    category: str = "general"
    tags: List[str] = Field(default_factory=list)
    custom_fields: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @field_validator("due_date", "start_date", "completed_date", "created_at", "updated_at")
    @classmethod
    def validate_utc(cls, v):
        return ensure_utc(v)

    @field_validator("tags")
    @classmethod
    def validate_tags(cls, v):
        return normalize_tags(v)


class UserRecord(CamelModel):
    """User as resolved by the user lookup collaborator."""

    id: str = Field(min_length=1)
    email: str = Field(min_length=3)
    first_name: str = ""
    last_name: str = ""
    role: UserRole = UserRole.EMPLOYEE
    designation: Optional[str] = None
    is_active: bool = True

    def to_principal(self) -> "Principal":
        return Principal(
            id=self.id, role=self.role, designation=self.designation, is_active=self.is_active
        )


class Principal(CamelModel):
    """Authenticated caller supplied by the identity provider."""

    id: str
    role: UserRole
    designation: Optional[str] = None
    is_active: bool = True

    @property
    def has_pm_designation(self) -> bool:
        """Employee holding the project-manager designation."""
        return self.role == UserRole.EMPLOYEE and self.designation == PROJECT_MANAGER_DESIGNATION


# Derived values


def is_overdue(task: Task, now: Optional[datetime] = None) -> bool:
    """True when the due date has passed and no terminal status has been reached."""
    if task.status == TaskStatus.OVERDUE:
        return True
    if task.status not in OVERDUE_ELIGIBLE_STATUSES:
        return False
    return task.due_date < (now or utcnow())


def effective_status(task: Task, now: Optional[datetime] = None) -> TaskStatus:
    """Status observed by readers."""
    return TaskStatus.OVERDUE if is_overdue(task, now) else task.status


def total_hours_spent(task: Task) -> float:
    return round(task.time_tracking.total_time_spent / MS_PER_HOUR, 2)


def days_until_due(task: Task, now: Optional[datetime] = None) -> int:
    remaining = (task.due_date - (now or utcnow())).total_seconds()
    return math.ceil(remaining / 86400)


def is_being_tracked(task: Task) -> bool:
    tracking = task.time_tracking
    return tracking.is_active and tracking.current_session_start is not None


def task_to_public_dict(task: Task, now: Optional[datetime] = None) -> Dict[str, Any]:
    """Serialize a task for callers with the effective status and derived values."""
    now = now or utcnow()
    data = task.model_dump(by_alias=True, mode="json")
    data["status"] = effective_status(task, now).value
    data["isOverdue"] = is_overdue(task, now)
    data["totalHoursSpent"] = total_hours_spent(task)
    data["daysUntilDue"] = days_until_due(task, now)
    data["isBeingTracked"] = is_being_tracked(task)
    return data


# Request models


class TaskCreateRequest(CamelModel):
    """Request model for creating a task."""

    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, str_strip_whitespace=True
    )

    title: str = Field(min_length=1, max_length=200, description="Task title")
    description: str = Field(min_length=1, max_length=2000, description="Task description")
    assigned_to: str = Field(min_length=1, description="Assignee user ID")
    priority: TaskPriority = TaskPriority.MEDIUM
    due_date: datetime
    estimated_hours: Optional[float] = Field(default=None, ge=0)
    category: Optional[str] = Field(default=None, max_length=100)
    tags: List[str] = Field(default_factory=list)
    custom_fields: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("due_date")
    @classmethod
    def validate_due_date(cls, v):
        return ensure_utc(v)

    @field_validator("tags")
    @classmethod
    def validate_tags(cls, v):
        return normalize_tags(v)

    @field_validator("category")
    @classmethod
    def validate_category(cls, v):
        return v or None


class TaskUpdateRequest(CamelModel):
    """
    Partial update of a task.

    Only fields present in the body are applied. ``comments`` appends new
    comments authored by the caller; existing comments are never replaced.
    """

    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True,
        str_strip_whitespace=True, extra="forbid",
    )

    title: Optional[str] = Field(default=None, min_length=1, max_length=200)
    description: Optional[str] = Field(default=None, min_length=1, max_length=2000)
    assigned_to: Optional[str] = Field(default=None, min_length=1)
    status: Optional[TaskStatus] = None
    priority: Optional[TaskPriority] = None
    due_date: Optional[datetime] = None
    estimated_hours: Optional[float] = Field(default=None, ge=0)
    category: Optional[str] = Field(default=None, max_length=100)
    tags: Optional[List[str]] = None
    custom_fields: Optional[Dict[str, Any]] = None
    comments: Optional[Union[str, List[str]]] = None

    @field_validator("status")
    @classmethod
    def validate_status(cls, v):
        if v == TaskStatus.OVERDUE:
            raise ValueError("Overdue is derived from the due date and cannot be set")
        return v

    @field_validator("due_date")
    @classmethod
    def validate_due_date(cls, v):
        return ensure_utc(v)

    @field_validator("tags")
    @classmethod
    def validate_tags(cls, v):
        return None if v is None else normalize_tags(v)

    @field_validator("comments")
    @classmethod
    def validate_comments(cls, v):
        if v is None:
            return None
        messages = [v] if isinstance(v, str) else v
        cleaned = []
        for message in messages:
            message = message.strip()
            if not message:
                raise ValueError("Comment cannot be empty")
            if len(message) > 1000:
                raise ValueError("Comment cannot exceed 1000 characters")
            cleaned.append(message)
        return cleaned

    @model_validator(mode="after")
    def validate_required_not_null(self):
        for name in ("title", "description", "assigned_to", "status", "priority", "due_date", "category"):
            if name in self.model_fields_set and getattr(self, name) is None:
                raise ValueError(f"{to_camel(name)} cannot be null")
        return self

    def changes(self) -> Dict[str, Any]:
        """Field values explicitly present in the request, keyed by field name."""
        return {name: getattr(self, name) for name in self.model_fields_set}


class StopTimerRequest(CamelModel):
    notes: Optional[str] = Field(default=None, max_length=500)


class CommentRequest(CamelModel):
    message: str = Field(min_length=1, max_length=1000)

    @field_validator("message")
    @classmethod
    def validate_message(cls, v):
        if not v.strip():
            raise ValueError("Comment cannot be empty")
        return v.strip()


class WatcherRequest(CamelModel):
    user_id: Optional[str] = None


class TaskListQuery(CamelModel):
    """Listing criteria: filters, sorting and pagination."""

    page: int = Field(default=1, ge=1)
    limit: int = Field(default=10, ge=1)
    status: Optional[TaskStatus] = None
    priority: Optional[TaskPriority] = None
    assigned_to: Optional[str] = None
    assigned_by: Optional[str] = None
    search: Optional[str] = None
    sort_by: str = "created_at"
    sort_order: str = "desc"
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None

    @field_validator("sort_by")
    @classmethod
    def validate_sort_by(cls, v):
        field = to_snake(v.strip())
        if field not in SORTABLE_FIELDS:
            raise ValueError(f"sortBy must be one of: {', '.join(sorted(to_camel(f) for f in SORTABLE_FIELDS))}")
        return field

    @field_validator("sort_order")
    @classmethod
    def validate_sort_order(cls, v):
        value = v.strip().lower()
        if value not in ("asc", "desc"):
            raise ValueError("sortOrder must be 'asc' or 'desc'")
        return value

    @field_validator("start_date", "end_date")
    @classmethod
    def validate_dates(cls, v):
        return ensure_utc(v)

    @field_validator("search")
    @classmethod
    def validate_search(cls, v):
        if v is None:
            return None
        return v.strip() or None

    @model_validator(mode="after")
    def validate_date_range(self):
        if self.start_date and self.end_date and self.start_date > self.end_date:
            raise ValueError("startDate must not be after endDate")
        return self


class TaskFilter(BaseModel):
    """
    Storage-facing filter built by TaskQuery.

    The scope fields carry role-based narrowing; the remaining fields are the
    caller's criteria and are AND-combined with the scope.
    """

    status: Optional[TaskStatus] = None
    priority: Optional[TaskPriority] = None
    assigned_to: Optional[str] = None
    assigned_by: Optional[str] = None
    search: Optional[str] = None
    created_from: Optional[datetime] = None
    created_to: Optional[datetime] = None
    scope_user_id: Optional[str] = None
    scope_includes_assigner: bool = False


# Response models


class Pagination(CamelModel):
    current_page: int
    total_pages: int
    total_items: int
    items_per_page: int
    has_next_page: bool
    has_prev_page: bool


class TaskPage(BaseModel):
    tasks: List[Task]
    pagination: Pagination


class TaskStats(CamelModel):
    total_tasks: int
    by_status: Dict[str, int]
    by_priority: Dict[str, int]
    overdue_tasks: int
    active_timers: int


class ErrorResponse(BaseModel):
    """Standard error response envelope."""

    success: bool = False
    message: str
    error: Optional[str] = None
    errors: Optional[List[Dict[str, Any]]] = None


class SuccessResponse(BaseModel):
    """Standard success response envelope."""

    success: bool = True
    message: str
    data: Optional[Dict[str, Any]] = None


def create_error_response(
    message: str, error: Optional[str] = None, errors: Optional[List[Dict[str, Any]]] = None
) -> Dict[str, Any]:
    """Create a standardized error response dictionary."""
    response: Dict[str, Any] = {"success": False, "message": message}
    if error is not None:
        response["error"] = error
    if errors:
        response["errors"] = errors
    return response


def create_success_response(message: str, data: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """Create a standardized success response dictionary."""
    return {"success": True, "message": message, "data": data}
