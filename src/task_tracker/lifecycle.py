"""
Task lifecycle: creation, field updates, status transitions and deletion.

States: pending -> in_progress -> {completed, cancelled}. Any pending or
in-progress task whose due date has passed is observed as overdue. Readers
derive that status on the fly; writers persist it before applying their own
change, so the stored status and the history catch up on the next write.

All business rules live here and in TimeTracker; TaskDatabase only offers the
conditional-update and append primitives they are built on.
"""

import logging
from datetime import datetime
from typing import Any, Callable, Dict, Optional, Tuple

from .database import TaskDatabase
from .errors import (
    ConflictError, NotFoundError, ValidationError, CONCURRENT_MODIFICATION,
)
from .models import (
    Comment, OVERDUE_ELIGIBLE_STATUSES, Principal, StatusChange, Task,
    TaskCreateRequest, TaskStatus, TaskUpdateRequest, UserRecord,
    effective_status, utcnow,
)
from .time_tracker import TimeTracker

logger = logging.getLogger(__name__)

DEFAULT_CATEGORY = "general"

STATUS_UPDATED_REASON = "Status updated"
TASK_COMPLETED_REASON = "Task completed"
DUE_DATE_PASSED_REASON = "Due date passed"
DUE_DATE_EXTENDED_REASON = "Due date extended"
COMPLETION_SESSION_NOTE = "Task completed"

# Re-read and retry when a conditional write lost a race
MAX_WRITE_ATTEMPTS = 3

# Update fields copied to storage unchanged
_DIRECT_FIELDS = ("title", "description", "priority", "due_date", "estimated_hours")


class TaskLifecycle:
    """Status state machine and field mutations for tasks."""

    def __init__(self, database: TaskDatabase, clock: Callable[[], datetime] = utcnow):
        """
        Args:
            database: Task storage
            clock: Source of the current time, injectable for tests
        """
        self.db = database
        self.clock = clock
        self.time_tracker = TimeTracker(database, self)

    def get(self, task_id: str) -> Task:
        task = self.db.get_task(task_id)
        if task is None:
            raise NotFoundError("Task not found")
        return task

    def effective_status(self, task: Task) -> TaskStatus:
        return effective_status(task, self.clock())

    def load_for_write(self, task_id: str, actor_id: str) -> Task:
        """Load a task and persist a pending overdue transition before it is modified."""
        return self.refresh_overdue(self.get(task_id), actor_id)

    def refresh_overdue(self, task: Task, actor_id: str) -> Task:
        """
        Persist the overdue status if the due date has passed.

        Returns:
            The task as currently stored
        """
        now = self.clock()
        if task.status not in OVERDUE_ELIGIBLE_STATUSES or task.due_date >= now:
            return task

        if self.transition(task, TaskStatus.OVERDUE, actor_id, DUE_DATE_PASSED_REASON):
            logger.info(f"Task {task.id} marked overdue (due {task.due_date.isoformat()})")
        return self.get(task.id)

    def transition(self, task: Task, target: TaskStatus, actor_id: str, reason: str,
                   fields: Optional[Dict[str, Any]] = None,
                   close_session_notes: Optional[str] = None) -> bool:
        """
        Move the task from its current stored status to ``target``.

        With ``close_session_notes`` any open time-tracking session is closed
        in the same write.

        Returns:
            False if the stored status changed since ``task`` was read
        """
        change = StatusChange(
            status=target, changed_by=actor_id, changed_at=self.clock(), reason=reason
        )
        return self.db.transition_status(
            task.id, task.status, change, fields, close_session_notes=close_session_notes
        )

    def validate_assignee(self, user_id: str) -> UserRecord:
        """Resolve an assignment target; it must exist and be active."""
        user = self.db.get_user(user_id)
        if user is None:
            raise ValidationError.for_field("assignedTo", "Assigned user not found", user_id)
        if not user.is_active:
            raise ValidationError.for_field(
                "assignedTo", "Cannot assign task to inactive user", user_id
            )
        return user

    def create(self, request: TaskCreateRequest, assigner: Principal) -> Task:
        """
        Create a pending task assigned by ``assigner``.

        No history entry is written on creation; history starts at the first
        transition.
        """
        self.validate_assignee(request.assigned_to)
        now = self.clock()
        task = Task(
            title=request.title,
            description=request.description,
            assigned_to=request.assigned_to,
            assigned_by=assigner.id,
            priority=request.priority,
            due_date=request.due_date,
            estimated_hours=request.estimated_hours,
            category=request.category or DEFAULT_CATEGORY,
            tags=request.tags,
            custom_fields=dict(request.custom_fields),
            created_at=now,
            updated_at=now,
        )
        stored = self.db.insert_task(task)
        logger.info(f"Task {stored.id} created by {assigner.id} for {stored.assigned_to}")
        return stored

    def update_fields(self, task_id: str, request: TaskUpdateRequest, actor: Principal) -> Task:
        """
        Apply a partial update.

        A ``status`` change appends one history entry; completing through an
        update behaves like ``complete``. ``comments`` are appended, never
        replaced. Moving the due date of an overdue task into the future
        returns it to in_progress (if it was started) or pending.

        Raises:
            ValidationError: Empty update or invalid new assignee
            NotFoundError: Task does not exist
        """
        changes = request.changes()
        if not changes:
            raise ValidationError("No fields provided for update")
        new_assignee = changes.get("assigned_to")
        if new_assignee is not None and new_assignee != self.get(task_id).assigned_to:
            # Checked before the overdue catch-up is written
            self.validate_assignee(new_assignee)

        for _ in range(MAX_WRITE_ATTEMPTS):
            task = self.load_for_write(task_id, actor.id)
            now = self.clock()
            fields, status_change = self._plan_update(task, changes, actor, now)
            comments = [
                Comment(author=actor.id, message=message, timestamp=now)
                for message in changes.get("comments") or []
            ]

            updated = self.db.update_task_atomic(
                task.id,
                fields=fields,
                status_change=status_change,
                expected_status=task.status if status_change is not None else None,
                comments=comments,
                updated_at=now,
                close_session_notes=(
                    COMPLETION_SESSION_NOTE
                    if status_change is not None and status_change.status == TaskStatus.COMPLETED
                    else None
                ),
            )
            if updated:
                logger.info(
                    f"Task {task.id} updated by {actor.id}: {', '.join(sorted(changes))}"
                )
                return self.get(task.id)

        self.get(task_id)
        raise ConflictError(
            "Task was modified concurrently, please retry", kind=CONCURRENT_MODIFICATION
        )

    def _plan_update(self, task: Task, changes: Dict[str, Any], actor: Principal,
                     now: datetime) -> Tuple[Dict[str, Any], Optional[StatusChange]]:
        fields: Dict[str, Any] = {
            name: changes[name] for name in _DIRECT_FIELDS if name in changes
        }
        if "category" in changes:
            fields["category"] = changes["category"] or DEFAULT_CATEGORY
        if "tags" in changes:
            fields["tags"] = changes["tags"] or []
        if "custom_fields" in changes:
            # Merge into the existing mapping; an explicit null clears it
            incoming = changes["custom_fields"]
            fields["custom_fields"] = {**task.custom_fields, **incoming} if incoming is not None else {}

        new_assignee = changes.get("assigned_to")
        if new_assignee is not None and new_assignee != task.assigned_to:
            self.validate_assignee(new_assignee)
            fields["assigned_to"] = new_assignee
            fields["assigned_by"] = actor.id

        target: Optional[TaskStatus] = None
        reason = STATUS_UPDATED_REASON
        requested = changes.get("status")
        if requested is not None:
            if requested != task.status:
                target = requested
        elif (task.status == TaskStatus.OVERDUE and "due_date" in changes
              and changes["due_date"] >= now):
            target = TaskStatus.IN_PROGRESS if task.start_date else TaskStatus.PENDING
            reason = DUE_DATE_EXTENDED_REASON

        if target is None:
            return fields, None

        if target == TaskStatus.COMPLETED:
            fields["completed_date"] = now
        elif task.status == TaskStatus.COMPLETED:
            fields["completed_date"] = None
        if target == TaskStatus.IN_PROGRESS and task.start_date is None:
            fields["start_date"] = now

        change = StatusChange(status=target, changed_by=actor.id, changed_at=now, reason=reason)
        return fields, change

    def complete(self, task_id: str, actor: Principal) -> Task:
        """
        Mark the task completed, closing an active session.

        The session close and the status change are one write, so a start
        racing with completion cannot leave a completed task with an open
        session. Always yields status completed with completedDate set, no
        active session, and exactly one new history entry.
        """
        for _ in range(MAX_WRITE_ATTEMPTS):
            task = self.load_for_write(task_id, actor.id)
            now = self.clock()
            if self.transition(task, TaskStatus.COMPLETED, actor.id, TASK_COMPLETED_REASON,
                               fields={"completed_date": now},
                               close_session_notes=COMPLETION_SESSION_NOTE):
                logger.info(f"Task {task.id} completed by {actor.id}")
                return self.get(task.id)

        self.get(task_id)
        raise ConflictError(
            "Task was modified concurrently, please retry", kind=CONCURRENT_MODIFICATION
        )

    def add_comment(self, task_id: str, actor: Principal, message: str) -> Task:
        task = self.load_for_write(task_id, actor.id)
        comment = Comment(author=actor.id, message=message, timestamp=self.clock())
        if self.db.append_comment(task.id, comment) is None:
            raise NotFoundError("Task not found")
        logger.info(f"Comment added to task {task.id} by {actor.id}")
        return self.get(task.id)

    def add_watcher(self, task_id: str, user_id: str) -> Tuple[Task, bool]:
        """
        Add a watcher; already watching is a no-op.

        Returns:
            (task, added) where ``added`` is False when the user was already watching
        """
        task = self.get(task_id)
        if self.db.get_user(user_id) is None:
            raise ValidationError.for_field("userId", "User not found", user_id)
        added = self.db.add_watcher(task.id, user_id)
        if added:
            logger.info(f"User {user_id} now watching task {task.id}")
        return self.get(task.id), added

    def remove_watcher(self, task_id: str, user_id: str) -> Tuple[Task, bool]:
        task = self.get(task_id)
        removed = self.db.remove_watcher(task.id, user_id)
        if removed:
            logger.info(f"User {user_id} stopped watching task {task.id}")
        return self.get(task.id), removed

    def delete(self, task_id: str, actor: Principal) -> None:
        if not self.db.delete_task(task_id):
            raise NotFoundError("Task not found")
        logger.info(f"Task {task_id} deleted by {actor.id}")
