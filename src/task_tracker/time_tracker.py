"""
Time tracking for tasks.

Start and stop are each a single conditional write at the storage boundary,
so two concurrent starts on the same task cannot both succeed and a stop
always closes exactly the session it observed.
"""

import logging
from typing import Optional, Tuple

from .database import TaskDatabase
from .errors import ConflictError, NotFoundError, ALREADY_ACTIVE, NO_ACTIVE_SESSION
from .models import Principal, Task, TaskStatus, TimeSession

logger = logging.getLogger(__name__)

WORK_STARTED_REASON = "Work started"


class TimeTracker:
    """
    Start/stop operations on a task's time-tracking sub-state.

    The tracker shares its clock with the owning TaskLifecycle and goes through
    it for the Pending -> InProgress promotion on start.
    """

    def __init__(self, database: TaskDatabase, lifecycle):
        """
        Args:
            database: Storage providing the atomic session primitives
            lifecycle: TaskLifecycle used for task loading and status transitions
        """
        self.db = database
        self.lifecycle = lifecycle

    def start(self, task_id: str, actor: Principal) -> Task:
        """
        Open a time-tracking session on the task.

        The session write comes first; a refused start leaves the stored task
        untouched. A passed due date is recorded only after the start succeeds.

        Raises:
            NotFoundError: Task does not exist
            ConflictError: A session is already active (kind ``already_active``)
        """
        task = self.lifecycle.get(task_id)
        now = self.lifecycle.clock()

        if not self.db.start_session_atomic(task.id, now):
            self._raise_if_missing(task.id)
            raise ConflictError(
                "Time tracking is already active for this task", kind=ALREADY_ACTIVE
            )

        task = self.lifecycle.refresh_overdue(task, actor.id)
        if task.status == TaskStatus.PENDING:
            self.lifecycle.transition(
                task, TaskStatus.IN_PROGRESS, actor.id, WORK_STARTED_REASON,
                fields={"start_date": task.start_date or now},
            )

        logger.info(f"Time tracking started on task {task.id} by {actor.id}")
        return self.lifecycle.get(task.id)

    def stop(self, task_id: str, actor: Principal,
             notes: Optional[str] = None) -> Tuple[Task, TimeSession]:
        """
        Close the active session and fold its duration into the total.

        As with ``start``, a refused stop writes nothing.

        Returns:
            (updated task, appended session)

        Raises:
            NotFoundError: Task does not exist
            ConflictError: No session is active (kind ``no_active_session``)
        """
        task = self.lifecycle.get(task_id)
        session = self.stop_active(task.id, notes)
        if session is None:
            self._raise_if_missing(task.id)
            raise ConflictError(
                "No active time tracking session for this task", kind=NO_ACTIVE_SESSION
            )

        logger.info(
            f"Time tracking stopped on task {task.id} by {actor.id} "
            f"({session.duration} ms)"
        )
        return self.lifecycle.refresh_overdue(self.lifecycle.get(task.id), actor.id), session

    def stop_active(self, task_id: str, notes: Optional[str] = None) -> Optional[TimeSession]:
        """Close the active session if there is one; None when nothing was active."""
        return self.db.stop_session_atomic(task_id, self.lifecycle.clock(), notes or "")

    def _raise_if_missing(self, task_id: str) -> None:
        if self.db.get_task(task_id) is None:
            raise NotFoundError("Task not found")
