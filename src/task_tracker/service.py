"""
Task service: the entry point for every task operation.

Each operation receives the principal resolved by ``authenticate`` and
consults AuthorizationPolicy before running the lifecycle or time-tracking
operation. The NotificationDispatcher is informed last.
Notification failures are logged and never change the operation's result.
"""

import logging
from datetime import datetime
from typing import Any, Callable, Dict, Optional, Tuple

from .database import TaskDatabase
from .errors import AuthenticationError
from .lifecycle import TaskLifecycle
from .models import (
    Principal, Task, TaskCreateRequest, TaskListQuery, TaskPage, TaskStats, TaskStatus,
    TaskUpdateRequest, TimeSession, task_to_public_dict, utcnow,
)
from .notifications import NotificationDispatcher
from .policy import Action, AuthorizationPolicy
from .query import TaskQuery

logger = logging.getLogger(__name__)


class TaskService:
    """
    Orchestrates policy, lifecycle, time tracking, queries and notifications.

    Standard Mode Assumptions:
    - The principal has been resolved through ``authenticate`` before any call
    - Storage is shared with other services; every write is a conditional update
    - Notifications run after the mutation is committed
    """

    def __init__(self, database: TaskDatabase,
                 dispatcher: Optional[NotificationDispatcher] = None,
                 clock: Callable[[], datetime] = utcnow,
                 max_page_size: int = 100):
        """
        Args:
            database: Task and user storage
            dispatcher: Notification delivery, None to disable notifications
            clock: Source of the current time, injectable for tests
            max_page_size: Upper bound for the listing ``limit``
        """
        self.db = database
        self.dispatcher = dispatcher
        self.clock = clock
        self.policy = AuthorizationPolicy()
        self.lifecycle = TaskLifecycle(database, clock)
        self.time_tracker = self.lifecycle.time_tracker
        self.query = TaskQuery(database, self.policy, clock, max_page_size=max_page_size)

    def authenticate(self, user_id: Optional[str]) -> Principal:
        """
        Resolve a user id into an active principal.

        Raises:
            AuthenticationError: Missing, unknown or inactive user
        """
        if not user_id or not user_id.strip():
            raise AuthenticationError("Authentication required")
        user = self.db.get_user(user_id.strip())
        if user is None:
            raise AuthenticationError("Invalid user")
        if not user.is_active:
            raise AuthenticationError("Your account is inactive")
        return user.to_principal()

    def present(self, task: Task) -> Dict[str, Any]:
        """Public representation with effective status and derived values."""
        return task_to_public_dict(task, self.clock())

    async def list_tasks(self, principal: Principal, criteria: TaskListQuery) -> TaskPage:
        return self.query.list(principal, criteria)

    async def get_stats(self, principal: Principal) -> TaskStats:
        return self.query.stats(principal)

    async def get_task(self, principal: Principal, task_id: str) -> Task:
        task = self.lifecycle.get(task_id)
        self.policy.enforce(principal, Action.READ, task)
        return task

    async def create_task(self, principal: Principal, request: TaskCreateRequest) -> Task:
        self.policy.enforce(principal, Action.CREATE)
        task = self.lifecycle.create(request, principal)
        await self._dispatch("task_assigned", task, principal)
        return task

    async def update_task(self, principal: Principal, task_id: str,
                          request: TaskUpdateRequest) -> Task:
        """
        Apply a policy-checked partial update.

        The whole request is denied when any field is outside the caller's
        permitted set; nothing is applied in that case.
        """
        before = self.lifecycle.get(task_id)
        self.policy.enforce(principal, Action.UPDATE, before, fields=request.model_fields_set)

        task = self.lifecycle.update_fields(task_id, request, principal)

        if task.assigned_to != before.assigned_to:
            await self._dispatch("task_assigned", task, principal)
        if task.status == TaskStatus.COMPLETED and before.status != TaskStatus.COMPLETED:
            await self._dispatch("task_completed", task, principal)
        return task

    async def delete_task(self, principal: Principal, task_id: str) -> None:
        task = self.lifecycle.get(task_id)
        self.policy.enforce(principal, Action.DELETE, task)
        self.lifecycle.delete(task_id, principal)

    async def start_task(self, principal: Principal, task_id: str) -> Task:
        task = self.lifecycle.get(task_id)
        self.policy.enforce(principal, Action.START, task)
        task = self.time_tracker.start(task_id, principal)
        await self._dispatch("task_started", task, principal)
        return task

    async def stop_task(self, principal: Principal, task_id: str,
                        notes: Optional[str] = None) -> Tuple[Task, TimeSession]:
        task = self.lifecycle.get(task_id)
        self.policy.enforce(principal, Action.STOP, task)
        return self.time_tracker.stop(task_id, principal, notes)

    async def complete_task(self, principal: Principal, task_id: str) -> Task:
        task = self.lifecycle.get(task_id)
        self.policy.enforce(principal, Action.COMPLETE, task)
        task = self.lifecycle.complete(task_id, principal)
        await self._dispatch("task_completed", task, principal)
        return task

    async def add_comment(self, principal: Principal, task_id: str, message: str) -> Task:
        task = self.lifecycle.get(task_id)
        self.policy.enforce(principal, Action.COMMENT, task)
        return self.lifecycle.add_comment(task_id, principal, message)

    async def add_watcher(self, principal: Principal, task_id: str,
                          user_id: Optional[str] = None) -> Tuple[Task, bool]:
        """Add a watcher (the caller by default); a no-op when already watching."""
        target = user_id or principal.id
        task = self.lifecycle.get(task_id)
        self.policy.enforce_watch(principal, task, target)
        return self.lifecycle.add_watcher(task_id, target)

    async def remove_watcher(self, principal: Principal, task_id: str,
                             user_id: Optional[str] = None) -> Tuple[Task, bool]:
        target = user_id or principal.id
        task = self.lifecycle.get(task_id)
        self.policy.enforce_watch(principal, task, target)
        return self.lifecycle.remove_watcher(task_id, target)

    async def _dispatch(self, event: str, task: Task, actor: Principal) -> None:
        """
        Inform the dispatcher without affecting the operation result.

        Args:
            event: Dispatcher method name (task_assigned, task_started, task_completed)
            task: Task after the committed mutation
            actor: Principal who triggered it
        """
        if self.dispatcher is None:
            return
        try:
            await getattr(self.dispatcher, event)(task, actor)
        except Exception as e:
            logger.warning(f"Failed to dispatch {event} for task {task.id}: {e}")
