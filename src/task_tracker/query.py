"""
Task listing and statistics with role-based scoping.
"""

import math
from datetime import datetime
from typing import Callable

from .database import TaskDatabase
from .errors import ValidationError
from .models import (
    Pagination, Principal, TaskFilter, TaskListQuery, TaskPage, TaskPriority, TaskStats,
    TaskStatus, utcnow,
)
from .policy import AuthorizationPolicy


class TaskQuery:
    """Builds storage filters from role scope plus caller criteria."""

    def __init__(self, database: TaskDatabase, policy: AuthorizationPolicy,
                 clock: Callable[[], datetime] = utcnow, max_page_size: int = 100):
        self.db = database
        self.policy = policy
        self.clock = clock
        self.max_page_size = max_page_size

    def build_filter(self, principal: Principal, criteria: TaskListQuery) -> TaskFilter:
        """
        Combine the principal's scope with the listing criteria.

        Admins and project managers are unscoped; employees see tasks assigned
        to them, widened to tasks they created when they hold the
        project-manager designation. Criteria always narrow the scope further.
        """
        scope_user_id, includes_assigner = self.policy.list_scope(principal)
        return TaskFilter(
            status=criteria.status,
            priority=criteria.priority,
            assigned_to=criteria.assigned_to,
            assigned_by=criteria.assigned_by,
            search=criteria.search,
            created_from=criteria.start_date,
            created_to=criteria.end_date,
            scope_user_id=scope_user_id,
            scope_includes_assigner=includes_assigner,
        )

    def list(self, principal: Principal, criteria: TaskListQuery) -> TaskPage:
        if criteria.limit > self.max_page_size:
            raise ValidationError.for_field(
                "limit", f"limit must be between 1 and {self.max_page_size}", criteria.limit
            )
        task_filter = self.build_filter(principal, criteria)
        now = self.clock()

        total_items = self.db.count_tasks(task_filter, now)
        tasks = self.db.find_tasks(
            task_filter,
            now,
            sort_field=criteria.sort_by,
            descending=criteria.sort_order == "desc",
            skip=(criteria.page - 1) * criteria.limit,
            limit=criteria.limit,
        )
        total_pages = math.ceil(total_items / criteria.limit) if total_items else 0
        pagination = Pagination(
            current_page=criteria.page,
            total_pages=total_pages,
            total_items=total_items,
            items_per_page=criteria.limit,
            has_next_page=criteria.page < total_pages,
            has_prev_page=criteria.page > 1,
        )
        return TaskPage(tasks=tasks, pagination=pagination)

    def stats(self, principal: Principal) -> TaskStats:
        """
        Aggregate the principal's visible tasks by effective status and priority.

        Every status and priority appears in the breakdown, with zero counts
        where nothing matches.
        """
        scope_user_id, includes_assigner = self.policy.list_scope(principal)
        task_filter = TaskFilter(
            scope_user_id=scope_user_id, scope_includes_assigner=includes_assigner
        )
        now = self.clock()

        status_counts = self.db.count_by_status(task_filter, now)
        priority_counts = self.db.count_by_priority(task_filter, now)
        return TaskStats(
            total_tasks=self.db.count_tasks(task_filter, now),
            by_status={status.value: status_counts.get(status.value, 0) for status in TaskStatus},
            by_priority={
                priority.value: priority_counts.get(priority.value, 0) for priority in TaskPriority
            },
            overdue_tasks=self.db.count_overdue(task_filter, now),
            active_timers=self.db.count_active_timers(task_filter, now),
        )
