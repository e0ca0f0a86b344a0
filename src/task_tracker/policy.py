"""
Authorization Policy for task operations

Maps (role, designation, relationship to the task, requested action and
fields) to an allow/deny decision with a machine-readable reason. The policy
is stateless and performs no I/O; every mutating engine operation consults it
before touching storage.

Decision table:
- Admin / ProjectManager: create, read/update/comment any task, delete any task
- Employee with project-manager designation: create; read/update/comment tasks
  they are assigned to or created; delete tasks they created
- Employee: read/update/comment tasks assigned to them; update limited to
  status and comments
- start / stop / complete: assignee only, regardless of role
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional, Iterable, Tuple

from .errors import ForbiddenError
from .models import Principal, Task, UserRole, to_snake


class Action(str, Enum):
    CREATE = "create"
    READ = "read"
    UPDATE = "update"
    DELETE = "delete"
    START = "start"
    STOP = "stop"
    COMPLETE = "complete"
    COMMENT = "comment"
    WATCH = "watch"


# Deny reasons
INACTIVE_PRINCIPAL = "inactive_principal"
INSUFFICIENT_ROLE = "insufficient_role"
NOT_ASSIGNEE = "not_assignee"
NOT_PARTICIPANT = "not_participant"
NOT_CREATOR = "not_creator"
FIELD_NOT_PERMITTED = "field_not_permitted"
TASK_REQUIRED = "task_required"

EMPLOYEE_UPDATABLE_FIELDS = frozenset({"status", "comments"})

ASSIGNEE_ONLY_ACTIONS = frozenset({Action.START, Action.STOP, Action.COMPLETE})
SCOPED_ACTIONS = frozenset({Action.READ, Action.UPDATE, Action.COMMENT, Action.WATCH})

_VERBS = {
    Action.READ: "view",
    Action.UPDATE: "update",
    Action.COMMENT: "comment on",
    Action.WATCH: "watch",
    Action.START: "start",
    Action.STOP: "stop",
    Action.COMPLETE: "complete",
}


@dataclass(frozen=True)
class PolicyDecision:
    """Outcome of a policy evaluation."""

    allowed: bool
    reason: Optional[str] = None
    message: str = ""


ALLOW = PolicyDecision(allowed=True)


def _deny(reason: str, message: str) -> PolicyDecision:
    return PolicyDecision(allowed=False, reason=reason, message=message)


class AuthorizationPolicy:
    """Role x relationship x field permission matrix."""

    @staticmethod
    def is_manager(principal: Principal) -> bool:
        return principal.role in (UserRole.ADMIN, UserRole.PROJECT_MANAGER)

    @staticmethod
    def relationship(principal: Principal, task: Task) -> Tuple[bool, bool]:
        """Return (is_assignee, is_assigner) for the principal and task."""
        return task.assigned_to == principal.id, task.assigned_by == principal.id

    def evaluate(self, principal: Principal, action: Action,
                 task: Optional[Task] = None,
                 fields: Optional[Iterable[str]] = None) -> PolicyDecision:
        """
        Decide whether the principal may perform the action.

        Args:
            principal: Authenticated caller
            action: Requested action
            task: Target task; required for every action except create
            fields: Keys of the update body (update only)

        Returns:
            PolicyDecision with allowed flag and deny reason
        """
        if not principal.is_active:
            return _deny(INACTIVE_PRINCIPAL, "Your account is inactive")

        if action == Action.CREATE:
            if self.is_manager(principal) or principal.has_pm_designation:
                return ALLOW
            return _deny(
                INSUFFICIENT_ROLE,
                "Only administrators and project managers can create tasks",
            )

        if task is None:
            return _deny(TASK_REQUIRED, f"Action '{action.value}' requires a target task")

        is_assignee, is_assigner = self.relationship(principal, task)

        if action in ASSIGNEE_ONLY_ACTIONS:
            if is_assignee:
                return ALLOW
            return _deny(NOT_ASSIGNEE, f"You can only {_VERBS[action]} tasks assigned to you")

        if action == Action.DELETE:
            if self.is_manager(principal):
                return ALLOW
            if principal.has_pm_designation and is_assigner:
                return ALLOW
            if principal.has_pm_designation:
                return _deny(NOT_CREATOR, "You can only delete tasks you created")
            return _deny(
                INSUFFICIENT_ROLE,
                "Only administrators and project managers can delete tasks",
            )

        if action in SCOPED_ACTIONS:
            if not self.is_manager(principal):
                if principal.has_pm_designation:
                    if not (is_assignee or is_assigner):
                        return _deny(
                            NOT_PARTICIPANT,
                            f"You can only {_VERBS[action]} tasks assigned to you or created by you",
                        )
                elif not is_assignee:
                    return _deny(NOT_ASSIGNEE, f"You can only {_VERBS[action]} your own tasks")

            if action == Action.UPDATE and self._is_plain_employee(principal):
                requested = {to_snake(field) for field in (fields or ())}
                unauthorized = sorted(requested - EMPLOYEE_UPDATABLE_FIELDS)
                if unauthorized:
                    return _deny(
                        FIELD_NOT_PERMITTED,
                        f"Employees can only update: {', '.join(sorted(EMPLOYEE_UPDATABLE_FIELDS))}"
                        f" (not permitted: {', '.join(unauthorized)})",
                    )
            return ALLOW

        return _deny(INSUFFICIENT_ROLE, f"Unknown action '{action}'")

    def enforce(self, principal: Principal, action: Action,
                task: Optional[Task] = None,
                fields: Optional[Iterable[str]] = None) -> None:
        """Evaluate and raise ForbiddenError on denial."""
        decision = self.evaluate(principal, action, task=task, fields=fields)
        if not decision.allowed:
            raise ForbiddenError(decision.message, kind=decision.reason)

    def evaluate_watch(self, principal: Principal, task: Task, user_id: str) -> PolicyDecision:
        """Watch-list changes: the caller's own within read scope, anyone's for managers."""
        decision = self.evaluate(principal, Action.WATCH, task=task)
        if not decision.allowed:
            return decision
        if user_id != principal.id and not self.is_manager(principal):
            return _deny(
                INSUFFICIENT_ROLE,
                "Only administrators and project managers can change other users' watch status",
            )
        return ALLOW

    def enforce_watch(self, principal: Principal, task: Task, user_id: str) -> None:
        decision = self.evaluate_watch(principal, task, user_id)
        if not decision.allowed:
            raise ForbiddenError(decision.message, kind=decision.reason)

    def list_scope(self, principal: Principal) -> Tuple[Optional[str], bool]:
        """
        Role-based narrowing for listings and statistics.

        Returns:
            (scope_user_id, includes_assigner): no scope for managers; the
            caller's own assigned tasks for employees, plus tasks they created
            when they hold the project-manager designation
        """
        if self.is_manager(principal):
            return None, False
        return principal.id, principal.has_pm_designation

    def _is_plain_employee(self, principal: Principal) -> bool:
        return principal.role == UserRole.EMPLOYEE and not principal.has_pm_designation
