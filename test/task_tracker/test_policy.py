"""
Tests for AuthorizationPolicy: the role x relationship x field decision table.
"""

from datetime import timedelta

import pytest

from conftest import FIXED_NOW
from task_tracker.errors import ForbiddenError
from task_tracker.models import Principal, Task, UserRole
from task_tracker.policy import (
    Action, AuthorizationPolicy, FIELD_NOT_PERMITTED, INACTIVE_PRINCIPAL, INSUFFICIENT_ROLE,
    NOT_ASSIGNEE, NOT_CREATOR, NOT_PARTICIPANT,
)

ADMIN = Principal(id="admin", role=UserRole.ADMIN)
PM = Principal(id="pm", role=UserRole.PROJECT_MANAGER)
LEAD = Principal(id="lead", role=UserRole.EMPLOYEE, designation="project_manager")
EMP = Principal(id="emp", role=UserRole.EMPLOYEE)
OTHER = Principal(id="emp2", role=UserRole.EMPLOYEE)


def _task(assigned_to="emp", assigned_by="lead") -> Task:
    return Task(
        title="Task", description="Description", assigned_to=assigned_to,
        assigned_by=assigned_by, due_date=FIXED_NOW + timedelta(days=1),
    )


@pytest.fixture
def policy():
    return AuthorizationPolicy()


class TestCreate:

    @pytest.mark.parametrize("principal", [ADMIN, PM, LEAD])
    def test_managers_and_designated_employees_may_create(self, policy, principal):
        assert policy.evaluate(principal, Action.CREATE).allowed

    def test_plain_employee_may_not_create(self, policy):
        decision = policy.evaluate(EMP, Action.CREATE)
        assert not decision.allowed
        assert decision.reason == INSUFFICIENT_ROLE

    def test_inactive_principal_denied(self, policy):
        inactive = Principal(id="admin", role=UserRole.ADMIN, is_active=False)
        decision = policy.evaluate(inactive, Action.CREATE)
        assert decision.reason == INACTIVE_PRINCIPAL


class TestReadScope:

    @pytest.mark.parametrize("principal", [ADMIN, PM])
    def test_managers_read_everything(self, policy, principal):
        assert policy.evaluate(principal, Action.READ, _task("emp2", "admin")).allowed

    def test_designated_employee_reads_own_and_created(self, policy):
        assert policy.evaluate(LEAD, Action.READ, _task("emp", "lead")).allowed
        assert policy.evaluate(LEAD, Action.READ, _task("lead", "pm")).allowed
        decision = policy.evaluate(LEAD, Action.READ, _task("emp", "pm"))
        assert decision.reason == NOT_PARTICIPANT

    def test_employee_reads_only_assigned(self, policy):
        assert policy.evaluate(EMP, Action.READ, _task("emp")).allowed
        decision = policy.evaluate(OTHER, Action.READ, _task("emp"))
        assert decision.reason == NOT_ASSIGNEE

    def test_employee_who_created_but_is_not_assigned_is_denied(self, policy):
        decision = policy.evaluate(EMP, Action.COMMENT, _task("emp2", "emp"))
        assert not decision.allowed


class TestUpdateFields:

    def test_employee_may_update_status_and_comments(self, policy):
        decision = policy.evaluate(EMP, Action.UPDATE, _task(), fields={"status", "comments"})
        assert decision.allowed

    def test_employee_field_outside_whitelist_denies_whole_request(self, policy):
        decision = policy.evaluate(EMP, Action.UPDATE, _task(), fields={"status", "title"})
        assert not decision.allowed
        assert decision.reason == FIELD_NOT_PERMITTED
        assert "status, comments" in decision.message

    def test_camel_case_field_names_are_checked(self, policy):
        decision = policy.evaluate(EMP, Action.UPDATE, _task(), fields={"dueDate"})
        assert decision.reason == FIELD_NOT_PERMITTED

    def test_designated_employee_not_field_restricted(self, policy):
        assert policy.evaluate(LEAD, Action.UPDATE, _task(), fields={"title", "priority"}).allowed


class TestDelete:

    @pytest.mark.parametrize("principal", [ADMIN, PM])
    def test_managers_delete_any(self, policy, principal):
        assert policy.evaluate(principal, Action.DELETE, _task("emp", "someone")).allowed

    def test_designated_employee_deletes_only_created(self, policy):
        assert policy.evaluate(LEAD, Action.DELETE, _task("emp", "lead")).allowed
        decision = policy.evaluate(LEAD, Action.DELETE, _task("lead", "pm"))
        assert decision.reason == NOT_CREATOR

    def test_employee_cannot_delete(self, policy):
        decision = policy.evaluate(EMP, Action.DELETE, _task("emp"))
        assert decision.reason == INSUFFICIENT_ROLE


class TestAssigneeOnlyActions:

    @pytest.mark.parametrize("action", [Action.START, Action.STOP, Action.COMPLETE])
    def test_assignee_allowed(self, policy, action):
        assert policy.evaluate(EMP, action, _task("emp")).allowed

    @pytest.mark.parametrize("principal", [ADMIN, PM, LEAD, OTHER])
    @pytest.mark.parametrize("action", [Action.START, Action.STOP, Action.COMPLETE])
    def test_non_assignee_denied_regardless_of_role(self, policy, principal, action):
        decision = policy.evaluate(principal, action, _task("emp", "lead"))
        assert not decision.allowed
        assert decision.reason == NOT_ASSIGNEE


class TestEnforceAndScope:

    def test_enforce_raises_with_reason(self, policy):
        with pytest.raises(ForbiddenError) as exc_info:
            policy.enforce(OTHER, Action.COMPLETE, _task("emp"))
        assert exc_info.value.kind == NOT_ASSIGNEE
        assert exc_info.value.status_code == 403

    def test_watch_other_user_requires_manager(self, policy):
        assert policy.evaluate_watch(EMP, _task("emp"), "emp").allowed
        assert not policy.evaluate_watch(EMP, _task("emp"), "emp2").allowed
        assert policy.evaluate_watch(PM, _task("emp"), "emp2").allowed

    def test_list_scope(self, policy):
        assert policy.list_scope(ADMIN) == (None, False)
        assert policy.list_scope(PM) == (None, False)
        assert policy.list_scope(LEAD) == ("lead", True)
        assert policy.list_scope(EMP) == ("emp", False)
