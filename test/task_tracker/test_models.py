"""
Tests for task models: request validation and derived values.
"""

from datetime import datetime, timedelta, timezone

import pytest
from pydantic import ValidationError

from conftest import FIXED_NOW, make_create_request
from task_tracker.models import (
    Principal, Task, TaskCreateRequest, TaskListQuery, TaskStatus, TaskUpdateRequest, TimeTracking, UserRole,
    days_until_due, effective_status, is_being_tracked, is_overdue, normalize_tags,
    task_to_public_dict, total_hours_spent,
)


def _task(**overrides) -> Task:
    data = {
        "title": "Task",
        "description": "Description",
        "assigned_to": "emp",
        "assigned_by": "admin",
        "due_date": FIXED_NOW + timedelta(days=1),
    }
    data.update(overrides)
    return Task(**data)


class TestTaskEntity:
    """Entity defaults and normalization."""

    def test_custom_fields_are_independent_per_instance(self):
        first = _task()
        second = _task()
        first.custom_fields["sprint"] = 4

        assert second.custom_fields == {}
        assert first.custom_fields is not second.custom_fields

    def test_defaults(self):
        task = _task()
        assert task.status == TaskStatus.PENDING
        assert task.category == "general"
        assert task.time_tracking.is_active is False
        assert task.time_tracking.sessions == []
        assert task.status_history == []
        assert len(task.id) == 32

    def test_tags_normalized(self):
        assert normalize_tags([" Backend ", "backend", "", "API"]) == ["backend", "api"]
        assert _task(tags=["UI", "ui "]).tags == ["ui"]

    def test_naive_datetimes_taken_as_utc(self):
        task = _task(due_date=datetime(2026, 5, 1, 12, 0))
        assert task.due_date.tzinfo == timezone.utc

    def test_serializes_camel_case(self):
        data = _task().model_dump(by_alias=True, mode="json")
        assert "assignedTo" in data
        assert "totalTimeSpent" in data["timeTracking"]


class TestDerivedValues:
    """Overdue, hours spent, days until due, tracking flag."""

    def test_pending_past_due_is_overdue(self):
        task = _task(due_date=FIXED_NOW - timedelta(days=1))
        assert is_overdue(task, FIXED_NOW)
        assert effective_status(task, FIXED_NOW) == TaskStatus.OVERDUE
        assert task.status == TaskStatus.PENDING

    def test_in_progress_past_due_is_overdue(self):
        task = _task(status=TaskStatus.IN_PROGRESS, due_date=FIXED_NOW - timedelta(minutes=1))
        assert effective_status(task, FIXED_NOW) == TaskStatus.OVERDUE

    @pytest.mark.parametrize("status", [TaskStatus.COMPLETED, TaskStatus.CANCELLED])
    def test_terminal_tasks_never_overdue(self, status):
        completed_date = FIXED_NOW if status == TaskStatus.COMPLETED else None
        task = _task(status=status, completed_date=completed_date,
                     due_date=FIXED_NOW - timedelta(days=3))
        assert not is_overdue(task, FIXED_NOW)
        assert effective_status(task, FIXED_NOW) == status

    def test_future_due_date_not_overdue(self):
        assert not is_overdue(_task(), FIXED_NOW)

    def test_total_hours_spent_rounded(self):
        task = _task(time_tracking=TimeTracking(total_time_spent=5_400_000))
        assert total_hours_spent(task) == 1.5
        task = _task(time_tracking=TimeTracking(total_time_spent=1_000_000))
        assert total_hours_spent(task) == 0.28

    def test_days_until_due_rounds_up(self):
        assert days_until_due(_task(due_date=FIXED_NOW + timedelta(hours=30)), FIXED_NOW) == 2
        assert days_until_due(_task(due_date=FIXED_NOW - timedelta(hours=30)), FIXED_NOW) == -1

    def test_is_being_tracked(self):
        assert not is_being_tracked(_task())
        tracking = TimeTracking(is_active=True, current_session_start=FIXED_NOW)
        assert is_being_tracked(_task(time_tracking=tracking))

    def test_public_dict_reports_effective_status(self):
        task = _task(due_date=FIXED_NOW - timedelta(days=1))
        data = task_to_public_dict(task, FIXED_NOW)
        assert data["status"] == "overdue"
        assert data["isOverdue"] is True
        assert data["totalHoursSpent"] == 0
        assert data["isBeingTracked"] is False


class TestRequests:
    """Request model validation."""

    def test_create_accepts_camel_case(self):
        request = TaskCreateRequest.model_validate({
            "title": "Camel",
            "description": "From JSON",
            "assignedTo": "emp",
            "dueDate": "2026-04-01T10:00:00Z",
            "estimatedHours": 3,
        })
        assert request.assigned_to == "emp"
        assert request.due_date.tzinfo is not None

    def test_create_trims_and_limits_title(self):
        assert make_create_request(title="  Trim me  ").title == "Trim me"
        with pytest.raises(ValidationError):
            make_create_request(title="x" * 201)
        with pytest.raises(ValidationError):
            make_create_request(title="   ")

    def test_create_rejects_negative_estimate(self):
        with pytest.raises(ValidationError):
            make_create_request(estimated_hours=-1)

    def test_update_rejects_overdue_status(self):
        with pytest.raises(ValidationError):
            TaskUpdateRequest(status="overdue")

    def test_update_rejects_unknown_fields(self):
        with pytest.raises(ValidationError):
            TaskUpdateRequest.model_validate({"owner": "someone"})

    def test_update_rejects_null_title(self):
        with pytest.raises(ValidationError):
            TaskUpdateRequest.model_validate({"title": None})

    def test_update_changes_only_present_fields(self):
        request = TaskUpdateRequest.model_validate({"status": "in_progress", "comments": "On it"})
        assert request.changes() == {"status": TaskStatus.IN_PROGRESS, "comments": ["On it"]}

    def test_update_rejects_long_comment(self):
        with pytest.raises(ValidationError):
            TaskUpdateRequest(comments=["x" * 1001])

    def test_list_query_sort_whitelist(self):
        assert TaskListQuery.model_validate({"sortBy": "dueDate"}).sort_by == "due_date"
        with pytest.raises(ValidationError):
            TaskListQuery.model_validate({"sortBy": "password"})

    def test_list_query_bounds(self):
        with pytest.raises(ValidationError):
            TaskListQuery(page=0)
        with pytest.raises(ValidationError):
            TaskListQuery(sort_order="sideways")
        with pytest.raises(ValidationError):
            TaskListQuery(start_date=FIXED_NOW, end_date=FIXED_NOW - timedelta(days=1))


def test_principal_designation():
    lead = Principal(id="lead", role=UserRole.EMPLOYEE, designation="project_manager")
    pm = Principal(id="pm", role=UserRole.PROJECT_MANAGER)
    assert lead.has_pm_designation
    assert not pm.has_pm_designation
