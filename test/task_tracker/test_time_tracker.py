"""
Tests for TimeTracker start/stop semantics.
"""

from datetime import timedelta

import pytest

from conftest import FIXED_NOW, make_create_request
from task_tracker.errors import ConflictError, NotFoundError
from task_tracker.models import TaskStatus, total_hours_spent


@pytest.fixture
def task(lifecycle, principals):
    return lifecycle.create(make_create_request(), principals["admin"])


@pytest.fixture
def tracker(lifecycle):
    return lifecycle.time_tracker


class TestStart:

    def test_start_promotes_pending_task(self, tracker, task, principals):
        started = tracker.start(task.id, principals["emp"])

        assert started.time_tracking.is_active is True
        assert started.time_tracking.current_session_start == FIXED_NOW
        assert started.status == TaskStatus.IN_PROGRESS
        assert started.start_date == FIXED_NOW
        assert [(h.status, h.reason) for h in started.status_history] == [
            (TaskStatus.IN_PROGRESS, "Work started")
        ]

    def test_start_twice_conflicts_and_leaves_state(self, tracker, task, principals, clock):
        first = tracker.start(task.id, principals["emp"])
        clock.advance(minutes=10)

        with pytest.raises(ConflictError) as exc_info:
            tracker.start(task.id, principals["emp"])
        assert exc_info.value.kind == "already_active"

        after = tracker.lifecycle.get(task.id)
        assert after.time_tracking == first.time_tracking
        assert after.status_history == first.status_history

    def test_restart_keeps_original_start_date(self, tracker, task, principals, clock):
        tracker.start(task.id, principals["emp"])
        clock.advance(minutes=5)
        tracker.stop(task.id, principals["emp"])
        clock.advance(hours=1)

        restarted = tracker.start(task.id, principals["emp"])

        assert restarted.start_date == FIXED_NOW
        assert restarted.time_tracking.current_session_start == clock.now
        assert len(restarted.status_history) == 1

    def test_refused_start_on_past_due_task_writes_nothing(self, tracker, lifecycle, principals, clock):
        task = lifecycle.create(make_create_request(due_date=FIXED_NOW + timedelta(hours=1)), principals["admin"])
        tracker.start(task.id, principals["emp"])
        clock.advance(hours=2)
        before = lifecycle.get(task.id)

        with pytest.raises(ConflictError):
            tracker.start(task.id, principals["emp"])

        after = lifecycle.get(task.id)
        assert after == before
        assert after.status == TaskStatus.IN_PROGRESS
        assert [h.reason for h in after.status_history] == ["Work started"]

    def test_start_on_past_due_task_records_overdue(self, tracker, lifecycle, principals):
        task = lifecycle.create(make_create_request(due_date=FIXED_NOW - timedelta(days=1)), principals["admin"])

        started = tracker.start(task.id, principals["emp"])

        assert started.time_tracking.is_active is True
        assert started.status == TaskStatus.OVERDUE
        assert [h.reason for h in started.status_history] == ["Due date passed"]

    def test_start_missing_task(self, tracker, principals):
        with pytest.raises(NotFoundError):
            tracker.start("missing", principals["emp"])


class TestStop:

    def test_stop_records_session(self, tracker, task, principals, clock):
        tracker.start(task.id, principals["emp"])
        clock.advance(minutes=30)

        stopped, session = tracker.stop(task.id, principals["emp"], notes="lunch")

        assert session.duration == 1_800_000
        assert session.notes == "lunch"
        assert session.start_time == FIXED_NOW
        assert session.end_time == clock.now
        assert stopped.time_tracking.is_active is False
        assert stopped.time_tracking.current_session_start is None
        assert stopped.time_tracking.total_time_spent == 1_800_000
        assert total_hours_spent(stopped) == 0.5

    def test_stop_without_session_conflicts(self, tracker, task, principals):
        with pytest.raises(ConflictError) as exc_info:
            tracker.stop(task.id, principals["emp"])
        assert exc_info.value.kind == "no_active_session"
        assert tracker.lifecycle.get(task.id).time_tracking.sessions == []

    def test_total_is_sum_of_sessions(self, tracker, task, principals, clock):
        for minutes in (15, 25, 5):
            tracker.start(task.id, principals["emp"])
            clock.advance(minutes=minutes)
            tracker.stop(task.id, principals["emp"])
            clock.advance(minutes=1)

        tracking = tracker.lifecycle.get(task.id).time_tracking
        assert [s.duration for s in tracking.sessions] == [900_000, 1_500_000, 300_000]
        assert tracking.total_time_spent == 2_700_000

    def test_refused_stop_on_past_due_task_writes_nothing(self, tracker, lifecycle, principals):
        task = lifecycle.create(make_create_request(due_date=FIXED_NOW - timedelta(days=1)), principals["admin"])
        before = lifecycle.get(task.id)

        with pytest.raises(ConflictError) as exc_info:
            tracker.stop(task.id, principals["emp"])
        assert exc_info.value.kind == "no_active_session"

        after = lifecycle.get(task.id)
        assert after == before
        assert after.status == TaskStatus.PENDING
        assert after.status_history == []

    def test_stop_on_past_due_task_records_overdue(self, tracker, lifecycle, principals, clock):
        task = lifecycle.create(make_create_request(due_date=FIXED_NOW + timedelta(minutes=10)), principals["admin"])
        tracker.start(task.id, principals["emp"])
        clock.advance(minutes=30)

        stopped, session = tracker.stop(task.id, principals["emp"])

        assert session.duration == 1_800_000
        assert stopped.status == TaskStatus.OVERDUE
        assert [h.reason for h in stopped.status_history] == ["Work started", "Due date passed"]

    def test_stop_missing_task(self, tracker, principals):
        with pytest.raises(NotFoundError):
            tracker.stop("missing", principals["emp"])

    def test_stop_active_without_session_returns_none(self, tracker, task):
        assert tracker.stop_active(task.id) is None
