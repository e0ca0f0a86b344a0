"""
Shared fixtures for the Task Tracker test suite.

Provides an isolated SQLite database per test, a controllable clock, a seeded
user roster covering every role, and a task service wired to a mocked
notification dispatcher.
"""

import os
import sys
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', '..', 'src'))

from task_tracker.database import TaskDatabase
from task_tracker.lifecycle import TaskLifecycle
from task_tracker.models import TaskCreateRequest, UserRecord, UserRole
from task_tracker.notifications import NotificationDispatcher
from task_tracker.service import TaskService

FIXED_NOW = datetime(2026, 3, 2, 9, 0, 0, tzinfo=timezone.utc)


class FakeClock:
    """Deterministic clock; call it to read the time, ``advance`` to move it."""

    def __init__(self, now: datetime = FIXED_NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


SEED_USERS = [
    UserRecord(id="admin", email="admin@example.com", first_name="Ada", last_name="Admin",
               role=UserRole.ADMIN),
    UserRecord(id="pm", email="pm@example.com", first_name="Pat", last_name="Manager",
               role=UserRole.PROJECT_MANAGER),
    UserRecord(id="lead", email="lead@example.com", first_name="Lee", last_name="Lead",
               role=UserRole.EMPLOYEE, designation="project_manager"),
    UserRecord(id="emp", email="emp@example.com", first_name="Eve", last_name="Employee",
               role=UserRole.EMPLOYEE),
    UserRecord(id="emp2", email="emp2@example.com", first_name="Eli", last_name="Other",
               role=UserRole.EMPLOYEE),
    UserRecord(id="gone", email="gone@example.com", first_name="Gus", last_name="Gone",
               role=UserRole.EMPLOYEE, is_active=False),
]


def make_create_request(**overrides) -> TaskCreateRequest:
    """Build a valid create request due one week after FIXED_NOW."""
    data = {
        "title": "Prepare quarterly report",
        "description": "Collect numbers from every team",
        "assigned_to": "emp",
        "due_date": FIXED_NOW + timedelta(days=7),
    }
    data.update(overrides)
    return TaskCreateRequest(**data)


@pytest.fixture
def db(tmp_path):
    """Isolated database seeded with one user per role."""
    database = TaskDatabase(str(tmp_path / "tasks.db"))
    for user in SEED_USERS:
        database.upsert_user(user)
    yield database
    database.close()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def principals(db):
    """Principals keyed by user id."""
    return {user.id: user.to_principal() for user in SEED_USERS}


@pytest.fixture
def lifecycle(db, clock):
    return TaskLifecycle(db, clock)


@pytest.fixture
def dispatcher():
    """Dispatcher double recording notification calls."""
    mock = MagicMock(spec=NotificationDispatcher)
    mock.task_assigned = AsyncMock()
    mock.task_started = AsyncMock()
    mock.task_completed = AsyncMock()
    return mock


@pytest.fixture
def service(db, clock, dispatcher):
    return TaskService(db, dispatcher, clock=clock, max_page_size=100)
