"""
YAML Seed Importer

Loads users and tasks from a YAML seed file. Users are upserted by id; tasks
are created through the same validation and authorization as the API, with
the seed's ``assignedBy`` user acting as creator.

Seed format::

    users:
      - id: alice
        email: alice@example.com
        firstName: Alice
        lastName: Admin
        role: admin
    tasks:
      - title: Write report
        description: Quarterly numbers
        assignedTo: bob
        assignedBy: alice
        dueDate: 2026-12-01T17:00:00Z
        priority: high
"""

import logging
from datetime import date, datetime, time, timezone
from pathlib import Path
from typing import Any, Callable, Dict, Union

import yaml

from .database import TaskDatabase
from .errors import TaskTrackerError
from .lifecycle import TaskLifecycle
from .models import TaskCreateRequest, UserRecord, utcnow
from .policy import Action, AuthorizationPolicy

logger = logging.getLogger(__name__)


def load_seed_file(path: Union[str, Path]) -> Dict[str, Any]:
    """
    Parse a YAML seed file.

    Raises:
        ValueError: File content is not a mapping
        yaml.YAMLError: Malformed YAML
    """
    with open(path, "r", encoding="utf-8") as handle:
        data = yaml.safe_load(handle)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError("Seed file must contain a mapping with 'users' and/or 'tasks'")
    return data


def _as_datetime(value: Any) -> Any:
    # YAML turns bare dates into date objects; treat them as midnight UTC
    if isinstance(value, date) and not isinstance(value, datetime):
        return datetime.combine(value, time.min, tzinfo=timezone.utc)
    return value


def import_seed(db: TaskDatabase, seed_data: Dict[str, Any],
                clock: Callable[[], datetime] = utcnow) -> Dict[str, Any]:
    """
    Import users and tasks from parsed seed data.

    Individual entries that fail validation are reported in ``errors`` and do
    not stop the import.

    Args:
        db: TaskDatabase instance
        seed_data: Parsed YAML seed structure
        clock: Time source for task creation

    Returns:
        Dict with import statistics and per-entry errors

    Raises:
        ValueError: For malformed seed structure
    """
    stats: Dict[str, Any] = {
        "users_created": 0,
        "users_updated": 0,
        "tasks_created": 0,
        "errors": [],
    }

    users = seed_data.get("users") or []
    if not isinstance(users, list):
        raise ValueError("Seed 'users' must be a list")
    tasks = seed_data.get("tasks") or []
    if not isinstance(tasks, list):
        raise ValueError("Seed 'tasks' must be a list")

    for user_data in users:
        try:
            if not isinstance(user_data, dict):
                raise ValueError("User entry must be a mapping")
            user = UserRecord.model_validate(user_data)
            if db.upsert_user(user):
                stats["users_created"] += 1
            else:
                stats["users_updated"] += 1
        except ValueError as e:
            user_id = user_data.get("id", "unnamed") if isinstance(user_data, dict) else "invalid"
            stats["errors"].append(f"Failed to import user '{user_id}': {e}")

    lifecycle = TaskLifecycle(db, clock)
    policy = AuthorizationPolicy()
    for task_data in tasks:
        try:
            if not isinstance(task_data, dict):
                raise ValueError("Task entry must be a mapping")
            data = {key: _as_datetime(value) for key, value in task_data.items()}
            assigner_id = data.pop("assignedBy", None) or data.pop("assigned_by", None)
            if not assigner_id:
                raise ValueError("Task must have 'assignedBy' field")
            assigner = db.get_user(str(assigner_id))
            if assigner is None:
                raise ValueError(f"Assigning user '{assigner_id}' not found")

            principal = assigner.to_principal()
            policy.enforce(principal, Action.CREATE)
            lifecycle.create(TaskCreateRequest.model_validate(data), principal)
            stats["tasks_created"] += 1
        except (ValueError, TaskTrackerError) as e:
            title = task_data.get("title", "untitled") if isinstance(task_data, dict) else "invalid"
            stats["errors"].append(f"Failed to import task '{title}': {e}")

    logger.info(
        f"Seed import finished: {stats['users_created']} users created, "
        f"{stats['users_updated']} updated, {stats['tasks_created']} tasks created, "
        f"{len(stats['errors'])} errors"
    )
    return stats
