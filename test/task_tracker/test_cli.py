"""
Tests for the click command line interface.
"""

from unittest.mock import patch

import pytest
from click.testing import CliRunner

from task_tracker.cli import main
from task_tracker.config import reset_settings
from task_tracker.database import TaskDatabase
from task_tracker.models import UserRole


@pytest.fixture
def db_path(tmp_path, monkeypatch):
    path = str(tmp_path / "cli.db")
    # Registered with monkeypatch so the value the CLI writes is restored afterwards
    monkeypatch.setenv("TASK_TRACKER_DB_PATH", path)
    monkeypatch.setenv("TASK_TRACKER_LOG_LEVEL", "WARNING")
    yield path
    reset_settings()


@pytest.fixture
def runner():
    return CliRunner()


def test_add_user_then_update(runner, db_path):
    result = runner.invoke(main, [
        "--db-path", db_path, "add-user", "--id", "carol", "--email", "carol@example.com",
        "--first-name", "Carol", "--role", "project_manager",
    ])
    assert result.exit_code == 0, result.output
    assert "Created user carol (project_manager)" in result.output

    result = runner.invoke(main, [
        "--db-path", db_path, "add-user", "--id", "carol", "--email", "carol@example.com", "--inactive",
    ])
    assert result.exit_code == 0, result.output
    assert "Updated user carol (employee)" in result.output

    with TaskDatabase(db_path) as db:
        user = db.get_user("carol")
    assert user.role == UserRole.EMPLOYEE
    assert user.is_active is False


def test_add_user_rejects_unknown_role(runner, db_path):
    result = runner.invoke(main, ["add-user", "--id", "x", "--email", "x@example.com", "--role", "owner"])
    assert result.exit_code == 2


def test_import_seed(runner, db_path, tmp_path):
    seed = tmp_path / "seed.yaml"
    seed.write_text(
        "users:\n"
        "  - {id: alice, email: alice@example.com, role: admin}\n"
        "  - {id: bob, email: bob@example.com}\n"
        "tasks:\n"
        "  - {title: Report, description: Numbers, assignedTo: bob, assignedBy: alice,"
        " dueDate: '2026-12-01T17:00:00Z'}\n",
        encoding="utf-8",
    )

    result = runner.invoke(main, ["--db-path", db_path, "import-seed", str(seed)])

    assert result.exit_code == 0, result.output
    assert "Users: 2 created, 0 updated; tasks: 1 created" in result.output


def test_import_seed_with_errors(runner, db_path, tmp_path):
    seed = tmp_path / "seed.yaml"
    seed.write_text(
        "tasks:\n"
        "  - {title: Orphan, description: x, assignedTo: bob, dueDate: '2026-12-01T17:00:00Z'}\n",
        encoding="utf-8",
    )

    result = runner.invoke(main, ["--db-path", db_path, "import-seed", str(seed)])

    assert result.exit_code == 2
    assert "Orphan" in result.output


def test_import_seed_invalid_file(runner, db_path, tmp_path):
    seed = tmp_path / "seed.yaml"
    seed.write_text("- not\n- a mapping\n", encoding="utf-8")

    result = runner.invoke(main, ["--db-path", db_path, "import-seed", str(seed)])

    assert result.exit_code == 1
    assert "Invalid seed file" in result.output


def test_serve_uses_settings(runner, db_path):
    with patch("task_tracker.cli.uvicorn.run") as run:
        result = runner.invoke(main, ["--db-path", db_path, "serve", "--port", "8123"])

    assert result.exit_code == 0, result.output
    run.assert_called_once_with(
        "task_tracker.api:app", host="0.0.0.0", port=8123, reload=False, log_level="warning"
    )
