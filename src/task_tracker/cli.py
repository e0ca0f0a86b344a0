"""
Command line interface for the Task Tracker.

Commands:
- serve: run the HTTP API with uvicorn
- add-user: create or update a user
- import-seed: load users and tasks from a YAML seed file
"""

import logging
import os
import sys

import click
import uvicorn
import yaml

from .config import get_settings, reset_settings
from .database import TaskDatabase
from .importer import import_seed, load_seed_file
from .models import UserRecord, UserRole

logger = logging.getLogger(__name__)


def _configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@click.group()
@click.option("--db-path", type=click.Path(dir_okay=False), default=None,
              help="SQLite database file (default: TASK_TRACKER_DB_PATH or task_tracker.db)")
@click.option("--log-level", type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
              default=None, help="Log level (default: TASK_TRACKER_LOG_LEVEL or INFO)")
@click.pass_context
def main(ctx: click.Context, db_path, log_level):
    """Task Tracker - task lifecycle and time tracking service."""
    if db_path:
        os.environ["TASK_TRACKER_DB_PATH"] = db_path
    if log_level:
        os.environ["TASK_TRACKER_LOG_LEVEL"] = log_level.upper()
    reset_settings()
    settings = get_settings()
    _configure_logging(settings.log_level)
    ctx.obj = settings


@main.command()
@click.option("--host", default=None, help="Bind address (default: TASK_TRACKER_HOST or 0.0.0.0)")
@click.option("--port", type=int, default=None, help="Bind port (default: TASK_TRACKER_PORT or 8000)")
@click.option("--reload/--no-reload", default=False, help="Auto-reload on code changes")
@click.pass_obj
def serve(settings, host, port, reload):
    """Run the HTTP API."""
    host = host or settings.host
    port = port or settings.port
    click.echo(f"Task Tracker API on http://{host}:{port} (database: {settings.db_path})")
    uvicorn.run(
        "task_tracker.api:app",
        host=host,
        port=port,
        reload=reload,
        log_level=settings.log_level.lower(),
    )


@main.command("add-user")
@click.option("--id", "user_id", required=True, help="User id")
@click.option("--email", required=True)
@click.option("--first-name", default="")
@click.option("--last-name", default="")
@click.option("--role", type=click.Choice([role.value for role in UserRole]), default=UserRole.EMPLOYEE.value,
              show_default=True)
@click.option("--designation", default=None, help="e.g. project_manager")
@click.option("--inactive", is_flag=True, help="Create the user as inactive")
@click.pass_obj
def add_user(settings, user_id, email, first_name, last_name, role, designation, inactive):
    """Create or update a user."""
    try:
        user = UserRecord(
            id=user_id, email=email, first_name=first_name, last_name=last_name,
            role=role, designation=designation, is_active=not inactive,
        )
    except ValueError as e:
        raise click.BadParameter(str(e))

    with TaskDatabase(settings.db_path) as db:
        created = db.upsert_user(user)
    click.echo(f"{'Created' if created else 'Updated'} user {user.id} ({user.role.value})")


@main.command("import-seed")
@click.argument("seed_file", type=click.Path(exists=True, dir_okay=False))
@click.pass_obj
def import_seed_command(settings, seed_file):
    """Import users and tasks from a YAML seed file."""
    try:
        seed_data = load_seed_file(seed_file)
    except (yaml.YAMLError, ValueError) as e:
        click.echo(f"Invalid seed file: {e}", err=True)
        sys.exit(1)

    with TaskDatabase(settings.db_path) as db:
        try:
            stats = import_seed(db, seed_data)
        except ValueError as e:
            click.echo(f"Invalid seed file: {e}", err=True)
            sys.exit(1)

    click.echo(
        f"Users: {stats['users_created']} created, {stats['users_updated']} updated; "
        f"tasks: {stats['tasks_created']} created"
    )
    for error in stats["errors"]:
        click.echo(f"  error: {error}", err=True)
    if stats["errors"]:
        sys.exit(2)


if __name__ == "__main__":
    main()
