"""
Task Database Layer with Atomic Conditional Updates

Provides SQLite-based storage with WAL mode for concurrent access. The storage
boundary holds no business rules: it exposes the primitives the engine needs
(filtered find/count, conditional updates, ordered appends, delete) and leaves
every lifecycle decision to the caller.
"""

import json
import logging
import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Optional, Dict, Any, List, Tuple, Iterable

from .models import (
    Comment, StatusChange, Task, TaskFilter, TaskStatus, TimeSession, TimeTracking,
    UserRecord, ensure_utc,
)

logger = logging.getLogger(__name__)

# Fixed-width UTC format so that string comparison orders timestamps
DB_TIME_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"

# Effective status: stored pending/in_progress past the due date reads as overdue
EFFECTIVE_STATUS_SQL = (
    "CASE WHEN status IN ('pending', 'in_progress') AND due_date < ? "
    "THEN 'overdue' ELSE status END"
)

_SORT_EXPRESSIONS = {
    "created_at": "created_at",
    "updated_at": "updated_at",
    "due_date": "due_date",
    "title": "title COLLATE NOCASE",
    "status": "status",
    "priority": (
        "CASE priority WHEN 'low' THEN 0 WHEN 'medium' THEN 1 "
        "WHEN 'high' THEN 2 ELSE 3 END"
    ),
    "completed_date": "completed_date",
    "estimated_hours": "estimated_hours",
    "total_time_spent": "total_time_spent",
}

# Columns that may be written through update_task_atomic
UPDATABLE_COLUMNS = frozenset({
    "title", "description", "assigned_to", "assigned_by", "priority", "due_date",
    "start_date", "completed_date", "estimated_hours", "category", "tags",
    "custom_fields",
})

_TASK_COLUMNS = (
    "id, title, description, assigned_to, assigned_by, status, priority, due_date, "
    "start_date, completed_date, estimated_hours, total_time_spent, is_active, "
    "current_session_start, category, tags, custom_fields, created_at, updated_at"
)

# SQLite bound-parameter budget per IN (...) chunk
_IN_CHUNK = 500


def to_db_time(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    return ensure_utc(value).strftime(DB_TIME_FORMAT)


def from_db_time(value: Optional[str]) -> Optional[datetime]:
    if value is None:
        return None
    return datetime.strptime(value, DB_TIME_FORMAT).replace(tzinfo=timezone.utc)


def _to_db_value(value: Any) -> Any:
    if isinstance(value, datetime):
        return to_db_time(value)
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, (list, dict)):
        return json.dumps(value)
    return value


def _escape_like(text: str) -> str:
    return text.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


class TaskDatabase:
    """
    SQLite database with atomic conditional updates for the task engine.

    Features:
    - WAL mode for concurrent read/write access
    - Single conditional UPDATE for time-tracking exclusivity
    - Ordered, append-only child sequences (sessions, history, comments)
    - Thread-safe operations across request handlers
    """

    def __init__(self, db_path: str):
        """
        Initialize TaskDatabase with SQLite WAL mode configuration.

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = Path(db_path)
        self._connection_lock = threading.RLock()
        self._connection: Optional[sqlite3.Connection] = None

        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._initialize_database()

    def _initialize_database(self, drop_existing: bool = False) -> None:
        """Initialize database with WAL mode and create schema if needed.

        Args:
            drop_existing: If True, drops all existing tables for clean slate initialization
        """
        try:
            # Autocommit mode; transactions are opened explicitly where needed
            self._connection = sqlite3.connect(
                str(self.db_path),
                isolation_level=None,
                check_same_thread=False
            )

            cursor = self._connection.cursor()
            cursor.execute("PRAGMA journal_mode=WAL")
            cursor.execute("PRAGMA synchronous=NORMAL")
            cursor.execute("PRAGMA busy_timeout=5000")
            cursor.execute("PRAGMA foreign_keys=ON")  # Child sequences cascade with their task

            if drop_existing:
                self._drop_existing_tables()

            self._create_schema()
            logger.info(f"Database initialized: {self.db_path}")

        except sqlite3.Error as e:
            raise RuntimeError(f"Failed to initialize database at {self.db_path}: {e}")

    def _create_schema(self) -> None:
        """Create database schema with indexes for the listing queries."""
        cursor = self._connection.cursor()

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS users (
                id TEXT PRIMARY KEY,
                email TEXT NOT NULL,
                first_name TEXT NOT NULL DEFAULT '',
                last_name TEXT NOT NULL DEFAULT '',
                role TEXT NOT NULL DEFAULT 'employee',
                designation TEXT,
                is_active INTEGER NOT NULL DEFAULT 1,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                CONSTRAINT role_vocabulary CHECK (role IN ('admin', 'project_manager', 'employee'))
            )
        """)

        # Invariants that must hold after every write are enforced as CHECK constraints
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS tasks (
                id TEXT PRIMARY KEY,
                title TEXT NOT NULL,
                description TEXT NOT NULL,
                assigned_to TEXT NOT NULL,
                assigned_by TEXT NOT NULL,
                status TEXT NOT NULL DEFAULT 'pending',
                priority TEXT NOT NULL DEFAULT 'medium',
                due_date TEXT NOT NULL,
                start_date TEXT,
                completed_date TEXT,
                estimated_hours REAL,
                total_time_spent INTEGER NOT NULL DEFAULT 0,
                is_active INTEGER NOT NULL DEFAULT 0,
                current_session_start TEXT,
                category TEXT NOT NULL DEFAULT 'general',
                tags TEXT NOT NULL DEFAULT '[]',
                custom_fields TEXT NOT NULL DEFAULT '{}',
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                CONSTRAINT status_vocabulary CHECK (status IN ('pending', 'in_progress', 'completed', 'cancelled', 'overdue')),
                CONSTRAINT priority_vocabulary CHECK (priority IN ('low', 'medium', 'high', 'urgent')),
                CONSTRAINT non_negative_estimate CHECK (estimated_hours IS NULL OR estimated_hours >= 0),
                CONSTRAINT active_session CHECK ((is_active = 1) = (current_session_start IS NOT NULL)),
                CONSTRAINT completed_date_status CHECK ((status = 'completed') = (completed_date IS NOT NULL)),
                CONSTRAINT json_tags CHECK (json_valid(tags) AND json_type(tags) = 'array'),
                CONSTRAINT json_custom_fields CHECK (json_valid(custom_fields) AND json_type(custom_fields) = 'object')
            )
        """)

        # Sequence-based primary keys keep each child list in insertion order
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS task_sessions (
                task_id TEXT NOT NULL,
                seq INTEGER NOT NULL,
                start_time TEXT NOT NULL,
                end_time TEXT NOT NULL,
                duration INTEGER NOT NULL CHECK (duration >= 0),
                notes TEXT NOT NULL DEFAULT '',
                PRIMARY KEY (task_id, seq),
                FOREIGN KEY (task_id) REFERENCES tasks (id) ON DELETE CASCADE
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS task_status_history (
                task_id TEXT NOT NULL,
                seq INTEGER NOT NULL,
                status TEXT NOT NULL,
                changed_by TEXT NOT NULL,
                changed_at TEXT NOT NULL,
                reason TEXT NOT NULL DEFAULT '',
                PRIMARY KEY (task_id, seq),
                FOREIGN KEY (task_id) REFERENCES tasks (id) ON DELETE CASCADE
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS task_comments (
                task_id TEXT NOT NULL,
                seq INTEGER NOT NULL,
                author TEXT NOT NULL,
                message TEXT NOT NULL,
                created_at TEXT NOT NULL,
                PRIMARY KEY (task_id, seq),
                FOREIGN KEY (task_id) REFERENCES tasks (id) ON DELETE CASCADE
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS task_watchers (
                task_id TEXT NOT NULL,
                user_id TEXT NOT NULL,
                added_at TEXT NOT NULL,
                PRIMARY KEY (task_id, user_id),
                FOREIGN KEY (task_id) REFERENCES tasks (id) ON DELETE CASCADE
            )
        """)

        cursor.execute("""
            CREATE INDEX IF NOT EXISTS idx_tasks_assignee_status
            ON tasks (assigned_to, status)
        """)
        cursor.execute("""
            CREATE INDEX IF NOT EXISTS idx_tasks_assigner
            ON tasks (assigned_by)
        """)
        cursor.execute("""
            CREATE INDEX IF NOT EXISTS idx_tasks_status_due
            ON tasks (status, due_date)
        """)
        cursor.execute("""
            CREATE INDEX IF NOT EXISTS idx_tasks_created
            ON tasks (created_at DESC)
        """)
        cursor.execute("""
            CREATE INDEX IF NOT EXISTS idx_tasks_active_timer
            ON tasks (is_active)
            WHERE is_active = 1
        """)
        cursor.execute("""
            CREATE INDEX IF NOT EXISTS idx_tasks_category
            ON tasks (category)
        """)

    def _drop_existing_tables(self) -> None:
        """Drop all existing tables for clean slate initialization."""
        cursor = self._connection.cursor()
        # Children first to satisfy foreign keys
        cursor.execute("DROP TABLE IF EXISTS task_watchers")
        cursor.execute("DROP TABLE IF EXISTS task_comments")
        cursor.execute("DROP TABLE IF EXISTS task_status_history")
        cursor.execute("DROP TABLE IF EXISTS task_sessions")
        cursor.execute("DROP TABLE IF EXISTS tasks")
        cursor.execute("DROP TABLE IF EXISTS users")

    @contextmanager
    def _transaction(self):
        """Context manager for explicit write transaction control."""
        cursor = self._connection.cursor()
        try:
            cursor.execute("BEGIN IMMEDIATE")
            yield cursor
            cursor.execute("COMMIT")
        except Exception:
            cursor.execute("ROLLBACK")
            raise

    def _get_current_time_str(self) -> str:
        """Get current UTC time as a fixed-width string for database operations."""
        return to_db_time(datetime.now(timezone.utc))

    def ping(self) -> bool:
        """Verify the connection answers a trivial query."""
        with self._connection_lock:
            cursor = self._connection.cursor()
            cursor.execute("SELECT 1")
            return cursor.fetchone()[0] == 1

    # Users

    def upsert_user(self, user: UserRecord) -> bool:
        """
        Insert or update a user record.

        Args:
            user: User to store

        Returns:
            True if a new user was created, False if an existing one was updated
        """
        current_time_str = self._get_current_time_str()
        with self._connection_lock:
            cursor = self._connection.cursor()
            cursor.execute("SELECT 1 FROM users WHERE id = ?", (user.id,))
            existed = cursor.fetchone() is not None
            cursor.execute("""
                INSERT INTO users (id, email, first_name, last_name, role, designation,
                                   is_active, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    email = excluded.email,
                    first_name = excluded.first_name,
                    last_name = excluded.last_name,
                    role = excluded.role,
                    designation = excluded.designation,
                    is_active = excluded.is_active,
                    updated_at = excluded.updated_at
            """, (
                user.id, user.email, user.first_name, user.last_name, user.role.value,
                user.designation, 1 if user.is_active else 0,
                current_time_str, current_time_str,
            ))
            return not existed

    def get_user(self, user_id: str) -> Optional[UserRecord]:
        """Resolve a user id to its record, or None."""
        with self._connection_lock:
            cursor = self._connection.cursor()
            cursor.execute("""
                SELECT id, email, first_name, last_name, role, designation, is_active
                FROM users WHERE id = ?
            """, (user_id,))
            row = cursor.fetchone()
            return self._row_to_user(row) if row else None

    def list_users(self) -> List[UserRecord]:
        with self._connection_lock:
            cursor = self._connection.cursor()
            cursor.execute("""
                SELECT id, email, first_name, last_name, role, designation, is_active
                FROM users ORDER BY id ASC
            """)
            return [self._row_to_user(row) for row in cursor.fetchall()]

    @staticmethod
    def _row_to_user(row) -> UserRecord:
        return UserRecord(
            id=row[0], email=row[1], first_name=row[2], last_name=row[3],
            role=row[4], designation=row[5], is_active=bool(row[6]),
        )

    # Tasks

    def insert_task(self, task: Task) -> Task:
        """
        Persist a new task together with any child records it already carries.

        Args:
            task: Fully constructed task entity

        Returns:
            The stored task as read back from the database
        """
        tracking = task.time_tracking
        with self._connection_lock:
            with self._transaction() as cursor:
                cursor.execute(f"""
                    INSERT INTO tasks ({_TASK_COLUMNS})
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """, (
                    task.id, task.title, task.description, task.assigned_to, task.assigned_by,
                    task.status.value, task.priority.value, to_db_time(task.due_date),
                    to_db_time(task.start_date), to_db_time(task.completed_date),
                    task.estimated_hours, tracking.total_time_spent,
                    1 if tracking.is_active else 0, to_db_time(tracking.current_session_start),
                    task.category, json.dumps(task.tags), json.dumps(task.custom_fields),
                    to_db_time(task.created_at), to_db_time(task.updated_at),
                ))
                for session in tracking.sessions:
                    self._append_session(cursor, task.id, session)
                for change in task.status_history:
                    self._append_status_change(cursor, task.id, change)
                for comment in task.comments:
                    self._append_comment(cursor, task.id, comment)
                for watcher in task.watchers:
                    cursor.execute("""
                        INSERT OR IGNORE INTO task_watchers (task_id, user_id, added_at)
                        VALUES (?, ?, ?)
                    """, (task.id, watcher, to_db_time(task.created_at)))
        return self.get_task(task.id)

    def get_task(self, task_id: str) -> Optional[Task]:
        """Load a task with all child sequences, or None when it does not exist."""
        with self._connection_lock:
            cursor = self._connection.cursor()
            cursor.execute(f"SELECT {_TASK_COLUMNS} FROM tasks WHERE id = ?", (task_id,))
            row = cursor.fetchone()
            if not row:
                return None
            children = self._load_children(cursor, [task_id])
            return self._row_to_task(row, children[task_id])

    def find_tasks(self, task_filter: TaskFilter, now: datetime,
                   sort_field: str = "created_at", descending: bool = True,
                   skip: int = 0, limit: Optional[int] = None) -> List[Task]:
        """
        Find tasks matching a filter with sorting and offset/limit pagination.

        Args:
            task_filter: Role scope plus caller criteria
            now: Reference time for effective-status matching
            sort_field: Key of the sortable fields
            descending: Sort direction
            skip: Number of matching tasks to skip
            limit: Maximum tasks to return, None for all

        Returns:
            List of fully loaded tasks
        """
        if sort_field not in _SORT_EXPRESSIONS:
            raise ValueError(f"Unsupported sort field '{sort_field}'")
        where, params = self._compile_filter(task_filter, now)
        direction = "DESC" if descending else "ASC"
        query = (
            f"SELECT {_TASK_COLUMNS} FROM tasks{where} "
            f"ORDER BY {_SORT_EXPRESSIONS[sort_field]} {direction}, id ASC "
            f"LIMIT ? OFFSET ?"
        )
        params.extend([limit if limit is not None else -1, max(skip, 0)])

        with self._connection_lock:
            cursor = self._connection.cursor()
            cursor.execute(query, params)
            rows = cursor.fetchall()
            children = self._load_children(cursor, [row[0] for row in rows])
            return [self._row_to_task(row, children[row[0]]) for row in rows]

    def count_tasks(self, task_filter: TaskFilter, now: datetime) -> int:
        where, params = self._compile_filter(task_filter, now)
        with self._connection_lock:
            cursor = self._connection.cursor()
            cursor.execute(f"SELECT COUNT(*) FROM tasks{where}", params)
            return cursor.fetchone()[0]

    def count_by_status(self, task_filter: TaskFilter, now: datetime) -> Dict[str, int]:
        """Group matching tasks by effective status."""
        where, params = self._compile_filter(task_filter, now)
        with self._connection_lock:
            cursor = self._connection.cursor()
            cursor.execute(
                f"SELECT {EFFECTIVE_STATUS_SQL} AS effective, COUNT(*) FROM tasks{where} "
                f"GROUP BY effective",
                [to_db_time(now)] + params,
            )
            return {row[0]: row[1] for row in cursor.fetchall()}

    def count_by_priority(self, task_filter: TaskFilter, now: datetime) -> Dict[str, int]:
        where, params = self._compile_filter(task_filter, now)
        with self._connection_lock:
            cursor = self._connection.cursor()
            cursor.execute(
                f"SELECT priority, COUNT(*) FROM tasks{where} GROUP BY priority", params
            )
            return {row[0]: row[1] for row in cursor.fetchall()}

    def count_overdue(self, task_filter: TaskFilter, now: datetime) -> int:
        """Count matching tasks whose effective status is overdue."""
        where, params = self._compile_filter(task_filter, now)
        clause = " AND " if where else " WHERE "
        with self._connection_lock:
            cursor = self._connection.cursor()
            cursor.execute(
                f"SELECT COUNT(*) FROM tasks{where}{clause}"
                f"(status = 'overdue' OR (status IN ('pending', 'in_progress') AND due_date < ?))",
                params + [to_db_time(now)],
            )
            return cursor.fetchone()[0]

    def count_active_timers(self, task_filter: TaskFilter, now: datetime) -> int:
        where, params = self._compile_filter(task_filter, now)
        clause = " AND " if where else " WHERE "
        with self._connection_lock:
            cursor = self._connection.cursor()
            cursor.execute(f"SELECT COUNT(*) FROM tasks{where}{clause}is_active = 1", params)
            return cursor.fetchone()[0]

    def _compile_filter(self, task_filter: TaskFilter, now: datetime) -> Tuple[str, List[Any]]:
        """Translate a TaskFilter into a WHERE clause and its parameters."""
        conditions: List[str] = []
        params: List[Any] = []

        # Role scope first; caller criteria are AND-combined with it
        if task_filter.scope_user_id is not None:
            if task_filter.scope_includes_assigner:
                conditions.append("(assigned_to = ? OR assigned_by = ?)")
                params.extend([task_filter.scope_user_id, task_filter.scope_user_id])
            else:
                conditions.append("assigned_to = ?")
                params.append(task_filter.scope_user_id)

        if task_filter.status is not None:
            conditions.append(f"{EFFECTIVE_STATUS_SQL} = ?")
            params.extend([to_db_time(now), task_filter.status.value])

        if task_filter.priority is not None:
            conditions.append("priority = ?")
            params.append(task_filter.priority.value)

        if task_filter.assigned_to is not None:
            conditions.append("assigned_to = ?")
            params.append(task_filter.assigned_to)

        if task_filter.assigned_by is not None:
            conditions.append("assigned_by = ?")
            params.append(task_filter.assigned_by)

        if task_filter.search:
            pattern = f"%{_escape_like(task_filter.search.lower())}%"
            conditions.append(
                "(LOWER(title) LIKE ? ESCAPE '\\' OR LOWER(description) LIKE ? ESCAPE '\\')"
            )
            params.extend([pattern, pattern])

        if task_filter.created_from is not None:
            conditions.append("created_at >= ?")
            params.append(to_db_time(task_filter.created_from))

        if task_filter.created_to is not None:
            conditions.append("created_at <= ?")
            params.append(to_db_time(task_filter.created_to))

        where = (" WHERE " + " AND ".join(conditions)) if conditions else ""
        return where, params

    # Atomic primitives

    def start_session_atomic(self, task_id: str, started_at: datetime) -> bool:
        """
        Atomically open a time-tracking session.

        A single UPDATE conditioned on the stored ``is_active = 0`` ensures two
        concurrent starts cannot both succeed.

        Returns:
            True if the session was opened, False if one was already active
            or the task does not exist
        """
        started_at_str = to_db_time(started_at)
        with self._connection_lock:
            cursor = self._connection.cursor()
            cursor.execute("""
                UPDATE tasks
                SET is_active = 1, current_session_start = ?, updated_at = ?
                WHERE id = ? AND is_active = 0
            """, (started_at_str, started_at_str, task_id))
            return cursor.rowcount > 0

    def stop_session_atomic(self, task_id: str, ended_at: datetime,
                            notes: str = "") -> Optional[TimeSession]:
        """
        Atomically close the active session and append it to the session list.

        Args:
            task_id: Task whose session to close
            ended_at: Session end time
            notes: Optional session notes

        Returns:
            The appended TimeSession, or None if no session was active
        """
        with self._connection_lock:
            with self._transaction() as cursor:
                return self._close_active_session(cursor, task_id, ended_at, notes)

    def _close_active_session(self, cursor, task_id: str, ended_at: datetime,
                              notes: str = "") -> Optional[TimeSession]:
        """Close the open session inside the caller's transaction; None if none is open."""
        cursor.execute("""
            SELECT current_session_start FROM tasks
            WHERE id = ? AND is_active = 1
        """, (task_id,))
        row = cursor.fetchone()
        if not row:
            return None

        started_at = from_db_time(row[0])
        duration = max(0, int((ensure_utc(ended_at) - started_at).total_seconds() * 1000))

        cursor.execute("""
            UPDATE tasks
            SET is_active = 0,
                current_session_start = NULL,
                total_time_spent = total_time_spent + ?,
                updated_at = ?
            WHERE id = ? AND is_active = 1 AND current_session_start = ?
        """, (duration, to_db_time(ended_at), task_id, row[0]))
        if cursor.rowcount == 0:
            return None

        session = TimeSession(
            start_time=started_at, end_time=ensure_utc(ended_at),
            duration=duration, notes=notes or "",
        )
        self._append_session(cursor, task_id, session)
        return session

    def update_task_atomic(self, task_id: str,
                           fields: Optional[Dict[str, Any]] = None,
                           status_change: Optional[StatusChange] = None,
                           expected_status: Optional[TaskStatus] = None,
                           comments: Optional[Iterable[Comment]] = None,
                           updated_at: Optional[datetime] = None,
                           close_session_notes: Optional[str] = None) -> bool:
        """
        Atomically update task fields with optional status transition and comment appends.

        Args:
            task_id: Task to update
            fields: Column values to set (see UPDATABLE_COLUMNS)
            status_change: New status plus the history entry to append
            expected_status: Stored status the update is conditioned on
            comments: Comments to append in order
            updated_at: Modification time, defaults to now
            close_session_notes: When set, an open time-tracking session is closed
                at ``updated_at`` with these notes, in the same transaction

        Returns:
            True if the task was updated, False if it does not exist or its
            stored status no longer matches ``expected_status``
        """
        fields = fields or {}
        unknown = set(fields) - UPDATABLE_COLUMNS
        if unknown:
            raise ValueError(f"Columns not updatable: {', '.join(sorted(unknown))}")

        set_clauses = []
        params: List[Any] = []
        for column, value in fields.items():
            set_clauses.append(f"{column} = ?")
            params.append(_to_db_value(value))
        if status_change is not None:
            set_clauses.append("status = ?")
            params.append(status_change.status.value)
        updated_at = updated_at or datetime.now(timezone.utc)
        set_clauses.append("updated_at = ?")
        params.append(to_db_time(updated_at))

        where = "id = ?"
        params.append(task_id)
        if expected_status is not None:
            where += " AND status = ?"
            params.append(expected_status.value)

        with self._connection_lock:
            with self._transaction() as cursor:
                cursor.execute(
                    f"UPDATE tasks SET {', '.join(set_clauses)} WHERE {where}", params
                )
                if cursor.rowcount == 0:
                    return False
                if close_session_notes is not None:
                    self._close_active_session(cursor, task_id, updated_at, close_session_notes)
                if status_change is not None:
                    self._append_status_change(cursor, task_id, status_change)
                for comment in comments or ():
                    self._append_comment(cursor, task_id, comment)
                return True

    def transition_status(self, task_id: str, expected_status: TaskStatus,
                          status_change: StatusChange,
                          fields: Optional[Dict[str, Any]] = None,
                          close_session_notes: Optional[str] = None) -> bool:
        """Conditionally move a task from ``expected_status`` and record the change."""
        return self.update_task_atomic(
            task_id, fields=fields, status_change=status_change,
            expected_status=expected_status, updated_at=status_change.changed_at,
            close_session_notes=close_session_notes,
        )

    def append_comment(self, task_id: str, comment: Comment) -> Optional[int]:
        """
        Append a comment to a task.

        Returns:
            Sequence number of the comment, or None if the task does not exist
        """
        with self._connection_lock:
            try:
                with self._transaction() as cursor:
                    seq = self._append_comment(cursor, task_id, comment)
                    cursor.execute(
                        "UPDATE tasks SET updated_at = ? WHERE id = ?",
                        (to_db_time(comment.timestamp), task_id),
                    )
                    return seq
            except sqlite3.IntegrityError:
                return None

    def add_watcher(self, task_id: str, user_id: str) -> bool:
        """
        Add a watcher; a no-op when already present.

        Returns:
            True if the watcher was added, False if already watching
        """
        with self._connection_lock:
            cursor = self._connection.cursor()
            cursor.execute("""
                INSERT OR IGNORE INTO task_watchers (task_id, user_id, added_at)
                VALUES (?, ?, ?)
            """, (task_id, user_id, self._get_current_time_str()))
            return cursor.rowcount > 0

    def remove_watcher(self, task_id: str, user_id: str) -> bool:
        with self._connection_lock:
            cursor = self._connection.cursor()
            cursor.execute(
                "DELETE FROM task_watchers WHERE task_id = ? AND user_id = ?",
                (task_id, user_id),
            )
            return cursor.rowcount > 0

    def delete_task(self, task_id: str) -> bool:
        """
        Delete a task; CASCADE DELETE removes its sessions, history, comments and watchers.

        Returns:
            True if the task existed and was removed
        """
        with self._connection_lock:
            cursor = self._connection.cursor()
            try:
                cursor.execute("DELETE FROM tasks WHERE id = ?", (task_id,))
                return cursor.rowcount > 0
            except sqlite3.Error as e:
                logger.error(f"Database error deleting task {task_id}: {e}")
                raise

    # Child sequences

    @staticmethod
    def _append_child(cursor, table: str, columns: Tuple[str, ...],
                      task_id: str, values: Tuple[Any, ...]) -> int:
        """Append a row with the next per-task sequence number in a single statement."""
        placeholders = ", ".join("?" for _ in columns)
        cursor.execute(f"""
            INSERT INTO {table} (task_id, seq, {', '.join(columns)})
            SELECT ?, COALESCE(MAX(seq), 0) + 1, {placeholders}
            FROM {table} WHERE task_id = ?
        """, (task_id, *values, task_id))
        cursor.execute(f"SELECT MAX(seq) FROM {table} WHERE task_id = ?", (task_id,))
        return cursor.fetchone()[0]

    def _append_session(self, cursor, task_id: str, session: TimeSession) -> int:
        return self._append_child(
            cursor, "task_sessions", ("start_time", "end_time", "duration", "notes"),
            task_id,
            (to_db_time(session.start_time), to_db_time(session.end_time),
             session.duration, session.notes),
        )

    def _append_status_change(self, cursor, task_id: str, change: StatusChange) -> int:
        return self._append_child(
            cursor, "task_status_history", ("status", "changed_by", "changed_at", "reason"),
            task_id,
            (change.status.value, change.changed_by, to_db_time(change.changed_at), change.reason),
        )

    def _append_comment(self, cursor, task_id: str, comment: Comment) -> int:
        return self._append_child(
            cursor, "task_comments", ("author", "message", "created_at"),
            task_id,
            (comment.author, comment.message, to_db_time(comment.timestamp)),
        )

    def _load_children(self, cursor, task_ids: List[str]) -> Dict[str, Dict[str, list]]:
        """Batch-load sessions, history, comments and watchers for the given tasks."""
        children = {
            task_id: {"sessions": [], "history": [], "comments": [], "watchers": []}
            for task_id in task_ids
        }
        for start in range(0, len(task_ids), _IN_CHUNK):
            chunk = task_ids[start:start + _IN_CHUNK]
            marks = ", ".join("?" for _ in chunk)

            cursor.execute(f"""
                SELECT task_id, start_time, end_time, duration, notes
                FROM task_sessions WHERE task_id IN ({marks})
                ORDER BY task_id, seq ASC
            """, chunk)
            for row in cursor.fetchall():
                children[row[0]]["sessions"].append(TimeSession(
                    start_time=from_db_time(row[1]), end_time=from_db_time(row[2]),
                    duration=row[3], notes=row[4],
                ))

            cursor.execute(f"""
                SELECT task_id, status, changed_by, changed_at, reason
                FROM task_status_history WHERE task_id IN ({marks})
                ORDER BY task_id, seq ASC
            """, chunk)
            for row in cursor.fetchall():
                children[row[0]]["history"].append(StatusChange(
                    status=row[1], changed_by=row[2],
                    changed_at=from_db_time(row[3]), reason=row[4],
                ))

            cursor.execute(f"""
                SELECT task_id, author, message, created_at
                FROM task_comments WHERE task_id IN ({marks})
                ORDER BY task_id, seq ASC
            """, chunk)
            for row in cursor.fetchall():
                children[row[0]]["comments"].append(Comment(
                    author=row[1], message=row[2], timestamp=from_db_time(row[3]),
                ))

            cursor.execute(f"""
                SELECT task_id, user_id FROM task_watchers
                WHERE task_id IN ({marks})
                ORDER BY task_id, added_at ASC, user_id ASC
            """, chunk)
            for row in cursor.fetchall():
                children[row[0]]["watchers"].append(row[1])

        return children

    @staticmethod
    def _row_to_task(row, children: Dict[str, list]) -> Task:
        return Task(
            id=row[0],
            title=row[1],
            description=row[2],
            assigned_to=row[3],
            assigned_by=row[4],
            status=row[5],
            priority=row[6],
            due_date=from_db_time(row[7]),
            start_date=from_db_time(row[8]),
            completed_date=from_db_time(row[9]),
            estimated_hours=row[10],
            time_tracking=TimeTracking(
                total_time_spent=row[11],
                sessions=children["sessions"],
                is_active=bool(row[12]),
                current_session_start=from_db_time(row[13]),
            ),
            status_history=children["history"],
            comments=children["comments"],
            watchers=children["watchers"],
            category=row[14],
            tags=json.loads(row[15]) if row[15] else [],
            custom_fields=json.loads(row[16]) if row[16] else {},
            created_at=from_db_time(row[17]),
            updated_at=from_db_time(row[18]),
        )

    def close(self):
        """Close database connection."""
        if self._connection:
            self._connection.close()
            self._connection = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    def initialize_fresh(self) -> None:
        """
        Initialize database with clean slate - drops all existing tables first.

        Useful for fresh installations and for tests requiring clean state.
        """
        if self._connection:
            self.close()
        self._initialize_database(drop_existing=True)
