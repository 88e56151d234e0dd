"""
SQLite persistence for A2A tasks.

Each task is stored as one row holding its JSON payload, so a reader always
sees a complete ``Task`` as written by the last ``save``.
"""

import logging
import sqlite3
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional, Union

from pydantic import ValidationError

from .a2a.models import Task, TaskState
from .exceptions import UpstreamUnavailable
from .task_store import TaskStore

logger = logging.getLogger(__name__)


class SqliteTaskStore(TaskStore):
    """
    SQLite task store.

    Uses WAL mode for better concurrency and creates tables as needed.
    Thread-safe through thread-local connections.
    """

    def __init__(self, db_path: Union[str, Path] = "a2a_runtime.db"):
        """Initialize database connection."""
        self.db_path = str(db_path)
        self._local = threading.local()
        self._connections: List[sqlite3.Connection] = []
        self._connections_lock = threading.Lock()
        try:
            self._init_database()
        except sqlite3.Error as exc:
            raise UpstreamUnavailable(
                f"Could not open task database at {self.db_path}: {exc}"
            ) from exc

    def _get_connection(self) -> sqlite3.Connection:
        """Get thread-local database connection."""
        if not hasattr(self._local, "connection"):
            connection = sqlite3.connect(self.db_path, check_same_thread=False)
            # Enable WAL mode for better concurrency
            connection.execute("PRAGMA journal_mode=WAL")
            connection.execute("PRAGMA synchronous=NORMAL")
            connection.execute("PRAGMA temp_store=memory")
            connection.row_factory = sqlite3.Row
            self._local.connection = connection
            with self._connections_lock:
                self._connections.append(connection)

        return self._local.connection

    def _init_database(self) -> None:
        """Initialize database schema."""
        with self._get_connection() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS a2a_tasks (
                    task_id TEXT PRIMARY KEY,
                    context_id TEXT NOT NULL,
                    state TEXT NOT NULL,
                    payload TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """
            )

            conn.execute(
                """
                CREATE INDEX IF NOT EXISTS idx_a2a_tasks_context
                ON a2a_tasks(context_id, created_at)
            """
            )

    def _deserialize(self, row: sqlite3.Row) -> Task:
        try:
            return Task.model_validate_json(row["payload"])
        except ValidationError as exc:
            raise UpstreamUnavailable(
                f"Stored task {row['task_id']} could not be decoded",
                task_id=row["task_id"],
            ) from exc

    async def save(self, task: Task) -> None:
        """Upsert a task row."""
        now = datetime.now(timezone.utc).isoformat()
        payload = task.model_dump_json(exclude_none=True)
        try:
            with self._get_connection() as conn:
                conn.execute(
                    """
                    INSERT INTO a2a_tasks
                    (task_id, context_id, state, payload, created_at, updated_at)
                    VALUES (?, ?, ?, ?, ?, ?)
                    ON CONFLICT(task_id) DO UPDATE SET
                        context_id = excluded.context_id,
                        state = excluded.state,
                        payload = excluded.payload,
                        updated_at = excluded.updated_at
                """,
                    (
                        task.id,
                        task.contextId,
                        task.status.state.value,
                        payload,
                        now,
                        now,
                    ),
                )
        except sqlite3.Error as exc:
            logger.error(
                "Failed to save task",
                extra={"task_id": task.id, "error": str(exc)},
            )
            raise UpstreamUnavailable(
                f"Task store unavailable: {exc}", task_id=task.id
            ) from exc

    async def get(self, task_id: str) -> Optional[Task]:
        """Retrieve a task by ID."""
        try:
            cursor = self._get_connection().execute(
                "SELECT task_id, payload FROM a2a_tasks WHERE task_id = ?",
                (task_id,),
            )
            row = cursor.fetchone()
        except sqlite3.Error as exc:
            raise UpstreamUnavailable(
                f"Task store unavailable: {exc}", task_id=task_id
            ) from exc

        if row:
            return self._deserialize(row)
        return None

    async def delete(self, task_id: str) -> bool:
        """Delete a task row."""
        try:
            with self._get_connection() as conn:
                cursor = conn.execute(
                    "DELETE FROM a2a_tasks WHERE task_id = ?", (task_id,)
                )
        except sqlite3.Error as exc:
            raise UpstreamUnavailable(
                f"Task store unavailable: {exc}", task_id=task_id
            ) from exc
        return cursor.rowcount > 0

    async def list_tasks(
        self,
        context_id: Optional[str] = None,
        state: Optional[TaskState] = None,
    ) -> List[Task]:
        """List tasks with optional filtering, oldest first."""
        query = "SELECT task_id, payload FROM a2a_tasks WHERE 1=1"
        params: List[str] = []

        if context_id is not None:
            query += " AND context_id = ?"
            params.append(context_id)

        if state is not None:
            query += " AND state = ?"
            params.append(state.value)

        query += " ORDER BY created_at ASC, rowid ASC"

        try:
            rows = self._get_connection().execute(query, params).fetchall()
        except sqlite3.Error as exc:
            raise UpstreamUnavailable(f"Task store unavailable: {exc}") from exc

        return [self._deserialize(row) for row in rows]

    async def close(self) -> None:
        """Close every connection opened by this store."""
        with self._connections_lock:
            connections, self._connections = self._connections, []
        for connection in connections:
            connection.close()
        self._local = threading.local()
