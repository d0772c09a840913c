from __future__ import annotations

import contextlib
import logging
import sqlite3
import threading
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Tuple, Union

ISO_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"
DATE_FORMAT = "%Y-%m-%d"
DEFAULT_DUE_DAYS = 7

PRIORITIES = ("low", "medium", "high")
DEFAULT_PRIORITY = "medium"

logger = logging.getLogger("task_agent.storage")

SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS tasks (
        id TEXT PRIMARY KEY,
        title TEXT NOT NULL,
        description TEXT,
        priority TEXT DEFAULT 'medium',
        completed INTEGER DEFAULT 0,
        dueDate TEXT,
        createdAt TEXT DEFAULT CURRENT_TIMESTAMP
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS messages (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        role TEXT NOT NULL,
        content TEXT NOT NULL,
        timestamp TEXT DEFAULT CURRENT_TIMESTAMP
    )
    """,
)


class StoreError(RuntimeError):
    """Raised when the embedded database rejects or fails a statement."""


def utcnow() -> str:
    return datetime.utcnow().strftime(ISO_FORMAT)


def default_due_date(today: Optional[date] = None) -> str:
    start = today or datetime.utcnow().date()
    return (start + timedelta(days=DEFAULT_DUE_DAYS)).strftime(DATE_FORMAT)


@dataclass
class Task:
    id: str
    title: str
    description: str
    priority: str
    completed: bool
    dueDate: Optional[str]
    createdAt: str

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "Task":
        return cls(
            id=row["id"],
            title=row["title"],
            description=row["description"] or "",
            priority=row["priority"] or DEFAULT_PRIORITY,
            completed=row["completed"] == 1,
            dueDate=row["dueDate"],
            createdAt=row["createdAt"],
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "priority": self.priority,
            "completed": self.completed,
            "dueDate": self.dueDate,
            "createdAt": self.createdAt,
        }


@dataclass
class Message:
    id: int
    role: str
    content: str
    timestamp: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "role": self.role,
            "content": self.content,
            "timestamp": self.timestamp,
        }


class SessionStore:
    """
    SQLite store holding one session's tasks and chat messages.

    A single connection is shared by every caller and guarded by a re-entrant
    lock, so statements against one session never interleave.
    """

    def __init__(self, db_path: Union[str, Path] = ":memory:") -> None:
        self.db_path = str(db_path)
        if self.db_path != ":memory:":
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()
        self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self.ensure_schema()
        logger.info("SessionStore ready db=%s", self.db_path)

    def ensure_schema(self) -> None:
        with self._lock:
            try:
                for statement in SCHEMA:
                    self._conn.execute(statement)
                self._conn.commit()
            except sqlite3.Error as exc:
                raise StoreError(f"Schema initialisation failed: {exc}") from exc

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    def _execute(self, sql: str, params: Iterable[Any] = ()) -> sqlite3.Cursor:
        with self._lock:
            try:
                cursor = self._conn.execute(sql, tuple(params))
                self._conn.commit()
                return cursor
            except sqlite3.Error as exc:
                with contextlib.suppress(sqlite3.Error):
                    self._conn.rollback()
                raise StoreError(str(exc)) from exc

    def _fetchall(self, sql: str, params: Iterable[Any] = ()) -> List[sqlite3.Row]:
        with self._lock:
            try:
                return self._conn.execute(sql, tuple(params)).fetchall()
            except sqlite3.Error as exc:
                raise StoreError(str(exc)) from exc

    # ---- tasks ----

    def list_tasks(self) -> List[Task]:
        rows = self._fetchall("SELECT * FROM tasks ORDER BY createdAt DESC, rowid DESC")
        return [Task.from_row(row) for row in rows]

    def get_task(self, task_id: str) -> Optional[Task]:
        rows = self._fetchall("SELECT * FROM tasks WHERE id = ?", (task_id,))
        return Task.from_row(rows[0]) if rows else None

    def insert_task(
        self,
        *,
        task_id: str,
        title: str,
        description: str,
        priority: str,
        due_date: str,
    ) -> None:
        self._execute(
            "INSERT INTO tasks (id, title, description, priority, dueDate, createdAt) "
            "VALUES (?, ?, ?, ?, ?, ?)",
            (task_id, title, description, priority, due_date, utcnow()),
        )

    def update_task(self, task_id: str, fields: Dict[str, Any]) -> int:
        if not fields:
            return 0
        # Column names come from a fixed whitelist upstream; values are bound.
        assignments, values = _assignments(fields)
        cursor = self._execute(
            f"UPDATE tasks SET {assignments} WHERE id = ?",
            (*values, task_id),
        )
        return cursor.rowcount

    def delete_task(self, task_id: str) -> int:
        cursor = self._execute("DELETE FROM tasks WHERE id = ?", (task_id,))
        return cursor.rowcount

    def complete_tasks_with_prefix(self, prefix: str) -> int:
        escaped = prefix.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
        cursor = self._execute(
            "UPDATE tasks SET completed = 1 WHERE id LIKE ? ESCAPE '\\'",
            (escaped + "%",),
        )
        return cursor.rowcount

    # ---- messages ----

    def insert_message(self, role: str, content: str) -> int:
        cursor = self._execute(
            "INSERT INTO messages (role, content, timestamp) VALUES (?, ?, ?)",
            (role, content, utcnow()),
        )
        return int(cursor.lastrowid)

    def recent_messages(self, limit: int = 50) -> List[Message]:
        rows = self._fetchall(
            "SELECT * FROM messages ORDER BY id DESC LIMIT ?", (max(limit, 0),)
        )
        messages = [
            Message(
                id=row["id"],
                role=row["role"],
                content=row["content"],
                timestamp=row["timestamp"],
            )
            for row in rows
        ]
        messages.reverse()
        return messages


def _assignments(fields: Dict[str, Any]) -> Tuple[str, List[Any]]:
    columns = ", ".join(f"{name} = ?" for name in fields)
    values: List[Any] = []
    for value in fields.values():
        if isinstance(value, bool):
            value = 1 if value else 0
        values.append(value)
    return columns, values
