from __future__ import annotations

import asyncio
import hashlib
import logging
import re
from collections import OrderedDict
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Union
from uuid import uuid4

from .assistant import AddTaskAction, AssistantBridge, AssistantReply, CompleteTaskAction
from .connections import Connection, ConnectionRegistry
from .storage import (
    DATE_FORMAT,
    DEFAULT_PRIORITY,
    PRIORITIES,
    Message,
    SessionStore,
    StoreError,
    Task,
    default_due_date,
    utcnow,
)

logger = logging.getLogger("task_agent.session")

# Columns a client may change through a partial update.
UPDATABLE_FIELDS = ("title", "description", "priority", "completed", "dueDate")


class TaskValidationError(ValueError):
    """Raised when client-supplied task fields have the wrong type or value."""


def _check_title(value: Any) -> str:
    if not isinstance(value, str) or not value.strip():
        raise TaskValidationError("Task title must be a non-empty string.")
    return value


def _check_priority(value: Any) -> str:
    if value not in PRIORITIES:
        raise TaskValidationError(
            f"Priority must be one of {', '.join(PRIORITIES)}; got {value!r}."
        )
    return value


def _check_due_date(value: Any) -> str:
    if not isinstance(value, str):
        raise TaskValidationError("Due date must be a YYYY-MM-DD string.")
    try:
        datetime.strptime(value, DATE_FORMAT)
    except ValueError as exc:
        raise TaskValidationError(f"Due date must be YYYY-MM-DD; got {value!r}.") from exc
    return value


def _check_description(value: Any) -> str:
    if value is None:
        return ""
    if not isinstance(value, str):
        raise TaskValidationError("Description must be a string.")
    return value


def _check_completed(value: Any) -> bool:
    # JSON clients sometimes send 0/1 instead of a boolean.
    if isinstance(value, bool):
        return value
    if isinstance(value, int) and value in (0, 1):
        return bool(value)
    raise TaskValidationError("Completed must be a boolean.")


_FIELD_CHECKS: Dict[str, Callable[[Any], Any]] = {
    "title": _check_title,
    "description": _check_description,
    "priority": _check_priority,
    "completed": _check_completed,
    "dueDate": _check_due_date,
}


def clean_updates(updates: Dict[str, Any]) -> Dict[str, Any]:
    """
    Reduce a partial update to whitelisted, type-checked columns.

    Unknown keys are dropped; known keys with bad values raise
    ``TaskValidationError``.
    """
    cleaned: Dict[str, Any] = {}
    ignored = []
    for key, value in updates.items():
        if key not in UPDATABLE_FIELDS:
            ignored.append(key)
            continue
        cleaned[key] = _FIELD_CHECKS[key](value)
    if ignored:
        logger.info("Ignoring non-updatable task fields: %s", ", ".join(sorted(ignored)))
    return cleaned


class SessionCoordinator:
    """
    Single owner of one session's tasks, messages and live connections.

    Every store access goes through the store's lock; chat turns are
    serialised per session while the generation call itself runs in a
    worker thread so other sessions keep serving. Joining a connection and
    any mutate-then-broadcast sequence share ``_broadcast_lock``, so a new
    connection's snapshot is never followed by an older task list.
    """

    def __init__(
        self,
        key: str,
        store: SessionStore,
        bridge: AssistantBridge,
        *,
        history_limit: int = 50,
    ) -> None:
        self.key = key
        self.store = store
        self.bridge = bridge
        self.history_limit = history_limit
        self.connections = ConnectionRegistry()
        self._chat_lock = asyncio.Lock()
        self._broadcast_lock = asyncio.Lock()

    @property
    def idle(self) -> bool:
        """True when nothing is connected or in flight for this session."""
        return not (
            len(self.connections) or self._chat_lock.locked() or self._broadcast_lock.locked()
        )

    # ---- tasks ----

    async def list_tasks(self) -> List[Task]:
        try:
            return self.store.list_tasks()
        except StoreError:
            logger.exception("Error getting tasks for session %s", self.key)
            return []

    async def task_payloads(self) -> List[Dict[str, Any]]:
        return [task.to_dict() for task in await self.list_tasks()]

    async def create_task(
        self,
        title: Any,
        description: Any = None,
        priority: Any = None,
        due_date: Any = None,
    ) -> str:
        async with self._broadcast_lock:
            task_id = self._insert_task(
                title=_check_title(title),
                description=_check_description(description),
                priority=_check_priority(priority) if priority else None,
                due_date=_check_due_date(due_date) if due_date else None,
            )
            await self.connections.broadcast({"type": "task_added", "taskId": task_id})
            await self._broadcast_tasks()
        return task_id

    async def update_task(self, task_id: str, updates: Dict[str, Any]) -> bool:
        fields = clean_updates(updates)
        async with self._broadcast_lock:
            affected = self.store.update_task(task_id, fields)
            logger.info(
                "Updated task %s in session %s (fields=%s rows=%d)",
                task_id,
                self.key,
                ",".join(fields) or "-",
                affected,
            )
            await self.connections.broadcast({"type": "task_updated", "taskId": task_id})
            await self._broadcast_tasks()
        return True

    async def delete_task(self, task_id: str) -> bool:
        async with self._broadcast_lock:
            affected = self.store.delete_task(task_id)
            logger.info("Deleted task %s in session %s (rows=%d)", task_id, self.key, affected)
            await self.connections.broadcast({"type": "task_deleted", "taskId": task_id})
            await self._broadcast_tasks()
        return True

    def _insert_task(
        self,
        *,
        title: str,
        description: Optional[str] = None,
        priority: Optional[str] = None,
        due_date: Optional[str] = None,
    ) -> str:
        task_id = str(uuid4())
        self.store.insert_task(
            task_id=task_id,
            title=title,
            description=description or "",
            priority=priority or DEFAULT_PRIORITY,
            due_date=due_date or default_due_date(),
        )
        logger.info("Created task %s in session %s: %s", task_id, self.key, title)
        return task_id

    # ---- messages ----

    async def append_message(self, role: str, content: str) -> None:
        try:
            self.store.insert_message(role, content)
        except StoreError:
            # A lost transcript line must not break the conversation.
            logger.exception("Error saving %s message for session %s", role, self.key)

    async def recent_messages(self, limit: Optional[int] = None) -> List[Message]:
        try:
            return self.store.recent_messages(self.history_limit if limit is None else limit)
        except StoreError:
            logger.exception("Error getting messages for session %s", self.key)
            return []

    # ---- chat ----

    def _apply_action(self, action: Union[AddTaskAction, CompleteTaskAction]) -> None:
        if isinstance(action, AddTaskAction):
            self._insert_task(
                title=action.title,
                description=action.description,
                priority=action.priority,
                due_date=action.dueDate,
            )
        elif isinstance(action, CompleteTaskAction):
            affected = self.store.complete_tasks_with_prefix(action.taskId)
            logger.info(
                "Completed %d task(s) matching %s in session %s",
                affected,
                action.taskId,
                self.key,
            )

    async def _chat_turn(self, user_text: str) -> AssistantReply:
        async with self._chat_lock:
            await self.append_message("user", user_text)
            tasks = await self.list_tasks()
            reply = await asyncio.to_thread(
                self.bridge.reply, user_text, tasks, self._apply_action
            )
            await self.append_message("assistant", reply.text)
        return reply

    async def handle_chat_text(self, user_text: str) -> str:
        reply = await self._chat_turn(user_text)
        if reply.action:
            await self.broadcast_tasks()
        return reply.text

    async def handle_socket_chat(self, connection: Connection, user_text: str) -> str:
        reply = await self._chat_turn(user_text)
        async with self._broadcast_lock:
            await self.connections.send(
                connection,
                {
                    "type": "message",
                    "role": "assistant",
                    "content": reply.text,
                    "timestamp": utcnow(),
                },
            )
            tasks = await self.task_payloads()
            await self.connections.send(connection, {"type": "tasks", "tasks": tasks})
            await self.connections.broadcast(
                {"type": "tasks", "tasks": tasks}, exclude=connection
            )
        return reply.text

    # ---- connections ----

    async def connect(self, connection: Connection) -> None:
        async with self._broadcast_lock:
            history = [message.to_dict() for message in await self.recent_messages()]
            tasks = await self.task_payloads()
            await self.connections.register(connection, history=history, tasks=tasks)
        logger.info(
            "Connection joined session %s (active=%d)", self.key, len(self.connections)
        )

    def disconnect(self, connection: Connection) -> None:
        self.connections.unregister(connection)
        logger.info(
            "Connection left session %s (active=%d)", self.key, len(self.connections)
        )

    async def broadcast_tasks(self, exclude: Optional[Connection] = None) -> None:
        async with self._broadcast_lock:
            await self._broadcast_tasks(exclude)

    async def _broadcast_tasks(self, exclude: Optional[Connection] = None) -> None:
        tasks = await self.task_payloads()
        await self.connections.broadcast({"type": "tasks", "tasks": tasks}, exclude=exclude)

    def close(self) -> None:
        self.store.close()


class SessionRegistry:
    """
    Maps session keys to coordinators, creating each on first reference.

    At most ``max_sessions`` coordinators stay open; the least recently used
    idle one is closed when a new key arrives. Its data stays on disk and is
    reopened on the next reference.
    """

    def __init__(
        self,
        factory: Callable[[str], SessionCoordinator],
        *,
        max_sessions: Optional[int] = None,
    ) -> None:
        self._factory = factory
        self.max_sessions = max_sessions
        self._sessions: OrderedDict[str, SessionCoordinator] = OrderedDict()

    def get(self, key: str) -> SessionCoordinator:
        coordinator = self._sessions.get(key)
        if coordinator is None:
            self._evict_idle()
            coordinator = self._factory(key)
            self._sessions[key] = coordinator
            logger.info("Session %s initialised.", key)
        else:
            self._sessions.move_to_end(key)
        return coordinator

    def _evict_idle(self) -> None:
        if not self.max_sessions:
            return
        for key in list(self._sessions):
            if len(self._sessions) < self.max_sessions:
                break
            coordinator = self._sessions[key]
            if not coordinator.idle:
                continue
            del self._sessions[key]
            coordinator.close()
            logger.info("Session %s closed after falling idle.", key)

    def __contains__(self, key: object) -> bool:
        return key in self._sessions

    def __len__(self) -> int:
        return len(self._sessions)

    def close_all(self) -> None:
        for coordinator in self._sessions.values():
            coordinator.close()
        self._sessions.clear()


def session_db_path(data_dir: Path, key: str) -> Path:
    # The digest keeps keys that clean to the same name in separate files.
    safe_key = re.sub(r"[^A-Za-z0-9_.-]+", "_", key).strip(".")[:48] or "session"
    digest = hashlib.sha256(key.encode("utf-8")).hexdigest()[:16]
    return data_dir / "sessions" / f"{safe_key}-{digest}.sqlite3"
