from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Protocol

logger = logging.getLogger("task_agent.connections")


class Connection(Protocol):
    async def send_json(self, data: Any) -> None:
        ...


class ConnectionRegistry:
    """
    Live streaming connections for one session.

    A connection whose send fails is treated as closed and dropped.
    """

    def __init__(self) -> None:
        # Keyed by identity; socket objects are not guaranteed to be hashable.
        self._connections: Dict[int, Connection] = {}

    def __len__(self) -> int:
        return len(self._connections)

    def __contains__(self, connection: object) -> bool:
        return id(connection) in self._connections

    async def register(
        self,
        connection: Connection,
        *,
        history: List[Dict[str, Any]],
        tasks: List[Dict[str, Any]],
    ) -> None:
        # The backlog goes out before the connection joins broadcasts.
        if not await self.send(connection, {"type": "history", "messages": history}):
            return
        if not await self.send(connection, {"type": "tasks", "tasks": tasks}):
            return
        self._connections[id(connection)] = connection
        logger.debug("Connection registered (active=%d)", len(self._connections))

    def unregister(self, connection: Connection) -> None:
        self._connections.pop(id(connection), None)
        logger.debug("Connection unregistered (active=%d)", len(self._connections))

    async def send(self, connection: Connection, payload: Dict[str, Any]) -> bool:
        try:
            await connection.send_json(payload)
        except Exception as exc:
            logger.debug("Dropping connection after failed send: %s", exc)
            self.unregister(connection)
            return False
        return True

    async def broadcast(
        self,
        payload: Dict[str, Any],
        exclude: Optional[Connection] = None,
    ) -> int:
        delivered = 0
        for connection in list(self._connections.values()):
            if connection is exclude:
                continue
            if await self.send(connection, payload):
                delivered += 1
        return delivered
