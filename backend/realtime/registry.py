"""
Channel registry: which live connections are listening on which room.

Rooms are plain strings. Every authenticated connection joins its own
user room; team and task rooms are joined on demand after an access check.

ChannelRegistry is the interface the rest of the app depends on. The
in-memory implementation serves a single process; a pub/sub backed one can
replace it through the get_channel_registry dependency without touching
call sites.
"""

import abc
import logging
from typing import Any, Dict, Optional, Protocol, Set

logger = logging.getLogger(__name__)


class Connection(Protocol):
    """Anything that can push a JSON payload to one client (e.g. a WebSocket)."""

    async def send_json(self, data: Any) -> None:
        ...


def user_room(user_id: int) -> str:
    return f"user:{user_id}"


def team_room(team_id: int) -> str:
    return f"team:{team_id}"


def task_room(task_id: int) -> str:
    return f"task:{task_id}"


class ChannelRegistry(abc.ABC):
    @abc.abstractmethod
    def join(self, room: str, connection: Connection) -> None:
        ...

    @abc.abstractmethod
    def leave(self, room: str, connection: Connection) -> None:
        ...

    @abc.abstractmethod
    def leave_all(self, connection: Connection) -> None:
        """Drop a connection from every room (on disconnect)."""

    @abc.abstractmethod
    def members(self, room: str) -> Set[Connection]:
        ...

    @abc.abstractmethod
    def rooms_of(self, connection: Connection) -> Set[str]:
        ...

    @abc.abstractmethod
    async def broadcast(
        self,
        room: str,
        event: str,
        data: Dict[str, Any],
        exclude: Optional[Connection] = None,
    ) -> int:
        """
        Send {"event": event, "data": data} to every connection in a room.

        Returns:
            Number of connections the event was delivered to
        """


class InMemoryChannelRegistry(ChannelRegistry):
    """Process-local registry. Lost on restart; never a source of truth."""

    def __init__(self):
        self._rooms: Dict[str, Set[Connection]] = {}
        self._memberships: Dict[Connection, Set[str]] = {}

    def join(self, room: str, connection: Connection) -> None:
        self._rooms.setdefault(room, set()).add(connection)
        self._memberships.setdefault(connection, set()).add(room)
        logger.debug(f"Connection joined room {room}")

    def leave(self, room: str, connection: Connection) -> None:
        connections = self._rooms.get(room)
        if connections is not None:
            connections.discard(connection)
            if not connections:
                del self._rooms[room]

        rooms = self._memberships.get(connection)
        if rooms is not None:
            rooms.discard(room)
            if not rooms:
                del self._memberships[connection]

    def leave_all(self, connection: Connection) -> None:
        for room in list(self._memberships.get(connection, ())):
            self.leave(room, connection)

    def members(self, room: str) -> Set[Connection]:
        return set(self._rooms.get(room, ()))

    def rooms_of(self, connection: Connection) -> Set[str]:
        return set(self._memberships.get(connection, ()))

    async def broadcast(
        self,
        room: str,
        event: str,
        data: Dict[str, Any],
        exclude: Optional[Connection] = None,
    ) -> int:
        payload = {"event": event, "data": data}
        delivered = 0
        for connection in list(self._rooms.get(room, ())):
            if connection is exclude:
                continue
            try:
                await connection.send_json(payload)
                delivered += 1
            except Exception as e:
                # Best-effort delivery: a dead connection is dropped, not retried
                logger.warning(f"Dropping connection after failed send to {room}: {e}")
                self.leave_all(connection)
        logger.debug(f"Broadcast {event} to {room}: {delivered} connection(s)")
        return delivered


_registry = InMemoryChannelRegistry()


def get_channel_registry() -> ChannelRegistry:
    """Dependency provider for the process-wide registry."""
    return _registry
