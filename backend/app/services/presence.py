import asyncio
from dataclasses import dataclass, field
from typing import Dict, FrozenSet, List, Optional, Protocol, Set

import structlog

from app.schemas.events import OutboundEvent
from app.schemas.identity import Identity, OperatorIdentity

logger = structlog.get_logger()


class Connection(Protocol):
    """A live client link. deliver() must not block."""
    id: str
    identity: Identity

    def deliver(self, event: OutboundEvent) -> bool: ...


@dataclass
class _Entry:
    connection: Connection
    rooms: Set[str] = field(default_factory=set)


@dataclass
class Departure:
    identity: Identity
    rooms: FrozenSet[str]
    went_offline: bool


def identity_key(identity: Identity) -> str:
    return f"{identity.kind}:{identity.ref}"


class PresenceRegistry:
    """
    Who is connected right now, and which rooms each connection is in.

    This is the live truth, not a cache: it starts empty and is rebuilt by
    clients reconnecting. All three maps are only touched under one lock.
    """

    def __init__(self) -> None:
        self._lock = asyncio.Lock()
        self._connections: Dict[str, _Entry] = {}
        self._rooms: Dict[str, Set[str]] = {}
        self._by_identity: Dict[str, Set[str]] = {}

    async def register(self, connection: Connection) -> bool:
        """Returns True if this is the identity's first live connection."""
        async with self._lock:
            if connection.id in self._connections:
                return False
            self._connections[connection.id] = _Entry(connection=connection)
            key = identity_key(connection.identity)
            sockets = self._by_identity.setdefault(key, set())
            came_online = not sockets
            sockets.add(connection.id)
        logger.info(
            "connection_registered",
            connection_id=connection.id,
            identity_kind=connection.identity.kind,
        )
        return came_online

    async def unregister(self, connection_id: str) -> Optional[Departure]:
        """Safe to call more than once."""
        async with self._lock:
            entry = self._connections.pop(connection_id, None)
            if entry is None:
                return None
            for room in entry.rooms:
                members = self._rooms.get(room)
                if members is None:
                    continue
                members.discard(connection_id)
                if not members:
                    del self._rooms[room]
            key = identity_key(entry.connection.identity)
            sockets = self._by_identity.get(key, set())
            sockets.discard(connection_id)
            went_offline = not sockets
            if went_offline:
                self._by_identity.pop(key, None)
            departure = Departure(
                identity=entry.connection.identity,
                rooms=frozenset(entry.rooms),
                went_offline=went_offline,
            )
        logger.info(
            "connection_unregistered",
            connection_id=connection_id,
            went_offline=went_offline,
        )
        return departure

    async def join(self, connection_id: str, room: str) -> bool:
        async with self._lock:
            entry = self._connections.get(connection_id)
            if entry is None:
                return False
            entry.rooms.add(room)
            self._rooms.setdefault(room, set()).add(connection_id)
            return True

    async def leave(self, connection_id: str, room: str) -> bool:
        async with self._lock:
            entry = self._connections.get(connection_id)
            if entry is None or room not in entry.rooms:
                return False
            entry.rooms.discard(room)
            members = self._rooms.get(room)
            if members is not None:
                members.discard(connection_id)
                if not members:
                    del self._rooms[room]
            return True

    async def members(self, room: str) -> List[Connection]:
        """Snapshot of the room; safe to iterate while others connect/disconnect."""
        async with self._lock:
            ids = self._rooms.get(room, ())
            return [self._connections[cid].connection for cid in ids if cid in self._connections]

    async def rooms_of(self, connection_id: str) -> FrozenSet[str]:
        async with self._lock:
            entry = self._connections.get(connection_id)
            return frozenset(entry.rooms) if entry else frozenset()

    async def connections_for(self, identity: Identity) -> List[Connection]:
        async with self._lock:
            ids = self._by_identity.get(identity_key(identity), ())
            return [self._connections[cid].connection for cid in ids if cid in self._connections]

    async def is_online(self, identity: Identity) -> bool:
        async with self._lock:
            return bool(self._by_identity.get(identity_key(identity)))

    async def online_operator_ids(self) -> Set[str]:
        async with self._lock:
            return {
                entry.connection.identity.id
                for entry in self._connections.values()
                if isinstance(entry.connection.identity, OperatorIdentity)
            }

    async def connection_count(self) -> int:
        async with self._lock:
            return len(self._connections)
