"""
Relay-side room membership and event routing.

Each room holds at most ``capacity`` members.  Every mutation and every relayed
event for a room happens under that room's lock so membership notifications
and signaling events reach the other member in a consistent order.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Awaitable, Callable, Dict, List, Optional, Tuple

import nacl.encoding
import nacl.utils

from utils.error_codes import RoomFull

logger = logging.getLogger(__name__)

RELAYED_EVENTS = frozenset({"offer", "answer", "candidate"})
# 10 random bytes encode to exactly 16 Base32 characters, no padding.
ROOM_ID_BYTES = 10

Send = Callable[[dict], Awaitable[None]]


class RoomState(Enum):
    EMPTY = "empty"
    WAITING = "waiting"
    ACTIVE = "active"


@dataclass
class Room:
    room_id: str
    created_at: float
    members: Dict[str, Send] = field(default_factory=dict)
    lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False)
    destroyed: bool = False

    @property
    def state(self) -> RoomState:
        if not self.members:
            return RoomState.EMPTY
        if len(self.members) == 1:
            return RoomState.WAITING
        return RoomState.ACTIVE


def generate_room_id() -> str:
    raw = nacl.utils.random(ROOM_ID_BYTES)
    return nacl.encoding.Base32Encoder.encode(raw).decode("ascii")


class RoomRegistry:
    def __init__(self, capacity: int = 2, idle_timeout: float = 300.0, clock=time.monotonic):
        self.capacity = capacity
        self.idle_timeout = idle_timeout
        self.clock = clock
        self._rooms: Dict[str, Room] = {}
        self._membership: Dict[str, str] = {}

    def create_room(self) -> Room:
        room_id = generate_room_id()
        while room_id in self._rooms:
            room_id = generate_room_id()
        room = Room(room_id=room_id, created_at=self.clock())
        self._rooms[room_id] = room
        logger.info("Created room %s", room_id)
        return room

    def get(self, room_id: str) -> Optional[Room]:
        return self._rooms.get(room_id)

    def room_of(self, connection_id: str) -> Optional[str]:
        return self._membership.get(connection_id)

    def members(self, room_id: str) -> Tuple[str, ...]:
        room = self._rooms.get(room_id)
        return tuple(room.members) if room else ()

    def member_count(self, room_id: str) -> int:
        return len(self.members(room_id))

    def __len__(self) -> int:
        return len(self._rooms)

    async def join(self, room_id: str, connection_id: str, send: Send) -> List[str]:
        """
        Admit ``connection_id`` and return the ids that were already present.

        The joiner gets ``room-joined`` before the existing members hear about
        it, so it is ready for their offers.  Raises RoomFull without touching
        membership when the room is at capacity.
        """
        previous = self._membership.get(connection_id)
        if previous is not None and previous != room_id:
            await self.leave(connection_id)

        while True:
            room = self._rooms.get(room_id)
            if room is None:
                room = Room(room_id=room_id, created_at=self.clock())
                self._rooms[room_id] = room
            async with room.lock:
                if room.destroyed:
                    continue
                if connection_id in room.members:
                    existing = [cid for cid in room.members if cid != connection_id]
                    await send(self._joined_message(room_id, connection_id, existing))
                    return existing
                if len(room.members) >= self.capacity:
                    logger.info("Rejected %s: room %s is full", connection_id, room_id)
                    raise RoomFull(room_id, self.capacity)

                existing = list(room.members)
                room.members[connection_id] = send
                self._membership[connection_id] = room_id
                logger.info("Client %s joined room %s. Total: %d", connection_id, room_id, len(room.members))

                await send(self._joined_message(room_id, connection_id, existing))
                await self._broadcast(
                    room,
                    connection_id,
                    self._membership_event("user-connected", room_id, connection_id),
                )
                return existing

    async def relay(self, room_id: str, connection_id: str, event_type: str, payload) -> int:
        """Forward one signaling event to the other member(s); returns the delivery count."""
        if event_type not in RELAYED_EVENTS:
            raise ValueError(f"{event_type!r} is not a relayed event")

        room = self._rooms.get(room_id)
        if room is None:
            logger.warning("Dropped %s from %s: room %s does not exist", event_type, connection_id, room_id)
            return 0

        async with room.lock:
            if connection_id not in room.members:
                logger.warning("Dropped %s from %s: not a member of %s", event_type, connection_id, room_id)
                return 0
            delivered = await self._broadcast(
                room,
                connection_id,
                {"type": event_type, "roomId": room_id, "from": connection_id, "payload": payload},
            )
            if not delivered:
                logger.info("Dropped %s from %s: no peer in room %s", event_type, connection_id, room_id)
            return delivered

    async def leave(self, connection_id: str) -> Optional[str]:
        room_id = self._membership.pop(connection_id, None)
        if room_id is None:
            return None
        room = self._rooms.get(room_id)
        if room is None:
            return room_id

        async with room.lock:
            room.members.pop(connection_id, None)
            logger.info("Client %s left room %s. Total: %d", connection_id, room_id, len(room.members))
            if room.members:
                await self._broadcast(
                    room,
                    connection_id,
                    self._membership_event("user-disconnected", room_id, connection_id),
                )
            else:
                self._destroy(room)
        return room_id

    def purge_idle(self) -> int:
        """Destroy memberless rooms older than the idle timeout."""
        now = self.clock()
        stale = [
            room
            for room in self._rooms.values()
            if not room.members and not room.lock.locked() and now - room.created_at >= self.idle_timeout
        ]
        for room in stale:
            self._destroy(room)
        return len(stale)

    def _destroy(self, room: Room) -> None:
        room.destroyed = True
        if self._rooms.get(room.room_id) is room:
            del self._rooms[room.room_id]
            logger.info("Destroyed room %s", room.room_id)

    @staticmethod
    def _joined_message(room_id: str, connection_id: str, existing: List[str]) -> dict:
        return {
            "type": "room-joined",
            "roomId": room_id,
            "payload": {"connectionId": connection_id, "members": list(existing)},
        }

    @staticmethod
    def _membership_event(event_type: str, room_id: str, connection_id: str) -> dict:
        return {"type": event_type, "roomId": room_id, "from": connection_id, "payload": connection_id}

    @staticmethod
    async def _broadcast(room: Room, sender_id: str, message: dict) -> int:
        targets = [send for cid, send in room.members.items() if cid != sender_id]
        for send in targets:
            await send(message)
        return len(targets)
