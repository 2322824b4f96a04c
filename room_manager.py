import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)

MAX_USER_COUNT = 2

WELCOME_EVENT = "welcome"
CREATE_OFFER_EVENT = "createOffer"
LEAVE_EVENT = "leave"


class JoinError(Exception):
    """A join was refused; the message is safe to show to the client."""

    message = "Unable to join room"

    def __init__(self, room_id: str, user_id: str, message: Optional[str] = None):
        self.room_id = room_id
        self.user_id = user_id
        if message is not None:
            self.message = message
        super().__init__(self.message)


class RoomFullError(JoinError):
    message = "Room is full, please try again later"


class DuplicateUserError(JoinError):
    message = "User is already in the room"


@dataclass
class Member:
    user_id: str
    room_id: str
    payload: Dict[str, Any]

    @classmethod
    def from_payload(cls, room_id: str, user_id: str, payload: Dict[str, Any]) -> "Member":
        data = dict(payload)
        data["roomId"] = room_id
        data["userId"] = user_id
        return cls(user_id=user_id, room_id=room_id, payload=data)

    def to_payload(self) -> Dict[str, Any]:
        return dict(self.payload)


@dataclass
class Room:
    room_id: str
    admin_user_id: Optional[str] = None
    members: List[Member] = field(default_factory=list)

    def find_member(self, user_id: str) -> Optional[Member]:
        for member in self.members:
            if member.user_id == user_id:
                return member
        return None

    def has_member(self, user_id: str) -> bool:
        return self.find_member(user_id) is not None

    def is_empty(self) -> bool:
        return not self.members


@dataclass
class JoinOutcome:
    room: Room
    member: Member
    # payload broadcast to the whole room, joiner included
    welcome: Dict[str, Any]
    # payload broadcast to everybody but the joiner
    create_offer: Dict[str, Any]


class _RoomLock:
    __slots__ = ("lock", "holders")

    def __init__(self):
        self.lock = asyncio.Lock()
        self.holders = 0


class RoomRegistry:
    """In-memory rooms keyed by room id.

    Joins and leaves on the same room are serialized with a per-room lock that
    is held across the admission check, the mutation and the notification
    fan-out, so two concurrent joins can never both pass the capacity check.
    Lookups do not take the lock.

    The ``channel`` handed to :meth:`join_room` and :meth:`leave_room` is the
    caller's connection channel (see ``signaling.ConnectionChannel``). It is
    used for the duration of the call only.
    """

    def __init__(self, max_user_count: int = MAX_USER_COUNT):
        if max_user_count < 1:
            raise ValueError("max_user_count must be at least 1")
        self.max_user_count = max_user_count
        self._rooms: Dict[str, Room] = {}
        self._locks: Dict[str, _RoomLock] = {}

    def __len__(self) -> int:
        return len(self._rooms)

    def __contains__(self, room_id: str) -> bool:
        return room_id in self._rooms

    def find_room(self, room_id: str) -> Optional[Room]:
        return self._rooms.get(room_id)

    def rooms(self) -> List[Room]:
        return list(self._rooms.values())

    def is_full(self, room: Room) -> bool:
        return len(room.members) >= self.max_user_count

    @asynccontextmanager
    async def _serialized(self, room_id: str):
        entry = self._locks.get(room_id)
        if entry is None:
            entry = self._locks[room_id] = _RoomLock()
        entry.holders += 1
        try:
            async with entry.lock:
                yield
        finally:
            entry.holders -= 1
            if entry.holders == 0:
                del self._locks[room_id]

    async def join_room(self, room_id: str, user_id: str, payload: Dict[str, Any], channel) -> JoinOutcome:
        async with self._serialized(room_id):
            room = self._rooms.get(room_id)
            if room is None:
                room = Room(room_id=room_id)

            if self.is_full(room):
                logger.warning(f"Room {room_id} is full, rejecting user {user_id}")
                raise RoomFullError(room_id, user_id)

            if room.has_member(user_id):
                logger.warning(f"User {user_id} is already in room {room_id}")
                raise DuplicateUserError(room_id, user_id)

            if room.is_empty():
                room.admin_user_id = user_id

            member = Member.from_payload(room_id, user_id, payload)
            room.members.append(member)
            if room_id not in self._rooms:
                self._rooms[room_id] = room
                logger.info(f"Created room {room_id} with admin {user_id}")

            outcome = JoinOutcome(
                room=room,
                member=member,
                welcome=member.to_payload(),
                create_offer=member.to_payload(),
            )
            try:
                await channel.join_group(room_id)
                await channel.broadcast_to_room(room_id, WELCOME_EVENT, outcome.welcome)
                await channel.broadcast_to_room(room_id, CREATE_OFFER_EVENT, outcome.create_offer, exclude_self=True)
            except Exception:
                logger.warning(f"Transport failed while user {user_id} joined room {room_id}, rolling back")
                self._remove_member(room, member)
                raise

            logger.info(f"User {user_id} joined room {room_id} ({len(room.members)}/{self.max_user_count})")
            return outcome

    async def leave_room(self, user_id: str, room_id: str, channel) -> Optional[Member]:
        """Remove a member and notify whoever is left. Unknown rooms or users are a no-op."""
        async with self._serialized(room_id):
            room = self._rooms.get(room_id)
            if room is None:
                return None

            member = room.find_member(user_id)
            if member is None:
                return None

            self._remove_member(room, member)
            logger.info(f"User {user_id} left room {room_id} ({len(room.members)}/{self.max_user_count})")

            # registry is consistent before any notification goes out
            await channel.broadcast_to_room(room_id, LEAVE_EVENT, member.to_payload(), exclude_self=True)
            await channel.leave_group(room_id)
            return member

    def _remove_member(self, room: Room, member: Member):
        room.members.remove(member)
        if room.is_empty() and self._rooms.get(room.room_id) is room:
            del self._rooms[room.room_id]
            logger.info(f"Closed empty room {room.room_id}")
