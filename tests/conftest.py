"""pytest fixtures: an in-memory transport standing in for Socket.IO."""

from collections import defaultdict
from typing import Any, Dict, List, Set, Tuple

import pytest

from room_manager import RoomRegistry
from signaling import Connection, SignalingHandler


class FakeTransport:
    """Records every delivery per connection and tracks room groups."""

    def __init__(self):
        self.groups: Dict[str, Set[str]] = defaultdict(set)
        self.inbox: Dict[str, List[Tuple[str, Any]]] = defaultdict(list)

    def channel(self, connection_id: str) -> "FakeChannel":
        return FakeChannel(self, connection_id)

    def received(self, connection_id: str, event: str = None) -> List[Any]:
        return [payload for name, payload in self.inbox[connection_id] if event is None or name == event]

    def events(self, connection_id: str) -> List[str]:
        return [name for name, _ in self.inbox[connection_id]]


class FakeChannel:
    def __init__(self, transport: FakeTransport, connection_id: str):
        self.transport = transport
        self.connection_id = connection_id

    async def send(self, event, payload):
        self.transport.inbox[self.connection_id].append((event, payload))

    async def broadcast_to_room(self, room_id, event, payload, exclude_self=False):
        for member in sorted(self.transport.groups.get(room_id, ())):
            if exclude_self and member == self.connection_id:
                continue
            self.transport.inbox[member].append((event, payload))

    async def join_group(self, room_id):
        self.transport.groups[room_id].add(self.connection_id)

    async def leave_group(self, room_id):
        self.transport.groups[room_id].discard(self.connection_id)


class FailingChannel(FakeChannel):
    """FakeChannel whose named operations raise, optionally only for one event."""

    def __init__(self, transport, connection_id, fail_on=(), fail_event=None):
        super().__init__(transport, connection_id)
        self.fail_on = set(fail_on)
        self.fail_event = fail_event

    async def join_group(self, room_id):
        if "join_group" in self.fail_on:
            raise ConnectionError("join_group failed")
        await super().join_group(room_id)

    async def broadcast_to_room(self, room_id, event, payload, exclude_self=False):
        if "broadcast_to_room" in self.fail_on and self.fail_event in (None, event):
            raise ConnectionError(f"broadcast of {event} failed")
        await super().broadcast_to_room(room_id, event, payload, exclude_self)


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def registry():
    return RoomRegistry()


@pytest.fixture
def handler(registry):
    return SignalingHandler(registry)


@pytest.fixture
def failing_channel(transport):
    """Build a channel whose transport operations raise."""

    def _failing_channel(connection_id: str, *fail_on, fail_event=None) -> FailingChannel:
        return FailingChannel(transport, connection_id, fail_on, fail_event)

    return _failing_channel


@pytest.fixture
def connect(transport):
    """Open a fake client connection."""

    def _connect(connection_id: str) -> Connection:
        return Connection(connection_id, transport.channel(connection_id))

    return _connect
