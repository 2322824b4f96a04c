import asyncio
import enum
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Protocol

import socketio
from pydantic import ValidationError

from models.schemas import JoinPayload, RoomPayload
from room_manager import JoinError, RoomRegistry

logger = logging.getLogger(__name__)

ERROR_EVENT = "error"


class ConnectionChannel(Protocol):
    """What the relay needs from the transport for a single client."""

    async def send(self, event: str, payload: Any) -> None: ...

    async def broadcast_to_room(self, room_id: str, event: str, payload: Any, exclude_self: bool = False) -> None: ...

    async def join_group(self, room_id: str) -> None: ...

    async def leave_group(self, room_id: str) -> None: ...


class SocketIOChannel:
    """ConnectionChannel backed by a python-socketio server and one sid."""

    def __init__(self, sio: socketio.AsyncServer, sid: str):
        self.sio = sio
        self.sid = sid

    async def send(self, event: str, payload: Any) -> None:
        await self.sio.emit(event, payload, to=self.sid)

    async def broadcast_to_room(self, room_id: str, event: str, payload: Any, exclude_self: bool = False) -> None:
        await self.sio.emit(event, payload, to=room_id, skip_sid=self.sid if exclude_self else None)

    async def join_group(self, room_id: str) -> None:
        await self.sio.enter_room(self.sid, room_id)

    async def leave_group(self, room_id: str) -> None:
        await self.sio.leave_room(self.sid, room_id)


class ConnectionState(enum.Enum):
    CONNECTED = "connected"
    BOUND = "bound"
    CLOSED = "closed"


@dataclass(frozen=True)
class SessionBinding:
    user_id: str
    room_id: str


class Connection:
    """One client session. Events on a connection are handled one at a time."""

    def __init__(self, connection_id: str, channel: ConnectionChannel):
        self.connection_id = connection_id
        self.channel = channel
        self.state = ConnectionState.CONNECTED
        self.binding: Optional[SessionBinding] = None
        self.lock = asyncio.Lock()

    def bind(self, user_id: str, room_id: str):
        self.binding = SessionBinding(user_id=user_id, room_id=room_id)
        self.state = ConnectionState.BOUND

    def unbind(self) -> Optional[SessionBinding]:
        binding, self.binding = self.binding, None
        if self.state is ConnectionState.BOUND:
            self.state = ConnectionState.CONNECTED
        return binding

    def close(self) -> Optional[SessionBinding]:
        binding = self.unbind()
        self.state = ConnectionState.CLOSED
        return binding

    @property
    def closed(self) -> bool:
        return self.state is ConnectionState.CLOSED

    def __repr__(self):
        return f"Connection({self.connection_id!r}, state={self.state.value}, binding={self.binding})"


def _describe_validation_error(event: str, exc: ValidationError) -> str:
    fields = sorted({str(err["loc"][0]) for err in exc.errors() if err.get("loc")})
    if fields:
        return f"Invalid '{event}' payload: missing or invalid {', '.join(fields)}"
    return f"Invalid '{event}' payload: expected an object"


class SignalingHandler:
    """Event dispatch for signaling connections.

    ``offer`` and ``answer`` are always forwarded to the rest of the room.
    ``candidate`` and ``message`` are only logged unless relaying them is
    switched on.
    """

    def __init__(self, registry: RoomRegistry, relay_candidates: bool = False, relay_messages: bool = False):
        self.registry = registry
        self.relay_candidates = relay_candidates
        self.relay_messages = relay_messages
        self._handlers = {
            "join": self.on_join,
            "leave": self.on_leave,
            "offer": self.on_relay,
            "answer": self.on_relay,
            "candidate": self.on_candidate,
            "message": self.on_message,
        }

    @property
    def events(self) -> List[str]:
        return list(self._handlers)

    async def handle(self, connection: Connection, event: str, data: Any):
        handler = self._handlers.get(event)
        if handler is None:
            logger.debug(f"Ignoring unknown event '{event}' from {connection.connection_id}")
            return
        async with connection.lock:
            if connection.closed:
                logger.debug(f"Dropping '{event}' from closed connection {connection.connection_id}")
                return
            try:
                await handler(connection, event, data)
            except Exception as e:
                logger.error(f"Error handling '{event}' from {connection.connection_id}: {e}", exc_info=True)
                await self._send_error(connection, f"Failed to handle '{event}'")

    async def disconnect(self, connection: Connection):
        async with connection.lock:
            if connection.closed:
                return
            binding = connection.close()
            if binding is None:
                logger.info(f"Connection {connection.connection_id} closed")
                return
            logger.info(f"Connection {connection.connection_id} closed, removing {binding.user_id} from {binding.room_id}")
            await self.registry.leave_room(binding.user_id, binding.room_id, connection.channel)

    async def on_join(self, connection: Connection, event: str, data: Any):
        if connection.binding is not None:
            await self._send_error(connection, f"Already in room {connection.binding.room_id}, leave it first")
            return
        payload = await self._parse(connection, event, data, JoinPayload)
        if payload is None:
            return
        try:
            await self.registry.join_room(payload.roomId, payload.userId, data, connection.channel)
        except JoinError as e:
            await self._send_error(connection, e.message)
            return
        connection.bind(payload.userId, payload.roomId)

    async def on_leave(self, connection: Connection, event: str, data: Any):
        # the binding, not the payload, decides which room is left
        room_id = data.get("roomId") if isinstance(data, dict) else None
        if not room_id:
            logger.warning(f"'leave' from {connection.connection_id} without roomId: {data!r}")
        elif connection.binding is not None and room_id != connection.binding.room_id:
            logger.warning(
                f"'leave' from {connection.connection_id} names room {room_id}, "
                f"connection is bound to {connection.binding.room_id}"
            )
        binding = connection.unbind()
        if binding is None:
            logger.warning(f"'leave' from unbound connection {connection.connection_id}")
            return
        await self.registry.leave_room(binding.user_id, binding.room_id, connection.channel)

    async def on_relay(self, connection: Connection, event: str, data: Any):
        payload = await self._parse(connection, event, data, RoomPayload)
        if payload is None:
            return
        logger.debug(f"Relaying '{event}' from {connection.connection_id} to room {payload.roomId}")
        await connection.channel.broadcast_to_room(payload.roomId, event, data, exclude_self=True)

    async def on_candidate(self, connection: Connection, event: str, data: Any):
        logger.info(f"candidate from {connection.connection_id}: {data}")
        if self.relay_candidates:
            await self.on_relay(connection, event, data)

    async def on_message(self, connection: Connection, event: str, data: Any):
        logger.info(f"message from {connection.connection_id}: {data}")
        if self.relay_messages:
            await self.on_relay(connection, event, data)

    async def _parse(self, connection: Connection, event: str, data: Any, model):
        try:
            return model.model_validate(data)
        except ValidationError as e:
            logger.warning(f"Rejected '{event}' from {connection.connection_id}: {e.error_count()} validation error(s)")
            await self._send_error(connection, _describe_validation_error(event, e))
            return None

    async def _send_error(self, connection: Connection, message: str):
        await connection.channel.send(ERROR_EVENT, message)


class SignalingServer:
    """Binds a SignalingHandler to a python-socketio AsyncServer."""

    def __init__(self, handler: SignalingHandler, cors_allowed_origins="*"):
        self.handler = handler
        self.connections: Dict[str, Connection] = {}
        self.sio = socketio.AsyncServer(
            async_mode="asgi",
            cors_allowed_origins=cors_allowed_origins,
            cors_credentials=True,
        )
        self.sio.on("connect", self.on_connect)
        self.sio.on("disconnect", self.on_disconnect)
        for event in handler.events:
            self.sio.on(event, self._make_event_handler(event))

    def _make_event_handler(self, event: str):
        async def on_event(sid, data=None):
            connection = self.connections.get(sid)
            if connection is None:
                logger.warning(f"'{event}' from unknown sid {sid}")
                return
            await self.handler.handle(connection, event, data)

        return on_event

    async def on_connect(self, sid, environ, auth=None):
        self.connections[sid] = Connection(sid, SocketIOChannel(self.sio, sid))
        logger.info(f"Client connected: {sid}")

    async def on_disconnect(self, sid, reason=None):
        connection = self.connections.pop(sid, None)
        if connection is None:
            return
        logger.info(f"Client disconnected: {sid} ({reason or 'unknown reason'})")
        await self.handler.disconnect(connection)

    def asgi_app(self, other_asgi_app=None) -> socketio.ASGIApp:
        return socketio.ASGIApp(self.sio, other_asgi_app=other_asgi_app)
