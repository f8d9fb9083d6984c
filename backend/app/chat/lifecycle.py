"""Connection lifecycle manager.

Drives the per-connection state machine and dispatches inbound frames:

    CONNECTED (unjoined) --join--> JOINED(identity) --close/error--> DISCONNECTED

Join policy:
    An explicit ``join`` is required. Any other action from an unjoined
    connection is rejected with NotJoined. Joining again with the same
    identity is a no-op; joining with a different identity moves the
    connection to the new identity.

Cleanup guarantee:
    ``disconnect`` always removes the connection from every registry channel,
    whatever ended the transport. The WebSocket endpoint calls it from a
    ``finally`` block.

Protocol (client -> server events):
    - join: ``"<identity>"`` or ``{identity}``
    - send_message: ``{sender?, receiver | roomId, body}``
    - typing / stop_typing: ``{from?, to}``
    - delete_message: ``"<id>"`` or ``{id}``
    - join_room / leave_room: ``{roomId}``
    - open_conversation: ``{peer}`` or ``{roomId}``; ``{}`` closes the view

Errors are reported to the originating connection as
``{event: "error", data: {code, error, retryable, event, data}}`` where the
nested ``data`` echoes the rejected payload so the client can keep it.
"""
import json
import logging
from typing import Any, Optional

from fastapi import WebSocket
from pydantic import ValidationError as PydanticValidationError

from .connection import ClientConnection, ConnectionState
from .errors import ChatError, NotJoined, ValidationError
from .identity import normalize, normalize_room, personal_channel, room_channel, room_key
from .presence import PresenceRegistry
from .routing import RoutingEngine
from .schemas import ClientFrame
from .unread import UnreadTracker

logger = logging.getLogger(__name__)


class ConnectionLifecycle:
    """Owns connect/join/disconnect and per-frame dispatch.

    Args:
        registry: Presence registry (shared with the routing engine).
        engine: Routing engine used for sends, typing, and deletes.
    """

    def __init__(self, registry: PresenceRegistry, engine: RoutingEngine) -> None:
        self.registry = registry
        self.engine = engine

    async def connect(self, websocket: WebSocket) -> ClientConnection:
        """Accept the transport and greet the client. State: CONNECTED."""
        await websocket.accept()
        connection = ClientConnection(websocket)
        await connection.send("connected", {"connectionId": connection.id})
        logger.info(f"[WS] Connection {connection.id} accepted")
        return connection

    async def join(self, connection: ClientConnection, raw_identity: Any) -> str:
        """Register the connection's identity. State: JOINED.

        Subscribes the connection to its personal channel and announces the
        identity as online if this is its first open connection.
        """
        if isinstance(raw_identity, dict):
            raw_identity = raw_identity.get("identity")
        identity = normalize(raw_identity)

        if connection.state == ConnectionState.JOINED:
            if connection.identity == identity:
                return identity
            logger.info(f"[WS] Connection {connection.id} switching {connection.identity} -> {identity}")
            await self._leave_all(connection)

        first_connection = not self.registry.is_online(identity)
        self.registry.join(identity, connection)
        connection.identity = identity
        connection.state = ConnectionState.JOINED
        connection.unread = UnreadTracker(identity)

        logger.info(
            f"[WS] {identity} joined on {connection.id} "
            f"({len(self.registry.subscribers_of(personal_channel(identity)))} open connection(s))"
        )
        if first_connection:
            await self.engine.announce_presence(identity, online=True)
        return identity

    async def disconnect(self, connection: ClientConnection) -> None:
        """Transition to DISCONNECTED and clear every registry entry.

        Safe to call more than once.
        """
        if connection.state == ConnectionState.DISCONNECTED:
            return
        was_joined = connection.state == ConnectionState.JOINED
        connection.state = ConnectionState.DISCONNECTED
        if was_joined:
            await self._leave_all(connection)
        else:
            self.registry.leave(connection)
        logger.info(f"[WS] Connection {connection.id} ({connection.identity}) disconnected")

    async def _leave_all(self, connection: ClientConnection) -> None:
        identity = connection.identity
        self.registry.leave(connection)
        if identity and not self.registry.is_online(identity):
            await self.engine.announce_presence(identity, online=False)

    # =========================================================================
    # Frame dispatch
    # =========================================================================

    async def handle_text(self, connection: ClientConnection, text: str) -> None:
        """Decode one raw text frame and dispatch it.

        Malformed JSON is reported as a validation error; it does not close
        the connection.
        """
        try:
            raw = json.loads(text)
        except json.JSONDecodeError:
            await self._report(connection, ValidationError("Frame is not valid JSON"), None, text)
            return
        await self.handle(connection, raw)

    async def handle(self, connection: ClientConnection, raw: Any) -> None:
        """Dispatch one decoded frame. ChatErrors go back to this connection only."""
        try:
            frame = ClientFrame.model_validate(raw)
        except PydanticValidationError:
            await self._report(connection, ValidationError("Frame must be {event, data}"), None, raw)
            return

        try:
            await self._dispatch(connection, frame)
        except ChatError as e:
            logger.info(f"[WS] {frame.event} from {connection.id} rejected: {e.code} {e.message}")
            await self._report(connection, e, frame.event, frame.data, frame.ref)

    async def _dispatch(self, connection: ClientConnection, frame: ClientFrame) -> None:
        event = frame.event
        logger.debug(f"[WS] {connection.id} received: event={event}")

        # --- JOIN (the only event allowed before joining) ---
        if event == "join":
            identity = await self.join(connection, frame.data)
            await connection.send(
                "joined",
                {"identity": identity, "online": sorted(self.registry.online_identities())},
                frame.ref,
            )
            return

        if connection.state != ConnectionState.JOINED:
            raise NotJoined("Send a join event first")
        identity = connection.identity

        # --- SEND MESSAGE ---
        if event == "send_message":
            await self.engine.send_message(frame.data, identity)
            return

        # --- TYPING INDICATORS (transient, peer only) ---
        if event in ("typing", "stop_typing"):
            await self.engine.typing(frame.data, identity, stopped=event == "stop_typing")
            return

        # --- DELETE MESSAGE ---
        if event == "delete_message":
            await self.engine.delete_message(frame.data, identity)
            return

        # --- ROOM MEMBERSHIP ---
        if event in ("join_room", "leave_room"):
            room_id = normalize_room(_field(frame.data, "roomId"))
            if event == "join_room":
                self.registry.join(identity, connection, room_channel(room_id))
            else:
                self.registry.leave(connection, room_channel(room_id))
            await connection.send(event, {"roomId": room_id}, frame.ref)
            return

        # --- OPEN CONVERSATION (resets unread bucket) ---
        if event == "open_conversation":
            bucket = _bucket_from(frame.data)
            if bucket is None:
                connection.unread.close()
            else:
                connection.unread.open(bucket)
            await connection.send(
                "unread_counts",
                {"counts": connection.unread.snapshot(), "active": connection.unread.active},
                frame.ref,
            )
            return

        raise ValidationError(f"Unknown event: {event}")

    async def _report(
        self,
        connection: ClientConnection,
        error: ChatError,
        event: Optional[str],
        data: Any,
        ref: Optional[str] = None,
    ) -> None:
        payload = error.to_dict()
        payload["event"] = event
        payload["data"] = data
        await connection.send("error", payload, ref)


def _field(data: Any, name: str) -> Any:
    if isinstance(data, dict):
        return data.get(name)
    return data


def _bucket_from(data: Any) -> Optional[str]:
    """``{peer}`` -> peer identity, ``{roomId}`` -> room bucket, empty -> None."""
    if not data:
        return None
    if not isinstance(data, dict):
        raise ValidationError("open_conversation expects {peer} or {roomId}")
    if data.get("roomId") is not None:
        return room_key(data["roomId"])
    if data.get("peer") is not None:
        return normalize(data["peer"])
    raise ValidationError("open_conversation expects {peer} or {roomId}")
