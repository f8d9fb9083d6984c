"""Connection handle wrapping one client WebSocket.

The handle is what the presence registry stores and what the routing engine
delivers to. It carries the lifecycle state and the view-side unread
counters of the connection.
"""
import uuid
from enum import Enum
from typing import Any, Optional

from fastapi import WebSocket

from .schemas import StoredMessage
from .unread import UnreadTracker


class ConnectionState(str, Enum):
    """Lifecycle state of a connection.

    Attributes:
        CONNECTED: Transport open, no identity yet.
        JOINED: Identity registered in the presence registry.
        DISCONNECTED: Transport closed; registry entries removed.
    """
    CONNECTED = "connected"
    JOINED = "joined"
    DISCONNECTED = "disconnected"


class ClientConnection:
    """One live client connection.

    Hashable by object identity, so it can sit in registry sets.
    """

    def __init__(self, websocket: WebSocket) -> None:
        self.websocket = websocket
        self.id = str(uuid.uuid4())
        self.state = ConnectionState.CONNECTED
        self.identity: Optional[str] = None
        self.unread: Optional[UnreadTracker] = None

    def __repr__(self) -> str:
        return f"<ClientConnection {self.id[:8]} {self.state.value} {self.identity}>"

    @property
    def is_open(self) -> bool:
        return self.state != ConnectionState.DISCONNECTED

    async def send(self, event: str, data: Any = None, ref: Optional[str] = None) -> None:
        """Write one frame. Raises whatever the transport raises."""
        frame = {"event": event, "data": data}
        if ref is not None:
            frame["ref"] = ref
        await self.websocket.send_json(frame)

    async def deliver_message(self, message: StoredMessage) -> None:
        """Send a ``receive_message`` frame and count it as unread if needed."""
        await self.send("receive_message", message.to_wire())
        if self.unread is not None:
            self.unread.record(message)
