"""Chat router providing WebSocket and HTTP endpoints.

This module provides:
    - GET /messages/{a}/{b}: History of a 1-1 conversation (either order)
    - GET /rooms/{room_id}/messages: History of a room
    - GET /presence: Identities with at least one open connection
    - WebSocket /ws: Real-time messaging

History endpoints return every message by default. ``since`` recovers
messages after a reconnect, ``before`` + ``limit`` page backwards.

The WebSocket protocol (see app.chat.lifecycle) supports:
    - Presence registration (join) and online/offline notifications
    - Pair and room messaging with echo to the sender's other tabs
    - Typing indicators (peer only, never stored)
    - Soft delete with message_deleted broadcast
    - Unread counters per connection
"""
import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, Query, WebSocket, WebSocketDisconnect

from app.config import AppConfig
from app.deps import get_app_config, get_registry, get_store

from .lifecycle import ConnectionLifecycle
from .presence import PresenceRegistry
from .store import MessageStore

logger = logging.getLogger(__name__)

router = APIRouter(tags=["chat"])


def _page_limit(config: AppConfig, before: Optional[float], limit: Optional[int]) -> Optional[int]:
    """Apply the default page size to cursor requests and cap every limit."""
    if limit is None and before is not None:
        limit = config.chat.history_page_size
    if limit is not None:
        limit = min(limit, config.chat.max_page_size)
    return limit


@router.get("/messages/{a}/{b}")
async def get_conversation(
    a: str,
    b: str,
    since: Optional[float] = Query(None, description="Only messages newer than this timestamp"),
    before: Optional[float] = Query(None, description="Only messages older than this timestamp"),
    limit: Optional[int] = Query(None, ge=1, description="Newest N matching messages"),
    store: MessageStore = Depends(get_store),
    config: AppConfig = Depends(get_app_config),
) -> List[dict]:
    """Get the messages exchanged between ``a`` and ``b``, oldest first.

    Example:
        GET /messages/alice/Bob
        GET /messages/alice/bob?before=1707321600.123&limit=50
    """
    messages = await store.list_conversation(
        a, b, since=since, before=before, limit=_page_limit(config, before, limit)
    )
    return [msg.to_wire() for msg in messages]


@router.get("/rooms/{room_id}/messages")
async def get_room_messages(
    room_id: str,
    since: Optional[float] = Query(None, description="Only messages newer than this timestamp"),
    before: Optional[float] = Query(None, description="Only messages older than this timestamp"),
    limit: Optional[int] = Query(None, ge=1, description="Newest N matching messages"),
    store: MessageStore = Depends(get_store),
    config: AppConfig = Depends(get_app_config),
) -> List[dict]:
    """Get a room's messages, oldest first."""
    messages = await store.list_room(
        room_id, since=since, before=before, limit=_page_limit(config, before, limit)
    )
    return [msg.to_wire() for msg in messages]


@router.get("/presence")
async def get_presence(registry: PresenceRegistry = Depends(get_registry)) -> dict:
    """List identities that currently have an open connection."""
    return {"online": sorted(registry.online_identities())}


@router.websocket("/ws")
async def websocket_chat_endpoint(websocket: WebSocket) -> None:
    """WebSocket endpoint for one client connection.

    Protocol Flow:
        1. Client connects -> Server sends: {event: "connected", data: {connectionId}}
        2. Client sends: {event: "join", data: "<identity>"}
           -> Server sends: {event: "joined", data: {identity, online}}
           -> Others receive: {event: "presence", data: {identity, online: true}}
        3. Client sends: {event: "send_message", data: {receiver | roomId, body}}
           -> Server persists, then sends {event: "receive_message", data: {...}}
              to every connection of the receiver and of the sender
        4. On close -> Connection leaves every channel; if it was the
           identity's last connection, others receive presence offline.

    Each frame is handled to completion before the next one is read, so a
    connection's sends are persisted and broadcast in submission order.
    """
    lifecycle: ConnectionLifecycle = websocket.app.state.lifecycle
    connection = await lifecycle.connect(websocket)

    try:
        while True:
            text = await websocket.receive_text()
            await lifecycle.handle_text(connection, text)
    except WebSocketDisconnect:
        logger.info(f"[WS] Client {connection.id} closed the connection")
    except Exception:
        # Transport failure or bug: fatal to this connection only
        logger.exception(f"[WS] Connection {connection.id} failed")
    finally:
        await lifecycle.disconnect(connection)
