"""Shared test fixtures and configuration for backend tests."""
from typing import Awaitable, Callable, List, Optional

import pytest
from fastapi.testclient import TestClient

from app.chat.connection import ClientConnection
from app.chat.lifecycle import ConnectionLifecycle
from app.chat.presence import PresenceRegistry
from app.chat.routing import RoutingEngine
from app.chat.store import MessageStore
from app.config import AppConfig, DatabaseSettings, DirectorySecrets, Secrets
from app.main import create_app

DIRECTORY_USERS = {"Alice": "alice-pw", "bob": "bob-pw", "Carol": "carol-pw"}


class FakeWebSocket:
    """Records frames sent by the server side of a connection.

    Args:
        fail: Raise on every send, like a socket whose peer vanished.
        on_send: Awaited before recording each frame (for ordering checks).
    """

    def __init__(
        self,
        fail: bool = False,
        on_send: Optional[Callable[[dict], Awaitable[None]]] = None,
    ) -> None:
        self.fail = fail
        self.on_send = on_send
        self.accepted = False
        self.sent: List[dict] = []

    async def accept(self) -> None:
        self.accepted = True

    async def send_json(self, data: dict) -> None:
        if self.fail:
            raise RuntimeError("socket closed")
        if self.on_send is not None:
            await self.on_send(data)
        self.sent.append(data)

    def events(self, name: Optional[str] = None) -> List[dict]:
        return [f for f in self.sent if name is None or f["event"] == name]


@pytest.fixture
def store():
    """An in-memory message store, closed after the test."""
    store = MessageStore(db_path=":memory:")
    yield store
    store.close()


@pytest.fixture
def registry():
    return PresenceRegistry()


@pytest.fixture
def engine(store, registry):
    return RoutingEngine(store, registry)


@pytest.fixture
def lifecycle(registry, engine):
    return ConnectionLifecycle(registry, engine)


@pytest.fixture
def make_websocket():
    return FakeWebSocket


@pytest.fixture
def make_connection():
    """Factory for ClientConnections over FakeWebSockets."""
    def _make(**kwargs) -> ClientConnection:
        return ClientConnection(FakeWebSocket(**kwargs))
    return _make


@pytest.fixture
def app_config():
    return AppConfig(
        database=DatabaseSettings(path=":memory:"),
        secrets=Secrets(directory=DirectorySecrets(users=dict(DIRECTORY_USERS))),
    )


@pytest.fixture
def api_client(app_config):
    """TestClient with the lifespan running, so app.state is populated.

    Entering the client also makes every websocket share one event loop.
    """
    with TestClient(create_app(app_config)) as client:
        yield client
