"""FastAPI dependencies resolving the services built in the app lifespan.

Services live on ``app.state`` (one set per app instance) rather than in
module globals, so tests can build isolated apps side by side.
"""
from fastapi import Request

from app.auth.service import IdentityDirectory
from app.chat.presence import PresenceRegistry
from app.chat.store import MessageStore
from app.config import AppConfig


def get_app_config(request: Request) -> AppConfig:
    return request.app.state.config


def get_store(request: Request) -> MessageStore:
    return request.app.state.store


def get_registry(request: Request) -> PresenceRegistry:
    return request.app.state.registry


def get_directory(request: Request) -> IdentityDirectory:
    return request.app.state.directory
