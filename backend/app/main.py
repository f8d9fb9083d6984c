"""Parley Backend Application.

This is the main entry point for the Parley backend service.
Parley is a minimal realtime direct-messaging service: users log in,
discover peers, and exchange messages over a WebSocket, with history
available over HTTP.

Modules:
    - chat: presence registry, routing engine, message store, WebSocket endpoint
    - auth: login and user directory (identity directory boundary)
"""
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from app.auth.router import router as auth_router
from app.auth.service import IdentityDirectory, StaticIdentityDirectory
from app.chat.errors import ChatError
from app.chat.lifecycle import ConnectionLifecycle
from app.chat.presence import PresenceRegistry
from app.chat.router import router as chat_router
from app.chat.routing import RoutingEngine
from app.chat.store import MessageStore
from app.config import AppConfig, get_config

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)

# Silence verbose third-party loggers.
for _noisy in (
    "uvicorn.access",
    "httpx",
    "httpcore",
):
    logging.getLogger(_noisy).setLevel(logging.WARNING)

logger = logging.getLogger(__name__)


def create_app(
    config: Optional[AppConfig] = None,
    directory: Optional[IdentityDirectory] = None,
) -> FastAPI:
    """Build the FastAPI application.

    Args:
        config: Settings to use. Defaults to the process-wide config.
        directory: Identity directory. Defaults to a StaticIdentityDirectory
            built from ``secrets.directory.users``.
    """
    config = config or get_config()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Build the chat services on startup and close the store on shutdown."""
        # Apply configured log level to root logger so that
        # `logging.level: "debug"` in parley.settings.yaml activates DEBUG output.
        configured_level = getattr(logging, config.logging.level.upper(), None)
        if configured_level is not None:
            logging.getLogger().setLevel(configured_level)
            logger.info("Root logger level set to %s", config.logging.level.upper())

        store = MessageStore(db_path=config.database.path)
        registry = PresenceRegistry()
        engine = RoutingEngine(store, registry, echo_to_sender=config.chat.echo_to_sender)

        app.state.config = config
        app.state.store = store
        app.state.registry = registry
        app.state.engine = engine
        app.state.lifecycle = ConnectionLifecycle(registry, engine)
        app.state.directory = directory or StaticIdentityDirectory(config.secrets.directory.users)
        logger.info(
            f"Chat services ready (database={config.database.path}, "
            f"echo_to_sender={config.chat.echo_to_sender})"
        )

        yield  # Application runs here

        # Shutdown
        store.close()
        logger.info("Application shutdown complete")

    app = FastAPI(
        title="Parley API",
        description="Realtime direct messaging with presence and history",
        version="0.1.0",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.server.allowed_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["*"],
    )

    @app.exception_handler(ChatError)
    async def chat_error_handler(request: Request, exc: ChatError) -> JSONResponse:
        return JSONResponse(exc.to_dict(), status_code=exc.status_code)

    # Register all routers
    app.include_router(auth_router)
    app.include_router(chat_router)

    @app.get("/health")
    async def health() -> dict:
        """Health check endpoint.

        Returns:
            dict: Status object indicating the server is running.
        """
        return {"status": "ok"}

    return app


def run() -> None:
    """Console entry point: serve the app with uvicorn."""
    import uvicorn

    config = get_config()
    uvicorn.run(
        create_app(config),
        host=config.server.host,
        port=config.server.port,
        log_level=config.logging.level,
    )
