# chatsync/main.py

from __future__ import annotations

from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from chatsync.api import websocket as websocket_module
from chatsync.api.routes import health, rooms, root, users
from chatsync.core.config import Settings
from chatsync.core.logging import get_logger, setup_logging
from chatsync.core.state import build_state
from chatsync.services.assistant import CompletionClient
from chatsync.services.store import Store

# Configure logging first
setup_logging()
logger = get_logger(__name__)


def create_app(
    settings: Optional[Settings] = None,
    store: Optional[Store] = None,
    assistant: Optional[CompletionClient] = None,
) -> FastAPI:
    """
    Build the FastAPI app. The chat core is wired on startup and torn down
    on shutdown; arguments override what the environment would select.
    """
    app = FastAPI(title="chatsync")

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # REST routes
    app.include_router(root.router)
    app.include_router(health.router)
    app.include_router(users.router)
    app.include_router(rooms.router)

    # WebSocket routes
    app.include_router(websocket_module.router)

    @app.on_event("startup")
    async def startup_event():
        logger.info("🚀 Application starting")
        app.state.chat = await build_state(settings=settings, store=store, assistant=assistant)

    @app.on_event("shutdown")
    async def on_shutdown():
        await app.state.chat.close()
        logger.info("Application stopped")

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("chatsync.main:app", host="0.0.0.0", port=8000)
