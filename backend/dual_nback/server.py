import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, WebSocket
from fastapi.middleware.cors import CORSMiddleware

from dual_nback.api.history import build_history_router
from dual_nback.api.sessions import build_sessions_router
from dual_nback.api.websocket import ConnectionManager, websocket_endpoint
from dual_nback.config import Settings
from dual_nback.db.store import SessionStore, build_session_store
from dual_nback.engine.registry import SessionRegistry

logger = logging.getLogger(__name__)


def create_app(
    settings: Optional[Settings] = None,
    store: Optional[SessionStore] = None,
    registry: Optional[SessionRegistry] = None,
) -> FastAPI:
    settings = settings or Settings.from_env()
    store = store if store is not None else build_session_store(settings)
    registry = registry or SessionRegistry(settings)
    manager = ConnectionManager(registry)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        registry.start_sweeper()
        logger.info("Dual n-back server ready (store=%s)", type(store).__name__)
        yield
        await registry.shutdown()

    app = FastAPI(title="Dual N-Back API", lifespan=lifespan)
    app.state.settings = settings
    app.state.registry = registry
    app.state.store = store

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(build_sessions_router(registry, store))
    app.include_router(build_history_router(store))

    @app.get("/health")
    async def health_check():
        stats = registry.stats()
        return {
            "status": "healthy",
            "websocket": {"connectedClients": stats["connected_clients"]},
            "engine": {
                "totalSessions": stats["total_sessions"],
                "activeSessions": stats["active_sessions"],
                "activeGames": stats["active_games"],
            },
        }

    @app.websocket("/ws")
    async def websocket_route(websocket: WebSocket):
        await websocket_endpoint(websocket, manager)

    return app
