from typing import Optional

from fastapi import APIRouter, HTTPException

from dual_nback.db.store import SessionStore
from dual_nback.engine.registry import SessionRegistry
from dual_nback.errors import DuplicateSession, SessionNotActive, SessionNotFound, ValidationError
from dual_nback.models.game import Mode, WireModel


class StartSessionRequest(WireModel):
    mode: Mode = Mode.DUAL
    n_level: Optional[int] = None
    block_size: Optional[int] = None
    isi: Optional[float] = None


def build_sessions_router(registry: SessionRegistry, store: SessionStore) -> APIRouter:
    """Non-realtime session management: create, inspect, end, sync."""
    router = APIRouter(prefix="/api/game", tags=["game"])

    def _session(session_id: str):
        try:
            return registry.get(session_id)
        except SessionNotFound as exc:
            raise HTTPException(status_code=404, detail=exc.message)

    @router.post("/start")
    async def start_session(req: StartSessionRequest) -> dict:
        try:
            config = registry.build_config(req.mode, req.n_level, req.block_size, req.isi)
        except ValidationError as exc:
            raise HTTPException(status_code=400, detail=exc.message)
        session = registry.create_session(config)
        await session.start()
        return {
            "success": True,
            "data": {
                "sessionId": session.session_id,
                "config": config.model_dump(by_alias=True, mode="json"),
                "totalTrials": session.block_size,
            },
        }

    @router.get("/session/{session_id}")
    def get_session(session_id: str) -> dict:
        session = _session(session_id)
        return {
            "success": True,
            "data": {
                "session": {
                    "id": session.session_id,
                    "config": session.config.model_dump(by_alias=True, mode="json"),
                    "state": session.state.value,
                    "currentTrial": session.current_trial,
                    "isActive": session.is_active,
                    "totalTrials": session.block_size,
                },
                "stats": session.snapshot(),
            },
        }

    @router.post("/session/{session_id}/end")
    async def end_session(session_id: str) -> dict:
        _session(session_id)
        try:
            session = await registry.end_session(session_id)
        except SessionNotActive as exc:
            raise HTTPException(status_code=409, detail=exc.message)
        return {
            "success": True,
            "data": {"message": "Session ended successfully", "stats": session.snapshot()},
        }

    @router.post("/session/{session_id}/sync", status_code=201)
    def sync_session(session_id: str) -> dict:
        session = _session(session_id)
        try:
            store.save(session.to_record())
        except (SessionNotActive, DuplicateSession) as exc:
            raise HTTPException(status_code=409, detail=exc.message)
        return {"success": True, "data": {"sessionId": session_id, "synced": True}}

    return router
