from fastapi import APIRouter, HTTPException, Query

from dual_nback.db.store import SessionStore
from dual_nback.errors import DuplicateSession, SessionNotFound
from dual_nback.models.history import SyncRequest


def build_history_router(store: SessionStore) -> APIRouter:
    router = APIRouter(prefix="/api/sessions", tags=["sessions"])

    @router.post("", status_code=201)
    def save_session(req: SyncRequest) -> dict:
        try:
            store.save(req.session)
        except DuplicateSession as exc:
            raise HTTPException(status_code=409, detail=exc.message)
        return {"success": True, "data": {"sessionId": req.session.session_id}}

    @router.get("")
    def list_sessions(
        page: int = Query(default=1, ge=1),
        limit: int = Query(default=10, ge=1, le=100),
    ) -> dict:
        records, total = store.list(page=page, limit=limit)
        return {
            "success": True,
            "data": {
                "sessions": [r.model_dump(by_alias=True, mode="json") for r in records],
                "pagination": {
                    "page": page,
                    "limit": limit,
                    "total": total,
                    "hasMore": page * limit < total,
                },
            },
        }

    @router.get("/{session_id}")
    def get_session(session_id: str) -> dict:
        try:
            record = store.get(session_id)
        except SessionNotFound as exc:
            raise HTTPException(status_code=404, detail=exc.message)
        return {"success": True, "data": record.model_dump(by_alias=True, mode="json")}

    return router
