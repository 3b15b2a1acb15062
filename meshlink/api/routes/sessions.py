"""Session routes."""
from uuid import UUID

from fastapi import APIRouter, HTTPException, Query, Request

from meshlink.api.models import SessionOut
from meshlink.lib.session.models import SessionStatus, normalize_address


router = APIRouter(prefix="/api/sessions", tags=["sessions"])


def _out(s) -> dict:
    return SessionOut(**s.to_dict()).model_dump()


@router.get("/active")
async def list_active_sessions(request: Request):
    """Active sessions ordered by expiry, soonest first."""
    sessions = await request.app.state.broker.store.list_active()
    rows = [_out(s) for s in sessions]
    return {"data": rows, "count": len(rows)}


@router.get("/history")
async def list_session_history(
    request: Request,
    status: SessionStatus | None = Query(None),
    limit: int = Query(100, ge=1, le=1000),
    offset: int = Query(0, ge=0),
):
    sessions = await request.app.state.broker.store.list_sessions(status=status, limit=limit, offset=offset)
    rows = [_out(s) for s in sessions]
    return {"data": rows, "count": len(rows)}


@router.get("/by-address/{client_address}")
async def get_session_by_address(client_address: str, request: Request):
    """Current session for an address, or its most recent one."""
    try:
        address = normalize_address(client_address)
    except ValueError as e:
        raise HTTPException(status_code=422, detail={"error": "invalid_address", "message": str(e)})

    session = await request.app.state.broker.store.get(address)
    if session is None:
        raise HTTPException(status_code=404, detail={"error": "not_found", "message": "Session not found"})
    return {"data": _out(session)}


@router.get("/{session_id}")
async def get_session(session_id: UUID, request: Request):
    session = await request.app.state.broker.store.get_by_id(str(session_id))
    if session is None:
        raise HTTPException(status_code=404, detail={"error": "not_found", "message": "Session not found"})
    return {"data": _out(session)}


@router.post("/{session_id}/disconnect")
async def disconnect_session(session_id: UUID, request: Request):
    session = await request.app.state.broker.authorization.disconnect(str(session_id))
    return {"data": _out(session)}
