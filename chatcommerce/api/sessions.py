from fastapi import APIRouter, Depends, HTTPException, Query
from chatcommerce.dependecies import get_current_user, get_db_path
from chatcommerce.models.database import (
    get_chat_messages,
    get_chat_session,
    list_chat_sessions,
)
from chatcommerce.models.schemas import SessionInfo, User, ok

router = APIRouter(prefix="/api/chat/sessions", tags=["sessions"])


@router.get("")
async def list_all_sessions(
    limit: int = Query(default=20, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
    user: User = Depends(get_current_user),
    db_path: str = Depends(get_db_path),
):
    sessions = await list_chat_sessions(db_path, user.id, limit=limit, offset=offset)
    return ok([
        SessionInfo(
            session_id=s["session_id"],
            created_at=s["created_at"],
            message_count=s["message_count"],
            last_active=s["updated_at"],
        ).to_payload()
        for s in sessions
    ])


@router.get("/{session_id}")
async def get_session_detail(
    session_id: str,
    user: User = Depends(get_current_user),
    db_path: str = Depends(get_db_path),
):
    session = await get_chat_session(db_path, user.id, session_id)
    if session is None:
        raise HTTPException(status_code=404, detail="Session not found")

    messages = await get_chat_messages(db_path, user.id, session_id)
    return ok({
        "sessionId": session["session_id"],
        "createdAt": session["created_at"],
        "lastActive": session["updated_at"],
        "messages": messages,
    })
