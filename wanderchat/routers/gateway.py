"""
Real-time gateway: the chat websocket and presence lookups.
"""
import logging
from typing import Optional
from fastapi import APIRouter, Depends, Query, WebSocket, WebSocketDisconnect
from sqlmodel import Session

from wanderchat.core.security import get_current_user
from wanderchat.db.database import get_db
from wanderchat.models.user import User
from wanderchat.services.user_directory import UserDirectory
from wanderchat.utils import success_response
from wanderchat.utils.websocket_manager import chat_handler, connection_manager

router = APIRouter(tags=["gateway"])
logger = logging.getLogger(__name__)


def _bearer_token(websocket: WebSocket) -> Optional[str]:
    authorization = websocket.headers.get("authorization", "")
    scheme, _, credentials = authorization.partition(" ")
    if scheme.lower() == "bearer" and credentials:
        return credentials.strip()
    return None


@router.websocket("/ws")
async def websocket_endpoint(
    websocket: WebSocket,
    token: Optional[str] = Query(None)
):
    """
    WebSocket endpoint for real-time chat.

    - Authenticates with the `token` query parameter or an `Authorization: Bearer` header.
    - Events are JSON objects `{"type": ..., "data": {...}}`.
    """
    session = await chat_handler.connect(websocket, token or _bearer_token(websocket))
    if session is None:
        return

    try:
        while True:
            raw = await websocket.receive_text()
            await chat_handler.handle_message(session, raw)
    except WebSocketDisconnect:
        logger.info(f"WebSocket session {session.id} of user {session.user_id} disconnected")
    finally:
        await chat_handler.close_session(session)


@router.get("/presence", operation_id="list_online_users")
async def list_online_users(current_user: User = Depends(get_current_user)):
    """Get the ids of users with at least one live websocket session."""
    online = connection_manager.presence.online_users()
    return success_response(
        message="Online users retrieved successfully",
        data={"online_users": online, "count": len(online)}
    )


@router.get("/presence/{user_id}", operation_id="get_user_presence")
async def get_user_presence(
    user_id: int,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """Get whether a user is online, how many sessions they have and when they were last seen."""
    user = UserDirectory(db).find_by_id(user_id)
    presence = connection_manager.presence
    return success_response(
        message="User presence retrieved successfully",
        data={
            "user_id": user_id,
            "is_online": presence.is_online(user_id),
            "connection_count": presence.connection_count(user_id),
            "last_seen": user.last_seen if user else None,
        }
    )
