"""
Chat router: listing, creating, inspecting and deleting conversations.
"""
import logging
from fastapi import APIRouter, Depends, Query, status
from sqlmodel import Session

from wanderchat.core.config import settings
from wanderchat.core.security import get_current_user
from wanderchat.db.database import get_db
from wanderchat.models.user import User
from wanderchat.schemas.chat import (
    ChatCreate, ChatList, ChatListItem, ChatResponse, GroupChatCreate, UserSearchResponse
)
from wanderchat.schemas.events import build_event
from wanderchat.services.chat_service import ChatService
from wanderchat.services.user_directory import UserDirectory
from wanderchat.utils import success_response
from wanderchat.utils.websocket_manager import connection_manager

router = APIRouter(prefix="/chats", tags=["chats"])
logger = logging.getLogger(__name__)


@router.get("", response_model=ChatList, operation_id="list_chats")
async def list_chats(
    chat_filter: str = Query("all", alias="filter", description="all, groups, direct or unread"),
    page: int = Query(1, ge=1),
    limit: int = Query(settings.chat_page_size, ge=1, le=settings.max_page_size),
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """
    List the current user's chats, most recently active first.

    - **filter**: `all`, `groups`, `direct` (alias `friends`) or `unread`
    - **page** / **limit**: offset pagination

    Each chat carries its unread count for the current user.
    """
    chats, pagination = ChatService(db).list_chats_for_user(current_user.id, chat_filter, page, limit)
    return success_response(
        message="Chats retrieved successfully",
        data=ChatList(
            chats=[ChatListItem(**chat) for chat in chats],
            pagination=pagination,
        ).model_dump()
    )


@router.post("", response_model=ChatResponse, operation_id="access_chat")
async def access_chat(
    chat_data: ChatCreate,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """
    Open the 1:1 chat with another user, creating it on first use.

    Returns 201 when the chat was created and 200 when it already existed.
    """
    service = ChatService(db)
    chat, created = service.get_or_create_direct_chat(current_user.id, chat_data.participant_id)
    for participant_id in chat.participant_ids:
        connection_manager.subscribe_user(participant_id, chat.id)

    return success_response(
        message="Chat created successfully" if created else "Chat retrieved successfully",
        data=ChatResponse(**service.serialize_chat(chat, current_user.id)).model_dump(),
        status_code=status.HTTP_201_CREATED if created else status.HTTP_200_OK
    )


@router.post("/group", response_model=ChatResponse, status_code=status.HTTP_201_CREATED, operation_id="create_group_chat")
async def create_group_chat(
    group_data: GroupChatCreate,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """
    Create a group chat.

    - **name**: group name
    - **participant_ids**: at least two accepted friends of the creator

    The creator becomes the group admin.
    """
    service = ChatService(db)
    chat = service.create_group_chat(
        current_user.id, group_data.name, group_data.participant_ids, group_data.group_image
    )
    for participant_id in chat.participant_ids:
        connection_manager.subscribe_user(participant_id, chat.id)

    return success_response(
        message="Group chat created successfully",
        data=ChatResponse(**service.serialize_chat(chat, current_user.id)).model_dump(),
        status_code=status.HTTP_201_CREATED
    )


@router.get("/search-users", response_model=UserSearchResponse, operation_id="search_users")
async def search_users(
    query: str = Query(..., description="At least 2 characters of a username or name"),
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """Search users to start a chat with."""
    users = ChatService(db).search_users(current_user.id, query, settings.user_search_limit)
    return success_response(
        message="Users retrieved successfully",
        data={"users": [UserDirectory.summary(user) for user in users]}
    )


@router.get("/{chat_id}", response_model=ChatResponse, operation_id="get_chat")
async def get_chat(
    chat_id: int,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """Get the details of a chat the current user participates in."""
    chat = ChatService(db).get_chat_details(chat_id, current_user.id)
    return success_response(
        message="Chat retrieved successfully",
        data=ChatResponse(**chat).model_dump()
    )


@router.delete("/{chat_id}", operation_id="delete_chat")
async def delete_chat(
    chat_id: int,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """
    Delete a chat for all participants.

    Group chats can only be deleted by their admin. Messages are kept.
    """
    chat = ChatService(db).deactivate_chat(chat_id, current_user.id)
    await connection_manager.publish_to_chat(chat.id, [build_event("chat_deleted", {
        "chat_id": chat.id,
        "deleted_by": current_user.id,
    })])
    connection_manager.close_channel(chat.id)

    return success_response(
        message="Chat deleted successfully",
        data={"chat_id": chat.id}
    )
