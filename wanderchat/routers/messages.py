"""
Message router for chat history, sending, receipts, edits and deletes.
"""
import logging
from typing import Optional
from fastapi import APIRouter, Body, Depends, Query, status
from sqlmodel import Session

from wanderchat.core.config import settings
from wanderchat.core.security import get_current_user
from wanderchat.db.database import get_db
from wanderchat.models.message import ReceiptKind
from wanderchat.models.user import User
from wanderchat.schemas.events import build_event
from wanderchat.schemas.message import (
    MessageDelete, MessageEdit, MessageHistory, MessageMarkRead, MessageMarkReadResponse,
    MessageResponse, MessageSend
)
from wanderchat.services.blob_store import BlobStore, get_blob_store
from wanderchat.services.message_service import MessageService
from wanderchat.utils import success_response
from wanderchat.utils.websocket_manager import connection_manager

router = APIRouter(prefix="/messages", tags=["messages"])
logger = logging.getLogger(__name__)


def get_message_service(
    db: Session = Depends(get_db),
    blob_store: BlobStore = Depends(get_blob_store)
) -> MessageService:
    return MessageService(db, presence=connection_manager.presence, blob_store=blob_store)


@router.get("/{chat_id}", response_model=MessageHistory, operation_id="get_messages")
async def get_messages(
    chat_id: int,
    page: int = Query(1, ge=1),
    limit: int = Query(settings.message_page_size, ge=1, le=settings.max_page_size),
    current_user: User = Depends(get_current_user),
    service: MessageService = Depends(get_message_service)
):
    """
    Get a page of chat history, grouped by date.

    Page 1 holds the newest messages; within a page messages are oldest first.
    Messages deleted for everyone or deleted by the current user are omitted.
    """
    groups, pagination = service.list_messages(chat_id, current_user.id, page, limit)
    return success_response(
        message="Messages retrieved successfully",
        data=MessageHistory(messages=groups, pagination=pagination).model_dump()
    )


@router.post("/{chat_id}", response_model=MessageResponse, status_code=status.HTTP_201_CREATED, operation_id="send_message")
async def send_message(
    chat_id: int,
    message_data: MessageSend,
    current_user: User = Depends(get_current_user),
    service: MessageService = Depends(get_message_service)
):
    """
    Send a message to a chat.

    - **content**: message text (optional when media files are attached)
    - **message_type**: text, image, video, audio, document or location
    - **reply_to_id**: message being replied to
    - **media_files**: already-uploaded media references
    """
    message = service.append_message(
        chat_id=chat_id,
        sender_id=current_user.id,
        content=message_data.content,
        message_type=message_data.message_type,
        media_files=message_data.media_files,
        reply_to_id=message_data.reply_to_id,
    )
    data = service.serialize_message(message, current_user.id)
    await connection_manager.publish_new_message(chat_id, data)

    return success_response(
        message="Message sent successfully",
        data=MessageResponse(**data).model_dump(),
        status_code=status.HTTP_201_CREATED
    )


@router.put("/{chat_id}/read", response_model=MessageMarkReadResponse, operation_id="mark_messages_read")
async def mark_messages_read(
    chat_id: int,
    mark_data: MessageMarkRead,
    current_user: User = Depends(get_current_user),
    service: MessageService = Depends(get_message_service)
):
    """Mark messages in a chat as read. Already-read messages are skipped."""
    newly_read = service.mark_read(chat_id, current_user.id, mark_data.message_ids)

    for message in newly_read:
        await connection_manager.send_to_user(message.sender_id, build_event("message_read_receipt", {
            "message_id": message.id,
            "chat_id": message.chat_id,
            "user_id": current_user.id,
            "read_at": message.receipt_for(current_user.id, ReceiptKind.READ).at,
        }))

    return success_response(
        message=f"Marked {len(newly_read)} messages as read",
        data=MessageMarkReadResponse(marked_count=len(newly_read)).model_dump()
    )


@router.put("/edit/{message_id}", response_model=MessageResponse, operation_id="edit_message")
async def edit_message(
    message_id: int,
    edit_data: MessageEdit,
    current_user: User = Depends(get_current_user),
    service: MessageService = Depends(get_message_service)
):
    """Edit the content of one of your own text messages."""
    message = service.edit_message(message_id, current_user.id, edit_data.content)
    data = service.serialize_message(message, current_user.id)
    await connection_manager.publish_to_chat(message.chat_id, [build_event("message_edited", data)])

    return success_response(
        message="Message edited successfully",
        data=MessageResponse(**data).model_dump()
    )


@router.delete("/{message_id}", operation_id="delete_message")
async def delete_message(
    message_id: int,
    delete_data: Optional[MessageDelete] = Body(None),
    current_user: User = Depends(get_current_user),
    service: MessageService = Depends(get_message_service)
):
    """
    Delete one of your own messages.

    - **delete_for_everyone**: hide it from every participant (only within
      the delete window) instead of just from yourself
    """
    for_everyone = bool(delete_data and delete_data.delete_for_everyone)
    message = await service.delete_message(message_id, current_user.id, for_everyone)

    if for_everyone:
        await connection_manager.publish_to_chat(message.chat_id, [build_event("message_deleted", {
            "message_id": message.id,
            "chat_id": message.chat_id,
            "deleted_by": current_user.id,
        })])

    return success_response(
        message="Message deleted for everyone" if for_everyone else "Message deleted for you",
        data={"message_id": message.id, "delete_for_everyone": for_everyone}
    )
