"""
Visibility rules for chats and messages.

Every query that hides soft-deleted data goes through these helpers so the
REST and websocket paths cannot drift apart.
"""
from sqlmodel import select

from wanderchat.models.chat import Chat, ChatParticipant
from wanderchat.models.message import Message, MessageDeletion


def message_visible_to(viewer_id: int):
    """SQL clause: the message is not deleted for everyone nor for ``viewer_id``."""
    hidden_for_viewer = select(MessageDeletion.message_id).where(MessageDeletion.user_id == viewer_id)
    return (Message.is_deleted == False) & (Message.id.not_in(hidden_for_viewer))  # noqa: E712


def is_message_visible(message: Message, viewer_id: int) -> bool:
    """Python counterpart of :func:`message_visible_to` for loaded messages."""
    return not message.is_deleted and viewer_id not in message.deleted_for


def chat_visible_to(user_id: int):
    """SQL clause: the chat is active and ``user_id`` participates in it."""
    member_of = select(ChatParticipant.chat_id).where(ChatParticipant.user_id == user_id)
    return (Chat.is_active == True) & (Chat.id.in_(member_of))  # noqa: E712
