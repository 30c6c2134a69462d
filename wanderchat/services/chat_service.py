"""
Chat service for conversation management.
"""
import logging
from datetime import datetime
from typing import Dict, List, Optional, Tuple
from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from wanderchat.core.exceptions import (
    AuthorizationError,
    InvalidOperationError,
    NotFoundError,
    ValidationError,
)
from wanderchat.models.chat import Chat, ChatParticipant
from wanderchat.models.message import Message, MessageReceipt, ReceiptKind
from wanderchat.models.user import User
from wanderchat.schemas.chat import ChatFilter, Pagination
from wanderchat.services.friendship_service import FriendshipService
from wanderchat.services.user_directory import UserDirectory
from wanderchat.services.visibility import chat_visible_to, is_message_visible, message_visible_to

logger = logging.getLogger(__name__)

FILTER_ALIASES = {"friends": ChatFilter.DIRECT.value}


class ChatService:
    """Service for chat operations."""

    def __init__(self, db: Session):
        self.db = db
        self.directory = UserDirectory(db)
        self.friendships = FriendshipService(db)

    def get_visible_chat(self, chat_id: int, user_id: int) -> Chat:
        """Get an active chat the user participates in, or raise NotFoundError."""
        chat = self.db.exec(
            select(Chat).where(Chat.id == chat_id, chat_visible_to(user_id))
        ).first()
        if not chat:
            raise NotFoundError("Chat not found")
        return chat

    def active_chat_ids_for_user(self, user_id: int) -> List[int]:
        return list(self.db.exec(select(Chat.id).where(chat_visible_to(user_id))).all())

    def _find_direct_chat(self, direct_key: str) -> Optional[Chat]:
        return self.db.exec(select(Chat).where(Chat.direct_key == direct_key)).first()

    def get_or_create_direct_chat(self, user_id: int, other_user_id: int) -> Tuple[Chat, bool]:
        """
        Return the 1:1 chat between two users, creating it on first use.

        Returns:
            (chat, created)
        """
        if user_id == other_user_id:
            raise InvalidOperationError("Cannot create chat with yourself")
        if not self.directory.exists(other_user_id):
            raise NotFoundError("User not found")

        direct_key = Chat.direct_key_for(user_id, other_user_id)
        chat = self._find_direct_chat(direct_key)
        if chat:
            if not chat.is_active:
                chat.is_active = True
                chat.updated_at = datetime.utcnow()
                self.db.add(chat)
                self.db.commit()
                self.db.refresh(chat)
                logger.info(f"Reactivated direct chat {chat.id} for {direct_key}")
            return chat, False

        chat = Chat(is_group_chat=False, direct_key=direct_key)
        chat.participants = [
            ChatParticipant(user_id=user_id),
            ChatParticipant(user_id=other_user_id),
        ]
        self.db.add(chat)
        try:
            self.db.commit()
        except IntegrityError:
            # Another request created the pair first; return its chat
            self.db.rollback()
            chat = self._find_direct_chat(direct_key)
            if chat is None:
                raise
            logger.info(f"Direct chat race for {direct_key} resolved to chat {chat.id}")
            return chat, False

        self.db.refresh(chat)
        logger.info(f"Created direct chat {chat.id} for {direct_key}")
        return chat, True

    def create_group_chat(
        self,
        admin_id: int,
        name: str,
        participant_ids: List[int],
        group_image: Optional[str] = None
    ) -> Chat:
        """Create a group chat whose members are all accepted friends of the admin."""
        name = (name or "").strip()
        members = []
        for participant_id in participant_ids or []:
            if participant_id != admin_id and participant_id not in members:
                members.append(participant_id)

        if not name or len(members) < 2:
            raise ValidationError("Group name and at least 2 participants are required")

        friends = self.friendships.friends_among(admin_id, members)
        if any(member not in friends for member in members):
            raise AuthorizationError("Can only add friends to group chat")

        chat = Chat(
            name=name,
            is_group_chat=True,
            group_admin_id=admin_id,
            group_image=group_image,
        )
        chat.participants = [ChatParticipant(user_id=admin_id)] + [
            ChatParticipant(user_id=member) for member in members
        ]
        self.db.add(chat)
        self.db.commit()
        self.db.refresh(chat)

        logger.info(f"User {admin_id} created group chat {chat.id} with {len(members)} members")
        return chat

    def _unread_count_clause(self, user_id: int):
        read_by_user = select(MessageReceipt.message_id).where(
            MessageReceipt.user_id == user_id,
            MessageReceipt.kind == ReceiptKind.READ.value,
        )
        return (
            select(func.count(Message.id))
            .where(
                Message.chat_id == Chat.id,
                Message.sender_id != user_id,
                message_visible_to(user_id),
                Message.id.not_in(read_by_user),
            )
            .correlate(Chat)
            .scalar_subquery()
        )

    def list_chats_for_user(
        self,
        user_id: int,
        chat_filter: str = ChatFilter.ALL.value,
        page: int = 1,
        limit: int = 20
    ) -> Tuple[List[dict], Pagination]:
        """List the user's active chats, most recent activity first, with unread counts."""
        try:
            selected = ChatFilter(FILTER_ALIASES.get(chat_filter, chat_filter))
        except ValueError:
            raise ValidationError(f"Unknown chat filter '{chat_filter}'")

        unread_count = self._unread_count_clause(user_id)
        conditions = [chat_visible_to(user_id)]
        if selected == ChatFilter.GROUPS:
            conditions.append(Chat.is_group_chat == True)  # noqa: E712
        elif selected == ChatFilter.DIRECT:
            conditions.append(Chat.is_group_chat == False)  # noqa: E712
        elif selected == ChatFilter.UNREAD:
            conditions.append(unread_count > 0)

        total = self.db.exec(select(func.count(Chat.id)).where(*conditions)).one()

        offset = (page - 1) * limit
        rows = self.db.exec(
            select(Chat, unread_count.label("unread_count"))
            .where(*conditions)
            .order_by(Chat.last_activity.desc(), Chat.id.desc())
            .offset(offset)
            .limit(limit)
        ).all()

        users: Dict[int, User] = {}
        chats = [
            self.serialize_chat(chat, user_id, unread_count=count, users=users)
            for chat, count in rows
        ]
        return chats, Pagination.build(page, limit, total, len(chats))

    def get_chat_details(self, chat_id: int, requester_id: int) -> dict:
        chat = self.get_visible_chat(chat_id, requester_id)
        return self.serialize_chat(chat, requester_id)

    def deactivate_chat(self, chat_id: int, requester_id: int) -> Chat:
        """Soft-delete a chat. Group chats may only be deleted by their admin."""
        chat = self.get_visible_chat(chat_id, requester_id)
        if chat.is_group_chat and chat.group_admin_id != requester_id:
            raise AuthorizationError("Only group admin can delete group chat")

        chat.is_active = False
        chat.updated_at = datetime.utcnow()
        self.db.add(chat)
        self.db.commit()
        self.db.refresh(chat)

        logger.info(f"User {requester_id} deactivated chat {chat.id}")
        return chat

    def search_users(self, requester_id: int, query: str, limit: int = 20) -> List[User]:
        query = (query or "").strip()
        if len(query) < 2:
            raise ValidationError("Search query must be at least 2 characters")
        return self.directory.search(query, exclude_user_id=requester_id, limit=limit)

    def serialize_chat(
        self,
        chat: Chat,
        viewer_id: int,
        unread_count: Optional[int] = None,
        users: Optional[Dict[int, User]] = None
    ) -> dict:
        """Build the chat payload shared by list and detail responses."""
        users = users if users is not None else {}
        participant_ids = chat.participant_ids
        missing = [pid for pid in participant_ids if pid not in users]
        users.update(self.directory.find_many(missing))

        if chat.is_group_chat:
            chat_name = chat.name
        else:
            other = next((users.get(pid) for pid in participant_ids if pid != viewer_id), None)
            chat_name = other.display_name if other else None

        data = {
            "id": chat.id,
            "chat_name": chat_name,
            "name": chat.name,
            "is_group_chat": chat.is_group_chat,
            "group_admin_id": chat.group_admin_id,
            "group_image": chat.group_image,
            "participants": [
                UserDirectory.presence_summary(users.get(pid), pid) for pid in participant_ids
            ],
            "last_message": self._last_message_summary(chat, viewer_id, users),
            "last_activity": chat.last_activity,
            "is_active": chat.is_active,
            "created_at": chat.created_at,
        }
        if unread_count is not None:
            data["unread_count"] = unread_count
        return data

    def _last_message_summary(self, chat: Chat, viewer_id: int, users: Dict[int, User]) -> Optional[dict]:
        if not chat.last_message_id:
            return None
        message = self.db.get(Message, chat.last_message_id)
        if message is None:
            return None

        sender = users.get(message.sender_id) or self.directory.find_by_id(message.sender_id)
        visible = is_message_visible(message, viewer_id)
        return {
            "id": message.id,
            "sender_id": message.sender_id,
            "sender_name": sender.display_name if sender else None,
            "content": message.content if visible else None,
            "message_type": message.message_type,
            "is_deleted": not visible,
            "created_at": message.created_at,
        }
