"""
Message service: append, history, receipts, edits and deletes.
"""
import logging
from collections import OrderedDict
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional, Sequence, Tuple
from sqlalchemy import func
from sqlmodel import Session, select

from wanderchat.core.config import settings
from wanderchat.core.exceptions import (
    AuthorizationError,
    InvalidOperationError,
    NotFoundError,
    UpstreamError,
    ValidationError,
)
from wanderchat.models.chat import Chat
from wanderchat.models.message import (
    Message,
    MessageAttachment,
    MessageDeletion,
    MessageReceipt,
    MessageType,
    ReceiptKind,
)
from wanderchat.models.user import User
from wanderchat.schemas.chat import Pagination
from wanderchat.schemas.message import MediaAttachmentIn
from wanderchat.services.blob_store import BlobStore
from wanderchat.services.chat_service import ChatService
from wanderchat.services.user_directory import UserDirectory
from wanderchat.services.visibility import chat_visible_to, is_message_visible, message_visible_to

logger = logging.getLogger(__name__)


class MessageService:
    """
    Service for message operations.

    ``presence`` is anything with an ``is_online(user_id)`` method; it decides
    which recipients get a delivery receipt at write time. ``clock`` returns
    naive UTC datetimes and exists so time windows can be exercised in tests.
    """

    def __init__(
        self,
        db: Session,
        presence=None,
        blob_store: Optional[BlobStore] = None,
        clock: Callable[[], datetime] = datetime.utcnow
    ):
        self.db = db
        self.presence = presence
        self.blob_store = blob_store
        self.clock = clock
        self.chats = ChatService(db)
        self.directory = UserDirectory(db)

    def _is_online(self, user_id: int) -> bool:
        return bool(self.presence and self.presence.is_online(user_id))

    def get_message(self, message_id: int) -> Message:
        message = self.db.get(Message, message_id)
        if message is None:
            raise NotFoundError("Message not found")
        return message

    def append_message(
        self,
        chat_id: int,
        sender_id: int,
        content: Optional[str] = None,
        message_type: str = MessageType.TEXT.value,
        media_files: Optional[Sequence[MediaAttachmentIn]] = None,
        reply_to_id: Optional[int] = None
    ) -> Message:
        """Persist a new message and advance the chat's last-message pointer."""
        chat = self.chats.get_visible_chat(chat_id, sender_id)

        content = (content or "").strip() or None
        media_files = list(media_files or [])
        if not content and not media_files:
            raise ValidationError("Message content or media files are required")

        message_type = getattr(message_type, "value", message_type) or MessageType.TEXT.value
        if message_type not in {kind.value for kind in MessageType}:
            raise ValidationError(f"Unknown message type '{message_type}'")
        if message_type == MessageType.TEXT.value and media_files:
            message_type = getattr(media_files[0].media_type, "value", media_files[0].media_type)

        if reply_to_id is not None:
            reply = self.db.get(Message, reply_to_id)
            if reply is None or reply.chat_id != chat.id or not is_message_visible(reply, sender_id):
                raise NotFoundError("Replied-to message not found")

        now = self.clock()
        message = Message(
            chat_id=chat.id,
            sender_id=sender_id,
            content=content,
            message_type=message_type,
            reply_to_id=reply_to_id,
            created_at=now,
            updated_at=now,
        )
        message.attachments = [
            MessageAttachment(
                position=position,
                url=media.url,
                media_type=getattr(media.media_type, "value", media.media_type),
                file_name=media.file_name,
                file_size=media.file_size,
                mime_type=media.mime_type,
            )
            for position, media in enumerate(media_files)
        ]
        message.receipts = [
            MessageReceipt(user_id=participant_id, kind=ReceiptKind.DELIVERED.value, at=now)
            for participant_id in chat.participant_ids
            if participant_id != sender_id and self._is_online(participant_id)
        ]
        self.db.add(message)
        self.db.flush()

        # last_activity only moves forward
        if chat.last_activity is None or now >= chat.last_activity:
            chat.last_message_id = message.id
            chat.last_activity = now
        chat.updated_at = now
        self.db.add(chat)
        self.db.commit()
        self.db.refresh(message)

        logger.info(f"User {sender_id} sent message {message.id} to chat {chat.id}")
        return message

    def list_messages(
        self,
        chat_id: int,
        viewer_id: int,
        page: int = 1,
        limit: int = 100
    ) -> Tuple[List[dict], Pagination]:
        """
        Get one page of a chat's history as seen by ``viewer_id``.

        Pages are counted from the newest message; each page is returned
        oldest-first and grouped by calendar date.
        """
        chat = self.chats.get_visible_chat(chat_id, viewer_id)
        conditions = [Message.chat_id == chat.id, message_visible_to(viewer_id)]

        total = self.db.exec(select(func.count(Message.id)).where(*conditions)).one()
        messages = self.db.exec(
            select(Message)
            .where(*conditions)
            .order_by(Message.created_at.desc(), Message.id.desc())
            .offset((page - 1) * limit)
            .limit(limit)
        ).all()
        messages = list(reversed(messages))

        users: Dict[int, User] = {}
        grouped: "OrderedDict[str, List[dict]]" = OrderedDict()
        for message in messages:
            day = message.created_at.date().isoformat()
            grouped.setdefault(day, []).append(self.serialize_message(message, viewer_id, users))

        groups = [{"date": day, "messages": items} for day, items in grouped.items()]
        return groups, Pagination.build(page, limit, total, len(messages))

    def _record_receipt(self, message: Message, user_id: int, kind: ReceiptKind, now: datetime) -> bool:
        """Insert a receipt unless one exists. Returns True if it was inserted."""
        if message.receipt_for(user_id, kind) is not None:
            return False
        message.receipts.append(MessageReceipt(user_id=user_id, kind=kind.value, at=now))
        return True

    def _record_read(self, message: Message, user_id: int, now: datetime) -> bool:
        # A read message is also delivered
        self._record_receipt(message, user_id, ReceiptKind.DELIVERED, now)
        return self._record_receipt(message, user_id, ReceiptKind.READ, now)

    def mark_read(self, chat_id: int, viewer_id: int, message_ids: Sequence[int]) -> List[Message]:
        """
        Mark messages of a chat as read by ``viewer_id``.

        Ids from other chats, the viewer's own messages and already-read
        messages are skipped, so replays are no-ops.

        Returns:
            The messages that were newly marked as read.
        """
        chat = self.chats.get_visible_chat(chat_id, viewer_id)
        if not message_ids:
            return []

        now = self.clock()
        candidates = self.db.exec(
            select(Message).where(
                Message.id.in_(sorted(set(message_ids))),
                Message.chat_id == chat.id,
                Message.sender_id != viewer_id,
            )
        ).all()

        newly_read = [message for message in candidates if self._record_read(message, viewer_id, now)]
        self.db.commit()
        for message in newly_read:
            self.db.refresh(message)

        if newly_read:
            logger.info(f"User {viewer_id} read {len(newly_read)} messages in chat {chat.id}")
        return newly_read

    def acknowledge(self, message_id: int, chat_id: int, user_id: int, kind: ReceiptKind) -> Tuple[Message, bool]:
        """
        Record a single read or delivery receipt sent over the websocket.

        Returns:
            (message, recorded) where ``recorded`` is False for replays.
        """
        message = self.get_message(message_id)
        if message.chat_id != chat_id or not is_message_visible(message, user_id):
            raise NotFoundError("Message not found")
        self.chats.get_visible_chat(chat_id, user_id)
        if message.sender_id == user_id:
            raise InvalidOperationError("Cannot acknowledge your own message")

        now = self.clock()
        if kind == ReceiptKind.READ:
            recorded = self._record_read(message, user_id, now)
        else:
            recorded = self._record_receipt(message, user_id, ReceiptKind.DELIVERED, now)
        self.db.commit()
        self.db.refresh(message)
        return message, recorded

    def reconcile_deliveries(self, user_id: int) -> List[Message]:
        """
        Mark every visible message sent to ``user_id`` while they were offline
        as delivered. Called when a websocket session opens.

        Returns:
            The messages that gained a delivery receipt.
        """
        delivered_to_user = select(MessageReceipt.message_id).where(
            MessageReceipt.user_id == user_id,
            MessageReceipt.kind == ReceiptKind.DELIVERED.value,
        )
        user_chats = select(Chat.id).where(chat_visible_to(user_id))
        pending = self.db.exec(
            select(Message)
            .where(
                Message.chat_id.in_(user_chats),
                Message.sender_id != user_id,
                message_visible_to(user_id),
                Message.id.not_in(delivered_to_user),
            )
            .order_by(Message.created_at, Message.id)
        ).all()
        if not pending:
            return []

        now = self.clock()
        for message in pending:
            self._record_receipt(message, user_id, ReceiptKind.DELIVERED, now)
        self.db.commit()
        for message in pending:
            self.db.refresh(message)

        logger.info(f"Reconciled {len(pending)} undelivered messages for user {user_id}")
        return list(pending)

    def edit_message(self, message_id: int, requester_id: int, content: str) -> Message:
        message = self.get_message(message_id)
        if not is_message_visible(message, requester_id):
            raise NotFoundError("Message not found")
        if message.sender_id != requester_id:
            raise AuthorizationError("Not authorized to edit this message")
        if message.message_type != MessageType.TEXT.value:
            raise InvalidOperationError("Can only edit text messages")

        content = (content or "").strip()
        if not content:
            raise ValidationError("Message content cannot be empty")

        now = self.clock()
        message.content = content
        message.is_edited = True
        message.edited_at = now
        message.updated_at = now
        self.db.add(message)
        self.db.commit()
        self.db.refresh(message)
        return message

    async def delete_message(self, message_id: int, requester_id: int, for_everyone: bool = False) -> Message:
        """
        Delete a message for everyone (within the delete window) or for the
        requester only.

        Deleting for everyone releases the message's media to the blob store;
        release failures are logged and do not fail the delete.
        """
        message = self.get_message(message_id)
        if message.is_deleted:
            raise NotFoundError("Message not found")
        if message.sender_id != requester_id:
            raise AuthorizationError("Not authorized to delete this message")

        now = self.clock()
        if not for_everyone:
            if requester_id not in message.deleted_for:
                message.deletions.append(MessageDeletion(user_id=requester_id, deleted_at=now))
                self.db.commit()
            self.db.refresh(message)
            return message

        window = timedelta(hours=settings.message_delete_window_hours)
        if now - message.created_at > window:
            raise InvalidOperationError(
                f"Can only delete for everyone within {settings.message_delete_window_hours} hours"
            )

        message.is_deleted = True
        message.deleted_at = now
        message.updated_at = now
        self.db.add(message)
        self.db.commit()
        self.db.refresh(message)
        logger.info(f"User {requester_id} deleted message {message.id} for everyone")

        await self._release_media(message)
        return message

    async def _release_media(self, message: Message):
        if not message.attachments:
            return
        if self.blob_store is None:
            logger.warning(f"No blob store available to release media of message {message.id}")
            return

        for attachment in message.attachments:
            try:
                released = await self.blob_store.delete_object(attachment.url)
            except UpstreamError as e:
                logger.error(f"Failed to release media {attachment.url} of message {message.id}: {e}")
                continue
            if not released:
                logger.warning(f"Media {attachment.url} of message {message.id} was not released")

    def serialize_message(self, message: Message, viewer_id: int = None, users: Optional[Dict[int, User]] = None) -> dict:
        """Build the message payload shared by REST responses and websocket events."""
        users = users if users is not None else {}

        def user_for(user_id: int) -> Optional[User]:
            if user_id not in users:
                users[user_id] = self.db.get(User, user_id)
            return users[user_id]

        sender = user_for(message.sender_id)
        reply_to = None
        if message.reply_to_id:
            reply = self.db.get(Message, message.reply_to_id)
            if reply is not None:
                reply_sender = user_for(reply.sender_id)
                visible = viewer_id is None or is_message_visible(reply, viewer_id)
                reply_to = {
                    "id": reply.id,
                    "sender_id": reply.sender_id,
                    "sender_name": reply_sender.display_name if reply_sender else None,
                    "content": reply.content if visible else None,
                    "message_type": reply.message_type,
                    "is_deleted": not visible,
                }

        return {
            "id": message.id,
            "chat_id": message.chat_id,
            "sender": UserDirectory.summary(sender, message.sender_id),
            "content": message.content,
            "message_type": message.message_type,
            "media_files": [
                {
                    "url": attachment.url,
                    "media_type": attachment.media_type,
                    "file_name": attachment.file_name,
                    "file_size": attachment.file_size,
                    "mime_type": attachment.mime_type,
                }
                for attachment in message.attachments
            ],
            "reply_to": reply_to,
            "read_by": [
                {"user_id": receipt.user_id, "at": receipt.at}
                for receipt in message.receipts_of(ReceiptKind.READ)
            ],
            "delivered_to": [
                {"user_id": receipt.user_id, "at": receipt.at}
                for receipt in message.receipts_of(ReceiptKind.DELIVERED)
            ],
            "is_edited": message.is_edited,
            "edited_at": message.edited_at,
            "created_at": message.created_at,
        }
