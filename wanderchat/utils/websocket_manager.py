"""
WebSocket connection manager and event handler for real-time chat.

Each websocket is a ``ClientSession``. Sessions subscribe to chat channels;
events published to a channel reach every subscribed session. Fan-out for a
single chat is serialized by a per-chat lock so all subscribers observe that
chat's events in the same order.
"""
import asyncio
import json
import logging
import uuid
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Optional, Set

from fastapi import WebSocket, status
from pydantic import ValidationError as PydanticValidationError
from sqlmodel import Session

from wanderchat.core.exceptions import ChatError
from wanderchat.core.security import authenticate_token
from wanderchat.db.database import db_manager
from wanderchat.models.message import ReceiptKind
from wanderchat.models.user import User
from wanderchat.schemas.events import ChatEvent, ReceiptEvent, SendMessageEvent, build_event
from wanderchat.services.chat_service import ChatService
from wanderchat.services.message_service import MessageService
from wanderchat.services.user_directory import UserDirectory
from wanderchat.utils.presence import PresenceRegistry

logger = logging.getLogger(__name__)


class SessionState(str, Enum):
    CONNECTING = "connecting"
    AUTHENTICATING = "authenticating"
    ACTIVE = "active"
    CLOSED = "closed"


ALLOWED_TRANSITIONS = {
    SessionState.CONNECTING: {SessionState.AUTHENTICATING, SessionState.CLOSED},
    SessionState.AUTHENTICATING: {SessionState.ACTIVE, SessionState.CLOSED},
    SessionState.ACTIVE: {SessionState.CLOSED},
    SessionState.CLOSED: set(),
}


class SessionStateError(RuntimeError):
    """Raised on an illegal session state transition."""


class ClientSession:
    """One live websocket connection."""

    def __init__(self, websocket: WebSocket):
        self.id = uuid.uuid4().hex
        self.websocket = websocket
        self.state = SessionState.CONNECTING
        self.user_id: Optional[int] = None
        self.user: Dict[str, Any] = {}
        self.chat_ids: Set[int] = set()

    def transition(self, new_state: SessionState):
        if new_state not in ALLOWED_TRANSITIONS[self.state]:
            raise SessionStateError(f"Cannot move session {self.id} from {self.state.value} to {new_state.value}")
        self.state = new_state

    @property
    def is_active(self) -> bool:
        return self.state == SessionState.ACTIVE

    def __repr__(self) -> str:
        return f"<ClientSession(id={self.id}, user_id={self.user_id}, state={self.state.value})>"


class ConnectionManager:
    """Manages live sessions, chat channels and fan-out."""

    def __init__(self, presence: PresenceRegistry):
        self.presence = presence
        # session_id -> ClientSession
        self.sessions: Dict[str, ClientSession] = {}
        # chat_id -> session ids subscribed to the chat
        self.channels: Dict[int, Set[str]] = {}
        self._chat_locks: Dict[int, asyncio.Lock] = {}
        # chat_id -> publishers holding or waiting on the chat's lock
        self._lock_users: Dict[int, int] = {}

    def register(self, session: ClientSession, user: User) -> bool:
        """
        Attach an authenticated session to its user.

        Returns:
            True if the user came online with this session.
        """
        session.user_id = user.id
        session.user = UserDirectory.summary(user)
        self.sessions[session.id] = session
        came_online = self.presence.register(user.id, session.id)
        logger.info(f"User {user.id} connected via WebSocket (session {session.id})")
        return came_online

    def unregister(self, session: ClientSession):
        """
        Drop a session and its subscriptions.

        Returns:
            (user_id, went_offline) from the presence registry, or None.
        """
        self.sessions.pop(session.id, None)
        for chat_id in list(session.chat_ids):
            self.unsubscribe(session, chat_id)
        result = self.presence.unregister(session.id)
        if result:
            logger.info(f"User {result[0]} disconnected from WebSocket (session {session.id})")
        return result

    def sessions_for_user(self, user_id: int) -> List[ClientSession]:
        return [
            self.sessions[session_id]
            for session_id in self.presence.sessions_for(user_id)
            if session_id in self.sessions
        ]

    def subscribe(self, session: ClientSession, chat_id: int):
        self.channels.setdefault(chat_id, set()).add(session.id)
        session.chat_ids.add(chat_id)

    def unsubscribe(self, session: ClientSession, chat_id: int):
        subscribers = self.channels.get(chat_id)
        if subscribers is not None:
            subscribers.discard(session.id)
            if not subscribers:
                self.channels.pop(chat_id, None)
                self._drop_idle_lock(chat_id)
        session.chat_ids.discard(chat_id)

    def subscribe_user(self, user_id: int, chat_id: int) -> int:
        """Subscribe every live session of a user to a chat."""
        sessions = self.sessions_for_user(user_id)
        for session in sessions:
            self.subscribe(session, chat_id)
        return len(sessions)

    def close_channel(self, chat_id: int):
        """Unsubscribe everybody from a chat that no longer exists for them."""
        for session_id in self.channels.pop(chat_id, set()):
            session = self.sessions.get(session_id)
            if session:
                session.chat_ids.discard(chat_id)
        self._drop_idle_lock(chat_id)

    def subscribers(self, chat_id: int) -> List[ClientSession]:
        return [
            self.sessions[session_id]
            for session_id in self.channels.get(chat_id, set())
            if session_id in self.sessions
        ]

    def chat_lock(self, chat_id: int) -> asyncio.Lock:
        lock = self._chat_locks.get(chat_id)
        if lock is None:
            lock = self._chat_locks[chat_id] = asyncio.Lock()
        return lock

    def _drop_idle_lock(self, chat_id: int):
        if chat_id not in self.channels and not self._lock_users.get(chat_id):
            self._chat_locks.pop(chat_id, None)

    async def send_to_session(self, session: ClientSession, event: Dict[str, Any]) -> bool:
        """Send one event to one session. A failed send is logged; the session's receive loop cleans it up."""
        if not session.is_active:
            return False
        try:
            await session.websocket.send_text(json.dumps(event))
            return True
        except Exception as e:
            logger.error(f"Error sending {event.get('type')} to session {session.id}: {e}")
            return False

    async def send_to_user(
        self,
        user_id: int,
        event: Dict[str, Any],
        exclude_session_id: Optional[str] = None
    ) -> int:
        """Send an event to all sessions of a user. Returns the number of sessions reached."""
        delivered = 0
        for session in self.sessions_for_user(user_id):
            if session.id == exclude_session_id:
                continue
            if await self.send_to_session(session, event):
                delivered += 1
        return delivered

    async def publish_to_chat(
        self,
        chat_id: int,
        events: Iterable[Dict[str, Any]],
        exclude_user_id: Optional[int] = None
    ) -> int:
        """
        Send events, in order, to every session subscribed to a chat.

        Returns:
            Number of session deliveries.
        """
        events = list(events)
        delivered = 0
        lock = self.chat_lock(chat_id)
        self._lock_users[chat_id] = self._lock_users.get(chat_id, 0) + 1
        try:
            async with lock:
                for event in events:
                    for session in self.subscribers(chat_id):
                        if exclude_user_id is not None and session.user_id == exclude_user_id:
                            continue
                        if await self.send_to_session(session, event):
                            delivered += 1
        finally:
            remaining = self._lock_users[chat_id] - 1
            if remaining:
                self._lock_users[chat_id] = remaining
            else:
                del self._lock_users[chat_id]
            self._drop_idle_lock(chat_id)
        return delivered

    async def publish_new_message(self, chat_id: int, message: Dict[str, Any]) -> int:
        """Fan out ``new_message`` and ``chat_updated`` for a freshly appended message to the chat's subscribers."""
        chat_updated = build_event("chat_updated", {
            "chat_id": chat_id,
            "last_message": {
                "id": message["id"],
                "sender_id": message["sender"]["id"],
                "content": message["content"],
                "message_type": message["message_type"],
                "created_at": message["created_at"],
            },
            "last_activity": message["created_at"],
        })
        return await self.publish_to_chat(chat_id, [build_event("new_message", message), chat_updated])

    async def broadcast(self, event: Dict[str, Any], exclude_user_id: Optional[int] = None) -> int:
        delivered = 0
        for session in list(self.sessions.values()):
            if exclude_user_id is not None and session.user_id == exclude_user_id:
                continue
            if await self.send_to_session(session, event):
                delivered += 1
        return delivered

    async def send_notification_to_user(self, user_id: int, payload: Dict[str, Any]) -> int:
        """Push a ``notification`` event to every live session of a user."""
        return await self.send_to_user(user_id, build_event("notification", payload))

    def is_user_online(self, user_id: int) -> bool:
        return self.presence.is_online(user_id)

    async def shutdown(self):
        """Close every live session and forget all state."""
        for session in list(self.sessions.values()):
            if session.state != SessionState.CLOSED:
                session.transition(SessionState.CLOSED)
            try:
                await session.websocket.close(code=status.WS_1001_GOING_AWAY)
            except Exception as e:
                logger.debug(f"Error closing session {session.id}: {e}")
        self.sessions.clear()
        self.channels.clear()
        self._chat_locks.clear()
        self._lock_users.clear()
        self.presence.clear()
        logger.info("All WebSocket sessions closed")


class ChatWebSocketHandler:
    """Handles the websocket session lifecycle and inbound chat events."""

    def __init__(
        self,
        connection_manager: ConnectionManager,
        session_factory: Callable[[], Session] = db_manager.get_session
    ):
        self.connection_manager = connection_manager
        self.session_factory = session_factory
        self._handlers = {
            "join_chat": self._handle_join_chat,
            "leave_chat": self._handle_leave_chat,
            "send_message": self._handle_send_message,
            "message_read": self._handle_message_read,
            "message_delivered": self._handle_message_delivered,
            "typing": self._handle_typing,
            "stop_typing": self._handle_stop_typing,
        }

    async def connect(self, websocket: WebSocket, token: Optional[str]) -> Optional[ClientSession]:
        """
        Authenticate and open a session.

        Returns None when the socket was closed instead: 1008 before accept for a
        bad token, 1011 when opening the session failed after accept.
        """
        session = ClientSession(websocket)
        session.transition(SessionState.AUTHENTICATING)

        with self.session_factory() as db:
            user = await authenticate_token(token, db)
            if user is None:
                session.transition(SessionState.CLOSED)
                await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
                return None

            await websocket.accept()
            session.transition(SessionState.ACTIVE)
            try:
                await self.open_session(session, user, db)
            except Exception as e:
                logger.exception(f"Failed to open WebSocket session {session.id} for user {user.id}: {e}")
                db.rollback()
                opened = False
            else:
                opened = True

        if not opened:
            await self.close_session(session)
            await websocket.close(code=status.WS_1011_INTERNAL_ERROR)
            return None
        return session

    async def open_session(self, session: ClientSession, user: User, db: Session):
        manager = self.connection_manager
        came_online = manager.register(session, user)
        UserDirectory(db).set_online_status(user.id, True)
        for chat_id in ChatService(db).active_chat_ids_for_user(user.id):
            manager.subscribe(session, chat_id)

        await manager.send_to_session(session, build_event("connection_confirmed", {
            "user_id": user.id,
            "session_id": session.id,
            "chat_ids": sorted(session.chat_ids),
            "message": "Connected to chat server",
        }))

        if came_online:
            await manager.broadcast(build_event("user_status_changed", {
                "user_id": user.id,
                "is_online": True,
                "last_seen": None,
            }), exclude_user_id=user.id)

        receipts = [
            (message.sender_id, {
                "message_id": message.id,
                "chat_id": message.chat_id,
                "user_id": user.id,
                "delivered_at": message.receipt_for(user.id, ReceiptKind.DELIVERED).at,
            })
            for message in MessageService(db).reconcile_deliveries(user.id)
        ]
        for sender_id, data in receipts:
            await manager.send_to_user(sender_id, build_event("message_delivered_receipt", data))

    async def close_session(self, session: ClientSession):
        """Unregister a session; when it was the user's last one, mark them offline."""
        if session.state == SessionState.CLOSED:
            return
        session.transition(SessionState.CLOSED)

        result = self.connection_manager.unregister(session)
        if not result:
            return
        user_id, went_offline = result
        if not went_offline:
            return

        with self.session_factory() as db:
            last_seen = UserDirectory(db).set_online_status(user_id, False)
        await self.connection_manager.broadcast(build_event("user_status_changed", {
            "user_id": user_id,
            "is_online": False,
            "last_seen": last_seen,
        }), exclude_user_id=user_id)

    async def send_error(self, session: ClientSession, message: str, **extra):
        data = {"message": message}
        data.update(extra)
        await self.connection_manager.send_to_session(session, build_event("error", data))

    async def handle_message(self, session: ClientSession, raw: str):
        """Process one inbound websocket frame."""
        try:
            data = json.loads(raw)
        except (TypeError, ValueError):
            await self.send_error(session, "Invalid JSON format")
            return

        if not isinstance(data, dict) or not isinstance(data.get("type"), str):
            await self.send_error(session, "Event must be an object with a string 'type'")
            return

        event_type = data["type"]
        payload = data.get("data") or {}
        handler = self._handlers.get(event_type)
        if handler is None:
            await self.send_error(session, f"Unknown message type: {event_type}")
            return

        try:
            await handler(session, payload)
        except ChatError as e:
            await self.send_error(session, e.message, event=event_type)
        except PydanticValidationError as e:
            details = [f"{'.'.join(str(part) for part in err['loc'])}: {err['msg']}" for err in e.errors()]
            await self.send_error(session, "Invalid event data", event=event_type, details=details)
        except Exception as e:
            logger.exception(f"Error handling {event_type} from session {session.id}: {e}")
            await self.send_error(session, "Failed to process message", event=event_type)

    async def _handle_join_chat(self, session: ClientSession, payload: dict):
        event = ChatEvent(**payload)
        with self.session_factory() as db:
            ChatService(db).get_visible_chat(event.chat_id, session.user_id)
        self.connection_manager.subscribe(session, event.chat_id)
        await self.connection_manager.send_to_session(session, build_event("joined_chat", {"chat_id": event.chat_id}))

    async def _handle_leave_chat(self, session: ClientSession, payload: dict):
        event = ChatEvent(**payload)
        self.connection_manager.unsubscribe(session, event.chat_id)
        await self.connection_manager.send_to_session(session, build_event("left_chat", {"chat_id": event.chat_id}))

    async def _handle_send_message(self, session: ClientSession, payload: dict):
        event = SendMessageEvent(**payload)
        with self.session_factory() as db:
            service = MessageService(db, presence=self.connection_manager.presence)
            message = service.append_message(
                chat_id=event.chat_id,
                sender_id=session.user_id,
                content=event.content,
                message_type=event.message_type,
                media_files=event.media_files,
                reply_to_id=event.reply_to_id,
            )
            data = service.serialize_message(message, session.user_id)
        await self.connection_manager.publish_new_message(event.chat_id, data)

    async def _acknowledge(self, session: ClientSession, payload: dict, kind: ReceiptKind):
        event = ReceiptEvent(**payload)
        with self.session_factory() as db:
            message, recorded = MessageService(db).acknowledge(event.message_id, event.chat_id, session.user_id, kind)
            sender_id = message.sender_id
            at = message.receipt_for(session.user_id, kind).at
        if not recorded:
            return

        event_type = "message_read_receipt" if kind == ReceiptKind.READ else "message_delivered_receipt"
        stamp = "read_at" if kind == ReceiptKind.READ else "delivered_at"
        await self.connection_manager.send_to_user(sender_id, build_event(event_type, {
            "message_id": event.message_id,
            "chat_id": event.chat_id,
            "user_id": session.user_id,
            stamp: at,
        }))

    async def _handle_message_read(self, session: ClientSession, payload: dict):
        await self._acknowledge(session, payload, ReceiptKind.READ)

    async def _handle_message_delivered(self, session: ClientSession, payload: dict):
        await self._acknowledge(session, payload, ReceiptKind.DELIVERED)

    async def _typing(self, session: ClientSession, payload: dict, event_type: str):
        event = ChatEvent(**payload)
        with self.session_factory() as db:
            ChatService(db).get_visible_chat(event.chat_id, session.user_id)
        await self.connection_manager.publish_to_chat(event.chat_id, [build_event(event_type, {
            "chat_id": event.chat_id,
            "user_id": session.user_id,
            "username": session.user.get("username"),
        })], exclude_user_id=session.user_id)

    async def _handle_typing(self, session: ClientSession, payload: dict):
        await self._typing(session, payload, "user_typing")

    async def _handle_stop_typing(self, session: ClientSession, payload: dict):
        await self._typing(session, payload, "user_stop_typing")


# Global presence registry, connection manager and handler instances
presence_registry = PresenceRegistry()
connection_manager = ConnectionManager(presence_registry)
chat_handler = ChatWebSocketHandler(connection_manager)
