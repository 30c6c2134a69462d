"""
In-process registry of which users have live websocket sessions.
"""
import logging
from typing import Dict, List, Optional, Set, Tuple

logger = logging.getLogger(__name__)


class PresenceRegistry:
    """
    Maps user ids to the ids of their live sessions.

    A user is online exactly while at least one session is registered for
    them. The registry lives in process memory only and is empty at startup.
    """

    def __init__(self):
        self._sessions_by_user: Dict[int, Set[str]] = {}
        self._user_by_session: Dict[str, int] = {}

    def register(self, user_id: int, session_id: str) -> bool:
        """
        Add a session for a user.

        Returns:
            True if this was the user's first session (they came online).
        """
        sessions = self._sessions_by_user.setdefault(user_id, set())
        came_online = not sessions
        sessions.add(session_id)
        self._user_by_session[session_id] = user_id
        logger.debug(f"Registered session {session_id} for user {user_id} ({len(sessions)} live)")
        return came_online

    def unregister(self, session_id: str) -> Optional[Tuple[int, bool]]:
        """
        Remove a session.

        Returns:
            (user_id, went_offline), or None if the session was unknown.
        """
        user_id = self._user_by_session.pop(session_id, None)
        if user_id is None:
            return None

        sessions = self._sessions_by_user.get(user_id, set())
        sessions.discard(session_id)
        went_offline = not sessions
        if went_offline:
            self._sessions_by_user.pop(user_id, None)
        logger.debug(f"Unregistered session {session_id} for user {user_id}")
        return user_id, went_offline

    def sessions_for(self, user_id: int) -> Set[str]:
        return set(self._sessions_by_user.get(user_id, ()))

    def is_online(self, user_id: int) -> bool:
        return bool(self._sessions_by_user.get(user_id))

    def online_users(self) -> List[int]:
        return sorted(self._sessions_by_user)

    def connection_count(self, user_id: int) -> int:
        return len(self._sessions_by_user.get(user_id, ()))

    def clear(self):
        self._sessions_by_user.clear()
        self._user_by_session.clear()
