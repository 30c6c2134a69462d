"""
Friendship oracle used to gate group membership.
"""
from typing import Iterable, Set
from sqlalchemy import and_, or_
from sqlmodel import Session, select

from wanderchat.models.friendship import Friendship, FriendshipStatus


class FriendshipService:
    """Answers "are these users friends" from accepted friendships."""

    def __init__(self, db: Session):
        self.db = db

    def friends_among(self, user_id: int, candidate_ids: Iterable[int]) -> Set[int]:
        """Return the subset of ``candidate_ids`` with an accepted friendship to ``user_id``."""
        candidates = set(candidate_ids)
        if not candidates:
            return set()

        statement = select(Friendship).where(
            Friendship.status == FriendshipStatus.ACCEPTED.value,
            or_(
                and_(Friendship.requester_id == user_id, Friendship.recipient_id.in_(sorted(candidates))),
                and_(Friendship.recipient_id == user_id, Friendship.requester_id.in_(sorted(candidates))),
            )
        )
        friends = set()
        for friendship in self.db.exec(statement).all():
            friends.add(friendship.recipient_id if friendship.requester_id == user_id else friendship.requester_id)
        return friends
