"""
Shared fixtures: an in-memory SQLite database, user and friendship factories,
bearer tokens and a TestClient.
"""
import os

os.environ["DATABASE_URL"] = "sqlite://"
os.environ["REDIS_ENABLED"] = "false"
os.environ["JWT_SECRET_KEY"] = "test-secret-key"

import pytest
from fastapi.testclient import TestClient
from sqlmodel import Session, SQLModel

import wanderchat.models  # noqa: F401
from wanderchat.db.database import get_engine
from wanderchat.main import app
from wanderchat.models import Friendship, FriendshipStatus, User
from wanderchat.utils.jwt_handler import jwt_handler
from wanderchat.utils.websocket_manager import connection_manager


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture(autouse=True)
def database():
    engine = get_engine()
    SQLModel.metadata.create_all(engine)
    yield engine
    SQLModel.metadata.drop_all(engine)


@pytest.fixture(autouse=True)
def reset_gateway():
    yield
    connection_manager.sessions.clear()
    connection_manager.channels.clear()
    connection_manager.presence.clear()


@pytest.fixture
def db(database):
    with Session(database) as session:
        yield session


@pytest.fixture
def make_user(db):
    counter = {"n": 0}

    def factory(username=None, first_name=None, last_name=None, **fields):
        counter["n"] += 1
        username = username or f"traveler{counter['n']}"
        user = User(
            username=username,
            first_name=first_name or username.capitalize(),
            last_name=last_name,
            **fields
        )
        db.add(user)
        db.commit()
        db.refresh(user)
        return user

    return factory


@pytest.fixture
def befriend(db):
    def factory(requester, recipient, status=FriendshipStatus.ACCEPTED):
        friendship = Friendship(
            requester_id=requester.id,
            recipient_id=recipient.id,
            status=status.value,
        )
        db.add(friendship)
        db.commit()
        return friendship

    return factory


def token_for(user: User) -> str:
    return jwt_handler.create_access_token({"sub": str(user.id)})


def auth_headers(user: User) -> dict:
    return {"Authorization": f"Bearer {token_for(user)}"}


@pytest.fixture
def client():
    return TestClient(app)
