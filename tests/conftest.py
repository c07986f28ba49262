import os

# Settings are read on import, so the test environment must be in place first
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["REDIS_ENABLED"] = "false"
os.environ["JWT_SECRET_KEY"] = "test-secret"
os.environ.pop("ENVIRONMENT", None)

import pytest
from fastapi.testclient import TestClient
from sqlmodel import Session

from relay.core.security import create_access_token
from relay.db.database import create_db_and_tables, drop_db_and_tables, get_engine
from relay.main import app
from relay.models.user import User


def _token(user_id):
    return create_access_token({"sub": str(user_id)})


@pytest.fixture(autouse=True)
def database():
    """Fresh tables for every test."""
    create_db_and_tables()
    yield
    drop_db_and_tables()


@pytest.fixture()
def session():
    with Session(get_engine()) as db:
        yield db


@pytest.fixture()
def make_user(session):
    """Factory creating active users with predictable names."""
    def _make_user(username, full_name=None, is_active=True, profile_pic=None):
        user = User(
            username=username,
            full_name=full_name or username.title(),
            email=f"{username}@example.com",
            profile_pic=profile_pic,
            is_active=is_active,
        )
        session.add(user)
        session.commit()
        session.refresh(user)
        return user
    return _make_user


@pytest.fixture()
def users(make_user):
    """Three users: alice, bob and carol."""
    return make_user("alice"), make_user("bob"), make_user("carol")


@pytest.fixture()
def client():
    """A test client sharing one event loop between HTTP calls and WebSockets."""
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture()
def token_for():
    return _token


@pytest.fixture()
def auth_headers():
    def _auth_headers(user):
        return {"Authorization": f"Bearer {_token(user.id)}"}
    return _auth_headers
