import os

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("INTERNAL_AUTH_SECRET", "test-internal-auth-secret")
os.environ.setdefault("DEFAULT_CURRENCY", "BRL")

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from app.database import Base, get_db
from app.main import app as fastapi_app
from app.models import User
import app.services.notification_service as notification_service

from tests.internal_auth import USER_HEADER, signing_hook

TEST_USER_ID = "user-1"
OTHER_USER_ID = "user-2"


class FakePublisher:
    """Collects events instead of pushing them to Redis."""

    def __init__(self):
        self.events = []

    def publish_notification(self, user_id, notification):
        self.events.append(("notification", user_id, notification))
        return True

    def publish_unread_count(self, user_id, unread):
        self.events.append(("unread_count", user_id, unread))
        return True


@pytest.fixture(autouse=True)
def publisher(monkeypatch):
    fake = FakePublisher()
    monkeypatch.setattr(notification_service, "get_event_publisher", lambda: fake)
    return fake


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def user(db):
    user = User(id=TEST_USER_ID, email="user-1@example.com", name="Test User", currency="BRL")
    db.add(user)
    db.commit()
    return user


@pytest.fixture
def client(session_factory):
    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    fastapi_app.dependency_overrides[get_db] = override_get_db
    with TestClient(fastapi_app) as test_client:
        test_client.event_hooks = {"request": [signing_hook(TEST_USER_ID)], "response": []}
        yield test_client
    fastapi_app.dependency_overrides.clear()


@pytest.fixture
def other_user_headers():
    return {USER_HEADER: OTHER_USER_ID}
