import os
import tempfile
from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.pool import StaticPool

# Keep the app's own engine, config and logs out of the working tree.
_TEST_ROOT = tempfile.mkdtemp(prefix="huddle-tests-")
os.environ.setdefault("HUDDLE_CONFIG_PATH", os.path.join(_TEST_ROOT, "missing.yaml"))
os.environ.setdefault(
    "HUDDLE_DATABASE_URL", f"sqlite:///{os.path.join(_TEST_ROOT, 'app.db')}"
)
os.environ.setdefault("HUDDLE_LOG_DIR", os.path.join(_TEST_ROOT, "logs"))
os.environ.setdefault("HUDDLE_JWT_SECRET_KEY", "test-secret-key-" + "x" * 32)

from huddle.database import Base, configure_sqlite_engine, get_db  # noqa: E402
from huddle.main import app  # noqa: E402
from huddle.auth.auth import create_access_token  # noqa: E402
from huddle.data.meeting_manager import MeetingManager  # noqa: E402
from huddle.models import Meeting, User, WorkspaceMember  # noqa: E402
from huddle.schemas.meeting import MeetingCreate  # noqa: E402
from huddle.services.media_provider import (  # noqa: E402
    MediaRoomProvider,
    reset_media_provider,
)
from huddle.services.meeting_locks import MeetingLockRegistry  # noqa: E402

WORKSPACE_ID = "ws-1"
HOST_ID = "host-1"
PROVIDER_KEY = "testkey"
PROVIDER_SECRET = "provider-secret-" + "y" * 32
T0 = datetime(2024, 5, 6, 9, 0, 0, tzinfo=timezone.utc)


class FrozenClock:
    """Hands out deterministic timestamps for duration assertions."""

    def __init__(self, start: datetime = T0):
        self.now = start

    def at(self, seconds: float) -> datetime:
        return T0 + timedelta(seconds=seconds)

    def advance(self, seconds: float) -> datetime:
        self.now = self.now + timedelta(seconds=seconds)
        return self.now


@pytest.fixture
def clock():
    return FrozenClock()


@pytest.fixture
def engine():
    test_engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=test_engine)
    yield test_engine
    test_engine.dispose()


@pytest.fixture
def file_engine(tmp_path):
    """A file-backed database for tests that need real concurrent connections."""
    test_engine = configure_sqlite_engine(
        create_engine(
            f"sqlite:///{tmp_path / 'huddle.db'}",
            connect_args={"check_same_thread": False, "timeout": 30},
        )
    )
    Base.metadata.create_all(bind=test_engine)
    yield test_engine
    test_engine.dispose()


@pytest.fixture
def db_session(engine):
    """A fresh in-memory database per test, also served to the app's routes."""
    TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    db = TestingSessionLocal()
    app.dependency_overrides[get_db] = lambda: db
    try:
        yield db
    finally:
        db.close()
        app.dependency_overrides.pop(get_db, None)


@pytest.fixture
def provider():
    media = MediaRoomProvider(
        api_key=PROVIDER_KEY,
        api_secret=PROVIDER_SECRET,
        url="ws://media.test",
    )
    reset_media_provider(media)
    yield media
    reset_media_provider(None)


@pytest.fixture
def make_user(db_session: Session):
    def _make_user(user_id: str, display_name: str = None, workspace_id: str = WORKSPACE_ID):
        user = User(
            user_id=user_id,
            display_name=display_name or user_id.title(),
            email=f"{user_id}@example.com",
            avatar_url=f"/avatars/{user_id}.png",
        )
        db_session.add(user)
        if workspace_id:
            db_session.add(WorkspaceMember(workspace_id=workspace_id, user_id=user_id))
        db_session.commit()
        return user

    return _make_user


@pytest.fixture
def manager(db_session: Session, provider):
    return MeetingManager(db=db_session, media_provider=provider, locks=MeetingLockRegistry())


@pytest.fixture
def meeting(manager: MeetingManager, make_user, db_session: Session) -> Meeting:
    make_user(HOST_ID, "Hosting Person")
    ref = manager.create_meeting(
        MeetingCreate(workspace_id=WORKSPACE_ID, title="Weekly sync"),
        creator_id=HOST_ID,
        now=T0,
    )
    return db_session.get(Meeting, ref.id)


@pytest.fixture
def client(db_session: Session, provider):
    with TestClient(app) as c:
        yield c


@pytest.fixture
def auth_headers():
    def _headers(user_id: str) -> dict:
        token = create_access_token({"sub": user_id})
        return {"Authorization": f"Bearer {token}"}

    return _headers
