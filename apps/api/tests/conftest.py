"""
Test configuration and fixtures.

Provides:
- In-memory SQLite database (tables cleared after each test)
- HTTPX AsyncClient wired to the app with the test session
- In-memory fake of the remote chat platform
"""
import os
from typing import AsyncGenerator, Generator

os.environ["DATABASE_URL"] = "sqlite+pysqlite:///:memory:"
os.environ["INTERNAL_SECRET"] = "test-internal-secret"
os.environ["GOOGLE_WORKSPACE_DOMAIN"] = ""
os.environ["GOOGLE_DIRECTORY_SUBJECT"] = ""

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.orm import Session

from chatsync.core.deps import get_db, get_remote_factory
from chatsync.db.base import Base
from chatsync.db.models import Account
from chatsync.db.session import SessionLocal, engine
from chatsync.main import app
from chatsync.services.remote_source import RemoteChatError
from chatsync.utils.normalization import parse_remote_timestamp

INTERNAL_SECRET = "test-internal-secret"


# =============================================================================
# Fake remote platform
# =============================================================================


class FakeRemote:
    """
    In-memory remote chat source.

    spaces/members/messages are plain lists and dicts; the fail_* sets make the
    matching call raise RemoteChatError.
    """

    def __init__(self, *, page_size: int = 2):
        self.page_size = page_size
        self.spaces: list[dict] = []
        self.members: dict[str, list[dict]] = {}
        self.messages: dict[str, list[dict]] = {}
        self.directory: dict[str, dict] = {}
        self.fail_spaces = False
        self.fail_members: set[str] = set()
        self.fail_messages: set[str] = set()
        self.directory_errors: set[str] = set()
        self.directory_calls: list[str] = []
        self.message_filters: list = []
        self.closed = False

    # builders ---------------------------------------------------------------

    def add_space(self, space_id: str, space_type: str = "DIRECT_MESSAGE", display_name: str = ""):
        self.spaces.append(
            {"space_id": space_id, "space_type": space_type, "display_name": display_name}
        )
        self.members.setdefault(space_id, [])
        self.messages.setdefault(space_id, [])

    def add_member(self, space_id: str, user_id: str, display_name=None, email=None):
        self.members.setdefault(space_id, []).append(
            {"external_user_id": user_id, "display_name": display_name, "email": email}
        )

    def add_message(self, space_id: str, message_id: str, sender: str, create_time: str, text: str = "hi"):
        self.messages.setdefault(space_id, []).append(
            {
                "message_id": message_id,
                "text": text,
                "create_time": create_time,
                "sender_external_id": sender,
            }
        )

    def add_user(self, identifier: str, *, email: str, name: str, user_id: str | None = None):
        self.directory[identifier] = {
            "user_id": user_id,
            "primary_email": email,
            "full_name": name,
        }

    # remote source protocol --------------------------------------------------

    def _page(self, items: list, page_token: str | None):
        start = int(page_token or 0)
        end = start + self.page_size
        next_token = str(end) if end < len(items) else None
        return list(items[start:end]), next_token

    def get_user(self, identifier: str):
        self.directory_calls.append(identifier)
        if identifier in self.directory_errors:
            raise RemoteChatError("directory unavailable", status_code=503)
        return self.directory.get(identifier)

    def list_spaces(self, page_token=None):
        if self.fail_spaces:
            raise RemoteChatError("space listing unavailable", status_code=503)
        return self._page(self.spaces, page_token)

    def list_members(self, space_id, page_token=None):
        if space_id in self.fail_members:
            raise RemoteChatError("members unavailable", status_code=503)
        return self._page(self.members.get(space_id, []), page_token)

    def list_messages(self, space_id, page_token=None, *, created_after=None):
        if space_id in self.fail_messages:
            raise RemoteChatError("messages unavailable", status_code=503)
        self.message_filters.append(created_after)
        messages = self.messages.get(space_id, [])
        if created_after is not None:
            messages = [
                m for m in messages if parse_remote_timestamp(m["create_time"]) > created_after
            ]
        return self._page(messages, page_token)

    def close(self):
        self.closed = True


# =============================================================================
# Database Fixtures
# =============================================================================


@pytest.fixture(scope="session", autouse=True)
def create_schema() -> Generator[None, None, None]:
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture(scope="function")
def db() -> Generator[Session, None, None]:
    """Session on the shared in-memory database; every table is emptied afterwards."""
    session = SessionLocal()
    yield session
    session.rollback()
    session.close()
    with engine.begin() as connection:
        for table in reversed(Base.metadata.sorted_tables):
            connection.execute(table.delete())


@pytest.fixture
def make_account(db: Session):
    def _make(email: str, display_name: str | None = None, external_user_id: str | None = None) -> Account:
        account = Account(email=email, display_name=display_name, external_user_id=external_user_id)
        db.add(account)
        db.commit()
        db.refresh(account)
        return account

    return _make


@pytest.fixture
def fake_remote() -> FakeRemote:
    return FakeRemote()


@pytest.fixture
def remotes() -> dict[str, FakeRemote]:
    """Per-account fakes keyed by account email, created on first use."""
    return {}


@pytest.fixture
def remote_factory(remotes: dict[str, FakeRemote]):
    def _factory(email: str) -> FakeRemote:
        return remotes.setdefault(email, FakeRemote())

    return _factory


# =============================================================================
# Client Fixtures
# =============================================================================


@pytest.fixture(scope="function")
async def client(db: Session, remote_factory) -> AsyncGenerator[AsyncClient, None]:
    def override_get_db():
        yield db

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_remote_factory] = lambda: remote_factory

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as c:
        yield c

    app.dependency_overrides.clear()
