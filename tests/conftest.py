"""
Pytest configuration and shared fixtures for all tests.
"""
import os
import uuid
from datetime import datetime, timezone
from typing import AsyncGenerator
from unittest.mock import AsyncMock

# Settings are read at import time; tests run against in-memory SQLite.
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("APP_ENV", "test")
os.environ.setdefault("CHANGE_FEED_BACKEND", "memory")

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker
from sqlalchemy.pool import StaticPool

from checkin_sync.db.models import Base
from checkin_sync.schemas.checkin import ActionItem, CheckInRecord, Note
from checkin_sync.schemas.settings import SessionSettings
from checkin_sync.services.gateway import GatewayResult, PersistenceGateway
from checkin_sync.services.scheduler import CancelToken


COUPLE_ID = uuid.UUID("9b2f1a7e-4c3d-4e5f-8a6b-1c2d3e4f5a6b")
USER_ID = uuid.UUID("123e4567-e89b-12d3-a456-426614174000")
PARTNER_ID = uuid.UUID("223e4567-e89b-12d3-a456-426614174001")
STARTED_AT = datetime(2024, 1, 15, 10, 0, tzinfo=timezone.utc)


class ManualScheduler:
    """Virtual-time scheduler; callbacks only run inside advance()."""

    def __init__(self):
        self.now = 0.0
        self._jobs = []  # [due, interval, callback, token]

    def every(self, interval, callback) -> CancelToken:
        token = CancelToken()
        self._jobs.append([self.now + interval, interval, callback, token])
        return token

    @property
    def active(self) -> int:
        return sum(1 for job in self._jobs if not job[3].cancelled)

    def advance(self, seconds: float) -> None:
        target = self.now + seconds
        while True:
            self._jobs = [job for job in self._jobs if not job[3].cancelled]
            due = [job for job in self._jobs if job[0] <= target]
            if not due:
                break
            job = min(due, key=lambda j: j[0])
            self.now = job[0]
            job[0] += job[1]
            job[2]()
        self.now = target


def make_record(check_in_id=None, *, couple_id=COUPLE_ID, status="in-progress", categories=("communication",), **kw) -> CheckInRecord:
    return CheckInRecord(
        id=check_in_id or uuid.uuid4(),
        couple_id=couple_id,
        status=status,
        categories=list(categories),
        started_at=kw.pop("started_at", STARTED_AT),
        **kw,
    )


def make_note(check_in_id, *, note_id=None, content="We should talk more", author_id=USER_ID, **kw) -> Note:
    return Note(
        id=note_id or uuid.uuid4(),
        couple_id=kw.pop("couple_id", COUPLE_ID),
        author_id=author_id,
        check_in_id=check_in_id,
        content=content,
        **kw,
    )


def make_action_item(check_in_id, *, item_id=None, title="Plan date night", completed=False, **kw) -> ActionItem:
    return ActionItem(
        id=item_id or uuid.uuid4(),
        couple_id=kw.pop("couple_id", COUPLE_ID),
        check_in_id=check_in_id,
        title=title,
        completed=completed,
        **kw,
    )


@pytest.fixture
def couple_id() -> uuid.UUID:
    return COUPLE_ID


@pytest.fixture
def test_user_id() -> uuid.UUID:
    """The calling partner."""
    return USER_ID


@pytest.fixture
def another_user_id() -> uuid.UUID:
    """The other partner, for two-client tests."""
    return PARTNER_ID


@pytest.fixture
def scheduler() -> ManualScheduler:
    return ManualScheduler()


@pytest.fixture
def gateway() -> AsyncMock:
    """
    Gateway double that echoes inserts back as canonical records and finds
    no active check-in.
    """
    gw = AsyncMock(spec=PersistenceGateway)
    gw.fetch_active_check_in.return_value = GatewayResult(data=None)
    gw.fetch_check_in_items.return_value = GatewayResult(data=([], []))
    gw.fetch_session_settings.return_value = SessionSettings()
    gw.fetch_couple_id.return_value = GatewayResult(data=COUPLE_ID)

    async def insert_check_in(check_in_id, couple_id, started_at, categories, mood_before=None):
        return GatewayResult(data=make_record(
            check_in_id, couple_id=couple_id, categories=categories, started_at=started_at, mood_before=mood_before,
        ))

    async def update_check_in_status(check_in_id, status, *, mood_after=None, reflection=None):
        return GatewayResult(data=make_record(
            check_in_id, status=status, mood_after=mood_after, reflection=reflection, completed_at=STARTED_AT,
        ))

    async def update_check_in_categories(check_in_id, categories):
        return GatewayResult(data=make_record(check_in_id, categories=categories))

    async def insert_note(*, couple_id, author_id, check_in_id, content, privacy="draft", tags=None, category_id=None):
        return GatewayResult(data=make_note(
            check_in_id, couple_id=couple_id, author_id=author_id, content=content,
            privacy=privacy, tags=tags or [], category_id=category_id,
        ))

    async def insert_action_item(*, couple_id, check_in_id, title, description=None, assigned_to=None, due_date=None):
        return GatewayResult(data=make_action_item(
            check_in_id, couple_id=couple_id, title=title, description=description,
            assigned_to=assigned_to, due_date=due_date,
        ))

    gw.insert_check_in.side_effect = insert_check_in
    gw.update_check_in_status.side_effect = update_check_in_status
    gw.update_check_in_categories.side_effect = update_check_in_categories
    gw.insert_note.side_effect = insert_note
    gw.insert_action_item.side_effect = insert_action_item
    gw.delete_note.return_value = GatewayResult()
    gw.delete_action_item.return_value = GatewayResult()
    return gw


@pytest.fixture
async def session_factory() -> AsyncGenerator[async_sessionmaker[AsyncSession], None]:
    """Fresh in-memory SQLite database per test, shared across connections."""
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)
    await engine.dispose()


@pytest.fixture
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session


@pytest.fixture
def mock_auth_user(test_user_id):
    """Mock authenticated user."""
    return {"user_id": str(test_user_id), "role": "authenticated", "email": "test@example.com"}

