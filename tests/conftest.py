"""
Pytest configuration and fixtures.
"""

import sys
import os
import uuid
from datetime import datetime, timedelta, timezone
from typing import AsyncGenerator
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.pool import NullPool, StaticPool

# Add app to path
sys.path.append(os.getcwd())

from app.database import Base
import app.models  # noqa: F401
from app.fsm.actor import Actor
from app.fsm.machine import DonationLifecycle
from app.fsm.states import Role
from app.services.user_service import UserService

# Use in-memory SQLite for tests
TEST_DB_URL = "sqlite+aiosqlite:///:memory:"

START = datetime(2026, 1, 10, 12, 0, tzinfo=timezone.utc)


class FakeClock:
    """Settable clock injected into the lifecycle."""

    def __init__(self, now: datetime = START):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest_asyncio.fixture
async def test_engine():
    """Create async engine for tests."""
    engine = create_async_engine(TEST_DB_URL, echo=False, poolclass=StaticPool)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest_asyncio.fixture
async def file_engine(tmp_path):
    """Engine with a real connection per session, for interleaving tests."""
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'donations.db'}",
        echo=False,
        poolclass=NullPool,
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest_asyncio.fixture
async def db(test_engine) -> AsyncGenerator[AsyncSession, None]:
    """Create a fresh database session for a test."""
    async_session = async_sessionmaker(
        test_engine, class_=AsyncSession, expire_on_commit=False
    )

    async with async_session() as session:
        yield session
        await session.rollback()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def publisher():
    return AsyncMock()


@pytest.fixture
def email_dispatcher():
    return AsyncMock()


@pytest.fixture
def make_lifecycle(publisher, email_dispatcher, clock):
    """Build a lifecycle on a session with the shared doubles."""

    def factory(session: AsyncSession, **kwargs) -> DonationLifecycle:
        options = {
            "clock": clock,
            "otp_ttl_seconds": 300,
            "notification_timeout": 1.0,
        }
        options.update(kwargs)
        return DonationLifecycle(
            session,
            publisher=publisher,
            email_dispatcher=email_dispatcher,
            **options,
        )

    return factory


@pytest.fixture
def lifecycle(db, make_lifecycle) -> DonationLifecycle:
    return make_lifecycle(db)


@pytest.fixture
def donor() -> Actor:
    return Actor(id=uuid.uuid4(), role=Role.DONOR)


@pytest.fixture
def recipient() -> Actor:
    return Actor(id=uuid.uuid4(), role=Role.RECIPIENT)


@pytest.fixture
def volunteer() -> Actor:
    return Actor(id=uuid.uuid4(), role=Role.VOLUNTEER)


@pytest.fixture
def other_volunteer() -> Actor:
    return Actor(id=uuid.uuid4(), role=Role.VOLUNTEER)


@pytest_asyncio.fixture
async def contacts(db, donor, recipient, volunteer):
    """Directory entries so OTP emails have somewhere to go."""
    service = UserService(db)
    await service.upsert_user(donor.id, "Asha", Role.DONOR, email="donor@example.com")
    await service.upsert_user(recipient.id, "Ravi", Role.RECIPIENT, email="recipient@example.com")
    await service.upsert_user(volunteer.id, "Meena", Role.VOLUNTEER, phone="+91 98765 43210")
    await db.commit()


@pytest.fixture
def deadlines(clock):
    """ISO deadline pair relative to the fake clock."""

    def build(pickup_hours: float = 1, delivery_hours: float = 2):
        return (
            (clock.now + timedelta(hours=pickup_hours)).isoformat(),
            (clock.now + timedelta(hours=delivery_hours)).isoformat(),
        )

    return build
