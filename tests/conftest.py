"""
Pytest fixtures for the batch engine test suite.

Provides:
- A file-backed SQLite database per test (tmp_path), so concurrent
  partition workers each get their own connection
- A DeterministicClock
- Logging reset between tests

No external database is required.
"""

from datetime import UTC, datetime, timedelta
from uuid import uuid4

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from batch_kernel.db.base import Base
from batch_kernel.domain.clock import DeterministicClock
from batch_kernel.logging_config import LogContext, reset_logging

import batch_engine.models  # noqa: F401  registers run tables
import user_jobs.models  # noqa: F401  registers the users table

from batch_engine.services.repository import SqlAlchemyJobRepository
from user_jobs.domain.types import Grade, UserRecord, UserStatus
from user_jobs.repository import UserRepository

NOW = datetime(2024, 6, 1, 12, 0, 0, tzinfo=UTC)


@pytest.fixture(autouse=True)
def _clean_logging():
    """Reset logging state between tests."""
    reset_logging()
    LogContext.clear()
    yield
    LogContext.clear()
    reset_logging()


@pytest.fixture
def clock() -> DeterministicClock:
    return DeterministicClock(NOW)


@pytest.fixture
def now() -> datetime:
    return NOW


# =============================================================================
# Database
# =============================================================================


@pytest.fixture
def db_engine(tmp_path):
    engine = create_engine(
        f"sqlite:///{tmp_path / 'batch.db'}",
        connect_args={"timeout": 30, "check_same_thread": False},
    )
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return sessionmaker(bind=db_engine, expire_on_commit=False)


@pytest.fixture
def run_repository(session_factory, clock):
    return SqlAlchemyJobRepository(session_factory, clock)


@pytest.fixture
def users(session_factory):
    return UserRepository(session_factory)


@pytest.fixture
def make_user():
    """Build a UserRecord; ``age_days`` is measured back from NOW."""

    def _make(
        grade: Grade = Grade.VIP,
        status: UserStatus = UserStatus.ACTIVE,
        age_days: int = 400,
        name: str | None = None,
    ) -> UserRecord:
        uid = uuid4()
        updated = NOW - timedelta(days=age_days)
        return UserRecord(
            id=uid,
            name=name or f"user-{uid.hex[:8]}",
            email=f"{uid.hex[:8]}@example.com",
            grade=grade,
            status=status,
            created_date=updated - timedelta(days=30),
            updated_date=updated,
        )

    return _make
