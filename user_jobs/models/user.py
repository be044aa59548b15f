"""
ORM model for users.

``status`` is the selection predicate and the write target of the
inactive-user job; ``grade`` is its partitioning attribute.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import TYPE_CHECKING

from sqlalchemy import DateTime, Index, String
from sqlalchemy.orm import Mapped, mapped_column

from batch_kernel.db.base import Base

if TYPE_CHECKING:
    from user_jobs.domain.types import UserRecord


class UserModel(Base):
    """A user row."""

    __tablename__ = "users"

    __table_args__ = (
        Index("ix_users_status_updated", "status", "updated_date"),
        Index("ix_users_grade", "grade"),
    )

    name: Mapped[str] = mapped_column(String(200), nullable=False)
    email: Mapped[str] = mapped_column(String(320), nullable=False)
    grade: Mapped[str] = mapped_column(String(20), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False)
    created_date: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False,
    )
    updated_date: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False,
    )

    def to_record(self) -> UserRecord:
        from user_jobs.domain.types import Grade, UserRecord, UserStatus

        return UserRecord(
            id=self.id,
            name=self.name,
            email=self.email,
            grade=Grade(self.grade),
            status=UserStatus(self.status),
            created_date=_aware(self.created_date),
            updated_date=_aware(self.updated_date),
        )

    @classmethod
    def from_record(cls, record: UserRecord) -> UserModel:
        return cls(
            id=record.id,
            name=record.name,
            email=record.email,
            grade=record.grade.value,
            status=record.status.value,
            created_date=to_utc(record.created_date),
            updated_date=to_utc(record.updated_date),
        )


def to_utc(value: datetime) -> datetime:
    """Normalize to UTC; naive values are taken to be UTC already."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def _aware(value: datetime) -> datetime:
    # SQLite drops the offset on the way back; everything is stored as UTC
    return value if value.tzinfo is not None else value.replace(tzinfo=UTC)
