"""
UserRepository and UserStatusWriter -- the user table as a batch source and sink.

Contract:
    ``UserRepository`` is a keyed paging source over the candidate
    predicate ``updated_date < cutoff AND status = <status>
    [AND grade = <grade>]``, ordered by id so repeated fetches agree.
    ``UserStatusWriter`` persists a chunk of records in one transaction.

Criteria keys:
    ``cutoff``  (datetime, required)  exclusive upper bound on updated_date
    ``status``  (UserStatus, required)
    ``grade``   (Grade, optional)     the partition's grade

Invariants enforced:
    - Every read opens and closes its own session, so no read transaction
      outlives the fetch.
    - ``UserStatusWriter.write()`` is atomic: one UPDATE per record inside
      one transaction; a missing row rolls the whole chunk back.
"""

from __future__ import annotations

from collections.abc import Hashable, Iterable, Mapping, Sequence
from typing import Any

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session, sessionmaker

from batch_kernel.exceptions import WriterFault
from batch_kernel.logging_config import get_logger

from user_jobs.domain.types import Grade, UserRecord, UserStatus
from user_jobs.models.user import UserModel, to_utc

logger = get_logger("user_jobs.repository")


class UserRepository:
    """Paging and keyed reads over the ``users`` table."""

    def __init__(self, session_factory: sessionmaker[Session]) -> None:
        self._session_factory = session_factory

    def _filtered(self, stmt, criteria: Mapping[str, Any]):
        stmt = stmt.where(
            UserModel.updated_date < to_utc(criteria["cutoff"]),
            UserModel.status == UserStatus(criteria["status"]).value,
        )
        grade = criteria.get("grade")
        if grade is not None:
            stmt = stmt.where(UserModel.grade == Grade(grade).value)
        return stmt

    def fetch_page(
        self,
        page_index: int,
        page_size: int,
        criteria: Mapping[str, Any],
    ) -> list[UserRecord]:
        stmt = (
            self._filtered(select(UserModel), criteria)
            .order_by(UserModel.id)
            .offset(page_index * page_size)
            .limit(page_size)
        )
        with self._session_factory() as session:
            return [m.to_record() for m in session.execute(stmt).scalars()]

    def fetch_by_keys(self, keys: Sequence[Hashable]) -> list[UserRecord]:
        if not keys:
            return []
        with self._session_factory() as session:
            models = session.execute(
                select(UserModel).where(UserModel.id.in_(list(keys)))
            ).scalars().all()
            by_id = {m.id: m.to_record() for m in models}
        return [by_id[k] for k in keys if k in by_id]

    def find_candidates(self, criteria: Mapping[str, Any]) -> list[UserRecord]:
        """Every record matching ``criteria``, in id order."""
        stmt = self._filtered(select(UserModel), criteria).order_by(UserModel.id)
        with self._session_factory() as session:
            return [m.to_record() for m in session.execute(stmt).scalars()]

    def count_candidates(self, criteria: Mapping[str, Any]) -> int:
        stmt = self._filtered(select(func.count()).select_from(UserModel), criteria)
        with self._session_factory() as session:
            return session.execute(stmt).scalar_one()

    def distinct_grades(self, criteria: Mapping[str, Any] | None = None) -> list[Grade]:
        """Grades present in the table (restricted to ``criteria`` if given)."""
        stmt = select(UserModel.grade).distinct()
        if criteria is not None:
            stmt = self._filtered(stmt, criteria)
        with self._session_factory() as session:
            return [Grade(g) for g in session.execute(stmt).scalars()]

    def get(self, user_id: Hashable) -> UserRecord | None:
        with self._session_factory() as session:
            model = session.get(UserModel, user_id)
            return model.to_record() if model is not None else None

    def add_all(self, records: Iterable[UserRecord]) -> int:
        """Insert records in one transaction; returns the number inserted."""
        models = [UserModel.from_record(r) for r in records]
        with self._session_factory() as session:
            session.add_all(models)
            session.commit()
        return len(models)


class UserStatusWriter:
    """Atomic chunk writer for user status changes."""

    def __init__(self, session_factory: sessionmaker[Session]) -> None:
        self._session_factory = session_factory
        self.write_calls = 0

    def write(self, items: Sequence[UserRecord]) -> None:
        self.write_calls += 1
        with self._session_factory() as session:
            try:
                for record in items:
                    self._apply(session, record)
                session.commit()
            except Exception:
                session.rollback()
                raise
        logger.debug("user_status_written", extra={"records": len(items)})

    def _apply(self, session: Session, record: UserRecord) -> None:
        result = session.execute(
            update(UserModel)
            .where(UserModel.id == record.id)
            .values(status=record.status.value)
        )
        if result.rowcount != 1:
            raise WriterFault(f"user {record.id} not found")
