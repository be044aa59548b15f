"""
InactiveUserTasklet -- the inactive-user job as one unit of work.

Reads every candidate, deactivates them and writes them in a single
transaction.  A failure rolls back everything, which is the blast radius
the chunked variant exists to avoid; use it for small user tables.
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any

from sqlalchemy.orm import Session, sessionmaker

from batch_kernel.logging_config import get_logger

from batch_engine.domain.types import SKIP, ExecutionContext, RepeatStatus

from user_jobs.inactive import candidate_criteria, deactivate_user
from user_jobs.repository import UserRepository, UserStatusWriter

logger = get_logger("user_jobs.tasklet")


class InactiveUserTasklet:
    def __init__(self, session_factory: sessionmaker[Session]) -> None:
        self._users = UserRepository(session_factory)
        self._writer = UserStatusWriter(session_factory)

    def __call__(
        self,
        context: ExecutionContext,
        parameters: Mapping[str, Any],
    ) -> RepeatStatus:
        candidates = self._users.find_candidates(candidate_criteria(parameters))
        changed = [u for u in map(deactivate_user, candidates) if u is not SKIP]
        if changed:
            self._writer.write(changed)
        logger.info("inactive_users_flipped", extra={"count": len(changed)})
        return RepeatStatus.FINISHED
