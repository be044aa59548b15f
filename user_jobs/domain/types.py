"""
user_jobs.domain.types -- User records and their classifications.

ZERO I/O.

Invariants enforced:
    - A record's identity never changes; ``status`` is the only field the
      inactive-user job changes.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime
from enum import Enum
from uuid import UUID


class Grade(str, Enum):
    """Membership grade; the partitioning attribute of user jobs."""

    VIP = "VIP"
    GOLD = "GOLD"
    FAMILY = "FAMILY"


class UserStatus(str, Enum):
    ACTIVE = "ACTIVE"
    INACTIVE = "INACTIVE"


@dataclass(frozen=True)
class UserRecord:
    """Immutable snapshot of one user row."""

    id: UUID
    name: str
    email: str
    grade: Grade
    status: UserStatus
    created_date: datetime
    updated_date: datetime

    def deactivated(self) -> UserRecord:
        return replace(self, status=UserStatus.INACTIVE)
