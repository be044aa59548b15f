"""user_jobs.domain -- Pure user types.  ZERO I/O."""

from user_jobs.domain.types import Grade, UserRecord, UserStatus

__all__ = ["Grade", "UserRecord", "UserStatus"]
