"""
user_jobs.models -- ORM models for users.

Importing this package registers the ``users`` table on ``Base.metadata``.
"""

from user_jobs.models.user import UserModel

__all__ = ["UserModel"]
