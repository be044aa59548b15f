"""Database layer - declarative base and the process-wide engine."""

from batch_kernel.db.base import UUID, Base, TrackedBase, UUIDString
from batch_kernel.db.engine import (
    create_tables,
    get_engine,
    get_session_factory,
    init_engine_from_url,
    reset_engine,
)

__all__ = [
    "Base",
    "TrackedBase",
    "UUIDString",
    "UUID",
    "init_engine_from_url",
    "get_engine",
    "get_session_factory",
    "create_tables",
    "reset_engine",
]
