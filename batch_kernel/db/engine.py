"""
Module: batch_kernel.db.engine
Responsibility: Process-wide SQLAlchemy engine and session factory for jobs
    launched from scripts.  ``run_inactive_user_job()`` falls back to this
    factory when the caller does not pass its own.
Architecture position: Kernel > DB.  May import from db/base.py only.

Invariants enforced:
    - Sessions are created with expire_on_commit=False so records returned
      from a committed read can be handed to another thread.
    - SQLite engines get a busy timeout and cross-thread connections;
      partition workers each open their own session.

Failure modes:
    - RuntimeError if get_engine/get_session_factory called before
      init_engine_from_url().
    - Connection pool exhaustion if pool_size + max_overflow is exceeded;
      size the pool above the step's throttle limit.
"""

import atexit

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from batch_kernel.logging_config import configure_logging, get_logger

logger = get_logger("db.engine")

_engine: Engine | None = None
_SessionFactory: sessionmaker[Session] | None = None


def init_engine_from_url(
    database_url: str,
    echo: bool = False,
    pool_size: int = 10,
    max_overflow: int = 5,
) -> Engine:
    """
    Initialize the process-wide engine from a database URL.

    SQLite URLs get a busy timeout instead of pool sizing, since concurrent
    partitions each hold their own connection and wait on the file lock.
    Calling it again replaces (and disposes) the previous engine.
    """
    global _engine, _SessionFactory

    if _engine is not None:
        _engine.dispose()

    if database_url.startswith("sqlite"):
        _engine = create_engine(
            database_url,
            echo=echo,
            connect_args={"timeout": 30, "check_same_thread": False},
        )
    else:
        _engine = create_engine(
            database_url,
            echo=echo,
            pool_size=pool_size,
            max_overflow=max_overflow,
            pool_pre_ping=True,
        )

    _SessionFactory = sessionmaker(bind=_engine, expire_on_commit=False)

    configure_logging()
    logger.info(
        "engine_initialized",
        extra={"dialect": _engine.dialect.name, "echo": echo},
    )
    return _engine


def get_engine() -> Engine:
    if _engine is None:
        raise RuntimeError("Engine not initialized. Call init_engine_from_url() first.")
    return _engine


def get_session_factory() -> sessionmaker[Session]:
    """
    Session factory bound to the process-wide engine.

    Raises:
        RuntimeError: If the engine has not been initialized.
    """
    if _SessionFactory is None:
        raise RuntimeError("Engine not initialized. Call init_engine_from_url() first.")
    return _SessionFactory


def create_tables() -> None:
    """
    Create every table registered on ``Base.metadata`` that is missing.

    Preconditions: the ORM model modules (``batch_engine.models``,
        ``user_jobs.models``) are imported so the metadata knows them.
    """
    from batch_kernel.db.base import Base

    Base.metadata.create_all(get_engine())


def reset_engine() -> None:
    """Dispose the engine and forget the session factory."""
    global _engine, _SessionFactory

    if _engine is not None:
        _engine.dispose()
        _engine = None

    _SessionFactory = None


def _atexit_dispose():
    if _engine is not None:
        _engine.dispose()


atexit.register(_atexit_dispose)
